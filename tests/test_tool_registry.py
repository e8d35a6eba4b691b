"""Tests for tools/__init__.py — ToolRegistry dispatch and error isolation."""

import pytest

from tools import ToolError, ToolRegistry, create_default_registry

# ─── Helpers ─────────────────────────────────────────────────────


def _registry(limit=100_000):
    reg = ToolRegistry(truncation_limit=limit)

    def echo(text: str = "") -> str:
        return f"echo:{text}"

    async def async_echo(text: str = "") -> str:
        return f"async:{text}"

    def fails(reason: str = "nope") -> str:
        raise ToolError(reason)

    def explodes() -> str:
        raise RuntimeError("kaboom")

    def needs_group(group_id: str) -> str:
        return f"group:{group_id}"

    def big() -> str:
        return "x" * 500

    def returns_int() -> int:
        return 42

    reg.register("echo", "echo tool", {"type": "object"}, echo)
    reg.register("async_echo", "async echo", {"type": "object"}, async_echo)
    reg.register("fails", "raises ToolError", {"type": "object"}, fails)
    reg.register("explodes", "raises RuntimeError", {"type": "object"}, explodes)
    reg.register("needs_group", "uses context", {"type": "object"}, needs_group)
    reg.register("big", "large output", {"type": "object"}, big)
    reg.register("returns_int", "non-string result", {"type": "object"}, returns_int)
    return reg


# ─── Dispatch ────────────────────────────────────────────────────


class TestExecute:
    @pytest.mark.asyncio
    async def test_sync_tool(self):
        assert await _registry().execute("echo", {"text": "hi"}) == "echo:hi"

    @pytest.mark.asyncio
    async def test_async_tool(self):
        assert await _registry().execute("async_echo", {"text": "hi"}) == "async:hi"

    @pytest.mark.asyncio
    async def test_context_injected_only_when_named(self):
        reg = _registry()
        assert await reg.execute("needs_group", {}, group_id="tg:1", emit=None) == "group:tg:1"
        # echo does not name group_id; passing it must not break the call
        assert await reg.execute("echo", {"text": "a"}, group_id="tg:1") == "echo:a"

    @pytest.mark.asyncio
    async def test_non_string_result(self):
        assert await _registry().execute("returns_int", {}) == "42"


class TestErrors:
    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        result = await _registry().execute("missing", {})
        assert result == "Tool error (missing): unknown tool"

    @pytest.mark.asyncio
    async def test_tool_error(self):
        result = await _registry().execute("fails", {"reason": "bad input"})
        assert result == "Tool error (fails): bad input"

    @pytest.mark.asyncio
    async def test_unexpected_exception(self):
        result = await _registry().execute("explodes", {})
        assert result.startswith("Tool error (explodes):")
        assert "kaboom" in result

    @pytest.mark.asyncio
    async def test_bad_arguments(self):
        result = await _registry().execute("echo", {"nope": 1})
        assert result.startswith("Tool error (echo):")

    @pytest.mark.asyncio
    async def test_non_dict_arguments(self):
        result = await _registry().execute("echo", "text")
        assert result.startswith("Tool error (echo):")


class TestTruncation:
    @pytest.mark.asyncio
    async def test_truncated(self):
        result = await _registry(limit=100).execute("big", {})
        assert result.startswith("x" * 100)
        assert result.endswith("[truncated at 100 chars]")

    @pytest.mark.asyncio
    async def test_under_limit_untouched(self):
        assert await _registry(limit=1000).execute("big", {}) == "x" * 500


# ─── Catalog ─────────────────────────────────────────────────────


class TestDefaultRegistry:
    def test_full_catalog(self):
        names = set(create_default_registry().tool_names)
        assert names == {
            "bash", "javascript", "read_file", "write_file", "list_files",
            "fetch_url", "read_memory", "update_memory", "create_task",
        }

    def test_schemas_exclude_functions(self):
        for schema in create_default_registry().get_schemas():
            assert set(schema) == {"name", "description", "input_schema"}
            assert schema["input_schema"]["type"] == "object"

    def test_brief_descriptions(self):
        pairs = create_default_registry().get_brief_descriptions()
        assert pairs[0][0] == "bash"
        assert all(desc for _, desc in pairs)
