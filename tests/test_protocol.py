"""Tests for protocol.py — worker message wire form."""

import pytest

from protocol import (
    Cancel,
    Compact,
    CompactDone,
    Error,
    Invoke,
    ThinkingLog,
    TokenUsage,
    decode_inbound,
    decode_outbound,
)


def _invoke(**overrides):
    fields = {
        "group_id": "local:main",
        "messages": [{"role": "user", "content": "hi"}],
        "system_prompt": "You are Andy.",
        "model": "claude-test",
        "max_tokens": 1024,
        "provider": "anthropic",
        "credentials": {"anthropic_api_key": "k"},
    }
    fields.update(overrides)
    return Invoke(**fields)


class TestWireForm:
    def test_invoke_camel_case(self):
        data = _invoke().to_dict()
        assert data["type"] == "invoke"
        payload = data["payload"]
        assert payload["groupId"] == "local:main"
        assert payload["systemPrompt"] == "You are Andy."
        assert payload["maxTokens"] == 1024
        assert payload["providerUrls"] == {}

    def test_token_usage_keys(self):
        payload = TokenUsage(
            group_id="g", input_tokens=1, output_tokens=2,
            cache_read_tokens=3, cache_creation_tokens=4, context_limit=200_000,
        ).to_dict()["payload"]
        assert payload == {
            "groupId": "g", "inputTokens": 1, "outputTokens": 2,
            "cacheReadTokens": 3, "cacheCreationTokens": 4, "contextLimit": 200_000,
        }

    def test_cancel_has_empty_payload(self):
        assert Cancel().to_dict() == {"type": "cancel", "payload": {}}


class TestDecode:
    def test_inbound_variants(self):
        assert isinstance(decode_inbound(_invoke().to_dict()), Invoke)
        compact = Compact(**{k: v for k, v in vars(_invoke()).items()})
        decoded = decode_inbound(compact.to_dict())
        assert isinstance(decoded, Compact)
        assert not isinstance(decoded, Invoke)
        assert isinstance(decode_inbound({"type": "cancel"}), Cancel)

    def test_outbound_preserves_fields(self):
        log_msg = ThinkingLog(group_id="g", kind="tool-call", timestamp=5, label="Tool: bash")
        decoded = decode_outbound(log_msg.to_dict())
        assert decoded == log_msg
        assert decoded.detail is None

    def test_error_and_compact_done(self):
        assert decode_outbound(Error(group_id="g", error="boom").to_dict()).error == "boom"
        done = decode_outbound({"type": "compact-done",
                                "payload": {"groupId": "g", "summary": "s"}})
        assert done == CompactDone(group_id="g", summary="s")

    @pytest.mark.parametrize("kind", ["bogus", None, "invoke"])
    def test_unknown_outbound_rejected(self, kind):
        with pytest.raises(ValueError):
            decode_outbound({"type": kind, "payload": {}})

    def test_unknown_inbound_rejected(self):
        with pytest.raises(ValueError):
            decode_inbound({"type": "response", "payload": {}})
