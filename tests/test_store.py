"""Tests for store.py — messages, tasks, settings and conversation building."""

import pytest

from channels import InboundMessage
from store import (
    CONTEXT_WINDOW_SIZE,
    PersistenceError,
    Store,
    StoredMessage,
    Task,
    build_conversation,
)


def _msg(content, group_id="local:main", is_from_me=False, sender="You",
         channel="local", ts=1):
    return StoredMessage(
        id=f"id-{content}", group_id=group_id, sender=sender, content=content,
        timestamp=ts, channel=channel, is_from_me=is_from_me,
    )


# ─── Messages ────────────────────────────────────────────────────


class TestMessages:
    def test_insertion_order(self, store):
        for i in range(3):
            store.add_message(_msg(f"m{i}"))
        assert [m.content for m in store.get_messages("local:main")] == ["m0", "m1", "m2"]

    def test_limit_keeps_newest(self, store):
        for i in range(5):
            store.add_message(_msg(f"m{i}"))
        assert [m.content for m in store.get_messages("local:main", limit=2)] == ["m3", "m4"]

    def test_recent_window(self, store):
        for i in range(CONTEXT_WINDOW_SIZE + 5):
            store.add_message(_msg(f"m{i}"))
        recent = store.get_recent_messages("local:main")
        assert len(recent) == CONTEXT_WINDOW_SIZE
        assert recent[-1].content == f"m{CONTEXT_WINDOW_SIZE + 4}"

    def test_groups_isolated(self, store):
        store.add_message(_msg("a", group_id="local:main"))
        store.add_message(_msg("b", group_id="tg:1", channel="telegram"))
        assert [m.content for m in store.get_messages("tg:1")] == ["b"]
        assert set(store.list_groups()) == {"local:main", "tg:1"}

    def test_clear_empties_history(self, store):
        store.add_message(_msg("a"))
        store.add_message(_msg("b", group_id="tg:1"))
        assert store.clear_messages("local:main") == 1
        assert store.get_messages("local:main") == []
        assert len(store.get_messages("tg:1")) == 1

    def test_flags_round_trip(self, store):
        store.add_message(_msg("reply", is_from_me=True))
        (m,) = store.get_messages("local:main")
        assert m.is_from_me is True
        assert m.is_trigger is False

    def test_from_inbound(self):
        inbound = InboundMessage(group_id="tg:5", sender="Ann", content="hey", channel="telegram")
        stored = StoredMessage.from_inbound(inbound, is_trigger=True)
        assert stored.id == inbound.id
        assert stored.is_trigger and not stored.is_from_me

    def test_sqlite_failure_wrapped(self, store):
        store._conn.close()
        with pytest.raises(PersistenceError):
            store.add_message(_msg("x"))


# ─── Tasks ───────────────────────────────────────────────────────


class TestTasks:
    def test_save_and_list(self, store):
        task = Task(group_id="local:main", schedule="0 9 * * 1", prompt="Standup")
        store.save_task(task)
        (loaded,) = store.list_tasks()
        assert loaded == task

    def test_upsert(self, store):
        task = Task(group_id="local:main", schedule="0 9 * * 1", prompt="p")
        store.save_task(task)
        task.enabled = False
        task.last_run = 123
        store.save_task(task)
        loaded = store.get_task(task.id)
        assert loaded.enabled is False
        assert loaded.last_run == 123
        assert len(store.list_tasks()) == 1

    def test_filter_by_group(self, store):
        store.save_task(Task(group_id="a", schedule="* * * * *", prompt="1"))
        store.save_task(Task(group_id="b", schedule="* * * * *", prompt="2"))
        assert [t.prompt for t in store.list_tasks("b")] == ["2"]

    def test_delete(self, store):
        task = Task(group_id="a", schedule="* * * * *", prompt="1")
        store.save_task(task)
        assert store.delete_task(task.id) is True
        assert store.delete_task(task.id) is False
        assert store.get_task(task.id) is None

    def test_dict_form(self):
        task = Task(group_id="g", schedule="0 9 * * *", prompt="p", id="t1", created_at=7)
        data = task.to_dict()
        assert data["groupId"] == "g"
        assert data["lastRun"] is None
        assert Task.from_dict(data) == task


# ─── Settings ────────────────────────────────────────────────────


class TestSettings:
    def test_get_default(self, store):
        assert store.get_setting("model") is None
        assert store.get_setting("model", "x") == "x"

    def test_overwrite(self, store):
        store.set_setting("model", "a")
        store.set_setting("model", "b")
        assert store.all_settings() == {"model": "b"}

    def test_persists_across_connections(self, tmp_path):
        path = tmp_path / "s.db"
        s1 = Store(path)
        s1.set_setting("provider", "ollama")
        s1.close()
        s2 = Store(path)
        assert s2.get_setting("provider") == "ollama"
        s2.close()

    def test_unopenable_path(self, tmp_path):
        (tmp_path / "dir.db").mkdir()
        with pytest.raises(PersistenceError):
            Store(tmp_path / "dir.db")


# ─── Conversation ────────────────────────────────────────────────


class TestBuildConversation:
    def test_roles_alternate_and_merge(self):
        turns = build_conversation([
            _msg("one"), _msg("two"), _msg("reply", is_from_me=True), _msg("three"),
        ])
        assert [(t.role, t.content) for t in turns] == [
            ("user", "one\ntwo"), ("assistant", "reply"), ("user", "three"),
        ]

    def test_remote_sender_prefixed(self):
        (turn,) = build_conversation([_msg("hi", sender="Ann", channel="telegram")])
        assert turn.content == "Ann: hi"

    def test_assistant_first_gets_user_turn(self):
        turns = build_conversation([_msg("summary", is_from_me=True)])
        assert turns[0].role == "user"
        assert turns[1].to_internal() == {"role": "assistant", "text": "summary"}

    def test_empty(self):
        assert build_conversation([]) == []

    def test_internal_user(self):
        (turn,) = build_conversation([_msg("hello")])
        assert turn.to_internal() == {"role": "user", "content": "hello"}

