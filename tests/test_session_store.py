"""
Tests for session and message persistence.
"""

import pytest

from kortex.errors import StorageError
from kortex.storage import SessionStore
from kortex.types import MessageRole


@pytest.fixture
def store(tmp_path):
    s = SessionStore(tmp_path / "kortex.db")
    yield s
    s.close()


class TestSessions:
    """Tests for session CRUD."""

    def test_create_and_get(self, store):
        session = store.create_session("find pricing")
        loaded = store.get_session(session.id)

        assert loaded == session
        assert loaded.context == "find pricing"

    def test_get_missing(self, store):
        assert store.get_session("missing") is None

    def test_list_newest_first(self, store):
        first = store.create_session("one")
        second = store.create_session("two")

        ids = [s.id for s in store.list_sessions()]
        assert ids.index(second.id) < ids.index(first.id)
        assert store.list_sessions(0) == []

    def test_delete_removes_messages(self, store):
        session = store.create_session("x")
        store.add_message(session.id, MessageRole.USER, "hello")

        assert store.delete_session(session.id) is True
        assert store.get_session(session.id) is None
        assert store.get_messages(session.id) == []
        assert store.delete_session(session.id) is False


class TestMessages:
    """Tests for message CRUD."""

    def test_messages_in_order(self, store):
        session = store.create_session("x")
        store.add_message(session.id, "user", "go to example.com")
        store.add_message(session.id, MessageRole.TOOL, "navigate", tool_call_id="c1", tool_result="Navigated")
        store.add_message(session.id, MessageRole.MODEL, "Done")

        messages = store.get_messages(session.id)
        assert [m.role for m in messages] == [MessageRole.USER, MessageRole.TOOL, MessageRole.MODEL]
        assert messages[1].tool_call_id == "c1"
        assert messages[1].tool_result == "Navigated"

    def test_limit(self, store):
        session = store.create_session("x")
        for i in range(5):
            store.add_message(session.id, MessageRole.USER, str(i))
        assert [m.content for m in store.get_messages(session.id, limit=2)] == ["0", "1"]

    def test_invalid_role(self, store):
        session = store.create_session("x")
        with pytest.raises(ValueError):
            store.add_message(session.id, "system", "nope")

    def test_unknown_session_rejected(self, store):
        with pytest.raises(StorageError):
            store.add_message("no-such-session", MessageRole.USER, "hi")

    def test_shared_file_with_memory_store(self, tmp_path):
        from kortex.memory_store import MemoryStore
        from kortex.types import MemoryFragment

        path = tmp_path / "kortex.db"
        with SessionStore(path) as sessions, MemoryStore(path) as memory:
            session = sessions.create_session("x")
            memory.save(MemoryFragment(content="note", embedding=(1.0,)))
            assert sessions.get_session(session.id) is not None
            assert memory.count() == 1
