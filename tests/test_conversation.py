"""
Unit tests for the conversation store.

Tests session lifecycle, ordering, system message handling, and persistence.
"""

import os
import shutil
import sqlite3
import tempfile
from datetime import datetime, timedelta
from unittest.mock import patch

import pytest

from cipher_coder.core.conversation import ConversationStore, new_message
from cipher_coder.core.errors import SessionNotFoundError
from cipher_coder.core.models import Role
from cipher_coder.storage.repository import SessionRepository


class TestSessionLifecycle:
    """Test creating, switching and deleting sessions."""

    def setup_method(self):
        self.store = ConversationStore()

    def test_create_session_becomes_active(self):
        session_id = self.store.create_session()

        assert self.store.active_session_id == session_id
        assert self.store.get_session(session_id).title == "Chat Session 1"

    def test_default_titles_are_numbered(self):
        self.store.create_session()
        second = self.store.create_session()

        assert self.store.get_session(second).title == "Chat Session 2"

    def test_create_with_system_message(self):
        session_id = self.store.create_session("Review", system_message="Be terse.")
        session = self.store.get_session(session_id)

        assert session.system_message == "Be terse."
        assert len(session.messages) == 1
        assert session.messages[0].role == Role.SYSTEM

    def test_delete_active_moves_to_most_recent(self):
        first = self.store.create_session()
        second = self.store.create_session()
        third = self.store.create_session()
        later = datetime.now() + timedelta(seconds=5)
        self.store.append_message(first, new_message(Role.USER, "bump first", later))

        self.store.delete_session(third)

        assert self.store.active_session_id == first
        assert not self.store.has_session(third)
        assert self.store.has_session(second)

    def test_delete_last_session_clears_active(self):
        session_id = self.store.create_session()

        self.store.delete_session(session_id)

        assert self.store.active_session_id is None
        assert self.store.get_active_session() is None

    def test_delete_inactive_keeps_active(self):
        first = self.store.create_session()
        second = self.store.create_session()

        self.store.delete_session(first)

        assert self.store.active_session_id == second

    def test_unknown_session_raises(self):
        with pytest.raises(SessionNotFoundError):
            self.store.get_session("missing")
        with pytest.raises(SessionNotFoundError):
            self.store.add_message("missing", Role.USER, "hi")
        with pytest.raises(KeyError):
            self.store.delete_session("missing")

    def test_set_active_session(self):
        first = self.store.create_session()
        self.store.create_session()

        self.store.set_active_session(first)

        assert self.store.active_session_id == first

    def test_list_sessions_most_recent_first(self):
        first = self.store.create_session()
        second = self.store.create_session()
        later = datetime.now() + timedelta(seconds=5)
        self.store.append_message(first, new_message(Role.USER, "newer", later))

        ids = [s.id for s in self.store.list_sessions()]

        assert ids == [first, second]


class TestMessages:
    """Test appending and ordering of messages."""

    def setup_method(self):
        self.store = ConversationStore()
        self.session_id = self.store.create_session()

    def test_messages_keep_append_order(self):
        for i in range(5):
            self.store.add_message(self.session_id, Role.USER, f"message {i}")

        contents = [m.content for m in self.store.get_session(self.session_id).messages]

        assert contents == [f"message {i}" for i in range(5)]

    def test_updated_at_never_decreases(self):
        before = self.store.get_session(self.session_id).updated_at
        old = new_message(Role.USER, "from the past", before - timedelta(days=1))

        self.store.append_message(self.session_id, old)

        assert self.store.get_session(self.session_id).updated_at >= before

    def test_snapshots_are_isolated(self):
        self.store.add_message(self.session_id, Role.USER, "hello")

        snapshot = self.store.get_session(self.session_id)
        snapshot.messages.clear()
        snapshot.title = "changed"

        session = self.store.get_session(self.session_id)
        assert len(session.messages) == 1
        assert session.title == "Chat Session 1"

    def test_code_block_detection(self):
        message = new_message(Role.ASSISTANT, "Here:\n```python\nprint(1)\n```")

        assert message.has_code is True
        assert message.code_language == "python"

    def test_single_line_fence_has_no_language(self):
        message = new_message(Role.ASSISTANT, "Run ```print(1)``` to check")

        assert message.has_code is True
        assert message.code_language is None

    def test_plain_message_has_no_code(self):
        message = new_message(Role.USER, "hello there")

        assert message.has_code is False
        assert message.code_language is None


class TestSessionUpdates:
    """Test title, metadata and system message updates."""

    def setup_method(self):
        self.store = ConversationStore()
        self.session_id = self.store.create_session()
        self.store.add_message(self.session_id, Role.USER, "hi")

    def test_system_message_inserted_at_front(self):
        self.store.update_session(self.session_id, system_message="You write Python.")
        session = self.store.get_session(self.session_id)

        assert session.messages[0].role == Role.SYSTEM
        assert session.messages[0].content == "You write Python."
        assert session.system_message == "You write Python."

    def test_system_message_replaced_not_duplicated(self):
        self.store.update_session(self.session_id, system_message="one")
        self.store.update_session(self.session_id, system_message="two")
        session = self.store.get_session(self.session_id)

        system = [m for m in session.messages if m.role == Role.SYSTEM]
        assert len(system) == 1
        assert system[0].content == "two"

    def test_empty_system_message_removes_it(self):
        self.store.update_session(self.session_id, system_message="one")
        self.store.update_session(self.session_id, system_message="")
        session = self.store.get_session(self.session_id)

        assert session.system_message is None
        assert all(m.role != Role.SYSTEM for m in session.messages)

    def test_metadata_is_merged(self):
        self.store.update_session(self.session_id, metadata={"a": 1})
        self.store.update_session(self.session_id, title="Renamed", metadata={"b": 2})
        session = self.store.get_session(self.session_id)

        assert session.metadata == {"a": 1, "b": 2}
        assert session.title == "Renamed"

    def test_clear_history_keeps_system_message(self):
        self.store.update_session(self.session_id, system_message="keep me")
        self.store.add_message(self.session_id, Role.ASSISTANT, "hello")

        self.store.clear_history(self.session_id)
        session = self.store.get_session(self.session_id)

        assert len(session.messages) == 1
        assert session.messages[0].content == "keep me"

    def test_clear_history_without_system_message(self):
        self.store.clear_history(self.session_id)

        assert self.store.get_session(self.session_id).messages == []


class TestPersistence:
    """Test that the store round-trips through sqlite."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "history.db")

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_reload_restores_sessions_and_active_pointer(self):
        store = ConversationStore(SessionRepository(self.db_path))
        first = store.create_session("First", system_message="sys")
        store.add_message(first, Role.USER, "question")
        store.add_message(first, Role.ASSISTANT, "```js\nlet x = 1;\n```")
        second = store.create_session("Second")
        store.set_active_session(first)

        reloaded = ConversationStore(SessionRepository(self.db_path))

        assert reloaded.active_session_id == first
        assert {s.id for s in reloaded.list_sessions()} == {first, second}
        assert reloaded.get_session(first) == store.get_session(first)
        assert reloaded.get_session(second) == store.get_session(second)

    def test_deletion_is_persisted(self):
        store = ConversationStore(SessionRepository(self.db_path))
        session_id = store.create_session()
        store.delete_session(session_id)

        reloaded = ConversationStore(SessionRepository(self.db_path))

        assert reloaded.list_sessions() == []
        assert reloaded.active_session_id is None

    def test_session_lock_is_stable_per_session(self):
        store = ConversationStore()
        session_id = store.create_session()

        assert store.session_lock(session_id) is store.session_lock(session_id)
        with pytest.raises(SessionNotFoundError):
            store.session_lock("missing")

    def test_reappended_message_is_stored_under_new_id(self):
        store = ConversationStore(SessionRepository(self.db_path))
        first = store.create_session("First")
        second = store.create_session("Second")
        message = new_message(Role.USER, "shared")

        stored_first = store.append_message(first, message)
        stored_second = store.append_message(second, message)

        assert stored_first.id == message.id
        assert stored_second.id != message.id

        reloaded = ConversationStore(SessionRepository(self.db_path))
        assert reloaded.get_session(first) == store.get_session(first)
        assert reloaded.get_session(second) == store.get_session(second)

    def test_failed_save_leaves_memory_unchanged(self):
        store = ConversationStore(SessionRepository(self.db_path))
        session_id = store.create_session("Original")
        store.add_message(session_id, Role.USER, "kept")

        with patch.object(
            SessionRepository, "save_snapshot", side_effect=sqlite3.OperationalError("disk I/O error")
        ):
            with pytest.raises(sqlite3.OperationalError):
                store.add_message(session_id, Role.USER, "lost")
            with pytest.raises(sqlite3.OperationalError):
                store.clear_history(session_id)
            with pytest.raises(sqlite3.OperationalError):
                store.delete_session(session_id)

        session = store.get_session(session_id)
        assert [m.content for m in session.messages] == ["kept"]
        assert store.active_session_id == session_id

        reloaded = ConversationStore(SessionRepository(self.db_path))
        assert reloaded.get_session(session_id) == session

    def test_unserializable_metadata_is_not_applied(self):
        store = ConversationStore(SessionRepository(self.db_path))
        session_id = store.create_session("Original")

        with pytest.raises(TypeError):
            store.update_session(session_id, title="Renamed", metadata={"handle": object()})

        session = store.get_session(session_id)
        assert session.title == "Original"
        assert session.metadata == {}
        reloaded = ConversationStore(SessionRepository(self.db_path))
        assert reloaded.get_session(session_id) == session
