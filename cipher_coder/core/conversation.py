"""
Chat session ownership and ordering.

The ConversationStore is the only writer of session state. Callers receive
deep-copied snapshots, so the message lists can only change through the
operations defined here.

Session lifecycle: created -> active (messages appended) -> deleted.
"""

import asyncio
import copy
import logging
import re
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from ..storage.models import ChatMessage, ChatSession
from ..storage.repository import SessionRepository
from .errors import SessionNotFoundError
from .models import Role

logger = logging.getLogger(__name__)

_CODE_BLOCK_RE = re.compile(r"```(?:([\w+#.-]+)[ \t]*\r?\n)?[\s\S]*?```")


def new_message(role: Role, content: str, timestamp: Optional[datetime] = None) -> ChatMessage:
    """Create a chat message, flagging fenced code blocks.

    Args:
        role: Author of the message
        content: Message text
        timestamp: Creation time (defaults to now)

    Returns:
        A new ChatMessage with a fresh id
    """
    match = _CODE_BLOCK_RE.search(content)
    return ChatMessage(
        id=str(uuid.uuid4()),
        role=role,
        content=content,
        timestamp=timestamp or datetime.now(),
        has_code=match is not None,
        code_language=match.group(1) if match else None,
    )


class ConversationStore:
    """Owns chat sessions and the active-session pointer.

    The session map is guarded by a re-entrant lock, so individual operations
    are atomic with respect to each other. Multi-step exchanges (append the
    user turn, generate, append the reply) are serialized per session with
    :meth:`session_lock`.

    When a repository is given, the full snapshot is loaded at construction
    and rewritten after every mutation. A mutation is built on copies and
    only replaces the in-memory state once the snapshot has been saved, so a
    failed save leaves memory and disk in agreement.
    """

    def __init__(self, repository: Optional[SessionRepository] = None):
        self._repository = repository
        self._lock = threading.RLock()
        self._sessions: Dict[str, ChatSession] = {}
        self._active_session_id: Optional[str] = None
        self._session_locks: Dict[str, asyncio.Lock] = {}
        self._load()

    def _load(self) -> None:
        if self._repository is None:
            return
        sessions, active_session_id = self._repository.load_snapshot()
        with self._lock:
            self._sessions = sessions
            if active_session_id is None and sessions:
                active_session_id = self._most_recent_id(sessions)
            self._active_session_id = active_session_id
        logger.info("Loaded %d chat sessions", len(sessions))

    def _commit(self, sessions: Dict[str, ChatSession], active_session_id: Optional[str]) -> None:
        # Persist first; memory only changes once the snapshot is on disk
        if self._repository is not None:
            self._repository.save_snapshot(sessions, active_session_id)
            logger.debug("Chat sessions saved")
        self._sessions = sessions
        self._active_session_id = active_session_id

    def _get(self, session_id: str) -> ChatSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    def _working_copy(self, session_id: str) -> Tuple[Dict[str, ChatSession], ChatSession]:
        session = copy.deepcopy(self._get(session_id))
        sessions = dict(self._sessions)
        sessions[session_id] = session
        return sessions, session

    def _message_id_in_use(self, message_id: str) -> bool:
        return any(
            m.id == message_id
            for session in self._sessions.values()
            for m in session.messages
        )

    @staticmethod
    def _most_recent_id(sessions: Dict[str, ChatSession]) -> Optional[str]:
        if not sessions:
            return None
        return max(sessions.values(), key=lambda s: s.updated_at).id

    @staticmethod
    def _touch(session: ChatSession, when: Optional[datetime] = None) -> None:
        # updated_at never moves backwards, even if the clock does
        session.updated_at = max(session.updated_at, when or datetime.now())

    def create_session(self, title: Optional[str] = None, system_message: Optional[str] = None) -> str:
        """Create a session and make it the active one.

        Args:
            title: Session title (defaults to "Chat Session N")
            system_message: Optional leading system instruction

        Returns:
            The new session id
        """
        now = datetime.now()
        with self._lock:
            session = ChatSession(
                id=str(uuid.uuid4()),
                title=title or f"Chat Session {len(self._sessions) + 1}",
                created_at=now,
                updated_at=now,
                system_message=system_message or None,
            )
            if system_message:
                session.messages.append(new_message(Role.SYSTEM, system_message, now))
            sessions = dict(self._sessions)
            sessions[session.id] = session
            self._commit(sessions, session.id)

        logger.info("Created new chat session: %s (%s)", session.title, session.id)
        return session.id

    def get_session(self, session_id: str) -> ChatSession:
        """Snapshot of a session.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        with self._lock:
            return copy.deepcopy(self._get(session_id))

    def has_session(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._sessions

    def list_sessions(self) -> List[ChatSession]:
        """Snapshots of all sessions, most recently updated first."""
        with self._lock:
            sessions = sorted(self._sessions.values(), key=lambda s: s.updated_at, reverse=True)
            return copy.deepcopy(sessions)

    @property
    def active_session_id(self) -> Optional[str]:
        with self._lock:
            return self._active_session_id

    def get_active_session(self) -> Optional[ChatSession]:
        """Snapshot of the active session, or None."""
        with self._lock:
            if self._active_session_id is None:
                return None
            return copy.deepcopy(self._sessions.get(self._active_session_id))

    def set_active_session(self, session_id: str) -> None:
        """Point the active session at ``session_id``.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        with self._lock:
            self._get(session_id)
            self._commit(self._sessions, session_id)

    def append_message(self, session_id: str, message: ChatMessage) -> ChatMessage:
        """Append a message to the end of a session.

        A message whose id is already stored (for example a snapshot being
        appended again) is stored under a fresh id.

        Args:
            session_id: Target session
            message: Message to append (stored as a copy)

        Returns:
            Snapshot of the stored message

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        with self._lock:
            sessions, session = self._working_copy(session_id)
            stored = copy.deepcopy(message)
            if self._message_id_in_use(stored.id):
                stored.id = str(uuid.uuid4())
            session.messages.append(stored)
            self._touch(session, stored.timestamp)
            self._commit(sessions, self._active_session_id)
            return copy.deepcopy(stored)

    def add_message(self, session_id: str, role: Role, content: str) -> ChatMessage:
        """Create and append a message in one step."""
        return self.append_message(session_id, new_message(role, content))

    def update_session(
        self,
        session_id: str,
        title: Optional[str] = None,
        system_message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Update session title, system message, or metadata.

        Setting ``system_message`` replaces the existing system message, adds
        one at the front if there is none, and removes it when empty.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        with self._lock:
            sessions, session = self._working_copy(session_id)

            if title:
                session.title = title

            if system_message is not None:
                index = session.find_system_message()
                if system_message:
                    session.system_message = system_message
                    if index is not None:
                        session.messages[index].content = system_message
                    else:
                        session.messages.insert(0, new_message(Role.SYSTEM, system_message))
                else:
                    session.system_message = None
                    if index is not None:
                        del session.messages[index]

            if metadata:
                session.metadata = {**session.metadata, **metadata}

            self._touch(session)
            self._commit(sessions, self._active_session_id)

    def delete_session(self, session_id: str) -> None:
        """Delete a session.

        If it was active, the most recently updated remaining session becomes
        active (or none if no sessions remain).

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        with self._lock:
            self._get(session_id)
            sessions = dict(self._sessions)
            del sessions[session_id]
            active_session_id = self._active_session_id
            if active_session_id == session_id:
                active_session_id = self._most_recent_id(sessions)
            self._commit(sessions, active_session_id)
            self._session_locks.pop(session_id, None)
        logger.info("Deleted chat session: %s", session_id)

    def clear_history(self, session_id: str) -> None:
        """Remove all messages except the system message, if any.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        with self._lock:
            sessions, session = self._working_copy(session_id)
            index = session.find_system_message()
            session.messages = [session.messages[index]] if index is not None else []
            self._touch(session)
            self._commit(sessions, self._active_session_id)
        logger.info("Cleared history for session: %s", session_id)

    def session_lock(self, session_id: str) -> asyncio.Lock:
        """Lock serializing multi-step exchanges on one session.

        Raises:
            SessionNotFoundError: If the session does not exist
        """
        with self._lock:
            self._get(session_id)
            lock = self._session_locks.get(session_id)
            if lock is None:
                lock = asyncio.Lock()
                self._session_locks[session_id] = lock
            return lock
