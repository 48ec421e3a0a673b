"""
Repository pattern for chat session persistence.

Stores the session map (id -> session) and the active-session pointer.
Each save rewrites the whole snapshot in a single transaction so a reader
never sees a partially written history.
"""

import json
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from ..core.models import Role
from .db import DEFAULT_DB_PATH, get_connection
from .models import ChatMessage, ChatSession

ACTIVE_SESSION_KEY = "active_session_id"


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create the chat history tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS chat_session (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                system_message TEXT,
                metadata TEXT NOT NULL DEFAULT '{}'
            );
            CREATE TABLE IF NOT EXISTS chat_message (
                id TEXT PRIMARY KEY,
                session_id TEXT NOT NULL
                    REFERENCES chat_session(id) ON DELETE CASCADE,
                position INTEGER NOT NULL,
                role TEXT NOT NULL,
                content TEXT NOT NULL,
                timestamp TEXT NOT NULL,
                has_code INTEGER NOT NULL DEFAULT 0,
                code_language TEXT
            );
            CREATE TABLE IF NOT EXISTS store_state (
                key TEXT PRIMARY KEY,
                value TEXT
            );
        """)
        conn.commit()
    finally:
        conn.close()


class SessionRepository:
    """Loads and saves conversation store snapshots.

    Failures are loud: a write that cannot be completed is rolled back and
    the error propagates to the caller.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository, creating tables on first use.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        initialize_schema(db_path)

    def save_snapshot(self, sessions: Dict[str, ChatSession], active_session_id: Optional[str]) -> None:
        """Replace the persisted sessions and active pointer atomically.

        Args:
            sessions: Mapping of session id to session
            active_session_id: Id of the active session, or None
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN TRANSACTION")
            conn.execute("DELETE FROM chat_message")
            conn.execute("DELETE FROM chat_session")
            for session in sessions.values():
                conn.execute("""
                    INSERT INTO chat_session
                    (id, title, created_at, updated_at, system_message, metadata)
                    VALUES (?, ?, ?, ?, ?, ?)
                """, (
                    session.id,
                    session.title,
                    session.created_at.isoformat(),
                    session.updated_at.isoformat(),
                    session.system_message,
                    json.dumps(session.metadata)
                ))
                for position, message in enumerate(session.messages):
                    conn.execute("""
                        INSERT INTO chat_message
                        (id, session_id, position, role, content, timestamp,
                         has_code, code_language)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """, (
                        message.id,
                        session.id,
                        position,
                        message.role.value,
                        message.content,
                        message.timestamp.isoformat(),
                        int(message.has_code),
                        message.code_language
                    ))
            conn.execute(
                "INSERT OR REPLACE INTO store_state (key, value) VALUES (?, ?)",
                (ACTIVE_SESSION_KEY, active_session_id)
            )
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def load_snapshot(self) -> Tuple[Dict[str, ChatSession], Optional[str]]:
        """Load every persisted session and the active pointer.

        Returns:
            Tuple of (session map, active session id)
        """
        conn = get_connection(self.db_path)
        try:
            sessions: Dict[str, ChatSession] = {}
            cursor = conn.execute("""
                SELECT id, title, created_at, updated_at, system_message, metadata
                FROM chat_session
                ORDER BY created_at
            """)
            for row in cursor.fetchall():
                sessions[row[0]] = ChatSession(
                    id=row[0],
                    title=row[1],
                    created_at=datetime.fromisoformat(row[2]),
                    updated_at=datetime.fromisoformat(row[3]),
                    system_message=row[4],
                    metadata=json.loads(row[5])
                )

            cursor = conn.execute("""
                SELECT id, session_id, role, content, timestamp, has_code, code_language
                FROM chat_message
                ORDER BY session_id, position
            """)
            for row in cursor.fetchall():
                session = sessions.get(row[1])
                if session is None:
                    continue
                session.messages.append(ChatMessage(
                    id=row[0],
                    role=Role(row[2]),
                    content=row[3],
                    timestamp=datetime.fromisoformat(row[4]),
                    has_code=bool(row[5]),
                    code_language=row[6]
                ))

            row = conn.execute(
                "SELECT value FROM store_state WHERE key = ?", (ACTIVE_SESSION_KEY,)
            ).fetchone()
            active_session_id = row[0] if row else None
            if active_session_id not in sessions:
                active_session_id = None
            return sessions, active_session_id
        finally:
            conn.close()

    def list_session_ids(self) -> List[str]:
        """Ids of all persisted sessions."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("SELECT id FROM chat_session ORDER BY updated_at DESC")
            return [row[0] for row in cursor.fetchall()]
        finally:
            conn.close()
