"""
Data models for storage layer.

Defines chat sessions and messages as persisted by the conversation store.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from ..core.models import Role


@dataclass
class ChatMessage:
    """One message in a chat session.

    Messages are append-only; only the single system message may be
    replaced or removed.
    """
    id: str
    role: Role
    content: str
    timestamp: datetime
    has_code: bool = False
    code_language: Optional[str] = None


@dataclass
class ChatSession:
    """A persistent, ordered conversation between user and assistant."""
    id: str
    title: str
    created_at: datetime
    updated_at: datetime
    messages: List[ChatMessage] = field(default_factory=list)
    system_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def find_system_message(self) -> Optional[int]:
        """Index of the system message, or None if there is none."""
        for index, message in enumerate(self.messages):
            if message.role == Role.SYSTEM:
                return index
        return None
