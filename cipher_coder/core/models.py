"""
Request and response models for inference dispatch.

Requests are immutable once built; responses are produced exactly once per request.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .token_counter import TokenUsage


class Role(Enum):
    """Author of a conversation message."""
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class FinishReason(Enum):
    """Canonical reason a generation ended."""
    STOP = "stop"
    LENGTH = "length"
    CONTENT_FILTER = "content_filter"
    TIMEOUT = "timeout"
    ERROR = "error"


class SourceType(Enum):
    """Where a response was produced."""
    LOCAL = "local"
    REMOTE = "remote"


class SourcePreference(Enum):
    """Caller preference for where a request should run."""
    AUTO = "auto"
    LOCAL = "local"
    REMOTE = "remote"


class ErrorKind(Enum):
    """Kind of failure captured in an error response."""
    TRANSPORT = "transport"
    CONFIGURATION = "configuration"
    CAPACITY = "capacity"
    LOCAL_FAILURE = "local_failure"


@dataclass(frozen=True)
class GenerationParams:
    """Sampling parameters passed 1:1 to the model.

    Unset values fall back to the configured inference defaults.
    """
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    frequency_penalty: Optional[float] = None
    presence_penalty: Optional[float] = None
    stop_sequences: Tuple[str, ...] = ()

    def __post_init__(self):
        """Validate parameter ranges."""
        if self.max_tokens is not None and not 1 <= self.max_tokens <= 4096:
            raise ValueError("max_tokens must be between 1 and 4096")
        if self.temperature is not None and not 0 <= self.temperature <= 2:
            raise ValueError("temperature must be between 0 and 2")
        if self.top_p is not None and not 0 <= self.top_p <= 1:
            raise ValueError("top_p must be between 0 and 1")
        if self.frequency_penalty is not None and not -2 <= self.frequency_penalty <= 2:
            raise ValueError("frequency_penalty must be between -2 and 2")
        if self.presence_penalty is not None and not -2 <= self.presence_penalty <= 2:
            raise ValueError("presence_penalty must be between -2 and 2")
        if len(self.stop_sequences) > 4:
            raise ValueError("at most 4 stop sequences are allowed")
        # Accept lists from callers but keep the instance hashable
        object.__setattr__(self, "stop_sequences", tuple(self.stop_sequences))


@dataclass(frozen=True)
class CodeContext:
    """Editor context surrounding a code-generation request."""
    language: str
    surrounding_code: Optional[str] = None
    file_path: Optional[str] = None
    project_metadata: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ConversationMessage:
    """A single turn of history sent along with a request."""
    role: Role
    content: str
    timestamp: Optional[datetime] = None


def _new_request_id() -> str:
    return str(uuid.uuid4())


@dataclass(frozen=True)
class Request:
    """A generation request.

    Chat requests carry conversation history (and optionally a system
    message); plain completion requests carry only the prompt.
    """
    prompt: str
    conversation_history: Tuple[ConversationMessage, ...] = ()
    system_message: Optional[str] = None
    model: Optional[str] = None
    params: GenerationParams = field(default_factory=GenerationParams)
    code_context: Optional[CodeContext] = None
    chat: bool = False
    id: str = field(default_factory=_new_request_id)
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self):
        """Validate the prompt and freeze the history."""
        if self.prompt is None:
            raise ValueError("prompt is required")
        object.__setattr__(self, "conversation_history", tuple(self.conversation_history))

    @property
    def is_chat(self) -> bool:
        """Whether this request carries conversation history."""
        return self.chat or bool(self.conversation_history) or self.system_message is not None

    def chat_turns(self) -> Tuple[ConversationMessage, ...]:
        """Prior history followed by the prompt as the latest user turn.

        The system message is not included.
        """
        return self.conversation_history + (ConversationMessage(Role.USER, self.prompt),)


@dataclass(frozen=True)
class Response:
    """Normalized result of dispatching a Request.

    Failures never raise; they are reported with finish_reason ERROR and a
    populated error message.
    """
    request_id: str
    generated_text: str
    source: SourceType
    finish_reason: FinishReason = FinishReason.STOP
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    latency_ms: float = 0.0
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    model: Optional[str] = None

    @property
    def ok(self) -> bool:
        """Whether the generation completed without error."""
        return self.finish_reason != FinishReason.ERROR and self.error is None

    @classmethod
    def failure(
        cls,
        request_id: str,
        source: SourceType,
        error: str,
        error_kind: ErrorKind,
        latency_ms: float = 0.0,
    ) -> "Response":
        """Build a terminal error response."""
        return cls(
            request_id=request_id,
            generated_text="",
            source=source,
            finish_reason=FinishReason.ERROR,
            latency_ms=latency_ms,
            error=error,
            error_kind=error_kind,
        )
