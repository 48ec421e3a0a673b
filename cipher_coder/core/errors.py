"""
Error taxonomy and classification.

Classifies failed transport calls into categories with a retryability verdict.
Classification is a pure function of the error; it never performs I/O.
"""

import asyncio
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

import openai


class CipherCoderError(Exception):
    """Base class for all errors raised by cipher_coder."""


class ConfigurationError(CipherCoderError, ValueError):
    """Raised when required setup (model path, credentials) is missing or invalid."""


class CapacityError(CipherCoderError):
    """Raised when local inference is rejected by admission control."""
    def __init__(self, message: str, busy: bool = True):
        super().__init__(message)
        self.busy = busy


class SessionNotFoundError(CipherCoderError, KeyError):
    """Raised when a chat session id is unknown."""
    def __init__(self, session_id: str):
        super().__init__(f"Chat session not found: {session_id}")
        self.session_id = session_id

    def __str__(self) -> str:
        return self.args[0]


class ErrorCategory(Enum):
    """Transport-side failure categories."""
    NETWORK = "network"
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    AUTHENTICATION = "authentication"
    BAD_REQUEST = "bad_request"
    SERVER = "server"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ErrorVerdict:
    """Classification of a failed call."""
    category: ErrorCategory
    retryable: bool
    message: str
    status: Optional[int] = None
    suggested_delay_ms: Optional[float] = None


class RetryExhaustedError(CipherCoderError):
    """Raised by RetryPolicy when a call fails for good.

    Carries the verdict of the last failure and the number of attempts made.
    The original exception is chained as ``__cause__``.
    """
    def __init__(self, verdict: ErrorVerdict, attempts: int):
        super().__init__(f"Request failed after {attempts} attempt(s): {verdict.message}")
        self.verdict = verdict
        self.attempts = attempts


def _status_of(error: BaseException) -> Optional[int]:
    """Extract an HTTP status code from a transport error, if it carries one."""
    if isinstance(error, openai.APIStatusError):
        return error.status_code
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    if isinstance(status, int):
        return status
    return None


def _headers_of(error: BaseException) -> Any:
    response = getattr(error, "response", None)
    return getattr(response, "headers", None) or {}


def parse_retry_after(headers: Any) -> Optional[float]:
    """Parse a server-specified retry delay in milliseconds.

    Supports ``retry-after-ms``, ``Retry-After`` in seconds and
    ``Retry-After`` as an HTTP date.

    Args:
        headers: Mapping of response headers

    Returns:
        Delay in milliseconds, or None if absent or unparseable
    """
    if not headers:
        return None

    retry_after_ms = headers.get("retry-after-ms")
    if retry_after_ms is not None:
        try:
            return max(0.0, float(retry_after_ms))
        except (TypeError, ValueError):
            pass

    retry_after = headers.get("retry-after") or headers.get("Retry-After")
    if retry_after is None:
        return None

    try:
        return max(0.0, float(retry_after) * 1000)
    except (TypeError, ValueError):
        pass

    try:
        retry_at = parsedate_to_datetime(str(retry_after))
    except (TypeError, ValueError):
        return None
    if retry_at is None:
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    delta = (retry_at - datetime.now(timezone.utc)).total_seconds()
    return max(0.0, delta * 1000)


def classify(error: BaseException) -> ErrorVerdict:
    """Classify a failed call into a category and retryability verdict.

    Unknown failure modes are not retried so a caller never loops on an
    error it does not understand.

    Args:
        error: The exception raised by the failed call

    Returns:
        ErrorVerdict describing the failure
    """
    # APITimeoutError subclasses APIConnectionError, so timeouts go first
    if isinstance(error, (openai.APITimeoutError, asyncio.TimeoutError, TimeoutError)):
        return ErrorVerdict(ErrorCategory.TIMEOUT, True, "Request timed out")

    if isinstance(error, (openai.APIConnectionError, ConnectionError)):
        return ErrorVerdict(ErrorCategory.NETWORK, True, "Network error occurred")

    status = _status_of(error)
    if status is not None:
        if status == 408:
            return ErrorVerdict(ErrorCategory.TIMEOUT, True, "Request timed out", status)
        if status == 429:
            return ErrorVerdict(
                ErrorCategory.RATE_LIMIT,
                True,
                "Rate limit exceeded",
                status,
                suggested_delay_ms=parse_retry_after(_headers_of(error)),
            )
        if status in (401, 403):
            return ErrorVerdict(ErrorCategory.AUTHENTICATION, False, "Authentication failed", status)
        if 400 <= status < 500:
            return ErrorVerdict(ErrorCategory.BAD_REQUEST, False, f"Bad request: {error}", status)
        if status >= 500:
            return ErrorVerdict(ErrorCategory.SERVER, True, f"Server error: {error}", status)

    return ErrorVerdict(ErrorCategory.UNKNOWN, False, str(error) or type(error).__name__, status)
