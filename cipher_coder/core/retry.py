"""
Retry with exponential backoff.

Wraps any fallible asynchronous operation with bounded retries. Delays grow
exponentially with jitter; rate-limit responses may dictate their own delay.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

from .errors import ErrorVerdict, RetryExhaustedError, classify

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 3
JITTER_RATIO = 0.3


@dataclass(frozen=True)
class BackoffConfig:
    """Backoff bounds in milliseconds."""
    base_delay_ms: float = 1000.0
    max_delay_ms: float = 10000.0
    max_override_delay_ms: float = 60000.0

    def __post_init__(self):
        """Validate delay bounds."""
        if self.base_delay_ms <= 0:
            raise ValueError("base_delay_ms must be > 0")
        if self.max_delay_ms < self.base_delay_ms:
            raise ValueError("max_delay_ms must be >= base_delay_ms")
        if self.max_override_delay_ms < self.max_delay_ms:
            raise ValueError("max_override_delay_ms must be >= max_delay_ms")


class RetryPolicy:
    """Executes async operations with classified, bounded retries.

    Only failures whose verdict is retryable are attempted again. Each
    attempt's failure is classified with ``classifier`` (defaults to
    :func:`cipher_coder.core.errors.classify`).
    """

    def __init__(
        self,
        backoff: Optional[BackoffConfig] = None,
        max_retries: int = DEFAULT_MAX_RETRIES,
        classifier: Callable[[BaseException], ErrorVerdict] = classify,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Optional[random.Random] = None,
    ):
        """Initialize the policy.

        Args:
            backoff: Delay bounds (defaults to 1s base, 10s max)
            max_retries: Default number of retries after the first attempt
            classifier: Maps an exception to an ErrorVerdict
            sleep: Coroutine function taking seconds, used between attempts
            rng: Random source for jitter
        """
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        self.backoff = backoff or BackoffConfig()
        self.max_retries = max_retries
        self.classifier = classifier
        self._sleep = sleep
        self._rng = rng or random.Random()

    def compute_delay(self, attempt: int) -> float:
        """Compute the jittered backoff delay for a 0-indexed attempt.

        Returns:
            Delay in milliseconds within [base_delay_ms, max_delay_ms]
        """
        base = self.backoff.base_delay_ms
        ceiling = self.backoff.max_delay_ms
        exponential = min(ceiling, base * (2 ** attempt))
        jitter = self._rng.uniform(-JITTER_RATIO, JITTER_RATIO)
        delay = exponential * (1 + jitter)
        return min(ceiling, max(base, delay))

    def delay_for(self, attempt: int, verdict: ErrorVerdict) -> float:
        """Pick the delay before the next attempt, honoring server overrides."""
        if verdict.suggested_delay_ms is not None:
            return min(self.backoff.max_override_delay_ms, verdict.suggested_delay_ms)
        return self.compute_delay(attempt)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: Optional[int] = None,
    ) -> T:
        """Run ``operation`` until it succeeds or retries are exhausted.

        Args:
            operation: Zero-argument callable returning an awaitable
            max_retries: Override for the number of retries

        Returns:
            The operation's result

        Raises:
            RetryExhaustedError: On a non-retryable failure or when retries
                run out; the last exception is chained as the cause
        """
        retries = self.max_retries if max_retries is None else max_retries
        if retries < 0:
            raise ValueError("max_retries must be >= 0")

        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as exc:
                verdict = self.classifier(exc)
                logger.warning(
                    "Call failed (attempt %d/%d, %s): %s",
                    attempt + 1, retries + 1, verdict.category.value, verdict.message
                )

                if not verdict.retryable or attempt >= retries:
                    logger.error(
                        "Giving up after %d attempt(s): %s", attempt + 1, verdict.message
                    )
                    raise RetryExhaustedError(verdict, attempt + 1) from exc

                delay_ms = self.delay_for(attempt, verdict)
                logger.info("Retrying in %.2f seconds", delay_ms / 1000)
                await self._sleep(delay_ms / 1000)
                attempt += 1
