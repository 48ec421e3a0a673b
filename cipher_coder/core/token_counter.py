"""
Token counting and usage tracking.

Normalizes token counts reported by providers and estimates them for local models.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported for a single generation.

    Remote providers report exact counts; local inference uses estimates.
    """
    prompt_tokens: int = 0
    completion_tokens: int = 0

    def __post_init__(self):
        """Validate token counts are non-negative."""
        if self.prompt_tokens < 0 or self.completion_tokens < 0:
            raise ValueError("token counts must be >= 0")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Estimate token count as the number of whitespace-separated words."""
    return len(text.split())


def estimate_usage(prompt: str, completion: str) -> TokenUsage:
    """Build an estimated TokenUsage for a prompt/completion pair."""
    return TokenUsage(
        prompt_tokens=estimate_tokens(prompt),
        completion_tokens=estimate_tokens(completion)
    )
