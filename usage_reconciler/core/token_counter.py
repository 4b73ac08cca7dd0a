"""
Token counting and usage tracking.

Holds the four-part token tuple reported for Claude messages.
"""

from dataclasses import dataclass


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation.

    Contains exact token counts as reported by the API, split into
    fresh input, output, cache reads and cache writes.
    """
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    def __post_init__(self):
        for name in ("input_tokens", "output_tokens", "cache_read_tokens", "cache_creation_tokens"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @property
    def total_tokens(self) -> int:
        """Total tokens across all four categories."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_creation_tokens
        )

    @property
    def cache_tokens(self) -> int:
        return self.cache_read_tokens + self.cache_creation_tokens

    def is_empty(self) -> bool:
        return self.total_tokens == 0

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
        )

    def absolute_difference(self, other: "TokenUsage") -> int:
        """Sum of per-category absolute differences."""
        return (
            abs(self.input_tokens - other.input_tokens)
            + abs(self.output_tokens - other.output_tokens)
            + abs(self.cache_read_tokens - other.cache_read_tokens)
            + abs(self.cache_creation_tokens - other.cache_creation_tokens)
        )
