"""
Token counting and usage tracking.

Provider-reported token counts are used as-is; the estimator below is only
for providers that omit usage and for pre-flight budget projections.
"""

import math
from dataclasses import dataclass
from typing import Iterable

# Average characters per token for English prose
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    input_tokens: int
    output_tokens: int
    estimated: bool = False

    def __post_init__(self):
        """Validate token counts are non-negative."""
        if self.input_tokens < 0:
            raise ValueError("input_tokens cannot be negative")
        if self.output_tokens < 0:
            raise ValueError("output_tokens cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


def estimate_tokens(text: str) -> int:
    """Estimate the token count of a piece of text.

    Deterministic approximation: one token per four characters, rounded up.
    Identical text always yields the identical estimate.
    """
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_prompt_tokens(prompt: str, history: Iterable[str] = ()) -> int:
    """Estimate input tokens for a prompt plus its prior conversation turns."""
    return estimate_tokens(prompt) + sum(estimate_tokens(turn) for turn in history)
