"""
Token counting and usage tracking.

Holds the usage metadata reported by the upstream provider and the
character based token approximation used when nothing was reported.
"""

import math
from dataclasses import dataclass
from typing import Optional

# Rough estimate for English text
CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage reported by the upstream provider.

    Providers usually report prompt and completion counts together with
    a total. When a total is reported it is authoritative.
    """
    prompt_tokens: int
    completion_tokens: int
    reported_total: Optional[int] = None

    @property
    def total_tokens(self) -> int:
        """Total tokens used (reported total, else prompt + completion)."""
        if self.reported_total is not None:
            return self.reported_total
        return self.prompt_tokens + self.completion_tokens


def approximate_tokens(text: str) -> int:
    """Approximate the token count of ``text`` from its character length."""
    return math.ceil(len(text) / CHARS_PER_TOKEN)
