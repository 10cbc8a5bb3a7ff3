"""
Token counting and usage tracking.

Accumulates per-bucket token totals across messages.
"""

from dataclasses import dataclass
from typing import Dict

from opencode_quota.storage.models import TokenCounts


@dataclass
class TokenUsage:
    """Running token totals.

    Every bucket is always present, including reasoning when it is zero.
    """
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens across all buckets."""
        return self.input + self.output + self.reasoning + self.cache_read + self.cache_write

    def add(self, counts: TokenCounts) -> None:
        """Add one message's (or another total's) buckets to this total."""
        self.input += counts.input
        self.output += counts.output
        self.reasoning += counts.reasoning
        self.cache_read += counts.cache_read
        self.cache_write += counts.cache_write

    def to_dict(self) -> Dict[str, int]:
        return {
            "input": self.input,
            "output": self.output,
            "reasoning": self.reasoning,
            "cache_read": self.cache_read,
            "cache_write": self.cache_write,
        }
