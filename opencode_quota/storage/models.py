"""
Data models for storage layer.

Defines the immutable records read from the OpenCode store.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class TokenCounts:
    """Token buckets attached to a single message.

    Absent buckets are stored as zero so they never leak None into sums.
    """
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0

    @property
    def total(self) -> int:
        """All tokens across every bucket."""
        return self.input + self.output + self.reasoning + self.cache_read + self.cache_write


@dataclass(frozen=True)
class MessageRecord:
    """Immutable message read from the append-only store."""
    id: str
    session_id: str
    role: str
    created_at_ms: int
    provider_id: Optional[str] = None
    model_id: Optional[str] = None
    tokens: TokenCounts = field(default_factory=TokenCounts)
    cost_usd: Optional[float] = None
    completed_at_ms: Optional[int] = None
    agent: Optional[str] = None
    mode: Optional[str] = None


@dataclass(frozen=True)
class SessionRecord:
    """Session metadata."""
    id: str
    created_at_ms: Optional[int] = None
    updated_at_ms: Optional[int] = None
    title: Optional[str] = None
    parent_id: Optional[str] = None


@dataclass(frozen=True)
class DbStats:
    """Row counts for the store; db_path is None when no store was found."""
    db_path: Optional[Path]
    session_count: int
    message_count: int
    assistant_message_count: int
