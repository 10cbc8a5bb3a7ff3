"""
Storage modules for OpenCode Quota.

Read-only access to the OpenCode session/message store.
"""

from .models import DbStats, MessageRecord, SessionRecord, TokenCounts
from .repository import MessageRepository, SessionNotFoundError

__all__ = [
    "DbStats",
    "MessageRecord",
    "MessageRepository",
    "SessionNotFoundError",
    "SessionRecord",
    "TokenCounts",
]
