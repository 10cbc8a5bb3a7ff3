"""
Local quota counter.

Approximates a provider's daily and per-minute request limits from local
state, for providers with no quota endpoint. The state file is a small
versioned JSON document; every read and write first drops timestamps outside
the rolling window and resets the day count when the UTC day has changed.

Writes go to a temporary file that is then moved over the real file. Two
processes recording at the same moment can lose one increment; the count is
best-effort, not shared-writer safe.
"""

import errno
import json
import math
import os
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal, ROUND_HALF_UP
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger

STATE_VERSION = 1
DEFAULT_DAY_LIMIT = 1000
DEFAULT_RPM_LIMIT = 60
DEFAULT_WINDOW_MS = 60_000
DEFAULT_MAX_RECENT = 300

# Rename failures that mean "destination exists and can't be replaced by move"
_REPLACE_RETRY_ERRNOS = {errno.EPERM, errno.EEXIST, errno.EACCES, errno.ENOTEMPTY}


def now_ms() -> int:
    return int(time.time() * 1000)


def utc_day_key(ts_ms: int) -> str:
    """UTC calendar day (YYYY-MM-DD) of a timestamp."""
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def next_utc_midnight_iso(ts_ms: int) -> str:
    now = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    midnight = datetime(now.year, now.month, now.day, tzinfo=timezone.utc) + timedelta(days=1)
    return to_iso(int(midnight.timestamp() * 1000))


def to_iso(ts_ms: int) -> str:
    """ISO-8601 UTC timestamp with millisecond precision and a Z suffix."""
    dt = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def percent_remaining(used: int, limit: int) -> int:
    """Remaining allowance as a whole percentage in [0, 100]."""
    if limit <= 0:
        return 0
    remaining = Decimal(limit - used) * 100 / Decimal(limit)
    rounded = int(remaining.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return max(0, min(100, rounded))


@dataclass(frozen=True)
class LocalQuotaState:
    """Persisted counter state.

    recent holds completion timestamps (ms) inside the rolling window, oldest
    first.
    """
    utc_day: str
    day_count: int = 0
    recent: List[int] = field(default_factory=list)
    updated_at_ms: int = 0
    version: int = STATE_VERSION

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the on-disk JSON shape."""
        return {
            "version": self.version,
            "utcDay": self.utc_day,
            "dayCount": self.day_count,
            "recent": list(self.recent),
            "updatedAt": self.updated_at_ms,
        }


@dataclass(frozen=True)
class QuotaDimension:
    used: int
    limit: int
    percent_remaining: int
    reset_time_iso: Optional[str] = None


@dataclass(frozen=True)
class ComputedQuota:
    """Remaining allowance per dimension.

    day.reset_time_iso is always set; rpm.reset_time_iso is None when there
    are no recent completions.
    """
    day: QuotaDimension
    rpm: QuotaDimension


def default_state(now: int) -> LocalQuotaState:
    return LocalQuotaState(utc_day=utc_day_key(now), day_count=0, recent=[], updated_at_ms=now)


def normalize(raw: Any, now: int) -> LocalQuotaState:
    """Coerce arbitrary decoded JSON into a valid state.

    Invalid fields fall back to their defaults; recent keeps only positive
    finite numbers, truncated to integers.
    """
    if not isinstance(raw, dict):
        return default_state(now)

    recent_raw = raw.get("recent")
    recent = []
    if isinstance(recent_raw, list):
        for ts in recent_raw:
            if _is_number(ts) and math.isfinite(ts) and ts > 0:
                recent.append(int(ts))

    utc_day = raw.get("utcDay")
    if not isinstance(utc_day, str) or len(utc_day) != 10:
        utc_day = utc_day_key(now)

    day_count = raw.get("dayCount")
    if _is_number(day_count) and math.isfinite(day_count) and day_count >= 0:
        day_count = int(day_count)
    else:
        day_count = 0

    updated_at = raw.get("updatedAt")
    if _is_number(updated_at) and math.isfinite(updated_at) and updated_at > 0:
        updated_at = int(updated_at)
    else:
        updated_at = now

    return LocalQuotaState(
        utc_day=utc_day,
        day_count=day_count,
        recent=recent,
        updated_at_ms=updated_at,
    )


def apply_reset_and_prune(
    state: LocalQuotaState,
    now: int,
    window_ms: int = DEFAULT_WINDOW_MS,
    max_recent: int = DEFAULT_MAX_RECENT
) -> LocalQuotaState:
    """Prune recent to [now - window_ms, now] and reset the day on a new UTC day.

    Depends only on the state and the wall clock, so it is idempotent and
    independent readers agree without coordinating.
    """
    today = utc_day_key(now)
    floor = now - window_ms
    recent = [ts for ts in state.recent if floor <= ts <= now][-max_recent:]

    day_count = state.day_count if state.utc_day == today else 0

    return LocalQuotaState(
        utc_day=today,
        day_count=day_count,
        recent=recent,
        updated_at_ms=now,
    )


class LocalQuotaCounter:
    """Durable day/rolling-window counter backed by a JSON state file."""

    def __init__(
        self,
        path: Union[str, Path],
        day_limit: int = DEFAULT_DAY_LIMIT,
        rpm_limit: int = DEFAULT_RPM_LIMIT,
        window_ms: int = DEFAULT_WINDOW_MS,
        max_recent: int = DEFAULT_MAX_RECENT,
        clock=now_ms
    ):
        """Initialize the counter.

        Args:
            path: State file location
            day_limit: Requests allowed per UTC day
            rpm_limit: Requests allowed per rolling window
            window_ms: Rolling window length in milliseconds
            max_recent: Maximum number of timestamps kept in recent
            clock: Returns the current time in epoch milliseconds
        """
        self.path = Path(path)
        self.day_limit = day_limit
        self.rpm_limit = rpm_limit
        self.window_ms = window_ms
        self.max_recent = max_recent
        self._clock = clock

    def read(self, now: Optional[int] = None) -> LocalQuotaState:
        """Load the state as of now; a missing or corrupt file yields a fresh state."""
        now = self._clock() if now is None else now
        return self.apply_reset_and_prune(self._load(now), now)

    def normalize(self, raw: Any, now: int) -> LocalQuotaState:
        return normalize(raw, now)

    def apply_reset_and_prune(self, state: LocalQuotaState, now: int) -> LocalQuotaState:
        return apply_reset_and_prune(state, now, window_ms=self.window_ms, max_recent=self.max_recent)

    def record_completion(self, at_ms: Optional[int] = None) -> LocalQuotaState:
        """Count one completed request and persist the new state.

        Args:
            at_ms: Completion time, defaults to now

        Returns:
            The state after recording

        Raises:
            OSError: If the state could not be written; the completion was
                not durably recorded
        """
        now = self._clock() if at_ms is None else at_ms
        state = self.apply_reset_and_prune(self._load(now), now)

        updated = replace(
            state,
            day_count=state.day_count + 1,
            recent=(state.recent + [now])[-self.max_recent:],
            updated_at_ms=now,
        )

        self._write(updated)
        logger.debug(
            f"Recorded completion in {self.path}: day={updated.day_count} recent={len(updated.recent)}"
        )
        return updated

    def compute_quota(
        self,
        state: LocalQuotaState,
        now: Optional[int] = None,
        day_limit: Optional[int] = None,
        rpm_limit: Optional[int] = None
    ) -> ComputedQuota:
        """Compute remaining day and rolling-window allowance."""
        now = self._clock() if now is None else now
        day_limit = self.day_limit if day_limit is None else day_limit
        rpm_limit = self.rpm_limit if rpm_limit is None else rpm_limit
        state = self.apply_reset_and_prune(state, now)

        day_used = max(0, state.day_count)
        rpm_used = len(state.recent)
        rpm_reset = to_iso(min(state.recent) + self.window_ms) if state.recent else None

        return ComputedQuota(
            day=QuotaDimension(
                used=day_used,
                limit=day_limit,
                percent_remaining=percent_remaining(day_used, day_limit),
                reset_time_iso=next_utc_midnight_iso(now),
            ),
            rpm=QuotaDimension(
                used=rpm_used,
                limit=rpm_limit,
                percent_remaining=percent_remaining(rpm_used, rpm_limit),
                reset_time_iso=rpm_reset,
            ),
        )

    def _load(self, now: int) -> LocalQuotaState:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                raw = json.load(f)
        except FileNotFoundError:
            return default_state(now)
        except (OSError, ValueError) as e:
            logger.warning(f"Ignoring unreadable local quota state {self.path}: {e}")
            return default_state(now)
        return normalize(raw, now)

    def _write(self, state: LocalQuotaState) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f"{self.path.name}.tmp-{os.getpid()}-{uuid.uuid4().hex[:12]}")

        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(state.to_dict(), f, indent=2)

        try:
            os.replace(tmp, self.path)
        except OSError as e:
            if e.errno not in _REPLACE_RETRY_ERRNOS:
                logger.error(f"Failed to write local quota state {self.path}: {e}")
                _remove_quietly(tmp)
                raise
            logger.warning(f"Replacing {self.path} after rename failed: {e}")
            _remove_quietly(self.path)
            try:
                os.replace(tmp, self.path)
            except OSError as retry_error:
                logger.error(f"Failed to write local quota state {self.path}: {retry_error}")
                _remove_quietly(tmp)
                raise


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _remove_quietly(path: Path) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.debug(f"Could not remove {path}: {e}")
