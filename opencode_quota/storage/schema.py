"""Schema-validated decoding of stored message rows.

Only the row columns and the payload's shape are required. Payload fields with
an unexpected type or a non-finite value decode as absent instead of failing
the row, so stats and aggregation see the same assistant messages.
"""

import json
import math
from typing import Any, Mapping, Optional

from loguru import logger
from pydantic import BaseModel, ConfigDict, Field, StrictStr, ValidationError, field_validator

from .models import MessageRecord, TokenCounts


def _finite_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    if isinstance(value, int):
        return value
    return value if math.isfinite(value) else None


def _token_count(value: Any) -> Optional[int]:
    number = _finite_number(value)
    if number is None or number < 0:
        return None
    return int(number)


def _optional_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


def _object_or_none(value: Any) -> Any:
    return value if isinstance(value, dict) else None


class CachePayload(BaseModel):
    """Cache token counts inside a message payload."""
    model_config = ConfigDict(extra="ignore")

    read: Optional[int] = None
    write: Optional[int] = None

    @field_validator("read", "write", mode="before")
    @classmethod
    def coerce_counts(cls, value: Any) -> Optional[int]:
        return _token_count(value)


class TokensPayload(BaseModel):
    """Token counts inside a message payload.

    Missing, negative or non-numeric buckets count as zero.
    """
    model_config = ConfigDict(extra="ignore")

    input: Optional[int] = None
    output: Optional[int] = None
    reasoning: Optional[int] = None
    cache: Optional[CachePayload] = None

    @field_validator("input", "output", "reasoning", mode="before")
    @classmethod
    def coerce_counts(cls, value: Any) -> Optional[int]:
        return _token_count(value)

    @field_validator("cache", mode="before")
    @classmethod
    def coerce_cache(cls, value: Any) -> Any:
        return _object_or_none(value)

    def to_counts(self) -> TokenCounts:
        cache = self.cache or CachePayload()
        return TokenCounts(
            input=self.input or 0,
            output=self.output or 0,
            reasoning=self.reasoning or 0,
            cache_read=cache.read or 0,
            cache_write=cache.write or 0,
        )


class TimePayload(BaseModel):
    """Timing inside a message payload; creation time comes from the row."""
    model_config = ConfigDict(extra="ignore")

    completed: Optional[int] = None

    @field_validator("completed", mode="before")
    @classmethod
    def coerce_completed(cls, value: Any) -> Optional[int]:
        number = _finite_number(value)
        return int(number) if number is not None else None


class MessagePayload(BaseModel):
    """The JSON document stored in message.data."""
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    role: str = "unknown"
    provider_id: Optional[str] = Field(default=None, alias="providerID")
    model_id: Optional[str] = Field(default=None, alias="modelID")
    tokens: Optional[TokensPayload] = None
    cost: Optional[float] = None
    time: Optional[TimePayload] = None
    agent: Optional[str] = None
    mode: Optional[str] = None

    @field_validator("role", mode="before")
    @classmethod
    def coerce_role(cls, value: Any) -> str:
        return value if isinstance(value, str) else "unknown"

    @field_validator("provider_id", "model_id", "agent", "mode", mode="before")
    @classmethod
    def coerce_strings(cls, value: Any) -> Optional[str]:
        return _optional_str(value)

    @field_validator("cost", mode="before")
    @classmethod
    def coerce_cost(cls, value: Any) -> Optional[float]:
        number = _finite_number(value)
        if number is None:
            return None
        try:
            return float(number)
        except OverflowError:
            return None

    @field_validator("tokens", "time", mode="before")
    @classmethod
    def coerce_objects(cls, value: Any) -> Any:
        return _object_or_none(value)


class MessageRow(BaseModel):
    """Columns selected from the message table."""
    id: StrictStr
    session_id: StrictStr
    time_created: int
    data: StrictStr

    @field_validator("time_created", mode="before")
    @classmethod
    def check_time_created(cls, value: Any) -> int:
        number = _finite_number(value)
        if number is None:
            raise ValueError("time_created must be a finite number")
        return int(number)


def decode_message_row(row: Mapping[str, Any]) -> Optional[MessageRecord]:
    """Decode a message row into a MessageRecord.

    Returns None when the row or its payload fails validation; callers skip
    such rows instead of failing the whole query.
    """
    try:
        columns = MessageRow.model_validate(dict(row))
        payload = MessagePayload.model_validate_json(columns.data)
    except ValidationError as e:
        logger.debug(f"Skipping undecodable message row {_row_id(row)}: {e.error_count()} error(s)")
        return None

    tokens = payload.tokens.to_counts() if payload.tokens else TokenCounts()
    completed = payload.time.completed if payload.time else None

    return MessageRecord(
        id=columns.id,
        session_id=columns.session_id,
        role=payload.role,
        created_at_ms=columns.time_created,
        provider_id=payload.provider_id,
        model_id=payload.model_id,
        tokens=tokens,
        cost_usd=payload.cost,
        completed_at_ms=completed,
        agent=payload.agent,
        mode=payload.mode,
    )


def payload_role(data: Any) -> Optional[str]:
    """Extract just the role from a raw payload, or None if undecodable."""
    if not isinstance(data, str):
        return None
    try:
        payload = json.loads(data)
    except ValueError:
        return None
    if not isinstance(payload, dict):
        return None
    role = payload.get("role")
    return role if isinstance(role, str) else None


def _row_id(row: Mapping[str, Any]) -> str:
    try:
        return str(row["id"])
    except (KeyError, IndexError):
        return "<unknown>"
