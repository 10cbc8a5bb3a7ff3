"""
Usage aggregation.

Turns assistant messages from the store into time-windowed statistics,
split into priced and unknown-pricing token buckets.

Breakdown invariants (checked by AggregateResult.verify_totals):
- by_source_provider, by_source_model and by_session cover every
  contributing message, so their tokens sum to priced + unknown.
- by_model covers priced messages only and sums to priced.
- unknown covers unpriced messages only and sums to unknown.
- cost and message counts sum the same way.
"""

import math
import time
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .pricing import EMPTY_PRICING_TABLE, ModelPricing, PricingTable, calculate_cost
from .token_counter import TokenUsage
from opencode_quota.storage.models import MessageRecord
from opencode_quota.storage.repository import MessageRepository

UNKNOWN_ID = "unknown"


@dataclass
class UsageWindow:
    """Inclusive creation-time window in epoch milliseconds."""
    since_ms: int
    until_ms: int


@dataclass
class AggregateTotals:
    """Totals across every message in the window."""
    priced: TokenUsage = field(default_factory=TokenUsage)
    unknown: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    message_count: int = 0
    session_count: int = 0

    @property
    def all_tokens(self) -> TokenUsage:
        combined = TokenUsage()
        combined.add(self.priced)
        combined.add(self.unknown)
        return combined


@dataclass
class SourceProviderUsage:
    source_provider_id: str
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    message_count: int = 0


@dataclass
class SourceModelUsage:
    """Usage for a (provider, model) pair exactly as recorded on messages."""
    source_provider_id: str
    source_model_id: str
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    message_count: int = 0


@dataclass
class ModelUsage:
    """Usage for a priced model, keyed by the pricing provider."""
    provider_id: str
    model_id: str
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    message_count: int = 0


@dataclass
class SessionUsage:
    session_id: str
    title: Optional[str] = None
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost_usd: float = 0.0
    message_count: int = 0


@dataclass
class UnknownModelUsage:
    """A (provider, model) pair that has no pricing data."""
    source_provider_id: str
    source_model_id: str
    tokens: TokenUsage = field(default_factory=TokenUsage)
    message_count: int = 0


@dataclass
class AggregateResult:
    """Complete aggregation for one window."""
    window: UsageWindow
    totals: AggregateTotals
    by_source_provider: List[SourceProviderUsage] = field(default_factory=list)
    by_source_model: List[SourceModelUsage] = field(default_factory=list)
    by_model: List[ModelUsage] = field(default_factory=list)
    by_session: List[SessionUsage] = field(default_factory=list)
    unknown: List[UnknownModelUsage] = field(default_factory=list)

    def verify_totals(self) -> None:
        """Check that every breakdown sums back to the totals.

        Raises:
            ValueError: If any breakdown disagrees with the totals
        """
        totals = self.totals
        all_tokens = totals.all_tokens.to_dict()

        full_breakdowns = {
            "by_source_provider": self.by_source_provider,
            "by_source_model": self.by_source_model,
            "by_session": self.by_session,
        }
        for name, rows in full_breakdowns.items():
            _check(name, "tokens", _sum_tokens(rows).to_dict(), all_tokens)
            _check(name, "message_count", sum(r.message_count for r in rows), totals.message_count)
            _check_cost(name, sum(r.cost_usd for r in rows), totals.cost_usd)

        _check("by_model", "tokens", _sum_tokens(self.by_model).to_dict(), totals.priced.to_dict())
        _check_cost("by_model", sum(r.cost_usd for r in self.by_model), totals.cost_usd)
        _check("unknown", "tokens", _sum_tokens(self.unknown).to_dict(), totals.unknown.to_dict())
        _check(
            "by_model+unknown",
            "message_count",
            sum(r.message_count for r in self.by_model) + sum(r.message_count for r in self.unknown),
            totals.message_count,
        )
        _check("by_session", "session_count", len(self.by_session), totals.session_count)


@dataclass
class ModelTokenSummary:
    model_id: str
    tokens: TokenUsage = field(default_factory=TokenUsage)


@dataclass
class SessionTokenSummary:
    """Per-model token totals for a single session (no cost)."""
    session_id: str
    models: List[ModelTokenSummary] = field(default_factory=list)

    @property
    def total_input(self) -> int:
        return sum(m.tokens.input for m in self.models)

    @property
    def total_output(self) -> int:
        return sum(m.tokens.output for m in self.models)


def aggregate_usage(
    repository: MessageRepository,
    pricing: Optional[PricingTable] = None,
    since_ms: Optional[int] = None,
    until_ms: Optional[int] = None,
    session_id: Optional[str] = None,
    now_ms: Optional[int] = None
) -> AggregateResult:
    """Aggregate assistant message usage over a time window.

    Args:
        repository: Store to read messages from
        pricing: Pricing lookup; without one every model is unknown
        since_ms: Window start (inclusive), defaults to the epoch
        until_ms: Window end (inclusive), defaults to now
        session_id: Optional session to restrict the query to
        now_ms: Current time override

    Returns:
        AggregateResult whose breakdowns sum to its totals

    Raises:
        SessionNotFoundError: If session_id is given and cannot be found
    """
    pricing = pricing or EMPTY_PRICING_TABLE
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    window = UsageWindow(
        since_ms=since_ms if since_ms is not None else 0,
        until_ms=until_ms if until_ms is not None else now_ms,
    )

    if session_id:
        messages = repository.iter_assistant_messages_for_session(
            session_id, since_ms=window.since_ms, until_ms=window.until_ms
        )
    else:
        messages = repository.iter_assistant_messages(
            since_ms=window.since_ms, until_ms=window.until_ms
        )

    titles = {}
    if messages:
        titles = {sid: s.title for sid, s in repository.read_sessions_index().items()}

    result = _aggregate_messages(window, messages, pricing, titles)
    result.verify_totals()
    return result


def get_session_token_summary(repository: MessageRepository, session_id: str) -> SessionTokenSummary:
    """Sum tokens per model for one session.

    Raises:
        SessionNotFoundError: If the session id is malformed, the store is
            unavailable, or the session does not exist
    """
    messages = repository.iter_assistant_messages_for_session(session_id)

    by_model: Dict[str, ModelTokenSummary] = {}
    for message in messages:
        model_id = message.model_id or UNKNOWN_ID
        if model_id not in by_model:
            by_model[model_id] = ModelTokenSummary(model_id=model_id)
        by_model[model_id].tokens.add(message.tokens)

    models = sorted(
        by_model.values(),
        key=lambda m: (-(m.tokens.input + m.tokens.output), m.model_id)
    )
    return SessionTokenSummary(session_id=session_id, models=models)


def resolve_pricing(
    pricing: PricingTable,
    provider_id: Optional[str],
    model_id: Optional[str]
) -> Optional[Tuple[str, str, ModelPricing]]:
    """Match a message's provider/model to a pricing entry.

    Tries the exact pair first, then the single provider that owns the model
    id in the snapshot.

    Returns:
        (pricing provider, model, rates), or None when unpriced
    """
    rates = pricing.lookup(provider_id, model_id)
    if rates is not None:
        return provider_id, model_id, rates

    inferred = pricing.infer_provider_for_model(model_id)
    if inferred is not None:
        rates = pricing.lookup(inferred, model_id)
        if rates is not None:
            return inferred, model_id, rates

    return None


def _aggregate_messages(
    window: UsageWindow,
    messages: Iterable[MessageRecord],
    pricing: PricingTable,
    titles: Dict[str, Optional[str]]
) -> AggregateResult:
    totals = AggregateTotals()
    by_source_provider: Dict[str, SourceProviderUsage] = {}
    by_source_model: Dict[Tuple[str, str], SourceModelUsage] = {}
    by_model: Dict[Tuple[str, str], ModelUsage] = {}
    by_session: Dict[str, SessionUsage] = {}
    unknown: Dict[Tuple[str, str], UnknownModelUsage] = {}

    for message in messages:
        source_provider = message.provider_id or UNKNOWN_ID
        source_model = message.model_id or UNKNOWN_ID
        match = resolve_pricing(pricing, message.provider_id, message.model_id)

        cost = 0.0
        if match is not None:
            provider_id, model_id, rates = match
            cost = calculate_cost(rates, message.tokens)
            totals.priced.add(message.tokens)

            row = by_model.get((provider_id, model_id))
            if row is None:
                row = by_model[(provider_id, model_id)] = ModelUsage(provider_id, model_id)
            row.tokens.add(message.tokens)
            row.cost_usd += cost
            row.message_count += 1
        else:
            totals.unknown.add(message.tokens)

            key = (source_provider, source_model)
            entry = unknown.get(key)
            if entry is None:
                entry = unknown[key] = UnknownModelUsage(source_provider, source_model)
            entry.tokens.add(message.tokens)
            entry.message_count += 1

        totals.cost_usd += cost
        totals.message_count += 1

        provider_row = by_source_provider.get(source_provider)
        if provider_row is None:
            provider_row = by_source_provider[source_provider] = SourceProviderUsage(source_provider)
        provider_row.tokens.add(message.tokens)
        provider_row.cost_usd += cost
        provider_row.message_count += 1

        model_row = by_source_model.get((source_provider, source_model))
        if model_row is None:
            model_row = by_source_model[(source_provider, source_model)] = SourceModelUsage(
                source_provider, source_model
            )
        model_row.tokens.add(message.tokens)
        model_row.cost_usd += cost
        model_row.message_count += 1

        session_row = by_session.get(message.session_id)
        if session_row is None:
            session_row = by_session[message.session_id] = SessionUsage(
                message.session_id, title=titles.get(message.session_id)
            )
        session_row.tokens.add(message.tokens)
        session_row.cost_usd += cost
        session_row.message_count += 1

    totals.session_count = len(by_session)

    # Providers ordered by volume; each provider's models stay contiguous.
    providers = sorted(
        by_source_provider.values(),
        key=lambda p: (-p.tokens.total_tokens, p.source_provider_id)
    )
    provider_rank = {p.source_provider_id: i for i, p in enumerate(providers)}
    source_models = sorted(
        by_source_model.values(),
        key=lambda m: (provider_rank[m.source_provider_id], -m.tokens.total_tokens, m.source_model_id)
    )

    return AggregateResult(
        window=window,
        totals=totals,
        by_source_provider=providers,
        by_source_model=source_models,
        by_model=sorted(
            by_model.values(),
            key=lambda m: (-m.cost_usd, -m.tokens.total_tokens, m.provider_id, m.model_id)
        ),
        by_session=sorted(
            by_session.values(),
            key=lambda s: (-s.tokens.total_tokens, s.session_id)
        ),
        unknown=sorted(
            unknown.values(),
            key=lambda u: (-u.tokens.total_tokens, u.source_provider_id, u.source_model_id)
        ),
    )


def _sum_tokens(rows) -> TokenUsage:
    total = TokenUsage()
    for row in rows:
        total.add(row.tokens)
    return total


def _check(breakdown: str, what: str, observed, expected) -> None:
    if observed != expected:
        raise ValueError(
            f"{breakdown} {what} ({observed}) does not match totals ({expected})"
        )


def _check_cost(breakdown: str, observed: float, expected: float) -> None:
    if not math.isclose(observed, expected, rel_tol=1e-9, abs_tol=1e-9):
        raise ValueError(
            f"{breakdown} cost ({observed}) does not match totals ({expected})"
        )
