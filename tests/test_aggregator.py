"""
Unit tests for usage aggregation.

Tests totals, breakdown ordering and the session token summary.
"""

import pytest

from conftest import assistant, user
from opencode_quota.core.aggregator import (
    AggregateResult,
    AggregateTotals,
    SourceProviderUsage,
    UsageWindow,
    aggregate_usage,
    get_session_token_summary,
    resolve_pricing,
)
from opencode_quota.core.pricing import parse_pricing_snapshot
from opencode_quota.core.token_counter import TokenUsage
from opencode_quota.storage.repository import SessionNotFoundError


PRICING = parse_pricing_snapshot({
    "_meta": {"source": "test"},
    "providers": {
        "anthropic": {
            "claude-sonnet-4": {"input": 3, "output": 15, "cache_read": 0.3, "cache_write": 3.75},
        },
        "openai": {
            "gpt-5": {"input": 1.25, "output": 10, "cache_read": 0.125},
        },
    },
})

SESSIONS = [
    {"id": "ses_one", "title": "First", "time_created": 1_000},
    {"id": "ses_two", "title": "Second", "time_created": 2_000},
]


@pytest.fixture
def mixed_repo(store_factory):
    return store_factory(
        sessions=SESSIONS,
        messages=[
            assistant("msg_01", "ses_one", 1_100, provider="anthropic", model="claude-sonnet-4",
                      input=1_000_000, output=100_000),
            assistant("msg_02", "ses_one", 1_200, provider="openai", model="gpt-5",
                      input=200_000, output=10_000, reasoning=5_000),
            assistant("msg_03", "ses_two", 2_100, provider="openrouter", model="gpt-5",
                      input=50_000),
            assistant("msg_04", "ses_two", 2_200, provider="acme", model="mystery-1",
                      input=7_000, output=3_000),
            user("msg_05", "ses_two", 2_300),
            assistant("msg_06", "ses_two", 2_400, provider="anthropic", model="claude-haiku-9",
                      input=400),
        ],
    )


class TestAggregateUsage:
    """Test aggregate_usage totals and breakdowns."""

    def test_totals_split_priced_and_unknown(self, mixed_repo):
        result = aggregate_usage(mixed_repo, PRICING, now_ms=10_000)

        assert result.totals.message_count == 5
        assert result.totals.session_count == 2
        assert result.totals.priced.input == 1_250_000
        assert result.totals.unknown.input == 7_400
        assert result.totals.all_tokens.total_tokens == (
            result.totals.priced.total_tokens + result.totals.unknown.total_tokens
        )

    def test_cost_uses_per_million_rates(self, mixed_repo):
        result = aggregate_usage(mixed_repo, PRICING, now_ms=10_000)

        # anthropic: 1M * 3 + 100k * 15 = 3 + 1.5
        # openai: 200k * 1.25 + 10k * 10 + 5k * 10 (reasoning at output rate)
        # openrouter/gpt-5 inferred to openai: 50k * 1.25
        expected = 4.5 + (0.25 + 0.1 + 0.05) + 0.0625
        assert result.totals.cost_usd == pytest.approx(expected)

    def test_breakdowns_sum_to_totals(self, mixed_repo):
        result = aggregate_usage(mixed_repo, PRICING, now_ms=10_000)

        all_tokens = result.totals.all_tokens.to_dict()
        for rows in (result.by_source_provider, result.by_source_model, result.by_session):
            summed = TokenUsage()
            for row in rows:
                summed.add(row.tokens)
            assert summed.to_dict() == all_tokens
            assert sum(r.message_count for r in rows) == result.totals.message_count

        priced = TokenUsage()
        for row in result.by_model:
            priced.add(row.tokens)
        assert priced.to_dict() == result.totals.priced.to_dict()

    def test_unknown_lists_unpriced_pairs(self, mixed_repo):
        result = aggregate_usage(mixed_repo, PRICING, now_ms=10_000)

        pairs = [(u.source_provider_id, u.source_model_id) for u in result.unknown]
        assert pairs == [("acme", "mystery-1"), ("anthropic", "claude-haiku-9")]

    def test_inferred_provider_keys_by_model_on_pricing_provider(self, mixed_repo):
        result = aggregate_usage(mixed_repo, PRICING, now_ms=10_000)

        openai_row = next(m for m in result.by_model if m.model_id == "gpt-5")
        assert openai_row.provider_id == "openai"
        assert openai_row.message_count == 2

        sources = {(m.source_provider_id, m.source_model_id) for m in result.by_source_model}
        assert ("openrouter", "gpt-5") in sources

    def test_source_models_grouped_by_provider(self, mixed_repo):
        result = aggregate_usage(mixed_repo, PRICING, now_ms=10_000)

        providers = [p.source_provider_id for p in result.by_source_provider]
        assert providers[0] == "anthropic"

        seen = []
        for row in result.by_source_model:
            if not seen or seen[-1] != row.source_provider_id:
                assert row.source_provider_id not in seen
                seen.append(row.source_provider_id)
        assert seen == providers

    def test_reasoning_bucket_always_present(self, mixed_repo):
        result = aggregate_usage(mixed_repo, PRICING, now_ms=10_000)

        for row in result.by_source_model:
            assert "reasoning" in row.tokens.to_dict()
        assert result.totals.priced.reasoning == 5_000
        assert result.totals.unknown.reasoning == 0

    def test_sessions_carry_titles(self, mixed_repo):
        result = aggregate_usage(mixed_repo, PRICING, now_ms=10_000)

        titles = {s.session_id: s.title for s in result.by_session}
        assert titles == {"ses_one": "First", "ses_two": "Second"}
        assert result.by_session[0].session_id == "ses_one"

    def test_window_is_inclusive(self, mixed_repo):
        result = aggregate_usage(mixed_repo, PRICING, since_ms=1_200, until_ms=2_200)

        assert result.window == UsageWindow(since_ms=1_200, until_ms=2_200)
        assert result.totals.message_count == 3

    def test_window_defaults_to_epoch_through_now(self, mixed_repo):
        result = aggregate_usage(mixed_repo, PRICING, now_ms=2_150)

        assert result.window == UsageWindow(since_ms=0, until_ms=2_150)
        assert result.totals.message_count == 3

    def test_without_pricing_everything_is_unknown(self, mixed_repo):
        result = aggregate_usage(mixed_repo, now_ms=10_000)

        assert result.by_model == []
        assert result.totals.cost_usd == 0.0
        assert result.totals.priced.total_tokens == 0
        assert len(result.unknown) == 5

    def test_session_scope(self, mixed_repo):
        result = aggregate_usage(mixed_repo, PRICING, session_id="ses_two", now_ms=10_000)

        assert result.totals.message_count == 3
        assert [s.session_id for s in result.by_session] == ["ses_two"]

    def test_session_scope_unknown_session(self, mixed_repo):
        with pytest.raises(SessionNotFoundError):
            aggregate_usage(mixed_repo, PRICING, session_id="ses_nope", now_ms=10_000)

    def test_message_count_matches_store_stats(self, store_factory):
        repo = store_factory(
            sessions=SESSIONS,
            messages=[
                assistant("msg_1", "ses_one", 1_000, input=10, time={"completed": 1500.5}),
                assistant("msg_2", "ses_one", 1_100, input=10, time={"created": "2026-02-23T12:00:00Z"}),
                assistant("msg_3", "ses_two", 1_200, input=10, cost=float("-1")),
            ],
        )

        result = aggregate_usage(repo, PRICING, now_ms=10_000)
        assert result.totals.message_count == repo.get_stats().assistant_message_count == 3

    def test_empty_store(self, store_factory):
        repo = store_factory(sessions=SESSIONS)
        result = aggregate_usage(repo, PRICING, now_ms=10_000)

        assert result.totals.message_count == 0
        assert result.totals.session_count == 0
        assert result.by_source_provider == []

    def test_unavailable_store(self, tmp_path):
        from opencode_quota.storage.repository import MessageRepository

        result = aggregate_usage(MessageRepository([tmp_path / "none.db"]), PRICING, now_ms=10_000)
        assert result.totals.message_count == 0


class TestVerifyTotals:
    """Test breakdown consistency checks."""

    def test_detects_mismatched_breakdown(self):
        totals = AggregateTotals(priced=TokenUsage(input=10), message_count=1)
        result = AggregateResult(
            window=UsageWindow(0, 1),
            totals=totals,
            by_source_provider=[SourceProviderUsage("anthropic", TokenUsage(input=9), 0.0, 1)],
        )

        with pytest.raises(ValueError, match="by_source_provider tokens"):
            result.verify_totals()

    def test_empty_result_is_consistent(self):
        AggregateResult(window=UsageWindow(0, 1), totals=AggregateTotals()).verify_totals()


class TestResolvePricing:
    """Test provider/model pricing resolution."""

    def test_exact_match(self):
        provider, model, rates = resolve_pricing(PRICING, "anthropic", "claude-sonnet-4")
        assert (provider, model) == ("anthropic", "claude-sonnet-4")

    def test_infers_unique_owner(self):
        provider, model, _ = resolve_pricing(PRICING, "github-copilot", "gpt-5")
        assert provider == "openai"

    def test_missing_model(self):
        assert resolve_pricing(PRICING, "anthropic", None) is None
        assert resolve_pricing(PRICING, None, "unknown-model") is None


class TestSessionTokenSummary:
    """Test per-session token summaries."""

    def test_groups_by_model_sorted_by_volume(self, mixed_repo):
        summary = get_session_token_summary(mixed_repo, "ses_two")

        assert [m.model_id for m in summary.models] == ["gpt-5", "mystery-1", "claude-haiku-9"]
        assert summary.total_input == 57_400
        assert summary.total_output == 3_000

    def test_missing_model_id_grouped_as_unknown(self, store_factory):
        repo = store_factory(
            sessions=SESSIONS,
            messages=[{
                "id": "msg_1", "session_id": "ses_one", "time_created": 1,
                "payload": {"role": "assistant", "tokens": {"input": 4, "output": 2}},
            }],
        )

        summary = get_session_token_summary(repo, "ses_one")
        assert [m.model_id for m in summary.models] == ["unknown"]

    def test_session_without_messages(self, store_factory):
        repo = store_factory(sessions=SESSIONS)
        summary = get_session_token_summary(repo, "ses_one")
        assert summary.models == []
        assert summary.total_input == 0
