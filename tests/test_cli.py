"""
Tests for the CLI interface and command dispatch.
"""
import json
from unittest.mock import patch

import pytest
import yaml
from typer.testing import CliRunner

from conftest import assistant, create_store
from opencode_quota.cli.commands import (
    EXIT_CODE_FAIL,
    EXIT_CODE_PASS,
    NOT_HANDLED,
    CommandContext,
    dispatch,
    format_report,
    format_tokens,
    parse_ymd,
    run_report,
)
from opencode_quota.cli.main import app
from opencode_quota.core.aggregator import aggregate_usage
from opencode_quota.core.local_quota import LocalQuotaCounter
from opencode_quota.core.pricing import EMPTY_PRICING_TABLE, parse_pricing_snapshot
from opencode_quota.storage.repository import MessageRepository

runner = CliRunner()

PRICING_SNAPSHOT = {
    "providers": {
        "anthropic": {
            "claude-sonnet-4": {"input": 3, "output": 15},
            "claude-opus-4": {"input": 15, "output": 75},
        },
        "openai": {"gpt-5": {"input": 1.25, "output": 10}},
    },
}

SESSIONS = [{"id": "ses_main", "title": "Quota work", "time_created": 1_000}]

MESSAGES = [
    assistant("msg_1", "ses_main", 1_100, provider="anthropic", model="claude-sonnet-4",
              input=120_000, output=4_000),
    assistant("msg_2", "ses_main", 1_200, provider="anthropic", model="claude-opus-4",
              input=50_000, output=2_000),
    assistant("msg_3", "ses_main", 1_300, provider="openai", model="gpt-5",
              input=9_000, output=800),
]


@pytest.fixture
def workspace(tmp_path):
    """Store, pricing snapshot and config file in a temp dir."""
    create_store(tmp_path / "opencode.db", sessions=SESSIONS, messages=MESSAGES)
    (tmp_path / "pricing.json").write_text(json.dumps(PRICING_SNAPSHOT))
    config = {
        "store": {"paths": ["opencode.db"]},
        "pricing": {"path": "pricing.json"},
        "local_quota": {"path": "state/qwen-local-quota.json", "rpm_limit": 10},
    }
    config_path = tmp_path / "config.yaml"
    config_path.write_text(yaml.dump(config))
    return tmp_path, str(config_path)


@pytest.fixture
def context(tmp_path):
    create_store(tmp_path / "opencode.db", sessions=SESSIONS, messages=MESSAGES)
    return CommandContext(
        repository=MessageRepository([tmp_path / "opencode.db"]),
        pricing=parse_pricing_snapshot(PRICING_SNAPSHOT),
        counter=LocalQuotaCounter(tmp_path / "quota.json"),
    )


class TestCLI:
    """Test CLI commands."""

    def test_stats_command(self, workspace):
        """Test stats prints counts for the configured store."""
        _, config_path = workspace
        result = runner.invoke(app, ["--config", config_path, "stats"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Sessions: 1" in result.output
        assert "Messages: 3" in result.output
        assert "Assistant messages: 3" in result.output

    def test_stats_without_store(self, tmp_path):
        """Test stats reports a missing store without failing."""
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump({"store": {"paths": ["missing.db"]}}))

        result = runner.invoke(app, ["--config", str(config_path), "stats"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "No OpenCode message store found." in result.output

    def test_report_command(self, workspace):
        """Test report renders model and session tables."""
        _, config_path = workspace
        result = runner.invoke(app, ["--config", config_path, "report"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Token Usage" in result.output
        assert "Messages: 3" in result.output
        assert "claude-sonnet-4" in result.output
        assert "Quota work" in result.output
        assert "Unknown pricing" not in result.output

    def test_report_invalid_date(self, workspace):
        """Test report rejects malformed dates."""
        _, config_path = workspace
        result = runner.invoke(app, ["--config", config_path, "report", "--since", "2026-13-01"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid --since date" in result.output

    def test_report_unknown_session(self, workspace):
        """Test report for a missing session fails with the checked path."""
        tmp_path, config_path = workspace
        result = runner.invoke(app, ["--config", config_path, "report", "--session", "ses_gone"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Session not found: ses_gone" in result.output
        assert str(tmp_path / "opencode.db") in result.output

    def test_session_command(self, workspace):
        """Test session prints per-model tokens."""
        _, config_path = workspace
        result = runner.invoke(app, ["--config", config_path, "session", "ses_main"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "claude-opus-4" in result.output
        assert "Total" in result.output

    def test_session_command_invalid_id(self, workspace):
        _, config_path = workspace
        result = runner.invoke(app, ["--config", config_path, "session", "main"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "(invalid session ID format)" in result.output

    def test_local_quota_record(self, workspace):
        """Test local-quota --record persists a completion."""
        tmp_path, config_path = workspace
        result = runner.invoke(app, ["--config", config_path, "local-quota", "--record"])

        assert result.exit_code == EXIT_CODE_PASS
        assert "Day: 1/1000 used, 100% remaining" in result.output
        assert "RPM: 1/10 used, 90% remaining" in result.output

        state = json.loads((tmp_path / "state" / "qwen-local-quota.json").read_text())
        assert state["dayCount"] == 1

    def test_local_quota_write_failure(self, workspace):
        """Test local-quota exits non-zero when the state can't be written."""
        _, config_path = workspace
        with patch(
            "opencode_quota.core.local_quota.LocalQuotaCounter._write",
            side_effect=OSError("read-only file system"),
        ):
            result = runner.invoke(app, ["--config", config_path, "local-quota", "--record"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Failed to record completion" in result.output

    def test_missing_config_file(self, tmp_path):
        """Test a missing config file is a configuration error."""
        result = runner.invoke(app, ["--config", str(tmp_path / "nope.yaml"), "stats"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Configuration error" in result.output

    def test_invalid_config(self, tmp_path):
        config_path = tmp_path / "config.yaml"
        config_path.write_text(yaml.dump({"local_quota": {"window_ms": 0}}))

        result = runner.invoke(app, ["--config", str(config_path), "stats"])

        assert result.exit_code == EXIT_CODE_FAIL
        assert "window_ms must be > 0" in result.output


class TestDispatch:
    """Test command dispatch."""

    def test_unknown_command_not_handled(self, context):
        assert dispatch("quota-explain", context) is NOT_HANDLED
        assert not NOT_HANDLED.handled

    def test_known_command_handled(self, context):
        result = dispatch("stats", context)
        assert result.handled
        assert result.exit_code == EXIT_CODE_PASS

    def test_report_days_must_be_positive(self, context):
        result = run_report(context, days=0)
        assert result.handled
        assert result.exit_code == EXIT_CODE_FAIL

    def test_report_since_after_until(self, context):
        result = run_report(context, since="2026-03-02", until="2026-03-01")
        assert result.exit_code == EXIT_CODE_FAIL
        assert "--since must not be after --until" in result.output

    def test_report_window_excludes_old_messages(self, context):
        result = run_report(context, since="2026-01-01", now_ms=1_800_000_000_000)
        assert result.exit_code == EXIT_CODE_PASS
        assert "No assistant messages in this window." in result.output


class TestFormatting:
    """Test report rendering helpers."""

    def test_format_tokens(self):
        assert format_tokens(950) == "950"
        assert format_tokens(12_345) == "12.3k"
        assert format_tokens(4_500_000) == "4.5M"

    def test_parse_ymd(self):
        assert parse_ymd("2026-02-23").day == 23
        assert parse_ymd("2026-02-30") is None
        assert parse_ymd("23/02/2026") is None

    def test_blank_row_between_providers(self, context):
        result = aggregate_usage(context.repository, context.pricing, now_ms=10_000)
        lines = format_report("Usage", result).splitlines()

        opus = next(i for i, line in enumerate(lines) if "claude-opus-4" in line)
        sonnet = next(i for i, line in enumerate(lines) if "claude-sonnet-4" in line)
        gpt = next(i for i, line in enumerate(lines) if "gpt-5" in line)

        # Same provider rows are adjacent; a spacer row precedes the next provider
        assert sonnet == opus - 1
        assert gpt == opus + 2
        assert not any(c.isalnum() for c in lines[opus + 1])

    def test_reasoning_column_only_when_nonzero(self, context, tmp_path):
        result = aggregate_usage(context.repository, context.pricing, now_ms=10_000)
        assert "Reasoning" not in format_report("Usage", result)

        db_path = create_store(
            tmp_path / "reasoning.db",
            sessions=SESSIONS,
            messages=[assistant("msg_r", "ses_main", 1_000, provider="openai", model="gpt-5",
                                output=10, reasoning=25)],
        )
        result = aggregate_usage(MessageRepository([db_path]), EMPTY_PRICING_TABLE, now_ms=10_000)
        output = format_report("Usage", result)
        assert "Reasoning" in output
        assert "Unknown pricing" in output
        assert "openai/gpt-5" in output
