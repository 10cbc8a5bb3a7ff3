"""
Command implementations.

Each command returns a CommandResult instead of printing or raising, so a
host can tell a handled command (with its output) from one it should pass
on to someone else.
"""

import io
import re
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from opencode_quota.config.loader import QuotaConfig
from opencode_quota.core.aggregator import AggregateResult, aggregate_usage, get_session_token_summary
from opencode_quota.core.local_quota import LocalQuotaCounter
from opencode_quota.core.pricing import EMPTY_PRICING_TABLE, PricingTable, load_pricing_table
from opencode_quota.storage.repository import MessageRepository, SessionNotFoundError

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

DAY_MS = 86_400_000
RENDER_WIDTH = 120


@dataclass(frozen=True)
class CommandResult:
    """Tagged command outcome; handled=False means the command isn't ours."""
    handled: bool
    output: str = ""
    exit_code: int = EXIT_CODE_PASS


NOT_HANDLED = CommandResult(handled=False)


@dataclass
class CommandContext:
    """Collaborators shared by all commands."""
    repository: MessageRepository
    pricing: PricingTable
    counter: LocalQuotaCounter


def build_context(config: QuotaConfig) -> CommandContext:
    """Create the repository, pricing table and counter from configuration."""
    repository = MessageRepository(list(config.store.paths) or None)
    pricing = load_pricing_table(config.pricing.path) if config.pricing.path else EMPTY_PRICING_TABLE
    counter = LocalQuotaCounter(
        path=config.local_quota.path,
        day_limit=config.local_quota.day_limit,
        rpm_limit=config.local_quota.rpm_limit,
        window_ms=config.local_quota.window_ms,
        max_recent=config.local_quota.max_recent,
    )
    return CommandContext(repository=repository, pricing=pricing, counter=counter)


def parse_ymd(value: str) -> Optional[datetime]:
    """Parse YYYY-MM-DD as local midnight; None for bad format or impossible dates."""
    if not re.fullmatch(r"\d{4}-\d{2}-\d{2}", value or ""):
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d")
    except ValueError:
        return None


def run_stats(ctx: CommandContext) -> CommandResult:
    stats = ctx.repository.get_stats()
    if stats.db_path is None:
        return CommandResult(handled=True, output="No OpenCode message store found.\n")

    lines = [
        f"Store: {stats.db_path}",
        f"Sessions: {stats.session_count:,}",
        f"Messages: {stats.message_count:,}",
        f"Assistant messages: {stats.assistant_message_count:,}",
    ]
    return CommandResult(handled=True, output="\n".join(lines) + "\n")


def run_report(
    ctx: CommandContext,
    title: str = "Token Usage",
    since: Optional[str] = None,
    until: Optional[str] = None,
    days: Optional[int] = None,
    session_id: Optional[str] = None,
    top_models: int = 20,
    top_sessions: int = 10,
    now_ms: Optional[int] = None
) -> CommandResult:
    """Aggregate usage for a window and render it as tables."""
    now_ms = int(time.time() * 1000) if now_ms is None else now_ms
    since_ms = None
    until_ms = None

    if since is not None:
        start = parse_ymd(since)
        if start is None:
            return CommandResult(True, f"Invalid --since date: {since} (expected YYYY-MM-DD)\n", EXIT_CODE_FAIL)
        since_ms = int(start.timestamp() * 1000)
    elif days is not None:
        if days <= 0:
            return CommandResult(True, "--days must be > 0\n", EXIT_CODE_FAIL)
        since_ms = now_ms - days * DAY_MS

    if until is not None:
        end = parse_ymd(until)
        if end is None:
            return CommandResult(True, f"Invalid --until date: {until} (expected YYYY-MM-DD)\n", EXIT_CODE_FAIL)
        until_ms = int(end.timestamp() * 1000) + DAY_MS - 1

    if since_ms is not None and until_ms is not None and since_ms > until_ms:
        return CommandResult(True, "--since must not be after --until\n", EXIT_CODE_FAIL)

    try:
        result = aggregate_usage(
            ctx.repository,
            ctx.pricing,
            since_ms=since_ms,
            until_ms=until_ms,
            session_id=session_id,
            now_ms=now_ms,
        )
    except SessionNotFoundError as e:
        return CommandResult(True, f"{e} (checked: {e.checked_path})\n", EXIT_CODE_FAIL)

    return CommandResult(
        handled=True,
        output=format_report(title, result, top_models=top_models, top_sessions=top_sessions),
    )


def run_session(ctx: CommandContext, session_id: str) -> CommandResult:
    try:
        summary = get_session_token_summary(ctx.repository, session_id)
    except SessionNotFoundError as e:
        return CommandResult(True, f"{e} (checked: {e.checked_path})\n", EXIT_CODE_FAIL)

    if not summary.models:
        return CommandResult(True, f"No assistant messages in {session_id}\n")

    table = Table(title=f"Session Tokens: {session_id}")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    for model in summary.models:
        table.add_row(model.model_id, format_tokens(model.tokens.input), format_tokens(model.tokens.output))
    table.add_row("Total", format_tokens(summary.total_input), format_tokens(summary.total_output))

    return CommandResult(handled=True, output=_render([table]))


def run_local_quota(ctx: CommandContext, record: bool = False) -> CommandResult:
    """Show local quota usage, optionally recording one completion first."""
    counter = ctx.counter
    try:
        state = counter.record_completion() if record else counter.read()
    except OSError as e:
        return CommandResult(True, f"Failed to record completion: {e}\n", EXIT_CODE_FAIL)

    quota = counter.compute_quota(state)
    lines = [
        f"Day: {quota.day.used}/{quota.day.limit} used, {quota.day.percent_remaining}% remaining "
        f"(resets {quota.day.reset_time_iso})",
        f"RPM: {quota.rpm.used}/{quota.rpm.limit} used, {quota.rpm.percent_remaining}% remaining"
        + (f" (resets {quota.rpm.reset_time_iso})" if quota.rpm.reset_time_iso else ""),
    ]
    return CommandResult(handled=True, output="\n".join(lines) + "\n")


COMMANDS: Dict[str, Callable[..., CommandResult]] = {
    "stats": run_stats,
    "report": run_report,
    "session": run_session,
    "local-quota": run_local_quota,
}


def dispatch(name: str, ctx: CommandContext, **kwargs: Any) -> CommandResult:
    """Run a command by name; unknown names come back as not handled."""
    handler = COMMANDS.get(name)
    if handler is None:
        return NOT_HANDLED
    return handler(ctx, **kwargs)


def format_tokens(count: int) -> str:
    """Format token counts compactly (e.g. 950, 12.3k, 4.5M)."""
    if count >= 1_000_000:
        return f"{count / 1_000_000:.1f}M"
    if count >= 1_000:
        return f"{count / 1_000:.1f}k"
    return str(count)


def _format_currency(amount: float) -> str:
    return f"${amount:,.2f}"


def format_report(title: str, result: AggregateResult, top_models: int = 20, top_sessions: int = 10) -> str:
    """Render an aggregate result.

    Model rows are grouped by source provider with a blank row between
    providers; the Reasoning column appears only when some row has reasoning
    tokens.
    """
    totals = result.totals
    renderables: List[Any] = [
        f"[bold]{title}[/bold]",
        f"Window: {_format_ms(result.window.since_ms)} .. {_format_ms(result.window.until_ms)}",
        f"Messages: {totals.message_count:,}  Sessions: {totals.session_count:,}  "
        f"Cost: {_format_currency(totals.cost_usd)}",
    ]

    if totals.message_count == 0:
        renderables.append("\n[dim]No assistant messages in this window.[/]")
        return _render(renderables)

    rows = result.by_source_model[:top_models]
    show_reasoning = any(r.tokens.reasoning for r in rows)

    table = Table(title="Models")
    table.add_column("Source")
    table.add_column("Model")
    table.add_column("Input", justify="right")
    table.add_column("Output", justify="right")
    if show_reasoning:
        table.add_column("Reasoning", justify="right")
    table.add_column("Cache Read", justify="right")
    table.add_column("Cache Write", justify="right")
    table.add_column("Cost", justify="right")
    table.add_column("Msgs", justify="right")

    previous_provider = None
    for row in rows:
        if previous_provider is not None and row.source_provider_id != previous_provider:
            table.add_row(*[""] * len(table.columns))
        previous_provider = row.source_provider_id

        cells = [row.source_provider_id, row.source_model_id,
                 format_tokens(row.tokens.input), format_tokens(row.tokens.output)]
        if show_reasoning:
            cells.append(format_tokens(row.tokens.reasoning))
        cells += [format_tokens(row.tokens.cache_read), format_tokens(row.tokens.cache_write),
                  _format_currency(row.cost_usd), str(row.message_count)]
        table.add_row(*cells)
    renderables.append(table)

    if result.by_session and top_sessions > 0:
        sessions = Table(title="Top Sessions")
        sessions.add_column("Session")
        sessions.add_column("Title")
        sessions.add_column("Tokens", justify="right")
        sessions.add_column("Cost", justify="right")
        for s in result.by_session[:top_sessions]:
            sessions.add_row(s.session_id, s.title or "", format_tokens(s.tokens.total_tokens),
                             _format_currency(s.cost_usd))
        renderables.append(sessions)

    if result.unknown:
        renderables.append("[bold yellow]Unknown pricing[/]")
        for u in result.unknown:
            renderables.append(
                f"  {u.source_provider_id}/{u.source_model_id}: "
                f"{format_tokens(u.tokens.total_tokens)} tokens in {u.message_count} message(s)"
            )

    return _render(renderables)


def _format_ms(ts_ms: int) -> str:
    return datetime.fromtimestamp(ts_ms / 1000).strftime("%Y-%m-%d %H:%M")


def _render(renderables: List[Any]) -> str:
    buffer = io.StringIO()
    console = Console(file=buffer, width=RENDER_WIDTH, force_terminal=False, color_system=None)
    for renderable in renderables:
        console.print(renderable)
    return buffer.getvalue()
