"""
CLI interface for OpenCode Quota.

Provides command-line access to usage reports and the local quota counter.
"""

import sys
from typing import Optional

import typer
import yaml
from rich.console import Console

from opencode_quota.cli.commands import (
    EXIT_CODE_FAIL,
    EXIT_CODE_PASS,
    CommandResult,
    build_context,
    dispatch,
)
from opencode_quota.config.loader import load_config

app = typer.Typer()
console = Console()


def _run(ctx: typer.Context, name: str, **kwargs) -> None:
    """Build collaborators from config, run a command and exit with its code."""
    try:
        config = load_config(ctx.obj.get("config_path") if ctx.obj else None)
        command_ctx = build_context(config)
    except (FileNotFoundError, ValueError, yaml.YAMLError) as e:
        console.print(f"[red]Configuration error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    result: CommandResult = dispatch(name, command_ctx, **kwargs)
    # Plain write keeps pre-rendered tables intact
    sys.stdout.write(result.output)
    sys.exit(result.exit_code)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to YAML configuration file"
    )
):
    """OpenCode Quota CLI."""
    ctx.obj = {"config_path": config}
    if ctx.invoked_subcommand is None:
        console.print("OpenCode Quota - Use --help to see available commands")


@app.command()
def stats(ctx: typer.Context):
    """Show session and message counts for the local store."""
    _run(ctx, "stats")


@app.command()
def report(
    ctx: typer.Context,
    since: Optional[str] = typer.Option(None, "--since", help="First local day (YYYY-MM-DD)"),
    until: Optional[str] = typer.Option(None, "--until", help="Last local day, inclusive (YYYY-MM-DD)"),
    days: Optional[int] = typer.Option(None, "--days", "-d", help="Look back this many days"),
    session: Optional[str] = typer.Option(None, "--session", "-s", help="Restrict to one session"),
    top_models: int = typer.Option(20, "--top-models", help="Maximum model rows"),
):
    """Aggregate token usage and cost over a time window."""
    _run(ctx, "report", since=since, until=until, days=days, session_id=session, top_models=top_models)


@app.command()
def session(ctx: typer.Context, session_id: str = typer.Argument(..., help="Session id (ses_...)")):
    """Show per-model token totals for one session."""
    _run(ctx, "session", session_id=session_id)


@app.command("local-quota")
def local_quota(
    ctx: typer.Context,
    record: bool = typer.Option(False, "--record", "-r", help="Record one completion first")
):
    """Show the local day and per-minute quota."""
    _run(ctx, "local-quota", record=record)


if __name__ == "__main__":
    app()
