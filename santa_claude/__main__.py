"""CLI entry point for santa-claude.

Any arguments that are not one of the commands below are passed straight
to Claude Code, which runs with session and token tracking.

Usage:
    santa-claude [CLAUDE_ARGS...]
    santa-claude stats
    santa-claude sessions [COUNT]
    santa-claude status
    santa-claude update-session-length
    santa-claude set-subscription-date DAY
    santa-claude purge --keep N
"""

import asyncio
import os
import sys
from typing import Awaitable, Callable, Optional

import click
import psutil
from rich.console import Console

from . import __version__, configure_logging
from .config import ConfigStore
from .errors import ProcessError, SantaClaudeError, ValidationError
from .wrapper import ClaudeWrapper, count_running_instances, ordinal_suffix

console = Console()
error_console = Console(stderr=True)

RUN_COMMAND = "run"


class PassthroughGroup(click.Group):
    """Routes unknown first arguments to the ``run`` command."""

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        passthrough = not args or (
            args[0] not in self.commands
            and args[0] not in ("--help", "-h", "--version", "-v")
        )
        if passthrough:
            args = [RUN_COMMAND, *args]
        return super().parse_args(ctx, args)


def _with_wrapper(
    action: Callable[[ClaudeWrapper], Awaitable[None]], require_store: bool = True
) -> None:
    """Run ``action`` against an initialized wrapper, reporting errors."""

    async def runner() -> None:
        wrapper = ClaudeWrapper()
        await wrapper.initialize(require_store)
        try:
            await action(wrapper)
        finally:
            await wrapper.close()

    try:
        asyncio.run(runner())
    except ProcessError as e:
        sys.exit(e.exit_code)
    except SantaClaudeError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)


@click.group(
    cls=PassthroughGroup,
    context_settings={"help_option_names": ["-h", "--help"]},
    epilog="""
Subscription tracking: run 'santa-claude set-subscription-date <day>' with the
day of month (1-31) your Claude subscription renews, as shown on
https://claude.ai/settings/billing.

Run 'claude --help' to see all options that can be passed through.
""",
)
@click.version_option(__version__, "-v", "--version", prog_name="santa-claude")
def cli() -> None:
    """Claude Code wrapper with session and token usage tracking."""
    level = "DEBUG" if os.environ.get("SANTA_CLAUDE_DEBUG") else "WARNING"
    configure_logging(level)


@cli.command(
    RUN_COMMAND,
    context_settings={"ignore_unknown_options": True, "allow_extra_args": True},
    add_help_option=False,
)
@click.argument("claude_args", nargs=-1, type=click.UNPROCESSED)
def run(claude_args: tuple[str, ...]) -> None:
    """Start Claude with tracking (default; passes args to Claude)."""

    async def action(wrapper: ClaudeWrapper) -> None:
        await wrapper.run_session(list(claude_args))

    # The wrapped program starts even when tracking is unavailable
    _with_wrapper(action, require_store=False)


@cli.command()
def stats() -> None:
    """Show detailed usage statistics."""
    _with_wrapper(lambda wrapper: wrapper.show_stats())


@cli.command()
@click.argument("count", type=click.IntRange(1, 10_000), default=10)
def sessions(count: int) -> None:
    """List recent sessions with token usage."""
    _with_wrapper(lambda wrapper: wrapper.list_recent_sessions(count))


@cli.command()
def status() -> None:
    """Show running instances and the active session."""
    try:
        running: Optional[int] = count_running_instances()
    except psutil.Error:
        running = None
    _with_wrapper(lambda wrapper: wrapper.show_status(running))


@cli.command("update-session-length")
@click.option("--hours", type=float, default=None, help="New session length in hours")
def update_session_length(hours: Optional[float]) -> None:
    """Update the session window length."""
    console.print("\n⚙️  Update Session Length\n", style="cyan")
    if hours is None:
        hours = click.prompt("Enter new session length in hours (e.g., 5 or 2.5)", type=float)

    try:
        ConfigStore().update_session_length(hours)
    except SantaClaudeError as e:
        error_console.print(f"[red]❌ {e}[/red]")
        sys.exit(1)

    total_minutes = round(hours * 60)
    whole_hours, minutes = divmod(total_minutes, 60)
    message = f"{whole_hours} hour{'s' if whole_hours != 1 else ''}"
    if minutes:
        message += f" and {minutes} minute{'s' if minutes != 1 else ''}"
    console.print(f"✅ Session length updated to {message}", style="green")
    console.print("\n💡 This new session length will apply to future sessions.", style="dim")


@cli.command("set-subscription-date")
@click.argument("day", type=int)
def set_subscription_date(day: int) -> None:
    """Set the day of month when your Claude subscription renews (1-31)."""
    try:
        ConfigStore().set_subscription_renewal_day(day)
    except ValidationError:
        error_console.print("[red]Error: Day must be a number between 1 and 31[/red]")
        sys.exit(1)
    except SantaClaudeError as e:
        error_console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(f"✅ Subscription renewal day set to: {day}", style="green")
    console.print(
        f"Your billing cycle stats will now be calculated from the "
        f"{day}{ordinal_suffix(day)} of each month",
        style="bright_black",
    )


@cli.command()
@click.option("--keep", type=int, required=True, help="Number of most recent sessions to keep")
def purge(keep: int) -> None:
    """Delete all but the most recent sessions."""

    async def action(wrapper: ClaudeWrapper) -> None:
        deleted = await wrapper.manager.purge_keeping_latest(keep)
        console.print(f"Deleted {deleted} session(s), kept the latest {keep}")

    _with_wrapper(action)


def main() -> None:
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
