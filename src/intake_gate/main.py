"""CLI entrypoint for intake-gate."""

from pathlib import Path

import rich_click as click

from intake_gate import __version__
from intake_gate.controllers import (
    CheckpointSetCommand,
    InitDbCommand,
    IntakeCliController,
    LimitsShowCommand,
    QueueListCommand,
    QueueReapCommand,
    UsageClearCommand,
    UsagePruneCommand,
)
from intake_gate.models import WorkItemStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = IntakeCliController()


@click.group()
@click.version_option(version=__version__, prog_name="intake-gate")
def intake_gate() -> None:
    """Durable intake queue and rate limit gate."""


@intake_gate.command("init-db")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def init_db(db_path: Path | None) -> None:
    """Create or upgrade the database schema."""

    _emit_lines(CONTROLLER.init_db(InitDbCommand(db_path=db_path)))


@intake_gate.group()
def queue() -> None:
    """Work queue commands."""


@queue.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def queue_stats(db_path: Path | None) -> None:
    """Show work item counts by status."""

    _emit_lines(CONTROLLER.queue_stats(db_path))


@queue.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in WorkItemStatus]),
    default=None,
    help="Only show items in this status.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Maximum number of items to show.",
)
def queue_list(db_path: Path | None, status: str | None, limit: int) -> None:
    """List work items in claim order."""

    _emit_lines(
        CONTROLLER.queue_list(
            QueueListCommand(
                db_path=db_path,
                status=WorkItemStatus(status) if status is not None else None,
                limit=limit,
            ),
        ),
    )


@queue.command("reap")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Claim age threshold. Defaults to INTAKE_GATE_STALE_PROCESSING_SECONDS.",
)
def queue_reap(db_path: Path | None, older_than_seconds: int | None) -> None:
    """Return stale processing claims to pending."""

    _emit_lines(
        CONTROLLER.queue_reap(
            QueueReapCommand(db_path=db_path, older_than_seconds=older_than_seconds),
        ),
    )


@intake_gate.group()
def limits() -> None:
    """Rate limit commands."""


@limits.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--endpoint", default=None, help="Only show this endpoint.")
@click.option(
    "--caller",
    default=None,
    help="Caller whose fair share is shown. Defaults to INTAKE_GATE_CALLER_ID.",
)
def limits_show(db_path: Path | None, endpoint: str | None, caller: str | None) -> None:
    """Show current window usage and remaining capacity."""

    try:
        lines = CONTROLLER.limits_show(
            LimitsShowCommand(db_path=db_path, endpoint=endpoint, caller=caller),
        )
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@intake_gate.group()
def checkpoint() -> None:
    """Fetch checkpoint commands."""


@checkpoint.command("show")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def checkpoint_show(db_path: Path | None) -> None:
    """Show the stored cursor for INTAKE_GATE_SOURCE."""

    _emit_lines(CONTROLLER.checkpoint_show(db_path))


@checkpoint.command("set")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.argument("cursor")
def checkpoint_set(db_path: Path | None, cursor: str) -> None:
    """Store CURSOR as the newest item already handled for INTAKE_GATE_SOURCE.

    The next fetch starts after it, so older upstream items are never queued.
    """

    try:
        lines = CONTROLLER.checkpoint_set(CheckpointSetCommand(db_path=db_path, cursor=cursor))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@intake_gate.group()
def usage() -> None:
    """Usage window commands."""


@usage.command("prune")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--keep-days",
    type=click.IntRange(min=1),
    default=7,
    show_default=True,
    help="Keep usage windows that started within this many days.",
)
def usage_prune(db_path: Path | None, keep_days: int) -> None:
    """Delete usage windows older than the retention period."""

    _emit_lines(CONTROLLER.usage_prune(UsagePruneCommand(db_path=db_path, keep_days=keep_days)))


@usage.command("clear")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--endpoint", default=None, help="Only clear this endpoint. Defaults to all.")
def usage_clear(db_path: Path | None, endpoint: str | None) -> None:
    """Reset recorded usage so admission starts from zero."""

    try:
        lines = CONTROLLER.usage_clear(UsageClearCommand(db_path=db_path, endpoint=endpoint))
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    intake_gate()
