"""CLI entrypoint for squire."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import rich_click as click

from squire import __version__
from squire.config import Settings
from squire.controllers import (
    CapacityError,
    HealthCommand,
    ListTasksCommand,
    LogsCommand,
    NewTaskCommand,
    ReconcileCommand,
    SquireCliController,
    StartTaskCommand,
    TaskRefCommand,
    WatchCommand,
)
from squire.task.limits import SlotWaitTimeoutError
from squire.task.locking import LockError
from squire.worker import BackendStartError

click.rich_click.USE_MARKDOWN = True
CONTROLLER = SquireCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
TASK_STATUSES = ["pending", "running", "completed", "failed"]


@click.group()
@click.version_option(version=__version__, prog_name="squire")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False),
    default=None,
    help="Logging level; defaults to the configured log level (SQUIRE_LOG_LEVEL, logLevel).",
)
def squire(log_level: str | None) -> None:
    """Dispatch coding-agent tasks into container workers."""

    with _domain_errors():
        if log_level is None:
            settings = Settings.from_env(use_gh_cli=False)
            settings.validate()
            log_level = settings.log_level
        logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@squire.command("new")
@click.argument("repo")
@click.argument("prompt")
@click.option("--branch", default=None, help="Working branch; defaults to squire/<task-id>.")
@click.option("--base-branch", default=None, help="Branch to fork from; defaults to auto.")
@click.option("--parent", "parent_task_id", default=None, help="Parent task id for follow-ups.")
@click.option("--start", is_flag=True, default=False, help="Dispatch the task right away.")
def new_task(  # noqa: PLR0913
    repo: str,
    prompt: str,
    branch: str | None,
    base_branch: str | None,
    parent_task_id: str | None,
    start: bool,
) -> None:
    """Create a pending task for REPO (owner/name)."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.new_task(
                NewTaskCommand(
                    repo=repo,
                    prompt=prompt,
                    branch=branch,
                    base_branch=base_branch,
                    parent_task_id=parent_task_id,
                    start=start,
                ),
            ),
        )


@squire.command("list")
@click.option(
    "--status",
    type=click.Choice(TASK_STATUSES, case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option(
    "--limit",
    type=click.IntRange(min=1),
    default=None,
    help="Max tasks to print, newest first.",
)
def list_tasks(status: str | None, limit: int | None) -> None:
    """List tasks."""

    with _domain_errors():
        _emit_lines(CONTROLLER.list_tasks(ListTasksCommand(status=status, limit=limit)))


@squire.command("show")
@click.argument("task_id")
def show_task(task_id: str) -> None:
    """Show one task."""

    with _domain_errors():
        _emit_lines(CONTROLLER.show_task(TaskRefCommand(task_id=task_id)))


@squire.command("start")
@click.argument("task_id")
@click.option(
    "--wait-for-slot",
    is_flag=True,
    default=False,
    help="Wait for capacity instead of failing when the concurrency limit is reached.",
)
@click.option(
    "--max-wait",
    "max_wait_seconds",
    type=click.FloatRange(min=0),
    default=300.0,
    show_default=True,
    help="Seconds to wait for a slot with --wait-for-slot.",
)
def start_task(task_id: str, wait_for_slot: bool, max_wait_seconds: float) -> None:
    """Start a pending or failed task in a worker container."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.start_task(
                StartTaskCommand(
                    task_id=task_id,
                    wait_for_slot=wait_for_slot,
                    max_wait_seconds=max_wait_seconds,
                ),
            ),
        )


@squire.command("stop")
@click.argument("task_id")
def stop_task(task_id: str) -> None:
    """Stop a running task."""

    with _domain_errors():
        _emit_lines(CONTROLLER.stop_task(TaskRefCommand(task_id=task_id)))


@squire.command("logs")
@click.argument("task_id")
@click.option("--tail", type=click.IntRange(min=1), default=None, help="Only the last N lines.")
def task_logs(task_id: str, tail: int | None) -> None:
    """Print a task's worker logs."""

    with _domain_errors():
        _emit_lines(CONTROLLER.logs(LogsCommand(task_id=task_id, tail=tail)))


@squire.command("delete")
@click.argument("task_id")
def delete_task(task_id: str) -> None:
    """Delete a task and its worker."""

    with _domain_errors():
        _emit_lines(CONTROLLER.delete_task(TaskRefCommand(task_id=task_id)))


@squire.command("watch")
@click.option(
    "--once/--loop",
    default=False,
    show_default=True,
    help="Run a single cycle or poll until interrupted.",
)
@click.option(
    "--interval",
    "interval_seconds",
    type=click.FloatRange(min=0.1),
    default=None,
    help="Poll interval in seconds; defaults to SQUIRE_WATCH_INTERVAL_SECONDS.",
)
@click.option(
    "--auto-start/--no-auto-start",
    default=None,
    help="Start pending tasks when capacity allows; defaults to SQUIRE_AUTO_START.",
)
@click.option(
    "--max-concurrent",
    type=click.IntRange(min=1),
    default=None,
    help="Global concurrency ceiling; defaults to SQUIRE_MAX_CONCURRENT.",
)
@click.option(
    "--max-cycles",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many cycles in loop mode.",
)
def watch(  # noqa: PLR0913
    once: bool,
    interval_seconds: float | None,
    auto_start: bool | None,
    max_concurrent: int | None,
    max_cycles: int | None,
) -> None:
    """Finalize finished tasks and start pending ones."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.watch(
                WatchCommand(
                    once=once,
                    interval_seconds=interval_seconds,
                    auto_start=auto_start,
                    max_concurrent=max_concurrent,
                    max_cycles=max_cycles,
                    emit=click.echo,
                ),
            ),
        )


@squire.command("reconcile")
@click.option("--dry-run", is_flag=True, default=False, help="Report without changing anything.")
@click.option(
    "--keep-orphans",
    is_flag=True,
    default=False,
    help="Do not remove workers whose task record is gone.",
)
def reconcile(dry_run: bool, keep_orphans: bool) -> None:
    """Align task records with the workers the backend actually runs."""

    with _domain_errors():
        _emit_lines(
            CONTROLLER.reconcile(
                ReconcileCommand(dry_run=dry_run, remove_orphaned_workers=not keep_orphans),
            ),
        )


@squire.command("metrics")
def metrics() -> None:
    """Print metrics in Prometheus text format."""

    with _domain_errors():
        _emit_lines(CONTROLLER.metrics())


@squire.command("health")
@click.option(
    "--format",
    "output_format",
    type=click.Choice(["text", "json"], case_sensitive=False),
    default="text",
    show_default=True,
    help="Output format.",
)
def health(output_format: str) -> None:
    """Check the task store and the worker backend."""

    with _domain_errors():
        result = CONTROLLER.health(HealthCommand(output_format=output_format.lower()))
    _emit_lines(result.lines)
    if not result.healthy:
        raise click.ClickException("squire is unhealthy.")


@contextmanager
def _domain_errors() -> Iterator[None]:
    try:
        yield
    except (
        LookupError,
        ValueError,
        LockError,
        BackendStartError,
        CapacityError,
        SlotWaitTimeoutError,
    ) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    squire()
