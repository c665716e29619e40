"""Controllers for squire CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from squire.config import Settings
from squire.observability.health import HealthStatus, check_health
from squire.observability.metrics import export_metrics, record_task_created
from squire.task.dispatch import TaskDispatcher
from squire.task.limits import AdmissionController
from squire.task.models import Task, TaskCreateOptions, TaskNotFoundError, TaskStatus
from squire.task.reconcile import TaskReconciler
from squire.task.store import TaskStore
from squire.task.watch import TaskWatcher
from squire.worker import WorkerBackend, get_backend

logger = logging.getLogger(__name__)

MISSING_TOKEN_MESSAGE = (
    "GitHub token not configured: set GITHUB_TOKEN or GH_TOKEN, or run `gh auth login`."
)


class CapacityError(RuntimeError):
    """Admission control refused to start another task."""


@dataclass(slots=True)
class NewTaskCommand:
    """CLI input for task creation."""

    repo: str
    prompt: str
    branch: str | None = None
    base_branch: str | None = None
    parent_task_id: str | None = None
    start: bool = False


@dataclass(slots=True)
class ListTasksCommand:
    """CLI input for task listing."""

    status: str | None = None
    limit: int | None = None


@dataclass(slots=True)
class TaskRefCommand:
    """CLI input for commands addressing one task."""

    task_id: str


@dataclass(slots=True)
class StartTaskCommand:
    """CLI input for dispatching a task."""

    task_id: str
    wait_for_slot: bool = False
    max_wait_seconds: float = 300.0


@dataclass(slots=True)
class LogsCommand:
    task_id: str
    tail: int | None = None


@dataclass(slots=True)
class WatchCommand:
    """CLI input for the watch loop."""

    once: bool = False
    interval_seconds: float | None = None
    auto_start: bool | None = None
    max_concurrent: int | None = None
    max_cycles: int | None = None
    emit: Callable[[str], None] | None = None


@dataclass(slots=True)
class ReconcileCommand:
    dry_run: bool = False
    remove_orphaned_workers: bool = True


@dataclass(slots=True)
class HealthCommand:
    output_format: str = "text"


@dataclass(slots=True)
class HealthCommandResult:
    lines: list[str]
    healthy: bool


class SquireCliController:
    """Coordinates task, watch and observability CLI operations."""

    def new_task(self, command: NewTaskCommand) -> list[str]:
        settings = _load_settings()
        store = _store(settings)
        task = store.create(
            TaskCreateOptions(
                repo=command.repo,
                prompt=command.prompt,
                branch=command.branch,
                base_branch=command.base_branch,
                parent_task_id=command.parent_task_id,
            ),
        )
        record_task_created()
        lines = [
            f"Task created: id={task.id} repo={task.repo} branch={task.branch} "
            f"status={task.status.value}",
        ]
        if command.start:
            lines.extend(self.start_task(StartTaskCommand(task_id=task.id)))
        return lines

    def list_tasks(self, command: ListTasksCommand) -> list[str]:
        settings = _load_settings()
        tasks = _store(settings).list(_parse_status(command.status))
        if command.limit is not None:
            tasks = tasks[: command.limit]

        lines = [f"Tasks: {len(tasks)}"]
        for task in tasks:
            lines.append(
                f"  {task.id} status={task.status.value} repo={task.repo} "
                f"branch={task.branch or '-'} created={task.created_at} pr={task.pr_url or '-'}",
            )
        return lines

    def show_task(self, command: TaskRefCommand) -> list[str]:
        settings = _load_settings()
        task = _require_task(_store(settings), command.task_id)
        return _task_lines(task)

    def start_task(self, command: StartTaskCommand) -> list[str]:
        """Admit and dispatch one task, then wait for the backend handle."""

        settings = _load_settings()
        if not settings.github_token:
            raise ValueError(MISSING_TOKEN_MESSAGE)
        store = _store(settings)
        task = _require_task(store, command.task_id)
        backend = _backend(settings)
        admission = _admission(settings, store, backend)
        if command.wait_for_slot:
            admission.wait_for_slot(
                settings.admission.max_concurrent,
                max_wait_seconds=command.max_wait_seconds,
                repo=task.repo,
                max_per_repo=settings.admission.max_per_repo,
            )
        else:
            decision = admission.can_start(
                settings.admission.max_concurrent,
                repo=task.repo,
                max_per_repo=settings.admission.max_per_repo,
            )
            if not decision.allowed:
                raise CapacityError(f"Cannot start {task.id}: {decision.reason}")

        with _dispatcher(settings, store, backend) as dispatcher:
            handle = dispatcher.start(task.id).result()
        return [f"Task started: id={task.id} container={handle[:12]}"]

    def stop_task(self, command: TaskRefCommand) -> list[str]:
        settings = _load_settings()
        store = _store(settings)
        with _dispatcher(settings, store, _backend(settings)) as dispatcher:
            task = dispatcher.stop(command.task_id)
        return [f"Task stopped: id={task.id} status={task.status.value}"]

    def logs(self, command: LogsCommand) -> list[str]:
        settings = _load_settings()
        store = _store(settings)
        task = _require_task(store, command.task_id)
        if not task.container_id:
            return [f"Task {task.id} has no container yet"]
        with _dispatcher(settings, store, _backend(settings)) as dispatcher:
            output = dispatcher.get_logs(task.id, command.tail)
        return output.splitlines()

    def delete_task(self, command: TaskRefCommand) -> list[str]:
        settings = _load_settings()
        store = _store(settings)
        with _dispatcher(settings, store, _backend(settings)) as dispatcher:
            deleted = dispatcher.remove(command.task_id)
        if not deleted:
            raise TaskNotFoundError(command.task_id)
        return [f"Task deleted: {command.task_id}"]

    def watch(self, command: WatchCommand) -> list[str]:
        """Reconcile once, then keep finalizing and starting tasks."""

        settings = _load_settings()
        store = _store(settings)
        backend = _backend(settings)
        reconciler = TaskReconciler(
            store,
            backend,
            dispatch_grace_seconds=settings.admission.dispatch_grace_seconds,
        )
        reconciled = reconciler.reconcile_once()
        if reconciled is not None and reconciled.errors:
            logger.warning("Startup reconciliation reported %d errors", len(reconciled.errors))

        with _dispatcher(settings, store, backend) as dispatcher:
            watcher = TaskWatcher(
                store=store,
                backend=backend,
                admission=_admission(settings, store, backend),
                dispatcher=dispatcher,
                interval_seconds=command.interval_seconds or settings.watch.interval_seconds,
                auto_start=(
                    settings.watch.auto_start if command.auto_start is None else command.auto_start
                ),
                max_concurrent=command.max_concurrent or settings.admission.max_concurrent,
                max_per_repo=settings.admission.max_per_repo,
                task_timeout_minutes=settings.watch.task_timeout_minutes,
                preserve_logs_on_failure=settings.worker.preserve_logs_on_failure,
                auto_cleanup=settings.watch.auto_cleanup,
                emit=command.emit,
            )
            summary = (
                watcher.run_once()
                if command.once
                else watcher.run_loop(max_cycles=command.max_cycles)
            )

        return [
            "Watch summary: "
            f"cycles={summary.cycles} checked={summary.checked} completed={summary.completed} "
            f"failed={summary.failed} timed_out={summary.timed_out} started={summary.started} "
            f"errors={summary.errors}",
        ]

    def reconcile(self, command: ReconcileCommand) -> list[str]:
        settings = _load_settings()
        store = _store(settings)
        reconciler = TaskReconciler(
            store,
            _backend(settings),
            dispatch_grace_seconds=settings.admission.dispatch_grace_seconds,
        )
        result = reconciler.reconcile(
            dry_run=command.dry_run,
            remove_orphaned_workers=command.remove_orphaned_workers,
        )
        prefix = "Reconcile (dry run)" if command.dry_run else "Reconcile"
        lines = [
            f"{prefix}: reconciled={result.tasks_reconciled} "
            f"failed={result.tasks_marked_failed} completed={result.tasks_marked_completed} "
            f"orphans_removed={result.orphaned_workers_removed} errors={len(result.errors)}",
        ]
        lines.extend(f"  error: {message}" for message in result.errors)
        return lines

    def metrics(self) -> list[str]:
        settings = _load_settings()
        return export_metrics(_store(settings)).splitlines()

    def health(self, command: HealthCommand) -> HealthCommandResult:
        settings = _load_settings()
        try:
            backend: WorkerBackend | None = _backend(settings)
        except Exception as error:  # noqa: BLE001
            logger.warning("Worker backend unavailable: %s", error)
            backend = None
        report = check_health(_store(settings), backend)
        healthy = report.status is not HealthStatus.UNHEALTHY

        if command.output_format == "json":
            return HealthCommandResult(
                lines=[json.dumps(report.to_dict(), indent=2)],
                healthy=healthy,
            )
        lines = [
            f"Status: {report.status.value} (version {report.version}, "
            f"uptime {report.uptime_seconds}s)",
        ]
        for name, check in report.checks.items():
            lines.append(f"  {name}: {check.status.value} {check.message or ''}".rstrip())
        return HealthCommandResult(lines=lines, healthy=healthy)


def _load_settings() -> Settings:
    settings = Settings.from_env()
    settings.validate()
    return settings


def _parse_status(value: str | None) -> TaskStatus | None:
    if value is None:
        return None
    return TaskStatus(value.strip().lower())


def _store(settings: Settings) -> TaskStore:
    return TaskStore(settings.tasks_dir, lock_config=settings.lock_config())


def _backend(settings: Settings) -> WorkerBackend:
    return get_backend(settings.backend_config())


def _admission(settings: Settings, store: TaskStore, backend: WorkerBackend) -> AdmissionController:
    return AdmissionController(
        store,
        backend,
        default_max_concurrent=settings.admission.max_concurrent,
        dispatch_grace_seconds=settings.admission.dispatch_grace_seconds,
    )


def _require_task(store: TaskStore, task_id: str) -> Task:
    task = store.get(task_id)
    if task is None:
        raise TaskNotFoundError(task_id)
    return task


def _task_lines(task: Task) -> list[str]:
    lines = [
        f"Task: {task.id}",
        f"Repo: {task.repo}",
        f"Status: {task.status.value}",
        f"Branch: {task.branch or '-'} (base {task.base_branch or '-'})",
        f"Container: {task.container_id or '-'}",
        f"Created: {task.created_at}",
        f"Started: {task.started_at or '-'}",
        f"Completed: {task.completed_at or '-'}",
        f"PR: {task.pr_url or '-'}",
        f"Error: {task.error or '-'}",
    ]
    if task.retry_count:
        lines.append(f"Retries: {task.retry_count} (last {task.last_retry_at or '-'})")
    if task.parent_task_id:
        lines.append(f"Parent: {task.parent_task_id}")
    lines.append("Prompt:")
    lines.extend(f"  {line}" for line in task.prompt.splitlines())
    return lines


@contextmanager
def _dispatcher(
    settings: Settings,
    store: TaskStore,
    backend: WorkerBackend,
) -> Iterator[TaskDispatcher]:
    dispatcher = TaskDispatcher(
        store,
        backend,
        github_token=settings.github_token or "",
        model=settings.worker.model,
        worker_image=settings.worker.worker_image,
        container_config=settings.container_config(),
    )
    try:
        yield dispatcher
    finally:
        dispatcher.close()
