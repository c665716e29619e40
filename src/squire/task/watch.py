"""Periodic reconciliation loop: finalize finished tasks, start pending ones."""

from __future__ import annotations

import logging
import signal
import time
from collections import Counter
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from squire.common import seconds_since
from squire.observability.metrics import record_task_finished
from squire.task.dispatch import TaskDispatcher
from squire.task.limits import AdmissionController, finalize_task
from squire.task.models import Task, TaskStatus, failed_changes
from squire.task.store import TaskLockError, TaskStore
from squire.worker.base import BackendStartError, WorkerBackend

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 10.0


@dataclass(slots=True)
class WatchCycleSummary:
    """Counters for one or more watch cycles."""

    cycles: int = 0
    checked: int = 0
    completed: int = 0
    failed: int = 0
    timed_out: int = 0
    started: int = 0
    errors: int = 0
    counts: dict[str, int] = field(default_factory=dict)

    def merge(self, other: WatchCycleSummary) -> None:
        self.cycles += other.cycles
        self.checked += other.checked
        self.completed += other.completed
        self.failed += other.failed
        self.timed_out += other.timed_out
        self.started += other.started
        self.errors += other.errors
        self.counts = dict(other.counts)

    def status_line(self) -> str:
        return (
            f"Status: {self.counts.get('running', 0)} running, "
            f"{self.counts.get('pending', 0)} pending, "
            f"{self.counts.get('completed', 0)} done, "
            f"{self.counts.get('failed', 0)} failed"
        )


class TaskWatcher:
    """Single-threaded poll loop that keeps task records moving.

    Each cycle finalizes running tasks whose worker ended, fails tasks that
    outlived ``task_timeout_minutes``, then (when auto-start is on and a
    GitHub token is configured) dispatches pending tasks oldest first until
    admission control says no.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: TaskStore,
        backend: WorkerBackend,
        admission: AdmissionController,
        dispatcher: TaskDispatcher,
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        auto_start: bool = True,
        max_concurrent: int | None = None,
        max_per_repo: int | None = None,
        task_timeout_minutes: int | None = None,
        preserve_logs_on_failure: bool = True,
        auto_cleanup: bool = False,
        emit: Callable[[str], None] | None = None,
    ) -> None:
        self.store = store
        self.backend = backend
        self.admission = admission
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self.auto_start = auto_start
        self.max_concurrent = max_concurrent
        self.max_per_repo = max_per_repo
        self.task_timeout_minutes = task_timeout_minutes
        self.preserve_logs_on_failure = preserve_logs_on_failure
        self.auto_cleanup = auto_cleanup
        self._emit = emit or logger.info
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def run_once(self) -> WatchCycleSummary:
        """Run one full cycle and return its counters."""

        summary = WatchCycleSummary(cycles=1)
        for task in self.store.list(TaskStatus.RUNNING):
            summary.checked += 1
            try:
                self._check_running(task, summary)
            except Exception as error:  # noqa: BLE001
                summary.errors += 1
                logger.error("Failed to check task %s: %s", task.id, error)

        if self._stop_requested:
            summary.counts = self._status_counts()
            return summary

        if self.auto_start and self.dispatcher.github_token:
            self._start_pending(summary)
        elif self.auto_start:
            logger.debug("Auto-start skipped: no GitHub token configured")

        summary.counts = self._status_counts()
        self._emit(summary.status_line())
        return summary

    def run_loop(self, *, max_cycles: int | None = None) -> WatchCycleSummary:
        """Repeat ``run_once`` every ``interval_seconds`` until stopped.

        Args:
            max_cycles: Stop after this many cycles (None = until a signal or
                ``request_stop``).
        """

        aggregate = WatchCycleSummary()
        self._emit(
            f"Watching tasks (poll every {self.interval_seconds:g}s, Ctrl+C to stop)...",
        )
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    break
                aggregate.merge(self.run_once())
                if max_cycles is not None and aggregate.cycles >= max_cycles:
                    break
                self._sleep_with_stop(self.interval_seconds)
        if self._stop_signal_name is not None:
            logger.info("Watch loop stopped by %s", self._stop_signal_name)
        self._emit("Stopped watching.")
        return aggregate

    def request_stop(self, *, signal_name: str | None = None) -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name

    def _check_running(self, task: Task, summary: WatchCycleSummary) -> None:
        if not task.container_id:
            if self.admission.heal_missing_handle(task):
                summary.failed += 1
                self._emit(f"✗ {task.id} failed (no container)")
            return

        if self.backend.is_running(task.container_id):
            if self._timed_out(task):
                self._fail_timed_out(task, summary)
            return

        exit_code = self.backend.get_exit_code(task.container_id)
        updated = finalize_task(self.store, task, exit_code)
        if updated is None or updated.status is TaskStatus.RUNNING:
            return
        if updated.status is TaskStatus.COMPLETED:
            summary.completed += 1
            suffix = f" → {updated.pr_url}" if updated.pr_url else ""
            self._emit(f"✓ {task.id} completed{suffix}")
        else:
            summary.failed += 1
            self._emit(f"✗ {task.id} failed")
            if self.preserve_logs_on_failure:
                self.dispatcher.preserve_logs(updated)
        self._cleanup(task.container_id)

    def _timed_out(self, task: Task) -> bool:
        if not self.task_timeout_minutes:
            return False
        age = seconds_since(task.started_at)
        return age is not None and age > self.task_timeout_minutes * 60

    def _fail_timed_out(self, task: Task, summary: WatchCycleSummary) -> None:
        handle = task.container_id
        logger.warning(
            "Task execution timeout: id=%s container=%s timeout_minutes=%s",
            task.id,
            handle,
            self.task_timeout_minutes,
        )
        if handle:
            self.backend.stop(handle)

        def _changes(current: Task) -> dict[str, Any]:
            if current.status is not TaskStatus.RUNNING or current.container_id != handle:
                return {}
            return failed_changes(f"Task timed out after {self.task_timeout_minutes} minutes")

        updated = self.store.update(task.id, _changes)
        if updated is None or updated.status is not TaskStatus.FAILED:
            return
        record_task_finished(updated)
        summary.timed_out += 1
        summary.failed += 1
        self._emit(f"✗ {task.id} timed out")
        if self.preserve_logs_on_failure:
            self.dispatcher.preserve_logs(updated)
        self._cleanup(handle)

    def _cleanup(self, handle: str | None) -> None:
        if self.auto_cleanup and handle:
            self.backend.remove(handle)

    def _start_pending(self, summary: WatchCycleSummary) -> None:
        pending = sorted(
            self.store.list(TaskStatus.PENDING),
            key=lambda item: item.created_at,
        )
        for task in pending:
            if self._stop_requested:
                return
            decision = self.admission.can_start(
                self.max_concurrent,
                repo=task.repo,
                max_per_repo=self.max_per_repo,
            )
            if not decision.allowed:
                if decision.per_repo:
                    logger.debug("Skipping %s: %s", task.id, decision.reason)
                    continue
                logger.debug("At capacity: %s", decision.reason)
                return
            self._emit(f"▶ Starting {task.id} ({decision.running + 1}/{decision.max})...")
            # The next admission check must see this task with its handle.
            try:
                self.dispatcher.start(task.id).result()
            except (TaskLockError, BackendStartError, LookupError, ValueError) as error:
                summary.errors += 1
                logger.error("Failed to start %s: %s", task.id, error)
                continue
            summary.started += 1

    def _status_counts(self) -> dict[str, int]:
        counts = Counter(task.status.value for task in self.store.list())
        return {status.value: counts.get(status.value, 0) for status in TaskStatus}

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in the main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
