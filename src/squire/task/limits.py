"""Admission control: how many tasks are really running, and may another start."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from squire.common import seconds_since
from squire.observability.metrics import record_task_finished
from squire.task.models import (
    NO_CONTAINER_ERROR,
    InconsistentStateError,
    Task,
    TaskStatus,
    exit_code_changes,
    failed_changes,
)
from squire.task.store import TaskStore
from squire.worker.base import WorkerBackend

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 5
DEFAULT_DISPATCH_GRACE_SECONDS = 0.0
DEFAULT_POLL_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_WAIT_SECONDS = 300.0


class SlotWaitTimeoutError(TimeoutError):
    """No capacity freed up before ``wait_for_slot`` gave up."""

    def __init__(self, waited_seconds: float) -> None:
        super().__init__("Timeout waiting for task slot")
        self.waited_seconds = waited_seconds


@dataclass(slots=True)
class AdmissionDecision:
    """Outcome of one capacity check."""

    allowed: bool
    running: int
    max: int
    reason: str | None = None
    per_repo: bool = False


def finalize_task(
    store: TaskStore,
    task: Task,
    exit_code: int | None,
    *,
    error_template: str = "Container exited with code {exit_code}",
) -> Task | None:
    """Record the terminal status of a finished execution.

    The write only lands if the task is still ``running`` on the same handle
    when the lock is held, so concurrent finalizers do not clobber each other.
    """

    handle = task.container_id

    def _changes(current: Task) -> dict[str, Any]:
        if current.status is not TaskStatus.RUNNING or current.container_id != handle:
            return {}
        return exit_code_changes(exit_code, error_template=error_template)

    updated = store.update(task.id, _changes)
    if updated is not None and updated.status is not TaskStatus.RUNNING:
        record_task_finished(updated)
        logger.info(
            "Task finished: id=%s status=%s exit_code=%s",
            updated.id,
            updated.status.value,
            exit_code,
        )
    return updated


class AdmissionController:
    """Counts live running tasks and gates new starts against concurrency ceilings.

    Counting heals the store on the way, an intentional side effect of a
    read: a ``running`` record without a backend handle is failed with
    "No container ID", and with a backend attached, records whose execution
    already ended are finalized. ``dispatch_grace_seconds`` opts in to
    sparing handle-less records started less than that long ago.
    """

    def __init__(  # noqa: PLR0913
        self,
        store: TaskStore,
        backend: WorkerBackend | None = None,
        *,
        default_max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        dispatch_grace_seconds: float = DEFAULT_DISPATCH_GRACE_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.backend = backend
        self.default_max_concurrent = default_max_concurrent
        self.dispatch_grace_seconds = dispatch_grace_seconds
        self._sleep = sleep
        self._clock = clock

    def heal_missing_handle(self, task: Task) -> bool:
        """Fail a ``running`` task that never got a handle; True when it was failed.

        With a dispatch grace window configured, tasks started inside it are
        left alone: their backend start may still be in flight elsewhere.
        """

        if task.status is not TaskStatus.RUNNING:
            return False
        try:
            _require_handle(task)
        except InconsistentStateError as inconsistency:
            if self.within_dispatch_grace(task):
                return False
            updated = self.store.update(task.id, self._heal_changes)
            if updated is None or updated.status is not TaskStatus.FAILED:
                return False
            logger.warning("Corrected inconsistent task: %s", inconsistency)
            record_task_finished(updated)
            return True
        return False

    def count_running(self, repo: str | None = None) -> int:
        """Running tasks that are really running, optionally for one repo."""

        tasks = self._live_running_tasks()
        if repo is not None:
            tasks = [task for task in tasks if task.repo == repo]
        logger.debug("Running tasks count: repo=%s count=%d", repo, len(tasks))
        return len(tasks)

    def can_start(
        self,
        max_concurrent: int | None = None,
        *,
        repo: str | None = None,
        max_per_repo: int | None = None,
    ) -> AdmissionDecision:
        """Whether one more task may start now; the per-repo ceiling is checked first."""

        limit = self.default_max_concurrent if max_concurrent is None else max_concurrent
        live = self._live_running_tasks()
        running = len(live)

        if repo is not None and max_per_repo is not None:
            repo_running = sum(1 for task in live if task.repo == repo)
            if repo_running >= max_per_repo:
                return AdmissionDecision(
                    allowed=False,
                    running=repo_running,
                    max=max_per_repo,
                    reason=f"Repository {repo} has {repo_running}/{max_per_repo} tasks running",
                    per_repo=True,
                )

        if running >= limit:
            return AdmissionDecision(
                allowed=False,
                running=running,
                max=limit,
                reason=f"{running}/{limit} tasks running",
            )
        return AdmissionDecision(allowed=True, running=running, max=limit)

    def wait_for_slot(  # noqa: PLR0913
        self,
        max_concurrent: int | None = None,
        *,
        poll_interval_seconds: float = DEFAULT_POLL_INTERVAL_SECONDS,
        max_wait_seconds: float = DEFAULT_MAX_WAIT_SECONDS,
        repo: str | None = None,
        max_per_repo: int | None = None,
    ) -> AdmissionDecision:
        """Poll ``can_start`` until it allows a start.

        Raises:
            SlotWaitTimeoutError: No slot became available within ``max_wait_seconds``.
        """

        started = self._clock()
        while True:
            decision = self.can_start(max_concurrent, repo=repo, max_per_repo=max_per_repo)
            if decision.allowed:
                return decision
            waited = self._clock() - started
            if waited >= max_wait_seconds:
                logger.warning("Timed out waiting for a task slot after %.1fs", waited)
                raise SlotWaitTimeoutError(waited)
            logger.debug("Waiting for task slot: %s", decision.reason)
            self._sleep(min(poll_interval_seconds, max(0.0, max_wait_seconds - waited)))

    def _live_running_tasks(self) -> list[Task]:
        live = []
        for task in self.store.list(TaskStatus.RUNNING):
            if not task.container_id:
                if not self.heal_missing_handle(task):
                    live.append(task)
                continue
            if self.backend is None or self.backend.is_running(task.container_id):
                live.append(task)
                continue
            exit_code = self.backend.get_exit_code(task.container_id)
            updated = finalize_task(self.store, task, exit_code)
            if updated is not None and updated.status is TaskStatus.RUNNING:
                live.append(updated)
        return live

    def within_dispatch_grace(self, task: Task) -> bool:
        if self.dispatch_grace_seconds <= 0:
            return False
        age = seconds_since(task.started_at)
        return age is not None and age < self.dispatch_grace_seconds

    def _heal_changes(self, current: Task) -> dict[str, Any]:
        if current.status is not TaskStatus.RUNNING or current.container_id:
            return {}
        if self.within_dispatch_grace(current):
            return {}
        return failed_changes(NO_CONTAINER_ERROR)


def _require_handle(task: Task) -> str:
    if not task.container_id:
        raise InconsistentStateError(task.id)
    return task.container_id
