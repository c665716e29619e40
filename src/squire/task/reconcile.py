"""Align task records with what the worker backend actually runs."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Any

from squire.observability.metrics import record_task_finished
from squire.task.limits import (
    DEFAULT_DISPATCH_GRACE_SECONDS,
    AdmissionController,
    finalize_task,
)
from squire.task.models import Task, TaskStatus, failed_changes
from squire.task.store import TaskStore
from squire.worker.base import WorkerBackend, WorkerTaskInfo

logger = logging.getLogger(__name__)

ORPHANED_TASK_ERROR = "Worker not found during reconciliation (orphaned task)"
RECONCILED_EXIT_TEMPLATE = "Worker exited with code {exit_code} (discovered during reconciliation)"

_reconciled = threading.Event()
_reconcile_lock = threading.Lock()


@dataclass(slots=True)
class ReconcileResult:
    """Counters for one reconciliation pass."""

    tasks_reconciled: int = 0
    tasks_marked_failed: int = 0
    tasks_marked_completed: int = 0
    orphaned_workers_removed: int = 0
    errors: list[str] = field(default_factory=list)


class TaskReconciler:
    """Fleet-wide repair of ``running`` records against backend truth."""

    def __init__(
        self,
        store: TaskStore,
        backend: WorkerBackend,
        *,
        dispatch_grace_seconds: float = DEFAULT_DISPATCH_GRACE_SECONDS,
    ) -> None:
        self.store = store
        self.backend = backend
        self.admission = AdmissionController(
            store,
            backend,
            dispatch_grace_seconds=dispatch_grace_seconds,
        )

    def sync_task_status(self, task_id: str) -> Task | None:
        """Bring one task's status in line with its worker; ``None`` if it does not exist."""

        task = self.store.get(task_id)
        if task is None or task.status is not TaskStatus.RUNNING:
            return task
        if not task.container_id:
            self.admission.heal_missing_handle(task)
            return self.store.get(task_id)
        if self.backend.is_running(task.container_id):
            return task
        exit_code = self.backend.get_exit_code(task.container_id)
        logger.debug("Synced task status: id=%s exit_code=%s", task_id, exit_code)
        return finalize_task(self.store, task, exit_code)

    def reconcile(
        self,
        *,
        dry_run: bool = False,
        remove_orphaned_workers: bool = True,
    ) -> ReconcileResult:
        """Repair every ``running`` record and clean up workers nobody owns.

        Errors are collected on the result, never raised.
        """

        result = ReconcileResult()
        try:
            workers = self.backend.list_workers()
        except Exception as error:  # noqa: BLE001
            message = f"Reconciliation failed: {error}"
            logger.error(message)
            result.errors.append(message)
            return result

        logger.info("Starting reconciliation: dry_run=%s workers=%d", dry_run, len(workers))
        by_task: dict[str, list[WorkerTaskInfo]] = {}
        for worker in workers:
            if worker.task_id:
                by_task.setdefault(worker.task_id, []).append(worker)

        for task in self.store.list(TaskStatus.RUNNING):
            result.tasks_reconciled += 1
            try:
                self._reconcile_task(task, by_task.get(task.id, []), result, dry_run=dry_run)
            except Exception as error:  # noqa: BLE001
                message = f"Failed to reconcile task {task.id}: {error}"
                logger.error(message)
                result.errors.append(message)

        if remove_orphaned_workers:
            for worker in workers:
                self._remove_if_orphaned(worker, result, dry_run=dry_run)

        logger.info(
            "Reconciliation complete: dry_run=%s reconciled=%d failed=%d completed=%d "
            "orphans_removed=%d errors=%d",
            dry_run,
            result.tasks_reconciled,
            result.tasks_marked_failed,
            result.tasks_marked_completed,
            result.orphaned_workers_removed,
            len(result.errors),
        )
        return result

    def needs_reconciliation(self) -> bool:
        """Cheap check for drift: a running task without a worker or a finished worker."""

        running = self.store.list(TaskStatus.RUNNING)
        if not running:
            return False
        try:
            workers = self.backend.list_workers()
        except Exception as error:  # noqa: BLE001
            logger.debug("Cannot list workers, assuming reconciliation is needed: %s", error)
            return True

        worker_task_ids = {worker.task_id for worker in workers}
        if any(task.id not in worker_task_ids for task in running):
            return True
        running_ids = {task.id for task in running}
        return any(not worker.running and worker.task_id in running_ids for worker in workers)

    def reconcile_once(
        self,
        *,
        dry_run: bool = False,
        remove_orphaned_workers: bool = True,
    ) -> ReconcileResult | None:
        """``reconcile`` on the first call in this process, ``None`` afterwards."""

        with _reconcile_lock:
            if _reconciled.is_set():
                logger.debug("Skipping reconciliation (already run)")
                return None
            _reconciled.set()
        return self.reconcile(dry_run=dry_run, remove_orphaned_workers=remove_orphaned_workers)

    @staticmethod
    def reset() -> None:
        """Allow ``reconcile_once`` to run again."""

        _reconciled.clear()

    def _reconcile_task(
        self,
        task: Task,
        workers: list[WorkerTaskInfo],
        result: ReconcileResult,
        *,
        dry_run: bool,
    ) -> None:
        if not task.container_id and self.admission.dispatch_grace_seconds > 0 and not workers:
            if dry_run:
                if not self.admission.within_dispatch_grace(task):
                    result.tasks_marked_failed += 1
                return
            if self.admission.heal_missing_handle(task):
                result.tasks_marked_failed += 1
            return

        worker = _pick_worker(task, workers)
        if worker is None:
            logger.warning(
                "Orphaned task found (no worker): id=%s container=%s",
                task.id,
                task.container_id,
            )
            if not dry_run:
                self._mark_orphaned(task)
            result.tasks_marked_failed += 1
            return

        if worker.running:
            return

        exit_code = worker.exit_code
        if exit_code is None:
            exit_code = self.backend.get_exit_code(worker.worker_id)
        logger.info(
            "Updating task status from worker: id=%s worker=%s exit_code=%s",
            task.id,
            worker.worker_id,
            exit_code,
        )
        if exit_code == 0:
            result.tasks_marked_completed += 1
        else:
            result.tasks_marked_failed += 1
        if dry_run:
            return
        finalize_task(self.store, task, exit_code, error_template=RECONCILED_EXIT_TEMPLATE)

    def _mark_orphaned(self, task: Task) -> None:
        handle = task.container_id

        def _changes(current: Task) -> dict[str, Any]:
            if current.status is not TaskStatus.RUNNING or current.container_id != handle:
                return {}
            return failed_changes(ORPHANED_TASK_ERROR)

        updated = self.store.update(task.id, _changes)
        if updated is not None and updated.status is TaskStatus.FAILED:
            record_task_finished(updated)

    def _remove_if_orphaned(
        self,
        worker: WorkerTaskInfo,
        result: ReconcileResult,
        *,
        dry_run: bool,
    ) -> None:
        if worker.task_id:
            if self.store.get(worker.task_id) is not None:
                return
            logger.warning(
                "Orphaned worker found (no task file): task=%s worker=%s",
                worker.task_id,
                worker.worker_id,
            )
        else:
            logger.warning("Worker with no task id found: %s", worker.worker_id)

        if dry_run:
            result.orphaned_workers_removed += 1
            return
        try:
            self.backend.remove(worker.worker_id)
        except Exception as error:  # noqa: BLE001
            message = f"Failed to remove orphaned worker {worker.worker_id}: {error}"
            logger.error(message)
            result.errors.append(message)
            return
        result.orphaned_workers_removed += 1


def _pick_worker(task: Task, workers: list[WorkerTaskInfo]) -> WorkerTaskInfo | None:
    if not workers:
        return None
    for worker in workers:
        if task.container_id and worker.worker_id == task.container_id:
            return worker
    if task.container_id:
        # Docker lists full ids; records may hold a prefix.
        for worker in workers:
            if worker.worker_id.startswith(task.container_id):
                return worker
    return max(workers, key=lambda item: item.created_at or "")
