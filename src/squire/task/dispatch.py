"""Task dispatch: optimistic ``running`` transition, background backend start."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from pathlib import Path
from typing import Any

from squire.common import utc_now_iso
from squire.observability.metrics import record_container_start, record_task_finished
from squire.task.models import (
    STOPPED_BY_USER_ERROR,
    Task,
    TaskNotFoundError,
    TaskStatus,
    check_transition,
    failed_changes,
    running_changes,
)
from squire.task.store import TaskLockError, TaskStore
from squire.worker.base import (
    BackendStartError,
    ContainerConfig,
    StartTaskOptions,
    WorkerBackend,
)

logger = logging.getLogger(__name__)

DEFAULT_DISPATCH_WORKERS = 4


class MissingHandleError(ValueError):
    """Operation needs a backend handle the task does not have."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} has no container")
        self.task_id = task_id


class TaskDispatcher:
    """Hands admitted tasks to a worker backend without blocking the caller.

    ``start`` marks the record ``running`` synchronously and submits the
    backend start to a thread pool. The resulting handle is persisted as
    ``container_id``; a start failure is recorded on the task instead of
    propagating to the caller that dispatched it.
    """

    def __init__(  # noqa: PLR0913
        self,
        store: TaskStore,
        backend: WorkerBackend,
        *,
        github_token: str,
        model: str | None = None,
        worker_image: str | None = None,
        container_config: ContainerConfig | None = None,
        max_workers: int = DEFAULT_DISPATCH_WORKERS,
        verbose: bool = False,
    ) -> None:
        self.store = store
        self.backend = backend
        self.github_token = github_token
        self.model = model
        self.worker_image = worker_image
        self.container_config = container_config or ContainerConfig()
        self.verbose = verbose
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="squire-dispatch",
        )
        self._pending: set[Future[str]] = set()
        self._pending_lock = threading.Lock()

    def __enter__(self) -> TaskDispatcher:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()

    def start(self, task_id: str) -> Future[str]:
        """Move ``task_id`` to ``running`` and launch it in the background.

        Raises:
            TaskNotFoundError: No such task.
            InvalidTransitionError: The task is neither ``pending`` nor ``failed``.
        """

        task = self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        check_transition(task, TaskStatus.RUNNING)

        def _changes(current: Task) -> dict[str, Any]:
            check_transition(current, TaskStatus.RUNNING)
            return running_changes()

        running = self.store.update(task_id, _changes)
        if running is None:
            raise TaskNotFoundError(task_id)
        logger.info("Dispatching task: id=%s repo=%s", running.id, running.repo)

        future = self._executor.submit(self._start_in_background, running)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)
        return future

    def stop(self, task_id: str) -> Task:
        """Stop the task's execution and record it as failed by user request.

        Stopping a task that already reached a terminal status only asks the
        backend to stop again and leaves the record unchanged.
        """

        task = self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if not task.container_id:
            raise MissingHandleError(task_id)

        self.backend.stop(task.container_id)
        if task.is_terminal:
            return task

        def _changes(current: Task) -> dict[str, Any]:
            if current.status is not TaskStatus.RUNNING:
                return {}
            return failed_changes(STOPPED_BY_USER_ERROR)

        updated = self.store.update(task_id, _changes)
        if updated is None:
            raise TaskNotFoundError(task_id)
        if updated.status is TaskStatus.FAILED and updated.error == STOPPED_BY_USER_ERROR:
            record_task_finished(updated)
        logger.info("Task stopped by user: id=%s", task_id)
        return updated

    def get_logs(self, task_id: str, tail: int | None = None) -> str:
        task = self.store.get(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        if not task.container_id:
            return ""
        return self.backend.get_logs(task.container_id, tail)

    def preserve_logs(self, task: Task) -> Path | None:
        """Copy the execution's logs next to the store, ``<tasks_dir>/../logs/<id>.log``."""

        if not task.container_id:
            return None
        log_path = self.store.tasks_dir.parent / "logs" / f"{task.id}.log"
        try:
            logs = self.backend.get_logs(task.container_id)
            log_path.parent.mkdir(parents=True, exist_ok=True)
            log_path.write_text(logs, "utf-8")
        except Exception as error:  # noqa: BLE001
            logger.warning("Failed to preserve logs for task %s: %s", task.id, error)
            return None
        logger.info("Worker logs preserved: task=%s path=%s", task.id, log_path)
        return log_path

    def remove(self, task_id: str) -> bool:
        """Delete the record and its worker; ``False`` when the task did not exist."""

        task = self.store.get(task_id)
        if task is None:
            return False
        if task.container_id:
            self.backend.remove(task.container_id)
        return self.store.delete(task_id)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until in-flight starts finish; ``False`` if ``timeout`` expired first."""

        with self._pending_lock:
            pending = set(self._pending)
        if not pending:
            return True
        _, not_done = wait_futures(pending, timeout=timeout)
        return not not_done

    def close(self, *, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _forget(self, future: Future[str]) -> None:
        with self._pending_lock:
            self._pending.discard(future)

    def _start_in_background(self, task: Task) -> str:
        options = StartTaskOptions(
            task=task,
            github_token=self.github_token,
            model=self.model,
            worker_image=self.worker_image,
            container_config=self.container_config,
            verbose=self.verbose,
            on_retry=lambda retry_count: self._record_retry(task.id, retry_count),
        )
        try:
            handle = self.backend.start(options)
        except BackendStartError as error:
            self._record_start_failure(task.id, str(error))
            raise
        except Exception as error:
            logger.exception("Unexpected backend failure starting task %s", task.id)
            self._record_start_failure(task.id, str(error))
            raise BackendStartError(str(error)) from error

        record_container_start(success=True)

        def _changes(current: Task) -> dict[str, Any]:
            if current.status is not TaskStatus.RUNNING or current.container_id:
                return {}
            return {"container_id": handle}

        try:
            updated = self.store.update(task.id, _changes)
        except TaskLockError as error:
            logger.error(
                "Could not record handle for task %s; stopping worker %s",
                task.id,
                handle[:12],
            )
            self.backend.stop(handle)
            try:
                self._record_start_failure(task.id, f"Failed to record container: {error}")
            except TaskLockError:
                logger.warning("Task %s stays running without a handle until healed", task.id)
            raise
        if updated is None or updated.container_id != handle:
            logger.warning(
                "Task %s changed while its worker was starting; stopping worker %s",
                task.id,
                handle[:12],
            )
            self.backend.stop(handle)
            return handle
        logger.info("Task worker started: id=%s handle=%s", task.id, handle[:12])
        return handle

    def _record_retry(self, task_id: str, retry_count: int) -> None:
        self.store.update(
            task_id,
            {"retry_count": retry_count, "last_retry_at": utc_now_iso()},
        )

    def _record_start_failure(self, task_id: str, error: str) -> None:
        record_container_start(success=False)

        def _changes(current: Task) -> dict[str, Any]:
            if current.status is not TaskStatus.RUNNING or current.container_id:
                return {}
            return failed_changes(error)

        updated = self.store.update(task_id, _changes)
        if updated is not None and updated.status is TaskStatus.FAILED:
            record_task_finished(updated)
        logger.error("Failed to start worker for task %s: %s", task_id, error)
