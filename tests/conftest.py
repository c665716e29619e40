"""Shared test fixtures."""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path

import pytest

from squire.observability.metrics import REGISTRY
from squire.task.locking import LockConfig
from squire.task.reconcile import TaskReconciler
from squire.task.store import TaskStore
from squire.worker import BackendType, StartTaskOptions, WorkerTaskInfo, reset_backend

FAST_LOCKS = LockConfig(
    timeout=2.0,
    stale_timeout=30.0,
    retry_min_interval=0.01,
    retry_max_interval=0.02,
)


class FakeBackend:
    """In-memory worker runtime: handles are plain strings, workers never run anything."""

    name = BackendType.DOCKER

    def __init__(self) -> None:
        self.workers: dict[str, WorkerTaskInfo] = {}
        self.logs: dict[str, str] = {}
        self.started: list[StartTaskOptions] = []
        self.stopped: list[str] = []
        self.removed: list[str] = []
        self.start_error: Exception | None = None
        self.list_error: Exception | None = None
        self._counter = 0

    def start(self, options: StartTaskOptions) -> str:
        self.started.append(options)
        if self.start_error is not None:
            raise self.start_error
        self._counter += 1
        handle = f"container-{options.task.id}-{self._counter}"
        self.workers[handle] = WorkerTaskInfo(
            task_id=options.task.id,
            worker_id=handle,
            running=True,
            repo=options.task.repo,
        )
        return handle

    def add_worker(
        self,
        handle: str,
        task_id: str,
        *,
        running: bool = True,
        exit_code: int | None = None,
    ) -> None:
        self.workers[handle] = WorkerTaskInfo(
            task_id=task_id,
            worker_id=handle,
            running=running,
            exit_code=exit_code,
        )

    def finish(self, handle: str, exit_code: int | None) -> None:
        worker = self.workers[handle]
        worker.running = False
        worker.exit_code = exit_code

    def stop(self, handle: str) -> None:
        self.stopped.append(handle)
        worker = self.workers.get(handle)
        if worker is not None and worker.running:
            self.finish(handle, 137)

    def remove(self, handle: str) -> None:
        self.removed.append(handle)
        self.workers.pop(handle, None)

    def get_logs(self, handle: str, tail: int | None = None) -> str:
        lines = self.logs.get(handle, "").splitlines()
        if tail is not None:
            lines = lines[-tail:]
        return "\n".join(lines)

    def is_running(self, handle: str) -> bool:
        worker = self.workers.get(handle)
        return worker is not None and worker.running

    def get_exit_code(self, handle: str) -> int | None:
        worker = self.workers.get(handle)
        if worker is None or worker.running:
            return None
        return worker.exit_code

    def list_workers(self) -> list[WorkerTaskInfo]:
        if self.list_error is not None:
            raise self.list_error
        return [replace(worker) for worker in self.workers.values()]


@pytest.fixture(autouse=True)
def _reset_process_state():
    REGISTRY.reset()
    TaskReconciler.reset()
    reset_backend()
    yield
    REGISTRY.reset()
    TaskReconciler.reset()
    reset_backend()


@pytest.fixture()
def tasks_dir(tmp_path: Path) -> Path:
    return tmp_path / "tasks"


@pytest.fixture()
def store(tasks_dir: Path) -> TaskStore:
    return TaskStore(tasks_dir, lock_config=FAST_LOCKS)


@pytest.fixture()
def backend() -> FakeBackend:
    return FakeBackend()
