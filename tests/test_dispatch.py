from __future__ import annotations

import allure
import pytest

from squire.observability.metrics import CONTAINER_STARTS, REGISTRY, TASKS_COMPLETED
from squire.task.dispatch import MissingHandleError, TaskDispatcher
from squire.task.limits import AdmissionController
from squire.task.locking import LockConfig, acquire_lock
from squire.task.models import (
    NO_CONTAINER_ERROR,
    STOPPED_BY_USER_ERROR,
    InvalidTransitionError,
    Task,
    TaskCreateOptions,
    TaskNotFoundError,
    TaskStatus,
    failed_changes,
)
from squire.task.store import TaskLockError, TaskStore
from squire.worker import BackendStartError, StartTaskOptions

pytestmark = [
    allure.epic("Dispatch"),
    allure.feature("Background Starts"),
]


def _pending(store: TaskStore) -> Task:
    return store.create(TaskCreateOptions(repo="acme/app", prompt="Add tests"))


def _dispatcher(store: TaskStore, backend) -> TaskDispatcher:
    return TaskDispatcher(store, backend, github_token="ghp_secret", model="test/model")


def test_start_marks_running_then_records_handle(store: TaskStore, backend) -> None:
    task = _pending(store)

    with _dispatcher(store, backend) as dispatcher:
        future = dispatcher.start(task.id)
        assert store.get(task.id).status is TaskStatus.RUNNING
        handle = future.result(timeout=5)

    stored = store.get(task.id)
    assert stored.status is TaskStatus.RUNNING
    assert stored.container_id == handle
    assert stored.started_at is not None
    options = backend.started[0]
    assert options.github_token == "ghp_secret"
    assert options.model == "test/model"
    assert "ghp_secret" not in repr(options)
    assert REGISTRY.get_value(CONTAINER_STARTS, {"status": "success"}) == 1


def test_start_rejects_unknown_and_completed_tasks(store: TaskStore, backend) -> None:
    task = _pending(store)
    store.update(task.id, {"status": TaskStatus.COMPLETED})

    with _dispatcher(store, backend) as dispatcher:
        with pytest.raises(TaskNotFoundError):
            dispatcher.start("missing")
        with pytest.raises(InvalidTransitionError):
            dispatcher.start(task.id)

    assert backend.started == []


def test_failed_task_can_be_restarted(store: TaskStore, backend) -> None:
    task = _pending(store)
    store.update(task.id, {"status": TaskStatus.FAILED, "error": "old failure"})

    with _dispatcher(store, backend) as dispatcher:
        dispatcher.start(task.id).result(timeout=5)

    restarted = store.get(task.id)
    assert restarted.status is TaskStatus.RUNNING
    assert restarted.error is None


def test_backend_start_failure_is_recorded_on_task(store: TaskStore, backend) -> None:
    task = _pending(store)
    backend.start_error = BackendStartError("Container start failed: no image")

    with _dispatcher(store, backend) as dispatcher:
        future = dispatcher.start(task.id)
        with pytest.raises(BackendStartError):
            future.result(timeout=5)

    failed = store.get(task.id)
    assert failed.status is TaskStatus.FAILED
    assert failed.error == "Container start failed: no image"
    assert REGISTRY.get_value(CONTAINER_STARTS, {"status": "failure"}) == 1
    assert REGISTRY.get_value(TASKS_COMPLETED, {"status": "failed"}) == 1


def test_unexpected_backend_error_is_wrapped(store: TaskStore, backend) -> None:
    task = _pending(store)
    backend.start_error = RuntimeError("socket closed")

    with _dispatcher(store, backend) as dispatcher:
        with pytest.raises(BackendStartError, match="socket closed"):
            dispatcher.start(task.id).result(timeout=5)

    assert store.get(task.id).error == "socket closed"


def test_retry_callback_updates_task(store: TaskStore, backend) -> None:
    task = _pending(store)
    original_start = backend.start

    def _start(options: StartTaskOptions) -> str:
        options.on_retry(2)
        return original_start(options)

    backend.start = _start
    with _dispatcher(store, backend) as dispatcher:
        dispatcher.start(task.id).result(timeout=5)

    retried = store.get(task.id)
    assert retried.retry_count == 2
    assert retried.last_retry_at is not None


def test_worker_is_stopped_when_task_changed_during_start(store: TaskStore, backend) -> None:
    task = _pending(store)
    original_start = backend.start

    def _start(options: StartTaskOptions) -> str:
        store.update(options.task.id, failed_changes("Stopped by user"))
        return original_start(options)

    backend.start = _start
    with _dispatcher(store, backend) as dispatcher:
        handle = dispatcher.start(task.id).result(timeout=5)

    assert backend.stopped == [handle]
    stored = store.get(task.id)
    assert stored.status is TaskStatus.FAILED
    assert stored.container_id is None


def test_stop_running_task_records_user_stop(store: TaskStore, backend) -> None:
    task = _pending(store)
    with _dispatcher(store, backend) as dispatcher:
        handle = dispatcher.start(task.id).result(timeout=5)
        stopped = dispatcher.stop(task.id)

    assert backend.stopped == [handle]
    assert stopped.status is TaskStatus.FAILED
    assert stopped.error == STOPPED_BY_USER_ERROR
    assert stopped.completed_at is not None


def test_stop_terminal_task_leaves_record_unchanged(store: TaskStore, backend) -> None:
    task = _pending(store)
    store.update(task.id, {"status": TaskStatus.COMPLETED, "container_id": "done"})

    with _dispatcher(store, backend) as dispatcher:
        result = dispatcher.stop(task.id)

    assert backend.stopped == ["done"]
    assert result.status is TaskStatus.COMPLETED
    assert result.error is None


def test_stop_without_handle_raises(store: TaskStore, backend) -> None:
    task = _pending(store)
    with _dispatcher(store, backend) as dispatcher:
        with pytest.raises(MissingHandleError, match="has no container"):
            dispatcher.stop(task.id)


def test_logs_preserve_and_remove(store: TaskStore, backend) -> None:
    task = _pending(store)
    with _dispatcher(store, backend) as dispatcher:
        handle = dispatcher.start(task.id).result(timeout=5)
        backend.logs[handle] = "line 1\nline 2\nline 3"

        assert dispatcher.get_logs(task.id, tail=2) == "line 2\nline 3"
        log_path = dispatcher.preserve_logs(store.get(task.id))
        assert log_path == store.tasks_dir.parent / "logs" / f"{task.id}.log"
        assert log_path.read_text("utf-8") == "line 1\nline 2\nline 3"

        assert dispatcher.remove(task.id) is True
        assert dispatcher.remove(task.id) is False

    assert backend.removed == [handle]
    assert store.get(task.id) is None


def test_wait_reports_completion(store: TaskStore, backend) -> None:
    task = _pending(store)
    with _dispatcher(store, backend) as dispatcher:
        dispatcher.start(task.id)
        assert dispatcher.wait(timeout=5) is True
    assert store.get(task.id).container_id is not None


def test_stop_is_idempotent(store: TaskStore, backend) -> None:
    task = _pending(store)
    with _dispatcher(store, backend) as dispatcher:
        handle = dispatcher.start(task.id).result(timeout=5)
        first = dispatcher.stop(task.id)
        second = dispatcher.stop(task.id)

    assert first == second
    assert backend.stopped == [handle, handle]
    assert REGISTRY.get_value(TASKS_COMPLETED, {"status": "failed"}) == 1


def _impatient(store: TaskStore) -> TaskStore:
    config = LockConfig(timeout=0.1, retry_min_interval=0.01, retry_max_interval=0.02)
    return TaskStore(store.tasks_dir, lock_config=config)


def test_worker_is_stopped_when_handle_cannot_be_recorded(store: TaskStore, backend) -> None:
    store = _impatient(store)
    task = _pending(store)
    original_start = backend.start
    original_stop = backend.stop
    releases = []

    def _start(options: StartTaskOptions) -> str:
        handle = original_start(options)
        releases.append(acquire_lock(store.task_path(options.task.id)))
        return handle

    def _stop(handle: str) -> None:
        original_stop(handle)
        releases.pop()()

    backend.start = _start
    backend.stop = _stop
    with _dispatcher(store, backend) as dispatcher:
        future = dispatcher.start(task.id)
        with pytest.raises(TaskLockError):
            future.result(timeout=5)

    handle = f"container-{task.id}-1"
    assert backend.stopped == [handle]
    failed = store.get(task.id)
    assert failed.status is TaskStatus.FAILED
    assert failed.container_id is None
    assert failed.error.startswith("Failed to record container:")
    assert REGISTRY.get_value(CONTAINER_STARTS, {"status": "failure"}) == 1


def test_task_left_without_handle_is_healed_after_lock_outage(
    store: TaskStore,
    backend,
) -> None:
    store = _impatient(store)
    task = _pending(store)
    original_start = backend.start
    releases = []

    def _start(options: StartTaskOptions) -> str:
        handle = original_start(options)
        releases.append(acquire_lock(store.task_path(options.task.id)))
        return handle

    backend.start = _start
    try:
        with _dispatcher(store, backend) as dispatcher:
            with pytest.raises(TaskLockError):
                dispatcher.start(task.id).result(timeout=5)
    finally:
        for release in releases:
            release()

    assert backend.stopped == [f"container-{task.id}-1"]
    assert store.get(task.id).status is TaskStatus.RUNNING
    assert AdmissionController(store, backend).count_running() == 0
    assert store.get(task.id).error == NO_CONTAINER_ERROR
