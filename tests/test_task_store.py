from __future__ import annotations

import json
import threading
from pathlib import Path

import allure
import pytest

from squire.task.locking import LockConfig, acquire_lock
from squire.task.models import (
    BRANCH_PREFIX,
    DEFAULT_BASE_BRANCH,
    InvalidTransitionError,
    Task,
    TaskCreateOptions,
    TaskStatus,
    check_transition,
    exit_code_changes,
)
from squire.task.store import TaskLockError, TaskStore

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Task Records"),
]


def _create(store: TaskStore, repo: str = "acme/app", prompt: str = "Fix the bug") -> Task:
    return store.create(TaskCreateOptions(repo=repo, prompt=prompt))


def test_create_applies_defaults_and_persists_camel_case_record(store: TaskStore) -> None:
    task = _create(store)

    assert len(task.id) == 10
    assert task.status is TaskStatus.PENDING
    assert task.branch == f"{BRANCH_PREFIX}{task.id}"
    assert task.base_branch == DEFAULT_BASE_BRANCH

    record = json.loads(store.task_path(task.id).read_text("utf-8"))
    assert record["status"] == "pending"
    assert record["baseBranch"] == DEFAULT_BASE_BRANCH
    assert record["createdAt"] == task.created_at
    assert "containerId" not in record
    assert store.get(task.id) == task


def test_create_rejects_blank_repo_and_prompt() -> None:
    with pytest.raises(ValueError, match="repo"):
        TaskCreateOptions(repo=" ", prompt="x")
    with pytest.raises(ValueError, match="prompt"):
        TaskCreateOptions(repo="acme/app", prompt="")


def test_get_returns_none_for_unknown_task(store: TaskStore) -> None:
    assert store.get("missing") is None
    assert store.update("missing", {"error": "x"}) is None
    assert store.delete("missing") is False


def test_update_merges_fields_and_clears_with_none(store: TaskStore) -> None:
    task = _create(store)

    updated = store.update(task.id, {"container_id": "abc123", "error": "boom"})
    assert updated is not None
    assert updated.container_id == "abc123"

    cleared = store.update(task.id, {"error": None})
    assert cleared is not None
    assert cleared.error is None
    assert cleared.container_id == "abc123"
    assert "error" not in json.loads(store.task_path(task.id).read_text("utf-8"))


def test_update_rejects_immutable_and_unknown_fields(store: TaskStore) -> None:
    task = _create(store)

    with pytest.raises(ValueError, match="cannot be updated: repo"):
        store.update(task.id, {"repo": "other/repo"})
    with pytest.raises(ValueError, match="cannot be updated: nonsense"):
        store.update(task.id, {"nonsense": 1})
    with pytest.raises(ValueError, match="cannot be cleared"):
        store.update(task.id, {"status": None})


def test_callable_update_sees_current_record(store: TaskStore) -> None:
    task = _create(store)
    store.update(task.id, {"retry_count": 2})

    updated = store.update(task.id, lambda current: {"retry_count": (current.retry_count or 0) + 1})

    assert updated is not None
    assert updated.retry_count == 3


def test_callable_update_returning_nothing_leaves_file_untouched(store: TaskStore) -> None:
    task = _create(store)
    path = store.task_path(task.id)
    before = path.stat().st_mtime_ns

    unchanged = store.update(task.id, lambda current: {})

    assert unchanged == task
    assert path.stat().st_mtime_ns == before


def test_concurrent_callable_updates_never_lose_writes(tasks_dir: Path) -> None:
    patient = LockConfig(timeout=20.0, retry_min_interval=0.005, retry_max_interval=0.02)
    store = TaskStore(tasks_dir, lock_config=patient)
    task = _create(store)

    def _bump() -> None:
        for _ in range(10):
            store.update(task.id, lambda current: {"retry_count": (current.retry_count or 0) + 1})

    threads = [threading.Thread(target=_bump) for _ in range(6)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    final = store.get(task.id)
    assert final is not None
    assert final.retry_count == 60


def test_update_raises_task_lock_error_when_lock_is_held(tasks_dir: Path) -> None:
    store = TaskStore(tasks_dir, lock_config=LockConfig(timeout=0.1, retry_min_interval=0.01))
    task = _create(store)
    release = acquire_lock(store.task_path(task.id))
    try:
        with pytest.raises(TaskLockError) as excinfo:
            store.update(task.id, {"error": "x"})
        assert excinfo.value.task_id == task.id
        assert "update" in str(excinfo.value)
    finally:
        release()


def test_delete_removes_record_and_marker(store: TaskStore) -> None:
    task = _create(store)

    assert store.delete(task.id) is True
    assert store.get(task.id) is None
    assert not store.task_path(task.id).exists()
    assert list(store.tasks_dir.iterdir()) == []
    assert store.delete(task.id) is False


def test_list_sorts_newest_first_and_filters_by_status(store: TaskStore) -> None:
    first = _create(store, prompt="one")
    second = _create(store, prompt="two")
    record = json.loads(store.task_path(first.id).read_text("utf-8"))
    record["createdAt"] = "2020-01-01T00:00:00Z"
    store.task_path(first.id).write_text(json.dumps(record), "utf-8")
    store.update(second.id, {"status": TaskStatus.RUNNING})

    assert [task.id for task in store.list()] == [second.id, first.id]
    assert [task.id for task in store.list(TaskStatus.RUNNING)] == [second.id]
    assert [task.id for task in store.list("pending")] == [first.id]


def test_list_skips_corrupt_records_and_keeps_unknown_keys(store: TaskStore) -> None:
    task = _create(store)
    (store.tasks_dir / "broken.json").write_text("{not json", "utf-8")
    record = json.loads(store.task_path(task.id).read_text("utf-8"))
    record["dashboardNote"] = "keep me"
    store.task_path(task.id).write_text(json.dumps(record), "utf-8")

    tasks = store.list()
    assert [item.id for item in tasks] == [task.id]

    store.update(task.id, {"error": "x"})
    assert json.loads(store.task_path(task.id).read_text("utf-8"))["dashboardNote"] == "keep me"


def test_transition_rules() -> None:
    task = Task(id="t1", repo="a/b", prompt="p", status=TaskStatus.COMPLETED, created_at="x")

    with pytest.raises(InvalidTransitionError, match="completed to running"):
        check_transition(task, TaskStatus.RUNNING)

    task.status = TaskStatus.FAILED
    check_transition(task, TaskStatus.RUNNING)


def test_exit_code_changes_map_zero_to_completed_and_unknown_to_failed() -> None:
    assert exit_code_changes(0)["status"] is TaskStatus.COMPLETED
    failed = exit_code_changes(2)
    assert failed["status"] is TaskStatus.FAILED
    assert failed["error"] == "Container exited with code 2"
    assert exit_code_changes(None)["error"] == "Container exited with code unknown"
