from __future__ import annotations

from datetime import timedelta

import allure

from squire.common import to_iso, utc_now
from squire.task.models import NO_CONTAINER_ERROR, Task, TaskCreateOptions, TaskStatus
from squire.task.reconcile import ORPHANED_TASK_ERROR, TaskReconciler
from squire.task.store import TaskStore

pytestmark = [
    allure.epic("Reconciliation"),
    allure.feature("Backend Drift Repair"),
]


def _running(
    store: TaskStore,
    handle: str | None,
    *,
    started_seconds_ago: float = 0.0,
) -> Task:
    task = store.create(TaskCreateOptions(repo="acme/app", prompt="work"))
    started_at = to_iso(utc_now() - timedelta(seconds=started_seconds_ago))
    updated = store.update(
        task.id,
        {"status": TaskStatus.RUNNING, "container_id": handle, "started_at": started_at},
    )
    assert updated is not None
    return updated


def test_reconcile_repairs_every_kind_of_drift(store: TaskStore, backend) -> None:
    orphaned = _running(store, "gone")
    succeeded = _running(store, "ok")
    crashed = _running(store, "bad")
    alive = _running(store, "alive")
    backend.add_worker("ok", succeeded.id, running=False, exit_code=0)
    backend.add_worker("bad", crashed.id, running=False, exit_code=2)
    backend.add_worker("alive", alive.id)
    backend.add_worker("stray", "deleted-task")

    result = TaskReconciler(store, backend).reconcile()

    assert result.tasks_reconciled == 4
    assert result.tasks_marked_failed == 2
    assert result.tasks_marked_completed == 1
    assert result.orphaned_workers_removed == 1
    assert result.errors == []
    assert store.get(orphaned.id).error == ORPHANED_TASK_ERROR
    assert store.get(succeeded.id).status is TaskStatus.COMPLETED
    assert store.get(crashed.id).error == (
        "Worker exited with code 2 (discovered during reconciliation)"
    )
    assert store.get(alive.id).status is TaskStatus.RUNNING
    assert backend.removed == ["stray"]


def test_dry_run_counts_without_changing_anything(store: TaskStore, backend) -> None:
    orphaned = _running(store, "gone")
    backend.add_worker("stray", "deleted-task")

    result = TaskReconciler(store, backend).reconcile(dry_run=True)

    assert result.tasks_marked_failed == 1
    assert result.orphaned_workers_removed == 1
    assert store.get(orphaned.id).status is TaskStatus.RUNNING
    assert backend.removed == []


def test_keep_orphaned_workers(store: TaskStore, backend) -> None:
    backend.add_worker("stray", "deleted-task")

    result = TaskReconciler(store, backend).reconcile(remove_orphaned_workers=False)

    assert result.orphaned_workers_removed == 0
    assert "stray" in backend.workers


def test_worker_matched_by_handle_prefix(store: TaskStore, backend) -> None:
    task = _running(store, "abc123")
    backend.add_worker("abc123def456", task.id, running=False, exit_code=0)

    TaskReconciler(store, backend).reconcile()

    assert store.get(task.id).status is TaskStatus.COMPLETED


def test_missing_handle_respects_dispatch_grace(store: TaskStore, backend) -> None:
    fresh = _running(store, None, started_seconds_ago=1)
    stale = _running(store, None, started_seconds_ago=900)

    result = TaskReconciler(store, backend, dispatch_grace_seconds=120).reconcile()

    assert store.get(fresh.id).status is TaskStatus.RUNNING
    assert store.get(stale.id).error == NO_CONTAINER_ERROR
    assert result.tasks_marked_failed == 1


def test_listing_failure_is_reported_not_raised(store: TaskStore, backend) -> None:
    _running(store, "gone")
    backend.list_error = RuntimeError("daemon down")

    result = TaskReconciler(store, backend).reconcile()

    assert result.errors == ["Reconciliation failed: daemon down"]
    assert result.tasks_reconciled == 0


def test_needs_reconciliation(store: TaskStore, backend) -> None:
    reconciler = TaskReconciler(store, backend)
    assert reconciler.needs_reconciliation() is False

    task = _running(store, "w1")
    assert reconciler.needs_reconciliation() is True

    backend.add_worker("w1", task.id)
    assert reconciler.needs_reconciliation() is False

    backend.finish("w1", 0)
    assert reconciler.needs_reconciliation() is True


def test_reconcile_once_runs_once_per_process(store: TaskStore, backend) -> None:
    reconciler = TaskReconciler(store, backend)

    assert reconciler.reconcile_once() is not None
    assert reconciler.reconcile_once() is None

    TaskReconciler.reset()
    assert reconciler.reconcile_once() is not None


def test_sync_task_status(store: TaskStore, backend) -> None:
    task = _running(store, "w1")
    backend.add_worker("w1", task.id)
    reconciler = TaskReconciler(store, backend)

    assert reconciler.sync_task_status(task.id).status is TaskStatus.RUNNING

    backend.finish("w1", 0)
    assert reconciler.sync_task_status(task.id).status is TaskStatus.COMPLETED
    assert reconciler.sync_task_status("missing") is None
