"""File-backed task store: one JSON record per task, lock-guarded writes."""

from __future__ import annotations

import contextlib
import json
import logging
import os
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import uuid4

from squire.common import from_iso
from squire.task.locking import LockConfig, LockError, lock_path_for, locked
from squire.task.models import (
    MUTABLE_ATTRS,
    Task,
    TaskCreateOptions,
    TaskStatus,
    new_task,
)

logger = logging.getLogger(__name__)

TASK_ID_LENGTH = 10
RECORD_SUFFIX = ".json"

TaskChanges = Mapping[str, Any] | Callable[[Task], Mapping[str, Any]]


class TaskLockError(LockError):
    """A store write could not take the task's lock in time."""

    def __init__(self, action: str, task_id: str, error: LockError) -> None:
        super().__init__(
            f"Failed to {action} task {task_id}: {error}",
            path=error.path,
            cause=error.cause,
        )
        self.task_id = task_id


def default_tasks_dir() -> Path:
    """Store root from ``SQUIRE_TASKS_DIR`` or ``./tasks``."""

    configured = os.getenv("SQUIRE_TASKS_DIR")
    if configured:
        return Path(configured)
    return Path.cwd() / "tasks"


def generate_task_id() -> str:
    return uuid4().hex[:TASK_ID_LENGTH]


class TaskStore:
    """Durable CRUD over task records.

    Reads never lock. ``update`` and ``delete`` take the per-record lock,
    re-read inside it and write atomically, so concurrent writers in other
    processes never lose updates and lock-free readers never see a partial
    record. Creation does not lock because a fresh id cannot race with itself.
    """

    def __init__(
        self,
        tasks_dir: Path | None = None,
        *,
        lock_config: LockConfig | None = None,
    ) -> None:
        self.tasks_dir = Path(tasks_dir) if tasks_dir is not None else default_tasks_dir()
        self.lock_config = lock_config or LockConfig()

    def task_path(self, task_id: str) -> Path:
        return self.tasks_dir / f"{task_id}{RECORD_SUFFIX}"

    def create(self, options: TaskCreateOptions) -> Task:
        """Allocate an id, apply defaults and persist a new ``pending`` task."""

        self._ensure_dir()
        task_id = generate_task_id()
        while self.task_path(task_id).exists():
            task_id = generate_task_id()
        task = new_task(task_id, options)
        self._write(task)
        logger.info("Task created: id=%s repo=%s branch=%s", task.id, task.repo, task.branch)
        return task

    def get(self, task_id: str) -> Task | None:
        """Lock-free read of the current record, ``None`` if it does not exist."""

        path = self.task_path(task_id)
        try:
            return _read_task(path)
        except FileNotFoundError:
            return None

    def update(self, task_id: str, changes: TaskChanges) -> Task | None:
        """Merge ``changes`` into the stored record under the task lock.

        ``changes`` maps task attribute names to new values (``None`` clears
        a field). It may also be a callable that receives the freshly re-read
        task inside the lock and returns that mapping, which makes
        read-modify-write updates safe against concurrent writers.

        Returns the merged task, or ``None`` if the task does not exist.

        Raises:
            TaskLockError: The record lock could not be acquired in time.
            ValueError: ``changes`` names an unknown or immutable field.
        """

        path = self.task_path(task_id)
        if not path.exists():
            return None

        try:
            with locked(path, self.lock_config):
                try:
                    task = _read_task(path)
                except FileNotFoundError:
                    return None
                resolved = changes(task) if callable(changes) else changes
                old_status = task.status
                if resolved:
                    _apply_changes(task, resolved)
                    self._write(task)
        except LockError as error:
            logger.warning("Failed to acquire lock for task update %s: %s", task_id, error)
            raise TaskLockError("update", task_id, error) from error

        if task.status != old_status:
            logger.info(
                "Task status changed: id=%s %s -> %s",
                task_id,
                old_status.value,
                task.status.value,
            )
        return task

    def delete(self, task_id: str) -> bool:
        """Remove the record; ``False`` when it was already gone."""

        path = self.task_path(task_id)
        if not path.exists():
            return False

        try:
            with locked(path, self.lock_config):
                if not path.exists():
                    return False
                path.unlink()
        except LockError as error:
            logger.warning("Failed to acquire lock for task deletion %s: %s", task_id, error)
            raise TaskLockError("delete", task_id, error) from error

        with contextlib.suppress(FileNotFoundError):
            lock_path_for(path).unlink()
        logger.info("Task deleted: id=%s", task_id)
        return True

    def list(self, status: TaskStatus | str | None = None) -> list[Task]:
        """All tasks, newest ``created_at`` first, optionally filtered by status."""

        self._ensure_dir()
        wanted = TaskStatus(status) if status is not None else None
        tasks: list[Task] = []
        for path in self.tasks_dir.glob(f"*{RECORD_SUFFIX}"):
            try:
                task = _read_task(path)
            except FileNotFoundError:
                continue
            except (OSError, ValueError) as error:
                logger.warning("Skipping unreadable task record %s: %s", path, error)
                continue
            if wanted is not None and task.status != wanted:
                continue
            tasks.append(task)
        tasks.sort(key=_created_key, reverse=True)
        logger.debug("Listed tasks: status=%s count=%d", wanted, len(tasks))
        return tasks

    def _ensure_dir(self) -> None:
        self.tasks_dir.mkdir(parents=True, exist_ok=True)

    def _write(self, task: Task) -> None:
        path = self.task_path(task.id)
        tmp_path = path.with_name(f".{path.name}.{uuid4().hex[:8]}.tmp")
        payload = json.dumps(task.to_record(), indent=2, ensure_ascii=False)
        try:
            tmp_path.write_text(payload + "\n", "utf-8")
            os.replace(tmp_path, path)
        finally:
            with contextlib.suppress(FileNotFoundError):
                tmp_path.unlink()


def _read_task(path: Path) -> Task:
    record = json.loads(path.read_text("utf-8"))
    if not isinstance(record, dict):
        raise ValueError(f"Task record must be a JSON object: {path}")
    return Task.from_record(record)


def _created_key(task: Task) -> datetime:
    try:
        return from_iso(task.created_at)
    except ValueError:
        return datetime.min.replace(tzinfo=UTC)


def _apply_changes(task: Task, changes: Mapping[str, Any]) -> None:
    for name, value in changes.items():
        if name not in MUTABLE_ATTRS:
            raise ValueError(f"Task field cannot be updated: {name}")
        if name == "status":
            if value is None:
                raise ValueError("Task status cannot be cleared")
            value = TaskStatus(value)
        setattr(task, name, value)
