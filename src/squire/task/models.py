"""Domain models for task records and their lifecycle."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

from squire.common import utc_now_iso

DEFAULT_BASE_BRANCH = "auto"
BRANCH_PREFIX = "squire/"
NO_CONTAINER_ERROR = "No container ID"
STOPPED_BY_USER_ERROR = "Stopped by user"


class TaskStatus(str, Enum):
    """Durable task lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})

_ALLOWED_TRANSITIONS: dict[TaskStatus, frozenset[TaskStatus]] = {
    TaskStatus.PENDING: frozenset({TaskStatus.RUNNING}),
    TaskStatus.RUNNING: frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED}),
    TaskStatus.FAILED: frozenset({TaskStatus.RUNNING}),
    TaskStatus.COMPLETED: frozenset(),
}


class TaskNotFoundError(LookupError):
    """Raised by direct lookups when no record exists for a task id."""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task not found: {task_id}")
        self.task_id = task_id


class InvalidTransitionError(ValueError):
    """Raised when a status change is not permitted by the task state machine."""

    def __init__(self, task_id: str, current: TaskStatus, target: TaskStatus) -> None:
        super().__init__(
            f"Task {task_id} cannot move from {current.value} to {target.value}",
        )
        self.task_id = task_id
        self.current = current
        self.target = target


class InconsistentStateError(RuntimeError):
    """A running task without a backend handle.

    Never raised to callers: the admission controller and reconciliation
    loop correct the record and log this error as a warning.
    """

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task {task_id} is running without a container handle")
        self.task_id = task_id


@dataclass(slots=True)
class TaskCreateOptions:
    """Caller-supplied input for a new task."""

    repo: str
    prompt: str
    branch: str | None = None
    base_branch: str | None = None
    parent_task_id: str | None = None

    def __post_init__(self) -> None:
        if not self.repo or not self.repo.strip():
            raise ValueError("repo is required")
        if not self.prompt or not self.prompt.strip():
            raise ValueError("prompt is required")


@dataclass(slots=True)
class Task:
    """One unit of coding work, persisted as a single JSON record."""

    id: str
    repo: str
    prompt: str
    status: TaskStatus
    created_at: str
    branch: str | None = None
    base_branch: str | None = None
    container_id: str | None = None
    pr_url: str | None = None
    pr_number: int | None = None
    pr_merged: bool | None = None
    pr_merged_at: str | None = None
    pr_closed: bool | None = None
    pr_closed_at: str | None = None
    ci_failed: bool | None = None
    ci_failed_at: str | None = None
    ci_failed_check: str | None = None
    ci_fix_task_id: str | None = None
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None
    retry_count: int | None = None
    last_retry_at: str | None = None
    parent_task_id: str | None = None
    follow_up_prompts: list[str] | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> Task:
        """Build a task from its on-disk JSON object."""

        values: dict[str, Any] = {}
        extra: dict[str, Any] = {}
        for key, value in record.items():
            attribute = _JSON_TO_ATTR.get(key)
            if attribute is None:
                extra[key] = value
                continue
            values[attribute] = value
        missing = [name for name in _REQUIRED_ATTRS if name not in values]
        if missing:
            raise ValueError(f"Task record is missing required fields: {', '.join(missing)}")
        values["status"] = TaskStatus(values["status"])
        return cls(**values, extra=extra)

    def to_record(self) -> dict[str, Any]:
        """Serialize to the on-disk JSON object; ``None`` fields are omitted."""

        record: dict[str, Any] = {}
        for attribute, key in _ATTR_TO_JSON.items():
            value = getattr(self, attribute)
            if value is None:
                continue
            if isinstance(value, TaskStatus):
                value = value.value
            record[key] = value
        for key, value in self.extra.items():
            record.setdefault(key, value)
        return record


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


_ATTR_TO_JSON: dict[str, str] = {
    item.name: _camel(item.name) for item in fields(Task) if item.name != "extra"
}
_JSON_TO_ATTR: dict[str, str] = {value: key for key, value in _ATTR_TO_JSON.items()}
_REQUIRED_ATTRS = ("id", "repo", "prompt", "status", "created_at")

MUTABLE_ATTRS = frozenset(_ATTR_TO_JSON) - {"id", "repo", "prompt", "created_at"}


def new_task(task_id: str, options: TaskCreateOptions) -> Task:
    """Apply creation defaults for a freshly allocated task id."""

    return Task(
        id=task_id,
        repo=options.repo,
        prompt=options.prompt,
        branch=options.branch or f"{BRANCH_PREFIX}{task_id}",
        base_branch=options.base_branch or DEFAULT_BASE_BRANCH,
        status=TaskStatus.PENDING,
        created_at=utc_now_iso(),
        parent_task_id=options.parent_task_id,
    )


def check_transition(task: Task, target: TaskStatus) -> None:
    """Raise ``InvalidTransitionError`` unless ``task`` may move to ``target``."""

    if target not in _ALLOWED_TRANSITIONS[task.status]:
        raise InvalidTransitionError(task.id, task.status, target)


def running_changes(*, started_at: str | None = None) -> dict[str, Any]:
    """Field changes for ``pending|failed -> running``."""

    return {
        "status": TaskStatus.RUNNING,
        "started_at": started_at or utc_now_iso(),
        "completed_at": None,
        "error": None,
        "container_id": None,
    }


def failed_changes(error: str, *, completed_at: str | None = None) -> dict[str, Any]:
    """Field changes for ``running -> failed``."""

    return {
        "status": TaskStatus.FAILED,
        "error": error,
        "completed_at": completed_at or utc_now_iso(),
    }


def exit_code_changes(
    exit_code: int | None,
    *,
    error_template: str = "Container exited with code {exit_code}",
) -> dict[str, Any]:
    """Field changes for a finished execution: zero completes, anything else fails."""

    if exit_code == 0:
        return {
            "status": TaskStatus.COMPLETED,
            "error": None,
            "completed_at": utc_now_iso(),
        }
    shown = "unknown" if exit_code is None else exit_code
    return failed_changes(error_template.format(exit_code=shown))
