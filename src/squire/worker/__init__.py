"""Worker backends that run tasks in containers."""

from squire.worker.base import (
    BackendStartError,
    BackendType,
    BackendUnavailableError,
    ContainerConfig,
    StartTaskOptions,
    WorkerBackend,
    WorkerTaskInfo,
)
from squire.worker.factory import (
    create_backend,
    detect_backend_type,
    get_backend,
    parse_backend_type,
    reset_backend,
    set_backend,
)

__all__ = [
    "BackendStartError",
    "BackendType",
    "BackendUnavailableError",
    "ContainerConfig",
    "StartTaskOptions",
    "WorkerBackend",
    "WorkerTaskInfo",
    "create_backend",
    "detect_backend_type",
    "get_backend",
    "parse_backend_type",
    "reset_backend",
    "set_backend",
]
