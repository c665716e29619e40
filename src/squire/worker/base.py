"""Worker backend interface for containerized task execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from squire.task.models import Task

DEFAULT_MODEL = "opencode/glm-4.7-free"
TASK_ID_LABEL = "squire.task.id"
REPO_LABEL = "squire.repo"


class BackendType(str, Enum):
    """Supported worker runtimes."""

    DOCKER = "docker"
    KUBERNETES = "kubernetes"


@dataclass(slots=True)
class ContainerConfig:
    """Per-execution resource and retry policy."""

    timeout_minutes: int = 30
    max_retries: int = 3
    cpu_limit: float = 2
    memory_limit_mb: int = 4096
    preserve_logs_on_failure: bool = True


@dataclass(slots=True)
class StartTaskOptions:
    """Inputs required to launch one worker execution."""

    task: Task
    github_token: str
    model: str | None = None
    worker_image: str | None = None
    container_config: ContainerConfig = field(default_factory=ContainerConfig)
    verbose: bool = False
    on_retry: Callable[[int], None] | None = None

    def __repr__(self) -> str:
        token_state = "set" if self.github_token else "missing"
        return (
            f"StartTaskOptions(task={self.task.id!r}, github_token=<{token_state}>, "
            f"model={self.model!r}, worker_image={self.worker_image!r})"
        )


@dataclass(slots=True)
class WorkerTaskInfo:
    """Backend view of one execution."""

    task_id: str
    worker_id: str
    running: bool
    exit_code: int | None = None
    repo: str | None = None
    retry_count: int | None = None
    created_at: str | None = None


@dataclass(slots=True)
class DockerBackendConfig:
    """Docker or Podman connection and container options."""

    socket_path: str | None = None
    tasks_dir: str | None = None
    host_network: bool = False
    skills_dir: str | None = None
    runtime: str | None = None


@dataclass(slots=True)
class KubernetesBackendConfig:
    """Job placement and lifetime options for the Kubernetes runtime."""

    namespace: str | None = None
    service_account_name: str = "squire-worker"
    image_pull_secrets: list[str] = field(default_factory=list)
    skills_pvc_name: str | None = None
    node_selector: dict[str, str] = field(default_factory=dict)
    tolerations: list[dict[str, str]] = field(default_factory=list)
    active_deadline_seconds: int = 1800
    ttl_seconds_after_finished: int = 3600
    backoff_limit: int = 3
    tasks_pvc_name: str = "squire-tasks"
    tasks_volume_path: str = "/tasks"
    github_token_secret: str = "squire-github-token"


@dataclass(slots=True)
class BackendConfig:
    """Backend selection plus per-runtime options."""

    type: BackendType | None = None
    docker: DockerBackendConfig = field(default_factory=DockerBackendConfig)
    kubernetes: KubernetesBackendConfig = field(default_factory=KubernetesBackendConfig)


class BackendStartError(RuntimeError):
    """Worker could not be started; ``transient`` marks retryable causes."""

    def __init__(self, message: str, *, transient: bool = False) -> None:
        super().__init__(message)
        self.transient = transient


class BackendUnavailableError(RuntimeError):
    """The worker runtime could not be reached or enumerated."""


class WorkerBackend(Protocol):
    """Protocol implemented by worker runtimes.

    Handles are opaque strings: a container id for Docker, a Job name for
    Kubernetes. Queries on unknown handles never raise for absence.
    """

    name: BackendType

    def start(self, options: StartTaskOptions) -> str:
        """Launch an execution for ``options.task`` and return its handle."""

    def stop(self, handle: str) -> None:
        """Stop an execution; stopping a stopped or missing handle is a no-op."""

    def remove(self, handle: str) -> None:
        """Delete an execution and its runtime resources."""

    def get_logs(self, handle: str, tail: int | None = None) -> str:
        """Combined output, ``""`` when the handle is unknown."""

    def is_running(self, handle: str) -> bool:
        """``False`` for finished or unknown handles."""

    def get_exit_code(self, handle: str) -> int | None:
        """Exit code of a finished execution, ``None`` while running or unknown."""

    def list_workers(self) -> list[WorkerTaskInfo]:
        """Every execution carrying the squire labels.

        Raises when the runtime cannot be enumerated; an empty list always
        means no workers exist.
        """
