"""Runtime configuration for the task store, admission control and worker backends."""

from __future__ import annotations

import json
import logging
import os
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from squire.task.locking import LockConfig
from squire.task.store import default_tasks_dir
from squire.worker.base import (
    DEFAULT_MODEL,
    BackendConfig,
    BackendType,
    ContainerConfig,
    DockerBackendConfig,
    KubernetesBackendConfig,
)
from squire.worker.factory import parse_backend_type

logger = logging.getLogger(__name__)

GH_TOKEN_TIMEOUT_SECONDS = 10
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def default_config_paths() -> tuple[Path, ...]:
    home = Path.home()
    return (
        Path.cwd() / "squire.config.json",
        home / ".squire" / "config.json",
        home / ".config" / "squire" / "config.json",
    )


@dataclass(slots=True)
class LockSettings:
    """Task record lock policy."""

    timeout_seconds: float = 5.0
    stale_seconds: float = 30.0
    retry_min_seconds: float = 0.1
    retry_max_seconds: float = 0.2


@dataclass(slots=True)
class AdmissionSettings:
    """Concurrency ceilings."""

    max_concurrent: int = 5
    max_per_repo: int | None = None
    dispatch_grace_seconds: float = 0.0


@dataclass(slots=True)
class WatchSettings:
    """Reconciliation loop settings."""

    interval_seconds: float = 10.0
    auto_start: bool = True
    task_timeout_minutes: int | None = None
    auto_cleanup: bool = True


@dataclass(slots=True)
class WorkerSettings:
    """What runs inside each worker and with which limits."""

    backend: str | None = None
    model: str = DEFAULT_MODEL
    worker_image: str | None = None
    timeout_minutes: int = 30
    max_retries: int = 3
    cpu_limit: float = 2
    memory_limit_mb: int = 4096
    preserve_logs_on_failure: bool = True


@dataclass(slots=True)
class DockerSettings:
    """Docker/Podman runtime settings."""

    socket_path: str | None = None
    host_network: bool = False
    skills_dir: str | None = None
    runtime: str | None = None


@dataclass(slots=True)
class KubernetesSettings:
    """Kubernetes runtime settings."""

    namespace: str | None = None
    service_account_name: str = "squire-worker"
    image_pull_secrets: tuple[str, ...] = ()
    tasks_pvc_name: str = "squire-tasks"
    skills_pvc_name: str | None = None
    github_token_secret: str = "squire-github-token"


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    tasks_dir: Path = field(default_factory=default_tasks_dir)
    github_token: str | None = field(default=None, repr=False)
    log_level: str = "WARNING"
    config_file: Path | None = None
    lock: LockSettings = field(default_factory=LockSettings)
    admission: AdmissionSettings = field(default_factory=AdmissionSettings)
    watch: WatchSettings = field(default_factory=WatchSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    docker: DockerSettings = field(default_factory=DockerSettings)
    kubernetes: KubernetesSettings = field(default_factory=KubernetesSettings)

    @classmethod
    def from_env(
        cls,
        *,
        config_paths: Sequence[Path] | None = None,
        use_gh_cli: bool = True,
    ) -> Settings:
        """Load settings from environment, then overlay the first config file found.

        Config file values override environment variables. The GitHub token
        falls back to ``gh auth token`` when neither ``GITHUB_TOKEN`` nor
        ``GH_TOKEN`` is set.
        """

        settings = cls(
            tasks_dir=Path(os.getenv("SQUIRE_TASKS_DIR") or default_tasks_dir()),
            github_token=os.getenv("GITHUB_TOKEN") or os.getenv("GH_TOKEN") or None,
            log_level=os.getenv("SQUIRE_LOG_LEVEL", "WARNING").upper(),
            lock=LockSettings(
                timeout_seconds=float(os.getenv("SQUIRE_LOCK_TIMEOUT_SECONDS", "5")),
                stale_seconds=float(os.getenv("SQUIRE_LOCK_STALE_SECONDS", "30")),
                retry_min_seconds=float(os.getenv("SQUIRE_LOCK_RETRY_MIN_SECONDS", "0.1")),
                retry_max_seconds=float(os.getenv("SQUIRE_LOCK_RETRY_MAX_SECONDS", "0.2")),
            ),
            admission=AdmissionSettings(
                max_concurrent=int(os.getenv("SQUIRE_MAX_CONCURRENT", "5")),
                max_per_repo=_env_int_or_none("SQUIRE_MAX_PER_REPO"),
                dispatch_grace_seconds=float(
                    os.getenv("SQUIRE_DISPATCH_GRACE_SECONDS", "0"),
                ),
            ),
            watch=WatchSettings(
                interval_seconds=float(os.getenv("SQUIRE_WATCH_INTERVAL_SECONDS", "10")),
                auto_start=_env_bool("SQUIRE_AUTO_START", default=True),
                task_timeout_minutes=_env_int_or_none("SQUIRE_TASK_TIMEOUT_MINUTES"),
                auto_cleanup=_env_bool("SQUIRE_AUTO_CLEANUP", default=True),
            ),
            worker=WorkerSettings(
                backend=os.getenv("SQUIRE_BACKEND") or None,
                model=os.getenv("SQUIRE_MODEL") or DEFAULT_MODEL,
                worker_image=os.getenv("SQUIRE_WORKER_IMAGE") or None,
                timeout_minutes=int(os.getenv("SQUIRE_TIMEOUT_MINUTES", "30")),
                max_retries=int(os.getenv("SQUIRE_MAX_RETRIES", "3")),
                cpu_limit=float(os.getenv("SQUIRE_CPU_LIMIT", "2")),
                memory_limit_mb=int(os.getenv("SQUIRE_MEMORY_LIMIT_MB", "4096")),
                preserve_logs_on_failure=_env_bool(
                    "SQUIRE_PRESERVE_LOGS_ON_FAILURE",
                    default=True,
                ),
            ),
            docker=DockerSettings(
                socket_path=os.getenv("SQUIRE_DOCKER_SOCKET") or None,
                host_network=_env_bool("SQUIRE_HOST_NETWORK", default=False),
                skills_dir=os.getenv("SQUIRE_SKILLS_DIR") or None,
                runtime=os.getenv("SQUIRE_CONTAINER_RUNTIME") or None,
            ),
            kubernetes=KubernetesSettings(
                namespace=os.getenv("SQUIRE_NAMESPACE") or None,
                service_account_name=os.getenv("SQUIRE_SERVICE_ACCOUNT", "squire-worker"),
                image_pull_secrets=_env_list("SQUIRE_IMAGE_PULL_SECRETS"),
                tasks_pvc_name=os.getenv("SQUIRE_TASKS_PVC", "squire-tasks"),
                skills_pvc_name=os.getenv("SQUIRE_SKILLS_PVC") or None,
                github_token_secret=os.getenv(
                    "SQUIRE_GITHUB_TOKEN_SECRET",
                    "squire-github-token",
                ),
            ),
        )

        paths = default_config_paths() if config_paths is None else tuple(config_paths)
        for path in paths:
            payload = _read_config_file(path)
            if payload is None:
                continue
            settings.apply_file_overrides(payload)
            settings.config_file = path
            logger.debug("Loaded config file %s", path)
            break

        if not settings.github_token and use_gh_cli:
            settings.github_token = _gh_auth_token()
        return settings

    def apply_file_overrides(self, payload: Mapping[str, Any]) -> None:
        """Overlay values from a ``squire.config.json`` object (camelCase keys)."""

        if payload.get("githubToken"):
            self.github_token = str(payload["githubToken"])
        if payload.get("model"):
            self.worker.model = str(payload["model"])
        if payload.get("tasksDir"):
            self.tasks_dir = Path(str(payload["tasksDir"])).expanduser()
        if payload.get("workerImage"):
            self.worker.worker_image = str(payload["workerImage"])
        if payload.get("skillsDir"):
            self.docker.skills_dir = str(payload["skillsDir"])
        if payload.get("maxConcurrent"):
            self.admission.max_concurrent = int(payload["maxConcurrent"])
        if payload.get("maxPerRepo"):
            self.admission.max_per_repo = int(payload["maxPerRepo"])
        if payload.get("autoCleanup") is not None:
            self.watch.auto_cleanup = bool(payload["autoCleanup"])
        if payload.get("containerRuntime"):
            self.docker.runtime = str(payload["containerRuntime"])
        if payload.get("backend"):
            self.worker.backend = str(payload["backend"])
        if payload.get("namespace"):
            self.kubernetes.namespace = str(payload["namespace"])
        if payload.get("logLevel"):
            self.log_level = str(payload["logLevel"]).upper()

    def validate(self) -> None:
        """Raise ``ValueError`` naming the offending variable."""

        if self.admission.max_concurrent <= 0:
            raise ValueError("SQUIRE_MAX_CONCURRENT must be > 0.")
        if self.admission.max_per_repo is not None and self.admission.max_per_repo <= 0:
            raise ValueError("SQUIRE_MAX_PER_REPO must be > 0.")
        if self.admission.dispatch_grace_seconds < 0:
            raise ValueError("SQUIRE_DISPATCH_GRACE_SECONDS must be >= 0.")
        if self.lock.timeout_seconds < 0:
            raise ValueError("SQUIRE_LOCK_TIMEOUT_SECONDS must be >= 0.")
        if self.lock.stale_seconds <= 0:
            raise ValueError("SQUIRE_LOCK_STALE_SECONDS must be > 0.")
        lock = self.lock
        if lock.retry_min_seconds <= 0 or lock.retry_max_seconds < lock.retry_min_seconds:
            raise ValueError(
                "SQUIRE_LOCK_RETRY_MIN_SECONDS must be > 0 and <= SQUIRE_LOCK_RETRY_MAX_SECONDS.",
            )
        if self.watch.interval_seconds <= 0:
            raise ValueError("SQUIRE_WATCH_INTERVAL_SECONDS must be > 0.")
        if self.watch.task_timeout_minutes is not None and self.watch.task_timeout_minutes <= 0:
            raise ValueError("SQUIRE_TASK_TIMEOUT_MINUTES must be > 0.")
        if self.worker.timeout_minutes <= 0:
            raise ValueError("SQUIRE_TIMEOUT_MINUTES must be > 0.")
        if self.worker.max_retries < 0:
            raise ValueError("SQUIRE_MAX_RETRIES must be >= 0.")
        if self.worker.cpu_limit <= 0:
            raise ValueError("SQUIRE_CPU_LIMIT must be > 0.")
        if self.worker.memory_limit_mb <= 0:
            raise ValueError("SQUIRE_MEMORY_LIMIT_MB must be > 0.")
        if self.worker.backend is not None:
            self.backend_type()
        if self.log_level not in _LOG_LEVELS:
            raise ValueError(f"SQUIRE_LOG_LEVEL must be one of {', '.join(sorted(_LOG_LEVELS))}.")

    def backend_type(self) -> BackendType | None:
        if self.worker.backend is None:
            return None
        parsed = parse_backend_type(self.worker.backend)
        if parsed is None:
            raise ValueError(
                "SQUIRE_BACKEND must be docker, podman, kubernetes or k8s, "
                f"got {self.worker.backend!r}.",
            )
        return parsed

    def lock_config(self) -> LockConfig:
        return LockConfig(
            timeout=self.lock.timeout_seconds,
            stale_timeout=self.lock.stale_seconds,
            retry_min_interval=self.lock.retry_min_seconds,
            retry_max_interval=self.lock.retry_max_seconds,
        )

    def container_config(self) -> ContainerConfig:
        return ContainerConfig(
            timeout_minutes=self.worker.timeout_minutes,
            max_retries=self.worker.max_retries,
            cpu_limit=self.worker.cpu_limit,
            memory_limit_mb=self.worker.memory_limit_mb,
            preserve_logs_on_failure=self.worker.preserve_logs_on_failure,
        )

    def backend_config(self) -> BackendConfig:
        return BackendConfig(
            type=self.backend_type(),
            docker=DockerBackendConfig(
                socket_path=self.docker.socket_path,
                tasks_dir=str(self.tasks_dir),
                host_network=self.docker.host_network,
                skills_dir=self.docker.skills_dir,
                runtime=self.docker.runtime,
            ),
            kubernetes=KubernetesBackendConfig(
                namespace=self.kubernetes.namespace,
                service_account_name=self.kubernetes.service_account_name,
                image_pull_secrets=list(self.kubernetes.image_pull_secrets),
                skills_pvc_name=self.kubernetes.skills_pvc_name,
                active_deadline_seconds=self.worker.timeout_minutes * 60,
                tasks_pvc_name=self.kubernetes.tasks_pvc_name,
                github_token_secret=self.kubernetes.github_token_secret,
            ),
        )


def _read_config_file(path: Path) -> dict[str, Any] | None:
    if not path.is_file():
        return None
    try:
        payload = json.loads(path.read_text("utf-8"))
    except (OSError, ValueError) as error:
        logger.warning("Ignoring unreadable config file %s: %s", path, error)
        return None
    if not isinstance(payload, dict):
        logger.warning("Ignoring config file %s: expected a JSON object", path)
        return None
    return payload


def _gh_auth_token() -> str | None:
    try:
        completed = subprocess.run(
            ["gh", "auth", "token"],  # noqa: S607
            capture_output=True,
            text=True,
            check=False,
            timeout=GH_TOKEN_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        logger.debug("gh auth token unavailable: %s", error)
        return None
    token = completed.stdout.strip()
    if completed.returncode != 0 or not token:
        return None
    logger.debug("Using GitHub token from gh CLI")
    return token


def _env_int_or_none(name: str) -> int | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return None
    return int(value)


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
