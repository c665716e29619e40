"""Docker and Podman worker backend."""

from __future__ import annotations

import logging
import os
import random
import time
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from squire.task.store import default_tasks_dir
from squire.worker.base import (
    DEFAULT_MODEL,
    REPO_LABEL,
    TASK_ID_LABEL,
    BackendStartError,
    BackendType,
    DockerBackendConfig,
    StartTaskOptions,
    WorkerTaskInfo,
)

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("squire.audit")

DEFAULT_WORKER_IMAGE = "squire-worker:latest"
RETRY_LABEL = "squire.retry"
MAX_BACKOFF_SECONDS = 60.0
BACKOFF_JITTER = 0.2

TRANSIENT_ERROR_PATTERNS = (
    "econnrefused",
    "enotfound",
    "etimedout",
    "connection refused",
    "connection aborted",
    "read timed out",
    "socket hang up",
    "network error",
    "no such container",
    "container is restarting",
    "oom killed",
)


def is_transient_error(error: BaseException) -> bool:
    """True for runtime failures worth retrying (connectivity, restarts, OOM)."""

    message = str(error).lower()
    return any(pattern in message for pattern in TRANSIENT_ERROR_PATTERNS)


def backoff_delay(attempt: int, *, rng: random.Random | None = None) -> float:
    """Seconds to wait before retry ``attempt``: 2^n capped at 60, jittered by 20%."""

    base = min(float(2**attempt), MAX_BACKOFF_SECONDS)
    jitter = base * BACKOFF_JITTER * ((rng or random).random() - 0.5)
    return base + jitter


def detect_socket_path(config: DockerBackendConfig) -> str | None:
    """Socket to connect to, ``None`` meaning the client library default."""

    if config.socket_path:
        return config.socket_path
    if os.getenv("DOCKER_HOST"):
        return None
    rootless = Path(f"/run/user/{os.getuid()}/podman/podman.sock")
    if rootless.exists():
        return str(rootless)
    system = Path("/run/podman/podman.sock")
    if system.exists():
        return str(system)
    return None


def create_docker_client(config: DockerBackendConfig) -> docker.DockerClient:
    socket_path = detect_socket_path(config)
    if socket_path is None:
        logger.debug("Using default Docker client environment")
        return docker.from_env()
    logger.debug("Using container runtime socket %s", socket_path)
    return docker.DockerClient(base_url=f"unix://{socket_path}")


class DockerBackend:
    """Run each task in a detached container labelled with its task id."""

    name = BackendType.DOCKER

    def __init__(
        self,
        config: DockerBackendConfig | None = None,
        *,
        client: docker.DockerClient | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config or DockerBackendConfig()
        self._client = client
        self._sleep = sleep
        self._random = random.Random()  # noqa: S311

    @property
    def client(self) -> docker.DockerClient:
        if self._client is None:
            self._client = create_docker_client(self.config)
        return self._client

    def start(self, options: StartTaskOptions) -> str:
        task = options.task
        limits = options.container_config
        image = options.worker_image or os.getenv("SQUIRE_WORKER_IMAGE") or DEFAULT_WORKER_IMAGE
        retry_count = task.retry_count or 0

        audit_logger.info(
            "container_start_requested task=%s repo=%s branch=%s github_token_present=%s "
            "cpu_limit=%s memory_limit_mb=%s timeout_minutes=%s",
            task.id,
            task.repo,
            task.branch,
            bool(options.github_token),
            limits.cpu_limit,
            limits.memory_limit_mb,
            limits.timeout_minutes,
        )
        logger.info(
            "Starting task container: task=%s repo=%s retry_count=%d",
            task.id,
            task.repo,
            retry_count,
        )

        attempt = 0
        while True:
            try:
                container = self.client.containers.create(
                    image,
                    environment=self._environment(options),
                    volumes=self._binds(),
                    labels={
                        TASK_ID_LABEL: task.id,
                        REPO_LABEL: task.repo,
                        RETRY_LABEL: str(retry_count),
                    },
                    mem_limit=limits.memory_limit_mb * 1024 * 1024,
                    nano_cpus=int(limits.cpu_limit * 1e9),
                    network_mode="host" if self.config.host_network else None,
                    runtime=self.config.runtime,
                    auto_remove=False,
                    detach=True,
                )
                container.start()
            except DockerException as error:
                transient = is_transient_error(error)
                if transient and attempt < limits.max_retries:
                    delay = backoff_delay(attempt, rng=self._random)
                    logger.warning(
                        "Container start failed, retrying: task=%s attempt=%d/%d delay=%.1fs "
                        "error=%s",
                        task.id,
                        attempt + 1,
                        limits.max_retries,
                        delay,
                        error,
                    )
                    retry_count += 1
                    if options.on_retry is not None:
                        options.on_retry(retry_count)
                    self._sleep(delay)
                    attempt += 1
                    continue
                logger.error(
                    "Container start failed: task=%s attempt=%d error=%s",
                    task.id,
                    attempt + 1,
                    error,
                )
                raise BackendStartError(
                    f"Container start failed: {error}",
                    transient=transient,
                ) from error

            container_id = str(container.id)
            audit_logger.info(
                "container_started task=%s container=%s image=%s attempt=%d",
                task.id,
                container_id[:12],
                image,
                attempt + 1,
            )
            logger.info("Container started: task=%s container=%s", task.id, container_id[:12])
            if options.verbose:
                logger.debug("Container started: task=%s full_id=%s", task.id, container_id)
            return container_id

    def stop(self, handle: str) -> None:
        audit_logger.info("container_stop_requested container=%s", handle[:12])
        if not self.is_running(handle):
            logger.info("Container already stopped: %s", handle[:12])
            return
        try:
            self.client.containers.get(handle).stop()
        except NotFound:
            logger.info("Container vanished before stop: %s", handle[:12])
            return
        audit_logger.info("container_stopped container=%s", handle[:12])
        logger.info("Container stopped: %s", handle[:12])

    def remove(self, handle: str) -> None:
        logger.info("Removing container %s", handle[:12])
        try:
            self.client.containers.get(handle).remove(force=True)
        except DockerException as error:
            logger.warning("Failed to remove container %s: %s", handle[:12], error)
            return
        audit_logger.info("container_removed container=%s", handle[:12])

    def get_logs(self, handle: str, tail: int | None = None) -> str:
        try:
            container = self.client.containers.get(handle)
        except NotFound:
            return ""
        raw = container.logs(stdout=True, stderr=True, tail=tail if tail is not None else "all")
        logs = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else str(raw)
        logger.debug("Container logs retrieved: %s length=%d", handle[:12], len(logs))
        return logs

    def is_running(self, handle: str) -> bool:
        state = self._state(handle)
        return bool(state and state.get("Running"))

    def get_exit_code(self, handle: str) -> int | None:
        state = self._state(handle)
        if not state or state.get("Running"):
            return None
        exit_code = state.get("ExitCode")
        return int(exit_code) if exit_code is not None else None

    def list_workers(self) -> list[WorkerTaskInfo]:
        containers = self.client.containers.list(all=True, filters={"label": TASK_ID_LABEL})
        workers = []
        for container in containers:
            labels = container.labels or {}
            state = container.attrs.get("State") or {}
            running = container.status == "running"
            exit_code = None
            if not running and isinstance(state, dict) and "ExitCode" in state:
                exit_code = int(state["ExitCode"])
            workers.append(
                WorkerTaskInfo(
                    task_id=labels.get(TASK_ID_LABEL, ""),
                    worker_id=str(container.id),
                    running=running,
                    exit_code=exit_code,
                    repo=labels.get(REPO_LABEL),
                    retry_count=int(labels.get(RETRY_LABEL) or 0),
                    created_at=_created_at(container.attrs.get("Created")),
                ),
            )
        logger.debug("Listed squire containers: count=%d", len(workers))
        return workers

    def _state(self, handle: str) -> dict[str, Any] | None:
        try:
            container = self.client.containers.get(handle)
        except NotFound:
            return None
        except DockerException as error:
            logger.warning("Failed to inspect container %s: %s", handle[:12], error)
            return None
        state = container.attrs.get("State")
        return state if isinstance(state, dict) else None

    def _environment(self, options: StartTaskOptions) -> dict[str, str]:
        task = options.task
        return {
            "TASK_ID": task.id,
            "REPO": task.repo,
            "PROMPT": task.prompt,
            "BRANCH": task.branch or "",
            "BASE_BRANCH": task.base_branch or "main",
            "GITHUB_TOKEN": options.github_token,
            "GH_TOKEN": options.github_token,
            "MODEL": options.model or DEFAULT_MODEL,
        }

    def _binds(self) -> list[str]:
        tasks_dir = Path(self.config.tasks_dir) if self.config.tasks_dir else default_tasks_dir()
        binds = [f"{tasks_dir.resolve()}:/tasks:rw"]
        if self.config.skills_dir:
            binds.append(f"{self.config.skills_dir}:/skills:ro")
            logger.debug("Mounting skills directory %s", self.config.skills_dir)
        return binds


def _created_at(value: object) -> str | None:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=UTC).isoformat()
    if isinstance(value, str):
        return value
    return None
