"""Backend selection and the process-wide backend instance."""

from __future__ import annotations

import logging
import os
import threading

from squire.worker.base import BackendConfig, BackendType, WorkerBackend

logger = logging.getLogger(__name__)

_BACKEND_ALIASES = {
    "docker": BackendType.DOCKER,
    "podman": BackendType.DOCKER,
    "kubernetes": BackendType.KUBERNETES,
    "k8s": BackendType.KUBERNETES,
}

_lock = threading.Lock()
_current: WorkerBackend | None = None


def parse_backend_type(value: str) -> BackendType | None:
    """Map a backend name or alias (``podman``, ``k8s``) to its type."""

    return _BACKEND_ALIASES.get(value.strip().lower())


def detect_backend_type() -> BackendType:
    """``SQUIRE_BACKEND``, else Kubernetes when running in-cluster, else Docker."""

    configured = (os.getenv("SQUIRE_BACKEND") or "").strip().lower()
    parsed = parse_backend_type(configured)
    if parsed is not None:
        return parsed
    if configured:
        logger.warning("Unknown SQUIRE_BACKEND=%r, auto-detecting", configured)
    if os.getenv("KUBERNETES_SERVICE_HOST"):
        logger.debug("Auto-detected Kubernetes environment")
        return BackendType.KUBERNETES
    return BackendType.DOCKER


def create_backend(config: BackendConfig | None = None) -> WorkerBackend:
    cfg = config or BackendConfig()
    backend_type = BackendType(cfg.type) if cfg.type is not None else detect_backend_type()
    logger.info("Creating worker backend: type=%s", backend_type.value)
    if backend_type is BackendType.KUBERNETES:
        from squire.worker.kubernetes_backend import KubernetesBackend

        return KubernetesBackend(cfg.kubernetes)

    from squire.worker.docker_backend import DockerBackend

    return DockerBackend(cfg.docker)


def get_backend(config: BackendConfig | None = None) -> WorkerBackend:
    """Shared backend, created on first use; ``config`` only applies to that first call."""

    global _current  # noqa: PLW0603
    with _lock:
        if _current is None:
            _current = create_backend(config)
        return _current


def set_backend(backend: WorkerBackend) -> None:
    global _current  # noqa: PLW0603
    with _lock:
        _current = backend
    logger.info("Backend set explicitly: type=%s", backend.name.value)


def reset_backend() -> None:
    global _current  # noqa: PLW0603
    with _lock:
        _current = None
    logger.debug("Backend reset")
