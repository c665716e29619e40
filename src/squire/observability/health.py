"""Composite health check over the task store and the worker backend."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from squire import __version__
from squire.common import utc_now_iso
from squire.task.store import TaskStore
from squire.worker.base import WorkerBackend

logger = logging.getLogger(__name__)

_PROCESS_STARTED = time.monotonic()

HTTP_OK = 200
HTTP_SERVICE_UNAVAILABLE = 503


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class CheckStatus(str, Enum):
    PASS = "pass"
    WARN = "warn"
    FAIL = "fail"


@dataclass(slots=True)
class CheckResult:
    status: CheckStatus
    message: str | None = None
    duration_ms: float | None = None


@dataclass(slots=True)
class HealthReport:
    """Overall status plus the individual checks it was derived from."""

    status: HealthStatus
    timestamp: str
    version: str
    uptime_seconds: int
    checks: dict[str, CheckResult] = field(default_factory=dict)

    @property
    def http_status(self) -> int:
        return HTTP_SERVICE_UNAVAILABLE if self.status is HealthStatus.UNHEALTHY else HTTP_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "timestamp": self.timestamp,
            "version": self.version,
            "uptime": self.uptime_seconds,
            "checks": {
                name: {
                    "status": check.status.value,
                    "message": check.message,
                    "durationMs": check.duration_ms,
                }
                for name, check in self.checks.items()
            },
        }


def check_task_store(store: TaskStore) -> CheckResult:
    started = time.perf_counter()
    try:
        tasks = store.list()
    except Exception as error:  # noqa: BLE001
        logger.warning("Task store health check failed: %s", error)
        return CheckResult(CheckStatus.FAIL, str(error) or "Unknown error", _elapsed_ms(started))
    return CheckResult(CheckStatus.PASS, f"{len(tasks)} tasks in store", _elapsed_ms(started))


def check_backend(backend: WorkerBackend | None) -> CheckResult:
    started = time.perf_counter()
    if backend is None:
        return CheckResult(CheckStatus.WARN, "Backend unavailable", _elapsed_ms(started))
    try:
        workers = backend.list_workers()
    except Exception as error:  # noqa: BLE001
        logger.warning("Backend health check failed: %s", error)
        return CheckResult(
            CheckStatus.WARN,
            str(error) or "Backend unavailable",
            _elapsed_ms(started),
        )
    return CheckResult(
        CheckStatus.PASS,
        f"Backend: {backend.name.value}, {len(workers)} workers",
        _elapsed_ms(started),
    )


def check_health(store: TaskStore, backend: WorkerBackend | None) -> HealthReport:
    """Store failure makes the service unhealthy; backend trouble only degrades it."""

    store_check = check_task_store(store)
    backend_check = check_backend(backend)
    if store_check.status is CheckStatus.FAIL:
        status = HealthStatus.UNHEALTHY
    elif backend_check.status is not CheckStatus.PASS:
        status = HealthStatus.DEGRADED
    else:
        status = HealthStatus.HEALTHY
    return HealthReport(
        status=status,
        timestamp=utc_now_iso(),
        version=__version__,
        uptime_seconds=int(time.monotonic() - _PROCESS_STARTED),
        checks={"taskStore": store_check, "backend": backend_check},
    )


def _elapsed_ms(started: float) -> float:
    return round((time.perf_counter() - started) * 1000, 3)
