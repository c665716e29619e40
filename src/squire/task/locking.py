"""Cross-process advisory locks for task record files.

A lock is a marker file (``<path>.lock``) created exclusively through
``filelock.SoftFileLock``. Holders release it by deleting the marker. A
marker older than ``stale_timeout`` is treated as left behind by a crashed
holder and is removed by the next acquirer.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
import threading
import time
from collections.abc import Awaitable, Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import TypeVar

from filelock import SoftFileLock, Timeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOCK_SUFFIX = ".lock"


@dataclass(slots=True, frozen=True)
class LockConfig:
    """Lock acquisition policy, in seconds."""

    timeout: float = 5.0
    stale_timeout: float = 30.0
    retry_min_interval: float = 0.1
    retry_max_interval: float = 0.2


DEFAULT_LOCK_CONFIG = LockConfig()


class LockError(RuntimeError):
    """Lock could not be acquired within the configured timeout."""

    def __init__(self, message: str, *, path: Path, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.path = path
        self.cause = cause


def lock_path_for(path: str | os.PathLike[str]) -> Path:
    """Marker file guarding ``path``."""

    target = Path(path)
    return target.with_name(target.name + LOCK_SUFFIX)


def acquire_lock(
    path: str | os.PathLike[str],
    config: LockConfig | None = None,
) -> Callable[[], None]:
    """Acquire the lock guarding ``path`` and return an idempotent release function.

    Raises:
        LockError: The lock was still held by someone else when ``config.timeout`` elapsed.
    """

    cfg = config or DEFAULT_LOCK_CONFIG
    target = Path(path)
    marker = lock_path_for(target)
    marker.parent.mkdir(parents=True, exist_ok=True)
    lock = SoftFileLock(str(marker), thread_local=False)

    deadline = time.monotonic() + max(0.0, cfg.timeout)
    attempt = 0
    last_error: BaseException | None = None
    logger.debug("Acquiring lock on %s (timeout=%ss)", target, cfg.timeout)
    while True:
        try:
            lock.acquire(blocking=False)
            break
        except Timeout as error:
            last_error = error
        if _reclaim_if_stale(marker, stale_timeout=cfg.stale_timeout):
            continue
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            logger.warning("Failed to acquire lock on %s: %s", target, last_error)
            raise LockError(
                f"Failed to acquire lock on {target}: lock is held by another writer",
                path=target,
                cause=last_error,
            ) from last_error
        delay = min(cfg.retry_max_interval, cfg.retry_min_interval * (2**attempt))
        attempt += 1
        time.sleep(min(delay, remaining))

    logger.debug("Lock acquired on %s", target)
    released = threading.Event()

    def release() -> None:
        if released.is_set():
            return
        released.set()
        lock.release(force=True)
        logger.debug("Lock released on %s", target)

    return release


def is_locked(
    path: str | os.PathLike[str],
    config: LockConfig | None = None,
) -> bool:
    """True when a live (non-stale) lock marker exists for ``path``."""

    cfg = config or DEFAULT_LOCK_CONFIG
    age = _marker_age(lock_path_for(path))
    if age is None:
        return False
    return age <= cfg.stale_timeout


@contextmanager
def locked(
    path: str | os.PathLike[str],
    config: LockConfig | None = None,
) -> Iterator[None]:
    """Hold the lock for ``path`` for the duration of the ``with`` block."""

    release = acquire_lock(path, config)
    try:
        yield
    finally:
        release()


def with_lock(
    path: str | os.PathLike[str],
    fn: Callable[[], T],
    config: LockConfig | None = None,
) -> T:
    """Run ``fn`` with the lock held; the lock is released on every exit path."""

    with locked(path, config):
        return fn()


async def with_lock_async(
    path: str | os.PathLike[str],
    fn: Callable[[], Awaitable[T]],
    config: LockConfig | None = None,
) -> T:
    """Await ``fn()`` with the lock held, acquiring it off the event loop."""

    release = await asyncio.to_thread(acquire_lock, path, config)
    try:
        return await fn()
    finally:
        release()


def _marker_age(marker: Path) -> float | None:
    try:
        return time.time() - marker.stat().st_mtime
    except FileNotFoundError:
        return None


def _reclaim_if_stale(marker: Path, *, stale_timeout: float) -> bool:
    age = _marker_age(marker)
    if age is None or age <= stale_timeout:
        return False
    logger.warning(
        "Reclaiming stale lock %s (age %.1fs > %.1fs)",
        marker,
        age,
        stale_timeout,
    )
    with contextlib.suppress(FileNotFoundError):
        marker.unlink()
    return True
