"""Task status snapshots and the server-sent event stream built from them."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections.abc import Callable, Iterator
from typing import Any

from squire.task.models import Task, TaskStatus
from squire.task.store import TaskStore

logger = logging.getLogger(__name__)

DEFAULT_UPDATE_INTERVAL_SECONDS = 2.0
DEFAULT_HEARTBEAT_INTERVAL_SECONDS = 15.0
HEARTBEAT_FRAME = ": heartbeat\n\n"
SSE_HEADERS = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def task_stats(tasks: list[Task]) -> dict[str, int]:
    """Dashboard counters for a task list."""

    return {
        "total": len(tasks),
        "pending": sum(1 for task in tasks if task.status is TaskStatus.PENDING),
        "running": sum(1 for task in tasks if task.status is TaskStatus.RUNNING),
        "completed": sum(1 for task in tasks if task.status is TaskStatus.COMPLETED),
        "failed": sum(1 for task in tasks if task.status is TaskStatus.FAILED),
        "withPr": sum(1 for task in tasks if task.pr_url),
        "prMerged": sum(1 for task in tasks if task.pr_merged),
    }


def build_status_snapshot(
    store: TaskStore,
    *,
    clock: Callable[[], float] = time.time,
) -> dict[str, Any]:
    tasks = store.list()
    return {
        "tasks": [task.to_record() for task in tasks],
        "stats": task_stats(tasks),
        "timestamp": int(clock() * 1000),
    }


def format_sse_data(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, ensure_ascii=False)}\n\n"


def iter_status_events(  # noqa: PLR0913
    store: TaskStore,
    *,
    update_interval_seconds: float = DEFAULT_UPDATE_INTERVAL_SECONDS,
    heartbeat_interval_seconds: float = DEFAULT_HEARTBEAT_INTERVAL_SECONDS,
    stop_event: threading.Event | None = None,
    clock: Callable[[], float] = time.monotonic,
    wait: Callable[[float], object] | None = None,
) -> Iterator[str]:
    """Yield SSE frames: a snapshot now, then every update interval, with heartbeats.

    Runs until the consumer stops iterating or ``stop_event`` is set. A
    snapshot that fails to build is logged and skipped; the stream goes on.
    """

    stop = stop_event or threading.Event()
    sleep = wait or stop.wait
    next_update = clock()
    next_heartbeat = clock() + heartbeat_interval_seconds
    while not stop.is_set():
        now = clock()
        if now >= next_update:
            try:
                yield format_sse_data(build_status_snapshot(store))
            except (OSError, ValueError) as error:
                logger.error("Error building status snapshot: %s", error)
            next_update = now + update_interval_seconds
        if now >= next_heartbeat:
            yield HEARTBEAT_FRAME
            next_heartbeat = now + heartbeat_interval_seconds
        delay = max(0.0, min(next_update, next_heartbeat) - clock())
        if delay > 0:
            sleep(delay)
