"""In-process metric registry rendered in Prometheus text exposition format."""

from __future__ import annotations

import math
import threading
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from squire.common import from_iso, seconds_since
from squire.task.models import Task, TaskStatus

if TYPE_CHECKING:
    from squire.task.store import TaskStore

DEFAULT_DURATION_BUCKETS = (0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0, 1800.0)

LabelKey = tuple[tuple[str, str], ...]


class MetricType(str, Enum):
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"


@dataclass(slots=True)
class _HistogramSeries:
    buckets: dict[float, int]
    sum: float = 0.0
    count: int = 0


@dataclass(slots=True)
class _Metric:
    name: str
    help: str
    type: MetricType
    buckets: tuple[float, ...] = ()
    values: dict[LabelKey, float] = field(default_factory=dict)
    series: dict[LabelKey, _HistogramSeries] = field(default_factory=dict)


class MetricsRegistry:
    """Thread-safe counters, gauges and histograms keyed by label sets.

    Updating a name that was never registered registers it on the fly with
    the name as its help text.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._metrics: dict[str, _Metric] = {}

    def register_counter(self, name: str, help_text: str) -> None:
        self._register(name, help_text, MetricType.COUNTER)

    def register_gauge(self, name: str, help_text: str) -> None:
        self._register(name, help_text, MetricType.GAUGE)

    def register_histogram(
        self,
        name: str,
        help_text: str,
        buckets: Sequence[float] = DEFAULT_DURATION_BUCKETS,
    ) -> None:
        self._register(name, help_text, MetricType.HISTOGRAM, tuple(sorted(buckets)))

    def inc_counter(
        self,
        name: str,
        labels: Mapping[str, str] | None = None,
        value: float = 1.0,
    ) -> None:
        if value < 0:
            raise ValueError(f"Counter {name} cannot decrease")
        with self._lock:
            metric = self._ensure(name, MetricType.COUNTER)
            key = _label_key(labels)
            metric.values[key] = metric.values.get(key, 0.0) + value

    def set_gauge(self, name: str, value: float, labels: Mapping[str, str] | None = None) -> None:
        with self._lock:
            metric = self._ensure(name, MetricType.GAUGE)
            metric.values[_label_key(labels)] = value

    def inc_gauge(
        self,
        name: str,
        labels: Mapping[str, str] | None = None,
        value: float = 1.0,
    ) -> None:
        with self._lock:
            metric = self._ensure(name, MetricType.GAUGE)
            key = _label_key(labels)
            metric.values[key] = metric.values.get(key, 0.0) + value

    def dec_gauge(
        self,
        name: str,
        labels: Mapping[str, str] | None = None,
        value: float = 1.0,
    ) -> None:
        self.inc_gauge(name, labels, -value)

    def observe_histogram(
        self,
        name: str,
        value: float,
        labels: Mapping[str, str] | None = None,
    ) -> None:
        with self._lock:
            metric = self._ensure(name, MetricType.HISTOGRAM)
            key = _label_key(labels)
            series = metric.series.get(key)
            if series is None:
                bounds = (*metric.buckets, math.inf)
                series = _HistogramSeries(buckets=dict.fromkeys(bounds, 0))
                metric.series[key] = series
            series.sum += value
            series.count += 1
            for bound in series.buckets:
                if value <= bound:
                    series.buckets[bound] += 1

    def get_value(self, name: str, labels: Mapping[str, str] | None = None) -> float:
        """Current counter or gauge value, 0 when unset."""

        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                return 0.0
            return metric.values.get(_label_key(labels), 0.0)

    def get_histogram_count(self, name: str, labels: Mapping[str, str] | None = None) -> int:
        with self._lock:
            metric = self._metrics.get(name)
            if metric is None:
                return 0
            series = metric.series.get(_label_key(labels))
            return series.count if series else 0

    def render(self) -> str:
        """Prometheus text exposition of every registered metric."""

        lines: list[str] = []
        with self._lock:
            for metric in self._metrics.values():
                lines.append(f"# HELP {metric.name} {metric.help}")
                lines.append(f"# TYPE {metric.name} {metric.type.value}")
                if metric.type is MetricType.HISTOGRAM:
                    lines.extend(_render_histogram(metric))
                    continue
                for key, value in metric.values.items():
                    lines.append(f"{metric.name}{_format_labels(key)} {_format_number(value)}")
        return "\n".join(lines) + "\n"

    def reset(self) -> None:
        """Zero every value, keeping registrations."""

        with self._lock:
            for metric in self._metrics.values():
                metric.values.clear()
                metric.series.clear()

    def _register(
        self,
        name: str,
        help_text: str,
        metric_type: MetricType,
        buckets: tuple[float, ...] = (),
    ) -> None:
        with self._lock:
            existing = self._metrics.get(name)
            if existing is not None:
                if existing.type is not metric_type:
                    raise ValueError(
                        f"Metric {name} is already registered as {existing.type.value}",
                    )
                return
            self._metrics[name] = _Metric(name, help_text, metric_type, buckets)

    def _ensure(self, name: str, metric_type: MetricType) -> _Metric:
        metric = self._metrics.get(name)
        if metric is None:
            buckets = DEFAULT_DURATION_BUCKETS if metric_type is MetricType.HISTOGRAM else ()
            metric = _Metric(name, name, metric_type, buckets)
            self._metrics[name] = metric
        elif metric.type is not metric_type:
            raise ValueError(f"Metric {name} is a {metric.type.value}, not a {metric_type.value}")
        return metric


def _label_key(labels: Mapping[str, str] | None) -> LabelKey:
    if not labels:
        return ()
    return tuple(sorted((str(key), str(value)) for key, value in labels.items()))


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\n", "\\n").replace('"', '\\"')


def _format_labels(key: LabelKey) -> str:
    if not key:
        return ""
    return "{" + ",".join(f'{name}="{_escape(value)}"' for name, value in key) + "}"


def _format_number(value: float) -> str:
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if float(value).is_integer():
        return str(int(value))
    return repr(float(value))


def _render_histogram(metric: _Metric) -> list[str]:
    lines = []
    for key, series in metric.series.items():
        for bound, count in series.buckets.items():
            le = "+Inf" if math.isinf(bound) else _format_number(bound)
            bucket_key = (*key, ("le", le))
            lines.append(f"{metric.name}_bucket{_format_labels(bucket_key)} {count}")
        lines.append(f"{metric.name}_sum{_format_labels(key)} {_format_number(series.sum)}")
        lines.append(f"{metric.name}_count{_format_labels(key)} {series.count}")
    return lines


TASKS_CREATED = "squire_tasks_created_total"
TASKS_COMPLETED = "squire_tasks_completed_total"
TASKS_RUNNING = "squire_tasks_running"
TASKS_PENDING = "squire_tasks_pending"
TASKS_TOTAL = "squire_tasks_total"
TASK_DURATION = "squire_task_duration_seconds"
CONTAINER_STARTS = "squire_container_starts_total"
API_REQUESTS = "squire_api_requests_total"
API_REQUEST_DURATION = "squire_api_request_duration_seconds"


def register_default_metrics(registry: MetricsRegistry) -> MetricsRegistry:
    registry.register_counter(TASKS_CREATED, "Total number of tasks created")
    registry.register_counter(TASKS_COMPLETED, "Total number of tasks completed")
    registry.register_gauge(TASKS_RUNNING, "Number of currently running tasks")
    registry.register_gauge(TASKS_PENDING, "Number of pending tasks")
    registry.register_gauge(TASKS_TOTAL, "Total number of tasks")
    registry.register_histogram(TASK_DURATION, "Task execution duration in seconds")
    registry.register_counter(CONTAINER_STARTS, "Total number of container/job starts")
    registry.register_counter(API_REQUESTS, "Total number of API requests")
    registry.register_histogram(
        API_REQUEST_DURATION,
        "API request duration in seconds",
        buckets=(0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0),
    )
    return registry


REGISTRY = register_default_metrics(MetricsRegistry())


def record_task_created(registry: MetricsRegistry = REGISTRY) -> None:
    registry.inc_counter(TASKS_CREATED)


def record_task_finished(task: Task, registry: MetricsRegistry = REGISTRY) -> None:
    """Count a task that reached a terminal status and observe its run time."""

    status = task.status.value
    registry.inc_counter(TASKS_COMPLETED, {"status": status})
    if task.started_at and task.completed_at:
        duration = seconds_since(task.started_at, now=from_iso(task.completed_at))
        if duration is not None and duration >= 0:
            registry.observe_histogram(TASK_DURATION, duration, {"status": status})


def record_container_start(*, success: bool, registry: MetricsRegistry = REGISTRY) -> None:
    registry.inc_counter(CONTAINER_STARTS, {"status": "success" if success else "failure"})


def record_api_request(
    method: str,
    path: str,
    status_code: int,
    duration_seconds: float,
    *,
    registry: MetricsRegistry = REGISTRY,
) -> None:
    labels = {"method": method.upper(), "path": path, "status": str(status_code)}
    registry.inc_counter(API_REQUESTS, labels)
    registry.observe_histogram(
        API_REQUEST_DURATION,
        duration_seconds,
        {"method": method.upper(), "path": path},
    )


def refresh_task_gauges(store: TaskStore, registry: MetricsRegistry = REGISTRY) -> None:
    """Set the task gauges from the current store contents."""

    tasks = store.list()
    registry.set_gauge(TASKS_TOTAL, len(tasks))
    registry.set_gauge(TASKS_RUNNING, sum(1 for task in tasks if task.status is TaskStatus.RUNNING))
    registry.set_gauge(TASKS_PENDING, sum(1 for task in tasks if task.status is TaskStatus.PENDING))


def export_metrics(store: TaskStore | None = None, registry: MetricsRegistry = REGISTRY) -> str:
    if store is not None:
        refresh_task_gauges(store, registry)
    return registry.render()
