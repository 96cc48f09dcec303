"""In-process metric primitives and the engine's metric families."""

from __future__ import annotations

import bisect
import math
import threading
from dataclasses import dataclass
from typing import Generic, Iterator, TypeVar

NAMESPACE = "infra"
SUBSYSTEM = "lmstfy_redis_v2"

_Child = TypeVar("_Child")


def _full_name(namespace: str, subsystem: str, name: str) -> str:
    return "_".join(part for part in (namespace, subsystem, name) if part)


def exponential_buckets(start: float, factor: float, count: int) -> list[float]:
    """Return count upper bounds, the first being start, each factor times the last."""
    if count < 1:
        raise ValueError("exponential_buckets needs a positive count")
    if start <= 0:
        raise ValueError("exponential_buckets needs a positive start value")
    if factor <= 1:
        raise ValueError("exponential_buckets needs a factor greater than 1")
    buckets = []
    value = float(start)
    for _ in range(count):
        buckets.append(value)
        value *= factor
    return buckets


class Counter:
    """A value that only goes up."""

    def __init__(self) -> None:
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def inc(self) -> None:
        self.add(1)

    def add(self, amount: float) -> None:
        if amount < 0:
            raise ValueError("counter cannot decrease in value")
        with self._lock:
            self._value += amount


class Gauge:
    """A value that may be set to anything."""

    def __init__(self) -> None:
        self._value = 0.0
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def set(self, value: float) -> None:
        with self._lock:
            self._value = float(value)


class Histogram:
    """Counts observations into buckets by upper bound (inclusive)."""

    def __init__(self, buckets: list[float]) -> None:
        bounds = sorted(float(b) for b in buckets if not math.isinf(b))
        self.upper_bounds: tuple[float, ...] = tuple(bounds)
        self._counts = [0] * (len(bounds) + 1)
        self._sum = 0.0
        self._count = 0
        self._lock = threading.Lock()

    @property
    def sum(self) -> float:
        return self._sum

    @property
    def count(self) -> int:
        return self._count

    @property
    def buckets(self) -> list[tuple[float, int]]:
        """(upper bound, cumulative count) pairs ending with +Inf."""
        with self._lock:
            counts = list(self._counts)
        result = []
        running = 0
        for bound, hits in zip(self.upper_bounds + (math.inf,), counts):
            running += hits
            result.append((bound, running))
        return result

    def observe(self, value: float) -> None:
        index = bisect.bisect_left(self.upper_bounds, value)
        with self._lock:
            self._counts[index] += 1
            self._sum += value
            self._count += 1


class _MetricVec(Generic[_Child]):
    def __init__(
        self,
        name: str,
        label_names: list[str] | tuple[str, ...],
        namespace: str = "",
        subsystem: str = "",
        help: str = "",
    ) -> None:
        self.name = _full_name(namespace, subsystem, name)
        self.help = help
        self.label_names = tuple(label_names)
        self._children: dict[tuple[str, ...], _Child] = {}
        self._lock = threading.Lock()

    def _key(self, args: tuple) -> tuple[str, ...]:
        if len(args) != len(self.label_names):
            raise ValueError(
                f"{self.name}: expected {len(self.label_names)} label values, got {len(args)}"
            )
        return tuple(str(a) for a in args)

    def _new_child(self) -> _Child:
        raise NotImplementedError

    def _child(self, args: tuple) -> _Child:
        key = self._key(args)
        with self._lock:
            child = self._children.get(key)
            if child is None:
                child = self._new_child()
                self._children[key] = child
            return child

    def items(self) -> Iterator[tuple[tuple[str, ...], _Child]]:
        """Snapshot of (label values, child) pairs."""
        with self._lock:
            return iter(list(self._children.items()))


class CounterVec(_MetricVec[Counter]):
    """A family of counters partitioned by label values."""

    def _new_child(self) -> Counter:
        return Counter()

    def labels(self, *args: str) -> Counter:
        return self._child(args)


class GaugeVec(_MetricVec[Gauge]):
    """A family of gauges partitioned by label values."""

    def _new_child(self) -> Gauge:
        return Gauge()

    def labels(self, *args: str) -> Gauge:
        return self._child(args)

    def remove(self, *args: str) -> bool:
        """Drop the gauge for these label values; tell whether it existed."""
        key = self._key(args)
        with self._lock:
            return self._children.pop(key, None) is not None


class HistogramVec(_MetricVec[Histogram]):
    """A family of histograms partitioned by label values."""

    def __init__(
        self,
        name: str,
        label_names: list[str] | tuple[str, ...],
        buckets: list[float],
        namespace: str = "",
        subsystem: str = "",
        help: str = "",
    ) -> None:
        super().__init__(name, label_names, namespace, subsystem, help)
        self.bucket_bounds = list(buckets)

    def _new_child(self) -> Histogram:
        return Histogram(self.bucket_bounds)

    def labels(self, *args: str) -> Histogram:
        return self._child(args)


@dataclass(frozen=True)
class Metrics:
    """Metric families of the engine, all labelled by pool first."""

    publish_jobs: CounterVec
    consume_jobs: CounterVec
    consume_multi_jobs: CounterVec
    pool_add_jobs: CounterVec
    pool_get_jobs: CounterVec
    pool_delete_jobs: CounterVec
    timer_add_jobs: CounterVec
    timer_remove_backup_jobs: CounterVec
    timer_due_jobs: CounterVec
    timer_full_batches: CounterVec
    queue_direct_push_jobs: CounterVec
    queue_pop_jobs: CounterVec
    deadletter_respawn_jobs: CounterVec
    publish_queue_jobs: CounterVec
    consume_queue_jobs: CounterVec
    job_elapsed_ms: HistogramVec
    job_ack_elapsed_ms: HistogramVec

    timer_sizes: GaugeVec
    queue_sizes: GaugeVec
    deadletter_sizes: GaugeVec

    redis_max_mem: GaugeVec
    redis_mem_used: GaugeVec
    redis_conns: GaugeVec
    redis_blockings: GaugeVec
    redis_keys: GaugeVec
    redis_expires: GaugeVec


@dataclass(frozen=True)
class PerformanceMetrics:
    """Per-command latency and throughput of the Redis client."""

    latencies: HistogramVec
    qps: CounterVec


def _build_metrics() -> Metrics:
    def cv(name: str, *labels: str) -> CounterVec:
        return CounterVec(name, ("pool", *labels), NAMESPACE, SUBSYSTEM, name)

    def gv(name: str, *labels: str) -> GaugeVec:
        return GaugeVec(name, ("pool", *labels), NAMESPACE, SUBSYSTEM, name)

    def hv(name: str, *labels: str) -> HistogramVec:
        return HistogramVec(
            name,
            ("pool", *labels),
            exponential_buckets(15, 3.5, 7),
            NAMESPACE,
            SUBSYSTEM,
            name,
        )

    return Metrics(
        publish_jobs=cv("publish_jobs"),
        consume_jobs=cv("consume_jobs"),
        consume_multi_jobs=cv("consume_multi_jobs"),
        pool_add_jobs=cv("pool_add_jobs"),
        pool_get_jobs=cv("pool_get_jobs"),
        pool_delete_jobs=cv("pool_delete_jobs"),
        timer_add_jobs=cv("timer_add_jobs"),
        timer_remove_backup_jobs=cv("timer_remove_backup_jobs"),
        timer_due_jobs=cv("timer_due_jobs"),
        timer_full_batches=cv("timer_full_batches"),
        queue_direct_push_jobs=cv("queue_direct_push_jobs"),
        queue_pop_jobs=cv("queue_pop_jobs"),
        deadletter_respawn_jobs=cv("deadletter_respawn_jobs"),
        publish_queue_jobs=cv("publish_queue_jobs", "namespace", "queue"),
        consume_queue_jobs=cv("consume_queue_jobs", "namespace", "queue"),
        job_elapsed_ms=hv("job_elapsed_ms", "namespace", "queue"),
        job_ack_elapsed_ms=hv("job_ack_elapsed_ms", "namespace", "queue"),
        timer_sizes=gv("timer_sizes"),
        queue_sizes=gv("queue_sizes", "namespace", "queue"),
        deadletter_sizes=gv("deadletter_sizes", "namespace", "queue"),
        redis_max_mem=gv("max_mem_bytes"),
        redis_mem_used=gv("used_mem_bytes"),
        redis_conns=gv("connections"),
        redis_blockings=gv("blocking_connections"),
        redis_keys=gv("total_keys"),
        redis_expires=gv("total_ttl_keys"),
    )


def _build_performance_metrics() -> PerformanceMetrics:
    labels = ("node", "command", "status")
    return PerformanceMetrics(
        latencies=HistogramVec(
            "latency", labels, exponential_buckets(1, 2, 16), NAMESPACE, SUBSYSTEM
        ),
        qps=CounterVec("qps", labels, NAMESPACE, SUBSYSTEM),
    )


_METRICS = _build_metrics()
_PERFORMANCE_METRICS = _build_performance_metrics()


def get_metrics() -> Metrics:
    """The process-wide engine metrics."""
    return _METRICS


def get_performance_metrics() -> PerformanceMetrics:
    """The process-wide Redis command metrics."""
    return _PERFORMANCE_METRICS