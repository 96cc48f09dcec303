"""Periodic export of timer, ready queue and dead letter sizes."""

from __future__ import annotations

import threading
from typing import Iterable, Mapping, Protocol

from redis import RedisError

from lmstfy.codec import RedisInstance
from lmstfy.deadletter import DeadLetter
from lmstfy.metrics import get_metrics
from lmstfy.queue import Queue
from lmstfy.timer import Timer

_COLLECT_INTERVAL = 5.0
_QUEUE = "q"
_DEAD_LETTER = "d"


class _SizeProvider(Protocol):
    def size(self) -> int: ...


class _Waiter(Protocol):
    def wait(self, timeout: float | None = ...) -> bool: ...


class SizeMonitor:
    """Tracks the sizes of monitored queues and their dead letters."""

    def __init__(
        self,
        redis: RedisInstance,
        timer: Timer,
        preload_data: Mapping[str, Iterable[str]],
    ) -> None:
        self._redis = redis
        self._timer = timer
        self._providers: dict[tuple[str, str, str], _SizeProvider] = {}
        self._lock = threading.Lock()
        for namespace, queues in preload_data.items():
            for queue in queues:
                self.monitor_if_not_exist(namespace, queue)

    def monitor_if_not_exist(self, namespace: str, queue: str) -> None:
        """Start watching a queue and its dead letter unless already watched."""
        queue_key = (_QUEUE, namespace, queue)
        with self._lock:
            # Queue and dead letter are added together, so the queue alone tells.
            if queue_key in self._providers:
                return
        queue_provider = Queue(namespace, queue, self._redis, None)
        try:
            dead_letter: DeadLetter | None = DeadLetter(namespace, queue, self._redis)
        except RuntimeError:
            dead_letter = None
        with self._lock:
            self._providers[queue_key] = queue_provider
            if dead_letter is not None:
                self._providers[(_DEAD_LETTER, namespace, queue)] = dead_letter

    def remove(self, namespace: str, queue: str) -> None:
        """Stop watching a queue and drop its gauges."""
        metrics = get_metrics()
        with self._lock:
            self._providers.pop((_QUEUE, namespace, queue), None)
            self._providers.pop((_DEAD_LETTER, namespace, queue), None)
            metrics.queue_sizes.remove(self._redis.name, namespace, queue)
            metrics.deadletter_sizes.remove(self._redis.name, namespace, queue)

    def collect(self) -> None:
        """Read every size once and update the gauges; failed reads are skipped."""
        metrics = get_metrics()
        try:
            timer_size = self._timer.size()
        except RedisError:
            pass
        else:
            metrics.timer_sizes.labels(self._redis.name).set(timer_size)

        with self._lock:
            providers = list(self._providers.items())
        for (kind, namespace, queue), provider in providers:
            try:
                size = provider.size()
            except RedisError:
                continue
            gauges = metrics.queue_sizes if kind == _QUEUE else metrics.deadletter_sizes
            gauges.labels(self._redis.name, namespace, queue).set(size)

    def loop(self, stop: _Waiter) -> None:
        """Collect every five seconds until stop is set."""
        while not stop.wait(_COLLECT_INTERVAL):
            self.collect()