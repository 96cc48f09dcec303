"""Command timing for the Redis client."""

from __future__ import annotations

import time
from contextlib import contextmanager
from typing import Iterable, Iterator

from lmstfy.metrics import get_performance_metrics


class MetricsHook:
    """Records latency and throughput of Redis commands for one node."""

    def __init__(self, addr: str) -> None:
        self.addr = addr

    def before_process(self, command: str) -> float:
        """Return the start mark of a command."""
        return time.monotonic()

    def after_process(self, command: str, started: float | None, error: BaseException | None) -> None:
        self._record(command.lower(), started, error)

    def after_process_pipeline(
        self, started: float | None, errors: Iterable[BaseException | None]
    ) -> None:
        first_error = next((err for err in errors if err is not None), None)
        self._record("pipeline", started, first_error)

    @contextmanager
    def track(self, command: str) -> Iterator[None]:
        """Time the enclosed call and record it, failed or not."""
        started = self.before_process(command)
        try:
            yield
        except Exception as exc:
            self.after_process(command, started, exc)
            raise
        self.after_process(command, started, None)

    def _record(self, command: str, started: float | None, error: BaseException | None) -> None:
        if started is None:
            return
        duration_ms = int((time.monotonic() - started) * 1000)
        status = "ok" if error is None else "error"
        perf = get_performance_metrics()
        perf.qps.labels(self.addr, command, status).inc()
        perf.latencies.labels(self.addr, command, status).observe(duration_ms)