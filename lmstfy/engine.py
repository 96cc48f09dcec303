"""The Redis job engine: publishing, consuming, peeking and dead letters."""

from __future__ import annotations

import json
import threading
import time
from typing import TYPE_CHECKING, Any, Sequence, TextIO

from lmstfy.codec import EmptyQueueError, Job, NotFoundError, QueueName, RedisInstance
from lmstfy.deadletter import DeadLetter, preload_dead_letter_lua_script
from lmstfy.info import redis_instance_monitor
from lmstfy.meta import MetaManager
from lmstfy.metrics import get_metrics
from lmstfy.monitor import SizeMonitor
from lmstfy.pool import Pool
from lmstfy.queue import Queue, poll_queues, preload_queue_lua_script
from lmstfy.timer import Timer

if TYPE_CHECKING:
    from lmstfy.helper import RedisConf

TIMER_NAME = "timer_set_v2"
_TIMER_INTERVAL = 1.0
_CHECK_BACKUP_INTERVAL = 600.0


class Engine:
    """Stores jobs in the timer or ready queues, delivers them and manages dead letters.

    Background threads export metrics and pump due jobs until shutdown() is called.
    """

    def __init__(self, redis_name: str, conf: RedisConf, conn: Any) -> None:
        self._conf = conf
        self._redis = RedisInstance(redis_name, conn)
        preload_dead_letter_lua_script(self._redis)
        preload_queue_lua_script(self._redis)
        self._meta = MetaManager(self._redis)
        self._timer = Timer(TIMER_NAME, self._redis, _TIMER_INTERVAL, _CHECK_BACKUP_INTERVAL)
        metadata = self._meta.dump()
        self._monitor = SizeMonitor(self._redis, self._timer, metadata)
        self._pool = Pool(self._redis)
        self._stop = threading.Event()
        workers = (
            threading.Thread(
                target=redis_instance_monitor,
                args=(self._redis, self._stop),
                name=f"info-{redis_name}",
                daemon=True,
            ),
            threading.Thread(
                target=self._monitor.loop,
                args=(self._stop,),
                name=f"sizes-{redis_name}",
                daemon=True,
            ),
        )
        for worker in workers:
            worker.start()
        self._timer.start()

    def __enter__(self) -> Engine:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def publish(self, job: Job) -> str:
        """Store a job and schedule it; return its id."""
        job_id = self._publish_job(job)
        metrics = get_metrics()
        metrics.publish_jobs.labels(self._redis.name).inc()
        metrics.publish_queue_jobs.labels(self._redis.name, job.namespace, job.queue).inc()
        return job_id

    def _publish_job(self, job: Job) -> str:
        self._meta.record_if_not_exist(job.namespace, job.queue)
        self._monitor.monitor_if_not_exist(job.namespace, job.queue)
        if job.tries == 0:
            return job.id
        self._pool.add(job)
        if job.delay == 0:
            Queue(job.namespace, job.queue, self._redis, self._timer).push(job)
        else:
            self._timer.add(job.namespace, job.queue, job.id, job.delay, job.tries)
        return job.id

    def batch_consume(
        self,
        namespace: str,
        queues: Sequence[str],
        count: int,
        ttr_second: int,
        timeout_second: int,
    ) -> list[Job]:
        """Take up to count ready jobs; if none is ready, wait for a single one."""
        jobs: list[Job] = []
        for _ in range(count):
            job = self.consume(namespace, queues, ttr_second, 0)
            if job is None:
                break
            jobs.append(job)
        if timeout_second > 0 and not jobs:
            job = self.consume(namespace, queues, ttr_second, timeout_second)
            if job is not None:
                jobs.append(job)
        return jobs

    def consume(
        self,
        namespace: str,
        queues: Sequence[str],
        ttr_second: int,
        timeout_second: int,
    ) -> Job | None:
        """Take one job from the queues; earlier queues have higher priority.

        Return None when no job arrived within timeout_second.
        """
        names = [QueueName(namespace, queue) for queue in queues]
        while True:
            started = int(time.time())
            result = poll_queues(self._redis, self._timer, names, timeout_second, ttr_second)
            if result is None:
                return None
            queue_name, job_id, tries = result
            elapsed = int(time.time()) - started
            try:
                body, ttl = self._pool.get(namespace, queue_name.queue, job_id)
            except NotFoundError:
                # The job expired or was acknowledged meanwhile; keep polling
                # with whatever time is left.
                timeout_second -= elapsed
                if timeout_second > 0:
                    continue
                return None
            job = Job(namespace, queue_name.queue, body, ttl=ttl, delay=0, tries=tries, id=job_id)
            metrics = get_metrics()
            metrics.job_elapsed_ms.labels(self._redis.name, namespace, queue_name.queue).observe(
                job.elapsed_ms
            )
            metrics.consume_multi_jobs.labels(self._redis.name).inc()
            metrics.consume_queue_jobs.labels(self._redis.name, namespace, job.queue).inc()
            return job

    def delete(self, namespace: str, queue: str, job_id: str) -> None:
        """Acknowledge a job by deleting its body."""
        self._pool.delete(namespace, queue, job_id)
        elapsed = Job(namespace, queue, b"", id=job_id).elapsed_ms
        get_metrics().job_ack_elapsed_ms.labels(self._redis.name, namespace, queue).observe(
            elapsed
        )

    def peek(self, namespace: str, queue: str, optional_job_id: str = "") -> Job:
        """Look at a job without consuming it: the given one, or the oldest ready one.

        An expired oldest job comes back with its id and an empty body.
        """
        job_id = optional_job_id
        tries = 0
        if not optional_job_id:
            try:
                job_id, tries = Queue(namespace, queue, self._redis, self._timer).peek()
            except NotFoundError as exc:
                raise EmptyQueueError(f"queue {namespace}/{queue} is empty") from exc
        try:
            body, ttl = self._pool.get(namespace, queue, job_id)
        except NotFoundError:
            if not optional_job_id:
                return Job(namespace, queue, b"", ttl=0, delay=0, tries=0, id=job_id)
            raise
        return Job(namespace, queue, body, ttl=ttl, delay=0, tries=tries, id=job_id)

    def size(self, namespace: str, queue: str) -> int:
        return Queue(namespace, queue, self._redis, self._timer).size()

    def destroy(self, namespace: str, queue: str) -> int:
        """Forget a queue and delete its ready jobs; return how many were removed."""
        self._meta.remove(namespace, queue)
        self._monitor.remove(namespace, queue)
        return Queue(namespace, queue, self._redis, self._timer).destroy()

    def peek_dead_letter(self, namespace: str, queue: str) -> tuple[int, str]:
        """Return (size, id of the oldest dead job)."""
        return DeadLetter(namespace, queue, self._redis).peek()

    def delete_dead_letter(self, namespace: str, queue: str, limit: int) -> int:
        return DeadLetter(namespace, queue, self._redis).delete(limit)

    def respawn_dead_letter(
        self, namespace: str, queue: str, limit: int, ttl_second: int
    ) -> int:
        return DeadLetter(namespace, queue, self._redis).respawn(limit, ttl_second)

    def size_of_dead_letter(self, namespace: str, queue: str) -> int:
        return DeadLetter(namespace, queue, self._redis).size()

    def shutdown(self) -> None:
        """Stop the background threads."""
        self._stop.set()
        self._timer.shutdown()

    def dump_info(self, out: TextIO) -> None:
        """Write every namespace with its queues as indented JSON."""
        json.dump(self._meta.dump(), out, indent=4)
        out.write("\n")