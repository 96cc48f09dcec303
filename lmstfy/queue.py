"""Ready queues: jobs that can be consumed right now."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Sequence

from redis import RedisError
from redis.exceptions import NoScriptError

from lmstfy import deadletter as _deadletter
from lmstfy.codec import (
    BATCH_SIZE,
    CorruptedDataError,
    Job,
    NotFoundError,
    QueueName,
    RedisInstance,
    WrongQueueError,
    is_lua_script_gone,
    struct_pack,
    struct_unpack,
)
from lmstfy.metrics import get_metrics
from lmstfy.pool import pool_job_key_prefix
from lmstfy.timer import Timer

logger = logging.getLogger("lmstfy")

_RPOP_MULTI_QUEUES_SCRIPT = """
for _, queue in ipairs(KEYS) do
    local v = redis.call("RPOP", queue)
    if v ~= false then
        return {queue, v}
    end
end
return {"", ""}
"""


@dataclass
class _ScriptShas:
    rpop_multi: str = ""


_shas = _ScriptShas()


def _script_gone(exc: BaseException) -> bool:
    return isinstance(exc, NoScriptError) or is_lua_script_gone(exc)


def _text(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def preload_queue_lua_script(redis: RedisInstance) -> None:
    """Load the multi-queue pop script into Redis' script cache."""
    try:
        sha = redis.conn.script_load(_RPOP_MULTI_QUEUES_SCRIPT)
    except RedisError as exc:
        raise RedisError(f"preload rpop multi lua script err: {exc}") from exc
    _shas.rpop_multi = sha


def pop_multi_queues(
    redis: RedisInstance, queue_names: Sequence[str]
) -> tuple[str, bytes | str] | None:
    """Pop from the first non-empty queue; return (queue key, value) or None."""
    if len(queue_names) == 1:
        value = redis.conn.rpop(queue_names[0])
        if value is None:
            return None
        return queue_names[0], value

    keys = list(queue_names)
    if not _shas.rpop_multi:
        preload_queue_lua_script(redis)
    try:
        reply = redis.conn.evalsha(_shas.rpop_multi, len(keys), *keys)
    except RedisError as exc:
        if not _script_gone(exc):
            raise
        preload_queue_lua_script(redis)
        reply = redis.conn.evalsha(_shas.rpop_multi, len(keys), *keys)

    if not isinstance(reply, (list, tuple)) or len(reply) != 2:
        raise ValueError("lua return value should be two elements array")
    raw_name, value = reply
    if not isinstance(raw_name, (bytes, str)) or not isinstance(value, (bytes, str)):
        raise ValueError("invalid lua value type")
    queue_name = _text(raw_name)
    if not queue_name and not value:
        return None
    return queue_name, value


def poll_queues(
    redis: RedisInstance,
    timer: Timer,
    queue_names: Sequence[QueueName],
    timeout_second: int,
    ttr_second: int,
) -> tuple[QueueName, str, int] | None:
    """Take one job from the queues, in priority order.

    A positive timeout_second blocks until a job arrives or the time runs out.
    The job is rescheduled on the timer for ttr_second with one try less.
    Return (queue name, job id, remaining tries), or None if no job was found.
    """
    keys = [str(name) for name in queue_names]
    try:
        if timeout_second > 0:
            popped = redis.conn.brpop(keys, timeout=timeout_second)
        else:
            popped = pop_multi_queues(redis, keys)
    except (RedisError, ValueError) as exc:
        logger.error("Failed to pop job from queue", extra={"err": str(exc)})
        raise
    if popped is None:
        logger.debug("Job not found")
        return None

    raw_name, value = popped
    try:
        queue_name = QueueName.decode(raw_name)
    except ValueError as exc:
        logger.error("Failed to decode queue name", extra={"err": str(exc)})
        raise
    try:
        tries, job_id = struct_unpack(value)
    except CorruptedDataError as exc:
        logger.error("Failed to unpack lua struct data", extra={"err": str(exc)})
        raise

    if tries == 0:
        logger.error(
            "Job with tries == 0 appeared",
            extra={"jobID": job_id, "ttr": ttr_second, "queue": str(queue_name)},
        )
        raise ValueError(f"Job {job_id} with tries == 0 appeared")

    get_metrics().queue_pop_jobs.labels(redis.name).inc()
    tries -= 1
    try:
        timer.add(queue_name.namespace, queue_name.queue, job_id, ttr_second, tries)
    except RedisError as exc:
        logger.error(
            "Failed to add job to timer for ttr",
            extra={
                "err": str(exc),
                "jobID": job_id,
                "ttr": ttr_second,
                "queue": str(queue_name),
            },
        )
        raise
    return queue_name, job_id, tries


class Queue:
    """The ready queue of one namespace and queue name."""

    def __init__(
        self, namespace: str, queue: str, redis: RedisInstance, timer: Timer | None
    ) -> None:
        self._queue_name = QueueName(namespace, queue)
        self._redis = redis
        self._timer = timer

    def name(self) -> str:
        return str(self._queue_name)

    def _require_timer(self) -> Timer:
        if self._timer is None:
            raise RuntimeError("queue has no timer")
        return self._timer

    def push(self, job: Job) -> None:
        """Put a job straight into the ready queue; jobs with no tries are dropped."""
        if job.tries == 0:
            return
        if job.namespace != self._queue_name.namespace or job.queue != self._queue_name.queue:
            raise WrongQueueError(
                f"job of {job.namespace}/{job.queue} pushed to {self._queue_name}"
            )
        timer = self._require_timer()
        get_metrics().queue_direct_push_jobs.labels(self._redis.name).inc()
        value = struct_pack(job.tries, job.id)
        timer.add_to_backup(self._queue_name.namespace, self._queue_name.queue, job.id, job.tries)
        self._redis.conn.lpush(self.name(), value)

    def poll(self, timeout_second: int, ttr_second: int) -> tuple[str, int] | None:
        """Take a job; return (job id, remaining tries) or None."""
        result = poll_queues(
            self._redis, self._require_timer(), [self._queue_name], timeout_second, ttr_second
        )
        if result is None:
            return None
        _, job_id, tries = result
        return job_id, tries

    def size(self) -> int:
        """Number of jobs ready in the queue."""
        return int(self._redis.conn.llen(self.name()))

    def peek(self) -> tuple[str, int]:
        """Return (job id, tries) of the oldest job without removing it."""
        value = self._redis.conn.lindex(self.name(), -1)
        if value is None:
            raise NotFoundError("queue is empty")
        tries, job_id = struct_unpack(value)
        return job_id, tries

    def destroy(self) -> int:
        """Empty the queue and delete the jobs' bodies; return how many were removed."""
        keys = [
            self.name(),
            pool_job_key_prefix(self._queue_name.namespace, self._queue_name.queue),
        ]
        conn = self._redis.conn
        count = 0
        while True:
            sha = _deadletter._shas.delete
            try:
                if not sha:
                    raise NoScriptError("NOSCRIPT dead letter script is not loaded")
                reply = conn.evalsha(sha, len(keys), *keys, BATCH_SIZE)
            except RedisError as exc:
                if not _script_gone(exc):
                    raise
                try:
                    _deadletter.preload_dead_letter_lua_script(self._redis)
                except RedisError as load_exc:
                    logger.error(
                        "Failed to load deadletter lua script", extra={"err": str(load_exc)}
                    )
                continue
            done = int(reply)
            count += done
            if done < BATCH_SIZE:
                return count