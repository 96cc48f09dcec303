"""Dead letters: jobs that ran out of tries, kept for respawning or deletion."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from redis import RedisError
from redis.exceptions import NoScriptError

from lmstfy.codec import (
    BATCH_SIZE,
    DEAD_LETTER_PREFIX,
    CorruptedDataError,
    NotFoundError,
    QueueName,
    RedisInstance,
    is_lua_script_gone,
    join,
    struct_pack,
    struct_unpack,
)
from lmstfy.metrics import get_metrics
from lmstfy.pool import pool_job_key2, pool_job_key_prefix

logger = logging.getLogger("lmstfy")

_RESPAWN_SCRIPT = """
local deadletter = KEYS[1]
local queue = KEYS[2]
local poolPrefix = KEYS[3]
local limit = tonumber(ARGV[1])
local respawnTTL = tonumber(ARGV[2])

for i = 1, limit do
    local data = redis.call("RPOPLPUSH", deadletter, queue)
    if data == false then
        return i - 1
    end
    local _, jobID = struct.unpack("HHc0", data)
    if respawnTTL > 0 then
        redis.call("EXPIRE", poolPrefix .. "/" .. jobID, respawnTTL)
    end
end
return limit
"""

_DELETE_SCRIPT = """
local deadletter = KEYS[1]
local poolPrefix = KEYS[2]
local limit = tonumber(ARGV[1])

for i = 1, limit do
    local data = redis.call("RPOP", deadletter)
    if data == false then
        return i - 1
    end
    local _, jobID = struct.unpack("HHc0", data)
    redis.call("DEL", poolPrefix .. "/" .. jobID)
end
return limit
"""


@dataclass
class _ScriptShas:
    respawn: str = ""
    delete: str = ""


_shas = _ScriptShas()


def _script_gone(exc: BaseException) -> bool:
    return isinstance(exc, NoScriptError) or is_lua_script_gone(exc)


def preload_dead_letter_lua_script(redis: RedisInstance) -> None:
    """Load the respawn and delete scripts into Redis' script cache."""
    try:
        respawn = redis.conn.script_load(_RESPAWN_SCRIPT)
    except RedisError as exc:
        raise RedisError(f"failed to preload lua script: {exc}") from exc
    _shas.respawn = respawn
    try:
        delete = redis.conn.script_load(_DELETE_SCRIPT)
    except RedisError as exc:
        raise RedisError(f"failed to preload lua script: {exc}") from exc
    _shas.delete = delete


class DeadLetter:
    """The dead letter list of one queue; entries share the ready queue's format."""

    def __init__(self, namespace: str, queue: str, redis: RedisInstance) -> None:
        if not _shas.respawn or not _shas.delete:
            raise RuntimeError("dead letter's lua script is not preloaded")
        self._redis = redis
        self.namespace = namespace
        self.queue = queue

    def name(self) -> str:
        return join(DEAD_LETTER_PREFIX, self.namespace, self.queue)

    def add(self, job_id: str) -> None:
        """Bury a job: drop its TTL and push it onto the dead letter list."""
        conn = self._redis.conn
        conn.persist(pool_job_key2(self.namespace, self.queue, job_id))
        conn.lpush(self.name(), struct_pack(1, job_id))

    def peek(self) -> tuple[int, str]:
        """Return (size, id of the oldest job)."""
        conn = self._redis.conn
        value = conn.lindex(self.name(), -1)
        if value is None:
            raise NotFoundError("dead letter is empty")
        try:
            tries, job_id = struct_unpack(value)
        except CorruptedDataError as exc:
            raise CorruptedDataError(f"failed to unpack data: {exc}") from exc
        if tries != 1:
            raise CorruptedDataError(f"failed to unpack data: unexpected tries {tries}")
        return int(conn.llen(self.name())), job_id

    def _run_batches(self, script: str, keys: list[str], limit: int, *extra: int) -> int:
        count = 0
        batch = min(BATCH_SIZE, limit)
        while True:
            sha = _shas.respawn if script == "respawn" else _shas.delete
            try:
                reply = self._redis.conn.evalsha(sha, len(keys), *keys, batch, *extra)
            except RedisError as exc:
                if not _script_gone(exc):
                    raise
                try:
                    preload_dead_letter_lua_script(self._redis)
                except RedisError as load_exc:
                    logger.error(
                        "Failed to load deadletter lua script", extra={"err": str(load_exc)}
                    )
                continue
            done = int(reply)
            count += done
            if done < batch or count >= limit:
                return count
            batch = min(batch, limit - count)

    def delete(self, limit: int) -> int:
        """Delete up to limit oldest jobs with their bodies; return how many."""
        if limit > 1:
            keys = [self.name(), pool_job_key_prefix(self.namespace, self.queue)]
            return self._run_batches("delete", keys, limit)
        if limit < 1:
            return 0
        conn = self._redis.conn
        data = conn.rpop(self.name())
        if data is None:
            return 0
        _, job_id = struct_unpack(data)
        try:
            conn.delete(pool_job_key2(self.namespace, self.queue, job_id))
        except RedisError as exc:
            raise RedisError(f"failed to delete job data: {exc}") from exc
        return 1

    def respawn(self, limit: int, ttl_second: int) -> int:
        """Move up to limit oldest jobs back to the ready queue; return how many.

        A positive ttl_second becomes the new TTL of each respawned job.
        """
        count = self._respawn(limit, ttl_second)
        if count:
            get_metrics().deadletter_respawn_jobs.labels(self._redis.name).add(count)
        return count

    def _respawn(self, limit: int, ttl_second: int) -> int:
        queue_name = str(QueueName(self.namespace, self.queue))
        if limit > 1:
            keys = [self.name(), queue_name, pool_job_key_prefix(self.namespace, self.queue)]
            return self._run_batches("respawn", keys, limit, ttl_second)
        if limit < 1:
            return 0
        conn = self._redis.conn
        data = conn.rpoplpush(self.name(), queue_name)
        if data is None:
            return 0
        _, job_id = struct_unpack(data)
        if ttl_second > 0:
            try:
                conn.expire(pool_job_key2(self.namespace, self.queue, job_id), ttl_second)
            except RedisError as exc:
                raise RedisError(
                    f"failed to set TTL on respawned job[{job_id}]: {exc}"
                ) from exc
        return 1

    def size(self) -> int:
        return int(self._redis.conn.llen(self.name()))