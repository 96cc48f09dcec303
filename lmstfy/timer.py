"""The delay queue: a sorted set whose due jobs are pumped into ready queues."""

from __future__ import annotations

import logging
import struct
import threading
import time

from redis import RedisError
from redis.exceptions import NoScriptError

from lmstfy.codec import (
    BATCH_SIZE,
    DEAD_LETTER_PREFIX,
    POOL_PREFIX,
    QUEUE_PREFIX,
    CorruptedDataError,
    RedisInstance,
    is_lua_script_gone,
)
from lmstfy.metrics import get_metrics

logger = logging.getLogger("lmstfy")

_MAX_UINT16 = 0xFFFF
_LENGTH = struct.Struct("<H")
_RETRY_PAUSE = 1.0
_FULL_BATCH_PAUSE = 0.01

_PUMP_BACKUP_SCRIPT = """
local zset_key = KEYS[1]
local queue_prefix = KEYS[2]
local pool_prefix = KEYS[3]
local new_score = tonumber(ARGV[1])
local max_score = ARGV[2]
local limit = ARGV[3]
local backup_key = table.concat({zset_key, "backup"}, "/")

local memberScores = redis.call("ZRANGEBYSCORE", backup_key, 0, max_score, "WITHSCORES", "LIMIT", 0, limit)

if #memberScores == 0 then
    return 0
end

local toBeRemovedMembers = {}
for i = 1, #memberScores, 2 do
    local member = memberScores[i]
    local score = tonumber(memberScores[i+1])
    local ns, q, job_id = struct.unpack("Hc0Hc0Hc0", member)
    local need_next_check = true
    if redis.call("EXISTS", table.concat({pool_prefix, ns, q, job_id}, "/")) == 0 then
        table.insert(toBeRemovedMembers, member)
        need_next_check = false
    end

    local oldest_elem = nil
    if need_next_check then
        oldest_elem = redis.call("LINDEX", table.concat({queue_prefix, ns, q}, "/"), "-1")
        if not oldest_elem then
            table.insert(toBeRemovedMembers, member)
            redis.call("ZADD", zset_key, score, member)
            need_next_check = false
        end
    end

    if need_next_check then
        local tries, oldest_job_id = struct.unpack("HHc0", oldest_elem)
        local oldest_member = struct.pack("Hc0Hc0Hc0", #ns, ns, #q, q, #oldest_job_id, oldest_job_id)
        local oldest_score = redis.call("ZSCORE", backup_key, oldest_member)
        if oldest_score and tonumber(oldest_score) > score then
            table.insert(toBeRemovedMembers, member)
            local tries = bit.band(score, 0xffff)
            redis.call("ZADD", zset_key, new_score+tries, member)
        end
    end
end

if #toBeRemovedMembers > 0 then
    redis.call("ZREM", backup_key, unpack(toBeRemovedMembers))
end
return #toBeRemovedMembers
"""

_PUMP_QUEUE_SCRIPT = """
local zset_key = KEYS[1]
local output_queue_prefix = KEYS[2]
local pool_prefix = KEYS[3]
local output_deadletter_prefix = KEYS[4]
local max_score = ARGV[1]
local limit = ARGV[2]

local backup_key = table.concat({zset_key, "backup"}, "/")
local expiredMembers = redis.call("ZRANGEBYSCORE", zset_key, 0, max_score, "WITHSCORES", "LIMIT", 0, limit)

if #expiredMembers == 0 then
    return 0
end

local toBeRemovedMembers = {}
for i = 1, #expiredMembers, 2 do
    local v = expiredMembers[i]
    table.insert(toBeRemovedMembers, v)
    local score = tonumber(expiredMembers[i+1])
    local tries = bit.band(score, 0xffff)
    local ns, q, job_id = struct.unpack("Hc0Hc0Hc0", v)
    if redis.call("EXISTS", table.concat({pool_prefix, ns, q, job_id}, "/")) > 0 then
        if tries == 0 then
            local val = struct.pack("HHc0", 1, #job_id, job_id)
            redis.call("PERSIST", table.concat({pool_prefix, ns, q, job_id}, "/"))
            redis.call("LPUSH", table.concat({output_deadletter_prefix, ns, q}, "/"), val)
        else
            local val = struct.pack("HHc0", tonumber(tries), #job_id, job_id)
            redis.call("LPUSH", table.concat({output_queue_prefix, ns, q}, "/"), val)
            redis.call("ZADD", backup_key, score, v)
        end
    end
end
redis.call("ZREM", zset_key, unpack(toBeRemovedMembers))
return #toBeRemovedMembers
"""


def encode_score(timestamp: int, tries: int) -> float:
    """Encode a unix timestamp and a tries count into one sorted-set score.

    Lua numbers are doubles, so the result must stay within 53 bits.
    """
    return float(((int(timestamp) & 0xFFFFFFFF) << 16) | (int(tries) & _MAX_UINT16))


def decode_score(score: float) -> tuple[int, int]:
    """Split a score back into (timestamp, tries)."""
    value = int(score)
    return (value >> 16) & 0xFFFFFFFF, value & _MAX_UINT16


def struct_pack_timer_data(namespace: str, queue: str, job_id: str) -> bytes:
    """Pack the parts in the Lua struct layout "Hc0Hc0Hc0" (little-endian lengths)."""
    packed = bytearray()
    for part in (namespace, queue, job_id):
        raw = part.encode("utf-8")
        if len(raw) > _MAX_UINT16:
            raise ValueError("timer data part too long")
        packed += _LENGTH.pack(len(raw)) + raw
    return bytes(packed)


def struct_unpack_timer_data(data: bytes | str) -> tuple[str, str, str]:
    """Unpack "Hc0Hc0Hc0" data into (namespace, queue, job id)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    parts = []
    offset = 0
    for index in range(3):
        if len(data) < offset + _LENGTH.size:
            raise CorruptedDataError("corrupted data")
        (length,) = _LENGTH.unpack_from(data, offset)
        offset += _LENGTH.size
        end = offset + length
        raw = data[offset:end] if index < 2 else data[offset:]
        if len(raw) != length:
            raise CorruptedDataError("corrupted data")
        try:
            parts.append(raw.decode("utf-8"))
        except UnicodeDecodeError as exc:
            raise CorruptedDataError("corrupted data") from exc
        offset = end
    namespace, queue, job_id = parts
    return namespace, queue, job_id


def _script_gone(exc: BaseException) -> bool:
    return isinstance(exc, NoScriptError) or is_lua_script_gone(exc)


class Timer:
    """A delay queue that moves jobs into their ready queue once they are due.

    interval and check_backup_interval are in seconds. Call start() to run the
    pumping thread and shutdown() to stop it.
    """

    def __init__(
        self,
        name: str,
        redis: RedisInstance,
        interval: float,
        check_backup_interval: float,
    ) -> None:
        self.name = name
        self._redis = redis
        self.interval = interval
        self.check_backup_interval = check_backup_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        try:
            self.pump_sha = redis.conn.script_load(_PUMP_QUEUE_SCRIPT)
            self.pump_backup_sha = redis.conn.script_load(_PUMP_BACKUP_SCRIPT)
        except RedisError as exc:
            logger.error("Failed to preload lua script in timer", extra={"err": str(exc)})
            raise

    def __enter__(self) -> Timer:
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.shutdown()

    def add(self, namespace: str, queue: str, job_id: str, delay_second: int, tries: int) -> None:
        """Schedule a job to become ready after delay_second seconds."""
        get_metrics().timer_add_jobs.labels(self._redis.name).inc()
        score = encode_score(int(time.time()) + int(delay_second), tries)
        member = struct_pack_timer_data(namespace, queue, job_id)
        self._redis.conn.zadd(self.name, {member: score})
        # A stale backup entry is harmless: at worst the job gets respawned.
        try:
            self.remove_from_backup(namespace, queue, job_id)
        except RedisError:
            pass

    def backup_name(self) -> str:
        return f"{self.name}/backup"

    def add_to_backup(self, namespace: str, queue: str, job_id: str, tries: int) -> None:
        """Remember a job pushed straight to its ready queue, scored by now."""
        score = encode_score(int(time.time()), tries)
        member = struct_pack_timer_data(namespace, queue, job_id)
        self._redis.conn.zadd(self.backup_name(), {member: score})

    def remove_from_backup(self, namespace: str, queue: str, job_id: str) -> None:
        member = struct_pack_timer_data(namespace, queue, job_id)
        get_metrics().timer_remove_backup_jobs.labels(self._redis.name).inc()
        self._redis.conn.zrem(self.backup_name(), member)

    def _pump_keys(self) -> list[str]:
        return [self.name, QUEUE_PREFIX, POOL_PREFIX, DEAD_LETTER_PREFIX]

    def _backup_keys(self) -> list[str]:
        return [self.name, QUEUE_PREFIX, POOL_PREFIX]

    def pump(self, current_second: int) -> int:
        """Move every job due by current_second; return how many were handled."""
        max_score = int(encode_score(current_second, _MAX_UINT16))
        keys = self._pump_keys()
        metrics = get_metrics()
        total = 0
        while True:
            try:
                reply = self._redis.conn.evalsha(
                    self.pump_sha, len(keys), *keys, max_score, BATCH_SIZE
                )
            except RedisError as exc:
                if _script_gone(exc):
                    try:
                        self.pump_sha = self._redis.conn.script_load(_PUMP_QUEUE_SCRIPT)
                    except RedisError as load_exc:
                        logger.error("Failed to reload script", extra={"err": str(load_exc)})
                        self._stop.wait(_RETRY_PAUSE)
                        return total
                logger.error("Failed to pump", extra={"err": str(exc)})
                self._stop.wait(_RETRY_PAUSE)
                return total
            count = int(reply)
            total += count
            logger.debug("Due jobs", extra={"count": count})
            metrics.timer_due_jobs.labels(self._redis.name).add(count)
            if count != BATCH_SIZE:
                return total
            # There may be more due jobs; hurry up.
            metrics.timer_full_batches.labels(self._redis.name).inc()
            self._stop.wait(_FULL_BATCH_PAUSE)

    def pump_backup(self, current_second: int) -> int:
        """Requeue jobs lost between the ready queue and a consumer; return how many."""
        max_score = int(
            encode_score(current_second - int(self.check_backup_interval), _MAX_UINT16)
        )
        new_score = int(encode_score(current_second, 0))
        keys = self._backup_keys()
        args = (len(keys), *keys, new_score, max_score, BATCH_SIZE)
        try:
            reply = self._redis.conn.evalsha(self.pump_backup_sha, *args)
        except RedisError as exc:
            if _script_gone(exc):
                try:
                    self.pump_backup_sha = self._redis.conn.script_load(_PUMP_BACKUP_SCRIPT)
                except RedisError as load_exc:
                    logger.error("Failed to reload script", extra={"err": str(load_exc)})
                    self._stop.wait(_RETRY_PAUSE)
                    return 0
            logger.error("Failed to pump", extra={"err": str(exc)})
            try:
                reply = self._redis.conn.evalsha(self.pump_backup_sha, *args)
            except RedisError as retry_exc:
                logger.error("Failed to pump", extra={"err": str(retry_exc)})
                return 0
        count = int(reply)
        if count > 0:
            logger.warning("Find lost jobs", extra={"count": count})
        return count

    def _run(self) -> None:
        now = time.monotonic()
        next_pump = now + self.interval
        next_backup = now + self.check_backup_interval
        while not self._stop.wait(max(0.0, min(next_pump, next_backup) - time.monotonic())):
            now = time.monotonic()
            if now >= next_pump:
                self.pump(int(time.time()))
                next_pump = max(next_pump + self.interval, time.monotonic())
            if now >= next_backup:
                self.pump_backup(int(time.time()))
                next_backup = max(next_backup + self.check_backup_interval, time.monotonic())

    def start(self) -> Timer:
        """Start the pumping thread; calling it again has no effect."""
        with self._lock:
            if self._thread is None and not self._stop.is_set():
                self._thread = threading.Thread(
                    target=self._run, name=f"timer-{self.name}", daemon=True
                )
                self._thread.start()
        return self

    def shutdown(self) -> None:
        """Stop the pumping thread and wait for it to finish."""
        self._stop.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join()

    def size(self) -> int:
        """Number of jobs waiting in the delay queue."""
        return int(self._redis.conn.zcard(self.name))