"""Server statistics of a Redis instance and their periodic export."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping, Protocol

from redis import RedisError

from lmstfy.codec import RedisInstance
from lmstfy.metrics import get_metrics

_MONITOR_INTERVAL = 5.0
_INTEGER = re.compile(r"[+-]?[0-9]+")


class _Waiter(Protocol):
    def wait(self, timeout: float | None = ...) -> bool: ...


@dataclass
class RedisInfo:
    """Memory, keyspace and client figures reported by INFO."""

    mem_used: int = 0
    mem_max: int = 0
    n_keys: int = 0
    n_expires: int = 0
    n_clients: int = 0
    n_blocking: int = 0


def _parse_int(text: str) -> int:
    if not _INTEGER.fullmatch(text):
        raise ValueError(f"invalid integer: {text!r}")
    return int(text)


def parse_colon_separated_kv(text: str) -> tuple[str, int]:
    """Parse 'key:123'; a line without ':' gives ('', 0)."""
    key, sep, value = text.partition(":")
    if not sep:
        return "", 0
    return key, _parse_int(value)


def parse_equal_separated_kv(text: str) -> tuple[str, int]:
    """Parse 'key=123'; a part without '=' gives ('', 0)."""
    key, sep, value = text.partition("=")
    if not sep:
        return "", 0
    return key, _parse_int(value)


def _info_lines(reply: Any) -> list[str]:
    if isinstance(reply, bytes):
        reply = reply.decode("utf-8", errors="replace")
    if isinstance(reply, str):
        return reply.split("\r\n")
    if isinstance(reply, Mapping):
        lines = []
        for key, value in reply.items():
            if isinstance(value, Mapping):
                value = ",".join(f"{k}={v}" for k, v in value.items())
            lines.append(f"{key}:{value}")
        return lines
    return []


def _section(redis: RedisInstance, name: str) -> list[str]:
    try:
        return _info_lines(redis.conn.info(name))
    except RedisError:
        return []


def get_redis_info(redis: RedisInstance) -> RedisInfo:
    """Collect figures from INFO; sections that fail to load are left at zero."""
    info = RedisInfo()

    for line in _section(redis, "memory"):
        try:
            key, value = parse_colon_separated_kv(line)
        except ValueError:
            continue
        if key == "used_memory":
            info.mem_used = value
        elif key == "maxmemory":
            info.mem_max = value

    for line in _section(redis, "keyspace"):
        parts = line.split(":", 1)
        if len(parts) != 2 or parts[0] != "db0":
            continue
        for field in parts[1].split(",", 2):
            try:
                key, value = parse_equal_separated_kv(field)
            except ValueError:
                continue
            if key == "keys":
                info.n_keys = value
            elif key == "expires":
                info.n_expires = value

    for line in _section(redis, "clients"):
        try:
            key, value = parse_colon_separated_kv(line)
        except ValueError:
            continue
        if key == "connected_clients":
            info.n_clients = value
        elif key == "blocked_clients":
            info.n_blocking = value

    return info


def redis_instance_monitor(redis: RedisInstance, stop: _Waiter) -> None:
    """Export instance figures every five seconds until stop is set."""
    metrics = get_metrics()
    while not stop.wait(_MONITOR_INTERVAL):
        info = get_redis_info(redis)
        metrics.redis_max_mem.labels(redis.name).set(info.mem_max)
        metrics.redis_mem_used.labels(redis.name).set(info.mem_used)
        metrics.redis_conns.labels(redis.name).set(info.n_clients)
        metrics.redis_blockings.labels(redis.name).set(info.n_blocking)
        metrics.redis_keys.labels(redis.name).set(info.n_keys)
        metrics.redis_expires.labels(redis.name).set(info.n_expires)