"""Redis client construction and server configuration checks."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

import redis
from redis.client import Pipeline
from redis.sentinel import Sentinel

from lmstfy.hooks import MetricsHook

_DEFAULT_PORT = 6379


class RedisConfigError(ValueError):
    """The Redis server is configured in a way that risks losing jobs."""


@dataclass
class RedisConf:
    """Connection settings of one Redis pool."""

    addr: str
    password: str = ""
    db: int = 0
    pool_size: int = 0
    master_name: str = ""
    version: str = ""
    enable_secondary_storage: bool = False
    secondary_storage_threshold_seconds: int = 0

    def is_sentinel(self) -> bool:
        """Whether addr lists sentinels rather than a server."""
        return self.master_name != ""


class _InstrumentedPipeline(Pipeline):
    metrics_hook: MetricsHook | None = None

    def execute(self, raise_on_error: bool = True) -> list:
        hook = self.metrics_hook
        if hook is None:
            return super().execute(raise_on_error)
        started = hook.before_process("pipeline")
        try:
            results = super().execute(raise_on_error)
        except Exception as exc:
            hook.after_process_pipeline(started, [exc])
            raise
        hook.after_process_pipeline(
            started, [r for r in results if isinstance(r, Exception)]
        )
        return results


class _InstrumentedRedis(redis.Redis):
    metrics_hook: MetricsHook | None = None

    def execute_command(self, *args: Any, **options: Any) -> Any:
        hook = self.metrics_hook
        if hook is None or not args:
            return super().execute_command(*args, **options)
        command = args[0].decode() if isinstance(args[0], bytes) else str(args[0])
        with hook.track(command):
            return super().execute_command(*args, **options)

    def pipeline(self, transaction: bool = True, shard_hint: Any = None) -> Pipeline:
        pipe = _InstrumentedPipeline(
            self.connection_pool, self.response_callbacks, transaction, shard_hint
        )
        pipe.metrics_hook = self.metrics_hook
        return pipe


def _parse_addr(addr: str) -> tuple[str, int]:
    host, sep, port = addr.strip().rpartition(":")
    if not sep:
        return port, _DEFAULT_PORT
    return host, int(port)


def new_redis_client(conf: RedisConf, **kwargs: Any) -> redis.Redis:
    """Build a client for a standalone server or a sentinel-managed master.

    Extra keyword arguments go to the client; the address, password, database
    and pool size always come from conf.
    """
    options = dict(kwargs)
    options["password"] = conf.password or None
    options["db"] = conf.db
    if conf.pool_size > 0:
        options["max_connections"] = conf.pool_size
    else:
        options.pop("max_connections", None)

    if conf.is_sentinel():
        sentinels = [_parse_addr(a) for a in conf.addr.split(",") if a.strip()]
        client = Sentinel(sentinels).master_for(
            conf.master_name, redis_class=_InstrumentedRedis, **options
        )
    else:
        host, port = _parse_addr(conf.addr)
        client = _InstrumentedRedis(host=host, port=port, **options)
    client.metrics_hook = MetricsHook(conf.addr)
    return client


def _info_fields(info: str | Mapping[str, Any]) -> dict[str, str]:
    if isinstance(info, Mapping):
        return {str(k): str(v) for k, v in info.items()}
    fields = {}
    for line in info.splitlines():
        parts = line.split(":")
        if len(parts) == 2:
            fields[parts[0]] = parts[1]
    return fields


def validate_redis_persist_config(info: str | Mapping[str, Any], conf: RedisConf) -> None:
    """Raise RedisConfigError unless the INFO output shows a durable setup."""
    fields = _info_fields(info)
    try:
        max_mem = int(fields.get("maxmemory", "0"))
    except ValueError:
        max_mem = 0
    if fields.get("maxmemory_policy") != "noeviction":
        raise RedisConfigError("redis memory_policy MUST be 'noeviction' to prevent data loss")
    if fields.get("aof_enabled") != "1":
        raise RedisConfigError("redis appendonly MUST be 'yes' to prevent data loss")
    if conf.enable_secondary_storage and max_mem == 0:
        raise RedisConfigError(
            "redis maxmemory MUST be assigned when secondary storage is enabled"
        )


def validate_redis_config(conf: RedisConf) -> None:
    """Connect to the server (the master in sentinel mode) and check persistence."""
    client = new_redis_client(conf)
    try:
        info = client.info()
        validate_redis_persist_config(info, conf)
    finally:
        client.close()