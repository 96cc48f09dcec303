"""Passive record of the namespaces and queues that have seen jobs."""

from __future__ import annotations

import logging
import threading

from redis import RedisError

from lmstfy.codec import META_PREFIX, RedisInstance, join

logger = logging.getLogger("lmstfy")


def _text(value: bytes | str) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class MetaManager:
    """Keeps the namespace and queue lists in Redis, cached in memory."""

    def __init__(self, redis: RedisInstance) -> None:
        self._redis = redis
        self._namespaces: set[str] = set()
        self._queues: set[str] = set()
        self._lock = threading.Lock()
        self._loader = threading.Thread(target=self.initialize, daemon=True)
        self._loader.start()

    def record_if_not_exist(self, namespace: str, queue: str) -> None:
        queue_key = join(namespace, queue)
        with self._lock:
            if namespace in self._namespaces and queue_key in self._queues:
                return
            known_namespace = namespace in self._namespaces
            self._namespaces.add(namespace)
            self._queues.add(queue_key)
        conn = self._redis.conn
        if not known_namespace:
            conn.hset(join(META_PREFIX, "ns"), namespace, 1)
        conn.hset(join(META_PREFIX, "ns", namespace), queue, 1)

    def remove(self, namespace: str, queue: str) -> None:
        with self._lock:
            self._namespaces.discard(namespace)
            self._queues.discard(join(namespace, queue))
        self._redis.conn.hdel(join(META_PREFIX, "ns", namespace), queue)

    def list_namespaces(self) -> list[str]:
        return [_text(k) for k in self._redis.conn.hgetall(join(META_PREFIX, "ns"))]

    def list_queues(self, namespace: str) -> list[str]:
        return [_text(k) for k in self._redis.conn.hgetall(join(META_PREFIX, "ns", namespace))]

    def initialize(self) -> None:
        """Fill the cache from Redis; failures are logged, not raised."""
        try:
            namespaces = self.list_namespaces()
        except RedisError as exc:
            logger.error(
                "initialize meta manager list namespaces error", extra={"error": str(exc)}
            )
            return
        for namespace in namespaces:
            try:
                queues = self.list_queues(namespace)
            except RedisError as exc:
                logger.error(
                    "initialize meta manager list queues error",
                    extra={"namespace": namespace, "error": str(exc)},
                )
                return
            with self._lock:
                for queue in queues:
                    self._namespaces.add(namespace)
                    self._queues.add(join(namespace, queue))

    def dump(self) -> dict[str, list[str]]:
        """Map every namespace to its queues."""
        return {namespace: self.list_queues(namespace) for namespace in self.list_namespaces()}