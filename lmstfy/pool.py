"""Storage of job bodies, keyed by namespace, queue and job id."""

from __future__ import annotations

from redis import RedisError

from lmstfy.codec import POOL_PREFIX, Job, NotFoundError, RedisInstance, join
from lmstfy.metrics import get_metrics


def pool_job_key(job: Job) -> str:
    """Key holding the body of job."""
    return join(POOL_PREFIX, job.namespace, job.queue, job.id)


def pool_job_key2(namespace: str, queue: str, job_id: str) -> str:
    """Key holding the body of a job given by its parts."""
    return join(POOL_PREFIX, namespace, queue, job_id)


def pool_job_key_prefix(namespace: str, queue: str) -> str:
    """Common prefix of the job keys of a queue."""
    return join(POOL_PREFIX, namespace, queue)


class Pool:
    """Holds every job's body; one per engine."""

    def __init__(self, redis: RedisInstance) -> None:
        self._redis = redis

    def add(self, job: Job) -> None:
        """Store the body with the job's TTL; an existing key is never overwritten."""
        get_metrics().pool_add_jobs.labels(self._redis.name).inc()
        key = pool_job_key(job)
        expiry = job.ttl or None
        try:
            created = self._redis.conn.set(key, job.body, ex=expiry, nx=True)
        except RedisError:
            created = self._redis.conn.set(key, job.body, ex=expiry, nx=True)
        if not created:
            raise ValueError("key existed")

    def get(self, namespace: str, queue: str, job_id: str) -> tuple[bytes, int]:
        """Return (body, ttl seconds); a ttl of 0 means the job never expires."""
        key = pool_job_key2(namespace, queue, job_id)
        pipe = self._redis.conn.pipeline(transaction=False)
        pipe.get(key)
        pipe.ttl(key)
        body, ttl = pipe.execute()
        if body is None:
            raise NotFoundError(f"job {job_id} not found")
        if isinstance(body, str):
            body = body.encode("utf-8")
        ttl = int(ttl)
        if ttl < 0:
            ttl = 0
        get_metrics().pool_get_jobs.labels(self._redis.name).inc()
        return bytes(body), ttl

    def delete(self, namespace: str, queue: str, job_id: str) -> None:
        get_metrics().pool_delete_jobs.labels(self._redis.name).inc()
        self._redis.conn.delete(pool_job_key2(namespace, queue, job_id))