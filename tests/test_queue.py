import hashlib
import threading
import time
import uuid

import pytest
from redis.exceptions import NoScriptError

from lmstfy.codec import (
    CorruptedDataError,
    Job,
    NotFoundError,
    QueueName,
    RedisInstance,
    WrongQueueError,
    struct_pack,
    struct_unpack,
)
from lmstfy.metrics import get_metrics
from lmstfy.pool import Pool, pool_job_key
from lmstfy.queue import Queue, pop_multi_queues, poll_queues
from lmstfy.timer import Timer, decode_score, struct_unpack_timer_data


def _b(value):
    if isinstance(value, bytes):
        return value
    if isinstance(value, bytearray):
        return bytes(value)
    return str(value).encode("utf-8")


class FakeRedis:
    """In-memory server holding just what the queue code touches."""

    def __init__(self):
        self._cond = threading.Condition()
        self.lists = {}
        self.zsets = {}
        self.strings = {}
        self.scripts = {}

    def script_load(self, script):
        sha = hashlib.sha1(script.encode("utf-8")).hexdigest()
        with self._cond:
            self.scripts[sha] = script
        return sha

    def script_flush(self):
        with self._cond:
            self.scripts.clear()

    def evalsha(self, sha, numkeys, *keys_and_args):
        with self._cond:
            script = self.scripts.get(sha)
            if script is None:
                raise NoScriptError("No matching script. Please use EVAL.")
            keys = [str(k) for k in keys_and_args[:numkeys]]
            args = keys_and_args[numkeys:]
            if "ipairs(KEYS)" in script:
                return self._rpop_multi(keys)
            if 'redis.call("RPOP", deadletter)' in script:
                return self._delete_batch(keys, int(args[0]))
            if "output_queue_prefix" in script:
                return self._pump(keys, int(args[0]), int(args[1]))
            raise AssertionError("unexpected script")

    def _lpush(self, key, *values):
        lst = self.lists.setdefault(key, [])
        for value in values:
            lst.insert(0, _b(value))
        self._cond.notify_all()
        return len(lst)

    def _rpop(self, key):
        lst = self.lists.get(key)
        if not lst:
            return None
        return lst.pop()

    def _rpop_multi(self, keys):
        for key in keys:
            value = self._rpop(key)
            if value is not None:
                return [key.encode("utf-8"), value]
        return [b"", b""]

    def _delete_batch(self, keys, limit):
        for i in range(limit):
            data = self._rpop(keys[0])
            if data is None:
                return i
            _, job_id = struct_unpack(data)
            self.strings.pop(f"{keys[1]}/{job_id}", None)
        return limit

    def _pump(self, keys, max_score, limit):
        zset_key, queue_prefix, pool_prefix, dl_prefix = keys
        zset = self.zsets.setdefault(zset_key, {})
        due = sorted((score, member) for member, score in zset.items() if score <= max_score)
        due = due[:limit]
        for score, member in due:
            tries = int(score) & 0xFFFF
            ns, q, job_id = struct_unpack_timer_data(member)
            if f"{pool_prefix}/{ns}/{q}/{job_id}" in self.strings:
                if tries == 0:
                    self._lpush(f"{dl_prefix}/{ns}/{q}", struct_pack(1, job_id))
                else:
                    self._lpush(f"{queue_prefix}/{ns}/{q}", struct_pack(tries, job_id))
                    self.zsets.setdefault(f"{zset_key}/backup", {})[member] = score
            del zset[member]
        return len(due)

    def lpush(self, key, *values):
        with self._cond:
            return self._lpush(key, *values)

    def rpop(self, key):
        with self._cond:
            return self._rpop(key)

    def brpop(self, keys, timeout=0):
        if isinstance(keys, str):
            keys = [keys]
        deadline = time.monotonic() + timeout
        with self._cond:
            while True:
                for key in keys:
                    lst = self.lists.get(key)
                    if lst:
                        return key.encode("utf-8"), lst.pop()
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)

    def llen(self, key):
        with self._cond:
            return len(self.lists.get(key, []))

    def lindex(self, key, index):
        with self._cond:
            try:
                return self.lists.get(key, [])[index]
            except IndexError:
                return None

    def zadd(self, name, mapping):
        with self._cond:
            zset = self.zsets.setdefault(name, {})
            added = 0
            for member, score in mapping.items():
                member = _b(member)
                added += member not in zset
                zset[member] = float(score)
            return added

    def zrem(self, name, *members):
        with self._cond:
            zset = self.zsets.setdefault(name, {})
            return sum(zset.pop(_b(m), None) is not None for m in members)

    def zcard(self, name):
        with self._cond:
            return len(self.zsets.get(name, {}))

    def set(self, key, value, ex=None, nx=False):
        with self._cond:
            if nx and key in self.strings:
                return None
            self.strings[key] = _b(value)
            return True


@pytest.fixture
def fake():
    return FakeRedis()


@pytest.fixture
def redis(fake):
    return RedisInstance(f"unittest-{uuid.uuid4().hex}", fake)


@pytest.fixture
def timer(redis):
    return Timer("timer_set_q", redis, 1, 600)


def test_name_uses_queue_prefix(redis, timer):
    assert Queue("ns", "q", redis, timer).name() == "q2/ns/q"


def test_push_and_wrong_queue(redis, timer):
    q = Queue("ns-queue", "q1", redis, timer)
    job = Job("ns-queue", "q1", b"hello msg 1", 10, 0, 1)
    q.push(job)
    assert q.size() == 1

    job2 = Job("ns-queue", "q2", b"hello msg 1", 10, 0, 1)
    with pytest.raises(WrongQueueError):
        q.push(job2)
    assert q.size() == 1


def test_push_skips_job_without_tries(redis, timer):
    q = Queue("ns-queue", "q1", redis, timer)
    q.push(Job("ns-queue", "q1", b"x", 10, 0, 0))
    assert q.size() == 0


def test_push_without_timer_fails(redis):
    q = Queue("ns-queue", "q1", redis, None)
    with pytest.raises(RuntimeError):
        q.push(Job("ns-queue", "q1", b"x", 10, 0, 1))


def test_poll_waits_for_push(redis, timer):
    q = Queue("ns-queue", "q2", redis, timer)
    job = Job("ns-queue", "q2", b"hello msg 2", 10, 0, 1)
    pusher = threading.Timer(0.3, q.push, args=(job,))
    pusher.start()
    try:
        result = q.poll(2, 1)
    finally:
        pusher.join()
    assert result == (job.id, 0)
    assert timer.size() == 1


def test_poll_empty_returns_none(redis, timer):
    q = Queue("ns-queue", "empty", redis, timer)
    assert q.poll(0, 1) is None


def test_peek(redis, timer):
    q = Queue("ns-queue", "q3", redis, timer)
    job = Job("ns-queue", "q3", b"hello msg 3", 10, 0, 2)
    q.push(job)
    assert q.peek() == (job.id, 2)
    assert q.size() == 1


def test_peek_empty(redis, timer):
    q = Queue("ns-queue", "nothing", redis, timer)
    with pytest.raises(NotFoundError):
        q.peek()


def test_destroy(fake, redis, timer):
    q = Queue("ns-queue", "q4", redis, timer)
    job = Job("ns-queue", "q4", b"hello msg 4", 10, 0, 1)
    Pool(redis).add(job)
    q.push(job)
    assert q.destroy() == 1
    assert q.size() == 0
    assert pool_job_key(job) not in fake.strings


def test_destroy_empty_queue(redis, timer):
    assert Queue("ns-queue", "none", redis, timer).destroy() == 0


def test_tries(redis, timer):
    namespace, queue = "ns-queue", "q5"
    q = Queue(namespace, queue, redis, timer)
    max_tries = 2
    job = Job(namespace, queue, b"hello msg 5", 30, 0, max_tries)
    q.push(job)
    Pool(redis).add(job)

    assert q.poll(2, 1) == (job.id, max_tries - 1)
    assert timer.pump(int(time.time()) + 2) == 1
    assert q.poll(5, 1) == (job.id, max_tries - 2)


def test_poll_rejects_job_without_tries(fake, redis, timer):
    q = Queue("ns-queue", "q-zero", redis, timer)
    fake.lpush(q.name(), struct_pack(0, "x"))
    with pytest.raises(ValueError, match="tries == 0"):
        q.poll(0, 1)


def test_poll_rejects_corrupted_data(fake, redis, timer):
    q = Queue("ns-queue", "q-bad", redis, timer)
    fake.lpush(q.name(), b"\x01\x00\x05\x00ab")
    with pytest.raises(CorruptedDataError):
        q.poll(0, 1)


def test_pop_multi_queues(redis, timer):
    namespace = "ns-queueName"
    names = [str(QueueName(namespace, q)) for q in ("q6", "q7", "q8")]
    assert pop_multi_queues(redis, names) is None

    q = Queue(namespace, "q7", redis, timer)
    q.push(Job(namespace, "q7", b"hello msg 7", 30, 0, 2))
    got = pop_multi_queues(redis, names)
    assert got is not None and got[0] == q.name()

    q = Queue(namespace, "q8", redis, timer)
    job = Job(namespace, "q8", b"hello msg 7", 30, 0, 2)
    q.push(job)
    got = pop_multi_queues(redis, [names[2]])
    assert got[0] == q.name()
    assert struct_unpack(got[1]) == (2, job.id)


def test_pop_multi_queues_reloads_script(fake, redis, timer):
    namespace = "ns-reload"
    names = [str(QueueName(namespace, q)) for q in ("a", "b")]
    pop_multi_queues(redis, names)
    fake.script_flush()
    q = Queue(namespace, "b", redis, timer)
    q.push(Job(namespace, "b", b"x", 30, 0, 1))
    got = pop_multi_queues(redis, names)
    assert got is not None and got[0] == q.name()


def test_poll_queues_prefers_earlier_queue(redis, timer):
    namespace = "ns-priority"
    q4 = Queue(namespace, "q4", redis, timer)
    q5 = Queue(namespace, "q5", redis, timer)
    job5 = Job(namespace, "q5", b"five", 10, 0, 1)
    job4 = Job(namespace, "q4", b"four", 10, 0, 1)
    q5.push(job5)
    q4.push(job4)
    names = [QueueName(namespace, "q4"), QueueName(namespace, "q5")]
    assert poll_queues(redis, timer, names, 0, 5) == (QueueName(namespace, "q4"), job4.id, 0)
    assert poll_queues(redis, timer, names, 0, 5) == (QueueName(namespace, "q5"), job5.id, 0)
    assert poll_queues(redis, timer, names, 0, 5) is None


def test_poll_counts_popped_jobs(redis, timer):
    q = Queue("ns-metric", "q", redis, timer)
    q.push(Job("ns-metric", "q", b"x", 10, 0, 1))
    q.poll(0, 1)
    assert get_metrics().queue_pop_jobs.labels(redis.name).value == 1


def test_backup(fake, redis):
    timer = Timer("timer_set_for_test_backup", redis, 1, 600)
    namespace, queue = "ns-queue", "q9"
    q = Queue(namespace, queue, redis, timer)
    pool = Pool(redis)
    count = 10
    for i in range(count):
        delay = 1 if i % 2 == 0 else 0
        job = Job(namespace, queue, b"hello msg", 30, delay, 2)
        q.push(job)
        pool.add(job)

    backup = fake.zsets[timer.backup_name()]
    assert len(backup) == count
    now = int(time.time())
    for member, score in backup.items():
        got_namespace, got_queue, got_job_id = struct_unpack_timer_data(member)
        assert got_namespace == namespace
        assert got_queue == queue
        assert len(got_job_id) == 26
        timestamp, tries = decode_score(score)
        assert tries == 2
        assert timestamp <= now

    for _ in range(count):
        assert q.poll(2, 1) is not None
    assert fake.zcard(timer.backup_name()) == 0