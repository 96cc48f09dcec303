# lmstfy

A job queue engine built on Redis. Jobs are published with a body, a TTL,
an optional delay and a number of tries. Consumers take jobs from one or
more queues and acknowledge them by deleting them. A job that is not
acknowledged within its time-to-run (TTR) is handed out again while it has
tries left; once they run out it moves to the queue's dead letter, from
where it can be respawned or deleted.

## Requirements

- Python 3.10 or later
- The `redis` client library
- A Redis server with `maxmemory-policy noeviction` and `appendonly yes`.
  `lmstfy.helper.validate_redis_config` checks this and raises
  `RedisConfigError` otherwise; when `enable_secondary_storage` is set on the
  `RedisConf`, it also requires `maxmemory` to be set.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Usage

```python
import io

from lmstfy.codec import Job
from lmstfy.engine import Engine
from lmstfy.helper import RedisConf, new_redis_client

conf = RedisConf(addr="localhost:6379")
conn = new_redis_client(conf)

with Engine("default", conf, conn) as engine:
    # namespace, queue, body, ttl, delay, tries; an empty id gets a fresh one
    job_id = engine.publish(Job("ns", "emails", b"hello", 60, 0, 3))

    # Consume from several queues; earlier queues have priority.
    # Arguments: namespace, queues, ttr seconds, timeout seconds.
    job = engine.consume("ns", ["emails", "reports"], 30, 5)
    if job is not None:
        ...  # handle job.body
        engine.delete("ns", job.queue, job.id)

    # Take up to 10 ready jobs; if none is ready, wait up to 3 seconds for one.
    jobs = engine.batch_consume("ns", ["emails"], 10, 30, 3)

    engine.size("ns", "emails")
    engine.peek("ns", "emails", "")       # oldest ready job
    engine.peek("ns", "emails", job_id)   # a given job

    engine.size_of_dead_letter("ns", "emails")
    engine.respawn_dead_letter("ns", "emails", 10, 60)  # limit, new TTL
    engine.delete_dead_letter("ns", "emails", 10)

    out = io.StringIO()
    engine.dump_info(out)  # namespaces and their queues as indented JSON
```

`Engine` starts background threads that pump due jobs (every second),
recover jobs taken but never acknowledged (every ten minutes) and update
metrics (every five seconds). `shutdown()`, or leaving the `with` block,
stops them.

Errors are raised as exceptions from `lmstfy.codec`:

- `consume` and `batch_consume` return `None` or an empty list when no job
  arrives in time.
- `peek` raises `EmptyQueueError` when the queue is empty and
  `NotFoundError` when a given job id does not exist. An expired oldest job
  comes back with its id and an empty body.
- `peek_dead_letter` raises `NotFoundError` when the dead letter is empty.
- `Queue.push` raises `WrongQueueError` for a job of another queue.

## Building blocks

- `lmstfy.codec` — key prefixes, `Job`, `QueueName`, `RedisInstance`, the
  exceptions, and the packed formats (`struct_pack`, `struct_unpack`).
- `lmstfy.pool.Pool` — stores job bodies with their TTL; never overwrites an
  existing job.
- `lmstfy.queue.Queue` — the ready queue of a namespace and queue name;
  `poll_queues` and `pop_multi_queues` take jobs from several queues.
- `lmstfy.timer.Timer` — the delay queue; `pump` moves due jobs into ready
  queues or dead letters, `pump_backup` requeues lost jobs. `start()` and
  `shutdown()` control its thread, and it works as a context manager.
- `lmstfy.deadletter.DeadLetter` — jobs whose tries ran out. Call
  `preload_dead_letter_lua_script` before creating one (the engine does).
- `lmstfy.meta.MetaManager` — records which namespaces and queues exist.
- `lmstfy.monitor.SizeMonitor` and `lmstfy.info.get_redis_info` — feed the
  size and server gauges.
- `lmstfy.metrics` — in-process counters, gauges and histograms
  (`get_metrics()`, `get_performance_metrics()`).
- `lmstfy.hooks.MetricsHook` — records latency and count of each Redis
  command; clients built by `new_redis_client` use it.
- `lmstfy.helper` — `RedisConf`, `new_redis_client` (a standalone server,
  or a sentinel-managed master when `master_name` is set, with `addr` a
  comma-separated list of sentinels) and the configuration checks.
- `lmstfy.logsetup` — `setup(log_format, log_dir, log_level,
  backtrack_level)` configures the error and access loggers: to stdout and
  stderr when `log_dir` is empty, else to `access.log` and `error.log` in
  it; `"json"` selects JSON lines, anything else `key=value` text. Records at
  or above the backtrack level carry `bt_line` and `bt_func`.
  `reopen_logs(log_dir)` reopens the files after rotation.

## What it does not do

- There is no HTTP API, server or command-line program; the engine is used
  as a library.
- Metrics are kept in memory only; nothing exports them.
- There is no secondary storage for long-delayed jobs: `Engine` keeps every
  job in Redis, whatever `enable_secondary_storage` says.
- There is no registry of engines or setup of several pools from a
  configuration file; each `Engine` is created directly.