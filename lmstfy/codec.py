"""Key layout, wire formats and shared types of the Redis job engine."""

from __future__ import annotations

import os
import struct
import time
from dataclasses import dataclass
from typing import Any

POOL_PREFIX = "j2"
QUEUE_PREFIX = "q2"
DEAD_LETTER_PREFIX = "d2"
META_PREFIX = "m2"

BATCH_SIZE = 100

_HEADER = struct.Struct("<HH")
_MAX_UINT16 = 0xFFFF
_CROCKFORD = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"
_UNIQUE_ID_LENGTH = 26
_TIME_CHARS = 10


class NotFoundError(LookupError):
    """The requested job or element does not exist."""


class EmptyQueueError(LookupError):
    """The queue holds no job."""


class WrongQueueError(ValueError):
    """The job belongs to another queue."""


class CorruptedDataError(ValueError):
    """Packed data does not match its declared layout."""


@dataclass
class RedisInstance:
    """A named Redis connection."""

    name: str
    conn: Any


def _new_unique_id() -> str:
    """Return a 26-character, time-ordered identifier (ULID layout)."""
    millis = time.time_ns() // 1_000_000
    value = (millis << 80) | int.from_bytes(os.urandom(10), "big")
    chars = []
    for _ in range(_UNIQUE_ID_LENGTH):
        chars.append(_CROCKFORD[value & 31])
        value >>= 5
    return "".join(reversed(chars))


def _timestamp_ms_from_id(unique_id: str) -> int | None:
    if len(unique_id) != _UNIQUE_ID_LENGTH:
        return None
    value = 0
    for char in unique_id[:_TIME_CHARS].upper():
        digit = _CROCKFORD.find(char)
        if digit < 0:
            return None
        value = value * 32 + digit
    return value


@dataclass
class Job:
    """A unit of work; an empty id is replaced by a fresh unique id."""

    namespace: str
    queue: str
    body: bytes
    ttl: int = 0
    delay: int = 0
    tries: int = 1
    id: str = ""

    def __post_init__(self) -> None:
        if not self.id:
            self.id = _new_unique_id()

    @property
    def elapsed_ms(self) -> int:
        """Milliseconds since the id was generated, 0 for foreign ids."""
        created = _timestamp_ms_from_id(self.id)
        if created is None:
            return 0
        return max(0, time.time_ns() // 1_000_000 - created)


def join(*args: str) -> str:
    """Join key parts with '/'."""
    return "/".join(args)


def splits(n: int, text: str) -> list[str]:
    """Split on '/' into at most n parts; n < 0 means no limit."""
    if n == 0:
        return []
    if n < 0:
        return text.split("/")
    return text.split("/", n - 1)


def is_lua_script_gone(err: BaseException | str) -> bool:
    """Tell whether Redis reported that a cached script is missing."""
    return str(err).startswith("NOSCRIPT")


@dataclass(frozen=True)
class QueueName:
    """The namespace and queue that make up a ready-queue key."""

    namespace: str
    queue: str

    def __str__(self) -> str:
        return join(QUEUE_PREFIX, self.namespace, self.queue)

    @classmethod
    def decode(cls, text: str | bytes) -> QueueName:
        if isinstance(text, bytes):
            text = text.decode("utf-8")
        parts = splits(3, text)
        if len(parts) != 3 or parts[0] != QUEUE_PREFIX:
            raise ValueError("invalid format")
        return cls(parts[1], parts[2])


def struct_pack(tries: int, job_id: str) -> bytes:
    """Pack (tries, job id) in the Lua struct layout "HHc0"."""
    if not 0 <= tries <= _MAX_UINT16:
        raise ValueError(f"tries out of range: {tries}")
    raw_id = job_id.encode("utf-8")
    if len(raw_id) > _MAX_UINT16:
        raise ValueError("job id too long")
    return _HEADER.pack(tries, len(raw_id)) + raw_id


def struct_unpack(data: bytes | str) -> tuple[int, str]:
    """Unpack "HHc0" data into (tries, job id)."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    if len(data) < _HEADER.size:
        raise CorruptedDataError("corrupted data")
    tries, id_length = _HEADER.unpack_from(data)
    raw_id = data[_HEADER.size:]
    if len(raw_id) != id_length:
        raise CorruptedDataError("corrupted data")
    try:
        job_id = raw_id.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise CorruptedDataError("corrupted data") from exc
    return tries, job_id