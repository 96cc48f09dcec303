"""Process-wide error and access loggers with call-site annotations."""

from __future__ import annotations

import json
import logging
import os
import re
import sys
from dataclasses import dataclass
from datetime import datetime

TRACE = 5
PANIC = 60

_LEVELS = {
    "panic": PANIC,
    "fatal": logging.CRITICAL,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": TRACE,
}

_LEVEL_NAMES = [
    (PANIC, "panic"),
    (logging.CRITICAL, "fatal"),
    (logging.ERROR, "error"),
    (logging.WARNING, "warning"),
    (logging.INFO, "info"),
    (logging.DEBUG, "debug"),
]

_STANDARD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__
) | {"message", "asctime"}

_BARE_VALUE = re.compile(r"[A-Za-z0-9\-._/@^+]+")


def parse_level(name: str) -> int:
    """Map a level name such as 'info' or 'WARN' to a logging level."""
    try:
        return _LEVELS[name.lower()]
    except KeyError:
        raise ValueError(f"not a valid log level: {name!r}") from None


def _level_name(levelno: int) -> str:
    return next((name for bound, name in _LEVEL_NAMES if levelno >= bound), "trace")


def _timestamp(record: logging.LogRecord) -> str:
    return datetime.fromtimestamp(record.created).astimezone().isoformat(timespec="seconds")


def _extra_fields(record: logging.LogRecord) -> dict:
    return {k: v for k, v in record.__dict__.items() if k not in _STANDARD_ATTRS}


class BackTrackFilter(logging.Filter):
    """Add the caller's location as bt_line and bt_func to severe records."""

    def __init__(self, level: int) -> None:
        super().__init__()
        self.level = level

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno >= self.level:
            record.bt_line = f"{record.pathname}:{record.lineno}"
            record.bt_func = f"{record.module}.{record.funcName}"
        return True


class JSONFormatter(logging.Formatter):
    """One JSON object per record, extra fields at the top level."""

    def format(self, record: logging.LogRecord) -> str:
        entry = dict(_extra_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry["level"] = _level_name(record.levelno)
        entry["msg"] = record.getMessage()
        entry["time"] = _timestamp(record)
        return json.dumps(entry, default=str)


class _TextFormatter(logging.Formatter):
    """key=value lines: time, level, msg, then extra fields sorted."""

    @staticmethod
    def _quote(value: object) -> str:
        text = str(value)
        if _BARE_VALUE.fullmatch(text):
            return text
        return json.dumps(text)

    def format(self, record: logging.LogRecord) -> str:
        parts = [
            f"time={self._quote(_timestamp(record))}",
            f"level={_level_name(record.levelno)}",
            f"msg={self._quote(record.getMessage())}",
        ]
        parts.extend(
            f"{key}={self._quote(value)}"
            for key, value in sorted(_extra_fields(record).items())
        )
        if record.exc_info:
            parts.append(f"exception={self._quote(self.formatException(record.exc_info))}")
        return " ".join(parts)


@dataclass
class _LoggerState:
    global_logger: logging.Logger | None = None
    access_logger: logging.Logger | None = None


_state = _LoggerState()


def _replace_handler(logger: logging.Logger, handler: logging.Handler) -> None:
    old_handlers = list(logger.handlers)
    formatter = old_handlers[0].formatter if old_handlers else None
    if handler.formatter is None and formatter is not None:
        handler.setFormatter(formatter)
    logger.addHandler(handler)
    for old in old_handlers:
        logger.removeHandler(old)
        old.close()


def _open_log(log_dir: str, filename: str) -> logging.FileHandler:
    return logging.FileHandler(os.path.join(log_dir, filename), mode="a", encoding="utf-8")


def setup(log_format: str, log_dir: str, log_level: str, backtrack_level: str) -> None:
    """Configure the error and access loggers; an empty log_dir means stdout/stderr."""
    try:
        level = parse_level(log_level)
    except ValueError as exc:
        raise ValueError(f"failed to parse log level: {exc}") from exc
    try:
        bt_level = parse_level(backtrack_level)
    except ValueError as exc:
        raise ValueError(f"failed to parse backtrack level: {exc}") from exc

    if log_dir:
        try:
            access_handler: logging.Handler = _open_log(log_dir, "access.log")
        except OSError as exc:
            raise OSError(f"failed to create access.log: {exc}") from exc
        try:
            error_handler: logging.Handler = _open_log(log_dir, "error.log")
        except OSError as exc:
            access_handler.close()
            raise OSError(f"failed to create error.log: {exc}") from exc
    else:
        access_handler = logging.StreamHandler(sys.stdout)
        error_handler = logging.StreamHandler(sys.stderr)

    formatter_type = JSONFormatter if log_format == "json" else _TextFormatter
    access_handler.setFormatter(formatter_type())
    error_handler.setFormatter(formatter_type())

    access_logger = logging.getLogger("lmstfy.access")
    global_logger = logging.getLogger("lmstfy")
    for logger, handler in ((access_logger, access_handler), (global_logger, error_handler)):
        for old in list(logger.handlers):
            logger.removeHandler(old)
            old.close()
        for old_filter in list(logger.filters):
            logger.removeFilter(old_filter)
        logger.propagate = False
        logger.addHandler(handler)

    access_logger.setLevel(logging.INFO)
    global_logger.setLevel(level)
    global_logger.addFilter(BackTrackFilter(bt_level))

    _state.access_logger = access_logger
    _state.global_logger = global_logger


def reopen_logs(log_dir: str) -> None:
    """Reopen access.log and error.log in log_dir, e.g. after rotation."""
    if not log_dir:
        return
    if _state.access_logger is None or _state.global_logger is None:
        raise RuntimeError("logging is not set up")
    access_handler = _open_log(log_dir, "access.log")
    try:
        error_handler = _open_log(log_dir, "error.log")
    except OSError:
        access_handler.close()
        raise
    _replace_handler(_state.access_logger, access_handler)
    _replace_handler(_state.global_logger, error_handler)


def get_logger() -> logging.Logger | None:
    """The error logger, or None before setup."""
    return _state.global_logger


def get_access_logger() -> logging.Logger | None:
    """The access logger, or None before setup."""
    return _state.access_logger