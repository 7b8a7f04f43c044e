"""
Structured logger construction for gox services.

Loggers are plain structlog bound loggers rendering one JSON object per line.
`new_logger` builds an independent logger instance; `get_logger` goes through
structlog's global configuration and is what gox modules use internally.
"""

import sys
import time
import uuid
import logging
import threading
from contextvars import ContextVar
from typing import Any, Dict, Optional, TextIO, Tuple

import structlog

from gox.errors import ConfigurationError

# Context variable for request correlation
request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)

LEVELS: Dict[str, int] = {
    "": logging.INFO,
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "dpanic": logging.CRITICAL,
    "panic": logging.CRITICAL,
    "fatal": logging.CRITICAL,
    "critical": logging.CRITICAL,
}

SAMPLING_TICK = 1.0
SAMPLING_FIRST = 100
SAMPLING_THEREAFTER = 10


class LogSampler:
    """Drop repetitive events once a per-tick budget is used up.

    Within each tick, the first `first` events sharing a level and message are
    kept, then only every `thereafter`-th one.
    """

    def __init__(self, tick: float = SAMPLING_TICK, first: int = SAMPLING_FIRST,
                 thereafter: int = SAMPLING_THEREAFTER):
        self.tick = tick
        self.first = first
        self.thereafter = thereafter
        self._counts: Dict[Tuple[str, Any], int] = {}
        self._window_start = time.monotonic()
        self._lock = threading.Lock()

    def __call__(self, logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        key = (method_name, event_dict.get("event"))
        with self._lock:
            now = time.monotonic()
            if now - self._window_start >= self.tick:
                self._counts.clear()
                self._window_start = now
            n = self._counts.get(key, 0) + 1
            self._counts[key] = n

        if n > self.first and (self.thereafter == 0 or (n - self.first) % self.thereafter != 0):
            raise structlog.DropEvent
        return event_dict


def parse_level(level: str) -> int:
    """Translate a level name into a stdlib logging level."""
    try:
        return LEVELS[level.strip().lower()]
    except KeyError:
        raise ConfigurationError(f"unrecognized level: {level!r}", {"level": level}) from None


def add_correlation_context(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """Add the current request ID to log events."""
    request_id = request_id_var.get()
    if request_id:
        event_dict.setdefault("request_id", request_id)
    return event_dict


def new_logger(level: str, *processors: Any, file: Optional[TextIO] = None) -> structlog.BoundLogger:
    """Build a JSON logger writing to stdout at the given level.

    Extra processors run after the built-in ones and before rendering.
    """
    log_level = parse_level(level)

    chain = [
        LogSampler(),
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.CallsiteParameterAdder({
            structlog.processors.CallsiteParameter.MODULE,
            structlog.processors.CallsiteParameter.FUNC_NAME,
            structlog.processors.CallsiteParameter.LINENO,
        }),
        add_correlation_context,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        *processors,
        structlog.processors.JSONRenderer(),
    ]

    return structlog.wrap_logger(
        structlog.PrintLogger(file or sys.stdout),
        processors=chain,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        cache_logger_on_first_use=True,
    )


def new_service_logger(level: str, service_name: str, service_version: str,
                       *processors: Any, file: Optional[TextIO] = None) -> structlog.BoundLogger:
    """Build a logger whose events carry the service name and version."""
    return new_logger(level, *processors, file=file).bind(service=service_name, version=service_version)


def _drop_event(logger: Any, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    raise structlog.DropEvent


def new_nop_logger() -> structlog.BoundLogger:
    """Build a logger that discards every event."""
    return structlog.wrap_logger(structlog.PrintLogger(sys.stdout), processors=[_drop_event])


def set_request_id(request_id: Optional[str] = None) -> str:
    """Set request ID in context."""
    if request_id is None:
        request_id = uuid.uuid4().hex
    request_id_var.set(request_id)
    return request_id


def clear_context():
    """Clear all context variables."""
    request_id_var.set(None)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)
