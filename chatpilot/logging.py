"""Logging configuration for chatpilot."""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Callable, Iterator

import structlog

from chatpilot.config import get_config

_log_sink: Callable[[str], None] | None = None

REDACTED = "***"


class _SinkWriter:
    """File-like sink for structlog that forwards lines to a callback."""

    def __init__(self, sink: Callable[[str], None]):
        self._sink = sink
        self._buffer = ""

    def write(self, text: str) -> int:
        self._buffer += text
        while "\n" in self._buffer:
            line, self._buffer = self._buffer.split("\n", 1)
            if line:
                self._sink(line)
        return len(text)

    def flush(self) -> None:
        if self._buffer:
            self._sink(self._buffer)
            self._buffer = ""


def set_log_sink(sink: Callable[[str], None] | None) -> None:
    """Route log lines to a callback instead of stderr (e.g. a host app console)."""
    global _log_sink
    _log_sink = sink


def _redact(keys: list[str]) -> Callable[[Any, str, dict[str, Any]], dict[str, Any]]:
    lowered = {key.lower() for key in keys}

    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        for key in list(event_dict):
            if key.lower() in lowered:
                event_dict[key] = REDACTED
        return event_dict

    return processor


def _truncate(max_length: int) -> Callable[[Any, str, dict[str, Any]], dict[str, Any]]:
    """Cut long string values such as tool results; 0 disables it."""

    def processor(logger: Any, method_name: str, event_dict: dict[str, Any]) -> dict[str, Any]:
        if max_length <= 0:
            return event_dict
        for key, value in event_dict.items():
            if key != "event" and isinstance(value, str) and len(value) > max_length:
                event_dict[key] = f"{value[:max_length]}... ({len(value) - max_length} more chars)"
        return event_dict

    return processor


def configure_logging() -> None:
    """Configure structured logging for chatpilot."""
    config = get_config()

    log_level = getattr(logging, config.logging.level.upper(), logging.INFO)

    processors = [
        structlog.contextvars.merge_contextvars,
        _redact(config.logging.redact_fields),
        _truncate(config.logging.max_field_length),
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if config.logging.format == "console":
        processors.append(structlog.dev.ConsoleRenderer())
    else:
        processors.append(structlog.processors.JSONRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(
            file=_SinkWriter(_log_sink) if _log_sink else sys.stderr
        ),
        cache_logger_on_first_use=True,
    )


@contextmanager
def tool_call_context(message_id: str, tool_call_id: str, origin: str, server_id: str | None) -> Iterator[None]:
    """Bind the tool call's identity to every log record emitted inside the block."""
    with structlog.contextvars.bound_contextvars(
        message_id=message_id,
        tool_call_id=tool_call_id,
        origin=origin,
        server_id=server_id,
    ):
        yield


def get_logger(name: str | None = None) -> structlog.BoundLogger:
    """Get a logger instance.

    Args:
        name: Optional logger name (usually __name__)

    Returns:
        Configured structlog logger
    """
    if name:
        return structlog.get_logger(name)
    return structlog.get_logger()
