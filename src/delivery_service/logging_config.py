"""Structured key=value logging for the delivery service."""
from __future__ import annotations

import logging
import sys
from typing import Any

import structlog


def _escape(value: str) -> str:
    return (
        value.replace("\\", "\\\\")
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )


def _escape_value(value: Any) -> Any:
    if isinstance(value, str):
        return _escape(value)
    if isinstance(value, (list, tuple)):
        return [_escape(item) if isinstance(item, str) else item for item in value]
    if isinstance(value, dict):
        return {k: _escape(v) if isinstance(v, str) else v for k, v in value.items()}
    return value


def single_line_processor(logger, method_name, event_dict):
    """Keep every entry on one line, including formatted tracebacks.

    Receiver response bodies and exception texts routinely contain newlines,
    and a log shipper splitting on them would tear a delivery record apart.
    """
    for key, value in event_dict.items():
        event_dict[key] = _escape_value(value)
    return event_dict


class SingleLineFormatter(logging.Formatter):
    """Formatter for stdlib records that never emits a raw newline."""

    def format(self, record):
        message = super().format(record)
        return message.replace("\n", "\\n").replace("\r", "\\r")


def configure_logging(level: int = logging.INFO) -> None:
    """Route stdlib and structlog output through one single-line stdout handler."""
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(SingleLineFormatter("%(message)s"))

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Request logging is done by the trace middleware
    logging.getLogger("aiohttp.access").setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.add_log_level,
            structlog.stdlib.add_logger_name,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            # must run after format_exc_info so tracebacks are escaped too
            single_line_processor,
            structlog.processors.KeyValueRenderer(
                key_order=["timestamp", "level", "logger", "event"],
                drop_missing=True,
            ),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
