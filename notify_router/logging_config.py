"""
Structured logging for notify-router (structlog over stdlib logging).

Batch runs emit one event per item outcome plus a summary event. The ids of
the run, broadcast or queue item being worked on are bound as context
variables, so every event logged underneath carries them without passing
them down by hand:

    with log_context(trigger="auto", task="all"):
        with log_context(broadcast_id=broadcast.id):
            logger.info("broadcast_page_expanded", created=2)
            # -> trigger=auto task=all broadcast_id=bc_... created=2

Console output is the default; set NOTIFY_ROUTER_LOG_FORMAT=json for
scheduled invocations that ship logs elsewhere.

Usage:
    from notify_router.logging_config import setup_logging, get_logger, log_context
    setup_logging()
    logger = get_logger(__name__)
"""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog

LEVEL_ENV = "NOTIFY_ROUTER_LOG_LEVEL"
FORMAT_ENV = "NOTIFY_ROUTER_LOG_FORMAT"


def drop_empty_fields(
    logger: Any, method_name: str, event_dict: structlog.types.EventDict
) -> structlog.types.EventDict:
    """Remove keys whose value is None (unset sender, no next occurrence)."""
    return {key: value for key, value in event_dict.items() if value is not None}


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """
    Bind ids to every event logged inside the block.

    None values are not bound, and the previous bindings are restored on
    exit, so nested contexts (run, then broadcast or item) unwind cleanly.
    """
    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield


def setup_logging(level: str | None = None, json_output: bool | None = None) -> None:
    if level is None:
        level = os.environ.get(LEVEL_ENV, "INFO")

    if json_output is None:
        json_output = os.environ.get(FORMAT_ENV, "").lower() == "json"

    numeric_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        drop_empty_fields,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    if json_output:
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=[structlog.stdlib.add_log_level, structlog.stdlib.add_logger_name],
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    # CLI results go to stdout as JSON; logs stay on stderr
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(numeric_level)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


__all__ = ["drop_empty_fields", "get_logger", "log_context", "setup_logging"]
