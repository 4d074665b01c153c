"""structlog setup for the bot trade backend.

Every balance movement is logged as one structured event; owner and trade ids
ride along through contextvars so nested calls don't need to pass them.
"""

from __future__ import annotations

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, List, Optional

import structlog


def _processors(json_logs: bool) -> List[Any]:
    renderer: Any = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    return [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        renderer,
    ]


def configure_logging(
    log_level: str = "INFO",
    *,
    json_logs: bool = True,
    environment: Optional[str] = None,
) -> None:
    level = getattr(logging, log_level.upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)

    structlog.configure(
        processors=_processors(json_logs),
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    if environment:
        structlog.contextvars.bind_contextvars(env=environment)


def get_logger(component: str, **kwargs: Any) -> structlog.BoundLogger:
    return structlog.get_logger().bind(component=component, **kwargs)


@contextmanager
def trade_context(owner_id: str, trade_id: Optional[str] = None) -> Iterator[None]:
    """Bind owner (and trade) ids to every log line emitted inside the block."""
    ctx = {"owner_id": owner_id}
    if trade_id is not None:
        ctx["trade_id"] = trade_id
    with structlog.contextvars.bound_contextvars(**ctx):
        yield
