"""Structured logging configuration using structlog.

Console output for development and ``LOG_FORMAT=text``, JSON lines
everywhere else. Worker tasks bind the execution they are running into
the structlog context, so every event emitted while a chain runs carries
its ``execution_id``, ``chain_id`` and ``trigger_id``.
"""

import logging
import sys
from typing import Optional

import structlog
from app.config import get_settings

EXECUTION_CONTEXT_KEYS = ("execution_id", "chain_id", "trigger_id")

# Libraries whose INFO output drowns the engine's own events
_NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
}


def _add_app_name(logger, method_name, event_dict):
    event_dict.setdefault("app", get_settings().APP_NAME)
    return event_dict


def setup_logging(level: Optional[str] = None, fmt: Optional[str] = None) -> None:
    """Configure structlog and route stdlib logging through it.

    Args:
        level: Overrides LOG_LEVEL
        fmt: Overrides LOG_FORMAT ("json" or "text")
    """
    settings = get_settings()
    fmt = (fmt or settings.LOG_FORMAT).lower()
    level_name = (level or settings.LOG_LEVEL).upper()

    shared_processors: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if settings.is_development or fmt == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        shared_processors.append(_add_app_name)
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # The circuit breaker and third-party libraries log through stdlib
    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, level_name, logging.INFO))

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.SQLALCHEMY_ECHO else logging.WARNING
    )


def bind_execution(execution_id: str, chain_id: str, trigger_id: Optional[str] = None) -> None:
    """Attach an execution to every event logged from the current task."""
    structlog.contextvars.bind_contextvars(
        execution_id=execution_id,
        chain_id=chain_id,
        trigger_id=trigger_id,
    )


def unbind_execution() -> None:
    structlog.contextvars.unbind_contextvars(*EXECUTION_CONTEXT_KEYS)
