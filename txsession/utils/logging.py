"""
Structured logging for transactional producer sessions.

Wraps structlog with:
- JSON output for services, console output for local runs
- A per-session context (transactional id) merged into every event
- Log level management
"""

import logging
import sys
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import structlog
from structlog.types import EventDict, Processor

from txsession.utils.config import Config, get_config

APP_NAME = "txsession"


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Tag every entry with the application name."""
    event_dict["app"] = APP_NAME
    return event_dict


# Root handler installed by configure_logging(); replaced on reconfigure
_handler: Optional[logging.Handler] = None


def _install_handler(log_output: str, level: int) -> logging.Handler:
    global _handler
    shutdown_logging()

    if log_output in ("stdout", "stderr"):
        handler: logging.Handler = logging.StreamHandler(getattr(sys, log_output))
    else:
        handler = logging.FileHandler(log_output, mode="a", encoding="utf-8")
    handler.setFormatter(logging.Formatter("%(message)s"))

    root = logging.getLogger()
    root.addHandler(handler)
    root.setLevel(level)

    _handler = handler
    return handler


def shutdown_logging() -> None:
    """Detach and close the handler installed by configure_logging()."""
    global _handler
    if _handler is None:
        return
    logging.getLogger().removeHandler(_handler)
    _handler.close()
    _handler = None


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
    log_output: str = "stdout",
) -> None:
    """
    Configure structured logging for sessions and the loopback broker.

    Calling it again replaces (and closes) the handler a previous call
    installed.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format (json or console)
        log_output: Output destination (stdout, stderr, or file path)
    """
    _install_handler(log_output, getattr(logging, log_level.upper()))

    shared_processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        renderer: Processor = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=shared_processors + [renderer],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


@contextmanager
def session_log_context(transactional_id: str, **extra: Any) -> Iterator[None]:
    """
    Bind a transactional id (and any extra keys) to every log event
    emitted inside the block, e.g. while a recovery routine drives a session.
    """
    bound = structlog.contextvars.bind_contextvars(
        transactional_id=transactional_id,
        **extra,
    )
    try:
        yield
    finally:
        structlog.contextvars.reset_contextvars(**bound)


def configure_from_config(config: Optional[Config] = None) -> None:
    """
    Configure logging from the ``logging`` section of a Config.

    Args:
        config: Loaded configuration (global config if None)
    """
    section = (config or get_config()).section("logging")
    configure_logging(
        log_level=str(section.get("level", "INFO")),
        log_format=str(section.get("format", "json")),
        log_output=str(section.get("output", "stdout")),
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """
    Get a configured logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Configured structlog logger
    """
    return structlog.get_logger(name)
