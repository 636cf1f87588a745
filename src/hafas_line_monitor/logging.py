"""Structured logging configuration using structlog."""

import logging
import sys
from contextlib import AbstractContextManager

import structlog


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "json",
) -> None:
    """Configure structured logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format ('json' for production, 'text' for development).
    """
    # Unknown level names fall back to INFO
    level = getattr(logging, log_level.upper(), logging.INFO)

    # Applied to structlog events and to records from stdlib loggers alike
    shared_processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format.lower() == "json":
        # One JSON object per line for log collectors
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        # Colored key=value output for local runs
        renderer = structlog.dev.ConsoleRenderer(colors=True)

    # Hand structlog events to stdlib logging for rendering
    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Single stdout handler on the root logger
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(level)

    # Dependency loggers stay at WARNING
    for name in ("httpx", "httpcore", "apscheduler", "aiosqlite", "sqlalchemy.engine"):
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str | None = None) -> structlog.stdlib.BoundLogger:
    """Get a structlog logger instance.

    Args:
        name: Logger name (typically __name__).

    Returns:
        Configured structlog BoundLogger.
    """
    logger: structlog.stdlib.BoundLogger = structlog.get_logger(name)
    return logger


def bind_service_context(bus_line: str) -> None:
    """Attach the monitored line to every log event of this process.

    Args:
        bus_line: Line identifier being monitored.
    """
    structlog.contextvars.bind_contextvars(bus_line=bus_line)


def stop_context(stop_id: str) -> AbstractContextManager[object]:
    """Bind ``stop_id`` to log events emitted inside the block.

    Bindings live in contextvars, so concurrent tasks each see their own stop.

    Args:
        stop_id: Stop being processed.
    """
    return structlog.contextvars.bound_contextvars(stop_id=stop_id)
