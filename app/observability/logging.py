# ==== STRUCTURED LOGGING WITH LOGURU ==== #

"""
Structured logging with loguru for the receivables ledger.

This module provides JSON structured logging with correlation ID tracking,
log rotation, standard-library interception and OpenTelemetry trace
context, plus helpers for business and performance events.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict

from loguru import logger
from opentelemetry import trace
from opentelemetry.instrumentation.logging import LoggingInstrumentor


# ==== INITIALIZATION ==== #


class InterceptHandler(logging.Handler):
    """Route standard-library log records through loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        # Find caller from where originated the logged message
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(
            level, record.getMessage()
        )


def init_logging(level: str = "INFO", log_dir: str | None = "logs") -> None:
    """Initialize structured logging with loguru.

    Provides JSON console output and, when ``log_dir`` is set, rotated and
    compressed ledger and error log files.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for rotated log files, or None for console only
    """
    logger.remove()

    logger.add(
        sys.stdout,
        format="{message}",
        serialize=True,
        level=level.upper(),
        enqueue=True,
        colorize=False,
        backtrace=True,
        diagnose=False,
    )

    if log_dir:
        logs_dir = Path(log_dir)
        logs_dir.mkdir(exist_ok=True)

        logger.add(
            logs_dir / "ledger_{time:YYYY-MM-DD}.log",
            rotation="100 MB",
            retention="30 days",
            compression="gz",
            serialize=True,
            level="DEBUG",
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

        # Money-moving failures are kept longer
        logger.add(
            logs_dir / "ledger_errors_{time:YYYY-MM-DD}.log",
            rotation="50 MB",
            retention="365 days",
            compression="gz",
            serialize=True,
            level="ERROR",
            enqueue=True,
            backtrace=True,
            diagnose=False,
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)

    # Reduce noise from third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    try:
        LoggingInstrumentor().instrument(set_logging_format=False)
    except Exception as e:
        logger.warning(f"Failed to setup OpenTelemetry logging: {e}")

    logger.info("Structured logging initialized", level=level)


# ==== CONTEXTUAL LOGGER ==== #


class ContextualLogger:
    """Logger using loguru with automatic context injection.

    Binds the logger name, any keyword fields and the current OpenTelemetry
    trace/span ids to each record.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logger.bind(logger_name=name)

    def _add_context(self, extra: Dict[str, Any] | None = None) -> Dict[str, Any]:
        context: Dict[str, Any] = {"logger_name": self.name}

        if extra:
            context.update(extra)

        span = trace.get_current_span()
        if span and span.is_recording():
            span_context = span.get_span_context()
            if span_context.is_valid:
                context['trace_id'] = format(span_context.trace_id, '032x')
                context['span_id'] = format(span_context.span_id, '016x')

        return context

    def debug(self, msg: str, **kwargs: Any) -> None:
        self.logger.bind(**self._add_context(kwargs)).debug(msg)

    def info(self, msg: str, **kwargs: Any) -> None:
        self.logger.bind(**self._add_context(kwargs)).info(msg)

    def warning(self, msg: str, **kwargs: Any) -> None:
        self.logger.bind(**self._add_context(kwargs)).warning(msg)

    def error(self, msg: str, **kwargs: Any) -> None:
        self.logger.bind(**self._add_context(kwargs)).error(msg)

    def critical(self, msg: str, **kwargs: Any) -> None:
        self.logger.bind(**self._add_context(kwargs)).critical(msg)

    def exception(self, msg: str, **kwargs: Any) -> None:
        """Log exception with full traceback and context."""
        self.logger.bind(**self._add_context(kwargs)).exception(msg)


# ==== LOGGING UTILITIES ==== #


def get_logger(name: str) -> ContextualLogger:
    """Get a contextual logger instance.

    Args:
        name: Logger name (typically __name__)

    Returns:
        ContextualLogger instance
    """
    return ContextualLogger(name)


def log_business_event(event_type: str, actor_id: str, **context: Any) -> None:
    """Log business events with structured data.

    Args:
        event_type: Type of business event
        actor_id: Identifier of the acting user or system
        **context: Additional business context
    """
    logger.bind(
        event_type=event_type,
        actor_id=actor_id,
        business_event=True,
        **context
    ).info(f"Business event: {event_type}")
