"""
Structured logging configuration for the extraction pipeline.
Provides JSON or console output with job-scoped context variables.
"""

import logging
import sys
from typing import Any, Dict, Optional

import structlog
from structlog.typing import FilteringBoundLogger

from bookscan.orchestrator.core.config import Settings, get_settings


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure structured logging for the application."""
    settings = settings or get_settings()
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    # Set log levels for noisy libraries
    logging.getLogger("PIL").setLevel(logging.WARNING)
    logging.getLogger("redis").setLevel(logging.WARNING)

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    if settings.log_format == "console":
        # Human-readable console output for local runs
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))
    else:
        processors.extend([
            structlog.processors.dict_tracebacks,
            structlog.processors.JSONRenderer(),
        ])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: Optional[str] = None) -> FilteringBoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


# Job context management
def bind_job_id(job_id: str, **kwargs: Any) -> None:
    """Bind the executing job to the logging context of the current task."""
    structlog.contextvars.bind_contextvars(job_id=job_id, **kwargs)


def clear_job_context() -> None:
    structlog.contextvars.clear_contextvars()


def log_job_event(
    logger: FilteringBoundLogger,
    event: str,
    job_id: str,
    **kwargs: Any,
) -> None:
    """Log a job-related event with consistent formatting."""
    logger.info(event, job_id=job_id, event_type="job", **kwargs)


def log_error_with_context(
    logger: FilteringBoundLogger,
    error: Exception,
    context: Dict[str, Any],
) -> None:
    """Log an error with additional context."""
    logger.error(
        "Error occurred",
        error=str(error),
        error_type=type(error).__name__,
        **context,
        exc_info=True,
    )
