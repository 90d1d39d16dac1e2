"""
Structured logging configuration for the audio processing pipeline.
"""

import sys
import logging
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional
import structlog
from structlog.stdlib import LoggerFactory

from .config import settings


def setup_logging() -> None:
    """Configure structured logging for the application."""

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if settings.log_format == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        context_class=dict,
        logger_factory=LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, settings.log_level.upper()),
    )

    # Persistent log files are optional; containers usually ship stdout only
    if settings.logs_dir is not None:
        settings.logs_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(
            settings.logs_dir / "pipeline.log",
            encoding="utf-8"
        )
        file_handler.setLevel(logging.INFO)

        error_handler = logging.FileHandler(
            settings.logs_dir / "errors.log",
            encoding="utf-8"
        )
        error_handler.setLevel(logging.ERROR)

        root_logger = logging.getLogger()
        root_logger.addHandler(file_handler)
        root_logger.addHandler(error_handler)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class LoggerMixin:
    """Mixin class to add logging capabilities to other classes."""

    @property
    def logger(self) -> structlog.stdlib.BoundLogger:
        """Get a logger instance for this class."""
        return get_logger(self.__class__.__name__)


@dataclass(frozen=True)
class CorrelationContext:
    """
    Immutable identifiers attached to every log line of one job.

    A context is created once per job and handed explicitly to each stage;
    stages derive a child context for their own operation name.
    """
    job_id: str
    operation: str = "job"
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def child(self, operation: str) -> "CorrelationContext":
        """Derive a context for a sub-operation (``parent.child`` naming)."""
        return replace(self, operation=f"{self.operation}.{operation}")

    def as_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "operation": self.operation,
            "request_id": self.request_id,
        }

    def bind(self, logger: Optional[structlog.stdlib.BoundLogger] = None) -> structlog.stdlib.BoundLogger:
        """Return ``logger`` (or a module logger) bound with this context."""
        base = logger if logger is not None else get_logger("audio_pipeline")
        return base.bind(**self.as_dict())


# Setup logging on import
setup_logging()
