"""Structured logging configuration using structlog."""
import structlog
import logging
import sys
from typing import Optional
from datetime import datetime, timezone


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper()),
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,  # Merge context variables
            structlog.processors.add_log_level,  # Add log level
            structlog.processors.TimeStamper(fmt="iso"),  # ISO timestamp
            structlog.processors.StackInfoRenderer(),  # Stack traces
            structlog.processors.format_exc_info,  # Exception formatting
            structlog.processors.UnicodeDecoder(),  # Decode bytes
            structlog.processors.JSONRenderer()  # JSON output
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = None) -> structlog.BoundLogger:
    """
    Get a structured logger instance.

    Args:
        name: Logger name (usually __name__)

    Returns:
        structlog.BoundLogger instance
    """
    return structlog.get_logger(name)


class GenerationStepLogger:
    """Context manager for logging one generation attempt with duration and token usage."""

    def __init__(
        self,
        logger: structlog.BoundLogger,
        parent_id: int,
        version: int,
        version_count: int,
        activity: str,
        **context
    ):
        """
        Initialize generation step logger.

        Args:
            logger: Structured logger instance
            parent_id: Node the new version is derived from
            version: 1-based index of this version within the batch
            version_count: Number of versions requested in the batch
            activity: Activity tag of the batch
            **context: Additional context to include in logs
        """
        self.logger = logger
        self.parent_id = parent_id
        self.version = version
        self.version_count = version_count
        self.activity = activity
        self.context = context
        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.duration: Optional[float] = None
        self.node_id: Optional[int] = None
        self.total_tokens: Optional[int] = None
        self.status: str = "started"

    def __enter__(self):
        """Enter context manager - log step start."""
        self.start_time = datetime.now(timezone.utc)

        self.logger.info(
            "generation_step_started",
            parent_id=self.parent_id,
            version=self.version,
            version_count=self.version_count,
            activity=self.activity,
            timestamp=self.start_time.isoformat(),
            **self.context
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Exit context manager - log step completion."""
        self.end_time = datetime.now(timezone.utc)

        if exc_type is None:
            self.status = "completed"
        else:
            self.status = "failed"

        if self.start_time:
            self.duration = (self.end_time - self.start_time).total_seconds()

        self.logger.info(
            "generation_step_completed",
            parent_id=self.parent_id,
            version=self.version,
            activity=self.activity,
            node_id=self.node_id,
            status=self.status,
            duration_seconds=self.duration,
            total_tokens=self.total_tokens,
            timestamp=self.end_time.isoformat(),
            **self.context
        )

        if exc_type is not None:
            self.logger.error(
                "generation_step_error",
                parent_id=self.parent_id,
                version=self.version,
                activity=self.activity,
                error_type=exc_type.__name__,
                error_message=str(exc_val),
                duration_seconds=self.duration,
                timestamp=self.end_time.isoformat(),
                **self.context
            )

        return False  # Don't suppress exceptions

    def set_result(self, node_id: int, total_tokens: int) -> None:
        """Attach the created node and its token usage to the completion log."""
        self.node_id = node_id
        self.total_tokens = total_tokens
