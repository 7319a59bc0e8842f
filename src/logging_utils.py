"""Correlation ID based logging utilities for tracing quest verifications.

Every log record carries the correlation ID of the inbound request and the
purchase currently being verified, so a buyer's submission can be followed
from the HTTP layer through the registry into the adapter that decided it.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

# Context variables for the current request/task
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
purchase_id_var: ContextVar[Optional[str]] = ContextVar("purchase_id", default=None)


class CorrelationIdFilter(logging.Filter):
    """Add correlation and purchase IDs to log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        """Stamp the record with the current context IDs.

        Args:
            record: The log record to filter.

        Returns:
            Always True to allow the record through.
        """
        record.correlation_id = correlation_id_var.get() or "no-correlation-id"
        record.purchase_id = purchase_id_var.get() or "-"
        return True


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure logging for the application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """
    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level.upper()))

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)

    if log_format == "json":
        formatter = logging.Formatter(
            '{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"correlation_id": "%(correlation_id)s", "purchase_id": "%(purchase_id)s", '
            '"name": "%(name)s", "message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(correlation_id)s] [%(purchase_id)s] %(name)s: %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(CorrelationIdFilter())
    logger.addHandler(handler)


def set_correlation_id(correlation_id: str) -> None:
    """Set the correlation ID for the current context."""
    correlation_id_var.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID, or None if not set."""
    return correlation_id_var.get()


def generate_correlation_id() -> str:
    """Generate a new correlation ID.

    Returns:
        A new UUID-based correlation ID.
    """
    return f"corr-{uuid.uuid4().hex[:12]}"


def get_logger(name: str) -> logging.Logger:
    """Get a logger with the given name (typically __name__)."""
    return logging.getLogger(name)


class CorrelationIdContext:
    """Context manager for setting correlation ID in a block of code."""

    def __init__(self, correlation_id: Optional[str] = None):
        """Initialize the context manager.

        Args:
            correlation_id: The correlation ID to set. If None, generates a new one.
        """
        self.correlation_id = correlation_id or generate_correlation_id()
        self._token = None

    def __enter__(self) -> str:
        self._token = correlation_id_var.set(self.correlation_id)
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        correlation_id_var.reset(self._token)


class PurchaseContext:
    """Context manager tagging log records with the purchase being processed."""

    def __init__(self, purchase_id: str):
        self.purchase_id = purchase_id
        self._token = None

    def __enter__(self) -> str:
        self._token = purchase_id_var.set(self.purchase_id)
        return self.purchase_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        purchase_id_var.reset(self._token)
