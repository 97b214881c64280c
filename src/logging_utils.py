"""Request-scoped logging utilities for the escrow service and checkout SDK.

Every record carries the correlation ID of the HTTP request (or checkout
session) and the escrow it concerns, so one payment can be followed from
escrow creation through funding to release.
"""

import logging
import sys
import uuid
from contextvars import ContextVar
from typing import Optional

correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)
escrow_id_var: ContextVar[Optional[str]] = ContextVar("escrow_id", default=None)


class EscrowContextFilter(logging.Filter):
    """Stamp correlation and escrow IDs onto log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.correlation_id = correlation_id_var.get() or "-"
        record.escrow_id = escrow_id_var.get() or "-"
        return True


def setup_logging(log_level: str = "INFO", log_format: str = "json") -> None:
    """Configure the root logger.

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
            '"correlation_id": "%(correlation_id)s", "escrow_id": "%(escrow_id)s", '
            '"name": "%(name)s", "message": "%(message)s"}'
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s [%(levelname)s] [%(correlation_id)s] [escrow=%(escrow_id)s] "
            "%(name)s: %(message)s"
        )

    handler.setFormatter(formatter)
    handler.addFilter(EscrowContextFilter())
    logger.addHandler(handler)


def generate_correlation_id() -> str:
    """Generate a new correlation ID."""
    return f"corr-{uuid.uuid4().hex[:12]}"


def bind_escrow_id(escrow_id: Optional[str]) -> None:
    """Attach an escrow ID to every record logged from the current context."""
    escrow_id_var.set(escrow_id)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext:
    """Context manager scoping a correlation ID (and optionally an escrow ID).

    Both values are restored on exit, so nested scopes such as a checkout
    session inside a script run do not leak into each other.
    """

    def __init__(self, correlation_id: Optional[str] = None, escrow_id: Optional[str] = None):
        self.correlation_id = correlation_id or generate_correlation_id()
        self.escrow_id = escrow_id
        self._tokens = []

    def __enter__(self) -> str:
        self._tokens.append(correlation_id_var.set(self.correlation_id))
        if self.escrow_id is not None:
            self._tokens.append(escrow_id_var.set(self.escrow_id))
        return self.correlation_id

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        for token in reversed(self._tokens):
            token.var.reset(token)
        self._tokens.clear()
