"""Utility modules."""
from .logging import get_logger, setup_logging, LogContext
from .retry import with_retry, RetryConfig

__all__ = [
    "get_logger",
    "setup_logging",
    "LogContext",
    "with_retry",
    "RetryConfig",
]
