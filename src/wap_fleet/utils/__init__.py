"""Utility modules for connection handling and logging."""
from .connection import settle, with_retry
from .logging_config import (
    setup_logging,
    timed,
    timed_section,
    perf_logger,
)

__all__ = [
    "settle",
    "with_retry",
    "setup_logging",
    "timed",
    "timed_section",
    "perf_logger",
]
