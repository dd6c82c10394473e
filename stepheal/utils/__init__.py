"""
Utilities Module

Common utilities for the replay engine:
- Structured logging
- Retry and timeout helpers
"""

from .logger import setup_logging, get_logger, step_context
from .retry_handler import retry_async, with_timeout, RetryError

__all__ = ['setup_logging', 'get_logger', 'step_context', 'retry_async', 'with_timeout', 'RetryError']
