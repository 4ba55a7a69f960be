"""Core utilities for the certificate service.

This module exports commonly used utilities for easy importing:
    from core import certificate_context
"""

from core.logger import (
    bind_contextvars,
    certificate_context,
    clear_contextvars,
    get_logger,
)

__all__ = [
    "bind_contextvars",
    "certificate_context",
    "clear_contextvars",
    "get_logger",
]
