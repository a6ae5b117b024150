"""Request middleware (correlation IDs) and exception handlers"""

from .correlation import CorrelationIdMiddleware, CORRELATION_HEADER
from .error_handlers import register_error_handlers

__all__ = ["CorrelationIdMiddleware", "CORRELATION_HEADER", "register_error_handlers"]
