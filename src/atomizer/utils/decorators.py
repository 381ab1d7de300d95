"""
Decorators for common patterns in the communication core.
"""
import functools
import logging
from typing import Callable, Any

from .error_handler import (
    get_error_handler,
    ErrorCategory,
    ErrorSeverity,
)

logger = logging.getLogger(__name__)


def safe_slot(category: ErrorCategory = ErrorCategory.INTERNAL,
              message: str = "",
              severity: ErrorSeverity = ErrorSeverity.ERROR):
    """
    Decorator for PyQt slots and event handlers that wraps them in error handling.

    Catches exceptions and routes them through the centralized ErrorHandler.
    This prevents a single bad event from crashing the event loop.

    If the decorated object has an ``error_handler`` attribute it is used,
    otherwise the global handler.

    Usage:
        @safe_slot(category=ErrorCategory.DISCOVERY)
        def handle_event(self, event):
            ...

    Args:
        category: Error category for classification
        message: Custom error message (uses exception message if not provided)
        severity: Error severity level
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs) -> Any:
            try:
                return func(*args, **kwargs)
            except Exception as e:
                owner = args[0] if args else None
                error_handler = getattr(owner, "error_handler", None) or get_error_handler()
                error_msg = message or f"Error in {func.__qualname__}: {e}"
                logger.debug(f"{func.__qualname__} raised {type(e).__name__}")
                error_handler.handle_exception(
                    exception=e,
                    message=error_msg,
                    category=category,
                    severity=severity,
                )
                return None
        return wrapper
    return decorator
