"""
Utils Package

Logging setup, centralized error handling and slot decorators.
"""

from .error_handler import (
    ErrorHandler,
    ErrorInfo,
    ErrorSeverity,
    ErrorCategory,
    get_error_handler,
    set_error_handler,
)
from .decorators import safe_slot
from .logger import setup_logger

__all__ = [
    'ErrorHandler',
    'ErrorInfo',
    'ErrorSeverity',
    'ErrorCategory',
    'get_error_handler',
    'set_error_handler',
    'safe_slot',
    'setup_logger',
]
