"""
Centralized Error Handler

Every failure the link core observes ends up here: adapter unavailability,
discovery and decode problems, rejected writes, settings I/O. None of them
are fatal; the handler records them, logs them and tells whoever listens.

Usage:
    handler = get_error_handler()
    handler.warning_occurred.connect(status_bar.showMessage)
    handler.warning("Bluetooth is unauthorized", ErrorCategory.TRANSPORT_UNAVAILABLE)
"""

import logging
import sys
import traceback
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum, auto
from typing import Callable, Deque, Dict, List, Optional

from PyQt6.QtCore import QObject, pyqtSignal

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels, least severe first."""
    DEBUG = auto()
    INFO = auto()
    WARNING = auto()    # Recoverable, link keeps running
    ERROR = auto()      # Operation failed
    CRITICAL = auto()   # Uncaught exception


class ErrorCategory(Enum):
    """Where in the link a failure came from."""
    TRANSPORT_UNAVAILABLE = "transport_unavailable"   # Adapter off/unauthorized/unsupported
    DISCOVERY = "discovery"     # Scan/connect/service/channel discovery
    DECODE = "decode"           # Malformed characteristic payload
    WRITE = "write"             # Write could not be submitted or failed
    CONFIG = "config"           # Settings load/save
    INTERNAL = "internal"       # Bug in an event handler
    UNKNOWN = "unknown"


_LOG_LEVELS = {
    ErrorSeverity.DEBUG: logging.DEBUG,
    ErrorSeverity.INFO: logging.INFO,
    ErrorSeverity.WARNING: logging.WARNING,
    ErrorSeverity.ERROR: logging.ERROR,
    ErrorSeverity.CRITICAL: logging.CRITICAL,
}


@dataclass
class ErrorInfo:
    """One recorded failure."""
    message: str
    severity: ErrorSeverity = ErrorSeverity.ERROR
    category: ErrorCategory = ErrorCategory.UNKNOWN
    exception: Optional[Exception] = None
    details: str = ""
    timestamp: datetime = field(default_factory=datetime.now)
    source: str = ""
    recoverable: bool = True

    def __str__(self):
        return f"[{self.severity.name}] {self.category.value}: {self.message}"


class ErrorHandler(QObject):
    """
    Records link failures and fans them out.

    Warnings go to ``warning_occurred`` as plain text; everything handled
    through ``handle()`` goes to ``error_occurred`` and to the callbacks
    registered for its category. Suppressing a category silences the
    notifications but still records the failure.
    """

    # Signals
    error_occurred = pyqtSignal(object)  # ErrorInfo
    warning_occurred = pyqtSignal(str)   # warning text

    def __init__(self, parent: QObject = None, max_history: int = 100):
        super().__init__(parent)
        self._history: Deque[ErrorInfo] = deque(maxlen=max_history)
        self._suppressed: set = set()
        self._callbacks: Dict[ErrorCategory, List[Callable[[ErrorInfo], None]]] = {}
        self._previous_excepthook = sys.excepthook

    # ========== Global hook ==========

    def install_global_handler(self):
        """Route uncaught exceptions into the handler."""
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook

    def uninstall_global_handler(self):
        sys.excepthook = self._previous_excepthook

    def _excepthook(self, exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            self._previous_excepthook(exc_type, exc_value, exc_traceback)
            return
        self.handle(ErrorInfo(
            message=f"Unhandled exception: {exc_value}",
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.INTERNAL,
            exception=exc_value,
            details="".join(traceback.format_exception(exc_type, exc_value, exc_traceback)),
            recoverable=False,
        ))

    # ========== Recording ==========

    def handle(self, error: ErrorInfo):
        """Record, log and notify."""
        if not self._record(error):
            return

        self.error_occurred.emit(error)
        for callback in self._callbacks.get(error.category, []):
            try:
                callback(error)
            except Exception as e:
                logger.error(f"Error callback failed: {e}")

    def handle_exception(self, exception: Exception, message: str = "",
                         category: ErrorCategory = ErrorCategory.UNKNOWN,
                         severity: ErrorSeverity = ErrorSeverity.ERROR):
        """
        Handle an exception caught by the caller.

        Args:
            exception: The exception that occurred
            message: Custom message (uses the exception text if not provided)
            category: Error category
            severity: Error severity
        """
        self.handle(ErrorInfo(
            message=message or str(exception),
            severity=severity,
            category=category,
            exception=exception,
            details=traceback.format_exc(),
            source=type(exception).__name__,
        ))

    def warning(self, message: str, category: ErrorCategory = ErrorCategory.UNKNOWN):
        """Record a recoverable problem and emit it as text."""
        error = ErrorInfo(message=message, severity=ErrorSeverity.WARNING, category=category)
        if self._record(error):
            self.warning_occurred.emit(message)

    def _record(self, error: ErrorInfo) -> bool:
        """Store and log; returns False when notifications are suppressed."""
        self._history.append(error)

        text = f"[{error.category.value}] {error.message}"
        if error.details and error.severity in (ErrorSeverity.ERROR, ErrorSeverity.CRITICAL):
            text += f"\nDetails: {error.details}"
        logger.log(_LOG_LEVELS[error.severity], text)

        return error.category not in self._suppressed

    # ========== Filtering ==========

    def register_callback(self, category: ErrorCategory,
                          callback: Callable[[ErrorInfo], None]):
        """Call callback for every handled error of a category."""
        self._callbacks.setdefault(category, []).append(callback)

    def suppress_category(self, category: ErrorCategory):
        """Silence notifications for a category (history is kept)."""
        self._suppressed.add(category)

    def unsuppress_category(self, category: ErrorCategory):
        self._suppressed.discard(category)

    # ========== History ==========

    def get_history(self, category: ErrorCategory = None,
                    severity: ErrorSeverity = None,
                    limit: int = None) -> List[ErrorInfo]:
        """
        Recorded failures, oldest first.

        Args:
            category: Only this category
            severity: Only this severity or worse
            limit: Only the most recent N
        """
        errors = [
            e for e in self._history
            if (category is None or e.category == category)
            and (severity is None or e.severity.value >= severity.value)
        ]
        if limit:
            errors = errors[-limit:]
        return errors

    def counts_by_category(self) -> Dict[ErrorCategory, int]:
        """Number of recorded failures per category."""
        return dict(Counter(e.category for e in self._history))

    def clear_history(self):
        self._history.clear()


# Singleton instance
_error_handler: Optional[ErrorHandler] = None


def get_error_handler() -> ErrorHandler:
    """Get the global error handler instance."""
    global _error_handler
    if _error_handler is None:
        _error_handler = ErrorHandler()
    return _error_handler


def set_error_handler(handler: Optional[ErrorHandler]):
    """Replace the global error handler (None resets it)."""
    global _error_handler
    _error_handler = handler

