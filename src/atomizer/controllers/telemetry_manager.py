"""
Telemetry Buffer - bounded, throttled history of device samples.

Each accepted sample captures temperature, setpoint and output percentage
at the moment of recording. Samples arriving faster than the append
interval are dropped; when the buffer exceeds its limit the oldest excess
is evicted in one batch.

Usage:
    buffer = TelemetryBuffer(history_limit=120)
    buffer.record(status)          # called for every incoming device value
    points = buffer.history        # oldest first
    buffer.set_history_limit(300)  # clamped to [10, 1000]
"""

import logging
import math
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, List, Optional

from ..constants import (
    HISTORY_APPEND_INTERVAL_S,
    HISTORY_LIMIT_DEFAULT,
    HISTORY_LIMIT_MAX,
    HISTORY_LIMIT_MIN,
)
from ..models.device_status import DeviceStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DataPoint:
    """One telemetry sample."""
    timestamp: datetime
    temperature: Optional[float]
    setpoint: float
    output_percent: float


@dataclass
class TelemetryStats:
    """Statistics about recorded telemetry."""
    samples_offered: int = 0
    samples_recorded: int = 0
    samples_throttled: int = 0
    samples_evicted: int = 0
    last_sample_time: Optional[datetime] = None


def clamp_history_limit(limit: int) -> int:
    """Clamp a requested history limit into the supported range.

    Raises:
        ValueError: limit is not a finite number
    """
    if (isinstance(limit, bool) or not isinstance(limit, (int, float))
            or not math.isfinite(limit)):
        raise ValueError(f"history limit must be a finite number, got {limit!r}")
    return max(HISTORY_LIMIT_MIN, min(HISTORY_LIMIT_MAX, int(limit)))


class TelemetryBuffer:
    """Bounded telemetry history with a minimum spacing between samples."""

    def __init__(self, history_limit: int = HISTORY_LIMIT_DEFAULT,
                 min_interval: float = HISTORY_APPEND_INTERVAL_S,
                 clock: Callable[[], float] = time.monotonic):
        """Initialize TelemetryBuffer.

        Args:
            history_limit: Maximum number of samples kept (clamped)
            min_interval: Minimum seconds between two recorded samples
            clock: Monotonic time source in seconds
        """
        self._history: List[DataPoint] = []
        self._history_limit = clamp_history_limit(history_limit)
        self._min_interval = min_interval
        self._clock = clock
        self._last_append: Optional[float] = None
        self._stats = TelemetryStats()

    @property
    def history(self) -> List[DataPoint]:
        """Recorded samples, oldest first (a copy)."""
        return list(self._history)

    @property
    def history_limit(self) -> int:
        return self._history_limit

    @property
    def latest(self) -> Optional[DataPoint]:
        return self._history[-1] if self._history else None

    @property
    def stats(self) -> TelemetryStats:
        """Get telemetry statistics."""
        return self._stats

    def __len__(self) -> int:
        return len(self._history)

    def record(self, status: DeviceStatus) -> bool:
        """Record a sample from the current status if the interval allows.

        Args:
            status: Current device status

        Returns:
            True if a sample was appended
        """
        self._stats.samples_offered += 1

        now = self._clock()
        if self._last_append is not None and now - self._last_append < self._min_interval:
            self._stats.samples_throttled += 1
            return False

        point = DataPoint(
            timestamp=datetime.now(),
            temperature=status.temperature,
            setpoint=status.setpoint,
            output_percent=status.output_percentage,
        )
        self._history.append(point)
        self._last_append = now
        self._stats.samples_recorded += 1
        self._stats.last_sample_time = point.timestamp

        self._trim()
        return True

    def set_history_limit(self, limit: int) -> int:
        """Change the history limit and trim immediately.

        Returns:
            The limit actually applied after clamping
        """
        clamped = clamp_history_limit(limit)
        if clamped != limit:
            logger.debug(f"History limit {limit} clamped to {clamped}")
        self._history_limit = clamped
        self._trim()
        return clamped

    def clear(self) -> None:
        """Drop all samples and reset the throttle."""
        self._history.clear()
        self._last_append = None

    def _trim(self) -> None:
        excess = len(self._history) - self._history_limit
        if excess > 0:
            del self._history[:excess]
            self._stats.samples_evicted += excess
