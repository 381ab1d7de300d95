"""
Atomizer Device Data Model

Typed mirror of the device state plus the per-mode control slots.
"""

import math
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from ..constants import (
    DEFAULT_KD,
    DEFAULT_KI,
    DEFAULT_KP,
    DEFAULT_PWM_MAX,
    DEFAULT_SETPOINT,
    CHART_REFRESH_MS_DEFAULT,
)


@dataclass
class DeviceStatus:
    """Last-known device status.

    Mutated only by decoded device payloads and optimistic control writes.
    `output` is the raw driven output level in device units (0..pwm_max).
    """
    temperature: Optional[float] = None
    setpoint: float = DEFAULT_SETPOINT
    kp: float = DEFAULT_KP
    ki: float = DEFAULT_KI
    kd: float = DEFAULT_KD
    manual: bool = False
    power: bool = False
    output: float = 0.0
    pwm_max: int = DEFAULT_PWM_MAX
    setpoint_from_pot: bool = False      # potentiometer vs fixed setpoint
    battery_voltage: Optional[float] = None
    battery_percent: Optional[int] = None
    thermocouple_connected: Optional[bool] = None

    @property
    def output_percentage(self) -> float:
        """Output as a percentage of pwm_max (0 when pwm_max is unknown)."""
        if self.pwm_max <= 0:
            return 0.0
        return self.output / self.pwm_max * 100.0


@dataclass(frozen=True)
class PIDTuning:
    """One (kp, ki, kd) triple."""
    kp: float = DEFAULT_KP
    ki: float = DEFAULT_KI
    kd: float = DEFAULT_KD

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return {"kp": self.kp, "ki": self.ki, "kd": self.kd}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'PIDTuning':
        """Create from dictionary; raises ValueError on missing/invalid gains"""
        values = []
        for key in ("kp", "ki", "kd"):
            value = data.get(key)
            if (isinstance(value, bool) or not isinstance(value, (int, float))
                    or not math.isfinite(value)):
                raise ValueError(f"PID tuning missing numeric '{key}'")
            values.append(float(value))
        return cls(*values)


FACTORY_PID = PIDTuning()


@dataclass
class ModeSlot:
    """Stored setpoint and PID for one mode."""
    setpoint: float = DEFAULT_SETPOINT
    pid: PIDTuning = field(default_factory=PIDTuning)

    @classmethod
    def factory_default(cls) -> 'ModeSlot':
        return cls(setpoint=DEFAULT_SETPOINT, pid=FACTORY_PID)


@dataclass
class DisplaySettings:
    """Persisted display preferences (rendering itself lives in the UI)."""
    temp_unit: str = "C"
    show_chart_grid: bool = True
    show_chart_time_labels: bool = True
    smoothing_fallback: bool = True
    dual_axis_output: bool = False
    show_temperature_chart: bool = True
    chart_refresh_rate_ms: int = CHART_REFRESH_MS_DEFAULT


@dataclass(frozen=True)
class BatteryReading:
    """Decoded battery payload: exactly one of percent/voltage is set."""
    percent: Optional[int] = None
    voltage: Optional[float] = None


def celsius_to_display(celsius: float, unit: str) -> float:
    """Convert a Celsius value into the display unit ("C" or "F")."""
    if unit == "F":
        return celsius * 9.0 / 5.0 + 32.0
    return celsius


def display_to_celsius(value: float, unit: str) -> float:
    """Convert a display-unit value back to Celsius."""
    if unit == "F":
        return (value - 32.0) * 5.0 / 9.0
    return value
