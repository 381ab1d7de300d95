"""
Atomizer Configuration Manager

Persistence gateway for the per-mode control settings and display options,
plus the remembered peripheral identity used for restore-on-relaunch.

Snapshots are JSON objects in which every field is optional: older or
partial formats load field by field, and a malformed field is dropped
without discarding the rest.
"""

import json
import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .device_status import PIDTuning
from .settings_store import SettingsStore
from ..constants import CONFIG_KEY, MODE_COUNT, SAVED_PERIPHERAL_KEY, TEMP_UNITS

logger = logging.getLogger(__name__)


def _is_number(value: Any) -> bool:
    # json.loads yields inf/nan for 1e999, NaN and Infinity
    return (isinstance(value, (int, float)) and not isinstance(value, bool)
            and math.isfinite(value))


def _as_float(value: Any) -> float:
    if not _is_number(value):
        raise ValueError(f"expected number, got {value!r}")
    return float(value)


def _as_int(value: Any) -> int:
    if not _is_number(value) or float(value) != int(value):
        raise ValueError(f"expected integer, got {value!r}")
    return int(value)


def _as_bool(value: Any) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"expected boolean, got {value!r}")
    return value


def _as_unit(value: Any) -> str:
    if value not in TEMP_UNITS:
        raise ValueError(f"expected one of {TEMP_UNITS}, got {value!r}")
    return value


def _as_setpoints(value: Any) -> List[float]:
    if not isinstance(value, list) or len(value) != MODE_COUNT:
        raise ValueError(f"expected {MODE_COUNT} setpoints")
    return [_as_float(v) for v in value]


def _as_pid_tunings(value: Any) -> List[PIDTuning]:
    if not isinstance(value, list) or len(value) != MODE_COUNT:
        raise ValueError(f"expected {MODE_COUNT} PID tunings")
    tunings = []
    for item in value:
        if not isinstance(item, dict):
            raise ValueError(f"expected PID object, got {item!r}")
        tunings.append(PIDTuning.from_dict(item))
    return tunings


# attribute name -> (JSON key, parser)
_FIELDS: Dict[str, tuple] = {
    "setpoints": ("setpoints", _as_setpoints),
    "pid_tunings": ("pidTunings", _as_pid_tunings),
    "manual_output": ("manualOutput", _as_float),
    "default_setpoint": ("defaultSetpoint", _as_float),
    "temp_unit": ("tempUnit", _as_unit),
    "history_limit": ("historyLimit", _as_int),
    "show_chart_grid": ("showChartGrid", _as_bool),
    "show_chart_time_labels": ("showChartTimeLabels", _as_bool),
    "smoothing_fallback": ("smoothingFallback", _as_bool),
    "dual_axis_output": ("dualAxisOutput", _as_bool),
    "show_temperature_chart": ("showTemperatureChart", _as_bool),
    "chart_refresh_rate_ms": ("chartRefreshRateMS", _as_int),
}


@dataclass
class ConfigSnapshot:
    """Persisted settings; None means "not present, keep current value"."""
    setpoints: Optional[List[float]] = None
    pid_tunings: Optional[List[PIDTuning]] = None
    manual_output: Optional[float] = None
    default_setpoint: Optional[float] = None
    temp_unit: Optional[str] = None
    history_limit: Optional[int] = None
    show_chart_grid: Optional[bool] = None
    show_chart_time_labels: Optional[bool] = None
    smoothing_fallback: Optional[bool] = None
    dual_axis_output: Optional[bool] = None
    show_temperature_chart: Optional[bool] = None
    chart_refresh_rate_ms: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization (absent fields omitted)"""
        data: Dict[str, Any] = {}
        for attr, (key, _parser) in _FIELDS.items():
            value = getattr(self, attr)
            if value is None:
                continue
            if attr == "pid_tunings":
                value = [pid.to_dict() for pid in value]
            elif attr == "setpoints":
                value = list(value)
            data[key] = value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ConfigSnapshot':
        """Create from dictionary, dropping malformed fields individually"""
        values: Dict[str, Any] = {}
        for attr, (key, parser) in _FIELDS.items():
            if key not in data or data[key] is None:
                continue
            try:
                values[attr] = parser(data[key])
            except (ValueError, OverflowError) as e:
                logger.warning(f"Ignoring saved setting '{key}': {e}")
        return cls(**values)

    def present_fields(self) -> List[str]:
        """Names of the fields carried by this snapshot."""
        return [attr for attr in _FIELDS if getattr(self, attr) is not None]


class ConfigManager:
    """Loads and saves settings snapshots through a SettingsStore."""

    def __init__(self, store: SettingsStore):
        self._store = store

    @property
    def store(self) -> SettingsStore:
        return self._store

    def load(self) -> Optional[ConfigSnapshot]:
        """
        Load the persisted snapshot.

        Returns:
            ConfigSnapshot with whichever fields were readable, or None when
            nothing usable is stored
        """
        raw = self._store.get(CONFIG_KEY)
        if raw is None:
            logger.info("No saved configuration, using defaults")
            return None

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            logger.error(f"Saved configuration is not valid JSON (line {e.lineno}, column {e.colno}): {e.msg}")
            return None

        if not isinstance(data, dict):
            logger.error("Saved configuration is not a JSON object, ignoring")
            return None

        snapshot = ConfigSnapshot.from_dict(data)
        logger.info(f"Loaded configuration: {', '.join(snapshot.present_fields()) or 'no fields'}")
        return snapshot

    def save(self, snapshot: ConfigSnapshot) -> bool:
        """
        Save a snapshot.

        Returns:
            True if saved successfully, False otherwise
        """
        try:
            self._store.set(CONFIG_KEY, json.dumps(snapshot.to_dict()))
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Failed to save configuration: {e}")
            return False
        logger.debug("Configuration saved")
        return True

    # ========== Remembered peripheral ==========

    def saved_peripheral(self) -> Optional[str]:
        """Identity of the last connected peripheral, if any."""
        value = self._store.get(SAVED_PERIPHERAL_KEY)
        return value or None

    def save_peripheral(self, identifier: str) -> None:
        self._store.set(SAVED_PERIPHERAL_KEY, identifier)
        logger.debug(f"Remembered peripheral {identifier}")

    def clear_saved_peripheral(self) -> None:
        self._store.remove(SAVED_PERIPHERAL_KEY)
        logger.info("Forgot saved peripheral")
