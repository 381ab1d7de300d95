"""
Device Controller for the atomizer

Authoritative in-memory mirror of the device: last-known status, the five
per-mode (setpoint, PID) slots, manual output, default setpoint and the
display preferences.

Every control command runs the same sequence:
    1. validate the input
    2. optimistic local update of the status and/or the active slot
    3. encode and submit the write through the connection manager
    4. persist the settings snapshot

Manual output is the exception to step 2: the status output field only
changes when the device reports its real driven output.
"""

import logging
import math
from typing import Any, List, Optional

from PyQt6.QtCore import QObject, pyqtSignal

from .connection_manager import ConnectionManager, Scheduler, qt_scheduler
from .telemetry_manager import DataPoint, TelemetryBuffer
from ..communication import codec
from ..communication.channels import Channel
from ..communication.codec import DecodeError, EncodeError
from ..communication.transport_base import WriteError
from ..constants import (
    ERROR_CLEAR_S,
    MODE_COUNT,
    MODE_MANUAL,
    MODE_NAMES,
    MODE_RESERVED,
    SETPOINT_MAX_C,
    SETPOINT_MIN_C,
    TEMP_UNITS,
)
from ..models.config_manager import ConfigManager, ConfigSnapshot
from ..models.device_status import (
    FACTORY_PID,
    DeviceStatus,
    DisplaySettings,
    ModeSlot,
    PIDTuning,
    celsius_to_display,
    display_to_celsius,
)
from ..utils.decorators import safe_slot
from ..utils.error_handler import (
    ErrorCategory,
    ErrorHandler,
    ErrorSeverity,
    get_error_handler,
)

logger = logging.getLogger(__name__)


class DeviceController(QObject):
    """Device state store with optimistic writes and per-mode slots."""

    # Signals
    status_changed = pyqtSignal(object)          # DeviceStatus
    mode_changed = pyqtSignal(int)               # active mode index
    settings_changed = pyqtSignal()              # slots / display options
    history_changed = pyqtSignal()               # telemetry sample appended or trimmed
    error_message_changed = pyqtSignal(object)   # Optional[str]

    def __init__(self, connection: ConnectionManager, config_manager: ConfigManager,
                 telemetry: Optional[TelemetryBuffer] = None,
                 error_handler: Optional[ErrorHandler] = None,
                 scheduler: Optional[Scheduler] = None,
                 parent: QObject = None):
        super().__init__(parent)

        self._connection = connection
        self._config = config_manager
        self._telemetry = telemetry or TelemetryBuffer()
        self._error_handler = error_handler
        self._schedule = scheduler or qt_scheduler

        self._status = DeviceStatus()
        self._slots: List[ModeSlot] = [ModeSlot.factory_default() for _ in range(MODE_COUNT)]
        self._active_mode = 0
        self._manual_output = 0.0
        self._default_setpoint = self._status.setpoint
        self._display = DisplaySettings()

        self._last_error_message: Optional[str] = None
        self._error_generation = 0
        self._settings_loaded = False

        self._connection.value_received.connect(self._on_value_received)
        self._connection.write_completed.connect(self._on_write_completed)

    # ========== Properties ==========

    @property
    def error_handler(self) -> ErrorHandler:
        return self._error_handler or get_error_handler()

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def status(self) -> DeviceStatus:
        return self._status

    @property
    def telemetry(self) -> TelemetryBuffer:
        return self._telemetry

    @property
    def history(self) -> List[DataPoint]:
        return self._telemetry.history

    @property
    def active_mode(self) -> int:
        return self._active_mode

    @property
    def manual_output(self) -> float:
        return self._manual_output

    @property
    def default_setpoint(self) -> float:
        return self._default_setpoint

    @property
    def display(self) -> DisplaySettings:
        return self._display

    @property
    def slots(self) -> List[ModeSlot]:
        return [ModeSlot(setpoint=s.setpoint, pid=s.pid) for s in self._slots]

    @property
    def last_error_message(self) -> Optional[str]:
        return self._last_error_message

    @property
    def output_percentage(self) -> float:
        return self._status.output_percentage

    @property
    def manual_output_percentage(self) -> float:
        if self._status.pwm_max <= 0:
            return 0.0
        return self._manual_output / self._status.pwm_max * 100.0

    @property
    def display_temperature(self) -> Optional[float]:
        """Temperature in the selected display unit, None until reported."""
        if self._status.temperature is None:
            return None
        return celsius_to_display(self._status.temperature, self._display.temp_unit)

    # ========== Lifecycle ==========

    def start(self):
        """Load persisted settings, then bring up the connection."""
        self.load_settings()
        self._connection.start()

    def load_settings(self) -> bool:
        """
        Apply the persisted snapshot. Runs at most once per controller.

        Returns:
            True if a snapshot was applied by this call
        """
        if self._settings_loaded:
            logger.debug("Settings already loaded, skipping")
            return False
        self._settings_loaded = True

        snapshot = self._config.load()
        if snapshot is None:
            return False

        self._apply_snapshot(snapshot)
        self.settings_changed.emit()
        return True

    def _apply_snapshot(self, snapshot: ConfigSnapshot):
        if snapshot.setpoints is not None:
            for slot, value in zip(self._slots, snapshot.setpoints):
                slot.setpoint = value
        if snapshot.pid_tunings is not None:
            for slot, pid in zip(self._slots, snapshot.pid_tunings):
                slot.pid = pid
        if snapshot.manual_output is not None:
            self._manual_output = snapshot.manual_output
        if snapshot.default_setpoint is not None:
            self._default_setpoint = snapshot.default_setpoint
        if snapshot.history_limit is not None:
            self._telemetry.set_history_limit(snapshot.history_limit)

        for name in ("temp_unit", "show_chart_grid", "show_chart_time_labels",
                     "smoothing_fallback", "dual_axis_output", "show_temperature_chart",
                     "chart_refresh_rate_ms"):
            value = getattr(snapshot, name)
            if value is not None:
                setattr(self._display, name, value)

    def _snapshot(self) -> ConfigSnapshot:
        return ConfigSnapshot(
            setpoints=[slot.setpoint for slot in self._slots],
            pid_tunings=[slot.pid for slot in self._slots],
            manual_output=self._manual_output,
            default_setpoint=self._default_setpoint,
            temp_unit=self._display.temp_unit,
            history_limit=self._telemetry.history_limit,
            show_chart_grid=self._display.show_chart_grid,
            show_chart_time_labels=self._display.show_chart_time_labels,
            smoothing_fallback=self._display.smoothing_fallback,
            dual_axis_output=self._display.dual_axis_output,
            show_temperature_chart=self._display.show_temperature_chart,
            chart_refresh_rate_ms=self._display.chart_refresh_rate_ms,
        )

    def save_settings(self) -> bool:
        saved = self._config.save(self._snapshot())
        if not saved:
            self.error_handler.warning("Could not save settings", ErrorCategory.CONFIG)
        return saved

    # ========== Power ==========

    def toggle_power(self) -> bool:
        """Flip the heater enable state."""
        return self.set_power(not self._status.power)

    def set_power(self, on: bool) -> bool:
        self._status.power = bool(on)
        self.status_changed.emit(self._status)
        return self._write(Channel.ENABLE, self._status.power)

    # ========== Setpoints ==========

    def set_setpoint(self, value: float) -> bool:
        """Set the live setpoint and store it in the active mode's slot."""
        if not self._validate_setpoint(value):
            return False

        self._status.setpoint = float(value)
        self._slots[self._active_mode].setpoint = float(value)
        self.status_changed.emit(self._status)

        written = self._write(Channel.SETPOINT, value)
        self.save_settings()
        self._record_sample()
        return written

    def set_display_setpoint(self, value: float) -> bool:
        """Set the live setpoint from a value in the selected display unit."""
        if not self._is_number(value):
            return self._validate_setpoint(value)
        return self.set_setpoint(round(display_to_celsius(value, self._display.temp_unit), 1))

    def get_setpoint_for_mode(self, mode: int) -> float:
        """Stored setpoint of a mode (the default setpoint for unknown modes)."""
        if not self._is_mode(mode):
            return self._default_setpoint
        return self._slots[mode].setpoint

    def set_setpoint_for_mode(self, mode: int, value: float) -> bool:
        """
        Store a setpoint in one mode's slot.

        Only the active mode's setpoint is pushed to the device; other slots
        are applied when their mode is selected.
        """
        if not self._is_mode(mode):
            logger.warning(f"set_setpoint_for_mode: unsupported mode {mode}")
            return False
        if not self._validate_setpoint(value):
            return False

        self._slots[mode].setpoint = float(value)
        written = True
        if mode == self._active_mode:
            self._status.setpoint = float(value)
            self.status_changed.emit(self._status)
            written = self._write(Channel.SETPOINT, value)

        self.save_settings()
        self.settings_changed.emit()
        self._record_sample()
        return written

    def set_default_setpoint(self, value: float) -> bool:
        """Write the device's power-on default setpoint."""
        if not self._validate_setpoint(value):
            return False
        self._default_setpoint = float(value)
        written = self._write(Channel.DEFAULT_SETPOINT, value)
        self.save_settings()
        self.settings_changed.emit()
        self._record_sample()
        return written

    # ========== PID ==========

    def set_pid(self, kp: float, ki: float, kd: float) -> bool:
        """Set live PID gains (three writes) and store them in the active slot."""
        pid = self._validated_pid(kp, ki, kd)
        if pid is None:
            return False
        self._slots[self._active_mode].pid = pid
        written = self._apply_pid(pid)
        self.save_settings()
        return written

    def update_pid_for_mode(self, mode: int, kp: float, ki: float, kd: float) -> bool:
        if not self._is_mode(mode):
            logger.warning(f"update_pid_for_mode: unsupported mode {mode}")
            return False
        pid = self._validated_pid(kp, ki, kd)
        if pid is None:
            return False

        self._slots[mode].pid = pid
        written = True
        if mode == self._active_mode:
            written = self._apply_pid(pid)
        self.save_settings()
        self.settings_changed.emit()
        return written

    def reset_pid_for_mode(self, mode: int) -> bool:
        """Restore factory PID gains for one mode."""
        if not self._is_mode(mode):
            logger.warning(f"reset_pid_for_mode: unsupported mode {mode}")
            return False

        self._slots[mode].pid = FACTORY_PID
        written = True
        if mode == self._active_mode:
            written = self._apply_pid(FACTORY_PID)
        self.save_settings()
        self.settings_changed.emit()
        return written

    def reset_all_pids(self) -> bool:
        """Restore factory PID gains in every slot."""
        for slot in self._slots:
            slot.pid = FACTORY_PID

        written = True
        if self._connection.is_connected:
            written = self._apply_pid(FACTORY_PID)
        else:
            self._set_live_pid(FACTORY_PID)
        self.save_settings()
        self.settings_changed.emit()
        return written

    def _set_live_pid(self, pid: PIDTuning):
        self._status.kp = pid.kp
        self._status.ki = pid.ki
        self._status.kd = pid.kd
        self.status_changed.emit(self._status)

    def _apply_pid(self, pid: PIDTuning) -> bool:
        self._set_live_pid(pid)
        results = [
            self._write(Channel.KP, pid.kp),
            self._write(Channel.KI, pid.ki),
            self._write(Channel.KD, pid.kd),
        ]
        return all(results)

    # ========== Mode / manual output ==========

    def set_mode(self, mode: int) -> bool:
        """
        Switch the active mode.

        The mode's stored setpoint and PID become the live values. Modes 0-3
        are sent to the device; the reserved slot is local only.
        """
        if not self._is_mode(mode):
            logger.warning(f"set_mode: unsupported mode {mode}")
            return False

        slot = self._slots[mode]
        self._active_mode = mode
        self._status.manual = mode == MODE_MANUAL
        self._status.setpoint = slot.setpoint
        self._status.kp = slot.pid.kp
        self._status.ki = slot.pid.ki
        self._status.kd = slot.pid.kd
        self.mode_changed.emit(mode)
        self.status_changed.emit(self._status)
        logger.info(f"Mode -> {MODE_NAMES[mode]}")

        if mode == MODE_RESERVED:
            return True
        return self._write(Channel.MODE_WRITE, mode)

    def set_manual_output(self, value: float) -> bool:
        """Request a raw manual output level (0..pwm_max)."""
        if not self._is_number(value) or not 0 <= value <= self._status.pwm_max:
            self._show_error(f"Manual output must be between 0 and {self._status.pwm_max}")
            return False

        self._manual_output = float(value)
        written = self._write(Channel.OUTPUT, value)
        self.save_settings()
        self._record_sample()
        return written

    # ========== Display settings ==========

    def set_temp_unit(self, unit: str) -> bool:
        if unit not in TEMP_UNITS:
            logger.warning(f"Unsupported temperature unit: {unit!r}")
            return False
        self._display.temp_unit = unit
        self.save_settings()
        self.settings_changed.emit()
        return True

    def configure_display(self, **options: Any) -> bool:
        """
        Update display options.

        Args:
            **options: Any DisplaySettings field, e.g. show_chart_grid=False
        """
        changed = False
        for key, value in options.items():
            if key == "temp_unit":
                changed = self.set_temp_unit(value) or changed
                continue
            if key == "chart_refresh_rate_ms":
                changed = self.set_chart_refresh_rate(value) or changed
                continue
            if not hasattr(self._display, key):
                logger.warning(f"Unknown display option: {key}")
                continue
            setattr(self._display, key, bool(value))
            changed = True

        if changed:
            self.save_settings()
            self.settings_changed.emit()
        return changed

    def set_chart_refresh_rate(self, interval_ms: int) -> bool:
        if isinstance(interval_ms, bool) or not isinstance(interval_ms, int) or interval_ms <= 0:
            logger.warning(f"Invalid chart refresh rate: {interval_ms!r}")
            return False
        self._display.chart_refresh_rate_ms = interval_ms
        self.save_settings()
        self.settings_changed.emit()
        return True

    def set_history_limit(self, limit: int) -> int:
        """Change the telemetry history limit (clamped), trim and persist."""
        if not self._is_number(limit):
            logger.warning(f"Invalid history limit: {limit!r}")
            return self._telemetry.history_limit
        applied = self._telemetry.set_history_limit(limit)
        self.save_settings()
        self.history_changed.emit()
        return applied

    def read_all(self) -> int:
        """Re-read every polled channel from the device."""
        return self._connection.request_all_reads()

    # ========== Incoming data ==========

    @safe_slot(category=ErrorCategory.INTERNAL)
    def _on_value_received(self, channel: Channel, payload: bytes):
        try:
            value = codec.decode(channel, payload)
        except DecodeError as e:
            logger.debug(f"{channel.value} parse failed: {e}")
            self.error_handler.handle_exception(
                exception=e,
                category=ErrorCategory.DECODE,
                severity=ErrorSeverity.WARNING,
            )
            return

        self._apply_value(channel, value)
        self._record_sample()
        self.status_changed.emit(self._status)

    def _apply_value(self, channel: Channel, value: Any):
        status = self._status
        if channel == Channel.TEMPERATURE:
            status.temperature = value
        elif channel == Channel.OUTPUT:
            status.output = value
        elif channel == Channel.SETPOINT:
            status.setpoint = value
        elif channel == Channel.KP:
            status.kp = value
        elif channel == Channel.KI:
            status.ki = value
        elif channel == Channel.KD:
            status.kd = value
        elif channel == Channel.DEFAULT_SETPOINT:
            self._default_setpoint = value
            self.settings_changed.emit()
        elif channel == Channel.BATTERY:
            if value.percent is not None:
                status.battery_percent = value.percent
            else:
                status.battery_voltage = value.voltage
        elif channel == Channel.ENABLE:
            status.power = value
        elif channel == Channel.MODE_READ:
            status.manual = value == MODE_MANUAL
            if self._is_mode(value) and value != self._active_mode:
                self._active_mode = value
                self.mode_changed.emit(value)

    @safe_slot(category=ErrorCategory.INTERNAL)
    def _on_write_completed(self, channel: Channel, error: str):
        if error:
            self._show_error(f"Write failed for {channel.value}: {error}")
        else:
            self._clear_error()

    def _record_sample(self):
        if self._telemetry.record(self._status):
            self.history_changed.emit()

    # ========== Writes and transient errors ==========

    def _write(self, channel: Channel, value: Any) -> bool:
        try:
            text = codec.encode(channel, value)
            self._connection.write_channel(channel, text)
        except (EncodeError, WriteError) as e:
            logger.warning(f"Cannot write {channel.value}: {e}")
            self._show_error(str(e))
            return False
        return True

    def _show_error(self, message: str):
        """Show a transient error; cleared after 3s unless superseded."""
        self._error_generation += 1
        generation = self._error_generation
        self._set_error_message(message)
        self.error_handler.warning(message, ErrorCategory.WRITE)
        self._schedule(ERROR_CLEAR_S, lambda: self._expire_error(generation))

    def _expire_error(self, generation: int):
        if generation == self._error_generation:
            self._set_error_message(None)

    def _clear_error(self):
        self._error_generation += 1
        self._set_error_message(None)

    def _set_error_message(self, message: Optional[str]):
        if message == self._last_error_message:
            return
        self._last_error_message = message
        self.error_message_changed.emit(message)

    # ========== Validation ==========

    @staticmethod
    def _is_number(value: Any) -> bool:
        return (isinstance(value, (int, float)) and not isinstance(value, bool)
                and math.isfinite(value))

    @staticmethod
    def _is_mode(mode: Any) -> bool:
        return isinstance(mode, int) and not isinstance(mode, bool) and 0 <= mode < MODE_COUNT

    def _validate_setpoint(self, value: Any) -> bool:
        if not self._is_number(value) or not SETPOINT_MIN_C <= value <= SETPOINT_MAX_C:
            self._show_error(
                f"Setpoint must be between {SETPOINT_MIN_C:.0f} and {SETPOINT_MAX_C:.0f} °C"
            )
            return False
        return True

    def _validated_pid(self, kp: Any, ki: Any, kd: Any) -> Optional[PIDTuning]:
        if not all(self._is_number(v) and v >= 0 for v in (kp, ki, kd)):
            self._show_error("PID gains must be non-negative numbers")
            return None
        return PIDTuning(float(kp), float(ki), float(kd))
