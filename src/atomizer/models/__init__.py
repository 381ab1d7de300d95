"""
Models Package

Device data model and settings persistence.
"""

from .device_status import (
    BatteryReading,
    DeviceStatus,
    DisplaySettings,
    ModeSlot,
    PIDTuning,
)
from .config_manager import ConfigManager, ConfigSnapshot
from .settings_store import MemorySettingsStore, QSettingsStore, SettingsStore

__all__ = [
    'BatteryReading',
    'DeviceStatus',
    'DisplaySettings',
    'ModeSlot',
    'PIDTuning',
    'ConfigManager',
    'ConfigSnapshot',
    'MemorySettingsStore',
    'QSettingsStore',
    'SettingsStore',
]
