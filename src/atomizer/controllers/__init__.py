"""
Controllers Package

Connection state machine, device state store and telemetry history.
"""

from .connection_manager import ConnectionManager, ConnectionState
from .device_controller import DeviceController
from .telemetry_manager import DataPoint, TelemetryBuffer, TelemetryStats

__all__ = [
    'ConnectionManager',
    'ConnectionState',
    'DeviceController',
    'DataPoint',
    'TelemetryBuffer',
    'TelemetryStats',
]
