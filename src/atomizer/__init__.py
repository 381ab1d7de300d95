"""
Atomizer Link

Communication core for the atomizer heater: BLE connection management,
payload codec, device state store, telemetry history and settings
persistence.
"""

__version__ = "1.0.0"
