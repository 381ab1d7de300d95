"""
Atomizer Link Constants

Timing, protocol and factory-default values shared by the controllers.

IMPORTANT: The UUIDs and tokens must match the atomizer firmware.
"""

# ============================================================================
# GATT service
# ============================================================================

SERVICE_UUID = "b09aa6b5-0f22-4d9c-9dbc-6e3c7d9b2f0a"

# ============================================================================
# Connection timing (seconds)
# ============================================================================

SCAN_WINDOW_S = 10.0          # scan auto-stops after this window
SCAN_DEBOUNCE_S = 2.0         # minimum spacing between scan starts
RECONNECT_DELAY_S = 2.0       # delay before the reconnect scan after a drop
ERROR_CLEAR_S = 3.0           # transient error message lifetime

# ============================================================================
# Telemetry history
# ============================================================================

HISTORY_LIMIT_DEFAULT = 120
HISTORY_LIMIT_MIN = 10
HISTORY_LIMIT_MAX = 1000
HISTORY_APPEND_INTERVAL_S = 0.250   # 250 ms between samples

CHART_REFRESH_MS_DEFAULT = 250

# ============================================================================
# Modes
# ============================================================================

MODE_AUTO = 0
MODE_MANUAL = 1
MODE_USER1 = 2
MODE_USER2 = 3
MODE_RESERVED = 4          # config slot, never written to the device
MODE_COUNT = 5

MODE_NAMES = {
    MODE_AUTO: "Auto",
    MODE_MANUAL: "Manual",
    MODE_USER1: "U1",
    MODE_USER2: "U2",
    MODE_RESERVED: "Config",
}

# ============================================================================
# Factory defaults
# ============================================================================

DEFAULT_SETPOINT = 200.0
DEFAULT_KP = 10.0
DEFAULT_KI = 0.5
DEFAULT_KD = 50.0
DEFAULT_PWM_MAX = 1023

# Setpoint range accepted from the UI (Celsius)
SETPOINT_MIN_C = 30.0
SETPOINT_MAX_C = 315.0

TEMP_UNITS = ("C", "F")

# ============================================================================
# Persistence keys
# ============================================================================

CONFIG_KEY = "atomizerConfigState"
SAVED_PERIPHERAL_KEY = "atomizerSavedPeripheralUUID"

SETTINGS_ORGANIZATION = "Atomizer"
SETTINGS_APPLICATION = "AtomizerLink"
