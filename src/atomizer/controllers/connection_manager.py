"""
Connection Manager for the atomizer

Owns the central-role adapter lifecycle: scan, connect, disconnect,
restore-on-relaunch and the reconnect policy.

States:
    POWERED_OFF -> IDLE                      (adapter ready)
    IDLE -> RESTORING -> CONNECTING          (remembered peripheral found)
              RESTORING -> IDLE -> SCANNING  (not found, fall through to scan)
    IDLE -> SCANNING -> CONNECTING -> CONNECTED
    CONNECTING -> IDLE                       (connect failure, no retry)
    CONNECTED -> IDLE                        (disconnect; reconnect scan after 2s)
    any -> POWERED_OFF / UNAUTHORIZED / UNSUPPORTED (adapter unavailable)

All adapter events arrive through handle_event() on the owning thread.
Deferred tasks (scan timeout, reconnect delay) carry no cancellation
handle: they re-check their guards when they fire and become no-ops if
the state moved on in the meantime.

Usage:
    manager = ConnectionManager(BleakTransport(), config_manager)
    manager.value_received.connect(on_value)
    manager.start()
"""

import logging
import time
from enum import Enum, auto
from typing import Callable, Dict, List, Optional

from PyQt6.QtCore import QObject, QTimer, pyqtSignal

from ..communication.channels import (
    Channel,
    ChannelRegistry,
    NOTIFY_CHANNELS,
    POLLED_CHANNELS,
    all_channel_uuids,
    normalize_uuid,
)
from ..communication.transport_base import (
    AdapterState,
    AdapterStateChanged,
    ChannelsDiscovered,
    NotifyStateChanged,
    PeripheralConnectFailed,
    PeripheralConnected,
    PeripheralDiscovered,
    PeripheralDisconnected,
    PeripheralRetrieved,
    ServicesDiscovered,
    TransportBase,
    TransportEvent,
    ValueUpdated,
    WriteCompleted,
    WriteError,
)
from ..constants import (
    RECONNECT_DELAY_S,
    SCAN_DEBOUNCE_S,
    SCAN_WINDOW_S,
    SERVICE_UUID,
)
from ..models.config_manager import ConfigManager
from ..utils.decorators import safe_slot
from ..utils.error_handler import ErrorCategory, ErrorHandler, get_error_handler

logger = logging.getLogger(__name__)

Scheduler = Callable[[float, Callable[[], None]], None]


class ConnectionState(Enum):
    """Connection state machine states."""
    POWERED_OFF = auto()     # Adapter off or not ready yet
    UNAUTHORIZED = auto()    # App not allowed to use the adapter
    UNSUPPORTED = auto()     # Adapter cannot act as BLE central
    IDLE = auto()            # Ready, not scanning, no peripheral
    SCANNING = auto()        # Discovery running
    CONNECTING = auto()      # Connect requested
    CONNECTED = auto()       # Link up (channels may still be resolving)
    RESTORING = auto()       # Looking up the remembered peripheral


_UNAVAILABLE_STATES = {
    AdapterState.POWERED_OFF: ConnectionState.POWERED_OFF,
    AdapterState.UNKNOWN: ConnectionState.POWERED_OFF,
    AdapterState.RESETTING: ConnectionState.POWERED_OFF,
    AdapterState.UNAUTHORIZED: ConnectionState.UNAUTHORIZED,
    AdapterState.UNSUPPORTED: ConnectionState.UNSUPPORTED,
}


def qt_scheduler(delay_s: float, fn: Callable[[], None]) -> None:
    """Run fn on the Qt event loop after delay_s seconds."""
    QTimer.singleShot(int(delay_s * 1000), fn)


class ConnectionManager(QObject):
    """Connection state machine and channel I/O for one atomizer peripheral."""

    # Signals
    state_changed = pyqtSignal(object)          # ConnectionState
    peripherals_changed = pyqtSignal(list)      # [PeripheralDiscovered]
    connected = pyqtSignal(str)                 # peripheral identifier
    disconnected = pyqtSignal()
    channels_ready = pyqtSignal()
    value_received = pyqtSignal(object, bytes)  # Channel, raw payload
    write_completed = pyqtSignal(object, str)   # Channel, error text ("" = ok)

    def __init__(self, adapter: TransportBase, config_manager: ConfigManager,
                 error_handler: Optional[ErrorHandler] = None,
                 scheduler: Optional[Scheduler] = None,
                 clock: Callable[[], float] = time.monotonic,
                 parent: QObject = None):
        super().__init__(parent)

        self._adapter = adapter
        self._config = config_manager
        self._error_handler = error_handler
        self._schedule = scheduler or qt_scheduler
        self._clock = clock

        self._state = ConnectionState.POWERED_OFF
        self._adapter_state = AdapterState.UNKNOWN
        self._peripheral_id: Optional[str] = None
        self._registry = ChannelRegistry()
        self._discovered: List[PeripheralDiscovered] = []

        # Reconnect policy
        self._auto_reconnect = True
        self._last_scan_start: Optional[float] = None
        self._scan_generation = 0

        self._handlers: Dict[type, Callable] = {
            AdapterStateChanged: self._on_adapter_state,
            PeripheralDiscovered: self._on_discovered,
            PeripheralRetrieved: self._on_retrieved,
            PeripheralConnected: self._on_connected,
            PeripheralConnectFailed: self._on_connect_failed,
            PeripheralDisconnected: self._on_disconnected,
            ServicesDiscovered: self._on_services,
            ChannelsDiscovered: self._on_channels,
            NotifyStateChanged: self._on_notify_state,
            ValueUpdated: self._on_value,
            WriteCompleted: self._on_write_completed,
        }

    # ========== Properties ==========

    @property
    def error_handler(self) -> ErrorHandler:
        return self._error_handler or get_error_handler()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def adapter_state(self) -> AdapterState:
        return self._adapter_state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def is_scanning(self) -> bool:
        return self._state == ConnectionState.SCANNING

    @property
    def peripheral_id(self) -> Optional[str]:
        return self._peripheral_id

    @property
    def registry(self) -> ChannelRegistry:
        return self._registry

    @property
    def discovered_peripherals(self) -> List[PeripheralDiscovered]:
        return list(self._discovered)

    @property
    def auto_reconnect(self) -> bool:
        return self._auto_reconnect

    def set_auto_reconnect(self, enabled: bool):
        """Enable/disable automatic reconnect after a drop."""
        self._auto_reconnect = enabled
        logger.info(f"Auto-reconnect: enabled={enabled}")

    # ========== Lifecycle ==========

    def start(self):
        """Attach to the adapter and bring it up."""
        self._adapter.set_event_callback(self.handle_event)
        self._adapter.start()
        state = self._adapter.power_state()
        if state != self._adapter_state:
            self._on_adapter_state(AdapterStateChanged(state))

    def shutdown(self):
        """Disconnect and release the adapter."""
        if self._peripheral_id:
            self._adapter.disconnect(self._peripheral_id)
        self._drop_link()
        self._adapter.set_event_callback(None)
        self._adapter.shutdown()
        logger.info("Connection manager shut down")

    # ========== Event entry point ==========

    @safe_slot(category=ErrorCategory.INTERNAL)
    def handle_event(self, event: TransportEvent):
        """Single entry point for adapter events (owning thread only)."""
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.warning(f"Unhandled adapter event: {event!r}")
            return
        handler(event)

    # ========== Scanning ==========

    def start_scan(self) -> bool:
        """
        Start a discovery scan.

        Returns:
            True if a scan was started
        """
        if self._adapter_state != AdapterState.POWERED_ON:
            self.error_handler.warning(
                f"Cannot scan: Bluetooth is {self._adapter_state.name.lower()}",
                ErrorCategory.TRANSPORT_UNAVAILABLE,
            )
            return False

        if self._state == ConnectionState.SCANNING:
            logger.debug("start_scan: already scanning")
            return False

        if self._state != ConnectionState.IDLE:
            logger.debug(f"start_scan: not idle ({self._state.name})")
            return False

        now = self._clock()
        if self._last_scan_start is not None and now - self._last_scan_start < SCAN_DEBOUNCE_S:
            logger.debug("start_scan: last scan started too recently, skipping")
            return False

        self._last_scan_start = now
        self._scan_generation += 1
        generation = self._scan_generation

        self._set_discovered([])
        self._set_state(ConnectionState.SCANNING)
        self._adapter.scan(None, SCAN_WINDOW_S)
        logger.info("Started scanning for atomizer peripherals")

        self._schedule(SCAN_WINDOW_S, lambda: self._scan_window_elapsed(generation))
        return True

    def _scan_window_elapsed(self, generation: int):
        if self._state != ConnectionState.SCANNING or generation != self._scan_generation:
            return
        logger.info(f"Scan window of {SCAN_WINDOW_S:.0f}s elapsed")
        self.stop_scan()

    def stop_scan(self):
        """Stop an active scan (discovered list is kept for the picker)."""
        if self._state != ConnectionState.SCANNING:
            return
        self._adapter.stop_scan()
        self._set_state(ConnectionState.IDLE)
        logger.info("Stopped scanning")

    def cancel_scan(self):
        """Stop scanning and discard the discovery list."""
        self.stop_scan()
        self._set_discovered([])

    # ========== Connect / disconnect ==========

    def connect_peripheral(self, identifier: str) -> bool:
        """
        Connect to a discovered (or remembered) peripheral.

        Returns:
            True if a connect was submitted
        """
        if self._adapter_state != AdapterState.POWERED_ON:
            self.error_handler.warning(
                f"Cannot connect: Bluetooth is {self._adapter_state.name.lower()}",
                ErrorCategory.TRANSPORT_UNAVAILABLE,
            )
            return False

        if identifier == self._peripheral_id and self._state in (ConnectionState.CONNECTING,
                                                                  ConnectionState.CONNECTED):
            logger.debug(f"Already connecting/connected to {identifier}")
            return True

        if self._peripheral_id and self._peripheral_id != identifier:
            logger.info(f"Switching peripheral {self._peripheral_id} -> {identifier}")
            self.disconnect()

        self.stop_scan()
        self._set_discovered([])

        self._peripheral_id = identifier
        self._set_state(ConnectionState.CONNECTING)
        self._adapter.connect(identifier)
        logger.info(f"Connecting to {identifier}...")
        return True

    def disconnect(self):
        """User-initiated disconnect; no reconnect follows."""
        identifier = self._peripheral_id
        if identifier is None:
            return
        self._adapter.disconnect(identifier)
        self._drop_link()
        logger.info(f"Disconnected from {identifier}")

    def forget(self):
        """Disable auto-reconnect, erase the remembered peripheral and disconnect."""
        self._auto_reconnect = False
        self._config.clear_saved_peripheral()
        self.disconnect()
        logger.info("Device forgotten")

    # ========== Channel I/O ==========

    def write_channel(self, channel: Channel, text: str):
        """
        Submit a write of text to a channel.

        Raises:
            WriteError: No active peripheral, channel not discovered, text not
                encodable, or channel not writable
        """
        if self._peripheral_id is None:
            raise WriteError("Cannot write: no peripheral")

        handle = self._registry.get(channel)
        if handle is None:
            raise WriteError("Characteristic not discovered")

        try:
            data = text.encode("utf-8")
        except UnicodeEncodeError as e:
            raise WriteError("Cannot encode value to UTF8") from e

        if not handle.writable:
            raise WriteError("Characteristic does not support write")

        self._adapter.write(self._peripheral_id, handle.handle, data, handle.write_with_response)
        logger.debug(f"Wrote to {channel.value}: '{text}'")

    def read_channel(self, channel: Channel) -> bool:
        """Request a read; the value arrives later via value_received."""
        handle = self._registry.get(channel)
        if self._peripheral_id is None or handle is None:
            logger.debug(f"read_channel: missing channel {channel.value}")
            return False
        self._adapter.read(self._peripheral_id, handle.handle)
        return True

    def request_all_reads(self) -> int:
        """Read every polled channel. Returns the number of reads issued."""
        return sum(1 for channel in POLLED_CHANNELS if self.read_channel(channel))

    # ========== Adapter event handlers ==========

    def _on_adapter_state(self, event: AdapterStateChanged):
        previous = self._adapter_state
        self._adapter_state = event.state
        logger.info(f"Adapter state: {previous.name} -> {event.state.name}")

        if event.state == AdapterState.POWERED_ON:
            if self._state in (ConnectionState.CONNECTED, ConnectionState.CONNECTING,
                               ConnectionState.RESTORING, ConnectionState.SCANNING):
                return
            self._set_state(ConnectionState.IDLE)
            if not self._restore_saved_peripheral() and self._auto_reconnect:
                self.start_scan()
            return

        # Unavailable: force a local disconnect and halt automatic activity
        self._drop_link(notify_state=False)
        self._set_discovered([])
        self._set_state(_UNAVAILABLE_STATES[event.state])
        if event.state in (AdapterState.UNAUTHORIZED, AdapterState.UNSUPPORTED):
            self.error_handler.warning(
                f"Bluetooth is {event.state.name.lower()}",
                ErrorCategory.TRANSPORT_UNAVAILABLE,
            )

    def _restore_saved_peripheral(self) -> bool:
        saved = self._config.saved_peripheral()
        if not saved:
            return False
        logger.info(f"Attempting to restore saved peripheral: {saved}")
        self._set_state(ConnectionState.RESTORING)
        self._adapter.retrieve(saved)
        return True

    def _on_retrieved(self, event: PeripheralRetrieved):
        if self._state != ConnectionState.RESTORING:
            return
        if event.found:
            logger.info(f"Retrieved remembered peripheral {event.identifier}")
            self._set_state(ConnectionState.IDLE)
            self.connect_peripheral(event.identifier)
            return

        logger.info(f"Remembered peripheral {event.identifier} not found, scanning")
        self._set_state(ConnectionState.IDLE)
        self.start_scan()

    def _on_discovered(self, event: PeripheralDiscovered):
        if self._state != ConnectionState.SCANNING:
            return
        if any(p.identifier == event.identifier for p in self._discovered):
            return

        logger.debug(f"Discovered: {event.name or 'Unknown'} rssi:{event.rssi}")
        self._set_discovered(self._discovered + [event])

        if self._auto_reconnect and event.identifier == self._config.saved_peripheral():
            logger.info(f"Remembered peripheral {event.identifier} in range, reconnecting")
            self.connect_peripheral(event.identifier)

    def _on_connected(self, event: PeripheralConnected):
        if not self._is_active(event.identifier):
            logger.debug(f"Ignoring connect for inactive peripheral {event.identifier}")
            return

        self._registry.reset()
        self._auto_reconnect = True
        self._set_state(ConnectionState.CONNECTED)

        self._config.save_peripheral(event.identifier)
        logger.info(f"Connected to {event.identifier}")
        self.connected.emit(event.identifier)

        self._adapter.discover_services(event.identifier, [SERVICE_UUID])

    def _on_connect_failed(self, event: PeripheralConnectFailed):
        if event.identifier != self._peripheral_id:
            return
        self.error_handler.warning(
            f"Failed to connect to {event.identifier}: {event.error or 'unknown'}",
            ErrorCategory.DISCOVERY,
        )
        self._peripheral_id = None
        self._registry.reset()
        self._set_state(ConnectionState.IDLE)

    def _on_disconnected(self, event: PeripheralDisconnected):
        if event.identifier != self._peripheral_id:
            logger.debug(f"Ignoring stale disconnect from {event.identifier}")
            return

        logger.info(f"Disconnected from peripheral: {event.error or 'none'}")
        self._drop_link()

        if self._auto_reconnect and self._state == ConnectionState.IDLE:
            logger.info(f"Reconnect scan in {RECONNECT_DELAY_S:.0f}s")
            self._schedule(RECONNECT_DELAY_S, self._reconnect_delay_elapsed)

    def _reconnect_delay_elapsed(self):
        if not self._auto_reconnect or self._state != ConnectionState.IDLE:
            logger.debug("Reconnect skipped, state changed during delay")
            return
        self.start_scan()

    def _on_services(self, event: ServicesDiscovered):
        if not self._is_active(event.identifier):
            return
        if event.error:
            self._discovery_failed(f"Service discovery error: {event.error}")
            return

        wanted = normalize_uuid(SERVICE_UUID)
        if wanted not in (normalize_uuid(uuid) for uuid in event.service_uuids):
            self._discovery_failed("Atomizer service not found on peripheral")
            return

        self._adapter.discover_channels(event.identifier, SERVICE_UUID, all_channel_uuids())

    def _on_channels(self, event: ChannelsDiscovered):
        if not self._is_active(event.identifier):
            return
        if event.error:
            self._discovery_failed(f"Characteristic discovery error: {event.error}")
            return

        handles = self._registry.populate(event.channels)
        for handle in handles:
            if handle.channel in NOTIFY_CHANNELS:
                self._adapter.set_notify(event.identifier, handle.handle, True)
            self._adapter.read(event.identifier, handle.handle)

        logger.info(f"Discovered {len(handles)} characteristics")
        self.channels_ready.emit()

    def _on_notify_state(self, event: NotifyStateChanged):
        if not self._is_active(event.identifier):
            return
        if event.error:
            channel = self._registry.channel_for_handle(event.handle)
            name = channel.value if channel else event.handle
            self.error_handler.warning(
                f"Could not subscribe to {name}: {event.error}",
                ErrorCategory.DISCOVERY,
            )

    def _on_value(self, event: ValueUpdated):
        if not self._is_active(event.identifier):
            return
        channel = self._registry.channel_for_handle(event.handle)
        if channel is None:
            logger.debug(f"Unhandled characteristic {event.handle} payload {event.data!r}")
            return
        if event.error:
            logger.warning(f"Characteristic read error for {channel.value}: {event.error}")
            return
        self.value_received.emit(channel, bytes(event.data))

    def _on_write_completed(self, event: WriteCompleted):
        if not self._is_active(event.identifier):
            return
        channel = self._registry.channel_for_handle(event.handle)
        if channel is None:
            return
        self.write_completed.emit(channel, event.error or "")

    # ========== Helpers ==========

    def _is_active(self, identifier: str) -> bool:
        return self._peripheral_id is not None and identifier == self._peripheral_id

    def _discovery_failed(self, message: str):
        """Record the failure and drop the link; reconnect policy takes over."""
        self.error_handler.warning(message, ErrorCategory.DISCOVERY)
        if self._peripheral_id:
            self._adapter.disconnect(self._peripheral_id)

    def _drop_link(self, notify_state: bool = True):
        """Forget the active peripheral and its handles."""
        was_linked = self._peripheral_id is not None
        self._peripheral_id = None
        self._registry.reset()
        if notify_state and self._state in (ConnectionState.CONNECTED,
                                            ConnectionState.CONNECTING,
                                            ConnectionState.RESTORING):
            self._set_state(ConnectionState.IDLE)
        if was_linked:
            self.disconnected.emit()

    def _set_discovered(self, peripherals: List[PeripheralDiscovered]):
        if not peripherals and not self._discovered:
            return
        self._discovered = peripherals
        self.peripherals_changed.emit(list(peripherals))

    def _set_state(self, state: ConnectionState):
        if state == self._state:
            return
        logger.debug(f"Connection state: {self._state.name} -> {state.name}")
        self._state = state
        self.state_changed.emit(state)
