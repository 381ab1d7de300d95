"""
BLE Transport (bleak)

Central-role adapter built on bleak. bleak is asyncio based, so the adapter
runs a private event loop in a QThread and schedules every operation on it
with asyncio.run_coroutine_threadsafe.

Results travel back through a QObject bridge living on the main thread; its
queued signal connection delivers each event on the Qt main thread, where the
connection manager owns all state.

Handles are the lower-cased characteristic UUIDs, which are unique within the
atomizer service.
"""

import asyncio
import logging
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Callable, Coroutine, Dict, List, Optional

from PyQt6.QtCore import QObject, QThread, Qt, pyqtSignal, pyqtSlot

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakBluetoothNotAvailableError, BleakError

from .channels import ChannelCapability, normalize_uuid
from .transport_base import (
    AdapterState,
    AdapterStateChanged,
    ChannelsDiscovered,
    DiscoveredChannel,
    NotifyStateChanged,
    PeripheralConnectFailed,
    PeripheralConnected,
    PeripheralDisconnected,
    PeripheralDiscovered,
    PeripheralRetrieved,
    ServicesDiscovered,
    TransportBase,
    TransportEvent,
    ValueUpdated,
    WriteCompleted,
)

logger = logging.getLogger(__name__)

BLE_ERRORS = (BleakError, asyncio.TimeoutError, OSError)

_CAPABILITIES = {cap.value: cap for cap in ChannelCapability}

# BleakBluetoothNotAvailableReason name -> adapter state; other reasons count as off
_UNAVAILABLE_STATES = {
    "NO_BLUETOOTH": AdapterState.UNSUPPORTED,
    "POWERED_OFF": AdapterState.POWERED_OFF,
    "DENIED_BY_USER": AdapterState.UNAUTHORIZED,
    "DENIED_BY_SYSTEM": AdapterState.UNAUTHORIZED,
}


def capabilities_from_properties(properties: List[str]) -> frozenset:
    """Map bleak characteristic property names to ChannelCapability."""
    return frozenset(_CAPABILITIES[p] for p in properties if p in _CAPABILITIES)


def adapter_state_for(error: BleakBluetoothNotAvailableError) -> AdapterState:
    """Adapter state matching the reason bleak gives for Bluetooth being unavailable."""
    reason = getattr(error, "reason", None)
    return _UNAVAILABLE_STATES.get(getattr(reason, "name", ""), AdapterState.POWERED_OFF)


class AsyncThread(QThread):
    """QThread running an asyncio event loop for bleak."""

    ready = pyqtSignal(object)  # emits the loop once set up

    def __init__(self):
        super().__init__()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def run(self):
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self.ready.emit(loop)
        try:
            loop.run_forever()
        finally:
            loop.close()

    def stop(self):
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)

    @property
    def loop(self) -> Optional[asyncio.AbstractEventLoop]:
        return self._loop


class _EventBridge(QObject):
    """Main-thread object whose queued signals marshal adapter events."""

    event = pyqtSignal(object)
    loop_ready = pyqtSignal(object)

    def __init__(self, on_event: Callable, on_loop_ready: Callable):
        super().__init__()
        self._on_event = on_event
        self._on_loop_ready = on_loop_ready
        self.event.connect(self._event_slot, Qt.ConnectionType.QueuedConnection)
        self.loop_ready.connect(self._loop_ready_slot, Qt.ConnectionType.QueuedConnection)

    @pyqtSlot(object)
    def _event_slot(self, event):
        self._on_event(event)

    @pyqtSlot(object)
    def _loop_ready_slot(self, loop):
        self._on_loop_ready(loop)


class BleakTransport(TransportBase):
    """TransportBase implementation on top of bleak."""

    def __init__(self, connect_timeout: float = 10.0, retrieve_timeout: float = 5.0,
                 adapter_poll_interval: Optional[float] = 5.0):
        """
        Args:
            connect_timeout: Seconds bleak may spend connecting
            retrieve_timeout: Seconds spent looking up a remembered peripheral
            adapter_poll_interval: Seconds between availability checks while
                Bluetooth is unavailable (None disables checking)
        """
        super().__init__()
        self._connect_timeout = connect_timeout
        self._retrieve_timeout = retrieve_timeout
        self._adapter_poll_interval = adapter_poll_interval

        self._thread: Optional[AsyncThread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._state = AdapterState.UNKNOWN

        # Owned by the asyncio thread
        self._devices: Dict[str, BLEDevice] = {}
        self._clients: Dict[str, BleakClient] = {}
        self._scanner: Optional[BleakScanner] = None
        self._watch_task: Optional[asyncio.Task] = None

        self._bridge = _EventBridge(self._deliver, self._on_loop_ready)

    # ========== Lifecycle ==========

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = AsyncThread()
        self._thread.ready.connect(self._bridge.loop_ready)
        self._thread.start()
        logger.info("BLE event loop thread started")

    def _on_loop_ready(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._state = AdapterState.POWERED_ON
        self._emit(AdapterStateChanged(AdapterState.POWERED_ON))

    def shutdown(self) -> None:
        if self._loop is not None and self._loop.is_running():
            future = asyncio.run_coroutine_threadsafe(self._close_all(), self._loop)
            try:
                future.result(timeout=5.0)
            except BLE_ERRORS + (FutureTimeoutError,) as e:
                logger.warning(f"Error closing BLE connections: {e}")
        if self._thread is not None:
            self._thread.stop()
            self._thread.wait(2000)
        self._thread = None
        self._loop = None
        self._state = AdapterState.POWERED_OFF
        logger.info("BLE transport shut down")

    def power_state(self) -> AdapterState:
        return self._state

    # ========== Operations (main thread) ==========

    def scan(self, service_uuids: Optional[List[str]], timeout: float) -> None:
        self._submit(self._scan(service_uuids, timeout))

    def stop_scan(self) -> None:
        self._submit(self._stop_scanner())

    def retrieve(self, identifier: str) -> None:
        self._submit(self._retrieve(identifier))

    def connect(self, identifier: str) -> None:
        self._submit(self._connect(identifier))

    def disconnect(self, identifier: str) -> None:
        self._submit(self._disconnect(identifier))

    def discover_services(self, identifier: str, service_uuids: List[str]) -> None:
        self._submit(self._discover_services(identifier, service_uuids))

    def discover_channels(self, identifier: str, service_uuid: str,
                          channel_uuids: List[str]) -> None:
        self._submit(self._discover_channels(identifier, service_uuid, channel_uuids))

    def set_notify(self, identifier: str, handle: str, enabled: bool) -> None:
        self._submit(self._set_notify(identifier, handle, enabled))

    def read(self, identifier: str, handle: str) -> None:
        self._submit(self._read(identifier, handle))

    def write(self, identifier: str, handle: str, data: bytes, with_response: bool) -> None:
        self._submit(self._write(identifier, handle, data, with_response))

    # ========== Plumbing ==========

    def _submit(self, coro: Coroutine) -> None:
        """Schedule a coroutine on the bleak loop."""
        if self._loop is None:
            logger.warning(f"BLE loop not ready, dropping {coro.__qualname__}")
            coro.close()
            return

        label = coro.__qualname__
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)

        def _log_ex(f):
            if f.cancelled():
                logger.warning(f"{label} cancelled")
                return
            exc = f.exception()
            if exc is not None:
                logger.error(f"{label} failed: {type(exc).__name__}: {exc}")

        future.add_done_callback(_log_ex)

    def _post(self, event: TransportEvent) -> None:
        """Queue an event for delivery on the main thread (any thread)."""
        self._bridge.event.emit(event)

    def _deliver(self, event: TransportEvent) -> None:
        if isinstance(event, AdapterStateChanged):
            self._state = event.state
        self._emit(event)

    # ========== Coroutines (bleak loop) ==========

    async def _scan(self, service_uuids: Optional[List[str]], timeout: float):
        await self._stop_scanner()
        scanner = BleakScanner(detection_callback=self._on_detection,
                               service_uuids=service_uuids)
        self._scanner = scanner
        try:
            await scanner.start()
            logger.debug(f"Scanner started for {timeout:.0f}s")
            await asyncio.sleep(timeout)
        except BleakBluetoothNotAvailableError as e:
            self._adapter_unavailable(e)
        except BLE_ERRORS as e:
            logger.error(f"Scan failed: {e}")
        finally:
            if self._scanner is scanner:
                await self._stop_scanner()

    def _adapter_unavailable(self, error: BleakBluetoothNotAvailableError):
        state = adapter_state_for(error)
        logger.warning(f"Bluetooth not available ({state.name}): {error}")
        self._post(AdapterStateChanged(state))
        if self._adapter_poll_interval is None:
            return
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.get_running_loop().create_task(self._watch_adapter(state))

    async def _watch_adapter(self, state: AdapterState):
        """Retry a scanner start until it succeeds, then report the adapter powered on."""
        while True:
            await asyncio.sleep(self._adapter_poll_interval)
            scanner = BleakScanner()
            try:
                await scanner.start()
                await scanner.stop()
            except BleakBluetoothNotAvailableError as e:
                current = adapter_state_for(e)
                if current != state:
                    state = current
                    self._post(AdapterStateChanged(state))
                continue
            except BLE_ERRORS as e:
                logger.debug(f"Adapter check failed: {e}")
                continue
            break
        logger.info("Bluetooth available again")
        self._post(AdapterStateChanged(AdapterState.POWERED_ON))

    async def _stop_scanner(self):
        scanner, self._scanner = self._scanner, None
        if scanner is None:
            return
        try:
            await scanner.stop()
        except BLE_ERRORS as e:
            logger.warning(f"Stopping scanner failed: {e}")

    def _on_detection(self, device: BLEDevice, advertisement: AdvertisementData):
        self._devices[device.address] = device
        self._post(PeripheralDiscovered(
            identifier=device.address,
            name=device.name or advertisement.local_name,
            rssi=advertisement.rssi,
        ))

    async def _retrieve(self, identifier: str):
        device = None
        try:
            device = await BleakScanner.find_device_by_address(identifier,
                                                               timeout=self._retrieve_timeout)
        except BleakBluetoothNotAvailableError as e:
            self._adapter_unavailable(e)
            return
        except BLE_ERRORS as e:
            logger.warning(f"Lookup of {identifier} failed: {e}")
        if device is not None:
            self._devices[identifier] = device
        self._post(PeripheralRetrieved(identifier=identifier, found=device is not None))

    async def _connect(self, identifier: str):
        target = self._devices.get(identifier, identifier)
        client = BleakClient(
            target,
            disconnected_callback=lambda _client: self._on_client_disconnected(identifier, _client),
            timeout=self._connect_timeout,
        )
        self._clients[identifier] = client
        try:
            await client.connect()
        except BleakBluetoothNotAvailableError as e:
            if self._clients.get(identifier) is client:
                del self._clients[identifier]
            self._adapter_unavailable(e)
            return
        except BLE_ERRORS as e:
            if self._clients.get(identifier) is client:
                del self._clients[identifier]
            self._post(PeripheralConnectFailed(identifier=identifier, error=str(e) or type(e).__name__))
            return
        self._post(PeripheralConnected(identifier=identifier))

    def _on_client_disconnected(self, identifier: str, client: BleakClient):
        if self._clients.get(identifier) is client:
            del self._clients[identifier]
        self._post(PeripheralDisconnected(identifier=identifier))

    async def _disconnect(self, identifier: str):
        client = self._clients.pop(identifier, None)
        if client is None:
            return
        try:
            await client.disconnect()
        except BLE_ERRORS as e:
            logger.warning(f"Disconnect from {identifier} failed: {e}")

    async def _close_all(self):
        if self._watch_task is not None:
            self._watch_task.cancel()
            self._watch_task = None
        await self._stop_scanner()
        for identifier in list(self._clients):
            await self._disconnect(identifier)

    async def _discover_services(self, identifier: str, service_uuids: List[str]):
        client = self._clients.get(identifier)
        if client is None or not client.is_connected:
            self._post(ServicesDiscovered(identifier=identifier, error="not connected"))
            return

        wanted = {normalize_uuid(u) for u in service_uuids}
        try:
            found = tuple(
                normalize_uuid(service.uuid)
                for service in client.services
                if not wanted or normalize_uuid(service.uuid) in wanted
            )
        except BLE_ERRORS as e:
            self._post(ServicesDiscovered(identifier=identifier, error=str(e)))
            return
        self._post(ServicesDiscovered(identifier=identifier, service_uuids=found))

    async def _discover_channels(self, identifier: str, service_uuid: str,
                                 channel_uuids: List[str]):
        client = self._clients.get(identifier)
        wanted = {normalize_uuid(u) for u in channel_uuids}
        try:
            service = client.services.get_service(service_uuid) if client is not None else None
            if service is None:
                self._post(ChannelsDiscovered(identifier=identifier, service_uuid=service_uuid,
                                              error="service not available"))
                return
            channels = tuple(
                DiscoveredChannel(uuid=normalize_uuid(char.uuid),
                                  capabilities=capabilities_from_properties(char.properties))
                for char in service.characteristics
                if normalize_uuid(char.uuid) in wanted
            )
        except BLE_ERRORS as e:
            self._post(ChannelsDiscovered(identifier=identifier, service_uuid=service_uuid,
                                          error=str(e) or type(e).__name__))
            return
        self._post(ChannelsDiscovered(identifier=identifier, service_uuid=service_uuid,
                                      channels=channels))

    async def _set_notify(self, identifier: str, handle: str, enabled: bool):
        client = self._clients.get(identifier)
        if client is None:
            self._post(NotifyStateChanged(identifier, handle, enabled, error="not connected"))
            return

        def _on_notify(_sender, data: bytearray):
            self._post(ValueUpdated(identifier=identifier, handle=handle, data=bytes(data)))

        try:
            if enabled:
                await client.start_notify(handle, _on_notify)
            else:
                await client.stop_notify(handle)
        except BLE_ERRORS as e:
            self._post(NotifyStateChanged(identifier, handle, enabled, error=str(e)))
            return
        self._post(NotifyStateChanged(identifier, handle, enabled))

    async def _read(self, identifier: str, handle: str):
        client = self._clients.get(identifier)
        if client is None:
            self._post(ValueUpdated(identifier, handle, error="not connected"))
            return
        try:
            data = await client.read_gatt_char(handle)
        except BLE_ERRORS as e:
            self._post(ValueUpdated(identifier, handle, error=str(e)))
            return
        self._post(ValueUpdated(identifier, handle, data=bytes(data)))

    async def _write(self, identifier: str, handle: str, data: bytes, with_response: bool):
        client = self._clients.get(identifier)
        if client is None:
            self._post(WriteCompleted(identifier, handle, error="not connected"))
            return
        try:
            await client.write_gatt_char(handle, data, response=with_response)
        except BLE_ERRORS as e:
            self._post(WriteCompleted(identifier, handle, error=str(e)))
            return
        self._post(WriteCompleted(identifier, handle))
