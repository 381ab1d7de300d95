"""
Atomizer Transport Base Interface

This module defines the abstract central-role adapter consumed by the
connection manager, and the closed set of events an adapter reports back.

Every operation is fire-and-forget: results are delivered later through the
event callback, on the thread that owns the connection manager.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, FrozenSet, List, Optional, Tuple, Union

from .channels import ChannelCapability


class TransportError(Exception):
    """Base exception for transport errors."""
    pass


class WriteError(TransportError):
    """A write could not be submitted to the device."""
    pass


class AdapterState(Enum):
    """Power/authorization state of the local BLE adapter."""
    UNKNOWN = auto()
    RESETTING = auto()
    UNSUPPORTED = auto()
    UNAUTHORIZED = auto()
    POWERED_OFF = auto()
    POWERED_ON = auto()


@dataclass(frozen=True)
class DiscoveredChannel:
    """A characteristic found during channel discovery."""
    uuid: str
    capabilities: FrozenSet[ChannelCapability] = frozenset()


# ============================================================================
# Events
# ============================================================================

@dataclass(frozen=True)
class AdapterStateChanged:
    state: AdapterState


@dataclass(frozen=True)
class PeripheralDiscovered:
    identifier: str
    name: Optional[str] = None
    rssi: Optional[int] = None


@dataclass(frozen=True)
class PeripheralRetrieved:
    """Result of looking up a remembered identity."""
    identifier: str
    found: bool


@dataclass(frozen=True)
class PeripheralConnected:
    identifier: str


@dataclass(frozen=True)
class PeripheralConnectFailed:
    identifier: str
    error: str = ""


@dataclass(frozen=True)
class PeripheralDisconnected:
    identifier: str
    error: Optional[str] = None


@dataclass(frozen=True)
class ServicesDiscovered:
    identifier: str
    service_uuids: Tuple[str, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class ChannelsDiscovered:
    identifier: str
    service_uuid: str
    channels: Tuple[DiscoveredChannel, ...] = ()
    error: Optional[str] = None


@dataclass(frozen=True)
class NotifyStateChanged:
    identifier: str
    handle: str
    enabled: bool
    error: Optional[str] = None


@dataclass(frozen=True)
class ValueUpdated:
    """Read response or notification."""
    identifier: str
    handle: str
    data: bytes = b""
    error: Optional[str] = None


@dataclass(frozen=True)
class WriteCompleted:
    identifier: str
    handle: str
    error: Optional[str] = None


TransportEvent = Union[
    AdapterStateChanged,
    PeripheralDiscovered,
    PeripheralRetrieved,
    PeripheralConnected,
    PeripheralConnectFailed,
    PeripheralDisconnected,
    ServicesDiscovered,
    ChannelsDiscovered,
    NotifyStateChanged,
    ValueUpdated,
    WriteCompleted,
]


class TransportBase(ABC):
    """
    Abstract base class for central-role adapters.

    Implementations must deliver events on the thread that owns the
    connection manager (the Qt main thread in the application).
    """

    def __init__(self):
        self._event_callback: Optional[Callable[[TransportEvent], None]] = None

    def set_event_callback(self, callback: Optional[Callable[[TransportEvent], None]]) -> None:
        """
        Set callback for adapter events.

        Args:
            callback: Function to call for each event, or None to clear
        """
        self._event_callback = callback

    def _emit(self, event: TransportEvent) -> None:
        """
        Deliver an event to the registered callback.

        Args:
            event: Adapter event
        """
        if self._event_callback:
            self._event_callback(event)

    @abstractmethod
    def start(self) -> None:
        """Bring the adapter up; reports AdapterStateChanged when ready."""
        pass

    @abstractmethod
    def shutdown(self) -> None:
        """Release adapter resources."""
        pass

    @abstractmethod
    def power_state(self) -> AdapterState:
        """Current adapter state."""
        pass

    @abstractmethod
    def scan(self, service_uuids: Optional[List[str]], timeout: float) -> None:
        """Start scanning; PeripheralDiscovered per new peripheral."""
        pass

    @abstractmethod
    def stop_scan(self) -> None:
        pass

    @abstractmethod
    def retrieve(self, identifier: str) -> None:
        """Look up a remembered peripheral; reports PeripheralRetrieved."""
        pass

    @abstractmethod
    def connect(self, identifier: str) -> None:
        pass

    @abstractmethod
    def disconnect(self, identifier: str) -> None:
        pass

    @abstractmethod
    def discover_services(self, identifier: str, service_uuids: List[str]) -> None:
        pass

    @abstractmethod
    def discover_channels(self, identifier: str, service_uuid: str,
                          channel_uuids: List[str]) -> None:
        pass

    @abstractmethod
    def set_notify(self, identifier: str, handle: str, enabled: bool) -> None:
        pass

    @abstractmethod
    def read(self, identifier: str, handle: str) -> None:
        pass

    @abstractmethod
    def write(self, identifier: str, handle: str, data: bytes, with_response: bool) -> None:
        pass
