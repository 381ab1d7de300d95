"""
Atomizer Channel Registry

Static table of the logical channels exposed by the atomizer GATT service and
the per-connection map from logical channel to transport handle.

The registry is populated once per successful characteristic discovery and
replaced wholesale; it is never partially mutated and never persisted.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Iterable, List, Optional

logger = logging.getLogger(__name__)


class Channel(Enum):
    """Logical channels (one GATT characteristic each)."""
    ENABLE = "enable"
    SETPOINT = "setpoint"
    KP = "kp"
    KI = "ki"
    KD = "kd"
    MODE_WRITE = "mode_write"
    MODE_READ = "mode_read"
    TEMPERATURE = "temperature"
    OUTPUT = "output"
    BATTERY = "battery"
    DEFAULT_SETPOINT = "default_setpoint"


class ChannelCapability(Enum):
    """Characteristic properties the core cares about."""
    READ = "read"
    WRITE = "write"
    WRITE_WITHOUT_RESPONSE = "write-without-response"
    NOTIFY = "notify"
    INDICATE = "indicate"


# Characteristic UUIDs used by firmware (keep in sync with device)
CHANNEL_UUIDS: Dict[Channel, str] = {
    Channel.ENABLE: "3f1a0001-2a8d-4a54-8f2f-b7cd2b4b8001",
    Channel.SETPOINT: "3f1a0002-2a8d-4a54-8f2f-b7cd2b4b8001",
    Channel.KP: "3f1a0003-2a8d-4a54-8f2f-b7cd2b4b8001",
    Channel.KI: "3f1a0004-2a8d-4a54-8f2f-b7cd2b4b8001",
    Channel.KD: "3f1a0005-2a8d-4a54-8f2f-b7cd2b4b8001",
    Channel.MODE_WRITE: "3f1a0006-2a8d-4a54-8f2f-b7cd2b4b8001",
    Channel.TEMPERATURE: "3f1a0007-2a8d-4a54-8f2f-b7cd2b4b8001",
    Channel.OUTPUT: "3f1a0008-2a8d-4a54-8f2f-b7cd2b4b8001",
    Channel.BATTERY: "3f1a0009-2a8d-4a54-8f2f-b7cd2b4b8001",
    Channel.MODE_READ: "3f1a0006-2a8d-4a54-8f2f-b7cd2b4b8002",
    Channel.DEFAULT_SETPOINT: "3f1a000a-2a8d-4a54-8f2f-b7cd2b4b8001",
}

_CHANNELS_BY_UUID: Dict[str, Channel] = {uuid: ch for ch, uuid in CHANNEL_UUIDS.items()}

# Channels the device pushes updates for
NOTIFY_CHANNELS: FrozenSet[Channel] = frozenset({
    Channel.ENABLE,
    Channel.TEMPERATURE,
    Channel.OUTPUT,
    Channel.BATTERY,
    Channel.MODE_READ,
})

# Channels re-read on demand (mode-write and enable are not polled)
POLLED_CHANNELS: List[Channel] = [
    Channel.TEMPERATURE,
    Channel.BATTERY,
    Channel.MODE_READ,
    Channel.OUTPUT,
    Channel.SETPOINT,
    Channel.KP,
    Channel.KI,
    Channel.KD,
    Channel.DEFAULT_SETPOINT,
]


def normalize_uuid(uuid: str) -> str:
    """Lower-case a UUID string for comparison."""
    return uuid.strip().lower()


def channel_for_uuid(uuid: str) -> Optional[Channel]:
    """Look up the logical channel for a characteristic UUID."""
    return _CHANNELS_BY_UUID.get(normalize_uuid(uuid))


def all_channel_uuids() -> List[str]:
    """UUIDs of every known channel, in declaration order."""
    return [CHANNEL_UUIDS[ch] for ch in Channel]


@dataclass(frozen=True)
class ChannelHandle:
    """Resolved transport handle for one logical channel."""
    channel: Channel
    handle: str
    capabilities: FrozenSet[ChannelCapability] = frozenset()

    @property
    def readable(self) -> bool:
        return ChannelCapability.READ in self.capabilities

    @property
    def writable(self) -> bool:
        return bool(self.capabilities & {ChannelCapability.WRITE,
                                         ChannelCapability.WRITE_WITHOUT_RESPONSE})

    @property
    def notifiable(self) -> bool:
        return bool(self.capabilities & {ChannelCapability.NOTIFY,
                                         ChannelCapability.INDICATE})

    @property
    def write_with_response(self) -> bool:
        """Prefer acknowledged writes so failures come back as events."""
        return ChannelCapability.WRITE in self.capabilities


class ChannelRegistry:
    """Map of logical channel -> ChannelHandle for the active connection."""

    def __init__(self):
        self._handles: Dict[Channel, ChannelHandle] = {}
        self._by_handle: Dict[str, Channel] = {}

    def populate(self, discovered: Iterable) -> List[ChannelHandle]:
        """
        Replace the registry from a characteristic discovery result.

        Args:
            discovered: Iterable of objects with ``uuid`` and ``capabilities``
                attributes (see transport_base.DiscoveredChannel)

        Returns:
            Handles resolved for known channels, in discovery order
        """
        handles: Dict[Channel, ChannelHandle] = {}
        by_handle: Dict[str, Channel] = {}
        resolved: List[ChannelHandle] = []

        for item in discovered:
            channel = channel_for_uuid(item.uuid)
            if channel is None:
                logger.debug(f"Ignoring unknown characteristic {item.uuid}")
                continue
            handle = ChannelHandle(
                channel=channel,
                handle=normalize_uuid(item.uuid),
                capabilities=frozenset(item.capabilities),
            )
            handles[channel] = handle
            by_handle[handle.handle] = channel
            resolved.append(handle)

        self._handles = handles
        self._by_handle = by_handle
        logger.info(f"Channel registry populated: {len(handles)}/{len(Channel)} channels")
        return resolved

    def reset(self) -> None:
        """Drop all handles (on connect and disconnect)."""
        self._handles = {}
        self._by_handle = {}

    def get(self, channel: Channel) -> Optional[ChannelHandle]:
        return self._handles.get(channel)

    def channel_for_handle(self, handle: str) -> Optional[Channel]:
        return self._by_handle.get(normalize_uuid(handle))

    def handles(self) -> List[ChannelHandle]:
        return list(self._handles.values())

    def __contains__(self, channel: Channel) -> bool:
        return channel in self._handles

    def __len__(self) -> int:
        return len(self._handles)
