"""
Atomizer Communication Package

Wire-level pieces of the atomizer link.

Modules:
    channels: Logical channel table and per-connection handle registry
    codec: UTF-8 text payload encoding/decoding
    transport_base: Abstract central-role adapter and its events
    ble_transport: bleak-based adapter

Example usage:
    from atomizer.communication import Channel, decode, encode

    decode(Channel.TEMPERATURE, b" 212.5\\n")   # -> 212.5
    encode(Channel.KP, 10)                       # -> "10.000"
"""

from .channels import (
    Channel,
    ChannelCapability,
    ChannelHandle,
    ChannelRegistry,
    NOTIFY_CHANNELS,
)
from .codec import CodecError, DecodeError, EncodeError, decode, encode, encode_mode
from .transport_base import AdapterState, TransportBase, TransportError, WriteError
from .ble_transport import BleakTransport

__all__ = [
    # Channels
    "Channel",
    "ChannelCapability",
    "ChannelHandle",
    "ChannelRegistry",
    "NOTIFY_CHANNELS",
    # Codec
    "CodecError",
    "DecodeError",
    "EncodeError",
    "decode",
    "encode",
    "encode_mode",
    # Transport
    "AdapterState",
    "TransportBase",
    "TransportError",
    "WriteError",
    "BleakTransport",
]
