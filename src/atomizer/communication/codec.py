"""
Atomizer Payload Codec

Every characteristic carries UTF-8 text of a decimal number or a fixed token.
This module converts between that wire text and typed values, per channel.

Decode rules:
    temperature, output, setpoint, default-setpoint, kp, ki, kd -> float
    battery    -> integer = percent, otherwise float = voltage
    mode-read  -> integer (1 = manual)
    enable     -> integer 0/1, otherwise "ON"/"OFF"/"1"/"0" (any case)

Encode rules:
    setpoint, default-setpoint -> 1 decimal place
    kp, ki, kd                 -> 3 decimal places
    output (manual output)     -> 0 decimal places
    mode-write                 -> AUTO / MAN / U1 / U2 for mode 0-3
    enable                     -> "1" / "0"
"""

import logging
import math
import re
from typing import Any, Callable, Dict, Union

from .channels import Channel
from ..models.device_status import BatteryReading

logger = logging.getLogger(__name__)


class CodecError(Exception):
    """Base exception for payload conversion errors."""
    pass


class DecodeError(CodecError):
    """Payload text could not be decoded for its channel."""

    def __init__(self, channel: Channel, text: str, reason: str = ""):
        self.channel = channel
        self.text = text
        self.reason = reason
        message = f"Cannot decode {channel.value} payload '{text}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class EncodeError(CodecError):
    """Value cannot be represented on the wire for its channel."""
    pass


MODE_TOKENS: Dict[int, str] = {
    0: "AUTO",
    1: "MAN",
    2: "U1",
    3: "U2",
}

_INT_RE = re.compile(r"^[+-]?\d+$")
_FLOAT_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")


# ============================================================================
# Text helpers
# ============================================================================

def payload_text(payload: Union[bytes, bytearray, str]) -> str:
    """Decode payload bytes as UTF-8 (lossy) and trim surrounding whitespace."""
    if isinstance(payload, str):
        return payload.strip()
    return bytes(payload).decode("utf-8", errors="replace").strip()


def parse_int(text: str) -> int:
    """Parse a plain signed integer; raises ValueError otherwise."""
    if not _INT_RE.match(text):
        raise ValueError(f"not an integer: '{text}'")
    return int(text)


def parse_float(text: str) -> float:
    """Parse a finite decimal number; raises ValueError otherwise."""
    if not _FLOAT_RE.match(text):
        raise ValueError(f"not a number: '{text}'")
    value = float(text)
    if not math.isfinite(value):
        raise ValueError(f"not finite: '{text}'")
    return value


# ============================================================================
# Decoding
# ============================================================================

def _decode_battery(text: str) -> BatteryReading:
    # Ambiguous by construction: the firmware sends either a percentage or a
    # voltage on the same characteristic. Integer text is read as percent.
    try:
        return BatteryReading(percent=parse_int(text))
    except ValueError:
        return BatteryReading(voltage=parse_float(text))


def _decode_enable(text: str) -> bool:
    try:
        return parse_int(text) != 0
    except ValueError:
        pass
    upper = text.upper()
    if upper in ("ON", "1"):
        return True
    if upper in ("OFF", "0"):
        return False
    raise ValueError("ambiguous enable state")


_DECODERS: Dict[Channel, Callable[[str], Any]] = {
    Channel.TEMPERATURE: parse_float,
    Channel.OUTPUT: parse_float,
    Channel.SETPOINT: parse_float,
    Channel.DEFAULT_SETPOINT: parse_float,
    Channel.KP: parse_float,
    Channel.KI: parse_float,
    Channel.KD: parse_float,
    Channel.BATTERY: _decode_battery,
    Channel.MODE_READ: parse_int,
    Channel.ENABLE: _decode_enable,
}


def decode(channel: Channel, payload: Union[bytes, bytearray, str]) -> Any:
    """
    Decode a raw characteristic payload into a typed value.

    Args:
        channel: Logical channel the payload arrived on
        payload: Raw characteristic value

    Returns:
        float, int, bool or BatteryReading depending on the channel

    Raises:
        DecodeError: Payload is empty, malformed, or the channel is write-only
    """
    text = payload_text(payload)

    decoder = _DECODERS.get(channel)
    if decoder is None:
        raise DecodeError(channel, text, "channel is write-only")
    if not text:
        raise DecodeError(channel, text, "empty payload")

    try:
        return decoder(text)
    except ValueError as e:
        raise DecodeError(channel, text, str(e)) from e


# ============================================================================
# Encoding
# ============================================================================

def _finite(channel: Channel, value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise EncodeError(f"{channel.value}: expected a number, got {value!r}")
    if not math.isfinite(value):
        raise EncodeError(f"{channel.value}: value must be finite, got {value!r}")
    return float(value)


def encode_mode(mode: int) -> str:
    """Map a device mode index (0-3) to its wire token."""
    if isinstance(mode, bool) or mode not in MODE_TOKENS:
        raise EncodeError(f"unsupported mode {mode!r}")
    return MODE_TOKENS[mode]


def encode(channel: Channel, value: Any) -> str:
    """
    Encode a typed value into the wire text for a writable channel.

    Raises:
        EncodeError: Value out of domain or channel not writable
    """
    if channel in (Channel.SETPOINT, Channel.DEFAULT_SETPOINT):
        return f"{_finite(channel, value):.1f}"
    if channel in (Channel.KP, Channel.KI, Channel.KD):
        return f"{_finite(channel, value):.3f}"
    if channel == Channel.OUTPUT:
        return f"{_finite(channel, value):.0f}"
    if channel == Channel.MODE_WRITE:
        return encode_mode(value)
    if channel == Channel.ENABLE:
        return "1" if value else "0"
    raise EncodeError(f"{channel.value} is not writable")
