# uhf_rfid_ble/protocols/framing.py

import string
from typing import Iterable

from uhf_rfid_ble.protocols import constants as const

_HEX_DIGITS = frozenset(string.hexdigits)

# --- Checksum Calculation ---

def calculate_checksum(data: Iterable[int]) -> int:
    """
    Calculates the protocol checksum over the given bytes.

    The checksum is the plain sum of the bytes, truncated to 8 bits. Callers
    choose the window: opcode+parameter for single-parameter commands, or
    everything between the header and the checksum byte for variable-payload
    commands.

    Args:
        data: The bytes covered by the checksum.

    Returns:
        The checksum byte (as an integer 0-255).
    """
    return sum(data) & 0xFF

# --- Field Helpers ---

def require_byte(name: str, value: int) -> int:
    """Validates that a numeric field fits a single unsigned byte."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"{name} must be an integer, got {type(value).__name__}.")
    if not (0x00 <= value <= 0xFF):
        raise ValueError(f"Invalid {name}: {value}. Must be between 0 and 255.")
    return value


def hex_to_bytes(hex_string: str, field: str = "hex data") -> bytes:
    """
    Converts a hex string to raw bytes, two characters per byte.

    Args:
        hex_string: Hex digits, upper or lower case, no separators.
        field: Field name used in error messages.

    Raises:
        ValueError: If the string has odd length or contains non-hex characters.
    """
    if len(hex_string) % 2 != 0:
        raise ValueError(f"{field} must have an even number of hex digits, got {len(hex_string)}.")
    if not set(hex_string) <= _HEX_DIGITS:
        raise ValueError(f"{field} must contain only hexadecimal characters: {hex_string!r}")
    return bytes.fromhex(hex_string)


def bytes_to_hex(data: bytes) -> str:
    """Converts bytes to an uppercase hex string without separators."""
    return bytes(data).hex().upper()

# --- Frame Building ---

def build_frame(length: int, opcode: int, payload: bytes = b'', checksum_from_length: bool = True) -> bytes:
    """
    Constructs an outbound frame ``[0xA0, length, opcode, payload..., checksum]``.

    Args:
        length: Value of the length byte.
        opcode: The command opcode.
        payload: Parameter bytes following the opcode.
        checksum_from_length: When True the checksum covers every byte from the
            length byte up to the checksum; when False it covers opcode+payload only.

    Returns:
        The complete frame including the calculated checksum.
    """
    require_byte("length", length)
    require_byte("opcode", opcode)
    body = bytes([length, opcode]) + payload
    covered = body if checksum_from_length else body[1:]
    return bytes([const.FRAME_HEADER]) + body + bytes([calculate_checksum(covered)])


def describe_frame(frame: bytes, limit: int = 32) -> str:
    """Short uppercase hex rendering of a frame for log and error messages."""
    return f"{frame[:limit].hex(' ').upper()}{'...' if len(frame) > limit else ''}"
