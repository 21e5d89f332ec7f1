# uhf_rfid_ble/protocols/commands.py

"""
Typed reader commands and their wire encoding.

Commands are immutable values; ``encode`` turns one into the exact bytes the
reader expects. No state is captured between calls.
"""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Union

from uhf_rfid_ble.protocols import constants as const
from uhf_rfid_ble.protocols.framing import build_frame, hex_to_bytes, require_byte


class CommandKind(Enum):
    START_INVENTORY = auto()
    STOP_INVENTORY = auto()
    INVENTORY_SINGLE = auto()
    GET_POWER = auto()
    SET_POWER = auto()
    GET_FREQUENCY = auto()
    SET_FREQUENCY = auto()
    READ_TAG = auto()
    WRITE_TAG = auto()
    SET_FILTER = auto()

    def __str__(self):
        return self.name


@dataclass(frozen=True)
class StartInventory:
    kind = CommandKind.START_INVENTORY
    opcode = const.CMD_START_INVENTORY


@dataclass(frozen=True)
class StopInventory:
    kind = CommandKind.STOP_INVENTORY
    opcode = const.CMD_STOP_INVENTORY


@dataclass(frozen=True)
class InventorySingle:
    kind = CommandKind.INVENTORY_SINGLE
    opcode = const.CMD_INVENTORY_SINGLE


@dataclass(frozen=True)
class GetPower:
    kind = CommandKind.GET_POWER
    opcode = const.CMD_GET_POWER


@dataclass(frozen=True)
class SetPower:
    """Sets the transmit power; ``level`` is in dBm."""
    level: int
    kind = CommandKind.SET_POWER
    opcode = const.CMD_SET_POWER


@dataclass(frozen=True)
class GetFrequency:
    kind = CommandKind.GET_FREQUENCY
    opcode = const.CMD_GET_FREQUENCY


@dataclass(frozen=True)
class SetFrequency:
    """Selects the frequency region by its mode index."""
    mode: int
    kind = CommandKind.SET_FREQUENCY
    opcode = const.CMD_SET_FREQUENCY


@dataclass(frozen=True)
class ReadTag:
    """Reads ``length`` words from ``bank`` starting at word ``pointer``."""
    bank: int
    pointer: int
    length: int
    password: str = const.DEFAULT_PASSWORD
    kind = CommandKind.READ_TAG
    opcode = const.CMD_READ_TAG


@dataclass(frozen=True)
class WriteTag:
    """Writes hex ``data`` into ``bank`` starting at word ``pointer``."""
    bank: int
    pointer: int
    length: int
    data: str
    password: str = const.DEFAULT_PASSWORD
    kind = CommandKind.WRITE_TAG
    opcode = const.CMD_WRITE_TAG


@dataclass(frozen=True)
class SetFilter:
    """Restricts inventory to tags whose ``bank`` matches ``mask`` at ``pointer``."""
    bank: int
    pointer: int
    length: int
    mask: str
    kind = CommandKind.SET_FILTER
    opcode = const.CMD_SET_FILTER


Command = Union[
    StartInventory, StopInventory, InventorySingle, GetPower, SetPower,
    GetFrequency, SetFrequency, ReadTag, WriteTag, SetFilter,
]

_LITERAL_FRAMES = {
    CommandKind.START_INVENTORY: const.FRAME_START_INVENTORY,
    CommandKind.STOP_INVENTORY: const.FRAME_STOP_INVENTORY,
    CommandKind.INVENTORY_SINGLE: const.FRAME_INVENTORY_SINGLE,
    CommandKind.GET_POWER: const.FRAME_GET_POWER,
    CommandKind.GET_FREQUENCY: const.FRAME_GET_FREQUENCY,
}


def _password_bytes(password: str) -> bytes:
    pwd = hex_to_bytes(password, field="password")
    if len(pwd) != const.PASSWORD_LENGTH:
        raise ValueError(
            f"password must be {const.PASSWORD_LENGTH} bytes "
            f"({const.PASSWORD_LENGTH * 2} hex digits), got {len(pwd)} bytes."
        )
    return pwd


def _memory_address(command: Union[ReadTag, WriteTag, SetFilter]) -> bytes:
    return bytes([
        require_byte("bank", command.bank),
        require_byte("pointer", command.pointer),
        require_byte("length", command.length),
    ])


def encode(command: Command) -> bytes:
    """
    Encodes a command into a complete outbound frame.

    Args:
        command: Any of the command dataclasses in this module.

    Returns:
        The frame bytes, header through checksum.

    Raises:
        ValueError: If a numeric field does not fit in a byte, or a hex field
            has odd length, contains non-hex characters, or (for passwords)
            is not exactly four bytes.
        TypeError: If ``command`` is not a known command type.
    """
    kind = getattr(command, "kind", None)

    literal = _LITERAL_FRAMES.get(kind)
    if literal is not None:
        return literal

    if kind is CommandKind.SET_POWER:
        return build_frame(
            const.SINGLE_PARAM_LENGTH, command.opcode,
            bytes([require_byte("power level", command.level)]),
            checksum_from_length=False,
        )

    if kind is CommandKind.SET_FREQUENCY:
        return build_frame(
            const.SINGLE_PARAM_LENGTH, command.opcode,
            bytes([require_byte("frequency mode", command.mode)]),
            checksum_from_length=False,
        )

    if kind is CommandKind.READ_TAG:
        pwd = _password_bytes(command.password)
        payload = pwd + _memory_address(command)
        return build_frame(const.READ_TAG_LENGTH_BASE + len(pwd), command.opcode, payload)

    if kind is CommandKind.WRITE_TAG:
        pwd = _password_bytes(command.password)
        data = hex_to_bytes(command.data, field="data")
        payload = pwd + _memory_address(command) + data
        return build_frame(const.WRITE_TAG_LENGTH_BASE + len(pwd) + len(data), command.opcode, payload)

    if kind is CommandKind.SET_FILTER:
        mask = hex_to_bytes(command.mask, field="mask")
        payload = _memory_address(command) + mask
        return build_frame(const.SET_FILTER_LENGTH_BASE + len(mask), command.opcode, payload)

    raise TypeError(f"Cannot encode object of type {type(command).__name__} as a reader command.")
