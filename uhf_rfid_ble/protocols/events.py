# uhf_rfid_ble/protocols/events.py

"""Typed results of decoding frames received from the reader."""

from dataclasses import dataclass, field
from typing import Optional, Union


@dataclass(frozen=True)
class TagReport:
    """An inventory report: one EPC, optionally with the signal strength in dBm."""
    epc: str
    rssi: Optional[int] = None


@dataclass(frozen=True)
class ReadResult:
    success: bool
    status: int
    data: Optional[str] = None # Uppercase hex of the memory read, on success


@dataclass(frozen=True)
class WriteResult:
    success: bool
    status: int


@dataclass(frozen=True)
class PowerReport:
    dbm: int


@dataclass(frozen=True)
class FrequencyReport:
    mode: int


@dataclass(frozen=True)
class InventoryStopped:
    pass


@dataclass(frozen=True)
class Unrecognized:
    """A frame with a foreign header or an opcode this library does not know."""
    raw: bytes = field(repr=False)


@dataclass(frozen=True)
class Malformed:
    """
    A buffer too short, or whose declared lengths exceed the buffer.
    Not an inbound event: the session logs and drops it.
    """
    raw: bytes = field(repr=False)
    reason: str = ""


InboundEvent = Union[
    TagReport, ReadResult, WriteResult, PowerReport,
    FrequencyReport, InventoryStopped, Unrecognized,
]

DecodeResult = Union[InboundEvent, Malformed]
