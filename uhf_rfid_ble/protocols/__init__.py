"""Wire protocol: command encoding and notification decoding."""

from .commands import (
    Command,
    CommandKind,
    StartInventory,
    StopInventory,
    InventorySingle,
    GetPower,
    SetPower,
    GetFrequency,
    SetFrequency,
    ReadTag,
    WriteTag,
    SetFilter,
    encode,
)
from .events import (
    InboundEvent,
    TagReport,
    ReadResult,
    WriteResult,
    PowerReport,
    FrequencyReport,
    InventoryStopped,
    Unrecognized,
    Malformed,
)
from .codec import FrameCodec, decode

__all__ = [
    'Command',
    'CommandKind',
    'StartInventory',
    'StopInventory',
    'InventorySingle',
    'GetPower',
    'SetPower',
    'GetFrequency',
    'SetFrequency',
    'ReadTag',
    'WriteTag',
    'SetFilter',
    'encode',
    'InboundEvent',
    'TagReport',
    'ReadResult',
    'WriteResult',
    'PowerReport',
    'FrequencyReport',
    'InventoryStopped',
    'Unrecognized',
    'Malformed',
    'FrameCodec',
    'decode',
]
