# uhf_rfid_ble/protocols/codec.py

import logging

from uhf_rfid_ble.core.exceptions import FrameParseError
from uhf_rfid_ble.protocols import constants as const
from uhf_rfid_ble.protocols.commands import Command, encode
from uhf_rfid_ble.protocols.events import (
    DecodeResult, FrequencyReport, InboundEvent, InventoryStopped, Malformed,
    PowerReport, ReadResult, TagReport, Unrecognized, WriteResult,
)
from uhf_rfid_ble.protocols.framing import bytes_to_hex

logger = logging.getLogger(__name__)

# --- Per-opcode payload parsers ---
# Inbound frames are not checksum-verified: the reader's declared lengths
# (buffer[3], buffer[4]) are trusted as long as the buffer is big enough.

def _decode_tag_report(buffer: bytes) -> DecodeResult:
    if len(buffer) < const.MIN_TAG_REPORT_LENGTH:
        return Malformed(buffer, f"tag report needs {const.MIN_TAG_REPORT_LENGTH} bytes, got {len(buffer)}")

    data_start = const.PAYLOAD_INDEX + 1
    data_length = buffer[const.PAYLOAD_INDEX]
    if data_length == 0 or len(buffer) < data_start + data_length:
        return Malformed(buffer, f"invalid EPC length {data_length} for {len(buffer)}-byte buffer")

    epc = bytes_to_hex(buffer[data_start:data_start + data_length])

    # RSSI is the byte after the EPC, provided it is not the trailing checksum
    rssi = None
    rssi_index = data_start + data_length
    if len(buffer) > rssi_index + 1:
        magnitude = buffer[rssi_index]
        if const.RSSI_MIN_EXCLUSIVE < magnitude < const.RSSI_MAX_EXCLUSIVE:
            rssi = -magnitude

    return TagReport(epc=epc, rssi=rssi)


def _decode_read_result(buffer: bytes) -> DecodeResult:
    status = buffer[const.PAYLOAD_INDEX]
    if status != const.STATUS_SUCCESS:
        return ReadResult(success=False, status=status)

    if len(buffer) < const.MIN_READ_SUCCESS_LENGTH:
        return Malformed(buffer, f"read result needs {const.MIN_READ_SUCCESS_LENGTH} bytes, got {len(buffer)}")

    data_length = buffer[const.PAYLOAD_INDEX + 1]
    data_start = const.PAYLOAD_INDEX + 2
    if len(buffer) < data_start + data_length:
        return Malformed(buffer, f"read result declares {data_length} data bytes but buffer has {len(buffer)}")

    return ReadResult(success=True, status=status, data=bytes_to_hex(buffer[data_start:data_start + data_length]))


def _decode_write_result(buffer: bytes) -> DecodeResult:
    status = buffer[const.PAYLOAD_INDEX]
    return WriteResult(success=status == const.STATUS_SUCCESS, status=status)


def _decode_power(buffer: bytes) -> DecodeResult:
    return PowerReport(dbm=buffer[const.PAYLOAD_INDEX])


def _decode_frequency(buffer: bytes) -> DecodeResult:
    return FrequencyReport(mode=buffer[const.PAYLOAD_INDEX])


def _decode_inventory_stopped(buffer: bytes) -> DecodeResult:
    return InventoryStopped()


_DECODERS = {
    const.RESP_TAG_INVENTORY: _decode_tag_report,
    const.RESP_TAG_SINGLE: _decode_tag_report,
    const.RESP_READ_RESULT: _decode_read_result,
    const.RESP_WRITE_RESULT: _decode_write_result,
    const.RESP_POWER: _decode_power,
    const.RESP_FREQUENCY: _decode_frequency,
    const.RESP_INVENTORY_STOPPED: _decode_inventory_stopped,
}


def decode(data: bytes) -> DecodeResult:
    """
    Decodes one inbound notification into a typed event.

    Never raises for any input: short or inconsistent buffers yield
    ``Malformed``, foreign headers and unknown opcodes yield ``Unrecognized``.

    Args:
        data: The raw notification payload.

    Returns:
        An InboundEvent, or Malformed.
    """
    buffer = bytes(data)
    if len(buffer) < const.MIN_FRAME_LENGTH:
        return Malformed(buffer, f"frame needs at least {const.MIN_FRAME_LENGTH} bytes, got {len(buffer)}")

    if buffer[const.HEADER_INDEX] != const.FRAME_HEADER:
        return Unrecognized(buffer)

    decoder = _DECODERS.get(buffer[const.OPCODE_INDEX])
    if decoder is None:
        logger.debug(f"Unknown response opcode 0x{buffer[const.OPCODE_INDEX]:02X}")
        return Unrecognized(buffer)
    return decoder(buffer)


class FrameCodec:
    """
    Stateless encoder/decoder for the reader protocol.

    Offered as an object so that sessions can be handed an alternative codec;
    the module-level ``encode``/``decode`` functions do the actual work.
    """

    def encode(self, command: Command) -> bytes:
        return encode(command)

    def decode(self, data: bytes) -> DecodeResult:
        return decode(data)

    def decode_strict(self, data: bytes) -> InboundEvent:
        """
        Like ``decode`` but raises instead of returning ``Malformed``.

        Raises:
            FrameParseError: If the buffer is malformed.
        """
        result = decode(data)
        if isinstance(result, Malformed):
            raise FrameParseError(result.reason, frame_part=result.raw)
        return result
