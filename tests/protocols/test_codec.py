# tests/protocols/test_codec.py

import pytest

from uhf_rfid_ble.core.exceptions import FrameParseError
from uhf_rfid_ble.protocols.codec import FrameCodec, decode
from uhf_rfid_ble.protocols.commands import GetPower, SetPower
from uhf_rfid_ble.protocols.events import (
    FrequencyReport, InventoryStopped, Malformed, PowerReport, ReadResult,
    TagReport, Unrecognized, WriteResult,
)


def _frame(*payload: int) -> bytes:
    """Builds a reader frame with a trailing checksum over everything after the header."""
    body = bytes(payload)
    return bytes([0xA0]) + body + bytes([sum(body) & 0xFF])


# --- Tag reports ---

def test_inventory_report_with_rssi():
    result = decode(_frame(0x08, 0x89, 0x04, 0xE2, 0x00, 0x11, 0x22, 0x2D))
    assert result == TagReport(epc="E2001122", rssi=-45)


def test_inventory_report_without_rssi():
    """When the byte after the EPC is the checksum, no RSSI is reported."""
    result = decode(_frame(0x07, 0x89, 0x04, 0xE2, 0x00, 0x11, 0x22))
    assert result == TagReport(epc="E2001122", rssi=None)


@pytest.mark.parametrize("magnitude", [0x00, 20, 100, 0xC8])
def test_rssi_outside_range_is_dropped(magnitude):
    result = decode(_frame(0x08, 0x89, 0x02, 0xAB, 0xCD, magnitude))
    assert result == TagReport(epc="ABCD", rssi=None)


@pytest.mark.parametrize("magnitude", [21, 60, 99])
def test_rssi_inside_range(magnitude):
    result = decode(_frame(0x08, 0x89, 0x02, 0xAB, 0xCD, magnitude))
    assert result.rssi == -magnitude


def test_single_inventory_report_uses_same_layout():
    result = decode(_frame(0x08, 0x22, 0x02, 0x30, 0x08, 0x40))
    assert result == TagReport(epc="3008", rssi=-64)


def test_epc_is_uppercase_hex():
    result = decode(_frame(0x07, 0x89, 0x03, 0xab, 0xcd, 0xef))
    assert result.epc == "ABCDEF"


@pytest.mark.parametrize("raw", [
    bytes.fromhex("A00489"),               # shorter than any frame
    bytes.fromhex("A0048900"),             # below tag report minimum
    bytes.fromhex("A005890000FF"),         # zero EPC length
    bytes.fromhex("A0058908E200"),         # EPC length exceeds buffer
])
def test_short_tag_reports_are_malformed(raw):
    result = decode(raw)
    assert isinstance(result, Malformed)
    assert result.raw == raw
    assert result.reason


# --- Command replies ---

def test_read_success():
    result = decode(_frame(0x09, 0x39, 0x10, 0x04, 0xAA, 0xBB, 0xCC, 0xDD))
    assert result == ReadResult(success=True, status=0x10, data="AABBCCDD")


def test_read_failure_carries_status():
    result = decode(_frame(0x04, 0x39, 0x05))
    assert result == ReadResult(success=False, status=0x05, data=None)


@pytest.mark.parametrize("raw", [
    bytes.fromhex("A0043910"),             # success status but no data length
    bytes.fromhex("A006391004AA00"),       # declares 4 data bytes, has 2
])
def test_truncated_read_success_is_malformed(raw):
    assert isinstance(decode(raw), Malformed)


@pytest.mark.parametrize("status, success", [(0x10, True), (0x01, False), (0xFF, False)])
def test_write_result(status, success):
    assert decode(_frame(0x04, 0x49, status)) == WriteResult(success=success, status=status)


def test_power_report():
    assert decode(_frame(0x04, 0x97, 0x1A)) == PowerReport(dbm=26)


def test_frequency_report():
    assert decode(_frame(0x04, 0xAA, 0x02)) == FrequencyReport(mode=2)


def test_inventory_stopped():
    assert decode(bytes.fromhex("A0030100")) == InventoryStopped()


@pytest.mark.parametrize("level", [0, 5, 26, 33])
def test_power_reply_echoes_requested_level(level):
    """A reader answering SetPower(level) with its new power yields the same level."""
    request = FrameCodec().encode(SetPower(level))
    reply = _frame(0x04, 0x97, request[3])
    assert decode(reply) == PowerReport(dbm=level)


# --- Foreign traffic ---

def test_foreign_header_is_unrecognized():
    raw = bytes.fromhex("5504890400")
    assert decode(raw) == Unrecognized(raw)


def test_unknown_opcode_is_unrecognized():
    raw = _frame(0x04, 0xFE, 0x00)
    assert decode(raw) == Unrecognized(raw)


@pytest.mark.parametrize("raw", [b'', b'\xA0', bytes(3), bytes(range(256)), b'\xFF' * 64])
def test_decode_never_raises(raw):
    decode(raw)


def test_decode_accepts_bytearray():
    result = decode(bytearray(_frame(0x04, 0x97, 0x1E)))
    assert result == PowerReport(dbm=30)


# --- FrameCodec ---

def test_codec_encode_delegates():
    assert FrameCodec().encode(GetPower()) == bytes.fromhex("A0039701")


def test_decode_strict_returns_events():
    assert FrameCodec().decode_strict(bytes.fromhex("A0030100")) == InventoryStopped()


def test_decode_strict_raises_on_malformed():
    raw = bytes.fromhex("A004")
    with pytest.raises(FrameParseError) as exc_info:
        FrameCodec().decode_strict(raw)
    assert exc_info.value.frame_part == raw
