# uhf_rfid_ble/utils/uuids.py

"""
Helpers for the 16-bit, 32-bit and 128-bit UUID notations readers advertise.
"""

import re

BLUETOOTH_BASE_UUID_SUFFIX = "-0000-1000-8000-00805f9b34fb"

_FULL_UUID_RE = re.compile(r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")

# --- Well-known reader services and characteristics ---
RFID_SERVICE_UUID = "0000fff0-0000-1000-8000-00805f9b34fb"
RFID_NOTIFY_CHAR_UUID = "0000fff1-0000-1000-8000-00805f9b34fb"
RFID_ALT_CHAR_UUID = "0000fff2-0000-1000-8000-00805f9b34fb"

NORDIC_UART_SERVICE_UUID = "6e400001-b5a3-f393-e0a9-e50e24dcca9e"
NORDIC_UART_TX_WRITE_UUID = "6e400002-b5a3-f393-e0a9-e50e24dcca9e"
NORDIC_UART_RX_NOTIFY_UUID = "6e400003-b5a3-f393-e0a9-e50e24dcca9e"


def normalize_uuid(uuid: str) -> str:
    """
    Expands short UUID notations onto the Bluetooth base UUID.

    - Any 4-character string ``xxxx`` becomes ``0000xxxx-0000-1000-8000-00805f9b34fb``.
    - Any 8-character string is treated the same way using its last four characters.
    - A 36-character hyphenated UUID is returned unchanged, as is anything
      of any other length. Only the length is checked, not the digits.

    Case is preserved; compare with ``uuids_equal``.
    """
    if not isinstance(uuid, str):
        return uuid
    if len(uuid) == 4:
        return f"0000{uuid}{BLUETOOTH_BASE_UUID_SUFFIX}"
    if len(uuid) == 8:
        return f"0000{uuid[-4:]}{BLUETOOTH_BASE_UUID_SUFFIX}"
    return uuid


def is_full_uuid(uuid: str) -> bool:
    return isinstance(uuid, str) and bool(_FULL_UUID_RE.match(uuid))


def uuids_equal(a: str, b: str) -> bool:
    """True if both notations designate the same UUID (case-insensitive)."""
    if a is None or b is None:
        return False
    return normalize_uuid(a).lower() == normalize_uuid(b).lower()
