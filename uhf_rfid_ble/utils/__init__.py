"""Utility helpers for the uhf_rfid_ble library."""

from .uuids import normalize_uuid, uuids_equal

__all__ = [
    'normalize_uuid',
    'uuids_equal',
]
