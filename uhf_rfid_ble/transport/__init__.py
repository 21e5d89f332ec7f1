"""BLE transport implementations for the uhf_rfid_ble library."""

from .base import (
    BaseBleTransport,
    CharacteristicHandle,
    CharacteristicProperties,
    DeviceHandle,
    GattLink,
    ServiceHandle,
)
from .bleak_transport import BleakBleTransport
from .mock import MockBleTransport

__all__ = [
    'BaseBleTransport',
    'CharacteristicHandle',
    'CharacteristicProperties',
    'DeviceHandle',
    'GattLink',
    'ServiceHandle',
    'BleakBleTransport',
    'MockBleTransport',
]
