# uhf_rfid_ble/transport/bleak_transport.py

import logging
from typing import Dict, List, Optional, Sequence

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from uhf_rfid_ble.core.exceptions import ConnectionError, DeviceNotFoundError
from uhf_rfid_ble.transport.base import (
    BaseBleTransport, CharacteristicHandle, CharacteristicProperties, DeviceHandle,
    DisconnectCallback, GattLink, NotificationCallback, ServiceHandle,
)

logger = logging.getLogger(__name__)

DEFAULT_SCAN_TIMEOUT = 10.0
DEFAULT_CONNECT_TIMEOUT = 15.0


class BleakBleTransport(BaseBleTransport):
    """
    BLE transport backed by bleak.

    ``scan_and_pick`` stands in for an interactive device picker: it connects
    to a fixed address when one is given, otherwise it scans and picks the
    strongest advertiser whose name starts with one of ``name_prefixes`` (or
    any named device when no prefixes are given).

    BleakError and asyncio timeouts from GATT operations propagate unchanged
    so the ErrorClassifier sees the stack's own error names.
    """

    def __init__(self,
                 address: Optional[str] = None,
                 name_prefixes: Optional[Sequence[str]] = None,
                 scan_timeout: float = DEFAULT_SCAN_TIMEOUT,
                 connect_timeout: float = DEFAULT_CONNECT_TIMEOUT):
        """
        Args:
            address: MAC address (or CoreBluetooth UUID on macOS) of the reader, if known.
            name_prefixes: Advertised-name prefixes that identify readers during a scan.
            scan_timeout: Seconds to scan before giving up.
            connect_timeout: Seconds allowed for the GATT connection.
        """
        self._address = address
        self._name_prefixes = tuple(name_prefixes or ())
        self._scan_timeout = scan_timeout
        self._connect_timeout = connect_timeout
        self._clients: Dict[str, BleakClient] = {}
        self._devices: Dict[str, DeviceHandle] = {}
        self._disconnect_callbacks: Dict[str, List[DisconnectCallback]] = {}
        self._closing: set = set()

    async def scan_and_pick(self) -> DeviceHandle:
        if self._address:
            logger.info(f"Looking for BLE device {self._address} ({self._scan_timeout}s)...")
            try:
                device = await BleakScanner.find_device_by_address(self._address, timeout=self._scan_timeout)
            except BleakError as e:
                raise ConnectionError("BLE scan failed.", original_exception=e) from e
            if device is None:
                raise DeviceNotFoundError(f"Device {self._address} was not found.")
            return DeviceHandle(address=device.address, name=device.name, native=device)

        logger.info(f"Scanning for BLE readers ({self._scan_timeout}s)...")
        try:
            discovered = await BleakScanner.discover(timeout=self._scan_timeout, return_adv=True)
        except BleakError as e:
            raise ConnectionError("BLE scan failed.", original_exception=e) from e

        best = None
        best_rssi = None
        for _address, (device, adv) in discovered.items():
            name = device.name or adv.local_name or ""
            if not name:
                continue
            if self._name_prefixes and not any(name.startswith(p) for p in self._name_prefixes):
                continue
            rssi = adv.rssi if adv.rssi is not None else -127
            logger.debug(f"Candidate reader {name} ({device.address}), RSSI {rssi}")
            if best_rssi is None or rssi > best_rssi:
                best = (device, name)
                best_rssi = rssi

        if best is None:
            raise DeviceNotFoundError("No devices found.")
        device, name = best
        logger.info(f"Picked {name} ({device.address})")
        return DeviceHandle(address=device.address, name=name, native=device)

    async def connect(self, device: DeviceHandle) -> GattLink:
        client = self._clients.get(device.address)
        if client is not None and client.is_connected:
            return GattLink(device=device, native=client)

        logger.info(f"Connecting to {device}...")
        client = BleakClient(
            device.native if device.native is not None else device.address,
            disconnected_callback=self._handle_disconnect,
            timeout=self._connect_timeout,
        )
        await client.connect()
        self._clients[device.address] = client
        self._devices[device.address] = device
        logger.info(f"GATT connection to {device} established.")
        return GattLink(device=device, native=client)

    async def disconnect(self, device: DeviceHandle) -> None:
        client = self._clients.pop(device.address, None)
        self._devices.pop(device.address, None)
        self._disconnect_callbacks.pop(device.address, None)
        if client is None or not client.is_connected:
            return
        self._closing.add(device.address)
        try:
            await client.disconnect()
        finally:
            self._closing.discard(device.address)
        logger.info(f"Disconnected from {device}.")

    async def list_services(self, link: GattLink) -> List[ServiceHandle]:
        client: BleakClient = link.native
        return [ServiceHandle(uuid=service.uuid, link=link, native=service) for service in client.services]

    async def list_characteristics(self, service: ServiceHandle) -> List[CharacteristicHandle]:
        return [
            CharacteristicHandle(
                uuid=char.uuid,
                service_uuid=service.uuid,
                properties=CharacteristicProperties.from_bleak(char.properties),
                link=service.link,
                native=char,
            )
            for char in service.native.characteristics
        ]

    async def subscribe(self, characteristic: CharacteristicHandle, on_bytes: NotificationCallback) -> None:
        client = self._client_for(characteristic)

        def _notification_handler(_sender, data: bytearray) -> None:
            on_bytes(bytes(data))

        await client.start_notify(characteristic.native, _notification_handler)
        logger.debug(f"Notifications enabled on {characteristic.uuid}")

    async def unsubscribe(self, characteristic: CharacteristicHandle) -> None:
        client = self._client_for(characteristic)
        if not client.is_connected:
            return
        await client.stop_notify(characteristic.native)

    async def write(self, characteristic: CharacteristicHandle, data: bytes) -> None:
        client = self._client_for(characteristic)
        # Prefer acknowledged writes where the characteristic offers them
        response = characteristic.properties.write
        await client.write_gatt_char(characteristic.native, data, response=response)

    async def read(self, characteristic: CharacteristicHandle) -> bytes:
        client = self._client_for(characteristic)
        return bytes(await client.read_gatt_char(characteristic.native))

    def on_disconnect(self, device: DeviceHandle, callback: DisconnectCallback) -> None:
        callbacks = self._disconnect_callbacks.setdefault(device.address, [])
        if callback not in callbacks:
            callbacks.append(callback)

    def _client_for(self, characteristic: CharacteristicHandle) -> BleakClient:
        if characteristic.link is None or characteristic.link.native is None:
            raise ConnectionError(f"Characteristic {characteristic.uuid} is not bound to a connection.")
        return characteristic.link.native

    def _handle_disconnect(self, client: BleakClient) -> None:
        address = client.address
        if address in self._closing:
            return
        device = self._devices.get(address) or DeviceHandle(address=address)
        logger.warning(f"BLE link to {device} lost.")
        for callback in list(self._disconnect_callbacks.get(address, [])):
            try:
                callback(device)
            except Exception:
                logger.exception(f"Error in disconnect callback for {device}")

