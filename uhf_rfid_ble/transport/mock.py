# uhf_rfid_ble/transport/mock.py

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple, Union

from uhf_rfid_ble.transport.base import (
    BaseBleTransport, CharacteristicHandle, CharacteristicProperties, DeviceHandle,
    DisconnectCallback, GattLink, NotificationCallback, ServiceHandle,
)
from uhf_rfid_ble.utils.uuids import normalize_uuid

logger = logging.getLogger(__name__)


# --- Simulated GATT errors ---
# Named after the error categories a BLE host reports, so the ErrorClassifier
# treats them exactly like the real thing.

class SimulatedGattError(Exception):
    pass

class NetworkError(SimulatedGattError):
    pass

class InvalidStateError(SimulatedGattError):
    pass

class SecurityError(SimulatedGattError):
    pass

class NotFoundError(SimulatedGattError):
    pass

class NotSupportedError(SimulatedGattError):
    pass

class OperationError(SimulatedGattError):
    pass


# A responder maps each written frame to the frames the simulated reader sends back
Responder = Callable[[bytes], Union[None, bytes, List[bytes]]]

NOTIFY_WRITE = CharacteristicProperties(notify=True, write=True, write_without_response=True)


@dataclass
class _Failure:
    operation: str
    error: BaseException
    target: Optional[str] # Lower-case normalised UUID or device address; None matches any
    remaining: Optional[int] # None means every matching call fails


class MockBleTransport(BaseBleTransport):
    """
    A simulated BLE reader for testing and demos.

    Holds a GATT table of services and characteristics, records every call in
    ``calls``, keeps written frames in a sent-data queue and delivers replies
    (queued with ``add_response`` or produced by a responder) to subscribed
    callbacks on the next loop iteration. Any operation can be made to fail
    with ``fail``.
    """

    def __init__(self,
                 services: Optional[Dict[str, Dict[str, CharacteristicProperties]]] = None,
                 device: Optional[DeviceHandle] = None,
                 name: str = "Mock"):
        """
        Args:
            services: Mapping of service UUID to {characteristic UUID: properties}.
                      Defaults to the standard fff0/fff1 reader layout.
            device: The device ``scan_and_pick`` returns. Defaults to "UHF-Reader".
            name: A name for this mock instance for logging purposes.
        """
        self._name = name
        self._device = device if device is not None else DeviceHandle(address="AA:BB:CC:DD:EE:FF", name="UHF-Reader")
        self._device_present = True
        self._services: Dict[str, Dict[str, CharacteristicProperties]] = {}
        if services is None:
            services = {"fff0": {"fff1": NOTIFY_WRITE}}
        for service_uuid, characteristics in services.items():
            self.add_service(service_uuid, characteristics)

        self._connected = False
        self._connection_delay = 0.0
        self._subscriptions: Dict[str, NotificationCallback] = {}
        self._disconnect_callbacks: List[DisconnectCallback] = []
        self._read_values: Dict[str, bytes] = {}
        self._failures: List[_Failure] = []
        self._response_queue: deque[bytes] = deque()
        self._sent_data_queue: deque[Tuple[str, bytes]] = deque()
        self._responder: Optional[Responder] = None
        self.calls: List[Tuple[str, Optional[str]]] = []

        logger.info(f"MockBleTransport '{self._name}' initialized.")

    # --- GATT table ---

    def add_service(self, service_uuid: str, characteristics: Dict[str, CharacteristicProperties]) -> None:
        key = _key(service_uuid)
        table = self._services.setdefault(key, {})
        for char_uuid, properties in characteristics.items():
            table[_key(char_uuid)] = properties

    def remove_device(self) -> None:
        """Makes the next scans find nothing."""
        self._device_present = False

    @property
    def device(self) -> DeviceHandle:
        return self._device

    def is_connected(self) -> bool:
        return self._connected

    def is_subscribed(self, characteristic_uuid: str) -> bool:
        return _key(characteristic_uuid) in self._subscriptions

    # --- BaseBleTransport ---

    async def scan_and_pick(self) -> DeviceHandle:
        self._record("scan_and_pick", None)
        self._maybe_fail("scan_and_pick", None)
        if not self._device_present:
            raise NotFoundError("User cancelled the requestDevice() chooser.")
        return self._device

    async def connect(self, device: DeviceHandle) -> GattLink:
        self._record("connect", _key(device.address))
        self._maybe_fail("connect", _key(device.address))
        if not self._connected:
            logger.info(f"[{self._name}] Simulating GATT connection to {device}...")
            if self._connection_delay:
                await asyncio.sleep(self._connection_delay)
            self._connected = True
        return GattLink(device=device, native=self)

    async def disconnect(self, device: DeviceHandle) -> None:
        self._record("disconnect", _key(device.address))
        if not self._connected:
            return
        logger.info(f"[{self._name}] Simulating disconnection...")
        self._connected = False
        self._subscriptions.clear()

    async def list_services(self, link: GattLink) -> List[ServiceHandle]:
        self._record("list_services", None)
        self._require_connected()
        self._maybe_fail("list_services", None)
        return [ServiceHandle(uuid=uuid, link=link) for uuid in self._services]

    async def list_characteristics(self, service: ServiceHandle) -> List[CharacteristicHandle]:
        self._record("list_characteristics", _key(service.uuid))
        self._require_connected()
        self._maybe_fail("list_characteristics", _key(service.uuid))
        table = self._services.get(_key(service.uuid))
        if table is None:
            raise NotFoundError(f"No Services matching UUID {service.uuid} found in Device.")
        return [
            CharacteristicHandle(uuid=uuid, service_uuid=_key(service.uuid), properties=properties, link=service.link)
            for uuid, properties in table.items()
        ]

    async def subscribe(self, characteristic: CharacteristicHandle, on_bytes: NotificationCallback) -> None:
        key = _key(characteristic.uuid)
        self._record("subscribe", key)
        self._require_connected()
        self._maybe_fail("subscribe", key)
        if not characteristic.properties.can_subscribe:
            raise NotSupportedError("GATT operation not permitted.")
        self._subscriptions[key] = on_bytes

    async def unsubscribe(self, characteristic: CharacteristicHandle) -> None:
        key = _key(characteristic.uuid)
        self._record("unsubscribe", key)
        self._subscriptions.pop(key, None)

    async def write(self, characteristic: CharacteristicHandle, data: bytes) -> None:
        key = _key(characteristic.uuid)
        self._record("write", key)
        self._require_connected()
        self._maybe_fail("write", key)
        if not characteristic.properties.can_write:
            raise NotSupportedError("GATT operation not permitted.")

        logger.debug(f"[{self._name}] Simulating write: {bytes(data).hex(' ').upper()}")
        self._sent_data_queue.append((key, bytes(data)))
        self._schedule_replies(bytes(data))

    async def read(self, characteristic: CharacteristicHandle) -> bytes:
        key = _key(characteristic.uuid)
        self._record("read", key)
        self._require_connected()
        self._maybe_fail("read", key)
        if not characteristic.properties.read:
            raise NotSupportedError("GATT operation not permitted.")
        return self._read_values.get(key, b"")

    def on_disconnect(self, device: DeviceHandle, callback: DisconnectCallback) -> None:
        if callback not in self._disconnect_callbacks:
            self._disconnect_callbacks.append(callback)

    # --- Mock Control Methods ---

    def fail(self, operation: str, error: BaseException, target: Optional[str] = None, times: Optional[int] = None) -> None:
        """
        Makes matching calls raise ``error``.

        Args:
            operation: A transport method name, e.g. "connect", "subscribe", "write".
            error: The exception to raise.
            target: A UUID (any notation) or device address to restrict the failure to.
            times: How many calls fail before the operation recovers; None for all.
        """
        self._failures.append(_Failure(operation, error, _key(target) if target else None, times))

    def clear_failures(self) -> None:
        self._failures.clear()

    def set_read_value(self, characteristic_uuid: str, value: bytes) -> None:
        self._read_values[_key(characteristic_uuid)] = bytes(value)

    def set_responder(self, responder: Optional[Responder]) -> None:
        """Installs a function that answers each written frame."""
        self._responder = responder

    def set_connection_delay(self, delay: float) -> None:
        self._connection_delay = max(0, delay)

    def add_response(self, response_frame: bytes) -> None:
        """Queues a frame to be delivered after the next write."""
        logger.debug(f"[{self._name}] Adding mock response: {response_frame.hex(' ').upper()}")
        self._response_queue.append(bytes(response_frame))

    def push_notification(self, data: bytes, characteristic_uuid: Optional[str] = None) -> None:
        """Delivers ``data`` synchronously, as an unsolicited notification."""
        if characteristic_uuid is not None:
            targets = [self._subscriptions[_key(characteristic_uuid)]] if self.is_subscribed(characteristic_uuid) else []
        else:
            targets = list(self._subscriptions.values())
        if not targets:
            logger.warning(f"[{self._name}] Notification pushed but nothing is subscribed.")
        for callback in targets:
            callback(bytes(data))

    def simulate_disconnect(self) -> None:
        """Drops the link as if the reader went out of range."""
        logger.info(f"[{self._name}] Simulating unexpected link loss.")
        self._connected = False
        self._subscriptions.clear()
        for callback in list(self._disconnect_callbacks):
            callback(self._device)

    def get_sent_data(self) -> Optional[bytes]:
        """Retrieves the oldest written frame (FIFO)."""
        try:
            return self._sent_data_queue.popleft()[1]
        except IndexError:
            return None

    def get_all_sent_data(self) -> List[bytes]:
        """Retrieves and clears all written frames."""
        data = [frame for _, frame in self._sent_data_queue]
        self._sent_data_queue.clear()
        return data

    def clear_send_queue(self) -> None:
        self._sent_data_queue.clear()

    def calls_of(self, operation: str) -> List[Optional[str]]:
        return [target for name, target in self.calls if name == operation]

    # --- Internals ---

    def _record(self, operation: str, target: Optional[str]) -> None:
        self.calls.append((operation, target))

    def _require_connected(self) -> None:
        if not self._connected:
            raise NetworkError("GATT Server is disconnected. Cannot perform GATT operations.")

    def _maybe_fail(self, operation: str, target: Optional[str]) -> None:
        for failure in self._failures:
            if failure.operation != operation:
                continue
            if failure.target is not None and failure.target != target:
                continue
            if failure.remaining is not None:
                if failure.remaining <= 0:
                    continue
                failure.remaining -= 1
            raise failure.error

    def _schedule_replies(self, frame: bytes) -> None:
        replies: List[bytes] = []
        if self._response_queue:
            replies.append(self._response_queue.popleft())
        if self._responder is not None:
            produced = self._responder(frame)
            if isinstance(produced, (bytes, bytearray)):
                replies.append(bytes(produced))
            elif produced:
                replies.extend(bytes(r) for r in produced)
        if not replies:
            return
        loop = asyncio.get_running_loop()
        for reply in replies:
            loop.call_soon(self._deliver, reply)

    def _deliver(self, data: bytes) -> None:
        if not self._connected:
            return
        self.push_notification(data)


def _key(uuid: Optional[str]) -> Optional[str]:
    if uuid is None:
        return None
    return normalize_uuid(uuid).lower()
