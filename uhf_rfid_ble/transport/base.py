# uhf_rfid_ble/transport/base.py

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional

from uhf_rfid_ble.utils.uuids import uuids_equal

# Notification payloads are delivered synchronously, in arrival order
NotificationCallback = Callable[[bytes], None]
DisconnectCallback = Callable[["DeviceHandle"], None]


@dataclass(frozen=True)
class CharacteristicProperties:
    notify: bool = False
    indicate: bool = False
    read: bool = False
    write: bool = False
    write_without_response: bool = False

    @classmethod
    def from_bleak(cls, properties: Iterable[str]) -> "CharacteristicProperties":
        """Builds the flags from a bleak characteristic's ``properties`` strings."""
        names = set(properties or ())
        return cls(
            notify="notify" in names,
            indicate="indicate" in names,
            read="read" in names,
            write="write" in names,
            write_without_response="write-without-response" in names,
        )

    @property
    def can_subscribe(self) -> bool:
        return self.notify or self.indicate

    @property
    def can_write(self) -> bool:
        return self.write or self.write_without_response

    def labels(self) -> List[str]:
        names = []
        if self.notify:
            names.append("notify")
        if self.indicate:
            names.append("indicate")
        if self.read:
            names.append("read")
        if self.write:
            names.append("write")
        if self.write_without_response:
            names.append("write-without-response")
        return names

    def __str__(self):
        return ", ".join(self.labels()) or "none"


@dataclass(frozen=True)
class DeviceHandle:
    """A BLE peripheral picked by a scan."""
    address: str
    name: Optional[str] = None
    native: Any = field(default=None, compare=False, repr=False) # e.g. a bleak BLEDevice

    def __str__(self):
        return f"{self.name or 'Unknown'} ({self.address})"


@dataclass(frozen=True)
class GattLink:
    """An established GATT connection to a device."""
    device: DeviceHandle
    native: Any = field(default=None, compare=False, repr=False) # e.g. a BleakClient


@dataclass(frozen=True)
class ServiceHandle:
    uuid: str
    link: GattLink = field(compare=False, repr=False)
    native: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class CharacteristicHandle:
    uuid: str
    service_uuid: str
    properties: CharacteristicProperties
    link: Optional[GattLink] = field(default=None, compare=False, repr=False)
    native: Any = field(default=None, compare=False, repr=False)


class BaseBleTransport(ABC):
    """
    Abstract interface to the host's BLE stack.

    Implementations wrap a concrete stack (bleak, a simulated reader in tests).
    Failures are raised as the stack's own exceptions or as TransportError
    subclasses; the negotiator and session classify them.
    """

    @abstractmethod
    async def scan_and_pick(self) -> DeviceHandle:
        """
        Finds the reader to connect to.

        Raises:
            DeviceNotFoundError: If no suitable device was found or the pick was cancelled.
        """
        pass

    @abstractmethod
    async def connect(self, device: DeviceHandle) -> GattLink:
        """
        Connects to the device's GATT server. Returns the existing link when
        the device is already connected.
        """
        pass

    @abstractmethod
    async def disconnect(self, device: DeviceHandle) -> None:
        """Drops the link. Safe to call when not connected."""
        pass

    @abstractmethod
    async def list_services(self, link: GattLink) -> List[ServiceHandle]:
        pass

    @abstractmethod
    async def list_characteristics(self, service: ServiceHandle) -> List[CharacteristicHandle]:
        pass

    @abstractmethod
    async def subscribe(self, characteristic: CharacteristicHandle, on_bytes: NotificationCallback) -> None:
        """Starts notifications (or indications) and routes each payload to ``on_bytes``."""
        pass

    @abstractmethod
    async def unsubscribe(self, characteristic: CharacteristicHandle) -> None:
        pass

    @abstractmethod
    async def write(self, characteristic: CharacteristicHandle, data: bytes) -> None:
        pass

    @abstractmethod
    async def read(self, characteristic: CharacteristicHandle) -> bytes:
        pass

    @abstractmethod
    def on_disconnect(self, device: DeviceHandle, callback: DisconnectCallback) -> None:
        """Registers ``callback`` to run when the link to ``device`` drops unexpectedly."""
        pass

    async def get_service(self, link: GattLink, service_uuid: str) -> Optional[ServiceHandle]:
        """Looks up one service by UUID among ``list_services``."""
        for service in await self.list_services(link):
            if uuids_equal(service.uuid, service_uuid):
                return service
        return None

    async def get_characteristic(self, service: ServiceHandle, characteristic_uuid: str) -> Optional[CharacteristicHandle]:
        for characteristic in await self.list_characteristics(service):
            if uuids_equal(characteristic.uuid, characteristic_uuid):
                return characteristic
        return None
