# uhf_rfid_ble/core/negotiator.py

"""
Finds a GATT service/characteristic pair that carries the reader protocol.

Readers from different vendors expose the protocol on different services, so
connecting is a negotiation: an ordered list of strategies is tried against
the device, strictly one after another, until one produces a usable link.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Awaitable, Callable, List, Optional, Sequence, Tuple, Union

from uhf_rfid_ble.core.config import ConnectionConfig
from uhf_rfid_ble.core.error_classifier import ClassifiedError, ErrorClassifier
from uhf_rfid_ble.core.exceptions import ConnectionError, NegotiationError
from uhf_rfid_ble.transport.base import (
    BaseBleTransport, CharacteristicHandle, CharacteristicProperties, DeviceHandle,
    DisconnectCallback, GattLink, NotificationCallback, ServiceHandle,
)
from uhf_rfid_ble.utils import uuids
from uhf_rfid_ble.utils.uuids import normalize_uuid, uuids_equal

logger = logging.getLogger(__name__)

# --- Strategy names ---
DEFAULT_UUIDS = "Default UUIDs"
SAVED_UUIDS = "Saved UUIDs"
UUID_VARIATIONS = "UUID Format Variations"
QUICK_CONNECT = "Quick Connect"
AUTO_DISCOVER = "Auto-Discover"
BRUTE_FORCE = "Brute Force"
MANUAL = "Manual"

# Service/characteristic spellings tried by the variations strategy, normalised before use
UUID_FORMAT_VARIATIONS: Tuple[Tuple[str, str], ...] = (
    (uuids.RFID_SERVICE_UUID, uuids.RFID_NOTIFY_CHAR_UUID),
    ("fff0", "fff1"),
    (uuids.NORDIC_UART_SERVICE_UUID, uuids.NORDIC_UART_RX_NOTIFY_UUID),
    (uuids.RFID_SERVICE_UUID, "fff1"),
    ("fff0", uuids.RFID_NOTIFY_CHAR_UUID),
)

# (service, characteristic, label) combinations used by common reader firmwares
QUICK_CONNECT_COMBOS: Tuple[Tuple[str, str, str], ...] = (
    (uuids.RFID_SERVICE_UUID, uuids.RFID_NOTIFY_CHAR_UUID, "Standard RFID Service"),
    (uuids.NORDIC_UART_SERVICE_UUID, uuids.NORDIC_UART_RX_NOTIFY_UUID, "Nordic UART Service (RX/Notify)"),
    (uuids.NORDIC_UART_SERVICE_UUID, uuids.NORDIC_UART_TX_WRITE_UUID, "Nordic UART Service (TX/Write)"),
    (uuids.RFID_SERVICE_UUID, uuids.RFID_ALT_CHAR_UUID, "Standard RFID Service (Alt Char)"),
)


class NegotiationState(Enum):
    IDLE = auto()
    TRYING_STRATEGY = auto()
    CONNECTED = auto()
    EXHAUSTED = auto()

    def __str__(self):
        return self.name


@dataclass(frozen=True)
class ConnectionCandidate:
    service_uuid: str
    characteristic_uuid: str
    properties: CharacteristicProperties


@dataclass(frozen=True)
class LinkHandle:
    """Everything a session needs about a negotiated link, produced in one piece."""
    device: DeviceHandle
    link: GattLink
    service_uuid: str
    characteristic: CharacteristicHandle
    subscribed: bool
    strategy_name: str
    mode: str # e.g. "Quick Connect: Nordic UART Service (RX/Notify)", "Brute Force: Read"

    @property
    def characteristic_uuid(self) -> str:
        return self.characteristic.uuid

    @property
    def candidate(self) -> ConnectionCandidate:
        return ConnectionCandidate(self.service_uuid, self.characteristic.uuid, self.characteristic.properties)


@dataclass(frozen=True)
class StrategyFailure:
    strategy_name: str
    error: ClassifiedError


@dataclass(frozen=True)
class NegotiationSuccess:
    candidate: ConnectionCandidate
    strategy_name: str
    link: LinkHandle

    @property
    def succeeded(self) -> bool:
        return True


@dataclass(frozen=True)
class NegotiationExhausted:
    failures: Tuple[StrategyFailure, ...]

    @property
    def succeeded(self) -> bool:
        return False

    @property
    def last_error(self) -> Optional[ClassifiedError]:
        return self.failures[-1].error if self.failures else None


NegotiationOutcome = Union[NegotiationSuccess, NegotiationExhausted]

# A strategy attempt either returns a LinkHandle or raises
StrategyAttempt = Callable[[DeviceHandle, NotificationCallback], Awaitable[LinkHandle]]


@dataclass(frozen=True)
class Strategy:
    name: str
    attempt: StrategyAttempt


class ConnectionNegotiator:
    """
    Runs the connection strategies against a device.

    Strategies never raise past the negotiator: each failure is classified and
    recorded, and the next strategy is tried. The first success wins; its
    pair is persisted in the ConnectionConfig and the disconnect observer is
    registered with the transport.
    """

    def __init__(self,
                 transport: BaseBleTransport,
                 config: Optional[ConnectionConfig] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 strategies: Optional[Sequence[Strategy]] = None):
        """
        Args:
            transport: The BLE transport to negotiate over.
            config: Where the winning pair is persisted. Defaults to an in-memory config.
            classifier: Classifies strategy failures. Defaults to ErrorClassifier().
            strategies: Replaces the built-in strategy list when given.
        """
        self._transport = transport
        self._config = config if config is not None else ConnectionConfig()
        self._classifier = classifier if classifier is not None else ErrorClassifier()
        self._strategies: List[Strategy] = list(strategies) if strategies is not None else self.default_strategies()
        self._state = NegotiationState.IDLE
        self._current_strategy: Optional[int] = None
        self._running = False

    def default_strategies(self) -> List[Strategy]:
        return [
            Strategy(DEFAULT_UUIDS, self._try_default_uuids),
            Strategy(SAVED_UUIDS, self._try_saved_uuids),
            Strategy(UUID_VARIATIONS, self._try_uuid_variations),
            Strategy(QUICK_CONNECT, self._try_quick_connect),
            Strategy(AUTO_DISCOVER, self._try_auto_discover),
            Strategy(BRUTE_FORCE, self._try_brute_force),
        ]

    # --- Properties ---

    @property
    def state(self) -> NegotiationState:
        return self._state

    @property
    def current_strategy(self) -> Optional[int]:
        """Index of the strategy being tried, or None outside TRYING_STRATEGY."""
        return self._current_strategy

    @property
    def current_strategy_name(self) -> Optional[str]:
        if self._current_strategy is None:
            return None
        return self._strategies[self._current_strategy].name

    @property
    def strategies(self) -> List[Strategy]:
        return list(self._strategies)

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    def reset(self) -> None:
        """Returns to IDLE, e.g. after the negotiated link was closed."""
        if self._running:
            return
        self._state = NegotiationState.IDLE
        self._current_strategy = None

    # --- Negotiation ---

    async def negotiate(self, device: DeviceHandle, on_bytes: NotificationCallback,
                        on_disconnect: Optional[DisconnectCallback] = None) -> NegotiationOutcome:
        """
        Runs one negotiation pass.

        Args:
            device: The picked device.
            on_bytes: Receives every notification payload from the winning characteristic.
            on_disconnect: Registered with the transport once a strategy succeeds.

        Returns:
            NegotiationSuccess, or NegotiationExhausted with one classified
            failure per strategy tried.

        Raises:
            NegotiationError: If a negotiation is already running.
        """
        self._begin()
        failures: List[StrategyFailure] = []
        try:
            for index, strategy in enumerate(self._strategies):
                self._state = NegotiationState.TRYING_STRATEGY
                self._current_strategy = index
                logger.info(f"Trying: {strategy.name}...")
                try:
                    handle = await strategy.attempt(device, on_bytes)
                except asyncio.CancelledError:
                    self._state = NegotiationState.IDLE
                    self._current_strategy = None
                    raise
                except Exception as e:
                    classified = self._classifier.classify_exception(e)
                    failures.append(StrategyFailure(strategy.name, classified))
                    logger.warning(f"{strategy.name} failed: {classified}")
                    continue
                logger.info(f"Success with {strategy.name}! ({handle.mode})")
                return self._succeed(handle, on_disconnect)

            self._state = NegotiationState.EXHAUSTED
            self._current_strategy = None
            logger.warning(f"All connection strategies failed for {device}.")
            return NegotiationExhausted(tuple(failures))
        finally:
            self._running = False

    async def connect_manual(self, device: DeviceHandle, service_uuid: str, characteristic_uuid: str,
                             on_bytes: NotificationCallback,
                             on_disconnect: Optional[DisconnectCallback] = None) -> NegotiationOutcome:
        """
        Connects to an operator-chosen service/characteristic pair (any UUID
        notation) and persists it on success.

        Raises:
            NegotiationError: If a negotiation is already running.
        """
        self._begin()
        try:
            self._state = NegotiationState.TRYING_STRATEGY
            self._current_strategy = None
            try:
                link = await self._transport.connect(device)
                characteristic = await self._resolve(link, normalize_uuid(service_uuid), normalize_uuid(characteristic_uuid))
                handle = await self._establish(device, link, characteristic, on_bytes, MANUAL, MANUAL)
            except asyncio.CancelledError:
                self._state = NegotiationState.IDLE
                raise
            except Exception as e:
                classified = self._classifier.classify_exception(e)
                logger.warning(f"Manual connection to {service_uuid}/{characteristic_uuid} failed: {classified}")
                self._state = NegotiationState.EXHAUSTED
                return NegotiationExhausted((StrategyFailure(MANUAL, classified),))
            return self._succeed(handle, on_disconnect)
        finally:
            self._running = False

    async def list_candidates(self, device: DeviceHandle) -> List[ConnectionCandidate]:
        """
        Enumerates every characteristic of every service, for manual selection.
        Services whose characteristics cannot be listed are skipped.
        """
        link = await self._transport.connect(device)
        candidates = []
        for service in await self._transport.list_services(link):
            try:
                characteristics = await self._transport.list_characteristics(service)
            except Exception as e:
                logger.warning(f"Error accessing service {service.uuid}: {e}")
                continue
            for characteristic in characteristics:
                candidates.append(ConnectionCandidate(service.uuid, characteristic.uuid, characteristic.properties))
        logger.debug(f"Found {len(candidates)} candidate characteristics on {device}")
        return candidates

    def _begin(self) -> None:
        if self._running:
            raise NegotiationError("A connection negotiation is already in progress.")
        self._running = True

    def _succeed(self, handle: LinkHandle, on_disconnect: Optional[DisconnectCallback]) -> NegotiationSuccess:
        try:
            self._config.save(handle.service_uuid, handle.characteristic_uuid)
        except OSError as e:
            logger.error(f"Could not persist connection UUIDs: {e}")
        if on_disconnect is not None:
            self._transport.on_disconnect(handle.device, on_disconnect)
        self._state = NegotiationState.CONNECTED
        self._current_strategy = None
        return NegotiationSuccess(candidate=handle.candidate, strategy_name=handle.strategy_name, link=handle)

    # --- Shared steps ---

    def _not_found(self, message: str) -> ConnectionError:
        return ConnectionError(message, classified=self._classifier.classify("NotFoundError", message))

    async def _resolve(self, link: GattLink, service_uuid: str, characteristic_uuid: str) -> CharacteristicHandle:
        service = await self._transport.get_service(link, service_uuid)
        if service is None:
            raise self._not_found(f"Service {service_uuid} not found.")
        characteristic = await self._transport.get_characteristic(service, characteristic_uuid)
        if characteristic is None:
            raise self._not_found(f"Characteristic {characteristic_uuid} not found in service {service_uuid}.")
        return characteristic

    async def _establish(self, device: DeviceHandle, link: GattLink, characteristic: CharacteristicHandle,
                         on_bytes: NotificationCallback, strategy_name: str, mode: str,
                         tolerate_subscribe_failure: bool = False) -> LinkHandle:
        """Subscribes when the characteristic supports it and builds the LinkHandle."""
        subscribed = False
        if characteristic.properties.can_subscribe:
            try:
                await self._transport.subscribe(characteristic, on_bytes)
                subscribed = True
            except Exception as e:
                if not tolerate_subscribe_failure:
                    raise
                logger.warning(f"Could not enable notifications on {characteristic.uuid}, but continuing: {e}")
        return LinkHandle(
            device=device,
            link=link,
            service_uuid=characteristic.service_uuid,
            characteristic=characteristic,
            subscribed=subscribed,
            strategy_name=strategy_name,
            mode=mode,
        )

    # --- Strategies ---

    async def _try_default_uuids(self, device: DeviceHandle, on_bytes: NotificationCallback) -> LinkHandle:
        link = await self._transport.connect(device)
        characteristic = await self._resolve(link, uuids.RFID_SERVICE_UUID, uuids.RFID_NOTIFY_CHAR_UUID)
        return await self._establish(device, link, characteristic, on_bytes, DEFAULT_UUIDS, DEFAULT_UUIDS)

    async def _try_saved_uuids(self, device: DeviceHandle, on_bytes: NotificationCallback) -> LinkHandle:
        saved = self._config.load()
        if saved is None:
            raise NegotiationError("No saved UUIDs")
        service_uuid, characteristic_uuid = saved
        link = await self._transport.connect(device)
        characteristic = await self._resolve(link, service_uuid, characteristic_uuid)
        return await self._establish(device, link, characteristic, on_bytes, SAVED_UUIDS, SAVED_UUIDS)

    async def _try_uuid_variations(self, device: DeviceHandle, on_bytes: NotificationCallback) -> LinkHandle:
        link = await self._transport.connect(device)
        last_error: Optional[Exception] = None
        for service_variant, characteristic_variant in UUID_FORMAT_VARIATIONS:
            service_uuid = normalize_uuid(service_variant)
            characteristic_uuid = normalize_uuid(characteristic_variant)
            logger.debug(f"Trying UUID variation: Service={service_uuid}, Char={characteristic_uuid}")
            try:
                characteristic = await self._resolve(link, service_uuid, characteristic_uuid)
                return await self._establish(device, link, characteristic, on_bytes, UUID_VARIATIONS, "UUID Variation")
            except Exception as e:
                last_error = e
        raise ConnectionError("All UUID variations failed.", original_exception=last_error)

    async def _try_quick_connect(self, device: DeviceHandle, on_bytes: NotificationCallback) -> LinkHandle:
        link = await self._transport.connect(device)
        services = await self._transport.list_services(link)
        last_error: Optional[Exception] = None
        for service_uuid, characteristic_uuid, label in QUICK_CONNECT_COMBOS:
            service = _find_service(services, service_uuid)
            if service is None:
                logger.debug(f"Service {service_uuid} not found, skipping {label}...")
                continue
            try:
                characteristic = await self._transport.get_characteristic(service, characteristic_uuid)
            except Exception as e:
                last_error = e
                continue
            if characteristic is None:
                logger.debug(f"Characteristic {characteristic_uuid} not found, trying next...")
                continue
            return await self._establish(device, link, characteristic, on_bytes, QUICK_CONNECT,
                                         f"Quick Connect: {label}", tolerate_subscribe_failure=True)
        if last_error is not None:
            raise ConnectionError("Quick Connect: no common combination worked.", original_exception=last_error)
        raise self._not_found("Quick Connect: no common combination worked.")

    async def _try_auto_discover(self, device: DeviceHandle, on_bytes: NotificationCallback) -> LinkHandle:
        link = await self._transport.connect(device)
        last_error: Optional[Exception] = None
        for service in await self._transport.list_services(link):
            try:
                characteristics = await self._transport.list_characteristics(service)
            except Exception as e:
                logger.warning(f"Error accessing service {service.uuid}: {e}")
                last_error = e
                continue
            for characteristic in characteristics:
                properties = characteristic.properties
                if not (properties.can_subscribe or properties.can_write):
                    continue
                try:
                    return await self._establish(device, link, characteristic, on_bytes, AUTO_DISCOVER, "Auto-discovered")
                except Exception as e:
                    logger.warning(f"Could not enable notifications on {characteristic.uuid}: {e}")
                    last_error = e
        if last_error is not None:
            raise ConnectionError("Auto-discover found no usable characteristic.", original_exception=last_error)
        raise self._not_found("Auto-discover found no usable characteristic.")

    async def _try_brute_force(self, device: DeviceHandle, on_bytes: NotificationCallback) -> LinkHandle:
        link = await self._transport.connect(device)
        services = await self._transport.list_services(link)
        logger.debug(f"Brute Force: Found {len(services)} services")
        last_error: Optional[Exception] = None
        for service in services:
            try:
                characteristics = await self._transport.list_characteristics(service)
            except Exception as e:
                last_error = e
                continue
            for characteristic in characteristics:
                for method in ("notify", "indicate", "read", "write"):
                    try:
                        handle = await self._brute_force_method(device, link, characteristic, on_bytes, method)
                    except Exception as e:
                        last_error = e
                        continue
                    if handle is not None:
                        logger.info(f"Brute Force success with {service.uuid}/{characteristic.uuid} using {method}")
                        return handle
        if last_error is not None:
            raise ConnectionError("Brute force failed - no suitable combination found.", original_exception=last_error)
        raise self._not_found("Brute force failed - no suitable combination found.")

    async def _brute_force_method(self, device: DeviceHandle, link: GattLink, characteristic: CharacteristicHandle,
                                  on_bytes: NotificationCallback, method: str) -> Optional[LinkHandle]:
        properties = characteristic.properties
        subscribed = False
        if method == "notify" or method == "indicate":
            if not getattr(properties, method):
                return None
            await self._transport.subscribe(characteristic, on_bytes)
            subscribed = True
        elif method == "read":
            if not properties.read:
                return None
            # A read-only target is only accepted if a test read succeeds
            await self._transport.read(characteristic)
        elif not properties.can_write:
            return None
        return LinkHandle(
            device=device,
            link=link,
            service_uuid=characteristic.service_uuid,
            characteristic=characteristic,
            subscribed=subscribed,
            strategy_name=BRUTE_FORCE,
            mode=f"Brute Force: {method.capitalize()}",
        )


def _find_service(services: List[ServiceHandle], service_uuid: str) -> Optional[ServiceHandle]:
    for service in services:
        if uuids_equal(service.uuid, service_uuid):
            return service
    return None
