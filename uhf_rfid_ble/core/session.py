# uhf_rfid_ble/core/session.py

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Coroutine, List, Optional, Set, Type, Union

from uhf_rfid_ble.core.aggregator import TagAggregator
from uhf_rfid_ble.core.config import ConnectionConfig, DeviceHistory, ReaderPreferences
from uhf_rfid_ble.core.dispatcher import EventCallback, EventDispatcher
from uhf_rfid_ble.core.error_classifier import ClassifiedError, ErrorCategory, ErrorClassifier
from uhf_rfid_ble.core.exceptions import (
    CommandError, ConnectionError, DeviceNotFoundError, NegotiationError,
    NegotiationExhaustedError, RfidBleError, TimeoutError, TransportError, WriteError,
)
from uhf_rfid_ble.core.negotiator import (
    ConnectionCandidate, ConnectionNegotiator, LinkHandle, NegotiationOutcome,
    NegotiationSuccess,
)
from uhf_rfid_ble.core.status import ConnectionStatus
from uhf_rfid_ble.protocols import constants as const
from uhf_rfid_ble.protocols.codec import FrameCodec
from uhf_rfid_ble.protocols.commands import (
    Command, GetFrequency, GetPower, InventorySingle, ReadTag, SetFilter,
    SetFrequency, SetPower, StartInventory, StopInventory, WriteTag,
)
from uhf_rfid_ble.protocols.events import (
    FrequencyReport, InboundEvent, InventoryStopped, Malformed, PowerReport,
    ReadResult, TagReport, WriteResult,
)
from uhf_rfid_ble.transport.base import BaseBleTransport, DeviceHandle

logger = logging.getLogger(__name__)

# Callback type hints
StatusChangeCallback = Callable[[ConnectionStatus], Coroutine[Any, Any, None]]
TickCallback = Callable[[float], Coroutine[Any, Any, None]]

DEFAULT_RESPONSE_TIMEOUT = 2.0 # Seconds to wait for a command reply
DEFAULT_TICK_INTERVAL = 0.1 # Seconds between inventory elapsed-time ticks
TID_WORD_LENGTH = 6


class ReaderSession:
    """
    Main class for working with a BLE UHF RFID reader.

    Negotiates a link through the ConnectionNegotiator, sends encoded commands
    over it and turns notifications into events: tag reports are folded into
    the TagAggregator, and every event is handed to the EventDispatcher, which
    resolves awaited replies and runs registered callbacks one at a time.
    """

    def __init__(self,
                 transport: BaseBleTransport,
                 config: Optional[ConnectionConfig] = None,
                 preferences: Optional[ReaderPreferences] = None,
                 history: Optional[DeviceHistory] = None,
                 negotiator: Optional[ConnectionNegotiator] = None,
                 aggregator: Optional[TagAggregator] = None,
                 classifier: Optional[ErrorClassifier] = None,
                 codec: Optional[FrameCodec] = None,
                 response_timeout: float = DEFAULT_RESPONSE_TIMEOUT,
                 tick_interval: float = DEFAULT_TICK_INTERVAL):
        """
        Initializes the session.

        Args:
            transport: An instance of a BaseBleTransport implementation.
            config: Persisted connection pair. Ignored when ``negotiator`` is given.
            preferences: Operator preferences (power, region, auto-reconnect...).
            history: Where successfully connected devices are remembered.
            negotiator: A pre-built negotiator; built from transport/config/classifier if omitted.
            aggregator: The tag table. A fresh one is created if omitted.
            classifier: Classifies transport failures.
            codec: Frame encoder/decoder.
            response_timeout: Default timeout in seconds for awaited replies.
            tick_interval: Seconds between elapsed-time ticks while scanning.
        """
        if not isinstance(transport, BaseBleTransport):
            raise TypeError("transport must be an instance of BaseBleTransport")

        self._transport = transport
        self._classifier = classifier if classifier is not None else ErrorClassifier()
        self._negotiator = negotiator if negotiator is not None else ConnectionNegotiator(
            transport, config=config, classifier=self._classifier)
        self._preferences = preferences if preferences is not None else ReaderPreferences()
        self._history = history
        self._aggregator = aggregator if aggregator is not None else TagAggregator()
        self._codec = codec if codec is not None else FrameCodec()
        self._dispatcher = EventDispatcher()
        self._response_timeout = response_timeout
        self._tick_interval = tick_interval

        self._state = ConnectionStatus.DISCONNECTED
        self._link: Optional[LinkHandle] = None
        self._last_device: Optional[DeviceHandle] = None
        self._last_outcome: Optional[NegotiationOutcome] = None
        self._last_error: Optional[ClassifiedError] = None
        self._scanning = False
        self._closing = False

        self._status_callbacks: List[StatusChangeCallback] = []
        self._tick_callbacks: List[TickCallback] = []

        # Created on connect, so the session can be built outside a running loop
        self._event_queue: Optional[asyncio.Queue] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._tick_task: Optional[asyncio.Task] = None
        self._background_tasks: Set[asyncio.Task] = set()

        logger.debug(f"ReaderSession initialized with transport: {type(transport).__name__}")

    # --- Properties ---

    @property
    def status(self) -> ConnectionStatus:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionStatus.CONNECTED and self._link is not None

    @property
    def is_scanning(self) -> bool:
        return self._scanning

    @property
    def link(self) -> Optional[LinkHandle]:
        return self._link

    @property
    def device(self) -> Optional[DeviceHandle]:
        return self._link.device if self._link else None

    @property
    def aggregator(self) -> TagAggregator:
        return self._aggregator

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    @property
    def negotiator(self) -> ConnectionNegotiator:
        return self._negotiator

    @property
    def preferences(self) -> ReaderPreferences:
        return self._preferences

    @preferences.setter
    def preferences(self, value: ReaderPreferences) -> None:
        self._preferences = value

    @property
    def last_error(self) -> Optional[ClassifiedError]:
        """The classified error of the last failed connection attempt, if any."""
        return self._last_error

    @property
    def last_outcome(self) -> Optional[NegotiationOutcome]:
        return self._last_outcome

    # --- Status ---

    async def _update_status(self, new_status: ConnectionStatus) -> None:
        if self._state == new_status:
            return
        logger.info(f"Reader status changed: {self._state.name} -> {new_status.name}")
        self._state = new_status
        for callback in list(self._status_callbacks):
            try:
                await callback(new_status)
            except Exception as e:
                logger.error(f"Error invoking status change callback "
                             f"{getattr(callback, '__name__', repr(callback))}: {e}", exc_info=True)

    def register_status_callback(self, callback: StatusChangeCallback) -> None:
        """Registers an async callback run on every status transition."""
        if not inspect.iscoroutinefunction(callback):
            raise TypeError("Callback must be an async function (defined with 'async def')")
        if callback not in self._status_callbacks:
            self._status_callbacks.append(callback)

    def unregister_status_callback(self, callback: StatusChangeCallback) -> None:
        if callback in self._status_callbacks:
            self._status_callbacks.remove(callback)

    def register_tick_callback(self, callback: TickCallback) -> None:
        """Registers an async callback receiving the elapsed inventory time while scanning."""
        if not inspect.iscoroutinefunction(callback):
            raise TypeError("Callback must be an async function (defined with 'async def')")
        if callback not in self._tick_callbacks:
            self._tick_callbacks.append(callback)

    def unregister_tick_callback(self, callback: TickCallback) -> None:
        if callback in self._tick_callbacks:
            self._tick_callbacks.remove(callback)

    # --- Event callbacks ---

    def register_callback(self, event_type: Optional[Type], callback: EventCallback) -> None:
        """Registers an async callback for one event type (e.g. TagReport), or for all events with None."""
        self._dispatcher.register_callback(event_type, callback)

    def unregister_callback(self, event_type: Optional[Type], callback: EventCallback) -> None:
        self._dispatcher.unregister_callback(event_type, callback)

    def register_tag_callback(self, callback: EventCallback) -> None:
        self._dispatcher.register_callback(TagReport, callback)

    def unregister_tag_callback(self, callback: EventCallback) -> None:
        self._dispatcher.unregister_callback(TagReport, callback)

    # --- Connection ---

    async def pick_device(self) -> DeviceHandle:
        """
        Asks the transport for a device.

        Raises:
            DeviceNotFoundError: If no device was found, carrying the classified error.
            ConnectionError: If the host cannot scan at all.
        """
        try:
            return await self._transport.scan_and_pick()
        except Exception as e:
            classified = self._classifier.classify_exception(e, during_discovery=True)
            self._last_error = classified
            logger.error(f"Device discovery failed: {classified}. {classified.remediation}")
            if isinstance(e, DeviceNotFoundError) or classified.category == ErrorCategory.DEVICE_NOT_FOUND:
                raise DeviceNotFoundError(classified.remediation, original_exception=e, classified=classified) from e
            raise ConnectionError(classified.remediation, original_exception=e, classified=classified) from e

    async def connect(self, device: Optional[DeviceHandle] = None, raise_on_failure: bool = False) -> NegotiationOutcome:
        """
        Picks a device (unless one is given) and negotiates a link to it.

        Args:
            device: The device to connect to. Scans and picks one when omitted.
            raise_on_failure: Raise NegotiationExhaustedError instead of returning
                              an exhausted outcome.

        Returns:
            The negotiation outcome. On success the session is CONNECTED.

        Raises:
            DeviceNotFoundError / ConnectionError: If device discovery failed.
            NegotiationError: If a negotiation is already running.
        """
        if self.is_connected:
            logger.warning("Already connected.")
            return self._last_outcome
        if self._negotiator.is_running:
            raise NegotiationError("Connection already in progress.")

        self._ensure_queue()
        await self._update_status(ConnectionStatus.CONNECTING)
        device = await self._select_device(device)
        return await self._run_negotiation(
            self._negotiator.negotiate(device, self._on_bytes, self._on_link_lost), raise_on_failure)

    async def connect_manual(self, service_uuid: str, characteristic_uuid: str,
                             device: Optional[DeviceHandle] = None,
                             raise_on_failure: bool = False) -> NegotiationOutcome:
        """Connects using an operator-chosen service/characteristic pair."""
        if self.is_connected:
            await self.disconnect()
        if self._negotiator.is_running:
            raise NegotiationError("Connection already in progress.")
        self._ensure_queue()
        device = device or self._last_device
        await self._update_status(ConnectionStatus.CONNECTING)
        device = await self._select_device(device)
        return await self._run_negotiation(
            self._negotiator.connect_manual(
                device, service_uuid, characteristic_uuid, self._on_bytes, self._on_link_lost),
            raise_on_failure)

    async def _select_device(self, device: Optional[DeviceHandle]) -> DeviceHandle:
        """Resolves the device of a connection attempt that is already CONNECTING."""
        if device is None:
            try:
                device = await self.pick_device()
            except RfidBleError:
                await self._update_status(ConnectionStatus.ERROR)
                raise
            except asyncio.CancelledError:
                logger.warning("Device selection cancelled.")
                await self._update_status(ConnectionStatus.DISCONNECTED)
                raise
        self._last_device = device
        return device

    async def _run_negotiation(self, negotiation: Awaitable[NegotiationOutcome],
                               raise_on_failure: bool) -> NegotiationOutcome:
        try:
            outcome = await negotiation
        except RfidBleError:
            await self._update_status(ConnectionStatus.ERROR)
            raise
        except asyncio.CancelledError:
            logger.warning(f"Connection attempt to {self._last_device} cancelled.")
            await self._close_device(self._last_device)
            await self._update_status(ConnectionStatus.DISCONNECTED)
            raise
        return await self._complete(outcome, raise_on_failure)

    async def _close_device(self, device: Optional[DeviceHandle]) -> None:
        """Drops any GATT link a failed or abandoned attempt left open to ``device``."""
        if device is None:
            return
        try:
            await self._transport.disconnect(device)
        except Exception as e:
            logger.warning(f"Error closing the link to {device}: {e}")

    async def list_candidates(self, device: Optional[DeviceHandle] = None) -> List[ConnectionCandidate]:
        """Lists every service/characteristic pair of the device, for manual selection."""
        device = device or self._last_device or await self.pick_device()
        self._last_device = device
        return await self._negotiator.list_candidates(device)

    async def retry_connection(self) -> Optional[NegotiationOutcome]:
        """
        Runs a fresh negotiation against the last device, but only when the
        last failure is one worth retrying (network, operation failure, timeout).

        Returns:
            The new outcome, or None if no retry was attempted.
        """
        if self.is_connected:
            return self._last_outcome
        if self._last_device is None or self._last_error is None:
            logger.warning("Nothing to retry: no failed connection attempt recorded.")
            return None
        if not self._last_error.retryable:
            logger.warning(f"Not retrying: {self._last_error.category} errors are not retryable. "
                           f"{self._last_error.remediation}")
            return None
        logger.info(f"Retrying connection to {self._last_device} after {self._last_error.category}")
        return await self.connect(self._last_device)

    async def _complete(self, outcome: NegotiationOutcome, raise_on_failure: bool) -> NegotiationOutcome:
        self._last_outcome = outcome
        if isinstance(outcome, NegotiationSuccess):
            self._attach(outcome.link)
            self._last_error = None
            if self._history is not None:
                self._history.remember(outcome.link.device.address, outcome.link.device.name)
            await self._update_status(ConnectionStatus.CONNECTED)
            logger.info(f"Connected to {outcome.link.device} ({outcome.link.mode})")
            return outcome

        self._last_error = outcome.last_error
        for failure in outcome.failures:
            logger.debug(f"  {failure.strategy_name}: {failure.error}")
        await self._close_device(self._last_device)
        await self._update_status(ConnectionStatus.ERROR)
        if raise_on_failure:
            raise NegotiationExhaustedError(outcome)
        return outcome

    def _ensure_queue(self) -> None:
        if self._event_queue is None:
            self._event_queue = asyncio.Queue()

    def _attach(self, link: LinkHandle) -> None:
        self._link = link
        self._closing = False
        self._ensure_queue()
        if self._pump_task is None or self._pump_task.done():
            self._pump_task = asyncio.create_task(self._pump_events())

    async def disconnect(self) -> None:
        """
        Stops scanning, tears the subscription down and drops the link.
        The tag table is kept.
        """
        if self._state == ConnectionStatus.DISCONNECTED:
            return
        if self._state == ConnectionStatus.DISCONNECTING:
            logger.warning("Disconnection already in progress.")
            return

        await self._update_status(ConnectionStatus.DISCONNECTING)
        self._closing = True
        link = self._link
        try:
            await self._release(link)
            if link is not None:
                await self._transport.disconnect(link.device)
                logger.info("Reader disconnected.")
            else:
                await self._close_device(self._last_device)
        except Exception as e:
            logger.error(f"Error during transport disconnection: {e}")
        finally:
            await self._teardown(ConnectionError("Session disconnected."))
            await self._update_status(ConnectionStatus.DISCONNECTED)

    async def _release(self, link: Optional[LinkHandle]) -> None:
        """Stops inventory work and the notification subscription of ``link``."""
        self._stop_ticker()
        self._scanning = False
        if link is None or not link.subscribed:
            return
        try:
            await self._transport.unsubscribe(link.characteristic)
        except Exception as e:
            logger.warning(f"Error tearing down notifications: {e}")

    async def _teardown(self, reason: BaseException) -> None:
        self._link = None
        self._dispatcher.cancel_pending(reason)
        pump = self._pump_task
        if pump is not None and not pump.done():
            pump.cancel()
            # A callback may disconnect from inside the pump itself
            if pump is not asyncio.current_task():
                try:
                    await pump
                except asyncio.CancelledError:
                    pass
        self._pump_task = None
        self._event_queue = None
        self._negotiator.reset()

    def _on_link_lost(self, device: DeviceHandle) -> None:
        """Disconnect observer registered with the transport."""
        if self._closing or self._link is None:
            return
        logger.warning(f"Link to {device} lost unexpectedly.")
        self._stop_ticker()
        self._scanning = False
        self._spawn(self._handle_link_lost(device))

    async def _handle_link_lost(self, device: DeviceHandle) -> None:
        await self._release(self._link)
        await self._teardown(ConnectionError(f"Link to {device} lost."))
        await self._update_status(ConnectionStatus.DISCONNECTED)
        if self._preferences.auto_reconnect:
            logger.info(f"Auto-reconnect enabled, negotiating with {device} again...")
            try:
                await self.connect(device)
            except RfidBleError as e:
                logger.error(f"Auto-reconnect failed: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        return task

    # --- Inbound ---

    def _on_bytes(self, data: bytes) -> None:
        """Notification handler: decodes in arrival order and queues the event."""
        logger.debug(f"Received {len(data)} bytes: {bytes(data).hex(' ').upper()}")
        result = self._codec.decode(data)
        if isinstance(result, Malformed):
            logger.warning(f"Dropping malformed frame ({result.reason}): {bytes(data).hex(' ').upper()}")
            return

        if isinstance(result, TagReport):
            self._aggregator.update(result)
        elif isinstance(result, InventoryStopped) and self._scanning:
            logger.info("Reader reported inventory stopped.")
            self._scanning = False
            self._stop_ticker()

        if self._event_queue is None:
            logger.warning(f"Event {result} received outside a session; not dispatched.")
            return
        self._event_queue.put_nowait(result)

    async def _pump_events(self) -> None:
        queue = self._event_queue
        while True:
            event = await queue.get()
            try:
                await self._dispatcher.dispatch(event)
            except Exception:
                logger.exception(f"Unexpected error dispatching {event}")
            finally:
                queue.task_done()

    async def wait_idle(self) -> None:
        """Waits until every event received so far has been dispatched."""
        if self._event_queue is not None:
            await self._event_queue.join()

    # --- Commands ---

    def _require_link(self) -> LinkHandle:
        if not self.is_connected:
            raise ConnectionError("Reader not connected.")
        return self._link

    async def send_command(self, command: Command) -> bytes:
        """
        Encodes and writes a command without waiting for a reply.

        Returns:
            The frame that was written.

        Raises:
            ConnectionError: If not connected.
            CommandError: If the command cannot be encoded, or a reply to the
                          same kind of command is still awaited.
            WriteError: If the write fails.
        """
        self._dispatcher.check_reply_slot(command.kind)
        return await self._write(command)

    async def _write(self, command: Command) -> bytes:
        link = self._require_link()
        try:
            frame = self._codec.encode(command)
        except (ValueError, TypeError) as e:
            logger.error(f"Failed to encode {command}: {e}")
            raise CommandError(f"Failed to encode {type(command).__name__}: {e}", command=command) from e

        logger.debug(f"Sending {command.kind}: {frame.hex(' ').upper()}")
        try:
            await self._transport.write(link.characteristic, frame)
        except Exception as e:
            classified = self._classifier.classify_exception(e)
            logger.error(f"Error sending {command.kind}: {classified}")
            raise WriteError(f"Failed to send {command.kind}.", original_exception=e, classified=classified) from e
        return frame

    async def request(self, command: Command, timeout: Optional[float] = None) -> InboundEvent:
        """
        Sends a command and waits for its reply event.

        Raises:
            CommandError: If the command has no awaitable reply, cannot be
                          encoded, or the same kind is already awaiting one.
            TimeoutError: If no reply arrives in time.
        """
        future = self._dispatcher.expect_reply(command.kind)
        if future is None:
            raise CommandError(f"{command.kind} has no reply that can be awaited.", command=command)
        timeout = self._response_timeout if timeout is None else timeout
        try:
            await self._write(command)
            logger.debug(f"Waiting for reply to {command.kind} (timeout={timeout}s)")
            return await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            logger.error(f"Timeout waiting for reply to {command.kind}")
            raise TimeoutError(f"No reply received for {command.kind} within {timeout}s") from None
        finally:
            self._dispatcher.release_reply(command.kind, future)

    # --- Inventory ---

    async def start_inventory(self) -> None:
        """Starts continuous inventory. A no-op while already scanning."""
        self._require_link()
        if self._scanning:
            return
        self._scanning = True
        try:
            await self.send_command(StartInventory())
        except RfidBleError:
            self._scanning = False
            raise
        self._aggregator.start_clock()
        self._tick_task = asyncio.create_task(self._tick())
        logger.info("Inventory started.")

    async def stop_inventory(self) -> None:
        """Stops continuous inventory. A no-op when not scanning."""
        if not self._scanning:
            return
        self._scanning = False
        self._stop_ticker()
        if self.is_connected:
            try:
                await self.send_command(StopInventory())
            except TransportError as e:
                logger.error(f"Failed to stop inventory: {e}")
        logger.info("Inventory stopped.")

    async def inventory_single(self) -> None:
        """Runs one inventory round; tags arrive as TagReport events."""
        await self.send_command(InventorySingle())

    def _stop_ticker(self) -> None:
        if self._tick_task is not None and not self._tick_task.done():
            self._tick_task.cancel()
        self._tick_task = None

    async def _tick(self) -> None:
        while True:
            await asyncio.sleep(self._tick_interval)
            elapsed = self._aggregator.elapsed()
            for callback in list(self._tick_callbacks):
                try:
                    await callback(elapsed)
                except Exception as e:
                    logger.error(f"Error in tick callback: {e}", exc_info=True)

    def reset_tags(self) -> None:
        """Clears the tag table and the elapsed-time baseline."""
        self._aggregator.reset()
        if self._scanning:
            self._aggregator.start_clock()

    # --- Settings ---

    async def get_power(self, timeout: Optional[float] = None) -> int:
        """Returns the transmit power in dBm."""
        reply: PowerReport = await self.request(GetPower(), timeout)
        return reply.dbm

    async def set_power(self, level: int) -> None:
        await self.send_command(SetPower(level))

    async def get_frequency(self, timeout: Optional[float] = None) -> int:
        """Returns the frequency region index (see FREQUENCY_REGIONS)."""
        reply: FrequencyReport = await self.request(GetFrequency(), timeout)
        return reply.mode

    async def set_frequency(self, region: Union[int, str]) -> None:
        """Selects the frequency region, by index or by name."""
        if isinstance(region, str):
            try:
                mode = ReaderPreferences(frequency=region).frequency_mode
            except ValueError as e:
                logger.error(f"Failed to encode SetFrequency: {e}")
                raise CommandError(f"Failed to encode SetFrequency: {e}") from e
        else:
            mode = region
        await self.send_command(SetFrequency(mode))

    async def apply_preferences(self, preferences: Optional[ReaderPreferences] = None) -> None:
        """Pushes the power and frequency preferences to the reader."""
        if preferences is not None:
            self._preferences = preferences
        await self.set_power(self._preferences.power)
        await self.set_frequency(self._preferences.frequency_mode)

    # --- Tag memory ---

    async def read_tag(self, bank: int, pointer: int, length: int,
                       password: str = const.DEFAULT_PASSWORD, timeout: Optional[float] = None) -> ReadResult:
        """
        Reads ``length`` words of tag memory.

        Returns:
            The ReadResult; check ``success`` before using ``data``.
        """
        return await self.request(ReadTag(bank, pointer, length, password), timeout)

    async def read_tid(self, epc: str, password: str = const.DEFAULT_PASSWORD,
                       timeout: Optional[float] = None) -> Optional[str]:
        """Reads the TID bank and records it on the tag's record. Returns the TID or None."""
        result = await self.read_tag(const.MEM_BANK_TID, 0, TID_WORD_LENGTH, password, timeout)
        if not result.success:
            logger.warning(f"TID read failed with status 0x{result.status:02X}")
            return None
        self._aggregator.set_tid(epc, result.data)
        return result.data

    async def write_tag(self, bank: int, pointer: int, length: int, data: str,
                        password: str = const.DEFAULT_PASSWORD, timeout: Optional[float] = None) -> WriteResult:
        return await self.request(WriteTag(bank, pointer, length, data, password), timeout)

    async def set_filter(self, bank: int, pointer: int, length: int, mask: str) -> None:
        """Restricts inventory to tags matching ``mask``."""
        await self.send_command(SetFilter(bank, pointer, length, mask))

    async def clear_filter(self, bank: int = const.MEM_BANK_EPC) -> None:
        await self.send_command(SetFilter(bank, 0, 0, "00"))

    # --- Context manager ---

    async def __aenter__(self):
        await self.connect(raise_on_failure=True)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()
