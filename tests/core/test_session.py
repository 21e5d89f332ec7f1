# tests/core/test_session.py

import asyncio

import pytest

from uhf_rfid_ble.core.config import DeviceHistory, MemoryConfigStore, ReaderPreferences
from uhf_rfid_ble.core.error_classifier import ErrorCategory
from uhf_rfid_ble.core.exceptions import (
    CommandError, ConnectionError, DeviceNotFoundError, NegotiationExhaustedError,
    TimeoutError, WriteError,
)
from uhf_rfid_ble.core.session import ReaderSession
from uhf_rfid_ble.core.status import ConnectionStatus
from uhf_rfid_ble.protocols import constants as const
from uhf_rfid_ble.protocols.commands import GetPower, StartInventory
from uhf_rfid_ble.protocols.events import InventoryStopped, PowerReport, TagReport
from uhf_rfid_ble.transport.base import CharacteristicProperties
from uhf_rfid_ble.transport.mock import MockBleTransport, NetworkError

# --- Test Fixtures ---

@pytest.fixture
def mock_transport() -> MockBleTransport:
    return MockBleTransport(name="SessionTest")


@pytest.fixture
def session(mock_transport: MockBleTransport) -> ReaderSession:
    return ReaderSession(mock_transport, response_timeout=0.2, tick_interval=0.01)


# --- Helpers ---

def reply(*payload: int) -> bytes:
    """Builds a reader frame: header, payload, checksum over everything after the header."""
    body = bytes(payload)
    return bytes([const.FRAME_HEADER]) + body + bytes([sum(body) & 0xFF])


def tag_frame(epc_hex: str, rssi: int = 0x2D) -> bytes:
    epc = bytes.fromhex(epc_hex)
    return reply(len(epc) + 4, const.RESP_TAG_INVENTORY, len(epc), *epc, rssi)


async def settle(session: ReaderSession) -> None:
    """Lets scheduled notifications arrive and waits until they are dispatched."""
    for _ in range(3):
        await asyncio.sleep(0)
    await session.wait_idle()


def record_statuses(session: ReaderSession) -> list:
    statuses = []

    async def on_status(status):
        statuses.append(status)

    session.register_status_callback(on_status)
    return statuses


async def wait_for_status(statuses: list, expected: ConnectionStatus, count: int = 1) -> None:
    for _ in range(100):
        if statuses.count(expected) >= count:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"Status {expected} not reached: {statuses}")


# --- Construction ---

def test_rejects_non_transport():
    with pytest.raises(TypeError):
        ReaderSession(object())


def test_initial_state(session: ReaderSession):
    assert session.status is ConnectionStatus.DISCONNECTED
    assert not session.is_connected
    assert not session.is_scanning
    assert session.link is None
    assert session.device is None


# --- Connection ---

@pytest.mark.asyncio
async def test_connect_success(session: ReaderSession, mock_transport: MockBleTransport):
    statuses = record_statuses(session)

    outcome = await session.connect()

    assert outcome.succeeded
    assert session.is_connected
    assert session.status is ConnectionStatus.CONNECTED
    assert session.device == mock_transport.device
    assert session.link.strategy_name == "Default UUIDs"
    assert session.last_outcome is outcome
    assert session.last_error is None
    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED]
    assert mock_transport.calls_of("scan_and_pick") == [None]
    await session.disconnect()


@pytest.mark.asyncio
async def test_connect_given_device_skips_scan(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect(mock_transport.device)
    assert mock_transport.calls_of("scan_and_pick") == []
    await session.disconnect()


@pytest.mark.asyncio
async def test_connect_when_connected_returns_last_outcome(session: ReaderSession, mock_transport: MockBleTransport):
    first = await session.connect()
    connects = len(mock_transport.calls_of("connect"))

    second = await session.connect()

    assert second is first
    assert len(mock_transport.calls_of("connect")) == connects
    await session.disconnect()


@pytest.mark.asyncio
async def test_connect_remembers_device(mock_transport: MockBleTransport):
    history = DeviceHistory(MemoryConfigStore())
    session = ReaderSession(mock_transport, history=history)

    await session.connect()

    assert [e.address for e in history.entries()] == [mock_transport.device.address]
    await session.disconnect()


@pytest.mark.asyncio
async def test_connect_no_device_found(session: ReaderSession, mock_transport: MockBleTransport):
    mock_transport.remove_device()

    with pytest.raises(DeviceNotFoundError) as exc_info:
        await session.connect()

    assert "No devices found." in str(exc_info.value)
    assert session.last_error.category is ErrorCategory.DEVICE_NOT_FOUND
    assert session.status is ConnectionStatus.ERROR


@pytest.mark.asyncio
async def test_connect_exhausted_returns_outcome():
    transport = MockBleTransport(services={"180a": {"2a29": CharacteristicProperties()}})
    session = ReaderSession(transport)

    outcome = await session.connect()

    assert not outcome.succeeded
    assert len(outcome.failures) == 6
    assert session.status is ConnectionStatus.ERROR
    assert session.last_error is outcome.last_error
    assert not session.is_connected


@pytest.mark.asyncio
async def test_connect_exhausted_raises_when_asked():
    transport = MockBleTransport(services={"180a": {"2a29": CharacteristicProperties()}})
    session = ReaderSession(transport)

    with pytest.raises(NegotiationExhaustedError) as exc_info:
        await session.connect(raise_on_failure=True)

    assert len(exc_info.value.outcome.failures) == 6


@pytest.mark.asyncio
async def test_connect_exhausted_closes_gatt_link():
    transport = MockBleTransport(services={"180a": {"2a29": CharacteristicProperties()}})
    session = ReaderSession(transport)

    await session.connect()

    assert not transport.is_connected()
    assert transport.calls_of("disconnect")

    await session.disconnect()
    assert session.status is ConnectionStatus.DISCONNECTED
    assert not transport.is_connected()


@pytest.mark.asyncio
async def test_cancelled_connect_returns_to_disconnected(session: ReaderSession, mock_transport: MockBleTransport):
    statuses = record_statuses(session)
    mock_transport.set_connection_delay(1.0)

    task = asyncio.create_task(session.connect())
    await asyncio.sleep(0.05)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert session.status is ConnectionStatus.DISCONNECTED
    assert statuses == [ConnectionStatus.CONNECTING, ConnectionStatus.DISCONNECTED]
    assert not session.negotiator.is_running

    mock_transport.set_connection_delay(0)
    outcome = await session.connect()
    assert outcome.succeeded
    await session.disconnect()


@pytest.mark.asyncio
async def test_connect_manual(session: ReaderSession, mock_transport: MockBleTransport):
    outcome = await session.connect_manual("fff0", "fff1")

    assert outcome.succeeded
    assert session.link.strategy_name == "Manual"
    await session.disconnect()


@pytest.mark.asyncio
async def test_list_candidates(session: ReaderSession):
    candidates = await session.list_candidates()
    assert [c.characteristic_uuid for c in candidates] == ["0000fff1-0000-1000-8000-00805f9b34fb"]


@pytest.mark.asyncio
async def test_context_manager(mock_transport: MockBleTransport):
    async with ReaderSession(mock_transport) as session:
        assert session.is_connected
    assert session.status is ConnectionStatus.DISCONNECTED
    assert not mock_transport.is_connected()


# --- Retry ---

@pytest.mark.asyncio
async def test_retry_after_retryable_failure(session: ReaderSession, mock_transport: MockBleTransport):
    # Every strategy except "Saved UUIDs" connects first: five failing connects exhaust the pass
    mock_transport.fail("connect", NetworkError("Connection attempt failed."), times=5)
    outcome = await session.connect()
    assert not outcome.succeeded
    assert session.last_error.retryable

    retried = await session.retry_connection()

    assert retried.succeeded
    assert session.is_connected
    await session.disconnect()


@pytest.mark.asyncio
async def test_no_retry_after_permanent_failure():
    transport = MockBleTransport(services={"180a": {"2a29": CharacteristicProperties()}})
    session = ReaderSession(transport)
    await session.connect()

    assert session.last_error.category is ErrorCategory.GATT_NOT_FOUND
    assert await session.retry_connection() is None


@pytest.mark.asyncio
async def test_no_retry_without_failure(session: ReaderSession):
    assert await session.retry_connection() is None


# --- Disconnection ---

@pytest.mark.asyncio
async def test_disconnect_keeps_tag_table(session: ReaderSession, mock_transport: MockBleTransport):
    statuses = record_statuses(session)
    await session.connect()
    await session.start_inventory()
    mock_transport.push_notification(tag_frame("E2001122"))
    await settle(session)

    await session.disconnect()

    assert session.status is ConnectionStatus.DISCONNECTED
    assert statuses[-2:] == [ConnectionStatus.DISCONNECTING, ConnectionStatus.DISCONNECTED]
    assert not session.is_scanning
    assert session.aggregator.unique_count() == 1
    assert mock_transport.calls_of("unsubscribe") == ["0000fff1-0000-1000-8000-00805f9b34fb"]
    assert not mock_transport.is_connected()


@pytest.mark.asyncio
async def test_disconnect_when_disconnected_is_noop(session: ReaderSession, mock_transport: MockBleTransport):
    await session.disconnect()
    assert mock_transport.calls_of("disconnect") == []


@pytest.mark.asyncio
async def test_notifications_after_disconnect_are_not_dispatched(session: ReaderSession, mock_transport: MockBleTransport):
    events = []

    async def on_event(event):
        events.append(event)

    session.register_callback(None, on_event)
    await session.connect()
    await session.disconnect()

    session._on_bytes(tag_frame("E2"))

    assert events == []


# --- Inventory ---

@pytest.mark.asyncio
async def test_inventory_aggregates_tags(session: ReaderSession, mock_transport: MockBleTransport):
    seen = []

    async def on_tag(event):
        seen.append(event)

    session.register_tag_callback(on_tag)
    await session.connect()
    mock_transport.clear_send_queue()

    await session.start_inventory()
    for epc in ["E2001122", "E2003344", "E2001122"]:
        mock_transport.push_notification(tag_frame(epc))
    await settle(session)

    assert mock_transport.get_sent_data() == bytes.fromhex("A004018901")
    assert session.is_scanning
    assert [e.epc for e in seen] == ["E2001122", "E2003344", "E2001122"]
    assert seen[0] == TagReport("E2001122", rssi=-45)
    assert session.aggregator.unique_count() == 2
    assert session.aggregator.total_count() == 3
    assert session.aggregator.get("E2001122").count == 2
    await session.disconnect()


@pytest.mark.asyncio
async def test_events_dispatched_in_arrival_order(session: ReaderSession, mock_transport: MockBleTransport):
    order = []

    async def slow_first(event):
        if isinstance(event, TagReport) and event.epc == "01":
            await asyncio.sleep(0.02)
        order.append(event)

    session.register_callback(None, slow_first)
    await session.connect()
    mock_transport.push_notification(tag_frame("01"))
    mock_transport.push_notification(tag_frame("02"))
    mock_transport.push_notification(reply(0x03, const.RESP_INVENTORY_STOPPED))
    await settle(session)

    assert order == [TagReport("01", -45), TagReport("02", -45), InventoryStopped()]
    await session.disconnect()


@pytest.mark.asyncio
async def test_start_inventory_twice_sends_once(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.clear_send_queue()

    await session.start_inventory()
    await session.start_inventory()

    assert mock_transport.get_all_sent_data() == [bytes.fromhex("A004018901")]
    await session.disconnect()


@pytest.mark.asyncio
async def test_stop_inventory_is_idempotent(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.clear_send_queue()

    await session.stop_inventory()
    assert mock_transport.get_all_sent_data() == []

    await session.start_inventory()
    await session.stop_inventory()
    await session.stop_inventory()

    assert mock_transport.get_all_sent_data() == [bytes.fromhex("A004018901"), bytes.fromhex("A0030201")]
    assert not session.is_scanning
    await session.disconnect()


@pytest.mark.asyncio
async def test_reader_reported_stop_clears_scanning(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    await session.start_inventory()

    mock_transport.push_notification(reply(0x03, const.RESP_INVENTORY_STOPPED))
    await settle(session)

    assert not session.is_scanning
    await session.disconnect()


@pytest.mark.asyncio
async def test_start_inventory_requires_connection(session: ReaderSession):
    with pytest.raises(ConnectionError):
        await session.start_inventory()
    assert not session.is_scanning


@pytest.mark.asyncio
async def test_ticks_while_scanning(session: ReaderSession, mock_transport: MockBleTransport):
    ticks = []

    async def on_tick(elapsed):
        ticks.append(elapsed)

    session.register_tick_callback(on_tick)
    await session.connect()
    await session.start_inventory()
    await asyncio.sleep(0.05)
    await session.stop_inventory()
    count = len(ticks)
    await asyncio.sleep(0.03)

    assert count > 0
    assert len(ticks) == count
    assert all(b >= a for a, b in zip(ticks, ticks[1:]))
    await session.disconnect()


def test_sync_tick_callback_rejected(session: ReaderSession):
    with pytest.raises(TypeError):
        session.register_tick_callback(lambda elapsed: None)


@pytest.mark.asyncio
async def test_malformed_frames_are_dropped(session: ReaderSession, mock_transport: MockBleTransport):
    events = []

    async def on_event(event):
        events.append(event)

    session.register_callback(None, on_event)
    await session.connect()

    mock_transport.push_notification(bytes.fromhex("A004"))
    mock_transport.push_notification(bytes.fromhex("A0058908E200"))
    await settle(session)

    assert events == []
    assert len(session.aggregator) == 0
    await session.disconnect()


@pytest.mark.asyncio
async def test_reset_tags(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.push_notification(tag_frame("E2"))
    await settle(session)

    session.reset_tags()

    assert session.aggregator.total_count() == 0
    await session.disconnect()


# --- Commands and replies ---

@pytest.mark.asyncio
async def test_get_power(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.add_response(reply(0x04, const.RESP_POWER, 26))

    assert await session.get_power() == 26
    assert not session.dispatcher.has_pending_replies()
    await session.disconnect()


@pytest.mark.asyncio
async def test_get_frequency(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.add_response(reply(0x04, const.RESP_FREQUENCY, 2))

    assert await session.get_frequency() == 2
    await session.disconnect()


@pytest.mark.asyncio
async def test_request_timeout_releases_slot(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()

    with pytest.raises(TimeoutError):
        await session.get_power(timeout=0.05)

    mock_transport.add_response(reply(0x04, const.RESP_POWER, 20))
    assert await session.get_power() == 20
    await session.disconnect()


@pytest.mark.asyncio
async def test_same_kind_while_reply_pending_is_rejected(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    pending = asyncio.create_task(session.get_power(timeout=0.1))
    await asyncio.sleep(0)

    with pytest.raises(CommandError):
        await session.send_command(GetPower())

    with pytest.raises(TimeoutError):
        await pending
    await session.disconnect()


@pytest.mark.asyncio
async def test_different_kinds_can_be_pending_together(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    power = asyncio.create_task(session.get_power())
    frequency = asyncio.create_task(session.get_frequency())
    await asyncio.sleep(0.01)

    mock_transport.push_notification(reply(0x04, const.RESP_FREQUENCY, 3))
    mock_transport.push_notification(reply(0x04, const.RESP_POWER, 30))

    assert await power == 30
    assert await frequency == 3
    await session.disconnect()


@pytest.mark.asyncio
async def test_request_without_reply_rejected(session: ReaderSession):
    await session.connect()
    with pytest.raises(CommandError):
        await session.request(StartInventory())
    await session.disconnect()


@pytest.mark.asyncio
async def test_send_requires_connection(session: ReaderSession):
    with pytest.raises(ConnectionError):
        await session.set_power(20)


@pytest.mark.asyncio
async def test_invalid_arguments_raise_command_error(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.clear_send_queue()

    with pytest.raises(CommandError):
        await session.set_power(300)
    with pytest.raises(CommandError):
        await session.write_tag(const.MEM_BANK_USER, 0, 1, "ABC")

    assert mock_transport.get_all_sent_data() == []
    assert not session.dispatcher.has_pending_replies()
    await session.disconnect()


@pytest.mark.asyncio
async def test_write_failure_is_classified(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.fail("write", NetworkError("GATT Server is disconnected."))

    with pytest.raises(WriteError) as exc_info:
        await session.set_power(20)

    assert exc_info.value.classified.category is ErrorCategory.GATT_NETWORK
    await session.disconnect()


@pytest.mark.asyncio
async def test_apply_preferences(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.clear_send_queue()

    await session.apply_preferences(ReaderPreferences(power=20, frequency="Europe Standard"))

    assert mock_transport.get_all_sent_data() == [bytes.fromhex("A0049814AC"), bytes.fromhex("A004AB02AD")]
    assert session.preferences.power == 20
    await session.disconnect()


@pytest.mark.asyncio
async def test_set_frequency_by_name(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.clear_send_queue()

    await session.set_frequency("Europe Standard")

    assert mock_transport.get_sent_data() == bytes.fromhex("A004AB02AD")
    await session.disconnect()


@pytest.mark.asyncio
async def test_set_frequency_unknown_region(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.clear_send_queue()

    with pytest.raises(CommandError, match="Unknown frequency region"):
        await session.set_frequency("Mars")

    assert mock_transport.get_sent_data() is None
    await session.disconnect()


@pytest.mark.asyncio
async def test_filters(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.clear_send_queue()

    await session.set_filter(const.MEM_BANK_EPC, 0x20, 0x10, "E200")
    await session.clear_filter()

    assert mock_transport.get_all_sent_data() == [
        bytes.fromhex("A0098C012010E200A8"),
        bytes.fromhex("A0088C0100000095"),
    ]
    await session.disconnect()


# --- Tag memory ---

@pytest.mark.asyncio
async def test_read_tid_records_tid(session: ReaderSession, mock_transport: MockBleTransport):
    tid = bytes.fromhex("E28011002000")

    def responder(frame: bytes):
        if frame[const.OPCODE_INDEX] == const.CMD_READ_TAG:
            return reply(len(tid) + 3, const.RESP_READ_RESULT, const.STATUS_SUCCESS, len(tid), *tid)
        return None

    mock_transport.set_responder(responder)
    await session.connect()
    mock_transport.push_notification(tag_frame("E2001122"))
    await settle(session)
    mock_transport.clear_send_queue()

    assert await session.read_tid("E2001122") == "E28011002000"

    assert session.aggregator.get("E2001122").tid == "E28011002000"
    assert mock_transport.get_sent_data() == bytes.fromhex("A00939000000000200064A")
    await session.disconnect()


@pytest.mark.asyncio
async def test_read_tag_failure_status(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.add_response(reply(0x04, const.RESP_READ_RESULT, 0x05))

    result = await session.read_tag(const.MEM_BANK_USER, 0, 2)

    assert not result.success
    assert result.status == 0x05

    mock_transport.add_response(reply(0x04, const.RESP_READ_RESULT, 0x05))
    assert await session.read_tid("E2") is None
    await session.disconnect()


@pytest.mark.asyncio
async def test_write_tag(session: ReaderSession, mock_transport: MockBleTransport):
    await session.connect()
    mock_transport.add_response(reply(0x04, const.RESP_WRITE_RESULT, const.STATUS_SUCCESS))

    result = await session.write_tag(const.MEM_BANK_USER, 0, 2, "11223344")

    assert result.success
    await session.disconnect()


# --- Link loss ---

@pytest.mark.asyncio
async def test_link_loss(session: ReaderSession, mock_transport: MockBleTransport):
    statuses = record_statuses(session)
    await session.connect()
    await session.start_inventory()
    mock_transport.push_notification(tag_frame("E2"))
    await settle(session)

    mock_transport.simulate_disconnect()
    assert not session.is_scanning
    await wait_for_status(statuses, ConnectionStatus.DISCONNECTED)

    assert not session.is_connected
    assert session.aggregator.unique_count() == 1


@pytest.mark.asyncio
async def test_link_loss_fails_pending_reply(session: ReaderSession, mock_transport: MockBleTransport):
    statuses = record_statuses(session)
    await session.connect()
    pending = asyncio.create_task(session.get_power(timeout=1.0))
    await asyncio.sleep(0)

    mock_transport.simulate_disconnect()

    with pytest.raises(ConnectionError):
        await pending
    await wait_for_status(statuses, ConnectionStatus.DISCONNECTED)


@pytest.mark.asyncio
async def test_auto_reconnect(mock_transport: MockBleTransport):
    session = ReaderSession(mock_transport, preferences=ReaderPreferences(auto_reconnect=True))
    statuses = record_statuses(session)
    await session.connect()

    mock_transport.simulate_disconnect()
    await wait_for_status(statuses, ConnectionStatus.CONNECTED, count=2)

    assert session.is_connected
    assert statuses == [
        ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED,
        ConnectionStatus.DISCONNECTED,
        ConnectionStatus.CONNECTING, ConnectionStatus.CONNECTED,
    ]
    await session.disconnect()


@pytest.mark.asyncio
async def test_no_auto_reconnect_by_default(session: ReaderSession, mock_transport: MockBleTransport):
    statuses = record_statuses(session)
    await session.connect()

    mock_transport.simulate_disconnect()
    await wait_for_status(statuses, ConnectionStatus.DISCONNECTED)
    await asyncio.sleep(0.02)

    assert statuses[-1] is ConnectionStatus.DISCONNECTED
