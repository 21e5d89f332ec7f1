# tests/core/test_dispatcher.py

import asyncio

import pytest

from uhf_rfid_ble.core.dispatcher import EventDispatcher
from uhf_rfid_ble.core.exceptions import CommandError, ConnectionError
from uhf_rfid_ble.protocols.commands import CommandKind
from uhf_rfid_ble.protocols.events import (
    InventoryStopped, PowerReport, ReadResult, TagReport, WriteResult,
)

# --- Test Fixtures ---

@pytest.fixture
def dispatcher() -> EventDispatcher:
    return EventDispatcher()


def make_recorder():
    """Returns an async callback and the list of events it receives."""
    events = []

    async def record(event):
        events.append(event)

    return record, events


# --- Replies ---

@pytest.mark.asyncio
async def test_reply_resolves_pending_future(dispatcher: EventDispatcher):
    future = dispatcher.expect_reply(CommandKind.GET_POWER)
    assert dispatcher.has_pending_replies()

    await dispatcher.dispatch(PowerReport(dbm=26))

    assert future.done()
    assert future.result() == PowerReport(dbm=26)
    assert not dispatcher.has_pending_replies()


@pytest.mark.asyncio
async def test_reply_is_matched_by_type(dispatcher: EventDispatcher):
    power = dispatcher.expect_reply(CommandKind.GET_POWER)
    read = dispatcher.expect_reply(CommandKind.READ_TAG)

    await dispatcher.dispatch(ReadResult(success=True, status=0x10, data="AA"))

    assert read.result().data == "AA"
    assert not power.done()


@pytest.mark.asyncio
async def test_commands_without_reply(dispatcher: EventDispatcher):
    for kind in (CommandKind.START_INVENTORY, CommandKind.STOP_INVENTORY,
                 CommandKind.SET_POWER, CommandKind.SET_FILTER):
        assert dispatcher.expect_reply(kind) is None
    assert not dispatcher.has_pending_replies()


@pytest.mark.asyncio
async def test_second_pending_reply_of_same_type_rejected(dispatcher: EventDispatcher):
    dispatcher.expect_reply(CommandKind.WRITE_TAG)
    with pytest.raises(CommandError):
        dispatcher.expect_reply(CommandKind.WRITE_TAG)
    with pytest.raises(CommandError):
        dispatcher.check_reply_slot(CommandKind.WRITE_TAG)


@pytest.mark.asyncio
async def test_release_reply_frees_slot(dispatcher: EventDispatcher):
    future = dispatcher.expect_reply(CommandKind.GET_FREQUENCY)
    dispatcher.release_reply(CommandKind.GET_FREQUENCY, future)

    assert future.cancelled()
    assert dispatcher.expect_reply(CommandKind.GET_FREQUENCY) is not None


@pytest.mark.asyncio
async def test_release_reply_keeps_newer_owner(dispatcher: EventDispatcher):
    first = dispatcher.expect_reply(CommandKind.GET_POWER)
    await dispatcher.dispatch(PowerReport(dbm=10))
    second = dispatcher.expect_reply(CommandKind.GET_POWER)

    dispatcher.release_reply(CommandKind.GET_POWER, first)

    assert dispatcher.has_pending_replies()
    assert not second.done()


@pytest.mark.asyncio
async def test_cancel_pending_with_exception(dispatcher: EventDispatcher):
    future = dispatcher.expect_reply(CommandKind.READ_TAG)
    dispatcher.cancel_pending(ConnectionError("Link lost"))

    with pytest.raises(ConnectionError):
        await future
    assert not dispatcher.has_pending_replies()


@pytest.mark.asyncio
async def test_cancel_pending_without_exception(dispatcher: EventDispatcher):
    future = dispatcher.expect_reply(CommandKind.READ_TAG)
    dispatcher.cancel_pending()
    assert future.cancelled()


@pytest.mark.asyncio
async def test_unsolicited_reply_type_is_harmless(dispatcher: EventDispatcher):
    await dispatcher.dispatch(WriteResult(success=True, status=0x10))
    assert not dispatcher.has_pending_replies()


# --- Callbacks ---

@pytest.mark.asyncio
async def test_callbacks_by_type(dispatcher: EventDispatcher):
    tags, tag_events = make_recorder()
    everything, all_events = make_recorder()
    dispatcher.register_callback(TagReport, tags)
    dispatcher.register_callback(None, everything)

    await dispatcher.dispatch(TagReport("E2"))
    await dispatcher.dispatch(InventoryStopped())

    assert tag_events == [TagReport("E2")]
    assert all_events == [TagReport("E2"), InventoryStopped()]


@pytest.mark.asyncio
async def test_callbacks_run_in_order_not_concurrently(dispatcher: EventDispatcher):
    trace = []

    async def slow(event):
        trace.append("slow-start")
        await asyncio.sleep(0.01)
        trace.append("slow-end")

    async def fast(event):
        trace.append("fast")

    dispatcher.register_callback(TagReport, slow)
    dispatcher.register_callback(TagReport, fast)
    await dispatcher.dispatch(TagReport("E2"))

    assert trace == ["slow-start", "slow-end", "fast"]


@pytest.mark.asyncio
async def test_failing_callback_does_not_stop_others(dispatcher: EventDispatcher):
    survivor, survivor_events = make_recorder()

    async def broken(event):
        raise RuntimeError("boom")

    dispatcher.register_callback(TagReport, broken)
    dispatcher.register_callback(TagReport, survivor)
    await dispatcher.dispatch(TagReport("E2"))

    assert survivor_events == [TagReport("E2")]


def test_sync_callback_rejected(dispatcher: EventDispatcher):
    def not_async(event):
        pass

    with pytest.raises(TypeError):
        dispatcher.register_callback(TagReport, not_async)


@pytest.mark.asyncio
async def test_duplicate_registration_ignored(dispatcher: EventDispatcher):
    calls = []

    async def callback(event):
        calls.append(event)

    dispatcher.register_callback(TagReport, callback)
    dispatcher.register_callback(TagReport, callback)
    await dispatcher.dispatch(TagReport("E2"))

    assert len(calls) == 1


@pytest.mark.asyncio
async def test_unregister(dispatcher: EventDispatcher):
    calls = []

    async def callback(event):
        calls.append(event)

    dispatcher.register_callback(TagReport, callback)
    dispatcher.unregister_callback(TagReport, callback)
    dispatcher.unregister_callback(TagReport, callback)  # Not registered any more: only warns
    await dispatcher.dispatch(TagReport("E2"))

    assert calls == []


@pytest.mark.asyncio
async def test_unregister_from_all(dispatcher: EventDispatcher):
    calls = []

    async def callback(event):
        calls.append(event)

    dispatcher.register_callback(TagReport, callback)
    dispatcher.register_callback(PowerReport, callback)
    dispatcher.register_callback(None, callback)
    dispatcher.unregister_callback_from_all(callback)

    await dispatcher.dispatch(TagReport("E2"))
    await dispatcher.dispatch(PowerReport(5))
    assert calls == []
