# uhf_rfid_ble/core/dispatcher.py

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import Any, Callable, Coroutine, Dict, List, Optional, Type

from uhf_rfid_ble.core.exceptions import CommandError
from uhf_rfid_ble.protocols.commands import CommandKind
from uhf_rfid_ble.protocols.events import (
    FrequencyReport, InboundEvent, PowerReport, ReadResult, WriteResult,
)

logger = logging.getLogger(__name__)

# Callback receives the decoded event
EventCallback = Callable[[InboundEvent], Coroutine[Any, Any, None]]

# Commands whose reply can be awaited, and the event that carries the reply.
# The remaining commands either have no reply or one that cannot be told
# apart from unsolicited traffic (tag reports, inventory stopped).
REPLY_EVENTS: Dict[CommandKind, Type] = {
    CommandKind.GET_POWER: PowerReport,
    CommandKind.GET_FREQUENCY: FrequencyReport,
    CommandKind.READ_TAG: ReadResult,
    CommandKind.WRITE_TAG: WriteResult,
}


def _callback_name(callback) -> str:
    return getattr(callback, '__name__', repr(callback))


class EventDispatcher:
    """
    Routes decoded inbound events to pending command replies and to observer
    callbacks registered per event type.

    The wire format has no transaction id, so at most one reply per event type
    can be pending; a reply is matched by its type alone. Callbacks for one
    event run one after another, never concurrently.
    """

    def __init__(self):
        # Key: reply event type. Value: the future the waiting command awaits.
        self._pending_replies: Dict[Type, asyncio.Future] = {}
        self._callbacks: Dict[Type, List[EventCallback]] = defaultdict(list)
        self._any_callbacks: List[EventCallback] = []

    # --- Replies ---

    def expect_reply(self, kind: CommandKind) -> Optional[asyncio.Future]:
        """
        Reserves the reply slot for a command about to be sent.

        Returns:
            A future resolved with the reply event, or None if the command kind
            has no correlatable reply.

        Raises:
            CommandError: If a reply of the same type is still pending.
        """
        reply_type = REPLY_EVENTS.get(kind)
        if reply_type is None:
            return None
        self.check_reply_slot(kind)
        future = asyncio.get_running_loop().create_future()
        self._pending_replies[reply_type] = future
        return future

    def check_reply_slot(self, kind: CommandKind) -> None:
        """Raises CommandError if a reply for ``kind`` is already being awaited."""
        reply_type = REPLY_EVENTS.get(kind)
        if reply_type is None:
            return
        existing = self._pending_replies.get(reply_type)
        if existing is not None and not existing.done():
            raise CommandError(
                f"A {kind} command is still waiting for its {reply_type.__name__} reply.",
                command=kind,
            )

    def release_reply(self, kind: CommandKind, future: asyncio.Future) -> None:
        """Frees the reply slot if it still belongs to ``future``."""
        reply_type = REPLY_EVENTS.get(kind)
        if reply_type is not None and self._pending_replies.get(reply_type) is future:
            del self._pending_replies[reply_type]
        if not future.done():
            future.cancel()

    def has_pending_replies(self) -> bool:
        return any(not f.done() for f in self._pending_replies.values())

    def cancel_pending(self, exc: Optional[BaseException] = None) -> None:
        """Fails (or cancels) every pending reply, e.g. when the link drops."""
        for reply_type, future in self._pending_replies.items():
            if future.done():
                continue
            logger.warning(f"Abandoning pending {reply_type.__name__} reply.")
            if exc is not None:
                future.set_exception(exc)
            else:
                future.cancel()
        self._pending_replies.clear()

    # --- Dispatch ---

    async def dispatch(self, event: InboundEvent) -> None:
        """Resolves a matching pending reply, then runs the callbacks registered for the event."""
        future = self._pending_replies.pop(type(event), None)
        if future is not None and not future.done():
            logger.debug(f"Reply received: {event}")
            future.set_result(event)

        callbacks_to_run = list(self._callbacks.get(type(event), ())) + list(self._any_callbacks)
        if not callbacks_to_run:
            logger.debug(f"No callbacks registered for {type(event).__name__}")
            return

        for callback in callbacks_to_run:
            try:
                await callback(event)
            except Exception as e:
                logger.error(f"Error executing callback {_callback_name(callback)} for "
                             f"{type(event).__name__}: {e}", exc_info=True)

    # --- Registration ---

    def register_callback(self, event_type: Optional[Type], callback: EventCallback) -> None:
        """
        Registers an async callback for one event type, or for every event when
        ``event_type`` is None.
        """
        if not inspect.iscoroutinefunction(callback):
            raise TypeError("Event callback must be an async function (defined with 'async def')")
        target = self._any_callbacks if event_type is None else self._callbacks[event_type]
        label = "all events" if event_type is None else event_type.__name__
        if callback in target:
            logger.warning(f"Callback {_callback_name(callback)} already registered for {label}")
            return
        target.append(callback)
        logger.info(f"Registered callback {_callback_name(callback)} for {label}")

    def unregister_callback(self, event_type: Optional[Type], callback: EventCallback) -> None:
        target = self._any_callbacks if event_type is None else self._callbacks.get(event_type)
        label = "all events" if event_type is None else event_type.__name__
        if not target or callback not in target:
            logger.warning(f"Callback {_callback_name(callback)} not found for {label}")
            return
        target.remove(callback)
        if event_type is not None and not target:
            del self._callbacks[event_type]
        logger.info(f"Unregistered callback {_callback_name(callback)} for {label}")

    def unregister_callback_from_all(self, callback: EventCallback) -> None:
        """Unregisters a callback from every event type it is registered for."""
        removed = 0
        for event_type in list(self._callbacks):
            callback_list = self._callbacks[event_type]
            if callback in callback_list:
                callback_list.remove(callback)
                removed += 1
                if not callback_list:
                    del self._callbacks[event_type]
        if callback in self._any_callbacks:
            self._any_callbacks.remove(callback)
            removed += 1
        if removed:
            logger.info(f"Unregistered callback {_callback_name(callback)} from {removed} registration(s).")
        else:
            logger.warning(f"Callback {_callback_name(callback)} was not registered.")
