# examples/mock_reader_example.py
"""Example: drive a simulated reader, no hardware needed.

The MockBleTransport exposes only the Nordic UART service, so the default
fff0/fff1 pair is missing and a fallback strategy finds the link. A responder
plays the reader: it answers power queries and TID reads and streams a few tag
reports after inventory starts.
"""

import asyncio
import logging

from uhf_rfid_ble.core.session import ReaderSession
from uhf_rfid_ble.protocols import constants as const
from uhf_rfid_ble.protocols.events import InboundEvent
from uhf_rfid_ble.transport.base import CharacteristicProperties
from uhf_rfid_ble.transport.mock import MockBleTransport
from uhf_rfid_ble.utils.uuids import (
    NORDIC_UART_RX_NOTIFY_UUID, NORDIC_UART_SERVICE_UUID, NORDIC_UART_TX_WRITE_UUID,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SIMULATED_TAGS = ["E20000172211014718902A1B", "E20000172211014718902A1C"]
SIMULATED_TID = "E2801130200020D1"


def frame(*payload: int) -> bytes:
    body = bytes(payload)
    return bytes([const.FRAME_HEADER]) + body + bytes([sum(body) & 0xFF])


def simulated_reader(command: bytes):
    opcode = command[const.OPCODE_INDEX]
    if opcode == const.CMD_GET_POWER:
        return frame(0x04, const.RESP_POWER, 26)
    if opcode == const.CMD_START_INVENTORY:
        reports = []
        for rssi, epc_hex in zip((45, 61, 47), SIMULATED_TAGS + SIMULATED_TAGS[:1]):
            epc = bytes.fromhex(epc_hex)
            reports.append(frame(len(epc) + 4, const.RESP_TAG_INVENTORY, len(epc), *epc, rssi))
        return reports
    if opcode == const.CMD_STOP_INVENTORY:
        return frame(0x03, const.RESP_INVENTORY_STOPPED)
    if opcode == const.CMD_READ_TAG:
        tid = bytes.fromhex(SIMULATED_TID)
        return frame(len(tid) + 3, const.RESP_READ_RESULT, const.STATUS_SUCCESS, len(tid), *tid)
    return None


async def log_event(event: InboundEvent):
    logger.info(f"[EVENT] {event}")


async def main():
    transport = MockBleTransport(services={
        NORDIC_UART_SERVICE_UUID: {
            NORDIC_UART_TX_WRITE_UUID: CharacteristicProperties(write=True),
            NORDIC_UART_RX_NOTIFY_UUID: CharacteristicProperties(notify=True, write_without_response=True),
        },
    })
    transport.set_responder(simulated_reader)

    async with ReaderSession(transport) as session:
        session.register_callback(None, log_event)
        logger.info(f"Negotiated with '{session.link.strategy_name}' ({session.link.mode})")

        logger.info(f"Power: {await session.get_power()} dBm")

        await session.start_inventory()
        await asyncio.sleep(0.1)
        await session.stop_inventory()
        await session.wait_idle()

        for record in session.aggregator.records():
            tid = await session.read_tid(record.epc)
            logger.info(f"{record.epc}: seen {record.count}x, RSSI {record.rssi}, TID {tid}")


if __name__ == "__main__":
    asyncio.run(main())
