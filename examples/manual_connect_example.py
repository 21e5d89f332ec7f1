# examples/manual_connect_example.py
"""Example: list every characteristic of a reader and connect to a chosen one.

Useful for readers whose firmware puts the protocol on a vendor-specific
service that none of the automatic strategies know about.
"""

import asyncio
import logging
import sys

from uhf_rfid_ble.core.exceptions import RfidBleError
from uhf_rfid_ble.core.session import ReaderSession
from uhf_rfid_ble.transport.bleak_transport import BleakBleTransport

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


async def list_characteristics(transport: BleakBleTransport, session: ReaderSession):
    device = await session.pick_device()
    try:
        for candidate in await session.list_candidates(device):
            print(f"{candidate.service_uuid}  {candidate.characteristic_uuid}  [{candidate.properties}]")
    finally:
        await transport.disconnect(device)


async def main(address: str, service_uuid: str = None, characteristic_uuid: str = None):
    transport = BleakBleTransport(address=address)
    session = ReaderSession(transport)
    try:
        if service_uuid is None or characteristic_uuid is None:
            await list_characteristics(transport, session)
            return

        outcome = await session.connect_manual(service_uuid, characteristic_uuid)
        if not outcome.succeeded:
            logger.error(f"Manual connection failed: {outcome.last_error}")
            logger.error(outcome.last_error.remediation)
            return
        logger.info(f"Connected; frequency region index: {await session.get_frequency()}")
    except RfidBleError as e:
        logger.error(f"Error: {e}")
    finally:
        await session.disconnect()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print(f"Usage: {sys.argv[0]} ADDRESS [SERVICE_UUID CHARACTERISTIC_UUID]")
        sys.exit(1)
    asyncio.run(main(*sys.argv[1:4]))
