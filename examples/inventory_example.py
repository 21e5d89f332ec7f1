# examples/inventory_example.py
"""Example: connect to a BLE reader, push the saved preferences and run inventory.

This script shows how to:
1. Scan for a reader and let the session negotiate the GATT link.
2. Persist the working service/characteristic pair and preferences in a JSON file.
3. Register async callbacks for status changes, tag reports and elapsed time.
4. Run continuous inventory for a while and print the aggregated tag table.
"""

import asyncio
import logging
import os

from uhf_rfid_ble.core.config import ConnectionConfig, DeviceHistory, JsonFileConfigStore, PreferencesStore
from uhf_rfid_ble.core.exceptions import RfidBleError
from uhf_rfid_ble.core.session import ReaderSession
from uhf_rfid_ble.core.status import ConnectionStatus
from uhf_rfid_ble.protocols.events import TagReport
from uhf_rfid_ble.transport.bleak_transport import BleakBleTransport

# --- Configuration ---
READER_ADDRESS = None # e.g. "AA:BB:CC:DD:EE:FF"; None scans for the strongest reader
NAME_PREFIXES = ["UHF", "RFID"]
INVENTORY_DURATION = 10 # Seconds
SETTINGS_FILE = os.path.join(os.path.expanduser("~"), ".uhf_rfid_ble", "settings.json")

logging.basicConfig(level=logging.INFO,
                    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def on_status(status: ConnectionStatus):
    logger.info(f"[STATUS] {status}")


async def on_tag(tag: TagReport):
    logger.info(f"[TAG] EPC: {tag.epc} | RSSI: {tag.rssi}")


async def on_tick(elapsed: float):
    if int(elapsed * 10) % 10 == 0:
        logger.debug(f"Inventory running for {elapsed:.1f}s")


async def main():
    store = JsonFileConfigStore(SETTINGS_FILE)
    preferences = PreferencesStore(store).load()
    transport = BleakBleTransport(address=READER_ADDRESS, name_prefixes=NAME_PREFIXES)
    session = ReaderSession(
        transport,
        config=ConnectionConfig(store),
        preferences=preferences,
        history=DeviceHistory(store),
    )
    session.register_status_callback(on_status)
    session.register_tag_callback(on_tag)
    session.register_tick_callback(on_tick)

    try:
        outcome = await session.connect()
    except RfidBleError as e:
        logger.error(f"Could not find a reader: {e}")
        return

    if not outcome.succeeded:
        logger.error("All connection strategies failed:")
        for failure in outcome.failures:
            logger.error(f"  {failure.strategy_name}: {failure.error}")
        if session.last_error is not None:
            logger.error(f"Hint: {session.last_error.remediation}")
        return

    try:
        logger.info(f"Connected via {outcome.link.mode}")
        await session.apply_preferences()
        try:
            logger.info(f"Reader power: {await session.get_power()} dBm")
        except RfidBleError as e:
            logger.warning(f"Reader did not report its power: {e}")

        await session.start_inventory()
        await asyncio.sleep(INVENTORY_DURATION)
        await session.stop_inventory()
        await session.wait_idle()

        aggregator = session.aggregator
        logger.info(f"--- {aggregator.unique_count()} unique tags, {aggregator.total_count()} reads "
                    f"in {aggregator.elapsed():.1f}s ---")
        for record in aggregator.records():
            logger.info(f"  {record.epc}  x{record.count}  RSSI: {record.rssi}")
    except RfidBleError as e:
        logger.error(f"Reader error: {e}")
    finally:
        await session.disconnect()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logger.info("Interrupted by user.")
