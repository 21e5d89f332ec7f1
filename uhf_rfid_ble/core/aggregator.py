# uhf_rfid_ble/core/aggregator.py

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from uhf_rfid_ble.protocols.events import TagReport

logger = logging.getLogger(__name__)


@dataclass
class TagRecord:
    """Running statistics for one tag seen during inventory."""
    epc: str
    count: int = 1
    rssi: Optional[int] = None
    tid: Optional[str] = None
    first_seen: float = field(default_factory=time.time)
    last_seen: float = field(default_factory=time.time)


class TagAggregator:
    """
    Deduplicates inventory reports into one TagRecord per EPC.

    The EPC is the unique key, compared after upper-casing. Records keep their
    insertion order and live until ``reset()``; a disconnect does not clear them.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._records: Dict[str, TagRecord] = {}
        self._clock = clock
        self._started_at: Optional[float] = None

    def update(self, report: TagReport) -> TagRecord:
        """
        Folds one tag report into the table.

        A repeated EPC increments its count and overwrites the RSSI with the
        latest value, even when that value is None.

        Returns:
            The new or updated TagRecord.
        """
        epc = report.epc.upper()
        now = time.time()
        record = self._records.get(epc)
        if record is None:
            record = TagRecord(epc=epc, rssi=report.rssi, first_seen=now, last_seen=now)
            self._records[epc] = record
            logger.debug(f"New tag: {epc} (RSSI: {report.rssi})")
        else:
            record.count += 1
            record.rssi = report.rssi
            record.last_seen = now
        return record

    def set_tid(self, epc: str, tid: str) -> Optional[TagRecord]:
        """Attaches a TID read from the tag's TID bank. Returns None if the EPC is unknown."""
        record = self._records.get(epc.upper())
        if record is None:
            logger.warning(f"Cannot set TID for unknown tag {epc}")
            return None
        record.tid = tid.upper()
        return record

    def reset(self) -> None:
        """Clears every record and the elapsed-time baseline."""
        self._records.clear()
        self._started_at = None

    def start_clock(self) -> None:
        """Starts timing inventory, unless it was already started since the last reset."""
        if self._started_at is None:
            self._started_at = self._clock()

    def elapsed(self) -> float:
        if self._started_at is None:
            return 0.0
        return self._clock() - self._started_at

    def total_count(self) -> int:
        """Sum of read counts over all records."""
        return sum(record.count for record in self._records.values())

    def unique_count(self) -> int:
        return len(self._records)

    def records(self) -> List[TagRecord]:
        return list(self._records.values())

    def get(self, epc: str) -> Optional[TagRecord]:
        return self._records.get(epc.upper())

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, epc: str) -> bool:
        return isinstance(epc, str) and epc.upper() in self._records
