# uhf_rfid_ble/core/config.py

"""
Persisted settings: the last GATT pair that worked, operator preferences and
the recently used device list. All of them live as keys of one document held
by a ConfigStore backend.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass, fields
from typing import Any, Dict, List, Optional, Tuple

from uhf_rfid_ble.utils.uuids import normalize_uuid

logger = logging.getLogger(__name__)

SERVICE_UUID_KEY = "customServiceUUID"
CHARACTERISTIC_UUID_KEY = "customCharUUID"
PREFERENCES_KEY = "rfidSettings"
DEVICE_HISTORY_KEY = "deviceHistory"

DEVICE_HISTORY_LIMIT = 10

FREQUENCY_REGIONS = (
    "China Standard 1",
    "China Standard 2",
    "Europe Standard",
    "United States Standard",
    "Korea",
    "Japan",
)

PROTOCOL_MODES = ("Auto", "ISO18000-6B", "ISO18000-6C")


# --- Backends ---

class ConfigStore(ABC):
    """Key/value persistence backend. Each call reads or writes the whole document."""

    @abstractmethod
    def load(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def save(self, document: Dict[str, Any]) -> None:
        pass

    def get(self, key: str, default: Any = None) -> Any:
        return self.load().get(key, default)

    def set(self, key: str, value: Any) -> None:
        document = self.load()
        document[key] = value
        self.save(document)

    def delete(self, *keys: str) -> None:
        document = self.load()
        for key in keys:
            document.pop(key, None)
        self.save(document)


class MemoryConfigStore(ConfigStore):
    """In-process store, the default when nothing should touch the disk."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self._document: Dict[str, Any] = dict(initial or {})

    def load(self) -> Dict[str, Any]:
        return dict(self._document)

    def save(self, document: Dict[str, Any]) -> None:
        self._document = dict(document)


class JsonFileConfigStore(ConfigStore):
    """
    Stores the document as a JSON object in a file.

    A missing file reads as empty. A corrupt or non-object file also reads as
    empty (with a warning) and is overwritten on the next save.
    """

    def __init__(self, path: str):
        self._path = path

    @property
    def path(self) -> str:
        return self._path

    def load(self) -> Dict[str, Any]:
        if not os.path.exists(self._path):
            return {}
        try:
            with open(self._path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except (OSError, ValueError) as e:
            logger.warning(f"Could not read settings from {self._path}: {e}")
            return {}
        if not isinstance(document, dict):
            logger.warning(f"Ignoring settings file {self._path}: top-level value is not an object")
            return {}
        return document

    def save(self, document: Dict[str, Any]) -> None:
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self._path, "w", encoding="utf-8") as f:
            json.dump(document, f, indent=2)
        logger.debug(f"Settings written to {self._path}")


# --- Connection pair ---

class ConnectionConfig:
    """The service/characteristic pair that last produced a working link."""

    def __init__(self, store: Optional[ConfigStore] = None):
        self._store = store if store is not None else MemoryConfigStore()

    @property
    def store(self) -> ConfigStore:
        return self._store

    def load(self) -> Optional[Tuple[str, str]]:
        """Returns the saved (service_uuid, characteristic_uuid) or None if either is missing."""
        document = self._store.load()
        service_uuid = document.get(SERVICE_UUID_KEY)
        characteristic_uuid = document.get(CHARACTERISTIC_UUID_KEY)
        if not service_uuid or not characteristic_uuid:
            return None
        return service_uuid, characteristic_uuid

    @property
    def saved_pair(self) -> Optional[Tuple[str, str]]:
        return self.load()

    def save(self, service_uuid: str, characteristic_uuid: str) -> None:
        document = self._store.load()
        document[SERVICE_UUID_KEY] = normalize_uuid(service_uuid)
        document[CHARACTERISTIC_UUID_KEY] = normalize_uuid(characteristic_uuid)
        self._store.save(document)
        logger.info(f"Saved connection UUIDs: service={document[SERVICE_UUID_KEY]}, "
                    f"characteristic={document[CHARACTERISTIC_UUID_KEY]}")

    def clear(self) -> None:
        self._store.delete(SERVICE_UUID_KEY, CHARACTERISTIC_UUID_KEY)


# --- Operator preferences ---

@dataclass
class ReaderPreferences:
    power: int = 26
    frequency: str = FREQUENCY_REGIONS[0]
    protocol: str = PROTOCOL_MODES[0]
    beep: bool = True
    tag_focus: bool = False
    rssi: bool = False
    auto_reconnect: bool = False

    @classmethod
    def from_dict(cls, saved: Optional[Dict[str, Any]]) -> "ReaderPreferences":
        """Merges saved values over the defaults. Unknown keys are ignored."""
        prefs = cls()
        if not isinstance(saved, dict):
            return prefs
        known = {f.name for f in fields(cls)}
        for key, value in saved.items():
            if key in known:
                setattr(prefs, key, value)
            else:
                logger.debug(f"Ignoring unknown preference '{key}'")
        return prefs

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def frequency_mode(self) -> int:
        """Index of ``frequency`` in FREQUENCY_REGIONS, as sent with SetFrequency.

        Raises:
            ValueError: If the region name is not known.
        """
        try:
            return FREQUENCY_REGIONS.index(self.frequency)
        except ValueError:
            raise ValueError(f"Unknown frequency region '{self.frequency}'. "
                             f"Expected one of: {', '.join(FREQUENCY_REGIONS)}") from None


class PreferencesStore:
    def __init__(self, store: Optional[ConfigStore] = None):
        self._store = store if store is not None else MemoryConfigStore()

    def load(self) -> ReaderPreferences:
        return ReaderPreferences.from_dict(self._store.get(PREFERENCES_KEY))

    def save(self, preferences: ReaderPreferences) -> None:
        self._store.set(PREFERENCES_KEY, preferences.to_dict())


# --- Recently used devices ---

@dataclass(frozen=True)
class DeviceHistoryEntry:
    address: str
    name: Optional[str] = None


class DeviceHistory:
    """Most recent first, one entry per address, at most DEVICE_HISTORY_LIMIT entries."""

    def __init__(self, store: Optional[ConfigStore] = None, limit: int = DEVICE_HISTORY_LIMIT):
        self._store = store if store is not None else MemoryConfigStore()
        self._limit = limit

    def entries(self) -> List[DeviceHistoryEntry]:
        raw = self._store.get(DEVICE_HISTORY_KEY) or []
        result = []
        for item in raw:
            if isinstance(item, dict) and item.get("address"):
                result.append(DeviceHistoryEntry(address=item["address"], name=item.get("name")))
        return result

    def remember(self, address: str, name: Optional[str] = None) -> List[DeviceHistoryEntry]:
        """Moves (or adds) the device to the front of the list."""
        kept = [e for e in self.entries() if e.address != address]
        updated = [DeviceHistoryEntry(address=address, name=name)] + kept
        updated = updated[:self._limit]
        self._store.set(DEVICE_HISTORY_KEY, [asdict(e) for e in updated])
        return updated

    def clear(self) -> None:
        self._store.delete(DEVICE_HISTORY_KEY)
