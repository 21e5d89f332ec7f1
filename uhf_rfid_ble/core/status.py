# uhf_rfid_ble/core/status.py

from enum import Enum, auto

class ConnectionStatus(Enum):
    """Represents the connection state of a reader session."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    CONNECTED = auto()
    DISCONNECTING = auto()
    ERROR = auto() # Last connection attempt exhausted every strategy

    def __str__(self):
        return self.name
