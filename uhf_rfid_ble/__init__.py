"""UHF RFID over BLE - Asynchronous library for discovering, connecting to and driving BLE UHF RFID readers."""

# core must be imported before protocols: the codec raises core exceptions
from .core import (
    ReaderSession,
    ConnectionStatus,
    ConnectionNegotiator,
    TagAggregator,
    ErrorClassifier,
    ConnectionConfig,
    ReaderPreferences,
    RfidBleError,
    TransportError,
    ConnectionError,
    CommandError,
    ProtocolError,
    NegotiationError,
)
from .protocols import FrameCodec
from .transport import BleakBleTransport, MockBleTransport

__version__ = '0.1.0'

__all__ = [
    # Core components
    'ReaderSession',
    'ConnectionStatus',
    'ConnectionNegotiator',
    'TagAggregator',
    'ErrorClassifier',
    'ConnectionConfig',
    'ReaderPreferences',
    # Exceptions
    'RfidBleError',
    'TransportError',
    'ConnectionError',
    'CommandError',
    'ProtocolError',
    'NegotiationError',
    # Protocol
    'FrameCodec',
    # Transport
    'BleakBleTransport',
    'MockBleTransport',
]
