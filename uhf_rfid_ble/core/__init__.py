"""Core components of the uhf_rfid_ble library."""

from .exceptions import (
    RfidBleError,
    TransportError,
    ConnectionError,
    DeviceNotFoundError,
    ReadError,
    WriteError,
    TimeoutError,
    ProtocolError,
    FrameParseError,
    CommandError,
    NegotiationError,
    NegotiationExhaustedError,
)
from .status import ConnectionStatus
from .error_classifier import ClassifiedError, ErrorCategory, ErrorClassifier, ErrorKind
from .aggregator import TagAggregator, TagRecord
from .config import (
    ConfigStore,
    MemoryConfigStore,
    JsonFileConfigStore,
    ConnectionConfig,
    ReaderPreferences,
    PreferencesStore,
    DeviceHistory,
)
from .dispatcher import EventDispatcher
from .negotiator import (
    ConnectionCandidate,
    ConnectionNegotiator,
    LinkHandle,
    NegotiationExhausted,
    NegotiationState,
    NegotiationSuccess,
    Strategy,
    StrategyFailure,
)
from .session import ReaderSession

__all__ = [
    'RfidBleError',
    'TransportError',
    'ConnectionError',
    'DeviceNotFoundError',
    'ReadError',
    'WriteError',
    'TimeoutError',
    'ProtocolError',
    'FrameParseError',
    'CommandError',
    'NegotiationError',
    'NegotiationExhaustedError',
    'ConnectionStatus',
    'ClassifiedError',
    'ErrorCategory',
    'ErrorClassifier',
    'ErrorKind',
    'TagAggregator',
    'TagRecord',
    'ConfigStore',
    'MemoryConfigStore',
    'JsonFileConfigStore',
    'ConnectionConfig',
    'ReaderPreferences',
    'PreferencesStore',
    'DeviceHistory',
    'EventDispatcher',
    'ConnectionCandidate',
    'ConnectionNegotiator',
    'LinkHandle',
    'NegotiationExhausted',
    'NegotiationState',
    'NegotiationSuccess',
    'Strategy',
    'StrategyFailure',
    'ReaderSession',
]
