# uhf_rfid_ble/core/error_classifier.py

"""
Maps raw BLE transport failures onto a small taxonomy that drives operator
remediation copy and automatic retry decisions.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from uhf_rfid_ble.core.exceptions import TransportError

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Which phase of connecting a failure belongs to."""
    DISCOVERY = "discovery"
    ENVIRONMENT = "environment"
    LINK = "link"
    UNKNOWN = "unknown"


class ErrorCategory(Enum):
    DEVICE_NOT_FOUND = "DeviceNotFound"
    BROWSER_UNSUPPORTED = "BrowserUnsupported" # Host has no usable BLE stack
    TRANSPORT_INSECURE_CONTEXT = "TransportInsecureContext"
    PERMISSION_DENIED = "PermissionDenied"
    GATT_NETWORK = "GattNetwork"
    GATT_INVALID_STATE = "GattInvalidState"
    GATT_SECURITY = "GattSecurity"
    GATT_NOT_FOUND = "GattNotFound"
    GATT_NOT_SUPPORTED = "GattNotSupported"
    GATT_OPERATION_FAILED = "GattOperationFailed"
    GATT_TIMEOUT = "GattTimeout"
    UNKNOWN = "Unknown"

    def __str__(self):
        return self.value


CATEGORY_KINDS: Dict[ErrorCategory, ErrorKind] = {
    ErrorCategory.DEVICE_NOT_FOUND: ErrorKind.DISCOVERY,
    ErrorCategory.BROWSER_UNSUPPORTED: ErrorKind.ENVIRONMENT,
    ErrorCategory.TRANSPORT_INSECURE_CONTEXT: ErrorKind.ENVIRONMENT,
    ErrorCategory.PERMISSION_DENIED: ErrorKind.ENVIRONMENT,
    ErrorCategory.GATT_NETWORK: ErrorKind.LINK,
    ErrorCategory.GATT_INVALID_STATE: ErrorKind.LINK,
    ErrorCategory.GATT_SECURITY: ErrorKind.LINK,
    ErrorCategory.GATT_NOT_FOUND: ErrorKind.LINK,
    ErrorCategory.GATT_NOT_SUPPORTED: ErrorKind.LINK,
    ErrorCategory.GATT_OPERATION_FAILED: ErrorKind.LINK,
    ErrorCategory.GATT_TIMEOUT: ErrorKind.LINK,
    ErrorCategory.UNKNOWN: ErrorKind.UNKNOWN,
}

RETRYABLE_CATEGORIES = frozenset({
    ErrorCategory.GATT_NETWORK,
    ErrorCategory.GATT_OPERATION_FAILED,
    ErrorCategory.GATT_TIMEOUT,
})

REMEDIATION: Dict[ErrorCategory, str] = {
    ErrorCategory.DEVICE_NOT_FOUND: (
        "No devices found. Make sure the RFID reader is powered on, in pairing/discoverable "
        "mode and within range, then scan again."
    ),
    ErrorCategory.BROWSER_UNSUPPORTED: (
        "Bluetooth Low Energy is not available on this host. Use a host with a supported "
        "Bluetooth adapter and driver."
    ),
    ErrorCategory.TRANSPORT_INSECURE_CONTEXT: (
        "Bluetooth access requires a secure context. Serve the application over HTTPS or localhost."
    ),
    ErrorCategory.PERMISSION_DENIED: (
        "Bluetooth permission was denied. Grant Bluetooth access to this application and try again."
    ),
    ErrorCategory.GATT_NETWORK: (
        "Network/Connection failed. Try moving closer to the device or reconnecting."
    ),
    ErrorCategory.GATT_INVALID_STATE: (
        "Device is not in a valid state. Try disconnecting and reconnecting."
    ),
    ErrorCategory.GATT_SECURITY: (
        "Security/Authorization failed. Check Bluetooth permissions and pairing."
    ),
    ErrorCategory.GATT_NOT_FOUND: "Service or characteristic not found.",
    ErrorCategory.GATT_NOT_SUPPORTED: "Operation not supported by this device.",
    ErrorCategory.GATT_OPERATION_FAILED: (
        "Operation failed. The device may have disconnected."
    ),
    ErrorCategory.GATT_TIMEOUT: (
        "Connection timeout. The device may be out of range or not responding."
    ),
    ErrorCategory.UNKNOWN: (
        "Connection failed. Make sure the reader is powered on and in range, then retry."
    ),
}

# Exact error-category names, as raised by Web Bluetooth style hosts, Python and bleak
_EXACT_CATEGORIES: Dict[str, ErrorCategory] = {
    "NetworkError": ErrorCategory.GATT_NETWORK,
    "InvalidStateError": ErrorCategory.GATT_INVALID_STATE,
    "SecurityError": ErrorCategory.GATT_SECURITY,
    "NotFoundError": ErrorCategory.GATT_NOT_FOUND,
    "NotSupportedError": ErrorCategory.GATT_NOT_SUPPORTED,
    "OperationError": ErrorCategory.GATT_OPERATION_FAILED,
    "TimeoutError": ErrorCategory.GATT_TIMEOUT,
    "NotAllowedError": ErrorCategory.PERMISSION_DENIED,
    "PermissionError": ErrorCategory.PERMISSION_DENIED,
    "InsecureContextError": ErrorCategory.TRANSPORT_INSECURE_CONTEXT,
    "DeviceNotFoundError": ErrorCategory.DEVICE_NOT_FOUND,
    "BleakDeviceNotFoundError": ErrorCategory.DEVICE_NOT_FOUND,
    "BleakCharacteristicNotFoundError": ErrorCategory.GATT_NOT_FOUND,
    "BleakBluetoothNotAvailableError": ErrorCategory.BROWSER_UNSUPPORTED,
}

# During device discovery a few names mean something different
_DISCOVERY_OVERRIDES: Dict[str, ErrorCategory] = {
    "NotFoundError": ErrorCategory.DEVICE_NOT_FOUND,
    "NotSupportedError": ErrorCategory.BROWSER_UNSUPPORTED,
}

# Message fallback, checked in order
_MESSAGE_KEYWORDS: Tuple[Tuple[Tuple[str, ...], ErrorCategory], ...] = (
    (("network",), ErrorCategory.GATT_NETWORK),
    (("invalid state",), ErrorCategory.GATT_INVALID_STATE),
    (("security",), ErrorCategory.GATT_SECURITY),
    (("timeout", "time"), ErrorCategory.GATT_TIMEOUT),
)


@dataclass(frozen=True)
class ClassifiedError:
    """A transport failure together with its category and what to tell the operator."""
    category: ErrorCategory
    source: str
    message: str

    @property
    def kind(self) -> ErrorKind:
        return CATEGORY_KINDS[self.category]

    @property
    def retryable(self) -> bool:
        return self.category in RETRYABLE_CATEGORIES

    @property
    def remediation(self) -> str:
        return REMEDIATION[self.category]

    def __str__(self):
        return f"{self.category}: {self.message}" if self.message else str(self.category)


class ErrorClassifier:
    """
    Classifies errors by exact category name first and falls back to keyword
    matching on the message.
    """

    def classify(self, category: Optional[str], message: Optional[str], during_discovery: bool = False) -> ClassifiedError:
        """
        Args:
            category: The error's category name (e.g. "NetworkError", an exception class name).
            message: The human-readable error message.
            during_discovery: True when the failure happened while scanning/picking a device.
        """
        name = category or ""
        text = message or ""

        resolved = None
        if during_discovery:
            resolved = _DISCOVERY_OVERRIDES.get(name)
        if resolved is None:
            resolved = _EXACT_CATEGORIES.get(name)
        if resolved is None:
            lowered = text.lower()
            for keywords, keyword_category in _MESSAGE_KEYWORDS:
                if any(keyword in lowered for keyword in keywords):
                    resolved = keyword_category
                    break
        if resolved is None:
            resolved = ErrorCategory.UNKNOWN

        logger.debug(f"Classified error [{name}] {text!r} as {resolved}")
        return ClassifiedError(category=resolved, source=name, message=text)

    def classify_exception(self, exc: BaseException, during_discovery: bool = False) -> ClassifiedError:
        """
        Classifies an exception. Library TransportErrors are classified by the
        exception they wrap, or reuse the verdict they already carry.
        """
        if isinstance(exc, TransportError):
            if exc.classified is not None:
                return exc.classified
            if exc.original_exception is not None:
                inner = exc.original_exception
                if isinstance(inner, TransportError):
                    return self.classify_exception(inner, during_discovery)
                return self.classify(type(inner).__name__, str(inner) or str(exc), during_discovery)
        return self.classify(type(exc).__name__, str(exc), during_discovery)
