# uhf_rfid_ble/core/exceptions.py

"""Custom exceptions for the uhf_rfid_ble library."""

from typing import TYPE_CHECKING, Any, Optional

if TYPE_CHECKING:
    from uhf_rfid_ble.core.error_classifier import ClassifiedError
    from uhf_rfid_ble.core.negotiator import NegotiationExhausted


def _hex_preview(data: bytes, limit: int = 32) -> str:
    return f"{data[:limit].hex(' ').upper()}{'...' if len(data) > limit else ''}"


class RfidBleError(Exception):
    """Base exception class for all uhf_rfid_ble errors."""
    def __init__(self, message="An unspecified RFID error occurred."):
        super().__init__(message)


# --- Transport Layer Exceptions ---

class TransportError(RfidBleError):
    """
    Base exception for errors related to the BLE transport (scan, GATT connect,
    service discovery, characteristic read/write/notify). It often wraps a
    lower-level exception raised by the BLE stack.
    """
    def __init__(self, message="Transport layer error.", original_exception: Exception | None = None,
                 classified: Optional["ClassifiedError"] = None):
        """
        Args:
            message: A description of the transport error.
            original_exception: The underlying exception (e.g. a BleakError).
            classified: The ErrorClassifier verdict for this failure, if known.
        """
        super().__init__(message)
        self.original_exception = original_exception
        self.classified = classified

    def __str__(self):
        base_msg = super().__str__()
        if self.original_exception:
            orig_exc_type = type(self.original_exception).__name__
            orig_exc_msg = str(self.original_exception)
            return f"{base_msg} Original exception: [{orig_exc_type}] {orig_exc_msg}"
        return base_msg


class ConnectionError(TransportError):
    """
    Raised when a link cannot be established or an operation needs a link
    that is not there.
    """
    def __init__(self, message="Failed to establish connection.", original_exception: Exception | None = None,
                 classified: Optional["ClassifiedError"] = None):
        super().__init__(message, original_exception, classified)


class DeviceNotFoundError(ConnectionError):
    """
    Raised when scanning or picking produced no device.
    Common reasons include:
    - Reader powered off or out of range.
    - Reader not advertising (not in discoverable mode).
    - The operator cancelled the device picker.
    """
    def __init__(self, message="No matching BLE device found.", original_exception: Exception | None = None,
                 classified: Optional["ClassifiedError"] = None):
        super().__init__(message, original_exception, classified)


class ReadError(TransportError):
    """Raised when reading a characteristic fails unexpectedly."""
    def __init__(self, message="Failed to read characteristic.", original_exception: Exception | None = None,
                 classified: Optional["ClassifiedError"] = None):
        super().__init__(message, original_exception, classified)


class WriteError(TransportError):
    """Raised when writing a characteristic fails unexpectedly."""
    def __init__(self, message="Failed to write characteristic.", original_exception: Exception | None = None,
                 classified: Optional["ClassifiedError"] = None):
        super().__init__(message, original_exception, classified)


class TimeoutError(TransportError):
    """
    Raised when an expected reply does not arrive within the allotted time.
    The wire format carries no transaction id, so a missing reply usually means
    the reader ignored the command or the link is degrading.
    """
    def __init__(self, message="Operation timed out waiting for reader response."):
        super().__init__(message, original_exception=None)


# --- Protocol Layer Exceptions ---

class ProtocolError(RfidBleError):
    """Exception related to protocol framing or parsing."""
    def __init__(self, message="Protocol error."):
        super().__init__(message)


class FrameParseError(ProtocolError):
    """Raised by strict decoding when a received buffer is malformed."""
    def __init__(self, message="Failed to parse frame structure.", frame_part: bytes | None = None):
        msg = f"Frame parsing error: {message}"
        if frame_part:
            msg += f" Near bytes: {_hex_preview(frame_part)}"
        super().__init__(msg)
        self.frame_part = frame_part


# --- Command/Reader Logic Exceptions ---

class CommandError(RfidBleError):
    """
    Raised when a command cannot be encoded from the given arguments, or when a
    command is issued while a reply to the same kind of command is still pending.
    """
    def __init__(self, message: str = "Command execution failed.", command: Any = None, frame: bytes | None = None):
        super().__init__(message)
        self.command = command
        self.frame = frame

    def __str__(self):
        base_message = super().__str__()
        if self.frame:
            return f"{base_message} Frame (hex): {_hex_preview(self.frame)}"
        return base_message


# --- Negotiation Exceptions ---

class NegotiationError(RfidBleError):
    """Raised when a negotiation pass cannot be started or did not produce a link."""
    def __init__(self, message="Connection negotiation failed."):
        super().__init__(message)


class NegotiationExhaustedError(NegotiationError):
    """Raised by raising APIs when every connection strategy failed."""
    def __init__(self, outcome: "NegotiationExhausted"):
        names = ", ".join(f.strategy_name for f in outcome.failures) or "none"
        super().__init__(f"All connection strategies failed (tried: {names}).")
        self.outcome = outcome
