"""
Standardized status and warning messages for PX4 Uploader.

Provides structured warning items with stable codes so the CLI and library
callers report transport, package and bootloader problems consistently.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Dict, Any, Type

from px4_uploader import errors


class MessageLevel(Enum):
    """Severity level for messages."""
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


# Stable codes for known conditions
class WarningCode(Enum):
    """Stable warning codes for known conditions."""
    # Link/transport
    W_DEVICE_NOT_FOUND = "W_DEVICE_NOT_FOUND"
    W_PORT_UNAVAILABLE = "W_PORT_UNAVAILABLE"
    W_NOT_CONNECTED = "W_NOT_CONNECTED"
    W_INVALID_CONFIG = "W_INVALID_CONFIG"
    W_SERIAL_TIMEOUT = "W_SERIAL_TIMEOUT"

    # Firmware package
    W_PACKAGE_MALFORMED = "W_PACKAGE_MALFORMED"
    W_SIZE_MISMATCH = "W_SIZE_MISMATCH"
    W_DATA_PADDED = "W_DATA_PADDED"

    # Bootloader
    W_SYNC_FAILED = "W_SYNC_FAILED"
    W_BAD_SYNC = "W_BAD_SYNC"
    W_BOOTLOADER_UNSUPPORTED = "W_BOOTLOADER_UNSUPPORTED"
    W_BOARD_MISMATCH = "W_BOARD_MISMATCH"
    W_IMAGE_TOO_LARGE = "W_IMAGE_TOO_LARGE"
    W_OTP_READ_FAILED = "W_OTP_READ_FAILED"
    W_ERASE_TIMEOUT = "W_ERASE_TIMEOUT"
    W_FLASH_WRITE_FAILED = "W_FLASH_WRITE_FAILED"

    # Session
    W_CANCELLED = "W_CANCELLED"

    # Generic
    W_UNKNOWN = "W_UNKNOWN"


# Default remediation hints for each warning code
WARNING_REMEDIATIONS: Dict[WarningCode, str] = {
    WarningCode.W_DEVICE_NOT_FOUND:
        "Plug the board in after starting the upload, or pass --port explicitly.",
    WarningCode.W_PORT_UNAVAILABLE:
        "Close other serial apps (ground stations, terminals). Check USB driver and permissions.",
    WarningCode.W_NOT_CONNECTED:
        "Connect the link before sending data.",
    WarningCode.W_INVALID_CONFIG:
        "Use 5-8 data bits, 1 or 2 stop bits, parity none/odd/even and a standard baud rate.",
    WarningCode.W_SERIAL_TIMEOUT:
        "Check cable connection. Try a shorter cable or a different USB port.",
    WarningCode.W_PACKAGE_MALFORMED:
        "The firmware file is damaged or not a .px4 package. Download it again.",
    WarningCode.W_SIZE_MISMATCH:
        "Error in decompressing firmware. Please re-download and try again.",
    WarningCode.W_DATA_PADDED:
        "Image was padded with 0xFF to a 4-byte boundary.",
    WarningCode.W_SYNC_FAILED:
        "Replug the board so the bootloader runs, then start the upload again.",
    WarningCode.W_BAD_SYNC:
        "Link noise detected. Check the cable.",
    WarningCode.W_BOOTLOADER_UNSUPPORTED:
        "Pass --allow-v4 to read OTP/serial number and flash v4 bootloaders.",
    WarningCode.W_BOARD_MISMATCH:
        "Select firmware built for this board, or pass --no-board-check.",
    WarningCode.W_IMAGE_TOO_LARGE:
        "Select firmware built for this board's flash size.",
    WarningCode.W_OTP_READ_FAILED:
        "The OTP area could not be read reliably. Replug and retry.",
    WarningCode.W_ERASE_TIMEOUT:
        "Do not unplug the board. Replug it and flash again from the start.",
    WarningCode.W_FLASH_WRITE_FAILED:
        "Error writing firmware, invalid sync. Please retry.",
    WarningCode.W_CANCELLED:
        "No further data was sent to the device.",
    WarningCode.W_UNKNOWN:
        "Check logs for more details.",
}


_ERROR_CODES: Dict[Type[BaseException], WarningCode] = {
    errors.InvalidConfiguration: WarningCode.W_INVALID_CONFIG,
    errors.DeviceNotFound: WarningCode.W_DEVICE_NOT_FOUND,
    errors.PortUnavailable: WarningCode.W_PORT_UNAVAILABLE,
    errors.NotConnected: WarningCode.W_NOT_CONNECTED,
    errors.ReadTimeout: WarningCode.W_SERIAL_TIMEOUT,
    errors.MalformedPackage: WarningCode.W_PACKAGE_MALFORMED,
    errors.SizeMismatch: WarningCode.W_SIZE_MISMATCH,
    errors.BadSync: WarningCode.W_BAD_SYNC,
    errors.SyncFailed: WarningCode.W_SYNC_FAILED,
    errors.UnsupportedBootloader: WarningCode.W_BOOTLOADER_UNSUPPORTED,
    errors.BoardMismatch: WarningCode.W_BOARD_MISMATCH,
    errors.ImageTooLarge: WarningCode.W_IMAGE_TOO_LARGE,
    errors.OtpReadFailed: WarningCode.W_OTP_READ_FAILED,
    errors.EraseTimeout: WarningCode.W_ERASE_TIMEOUT,
    errors.FlashWriteFailed: WarningCode.W_FLASH_WRITE_FAILED,
    errors.UserCancelled: WarningCode.W_CANCELLED,
}


@dataclass
class WarningItem:
    """
    Structured warning message with stable code.

    Attributes:
        level: Severity (INFO, WARN, ERROR)
        code: Stable warning code for programmatic handling
        title: Short, user-facing title
        detail: Longer explanation of the issue
        remediation: Suggested action to resolve the issue
    """
    level: MessageLevel
    code: WarningCode
    title: str
    detail: str = ""
    remediation: str = ""

    def __post_init__(self):
        """Set default remediation if not provided."""
        if not self.remediation and self.code in WARNING_REMEDIATIONS:
            self.remediation = WARNING_REMEDIATIONS[self.code]

    @classmethod
    def warn(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create a WARN-level warning."""
        return cls(MessageLevel.WARN, code, title, detail)

    @classmethod
    def error(cls, code: WarningCode, title: str, detail: str = "") -> "WarningItem":
        """Create an ERROR-level warning."""
        return cls(MessageLevel.ERROR, code, title, detail)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON/display."""
        return {
            "level": self.level.value,
            "code": self.code.value,
            "title": self.title,
            "detail": self.detail,
            "remediation": self.remediation,
        }


def code_for_error(exc: BaseException) -> WarningCode:
    """Return the stable code for an exception, walking its class hierarchy."""
    for klass in type(exc).__mro__:
        if klass in _ERROR_CODES:
            return _ERROR_CODES[klass]
    return WarningCode.W_UNKNOWN


def error_to_warning(exc: BaseException) -> WarningItem:
    """Convert an exception into an ERROR-level WarningItem."""
    code = code_for_error(exc)
    level = MessageLevel.WARN if code is WarningCode.W_CANCELLED else MessageLevel.ERROR
    return WarningItem(level, code, str(exc) or type(exc).__name__)


def result_to_warnings(result: "OperationResult") -> List[WarningItem]:
    """
    Convert an OperationResult's warnings and errors to WarningItem list.

    Error codes recorded in result.metadata["error_code"] are honoured;
    plain warning strings are classified by keyword.
    """
    items = []

    for msg in result.warnings:
        msg_lower = msg.lower()
        if "padded" in msg_lower:
            code = WarningCode.W_DATA_PADDED
        elif "sync" in msg_lower:
            code = WarningCode.W_BAD_SYNC
        elif "timeout" in msg_lower:
            code = WarningCode.W_SERIAL_TIMEOUT
        else:
            code = WarningCode.W_UNKNOWN
        items.append(WarningItem.warn(code, msg))

    recorded = result.metadata.get("error_code")
    for err in result.errors:
        code = WarningCode(recorded) if recorded else WarningCode.W_UNKNOWN
        items.append(WarningItem.error(code, err))

    return items
