"""Serial transport, device discovery and PX4 bootloader protocol."""

from .serial_link import (
    SerialLink,
    PortConfiguration,
    LinkStatistics,
    SUPPORTED_BAUD_RATES,
)
from .discovery import PortWatcher, list_port_names
from .framing import SerialReader, SYNC_FOOTER, PROG_MULTI_MAX
from .reboot import REBOOT_SEQUENCE, send_reboot_sequence
from .bootloader import (
    BootloaderUploader,
    BootloaderSession,
    UploaderConfig,
    UploaderState,
    OtpVerifier,
)

__all__ = [
    # Transport
    "SerialLink",
    "PortConfiguration",
    "LinkStatistics",
    "SUPPORTED_BAUD_RATES",
    # Discovery
    "PortWatcher",
    "list_port_names",
    # Framing
    "SerialReader",
    "SYNC_FOOTER",
    "PROG_MULTI_MAX",
    "REBOOT_SEQUENCE",
    "send_reboot_sequence",
    # Bootloader
    "BootloaderUploader",
    "BootloaderSession",
    "UploaderConfig",
    "UploaderState",
    "OtpVerifier",
]
