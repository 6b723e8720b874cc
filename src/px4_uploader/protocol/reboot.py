"""
Reboot-into-bootloader byte sequences.

A board running PX4 firmware only enters its bootloader after a reboot.
When sync fails, the uploader sends a NSH shell reboot command followed by
MAVLink COMMAND_LONG frames (MAV_CMD_PREFLIGHT_REBOOT_SHUTDOWN, param1=1)
addressed to system ID 1 and to system ID 0.
"""

import logging
from typing import Callable, Tuple

logger = logging.getLogger(__name__)

# Wakes up the NSH prompt
NSH_INIT = b"\r\r\r"
NSH_REBOOT_BOOTLOADER = b"reboot -b\n"
NSH_REBOOT = b"reboot\n"

_MAVLINK_PAYLOAD = bytes([0x00, 0x00, 0x80, 0x3F]) + bytes(24)

MAVLINK_REBOOT_SYSID1 = (
    bytes([0xFE, 0x21, 0x72, 0xFF, 0x00, 0x4C])
    + _MAVLINK_PAYLOAD
    + bytes([0xF6, 0x00, 0x01, 0x00, 0x00, 0x48, 0xF0])
)

MAVLINK_REBOOT_SYSID0 = (
    bytes([0xFE, 0x21, 0x45, 0xFF, 0x00, 0x4C])
    + _MAVLINK_PAYLOAD
    + bytes([0xF6, 0x00, 0x00, 0x00, 0x00, 0xD7, 0xAC])
)

REBOOT_SEQUENCE: Tuple[bytes, ...] = (
    NSH_INIT,
    NSH_REBOOT_BOOTLOADER,
    NSH_INIT[:2],
    NSH_REBOOT,
    NSH_INIT[:2],
    MAVLINK_REBOOT_SYSID1,
    MAVLINK_REBOOT_SYSID0,
)


def send_reboot_sequence(write: Callable[[bytes], object]) -> int:
    """
    Send every reboot request in order.

    Args:
        write: Callable that transmits one byte string (a port's write,
            SerialLink.write, SerialReader.send)

    Returns:
        Total bytes sent
    """
    logger.info("Requesting reboot into bootloader (NSH + MAVLink)")
    sent = 0
    for frame in REBOOT_SEQUENCE:
        write(frame)
        sent += len(frame)
    return sent
