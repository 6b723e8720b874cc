"""
PX4 Bootloader Wire Format

Command bytes, request frame builders and a buffered reader for the
bootloader's request/response protocol.

Protocol:
    REQUEST:  [command | arguments... | EOC (0x20)]
    RESPONSE: [payload (fixed size, may be empty) | INSYNC (0x12) | OK (0x10)]

This module provides:
- Command and info-parameter constants
- Request frame builders
- SerialReader: exact-length reads with a deadline and partial-byte carry-over
"""

import logging
import struct
import time
from typing import Optional

from px4_uploader.errors import BadSync, ReadTimeout

logger = logging.getLogger(__name__)


# Framing
EOC = 0x20
INSYNC = 0x12
OK = 0x10
SYNC_FOOTER = bytes([INSYNC, OK])

# Commands
GET_SYNC = 0x21
GET_DEVICE = 0x22
CHIP_ERASE = 0x23
PROG_MULTI = 0x27
READ_OTP = 0x2A
GET_SN = 0x2B
REBOOT = 0x30

# GET_DEVICE parameters
INFO_BL_REV = 0x01
INFO_BOARD_ID = 0x02
INFO_BOARD_REV = 0x03
INFO_FLASH_SIZE = 0x04
INFO_VEC_AREA = 0x05

INFO_NAMES = {
    INFO_BL_REV: "bootloader rev",
    INFO_BOARD_ID: "board id",
    INFO_BOARD_REV: "board rev",
    INFO_FLASH_SIZE: "flash size",
    INFO_VEC_AREA: "vector area",
}

PROG_MULTI_MAX = 60
OTP_SIZE = 512
SN_SIZE = 12
WORD_SIZE = 4


def sync_frame() -> bytes:
    return bytes([GET_SYNC, EOC])


def get_device_frame(param: int) -> bytes:
    return bytes([GET_DEVICE, param, EOC])


def erase_frame() -> bytes:
    return bytes([CHIP_ERASE, EOC])


def reboot_frame() -> bytes:
    return bytes([REBOOT, EOC])


def prog_multi_frame(chunk: bytes) -> bytes:
    """
    Build a PROG_MULTI request.

    Raises:
        ValueError: If chunk is empty or longer than PROG_MULTI_MAX
    """
    if not 0 < len(chunk) <= PROG_MULTI_MAX:
        raise ValueError(f"Chunk must be 1-{PROG_MULTI_MAX} bytes, got {len(chunk)}")
    return bytes([PROG_MULTI, len(chunk)]) + bytes(chunk) + bytes([EOC])


def read_otp_frame(offset: int) -> bytes:
    """READ_OTP request for the word at `offset` (u32 little-endian)."""
    # EOC-terminated like every other request. Some uploaders leave the
    # terminator off this one command; the bootloader accepts it either way.
    return bytes([READ_OTP]) + struct.pack("<I", offset) + bytes([EOC])


def get_sn_frame(offset: int) -> bytes:
    """GET_SN request for the word at `offset` (u32 little-endian)."""
    return bytes([GET_SN]) + struct.pack("<I", offset) + bytes([EOC])


def decode_u32(data: bytes) -> int:
    """Decode a 4-byte little-endian unsigned value."""
    return struct.unpack("<I", data)[0]


class SerialReader:
    """
    Exact-length reads over a pyserial-compatible port.

    Bytes that arrive before a timeout are kept and returned first by the
    next read, so a late reply is never silently lost.

    Example:
        reader = SerialReader(port)
        port.write(sync_frame())
        reader.expect_sync(timeout=2.0)
    """

    def __init__(self, port, poll_interval: float = 0.01):
        """
        Args:
            port: Object with read(n), write(data) and in_waiting
            poll_interval: Sleep between empty reads (seconds)
        """
        self.port = port
        self.poll_interval = poll_interval
        self._buffer = bytearray()

    @property
    def buffered(self) -> int:
        """Bytes received but not yet consumed."""
        return len(self._buffer)

    def read_exactly(self, count: int, timeout: float) -> bytes:
        """
        Return exactly `count` bytes.

        Raises:
            ReadTimeout: If fewer than `count` bytes arrived within `timeout`
                seconds (the partial bytes stay buffered)
        """
        deadline = time.monotonic() + timeout
        while len(self._buffer) < count:
            chunk = self.port.read(self.port.in_waiting or 1)
            if chunk:
                self._buffer.extend(chunk)
                continue
            if time.monotonic() >= deadline:
                raise ReadTimeout(
                    f"Timeout waiting for {count} bytes, got {len(self._buffer)}"
                )
            time.sleep(self.poll_interval)

        data = bytes(self._buffer[:count])
        del self._buffer[:count]
        logger.debug(f"<<< {data.hex().upper()}")
        return data

    def expect_sync(self, timeout: float) -> None:
        """
        Read the two-byte sync footer.

        Raises:
            ReadTimeout: If the footer did not arrive in time
            BadSync: If other bytes arrived instead
        """
        footer = self.read_exactly(len(SYNC_FOOTER), timeout)
        if footer != SYNC_FOOTER:
            raise BadSync(f"Invalid sync: {footer.hex().upper()}")

    def read_payload(self, count: int, timeout: float) -> bytes:
        """Read a `count`-byte payload followed by the sync footer."""
        payload = self.read_exactly(count, timeout)
        self.expect_sync(timeout)
        return payload

    def send(self, frame: bytes) -> None:
        self.port.write(frame)
        logger.debug(f">>> {frame.hex().upper()}")

    def clear(self) -> bytes:
        """Drop buffered bytes plus whatever the port holds right now."""
        junk = bytes(self._buffer)
        self._buffer.clear()
        waiting = self.port.in_waiting
        if waiting:
            junk += self.port.read(waiting)
        if junk:
            logger.debug(f"Drained {len(junk)} bytes of junk from buffer")
        return junk

    def drain(self, wait: Optional[float] = None) -> bytes:
        """Wait for stray bytes to arrive, then discard everything pending."""
        if wait:
            time.sleep(wait)
        return self.clear()
