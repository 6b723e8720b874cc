"""Shared fixtures: simulated serial ports and a simulated PX4 bootloader."""

import struct
import threading

import pytest

from px4_uploader.firmware import build_package_text, load_firmware_text
from px4_uploader.protocol.bootloader import UploaderConfig

FOOTER = b"\x12\x10"
BAD_SYNC = b"\x12\x13"


class FakeSerial:
    """In-memory stand-in for serial.Serial."""

    def __init__(self, port: str = "/dev/ttyFAKE0"):
        self.port = port
        self.baudrate = 115200
        self.bytesize = 8
        self.parity = "N"
        self.stopbits = 1
        self.rtscts = False
        self.xonxoff = False
        self.timeout = None
        self.write_timeout = None
        self.is_open = False
        self.open_count = 0
        self.open_kwargs = []
        self.written = bytearray()
        self.dtr_changes = []
        self._dtr = False
        self._rx = bytearray()
        self._lock = threading.Lock()

    # factory used as port_factory=fake.open
    def open(self, **kwargs):
        for key, value in kwargs.items():
            setattr(self, key, value)
        self.open_kwargs.append(kwargs)
        self.open_count += 1
        self.is_open = True
        return self

    @property
    def dtr(self):
        return self._dtr

    @dtr.setter
    def dtr(self, value):
        self._dtr = value
        self.dtr_changes.append(value)

    @property
    def in_waiting(self) -> int:
        with self._lock:
            return len(self._rx)

    def feed(self, data: bytes) -> None:
        with self._lock:
            self._rx.extend(data)

    def read(self, size: int = 1) -> bytes:
        with self._lock:
            data = bytes(self._rx[:size])
            del self._rx[:size]
            return data

    def write(self, data: bytes) -> int:
        with self._lock:
            self.written.extend(data)
        self.on_write(bytes(data))
        return len(data)

    def on_write(self, data: bytes) -> None:
        pass

    def flush(self) -> None:
        pass

    def close(self) -> None:
        self.is_open = False


class FakeBootloader(FakeSerial):
    """
    Answers PX4 bootloader frames the way a real board does.

    Failure knobs count down as they are used: sync_failures drops SYNC
    replies, flash_failures answers PROG_MULTI with a bad sync,
    otp_failures drops READ_OTP replies.
    """

    def __init__(
        self,
        bootloader_rev: int = 3,
        board_id: int = 9,
        board_rev: int = 0,
        flash_size: int = 1032192,
        otp: bytes = None,
        serial_number: bytes = b"\x00\x31\x00\x1c\x33\x33\x47\x11\x36\x36\x32\x30",
        sync_failures: int = 0,
        flash_failures: int = 0,
        otp_failures: int = 0,
        erase_hangs: bool = False,
        port: str = "/dev/ttyFAKE0",
    ):
        super().__init__(port)
        self.info = {
            0x01: bootloader_rev,
            0x02: board_id,
            0x03: board_rev,
            0x04: flash_size,
        }
        if otp is None:
            otp = b"PX4\x00" + bytes(range(256)) + bytes(252)
        self.otp = otp
        self.serial_number = serial_number
        self.sync_failures = sync_failures
        self.flash_failures = flash_failures
        self.otp_failures = otp_failures
        self.erase_hangs = erase_hangs

        self.commands = []
        self.chunks = []
        self.flash = bytearray()
        self.erase_count = 0
        self.rebooted = False
        self._pending = bytearray()

    def on_write(self, data: bytes) -> None:
        self._pending.extend(data)
        while self._pending:
            consumed = self._handle(self._pending)
            if consumed == 0:
                break
            del self._pending[:consumed]

    def count(self, command: int) -> int:
        return sum(1 for c in self.commands if c == command)

    def _frame(self, buf: bytearray, length: int):
        """Return frame length if complete and EOC-terminated, 0 if incomplete, -1 if malformed."""
        if len(buf) < length:
            return 0
        return length if buf[length - 1] == 0x20 else -1

    def _handle(self, buf: bytearray) -> int:
        cmd = buf[0]
        if cmd == 0x21:
            size = self._frame(buf, 2)
            if size > 0:
                self.commands.append(cmd)
                if self.sync_failures:
                    self.sync_failures -= 1
                else:
                    self.feed(FOOTER)
        elif cmd == 0x22:
            size = self._frame(buf, 3)
            if size > 0:
                self.commands.append(cmd)
                self.feed(struct.pack("<I", self.info.get(buf[1], 0)) + FOOTER)
        elif cmd == 0x23:
            size = self._frame(buf, 2)
            if size > 0:
                self.commands.append(cmd)
                self.erase_count += 1
                self.flash.clear()
                if not self.erase_hangs:
                    self.feed(FOOTER)
        elif cmd == 0x27:
            if len(buf) < 2:
                return 0
            size = self._frame(buf, buf[1] + 3)
            if size > 0:
                self.commands.append(cmd)
                chunk = bytes(buf[2:2 + buf[1]])
                self.chunks.append(chunk)
                if self.flash_failures:
                    self.flash_failures -= 1
                    self.feed(BAD_SYNC)
                else:
                    self.flash.extend(chunk)
                    self.feed(FOOTER)
        elif cmd in (0x2A, 0x2B):
            size = self._frame(buf, 6)
            if size > 0:
                self.commands.append(cmd)
                offset = struct.unpack("<I", bytes(buf[1:5]))[0]
                if cmd == 0x2A:
                    if self.otp_failures:
                        self.otp_failures -= 1
                    else:
                        self.feed(self.otp[offset:offset + 4] + FOOTER)
                else:
                    self.feed(self.serial_number[offset:offset + 4][::-1] + FOOTER)
        elif cmd == 0x30:
            size = self._frame(buf, 2)
            if size > 0:
                self.commands.append(cmd)
                self.rebooted = True
        else:
            # Padding zeros, NSH text, MAVLink frames
            return 1

        if size < 0:
            return 1
        return size


def make_package(payload: bytes, board_id: int = 9, description: str = "Test firmware", **extra) -> str:
    return build_package_text(payload, board_id=board_id, description=description, **extra)


@pytest.fixture
def fake_serial():
    return FakeSerial()


@pytest.fixture
def fast_config():
    """UploaderConfig with no settle delays and short timeouts."""
    return UploaderConfig(
        port_name="/dev/ttyFAKE0",
        settle_delay=0,
        flush_delay=0,
        info_delay=0,
        erase_settle_delay=0,
        reboot_delay=0,
        sync_timeout=0.05,
        info_timeout=0.05,
        word_timeout=0.05,
        chunk_timeout=0.05,
        erase_timeout=0.05,
        poll_interval=0.001,
    )


@pytest.fixture
def firmware_payload():
    return bytes((i * 7) & 0xFF for i in range(250))


@pytest.fixture
def firmware_image(firmware_payload):
    return load_firmware_text(make_package(firmware_payload))


@pytest.fixture
def package_file(tmp_path, firmware_payload):
    path = tmp_path / "firmware.px4"
    path.write_text(make_package(firmware_payload), encoding="utf-8")
    return path
