"""
PX4 Bootloader Upload Protocol

Drives a board's bootloader through identification and flashing on a
dedicated worker thread. The uploader owns the serial port for the whole
session; it never shares it with a SerialLink.

Session flow:
    IDLE -> WAITING_FOR_DEVICE -> SYNCING -> QUERYING_INFO
         -> [READING_OTP -> READING_SERIAL_NUMBER]   (bootloader rev >= 4)
         -> ERASING -> FLASHING -> FINALIZING -> DONE

FAILED is reachable from any state; CANCELLED ends a session stopped with
stop(). Every transition is published as one STATE event, in order.

Timeouts (seconds, see UploaderConfig):
    sync / info / OTP word: 2.0
    erase: 60.0
    flash chunk: 1.0
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import IO, Callable, Iterable, List, Optional

import serial

from px4_uploader.core.events import EventBus, EventKind
from px4_uploader.core.messages import MessageLevel, code_for_error
from px4_uploader.core.results import OperationResult
from px4_uploader.errors import (
    BadSync,
    BoardMismatch,
    DeviceNotFound,
    EraseTimeout,
    FlashWriteFailed,
    ImageTooLarge,
    OtpReadFailed,
    PortUnavailable,
    ReadTimeout,
    SyncFailed,
    UnsupportedBootloader,
    UploaderError,
    UserCancelled,
)
from px4_uploader.firmware import FirmwareImage, stage_image
from px4_uploader.protocol.discovery import PortWatcher, list_port_names
from px4_uploader.protocol.framing import (
    INFO_BL_REV,
    INFO_BOARD_ID,
    INFO_BOARD_REV,
    INFO_FLASH_SIZE,
    INFO_NAMES,
    OTP_SIZE,
    PROG_MULTI_MAX,
    SN_SIZE,
    WORD_SIZE,
    SerialReader,
    decode_u32,
    erase_frame,
    get_device_frame,
    get_sn_frame,
    prog_multi_frame,
    read_otp_frame,
    reboot_frame,
    sync_frame,
)
from px4_uploader.protocol.reboot import send_reboot_sequence

logger = logging.getLogger(__name__)

BOOTLOADER_BAUD = 115200
OTP_HEADER = b"PX4\x00"
PROGRESS_EVERY = 50


class UploaderState(Enum):
    IDLE = "idle"
    WAITING_FOR_DEVICE = "waiting_for_device"
    SYNCING = "syncing"
    QUERYING_INFO = "querying_info"
    READING_OTP = "reading_otp"
    READING_SERIAL_NUMBER = "reading_serial_number"
    ERASING = "erasing"
    FLASHING = "flashing"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (UploaderState.DONE, UploaderState.FAILED, UploaderState.CANCELLED)


@dataclass
class UploaderConfig:
    """
    Tunables for one upload session.

    Attributes:
        port_name: Use this port instead of waiting for a new one
        discovery_timeout: Give up waiting for a device after this many
            seconds (None waits until stopped)
        allow_v4_bootloader: Accept bootloader rev >= 4 and read its OTP and
            serial number; rejected by default
        check_board_id: Refuse firmware built for another board
        query_only: Stop after identification, without erasing
        reboot_on_sync_failure: Send the NSH/MAVLink reboot sequence when a
            sync attempt fails
        max_flash_failures: Bad chunk syncs tolerated (each followed by a
            re-erase) before giving up
    """
    port_name: Optional[str] = None
    discovery_timeout: Optional[float] = None
    discovery_interval: float = 0.1
    allow_v4_bootloader: bool = False
    check_board_id: bool = True
    query_only: bool = False
    reboot_on_sync_failure: bool = False

    sync_attempts: int = 5
    sync_timeout: float = 2.0
    info_timeout: float = 2.0
    word_timeout: float = 2.0
    word_retries: int = 5
    erase_timeout: float = 60.0
    chunk_timeout: float = 1.0
    max_flash_failures: int = 2

    settle_delay: float = 0.5
    flush_delay: float = 1.0
    info_delay: float = 0.5
    erase_settle_delay: float = 1.0
    reboot_delay: float = 1.0
    poll_interval: float = 0.01


@dataclass
class BootloaderSession:
    """
    What the uploader learned about the attached board.

    Attributes:
        state: Current uploader state
        port_name: Port the board appeared on
        bootloader_rev, board_id, board_rev, flash_size: GET_DEVICE replies
        otp: 512-byte OTP area (rev >= 4 only)
        serial_number: 12-byte serial number, each word byte-reversed
    """
    state: UploaderState = UploaderState.IDLE
    port_name: str = ""
    bootloader_rev: Optional[int] = None
    board_id: Optional[int] = None
    board_rev: Optional[int] = None
    flash_size: Optional[int] = None
    otp: bytes = b""
    serial_number: bytes = b""
    erase_count: int = 0
    history: List[UploaderState] = field(default_factory=lambda: [UploaderState.IDLE])

    @property
    def otp_dump(self) -> str:
        """OTP bytes as hex, 16 per line."""
        lines = []
        for start in range(0, len(self.otp), 16):
            lines.append("".join(f"{b:02X} " for b in self.otp[start:start + 16]))
        return "\n".join(lines)

    @property
    def serial_text(self) -> str:
        return "".join(f"{b:02X} " for b in self.serial_number)

    @property
    def board(self) -> str:
        if self.board_id is None:
            return ""
        return f"board {self.board_id} rev {self.board_rev}"


class OtpVerifier:
    """
    Checks the OTP signature over the board serial number.

    The default implementation accepts every board. Subclass and override
    verify() to check against a vendor public key.
    """

    def verify(self, signature: bytes, message: bytes) -> bool:
        return True


class BootloaderUploader:
    """
    Flash a firmware image (or just identify the board) over the PX4
    bootloader protocol.

    Example:
        uploader = BootloaderUploader(image)
        uploader.events.subscribe(print)
        uploader.start()
        ...                 # plug in the board
        uploader.join()
        print(uploader.result.to_summary())
    """

    def __init__(
        self,
        image: Optional[FirmwareImage] = None,
        config: Optional[UploaderConfig] = None,
        events: Optional[EventBus] = None,
        port_factory: Optional[Callable[..., object]] = None,
        port_lister: Optional[Callable[[], Iterable[str]]] = None,
        stop_event: Optional[threading.Event] = None,
        verifier: Optional[OtpVerifier] = None,
    ):
        """
        Args:
            image: Firmware to flash; may be None when config.query_only
            config: Session tunables
            events: Event channel; a private one is created when omitted
            port_factory: Callable accepting pyserial keyword arguments
                (default serial.Serial)
            port_lister: Returns available port names (default: pyserial
                list_ports)
            stop_event: Shared cancellation flag
            verifier: OTP signature check run for rev >= 4 boards
        """
        self.config = config or UploaderConfig()
        if image is None and not self.config.query_only:
            raise ValueError("A firmware image is required unless query_only is set")
        self.image = image
        self.events = events if events is not None else EventBus()
        self.verifier = verifier or OtpVerifier()
        self._port_factory = port_factory or serial.Serial
        self._port_lister = port_lister or list_port_names
        self._stop = stop_event or threading.Event()

        self.session = BootloaderSession()
        self.result: Optional[OperationResult] = None
        self.error: Optional[BaseException] = None

        self._port = None
        self._staged: Optional[IO[bytes]] = None
        self._thread: Optional[threading.Thread] = None

    # -- public API ---------------------------------------------------------

    @property
    def state(self) -> UploaderState:
        return self.session.state

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def operation(self) -> str:
        return "query" if self.config.query_only else "flash"

    def start(self) -> threading.Thread:
        """Run the session on a dedicated worker thread."""
        if self._thread is not None and self._thread.is_alive():
            raise RuntimeError("Upload already running")
        self._thread = threading.Thread(target=self.run, name="px4-bootloader", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self) -> None:
        """Request cancellation; honoured before the next blocking step."""
        logger.info("Stop requested")
        self._stop.set()

    def join(self, timeout: Optional[float] = None) -> Optional[OperationResult]:
        if self._thread is not None:
            self._thread.join(timeout)
        return self.result

    def run(self) -> OperationResult:
        """
        Execute the whole session synchronously.

        Returns:
            OperationResult describing the outcome. Errors are reported in the
            result and as an ERROR event, never raised.
        """
        result = OperationResult(ok=False, operation=self.operation)
        if self.image is not None:
            result.bytes_len = self.image.size
            result.hashes["sha256"] = self.image.sha256

        try:
            self._run_session()
        except UserCancelled as exc:
            self.error = exc
            self._release()
            self._transition(UploaderState.CANCELLED)
            result.cancelled = True
            result.add_warning(str(exc))
            logger.info("Upload cancelled")
        except UploaderError as exc:
            self._fail(result, exc)
        except (serial.SerialException, OSError) as exc:
            self._fail(result, PortUnavailable(f"Serial error on {self.session.port_name}: {exc}"))
        else:
            result.ok = True
        finally:
            self._release()

        session = self.session
        result.port = session.port_name
        result.board = session.board
        result.metadata.update({
            "state": session.state.value,
            "bootloader_rev": session.bootloader_rev,
            "board_id": session.board_id,
            "board_rev": session.board_rev,
            "flash_size": session.flash_size,
            "serial_number": session.serial_text.strip(),
            "erase_count": session.erase_count,
        })
        self.result = result
        return result

    # -- session ------------------------------------------------------------

    def _run_session(self) -> None:
        cfg = self.config
        port_name = self._wait_for_device()
        self.session.port_name = port_name

        self._sleep(cfg.settle_delay)
        reader = self._open_port(port_name)

        self._identify(reader)
        self._publish_device_info()

        if cfg.query_only:
            self._close_port()
            self._transition(UploaderState.DONE)
            self._emit(EventKind.DONE, "Board query complete")
            return

        self._check_compatibility()
        self._staged = stage_image(self.image)

        self._erase(reader)
        self._flash(reader, self._staged)
        self._finalize(reader)

        self._transition(UploaderState.DONE)
        self._emit(EventKind.DONE, "Flashing complete!")

    def _wait_for_device(self) -> str:
        self._check_stop()
        self._transition(UploaderState.WAITING_FOR_DEVICE)
        if self.config.port_name:
            logger.info(f"Using port {self.config.port_name}")
            return self.config.port_name

        self._status("Waiting for device, plug in the board")
        watcher = PortWatcher(
            lister=self._port_lister,
            interval=self.config.discovery_interval,
            stop_event=self._stop,
        )
        port_name = watcher.wait_for_new_port(timeout=self.config.discovery_timeout)
        self._check_stop()
        if port_name is None:
            raise DeviceNotFound(
                f"No new device detected within {self.config.discovery_timeout}s"
            )
        self._status(f"Found device on {port_name}")
        return port_name

    def _open_port(self, port_name: str) -> SerialReader:
        """Open at 115200 8N1, push zero bytes through and drain the input."""
        self._check_stop()
        try:
            self._port = self._port_factory(
                port=port_name,
                baudrate=BOOTLOADER_BAUD,
                bytesize=serial.EIGHTBITS,
                parity=serial.PARITY_NONE,
                stopbits=serial.STOPBITS_ONE,
                rtscts=False,
                xonxoff=False,
                timeout=0,
                write_timeout=self.config.chunk_timeout,
            )
        except (serial.SerialException, OSError, ValueError) as exc:
            raise PortUnavailable(f"Unable to open port {port_name}: {exc}") from exc
        logger.info(f"Opened {port_name} at {BOOTLOADER_BAUD} bps")

        reader = SerialReader(self._port, poll_interval=self.config.poll_interval)
        reader.send(bytes(128))
        self._port.flush()
        self._sleep(self.config.flush_delay)
        reader.clear()
        return reader

    def _identify(self, reader: SerialReader) -> None:
        """
        Sync and read the device identity, restarting from SYNCING whenever a
        reply is short or out of sync.

        Raises:
            SyncFailed: If no attempt got through
            OtpReadFailed: If the last attempt failed reading OTP/SN
            UnsupportedBootloader: For rev >= 4 when not allowed
        """
        cfg = self.config
        last_error: Optional[UploaderError] = None

        for attempt in range(1, cfg.sync_attempts + 1):
            self._check_stop()
            self._transition(UploaderState.SYNCING)
            logger.info(f"Sending SYNC command, loop {attempt} of {cfg.sync_attempts}")
            reader.clear()
            reader.send(sync_frame())
            try:
                reader.expect_sync(cfg.sync_timeout)
            except (ReadTimeout, BadSync) as exc:
                last_error = exc
                logger.warning(f"Sync attempt {attempt} failed: {exc}")
                if cfg.reboot_on_sync_failure:
                    send_reboot_sequence(reader.send)
                    self._port.flush()
                    self._sleep(cfg.reboot_delay)
                continue

            logger.info("Initial Sync successful")
            try:
                self._query_info(reader)
                if self.session.bootloader_rev >= 4:
                    self._read_otp(reader)
                    self._read_serial_number(reader)
            except (ReadTimeout, BadSync, OtpReadFailed) as exc:
                last_error = exc
                logger.error(f"Identification attempt {attempt} abandoned: {exc}")
                self._status(f"Device did not answer correctly ({exc}), retrying")
                continue

            if self.session.bootloader_rev >= 4:
                self._verify_otp()
            return

        if isinstance(last_error, OtpReadFailed):
            raise last_error
        raise SyncFailed(
            f"Could not sync with bootloader after {cfg.sync_attempts} attempts: {last_error}"
        )

    def _query_info(self, reader: SerialReader) -> None:
        self._transition(UploaderState.QUERYING_INFO)
        session = self.session
        queries = (
            (INFO_BL_REV, "Requesting bootloader rev", "bootloader_rev"),
            (INFO_BOARD_ID, "Requesting board ID", "board_id"),
            (INFO_BOARD_REV, "Requesting board rev", "board_rev"),
            (INFO_FLASH_SIZE, "Requesting firmware size", "flash_size"),
        )
        for index, (param, status, attr) in enumerate(queries):
            if index:
                self._sleep(self.config.info_delay)
            self._check_stop()
            self._status(status)
            reader.send(get_device_frame(param))
            value = decode_u32(reader.read_payload(4, self.config.info_timeout))
            setattr(session, attr, value)
            logger.info(f"{INFO_NAMES[param].capitalize()}: {value}")

            if param == INFO_BL_REV and value >= 4 and not self.config.allow_v4_bootloader:
                raise UnsupportedBootloader(
                    f"Bootloader rev {value} is not supported (enable v4 bootloader support to continue)"
                )

    def _read_words(self, reader: SerialReader, frame: Callable[[int], bytes], size: int,
                    what: str, reverse: bool = False) -> bytes:
        """Read `size` bytes one word at a time, retrying each word a bounded number of times."""
        cfg = self.config
        data = bytearray()
        offset = 0
        failures = 0
        while offset < size:
            self._check_stop()
            reader.send(frame(offset))
            try:
                word = reader.read_payload(WORD_SIZE, cfg.word_timeout)
            except (ReadTimeout, BadSync) as exc:
                failures += 1
                logger.error(f"{what} word at offset {offset} failed ({failures}): {exc}")
                reader.drain(cfg.poll_interval)
                if failures > cfg.word_retries:
                    raise OtpReadFailed(
                        f"Could not read {what} word at offset {offset} after {cfg.word_retries} retries"
                    ) from exc
                continue
            failures = 0
            data.extend(word[::-1] if reverse else word)
            offset += WORD_SIZE
        return bytes(data)

    def _read_otp(self, reader: SerialReader) -> None:
        self._check_stop()
        self._transition(UploaderState.READING_OTP)
        self._status("Requesting OTP")
        otp = self._read_words(reader, read_otp_frame, OTP_SIZE, "OTP")
        if otp[:4] != OTP_HEADER:
            raise OtpReadFailed(f"OTP header failure: {otp[:4].hex().upper()}")
        self.session.otp = otp
        logger.info("OTP read")

    def _read_serial_number(self, reader: SerialReader) -> None:
        self._check_stop()
        self._transition(UploaderState.READING_SERIAL_NUMBER)
        self._status("Requesting board SN")
        self.session.serial_number = self._read_words(
            reader, get_sn_frame, SN_SIZE, "serial number", reverse=True
        )
        logger.info(f"Board SN: {self.session.serial_text}")

    def _verify_otp(self) -> None:
        self._status("Verifying OTP")
        signature = self.session.otp[32:32 + 128]
        message = self.session.serial_number + bytes(8)
        if not self.verifier.verify(signature, message):
            raise OtpReadFailed("OTP signature does not match the board serial number")

    def _publish_device_info(self) -> None:
        session = self.session
        fields = [
            ("board_rev", "Board rev", session.board_rev),
            ("board_id", "Board ID", session.board_id),
            ("bootloader_rev", "Bootloader rev", session.bootloader_rev),
            ("flash_size", "Flash size", session.flash_size),
            ("serial_number", "Serial number", session.serial_text),
            ("otp", "OTP", session.otp_dump),
        ]
        for name, label, value in fields:
            self._emit(EventKind.DEVICE_INFO, f"{label}: {value}", field=name, value=value)

    def _check_compatibility(self) -> None:
        session = self.session
        image = self.image
        if self.config.check_board_id and image.board_id != session.board_id:
            raise BoardMismatch(
                f"Firmware is for board {image.board_id}, device is board {session.board_id}"
            )
        if session.flash_size and image.size > session.flash_size:
            raise ImageTooLarge(
                f"Firmware is {image.size} bytes, device flash holds {session.flash_size}"
            )

    def _erase(self, reader: SerialReader) -> None:
        self._check_stop()
        self._transition(UploaderState.ERASING)
        logger.info("Requesting erase")
        self._status("Erasing flash, this may take up to a minute")
        reader.clear()
        reader.send(erase_frame())
        self._port.flush()
        self.session.erase_count += 1
        try:
            reader.expect_sync(self.config.erase_timeout)
        except (ReadTimeout, BadSync) as exc:
            raise EraseTimeout(f"Never returned from erase: {exc}") from exc

    def _flash(self, reader: SerialReader, staged: IO[bytes]) -> None:
        cfg = self.config
        total = self.image.size
        failures = 0
        counter = 0
        staged.seek(0)

        self._transition(UploaderState.FLASHING)
        self._sleep(cfg.erase_settle_delay)
        logger.info("Starting flash process")
        self._status("Flashing firmware")

        while True:
            self._check_stop()
            chunk = staged.read(PROG_MULTI_MAX)
            if not chunk:
                break
            reader.send(prog_multi_frame(chunk))
            try:
                reader.expect_sync(cfg.chunk_timeout)
            except (ReadTimeout, BadSync) as exc:
                failures += 1
                position = staged.tell()
                logger.error(f"Bad sync writing firmware at {position}/{total}: {exc}")
                if failures > cfg.max_flash_failures:
                    raise FlashWriteFailed("Error writing firmware, invalid sync. Please retry") from exc
                self._sleep(cfg.erase_settle_delay)
                self._erase(reader)
                self._transition(UploaderState.FLASHING)
                staged.seek(0)
                counter = 0
                continue

            if counter % PROGRESS_EVERY == 0:
                self._progress(staged.tell(), total)
            counter += 1

        self._progress(total, total)

    def _finalize(self, reader: SerialReader) -> None:
        self._check_stop()
        self._transition(UploaderState.FINALIZING)
        self._status("Flashing complete!")
        reader.send(reboot_frame())
        self._port.flush()
        self._close_port()

    # -- helpers ------------------------------------------------------------

    def _transition(self, state: UploaderState) -> None:
        previous = self.session.state
        self.session.state = state
        self.session.history.append(state)
        logger.debug(f"State {previous.value} -> {state.value}")
        self._emit(EventKind.STATE, state.value, state=state, previous=previous)

    def _status(self, message: str) -> None:
        self._emit(EventKind.STATUS, message)

    def _progress(self, done: int, total: int) -> None:
        logger.info(f"flashing: {done} / {total}")
        self._emit(EventKind.PROGRESS, f"{done}/{total}", done=done, total=total)

    def _emit(self, kind: EventKind, message: str = "", level: MessageLevel = MessageLevel.INFO, **data) -> None:
        source = self.session.port_name or "bootloader"
        self.events.publish(kind, source=source, message=message, level=level, **data)

    def _check_stop(self) -> None:
        if self._stop.is_set():
            raise UserCancelled("Upload cancelled by user")

    def _sleep(self, seconds: float) -> None:
        """Wait, returning early with UserCancelled if stop() is called."""
        if seconds > 0 and self._stop.wait(seconds):
            raise UserCancelled("Upload cancelled by user")
        self._check_stop()

    def _fail(self, result: OperationResult, exc: UploaderError) -> None:
        self.error = exc
        self._release()
        logger.error(f"Upload failed in {self.session.state.value}: {exc}")
        failed_in = self.session.state
        self._transition(UploaderState.FAILED)
        code = code_for_error(exc)
        result.add_error(str(exc))
        result.metadata["error_code"] = code.value
        result.metadata["failed_in"] = failed_in.value
        self._emit(
            EventKind.ERROR,
            str(exc),
            level=MessageLevel.ERROR,
            code=code.value,
            error=type(exc).__name__,
        )

    def _close_port(self) -> None:
        port, self._port = self._port, None
        if port is None:
            return
        try:
            port.close()
        except (serial.SerialException, OSError) as exc:
            logger.warning(f"Error closing {self.session.port_name}: {exc}")
        logger.debug(f"Closed {self.session.port_name}")

    def _release(self) -> None:
        self._close_port()
        staged, self._staged = self._staged, None
        if staged is not None:
            staged.close()

