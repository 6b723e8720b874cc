"""
Core workflow actions for PX4 Uploader.

This module exposes functions the CLI (and any other front end) can call.
Each returns an OperationResult instead of raising, with the log lines of
the operation attached.
"""

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import Callable, Iterable, Optional, Union

from px4_uploader import errors
from .events import Event, EventBus, EventKind
from .messages import code_for_error
from .results import OperationResult
from .settings import PortBaudMemory

logger = logging.getLogger(__name__)


class _ListLogHandler(logging.Handler):
    """Capture log records into a list of formatted strings."""

    def __init__(self, level: int = logging.INFO) -> None:
        super().__init__(level)
        self.records = []
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(self.format(record))


@contextmanager
def _capture_logs(logger_name: str = "px4_uploader"):
    """Capture logs for core operations into a list."""
    target_logger = logging.getLogger(logger_name)
    handler = _ListLogHandler()
    previous_level = target_logger.level
    if previous_level in (logging.NOTSET, logging.WARNING, logging.ERROR, logging.CRITICAL):
        target_logger.setLevel(logging.INFO)
    target_logger.addHandler(handler)
    try:
        yield handler.records
    finally:
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)


def _failure(operation: str, exc: BaseException, logs, **kwargs) -> OperationResult:
    result = OperationResult.failure(operation=operation, error=str(exc) or type(exc).__name__, **kwargs)
    result.metadata["error_code"] = code_for_error(exc).value
    result.logs = logs
    return result


def inspect_package(package_path: Union[str, Path]) -> OperationResult:
    """
    Load and validate a .px4 package without touching any device.

    Returns:
        OperationResult with:
            - bytes_len: padded payload size
            - hashes["sha256"]: hash of the padded payload
            - metadata: board_id, declared_size, padding, description,
              summary, version, git_identity, image_maxsize
    """
    with _capture_logs() as logs:
        try:
            from px4_uploader.firmware import load_firmware_package

            image = load_firmware_package(package_path)
        except (errors.FirmwarePackageError, OSError) as e:
            logger.error(f"Cannot load {package_path}: {e}")
            return _failure("inspect", e, logs)

        result = OperationResult.success(
            operation="inspect",
            board=f"board {image.board_id}",
            bytes_len=image.size,
        )
        result.hashes["sha256"] = image.sha256
        result.metadata.update({
            "board_id": image.board_id,
            "declared_size": image.declared_size,
            "padding": image.padding,
            "description": image.description,
            "summary": image.summary,
            "version": image.version,
            "git_identity": image.git_identity,
            "image_maxsize": image.image_maxsize,
        })
        if image.padding:
            result.add_warning(f"Image padded with {image.padding} bytes of 0xFF")
        if image.image_maxsize and image.declared_size > image.image_maxsize:
            result.add_warning(
                f"Image is {image.declared_size} bytes, package limit is {image.image_maxsize}"
            )
        result.logs = logs
        return result


def build_package(
    binary_path: Union[str, Path],
    output_path: Union[str, Path],
    board_id: int,
    description: str = "",
    version: str = "",
    summary: str = "",
    git_identity: str = "",
    image_maxsize: Optional[int] = None,
) -> OperationResult:
    """Wrap a raw firmware binary into a .px4 package."""
    with _capture_logs() as logs:
        try:
            from px4_uploader.firmware import build_package_text, load_firmware_text

            data = Path(binary_path).read_bytes()
            text = build_package_text(
                data,
                board_id=board_id,
                description=description,
                summary=summary,
                version=version,
                git_identity=git_identity,
                image_maxsize=image_maxsize,
            )
            # Make sure the package loads back before writing it
            image = load_firmware_text(text)
            Path(output_path).write_text(text, encoding="utf-8")
        except (errors.FirmwarePackageError, OSError) as e:
            logger.error(f"Cannot build package from {binary_path}: {e}")
            return _failure("package", e, logs)

        logger.info(f"Wrote {output_path} ({len(data)} bytes, board {board_id})")
        result = OperationResult.success(
            operation="package",
            board=f"board {board_id}",
            bytes_len=len(data),
        )
        result.hashes["sha256"] = image.sha256
        result.metadata["output"] = str(output_path)
        result.logs = logs
        return result


def run_uploader(uploader, poll: float = 0.1) -> OperationResult:
    """
    Run a BootloaderUploader on its worker thread and wait for the outcome.

    Ctrl+C stops the session; the cancelled result is returned.
    """
    uploader.start()
    try:
        while uploader.is_running:
            uploader.join(poll)
    except KeyboardInterrupt:
        logger.warning("Interrupted, stopping upload")
        uploader.stop()
        uploader.join()
    if uploader.result is None:
        return OperationResult.failure(uploader.operation, "Upload worker stopped unexpectedly")
    return uploader.result


def flash_firmware(
    package_path: Union[str, Path],
    config=None,
    events: Optional[EventBus] = None,
    port_factory: Optional[Callable[..., object]] = None,
    port_lister: Optional[Callable[[], Iterable[str]]] = None,
    stop_event: Optional[threading.Event] = None,
    verifier=None,
) -> OperationResult:
    """
    Load a package and flash it to the next board that appears.

    Package errors are reported before any device is contacted.

    Args:
        package_path: .px4 file
        config: UploaderConfig (defaults used when omitted)
        events: Event channel for progress/status display
        port_factory, port_lister: pyserial replacements (tests)
        stop_event: Shared cancellation flag
        verifier: OtpVerifier for rev >= 4 boards

    Returns:
        OperationResult from the upload session
    """
    with _capture_logs() as logs:
        try:
            from px4_uploader.firmware import load_firmware_package

            image = load_firmware_package(package_path)
        except (errors.FirmwarePackageError, OSError) as e:
            logger.error(f"Cannot load {package_path}: {e}")
            return _failure("flash", e, logs)

        from px4_uploader.protocol.bootloader import BootloaderUploader, UploaderConfig

        uploader = BootloaderUploader(
            image,
            config=config or UploaderConfig(),
            events=events,
            port_factory=port_factory,
            port_lister=port_lister,
            stop_event=stop_event,
            verifier=verifier,
        )
        result = run_uploader(uploader)
        if image.padding:
            result.add_warning(f"Image padded with {image.padding} bytes of 0xFF")
        result.metadata["description"] = image.description
        result.logs = logs
        return result


def query_board(
    config=None,
    events: Optional[EventBus] = None,
    port_factory: Optional[Callable[..., object]] = None,
    port_lister: Optional[Callable[[], Iterable[str]]] = None,
    stop_event: Optional[threading.Event] = None,
    verifier=None,
) -> OperationResult:
    """
    Identify the next board that appears, without erasing or flashing.

    Returns:
        OperationResult with metadata bootloader_rev, board_id, board_rev,
        flash_size, serial_number (and otp_dump for rev >= 4 boards)
    """
    from px4_uploader.protocol.bootloader import BootloaderUploader, UploaderConfig

    config = replace(config or UploaderConfig(), query_only=True)
    with _capture_logs() as logs:
        uploader = BootloaderUploader(
            None,
            config=config,
            events=events,
            port_factory=port_factory,
            port_lister=port_lister,
            stop_event=stop_event,
            verifier=verifier,
        )
        result = run_uploader(uploader)
        if uploader.session.otp:
            result.metadata["otp_dump"] = uploader.session.otp_dump
        result.logs = logs
        return result


def _open_link(link, events: EventBus, timeout: float) -> None:
    """Start the link worker and wait until its port is open."""
    settled = threading.Event()

    def _watch(event: Event) -> None:
        if event.kind in (EventKind.CONNECTED, EventKind.DISCONNECTED, EventKind.COMM_ERROR):
            settled.set()

    unsubscribe = events.subscribe(_watch)
    try:
        link.connect()
        settled.wait(timeout)
    finally:
        unsubscribe()
    if not link.is_connected:
        link.join(timeout)
        raise errors.PortUnavailable(f"Cannot open port {link.name}")


def _close_link(link, timeout: float) -> None:
    link.disconnect()
    link.join(timeout)


def reset_board(
    port_config,
    bootloader: bool = False,
    dtr: bool = True,
    events: Optional[EventBus] = None,
    baud_memory: Optional[PortBaudMemory] = None,
    port_factory: Optional[Callable[..., object]] = None,
    timeout: float = 5.0,
) -> OperationResult:
    """
    Reset a board over a SerialLink.

    Args:
        port_config: PortConfiguration of the board's port
        bootloader: Also send the NSH/MAVLink reboot-into-bootloader sequence
        dtr: Pulse DTR
        timeout: Seconds to wait for the link to open and drain
    """
    from px4_uploader.protocol.reboot import send_reboot_sequence
    from px4_uploader.protocol.serial_link import SerialLink

    events = events if events is not None else EventBus()
    with _capture_logs() as logs:
        try:
            link = SerialLink(port_config, baud_memory=baud_memory, events=events, port_factory=port_factory)
            _open_link(link, events, timeout)
        except errors.UploaderError as e:
            return _failure("reset", e, logs, port=port_config.port_name)

        reset_seen = threading.Event()

        def _watch(event: Event) -> None:
            if event.kind is EventKind.COMM_UPDATE and "DTR" in event.message:
                reset_seen.set()

        unsubscribe = events.subscribe(_watch)
        try:
            if dtr:
                link.request_reset()
            else:
                reset_seen.set()
            sent = send_reboot_sequence(link.write) if bootloader else 0

            deadline = time.monotonic() + timeout
            while time.monotonic() < deadline and link.is_running:
                if reset_seen.is_set() and link.pending_bytes() == 0:
                    break
                time.sleep(link.POLL_INTERVAL)
            drained = reset_seen.is_set() and link.pending_bytes() == 0
        except errors.UploaderError as e:
            return _failure("reset", e, logs, port=port_config.port_name)
        finally:
            unsubscribe()
            _close_link(link, timeout)

        if not drained:
            return _failure(
                "reset",
                errors.ReadTimeout(f"Reset was not completed within {timeout}s"),
                logs,
                port=port_config.port_name,
            )

        result = OperationResult.success(operation="reset", port=port_config.port_name, bytes_len=sent)
        result.metadata["dtr"] = dtr
        result.metadata["bootloader"] = bootloader
        result.logs = logs
        return result


def monitor_port(
    port_config,
    duration: Optional[float] = None,
    events: Optional[EventBus] = None,
    baud_memory: Optional[PortBaudMemory] = None,
    port_factory: Optional[Callable[..., object]] = None,
    stop_event: Optional[threading.Event] = None,
    open_timeout: float = 5.0,
) -> OperationResult:
    """
    Watch a port read-only until `duration` elapses, the link drops, or
    stop_event is set. Subscribe to `events` to see BYTES_RECEIVED payloads.

    Returns:
        OperationResult with bytes_len = bytes received and metadata
        statistics (bits_sent, bits_received, elapsed, downstream_bps)
    """
    from px4_uploader.protocol.serial_link import SerialLink

    events = events if events is not None else EventBus()
    stop_event = stop_event or threading.Event()
    with _capture_logs() as logs:
        try:
            link = SerialLink(port_config, baud_memory=baud_memory, events=events, port_factory=port_factory)
            _open_link(link, events, open_timeout)
        except errors.UploaderError as e:
            return _failure("monitor", e, logs, port=port_config.port_name)

        deadline = None if duration is None else time.monotonic() + duration
        try:
            while link.is_running and not stop_event.is_set():
                if deadline is not None and time.monotonic() >= deadline:
                    break
                stop_event.wait(0.05)
        except KeyboardInterrupt:
            logger.info("Monitor interrupted")
        finally:
            stats = link.statistics()
            _close_link(link, open_timeout)

        result = OperationResult.success(
            operation="monitor",
            port=port_config.port_name,
            bytes_len=stats.bits_received // 8,
        )
        result.metadata["statistics"] = {
            "bits_sent": stats.bits_sent,
            "bits_received": stats.bits_received,
            "elapsed": stats.elapsed,
            "upstream_bps": stats.upstream_bps,
            "downstream_bps": stats.downstream_bps,
        }
        result.logs = logs
        return result
