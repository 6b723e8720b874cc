"""
Serial Link Transport Layer

Owns a single physical serial port and turns it into a buffered byte
stream with a background I/O worker.

This module provides:
- Port configuration and validation
- Replace-on-reopen connect/disconnect lifecycle
- Queued writes flushed by the worker thread
- DTR reset pulses
- Traffic statistics
"""

import itertools
import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Dict, Optional, Tuple

import serial

from px4_uploader.core.events import EventBus, EventKind
from px4_uploader.core.messages import MessageLevel
from px4_uploader.core.settings import PortBaudMemory
from px4_uploader.errors import InvalidConfiguration, NotConnected, PortUnavailable

logger = logging.getLogger(__name__)


SUPPORTED_BAUD_RATES = (
    1200, 2400, 4800, 9600, 19200, 38400, 57600, 115200,
    230400, 460800, 921600, 1500000,
)

DATA_BITS = {
    5: serial.FIVEBITS,
    6: serial.SIXBITS,
    7: serial.SEVENBITS,
    8: serial.EIGHTBITS,
}

PARITIES = {
    "none": serial.PARITY_NONE,
    "odd": serial.PARITY_ODD,
    "even": serial.PARITY_EVEN,
}

STOP_BITS = {
    1: serial.STOPBITS_ONE,
    2: serial.STOPBITS_TWO,
}

# flow control name -> (rtscts, xonxoff)
FLOW_CONTROLS: Dict[str, Tuple[bool, bool]] = {
    "none": (False, False),
    "hardware": (True, False),
    "software": (False, True),
}

_PARITY_ALIASES = {"n": "none", "o": "odd", "e": "even"}


@dataclass(frozen=True)
class PortConfiguration:
    """
    Settings for one serial port.

    Attributes:
        port_name: Device path or name (e.g. "/dev/ttyACM0", "COM3")
        baud_rate: One of SUPPORTED_BAUD_RATES
        data_bits: 5, 6, 7 or 8
        parity: "none", "odd" or "even"
        stop_bits: 1 or 2
        flow_control: "none", "hardware" (RTS/CTS) or "software" (XON/XOFF)
    """
    port_name: str
    baud_rate: int = 115200
    data_bits: int = 8
    parity: str = "none"
    stop_bits: int = 1
    flow_control: str = "none"

    def validate(self) -> None:
        """
        Check every value maps to a hardware encoding.

        Raises:
            InvalidConfiguration: On the first unmapped value
        """
        if self.baud_rate not in SUPPORTED_BAUD_RATES:
            raise InvalidConfiguration(f"Unsupported baud rate: {self.baud_rate}")
        if self.data_bits not in DATA_BITS:
            raise InvalidConfiguration(f"Unsupported data bits: {self.data_bits}")
        if _normalize_parity(self.parity) not in PARITIES:
            raise InvalidConfiguration(f"Unsupported parity: {self.parity!r}")
        if self.stop_bits not in STOP_BITS:
            raise InvalidConfiguration(f"Unsupported stop bits: {self.stop_bits}")
        if str(self.flow_control).lower() not in FLOW_CONTROLS:
            raise InvalidConfiguration(f"Unsupported flow control: {self.flow_control!r}")

    def serial_settings(self) -> Dict[str, object]:
        """Translate to pyserial keyword arguments (port name excluded)."""
        self.validate()
        rtscts, xonxoff = FLOW_CONTROLS[self.flow_control.lower()]
        return {
            "baudrate": self.baud_rate,
            "bytesize": DATA_BITS[self.data_bits],
            "parity": PARITIES[_normalize_parity(self.parity)],
            "stopbits": STOP_BITS[self.stop_bits],
            "rtscts": rtscts,
            "xonxoff": xonxoff,
        }

    @classmethod
    def from_port(cls, port_name: str, port) -> "PortConfiguration":
        """Read the active configuration back from an open pyserial port."""
        parity = {v: k for k, v in PARITIES.items()}.get(port.parity, port.parity)
        if port.rtscts:
            flow = "hardware"
        elif port.xonxoff:
            flow = "software"
        else:
            flow = "none"
        return cls(
            port_name=port_name,
            baud_rate=int(port.baudrate),
            data_bits=int(port.bytesize),
            parity=parity,
            stop_bits=int(port.stopbits),
            flow_control=flow,
        )


def _normalize_parity(value: str) -> str:
    value = str(value).strip().lower()
    return _PARITY_ALIASES.get(value, value)


@dataclass(frozen=True)
class LinkStatistics:
    """Read-only snapshot of link traffic."""
    connected: bool
    bits_sent: int
    bits_received: int
    elapsed: float

    @property
    def upstream_bps(self) -> float:
        """Average transmit rate since open, 0 while no time has elapsed."""
        if self.elapsed <= 0:
            return 0.0
        return self.bits_sent / self.elapsed

    @property
    def downstream_bps(self) -> float:
        """Average receive rate since open, 0 while no time has elapsed."""
        if self.elapsed <= 0:
            return 0.0
        return self.bits_received / self.elapsed


class SerialLink:
    """
    Buffered serial link driven by a background worker thread.

    Handles:
    - Port open/close (replace-on-reopen)
    - Transmit queue flushed by the worker
    - Inbound polling published as BYTES_RECEIVED events
    - DTR reset requests
    - Traffic statistics

    Example:
        link = SerialLink(PortConfiguration("/dev/ttyACM0", 57600))
        link.events.subscribe(print)
        link.connect()
        link.write(b"\\r\\n")
        link.disconnect()
    """

    POLL_INTERVAL = 0.005
    READ_WAIT = 0.010
    RESET_PULSE = 0.25
    WRITE_TIMEOUT = 1.0

    _link_ids = itertools.count(1)

    def __init__(
        self,
        config: PortConfiguration,
        baud_memory: Optional[PortBaudMemory] = None,
        events: Optional[EventBus] = None,
        port_factory: Optional[Callable[..., object]] = None,
    ):
        """
        Initialize link.

        Args:
            config: Initial port configuration (validated here)
            baud_memory: Per-port baud store shared with the settings layer
            events: Event channel; a private one is created when omitted
            port_factory: Callable accepting pyserial keyword arguments and
                returning an open port (default serial.Serial)
        """
        config.validate()
        self._config = config
        self.baud_memory = baud_memory if baud_memory is not None else PortBaudMemory()
        self.events = events if events is not None else EventBus()
        self._port_factory = port_factory or serial.Serial
        self.link_id = next(SerialLink._link_ids)

        self._port = None
        self._thread: Optional[threading.Thread] = None

        self._state_lock = threading.Lock()
        self._reset_lock = threading.Lock()
        self._write_lock = threading.Lock()
        self._stop_requested = False
        self._reset_requested = False
        self._tx = bytearray()
        self._tx_in_flight = 0

        self._bits_sent = 0
        self._bits_received = 0
        self._opened_at: Optional[float] = None
        self._closed_at: Optional[float] = None
        self.connection_start_time: Optional[float] = None

    # -- properties -------------------------------------------------------

    @property
    def name(self) -> str:
        return self._config.port_name

    @property
    def configuration(self) -> PortConfiguration:
        """Stored configuration (applied on the next open if not open now)."""
        return self._config

    @property
    def is_connected(self) -> bool:
        port = self._port
        return port is not None and bool(port.is_open)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # -- configuration ----------------------------------------------------

    def configure(self, config: PortConfiguration) -> None:
        """
        Apply a new configuration.

        Settings take effect immediately when the port is open; otherwise
        they are stored for the next open. A changed port name always waits
        for the next open.

        Raises:
            InvalidConfiguration: If a value is unsupported or the hardware
                rejects it
        """
        config.validate()
        with self._state_lock:
            port = self._port
            if port is not None and port.is_open:
                try:
                    for key, value in config.serial_settings().items():
                        setattr(port, key, value)
                except (serial.SerialException, ValueError, OSError) as exc:
                    raise InvalidConfiguration(f"{config.port_name}: {exc}") from exc
            self._config = config
        self.baud_memory.remember(config.port_name, config.baud_rate)
        logger.debug(f"Configured {config}")
        self._publish(EventKind.COMM_UPDATE, "Configuration updated")

    def set_port_name(self, port_name: str) -> bool:
        """
        Select another port, restoring the baud rate last used with it.

        Returns:
            True if the name changed
        """
        port_name = port_name.strip()
        if not port_name or port_name == self._config.port_name:
            return False
        logger.info(f"Port name {self._config.port_name} -> {port_name}")
        config = replace(self._config, port_name=port_name)
        remembered = self.baud_memory.recall(port_name)
        if remembered is not None and remembered in SUPPORTED_BAUD_RATES:
            config = replace(config, baud_rate=remembered)
        self.configure(config)
        return True

    def set_baud_rate(self, baud_rate: int) -> None:
        """Change baud rate and remember it for the current port."""
        self.configure(replace(self._config, baud_rate=baud_rate))

    def current_configuration(self) -> PortConfiguration:
        """Configuration reported by the open port, else the stored one."""
        with self._state_lock:
            port = self._port
            if port is not None and port.is_open:
                return PortConfiguration.from_port(self._config.port_name, port)
        return self._config

    # -- lifecycle --------------------------------------------------------

    def open(self) -> None:
        """
        Open the configured port for read/write.

        Any previously open handle is closed first.

        Raises:
            PortUnavailable: If the port is missing, busy, or rejects the
                configuration
        """
        config = self._config
        with self._state_lock:
            self._close_port_locked()
            logger.info(f"Connecting to {config.port_name}")
            try:
                port = self._port_factory(
                    port=config.port_name,
                    timeout=self.READ_WAIT,
                    write_timeout=self.WRITE_TIMEOUT,
                    **config.serial_settings(),
                )
            except (serial.SerialException, OSError, ValueError) as exc:
                port = None
                error = exc
            else:
                error = None
                self._port = port
                with self._write_lock:
                    self._tx.clear()
                self._bits_sent = 0
                self._bits_received = 0
                self._opened_at = time.monotonic()
                self._closed_at = None
                self.connection_start_time = time.time()

        if error is not None:
            message = f"Error opening port: {error}"
            logger.error(f"{config.port_name}: {message}")
            self._publish(EventKind.COMM_ERROR, message, level=MessageLevel.ERROR)
            raise PortUnavailable(f"Cannot open port {config.port_name}: {error}") from error

        self.baud_memory.remember(config.port_name, config.baud_rate)
        logger.debug(
            f"Opened {config.port_name} at {config.baud_rate} bps "
            f"({config.data_bits}{config.parity[0].upper()}{config.stop_bits}, "
            f"flow={config.flow_control})"
        )
        self._publish(EventKind.COMM_UPDATE, "Opened port!")
        self._publish(EventKind.CONNECTED, connected=True, link_id=self.link_id)

    def connect(self) -> None:
        """Start the worker thread, replacing a running one."""
        if self.is_running:
            self.disconnect()
            self._thread.join()
        with self._state_lock:
            self._stop_requested = False
        self._thread = threading.Thread(
            target=self.run,
            name=f"serial-link-{self.link_id}",
            daemon=True,
        )
        self._thread.start()

    def disconnect(self) -> bool:
        """
        Ask the worker to stop; the port is closed on the worker thread.

        Returns immediately. Safe to call when not running.
        """
        if self.is_running:
            logger.info(f"Disconnecting {self.name}")
            with self._state_lock:
                self._stop_requested = True
            return True
        logger.info(f"{self.name} already disconnected")
        return True

    def join(self, timeout: Optional[float] = None) -> None:
        """Wait for the worker thread to exit."""
        if self._thread is not None:
            self._thread.join(timeout)

    def request_reset(self) -> None:
        """Request a DTR reset pulse; serviced by the worker thread."""
        with self._reset_lock:
            self._reset_requested = True

    # -- data -------------------------------------------------------------

    def write(self, data: bytes) -> None:
        """
        Queue bytes for transmission.

        Raises:
            NotConnected: If the port is not open
        """
        if not self.is_connected:
            message = f"Could not send data - link {self.name} is disconnected!"
            logger.error(message)
            self._publish(EventKind.COMM_ERROR, message, level=MessageLevel.ERROR)
            if self.is_running:
                self.disconnect()
            else:
                self._publish(EventKind.DISCONNECTED, link_id=self.link_id)
            raise NotConnected(message)

        with self._write_lock:
            self._tx.extend(data)
        logger.debug(f"{self.name}: queued {len(data)} bytes")

    def pending_bytes(self) -> int:
        """Number of bytes still waiting in the transmit queue."""
        with self._write_lock:
            return len(self._tx) + self._tx_in_flight

    def statistics(self) -> LinkStatistics:
        """Snapshot of traffic counters. Safe from any thread."""
        opened = self._opened_at
        if opened is None:
            elapsed = 0.0
        else:
            end = self._closed_at if self._closed_at is not None else time.monotonic()
            elapsed = max(0.0, end - opened)
        return LinkStatistics(
            connected=self.is_connected,
            bits_sent=self._bits_sent,
            bits_received=self._bits_received,
            elapsed=elapsed,
        )

    # -- worker -----------------------------------------------------------

    def run(self) -> None:
        """Worker body: open, then loop until stopped or the port fails."""
        try:
            self.open()
        except PortUnavailable:
            self._finish()
            return

        try:
            while True:
                with self._state_lock:
                    if self._stop_requested:
                        self._stop_requested = False
                        break
                    port = self._port
                with self._reset_lock:
                    reset = self._reset_requested
                    self._reset_requested = False

                if reset:
                    self._pulse_dtr(port)

                self._flush_tx(port)
                self._poll_rx(port)
                time.sleep(self.POLL_INTERVAL)
        except (serial.SerialException, OSError) as exc:
            logger.error(f"{self.name}: link error: {exc}")
            self._publish(EventKind.COMM_ERROR, f"Link error: {exc}", level=MessageLevel.ERROR)
        finally:
            self._finish()

    def _pulse_dtr(self, port) -> None:
        self._publish(EventKind.COMM_UPDATE, "Reset requested via DTR signal")
        port.dtr = True
        time.sleep(self.RESET_PULSE)
        port.dtr = False

    def _flush_tx(self, port) -> None:
        # Port I/O happens outside the write lock so write() never waits on it
        with self._write_lock:
            if not self._tx:
                return
            pending = bytes(self._tx)
            self._tx.clear()
            self._tx_in_flight = len(pending)

        written = 0
        try:
            written = port.write(pending)
            if written is None:
                written = len(pending)
            port.flush()
        finally:
            with self._write_lock:
                if written != len(pending):
                    logger.debug(f"{self.name}: partial write {written}/{len(pending)} bytes")
                    self._tx[:0] = pending[written:]
                self._tx_in_flight = 0

        self._bits_sent += written * 8
        logger.debug(f">>> {pending[:written].hex().upper()}")

    def _poll_rx(self, port) -> None:
        # Bounded wait, then only what is already buffered
        data = port.read(port.in_waiting or 1)
        if not data:
            return
        waiting = port.in_waiting
        if waiting:
            data += port.read(waiting)
        self._bits_received += len(data) * 8
        logger.debug(f"<<< rx of length {len(data)}")
        self._publish(EventKind.BYTES_RECEIVED, payload=bytes(data))

    def _close_port_locked(self) -> None:
        port, self._port = self._port, None
        if port is None:
            return
        try:
            port.close()
        except (serial.SerialException, OSError) as exc:
            logger.warning(f"Error closing {self.name}: {exc}")
        self._closed_at = time.monotonic()
        logger.debug(f"Closed {self.name}")

    def _finish(self) -> None:
        with self._state_lock:
            self._close_port_locked()
            self._stop_requested = False
        self._publish(EventKind.CONNECTED, connected=False, link_id=self.link_id)
        self._publish(EventKind.DISCONNECTED, link_id=self.link_id)

    def _publish(self, kind: EventKind, message: str = "", level: MessageLevel = MessageLevel.INFO, **data) -> None:
        self.events.publish(kind, source=self.name, message=message, level=level, **data)
