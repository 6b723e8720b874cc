"""Tests for the serial link transport."""

import threading
import time

import pytest
import serial

from px4_uploader.core.events import EventBus, EventKind, EventRecorder
from px4_uploader.core.settings import PortBaudMemory
from px4_uploader.errors import InvalidConfiguration, NotConnected, PortUnavailable
from px4_uploader.protocol.serial_link import (
    LinkStatistics,
    PortConfiguration,
    SerialLink,
)

from conftest import FakeSerial


def wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.002)
    return predicate()


class PortFactory:
    """Hands out a fresh FakeSerial on every open."""

    def __init__(self):
        self.ports = []

    def __call__(self, **kwargs):
        port = FakeSerial(kwargs.get("port", ""))
        self.ports.append(port)
        return port.open(**kwargs)


def make_link(config=None, **kwargs):
    factory = PortFactory()
    events = EventBus()
    recorder = EventRecorder(events)
    link = SerialLink(config or PortConfiguration("/dev/ttyFAKE0", 57600), events=events, port_factory=factory, **kwargs)
    return link, factory, recorder


class TestPortConfiguration:
    """Validation of port settings."""

    @pytest.mark.parametrize("kwargs", [
        {"baud_rate": 12345},
        {"data_bits": 9},
        {"parity": "mark"},
        {"stop_bits": 3},
        {"flow_control": "magic"},
    ])
    def test_unsupported_values(self, kwargs):
        with pytest.raises(InvalidConfiguration):
            PortConfiguration("/dev/ttyFAKE0", **kwargs).validate()

    def test_serial_settings(self):
        settings = PortConfiguration("/dev/ttyFAKE0", 921600, 7, "even", 2, "hardware").serial_settings()
        assert settings == {
            "baudrate": 921600,
            "bytesize": serial.SEVENBITS,
            "parity": serial.PARITY_EVEN,
            "stopbits": serial.STOPBITS_TWO,
            "rtscts": True,
            "xonxoff": False,
        }

    def test_link_rejects_invalid_configuration(self):
        with pytest.raises(InvalidConfiguration):
            SerialLink(PortConfiguration("/dev/ttyFAKE0", baud_rate=300))


class TestOpen:
    """Opening and reconfiguring the port."""

    @pytest.mark.parametrize("config", [
        PortConfiguration("/dev/ttyFAKE0", 57600),
        PortConfiguration("/dev/ttyFAKE0", 1200, 7, "odd", 2, "software"),
        PortConfiguration("/dev/ttyFAKE0", 1500000, 5, "even", 1, "hardware"),
    ])
    def test_open_reports_configured_values(self, config):
        """configure() then open() reads back exactly the configuration given."""
        link, _, _ = make_link()
        link.configure(config)
        link.open()
        assert link.is_connected
        assert link.current_configuration() == config

    def test_open_emits_connected(self):
        link, _, recorder = make_link()
        link.open()
        connected = recorder.of_kind(EventKind.CONNECTED)
        assert len(connected) == 1
        assert connected[0].data == {"connected": True, "link_id": link.link_id}
        assert "Opened port!" in recorder.messages(EventKind.COMM_UPDATE)

    def test_reopen_closes_previous_handle(self):
        link, factory, _ = make_link()
        link.open()
        link.open()
        assert len(factory.ports) == 2
        assert not factory.ports[0].is_open
        assert factory.ports[1].is_open

    def test_open_failure(self):
        def _refuse(**kwargs):
            raise serial.SerialException("[Errno 2] could not open port")

        events = EventBus()
        recorder = EventRecorder(events)
        link = SerialLink(PortConfiguration("/dev/ttyGONE"), events=events, port_factory=_refuse)
        with pytest.raises(PortUnavailable):
            link.open()
        errors = recorder.of_kind(EventKind.COMM_ERROR)
        assert len(errors) == 1
        assert "could not open port" in errors[0].message
        assert not link.is_connected

    def test_configure_applies_to_open_port(self):
        link, factory, _ = make_link()
        link.open()
        link.set_baud_rate(115200)
        assert factory.ports[0].baudrate == 115200
        assert link.baud_memory.recall("/dev/ttyFAKE0") == 115200

    def test_port_name_change_waits_for_next_open(self):
        link, factory, _ = make_link()
        link.open()
        link.set_port_name("/dev/ttyFAKE1")
        assert factory.ports[0].port == "/dev/ttyFAKE0"
        link.open()
        assert factory.ports[1].port == "/dev/ttyFAKE1"


class TestBaudMemory:
    """Per-port baud recall."""

    def test_set_port_name_restores_baud(self):
        memory = PortBaudMemory({"/dev/ttyUSB1": 921600})
        link, _, _ = make_link(baud_memory=memory)
        assert link.set_port_name("/dev/ttyUSB1")
        assert link.configuration.baud_rate == 921600

    def test_unknown_port_keeps_baud(self):
        link, _, _ = make_link()
        link.set_port_name("/dev/ttyUSB7")
        assert link.configuration.baud_rate == 57600

    def test_same_name_is_noop(self):
        link, _, _ = make_link()
        assert not link.set_port_name("/dev/ttyFAKE0")


class TestWrite:
    """Queued writes."""

    def test_write_when_closed(self):
        """Writing to a closed link raises and reports a communication error."""
        link, _, recorder = make_link()
        with pytest.raises(NotConnected):
            link.write(b"hello")
        assert len(recorder.of_kind(EventKind.COMM_ERROR)) == 1
        assert len(recorder.of_kind(EventKind.DISCONNECTED)) == 1

    def test_write_queues_until_flushed(self):
        link, factory, _ = make_link()
        link.open()
        link.write(b"abc")
        link.write(b"def")
        assert link.pending_bytes() == 6
        assert bytes(factory.ports[0].written) == b""


class TestWorker:
    """Background I/O loop."""

    def test_round_trip_and_disconnect(self):
        link, factory, recorder = make_link()
        link.connect()
        assert wait_for(lambda: link.is_connected)

        link.write(b"ping")
        port = factory.ports[0]
        assert wait_for(lambda: bytes(port.written) == b"ping")

        port.feed(b"pong")
        assert wait_for(lambda: recorder.of_kind(EventKind.BYTES_RECEIVED))
        received = b"".join(e.data["payload"] for e in recorder.of_kind(EventKind.BYTES_RECEIVED))
        assert received == b"pong"

        assert link.disconnect()
        link.join(2.0)
        assert not link.is_running
        assert not port.is_open

        connected = [e.data["connected"] for e in recorder.of_kind(EventKind.CONNECTED)]
        assert connected == [True, False]
        assert len(recorder.of_kind(EventKind.DISCONNECTED)) == 1

        stats = link.statistics()
        assert stats.bits_sent == 32
        assert stats.bits_received == 32
        assert not stats.connected

    def test_reset_pulses_dtr(self, monkeypatch):
        monkeypatch.setattr(SerialLink, "RESET_PULSE", 0.001)
        link, factory, recorder = make_link()
        link.connect()
        assert wait_for(lambda: link.is_connected)
        link.request_reset()
        port = factory.ports[0]
        assert wait_for(lambda: port.dtr_changes == [True, False])
        assert "Reset requested via DTR signal" in recorder.messages(EventKind.COMM_UPDATE)
        link.disconnect()
        link.join(2.0)

    def test_io_error_stops_worker(self):
        class FailingSerial(FakeSerial):
            def read(self, size=1):
                raise serial.SerialException("device reports readiness to read but returned no data")

        events = EventBus()
        recorder = EventRecorder(events)
        link = SerialLink(
            PortConfiguration("/dev/ttyFAKE0"),
            events=events,
            port_factory=lambda **kw: FailingSerial().open(**kw),
        )
        link.connect()
        link.join(2.0)
        assert not link.is_running
        assert len(recorder.of_kind(EventKind.COMM_ERROR)) == 1
        assert len(recorder.of_kind(EventKind.DISCONNECTED)) == 1

    def test_busy_line_does_not_starve_writes(self):
        """A device that never stops sending still gets writes and disconnects."""
        class ChattyPort(FakeSerial):
            def read(self, size=1):
                return b"\xfe"

        port = ChattyPort()
        events = EventBus()
        recorder = EventRecorder(events)
        link = SerialLink(PortConfiguration("/dev/ttyFAKE0"), events=events, port_factory=port.open)
        link.connect()
        assert wait_for(lambda: link.is_connected)

        link.write(b"hello")
        assert wait_for(lambda: bytes(port.written) == b"hello")
        assert wait_for(lambda: recorder.of_kind(EventKind.BYTES_RECEIVED))

        link.disconnect()
        link.join(1.0)
        assert not link.is_running
        assert link.statistics().bits_received > 0

    def test_slow_port_write_does_not_block_writer(self):
        """write() only waits for the queue, not for the port."""
        started = threading.Event()
        release = threading.Event()

        class SlowPort(FakeSerial):
            def write(self, data):
                started.set()
                release.wait(2.0)
                return super().write(data)

        port = SlowPort()
        link = SerialLink(PortConfiguration("/dev/ttyFAKE0"), port_factory=port.open)
        link.connect()
        assert wait_for(lambda: link.is_connected)

        link.write(b"first")
        assert started.wait(2.0)
        begin = time.monotonic()
        link.write(b"second")
        assert time.monotonic() - begin < 0.5
        assert link.pending_bytes() == 11

        release.set()
        assert wait_for(lambda: bytes(port.written) == b"firstsecond")
        assert wait_for(lambda: link.pending_bytes() == 0)
        link.disconnect()
        link.join(2.0)

    def test_partial_write_requeues_tail(self):
        class ShortWritePort(FakeSerial):
            def write(self, data):
                return super().write(data[:2])

        port = ShortWritePort()
        link = SerialLink(PortConfiguration("/dev/ttyFAKE0"), port_factory=port.open)
        link.connect()
        assert wait_for(lambda: link.is_connected)
        link.write(b"hello")
        assert wait_for(lambda: bytes(port.written) == b"hello")
        assert link.statistics().bits_sent == 40
        link.disconnect()
        link.join(2.0)

    def test_disconnect_when_idle(self):
        link, _, recorder = make_link()
        assert link.disconnect()
        assert recorder.events == []

    def test_connect_replaces_running_worker(self):
        link, factory, _ = make_link()
        link.connect()
        assert wait_for(lambda: link.is_connected)
        link.connect()
        assert wait_for(lambda: len(factory.ports) == 2 and link.is_connected)
        assert not factory.ports[0].is_open
        link.disconnect()
        link.join(2.0)


def test_statistics_rates_zero_without_elapsed_time() -> None:
    stats = LinkStatistics(connected=True, bits_sent=800, bits_received=80, elapsed=0.0)
    assert stats.upstream_bps == 0
    assert stats.downstream_bps == 0


def test_statistics_rates() -> None:
    stats = LinkStatistics(connected=True, bits_sent=800, bits_received=80, elapsed=2.0)
    assert stats.upstream_bps == 400
    assert stats.downstream_bps == 40
