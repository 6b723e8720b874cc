"""Tests for events, messages and result objects."""

import threading

from px4_uploader import errors
from px4_uploader.core.events import Event, EventBus, EventKind, EventRecorder
from px4_uploader.core.messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    WARNING_REMEDIATIONS,
    code_for_error,
    error_to_warning,
    result_to_warnings,
)
from px4_uploader.core.results import OperationResult


class TestEventBus:
    """Ordered delivery to subscribers."""

    def test_delivers_in_order(self):
        bus = EventBus()
        recorder = EventRecorder(bus)
        for i in range(5):
            bus.publish(EventKind.STATUS, source="test", message=str(i))
        assert recorder.messages(EventKind.STATUS) == ["0", "1", "2", "3", "4"]

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        bus.publish(EventKind.STATUS, message="a")
        unsubscribe()
        bus.publish(EventKind.STATUS, message="b")
        assert [e.message for e in seen] == ["a"]

    def test_failing_handler_does_not_stop_others(self, caplog):
        bus = EventBus()

        def _broken(event):
            raise RuntimeError("boom")

        recorder = EventRecorder()
        bus.subscribe(_broken)
        bus.subscribe(recorder)
        bus.publish(EventKind.ERROR, message="x", level=MessageLevel.ERROR)
        assert len(recorder.events) == 1
        assert "Event handler failed" in caplog.text

    def test_publish_builds_event(self):
        bus = EventBus()
        event = bus.publish(EventKind.PROGRESS, source="/dev/ttyACM0", message="60/240", done=60, total=240)
        assert event == Event(
            kind=EventKind.PROGRESS,
            source="/dev/ttyACM0",
            message="60/240",
            level=MessageLevel.INFO,
            data={"done": 60, "total": 240},
        )

    def test_concurrent_publishers_each_event_once(self):
        bus = EventBus()
        recorder = EventRecorder(bus)

        def _publish(tag):
            for i in range(100):
                bus.publish(EventKind.STATUS, source=tag, message=str(i))

        threads = [threading.Thread(target=_publish, args=(t,)) for t in "abc"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(recorder.events) == 300
        for tag in "abc":
            assert [e.message for e in recorder.events if e.source == tag] == [str(i) for i in range(100)]


class TestMessages:
    """Stable codes and remediation hints."""

    def test_every_code_has_remediation(self):
        for code in WarningCode:
            assert code in WARNING_REMEDIATIONS

    def test_code_for_error_walks_hierarchy(self):
        assert code_for_error(errors.DeviceNotFound("x")) is WarningCode.W_DEVICE_NOT_FOUND
        assert code_for_error(errors.PortUnavailable("x")) is WarningCode.W_PORT_UNAVAILABLE
        assert code_for_error(errors.SizeMismatch("x")) is WarningCode.W_SIZE_MISMATCH
        assert code_for_error(ValueError("x")) is WarningCode.W_UNKNOWN

    def test_error_to_warning(self):
        item = error_to_warning(errors.EraseTimeout("Never returned from erase"))
        assert item.level is MessageLevel.ERROR
        assert item.code is WarningCode.W_ERASE_TIMEOUT
        assert item.title == "Never returned from erase"
        assert item.remediation == WARNING_REMEDIATIONS[WarningCode.W_ERASE_TIMEOUT]

    def test_cancellation_is_a_warning(self):
        assert error_to_warning(errors.UserCancelled("stop")).level is MessageLevel.WARN

    def test_warning_item_to_dict(self):
        item = WarningItem.warn(WarningCode.W_DATA_PADDED, "Image padded")
        assert item.to_dict()["code"] == "W_DATA_PADDED"
        assert item.to_dict()["level"] == "warn"

    def test_result_to_warnings_uses_recorded_code(self):
        result = OperationResult.failure("flash", "Error writing firmware, invalid sync. Please retry")
        result.metadata["error_code"] = "W_FLASH_WRITE_FAILED"
        result.add_warning("Image padded with 2 bytes of 0xFF")
        items = result_to_warnings(result)
        assert [i.code for i in items] == [WarningCode.W_DATA_PADDED, WarningCode.W_FLASH_WRITE_FAILED]
        assert items[1].level is MessageLevel.ERROR


class TestOperationResult:
    """Summary and serialization."""

    def test_add_error_marks_failed(self):
        result = OperationResult.success("flash")
        result.add_error("boom")
        assert not result.ok
        assert result.errors == ["boom"]

    def test_summary(self):
        result = OperationResult.success("flash", port="/dev/ttyACM0", board="board 9 rev 0", bytes_len=1024)
        result.hashes["sha256"] = "ab" * 32
        summary = result.to_summary()
        assert summary.splitlines()[0] == "[SUCCESS] flash"
        assert "Port: /dev/ttyACM0" in summary
        assert "Bytes: 1,024" in summary

    def test_cancelled_summary(self):
        result = OperationResult(ok=False, operation="flash", cancelled=True)
        assert result.to_summary().startswith("[CANCELLED]")

    def test_to_dict(self):
        data = OperationResult.failure("inspect", "bad").to_dict()
        assert data["ok"] is False
        assert data["errors"] == ["bad"]
        assert data["cancelled"] is False
