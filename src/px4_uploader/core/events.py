"""
Event channel between worker threads and session owners.

SerialLink and BootloaderUploader publish Events to an EventBus; the CLI
and tests subscribe callables. Handlers run synchronously on the publishing
thread, one event at a time, so they observe events in emission order.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from .messages import MessageLevel

logger = logging.getLogger(__name__)


class EventKind(Enum):
    """What an event reports."""
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    COMM_ERROR = "comm_error"
    COMM_UPDATE = "comm_update"
    BYTES_RECEIVED = "bytes_received"
    STATE = "state"
    STATUS = "status"
    DEVICE_INFO = "device_info"
    PROGRESS = "progress"
    ERROR = "error"
    DONE = "done"


@dataclass(frozen=True)
class Event:
    """
    A single notification.

    Attributes:
        kind: Event category
        source: Link or session name that emitted it (usually the port name)
        message: Human-readable text, empty when not applicable
        level: Severity, lets callers tell errors from status lines
        data: Kind-specific payload (e.g. {"done": 120, "total": 4096})
    """
    kind: EventKind
    source: str = ""
    message: str = ""
    level: MessageLevel = MessageLevel.INFO
    data: Dict[str, Any] = field(default_factory=dict)


Handler = Callable[[Event], None]


class EventBus:
    """Ordered publish/subscribe channel."""

    def __init__(self) -> None:
        self._handlers: List[Handler] = []
        self._lock = threading.RLock()

    def subscribe(self, handler: Handler) -> Callable[[], None]:
        """Register a handler. Returns a callable that unsubscribes it."""
        with self._lock:
            self._handlers.append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                if handler in self._handlers:
                    self._handlers.remove(handler)

        return _unsubscribe

    def emit(self, event: Event) -> None:
        """Deliver event to every handler in subscription order."""
        with self._lock:
            handlers = list(self._handlers)
            for handler in handlers:
                try:
                    handler(event)
                except Exception:
                    # A broken observer must not take down the worker thread
                    logger.exception("Event handler failed for %s", event.kind.value)

    def publish(
        self,
        kind: EventKind,
        source: str = "",
        message: str = "",
        level: MessageLevel = MessageLevel.INFO,
        **data: Any,
    ) -> Event:
        """Build and emit an event in one call."""
        event = Event(kind=kind, source=source, message=message, level=level, data=data)
        self.emit(event)
        return event


class EventRecorder:
    """Handler that keeps every event it receives, for later inspection."""

    def __init__(self, bus: Optional[EventBus] = None) -> None:
        self.events: List[Event] = []
        self._lock = threading.Lock()
        if bus is not None:
            bus.subscribe(self)

    def __call__(self, event: Event) -> None:
        with self._lock:
            self.events.append(event)

    def of_kind(self, kind: EventKind) -> List[Event]:
        with self._lock:
            return [e for e in self.events if e.kind is kind]

    def messages(self, kind: EventKind) -> List[str]:
        return [e.message for e in self.of_kind(kind)]
