"""
Core module for PX4 Uploader.

This module provides the single source of truth for:
- Event channel between workers and session owners (events.py)
- Result objects (results.py)
- Standardized warnings/messages (messages.py)
- Persisted link settings (settings.py)
- Unified inspect/query/flash/reset workflows (actions.py)

The CLI calls into this module rather than driving the protocol itself.
"""

from .messages import (
    MessageLevel,
    WarningCode,
    WarningItem,
    error_to_warning,
    result_to_warnings,
)
from .events import Event, EventBus, EventKind, EventRecorder
from .results import OperationResult
from .settings import LinkSettings, PortBaudMemory, SettingsStore
from .actions import (
    inspect_package,
    build_package,
    flash_firmware,
    query_board,
    reset_board,
    monitor_port,
)

__all__ = [
    # Messages
    "MessageLevel",
    "WarningCode",
    "WarningItem",
    "error_to_warning",
    "result_to_warnings",
    # Events
    "Event",
    "EventBus",
    "EventKind",
    "EventRecorder",
    # Results
    "OperationResult",
    # Settings
    "LinkSettings",
    "PortBaudMemory",
    "SettingsStore",
    # Actions
    "inspect_package",
    "build_package",
    "flash_firmware",
    "query_board",
    "reset_board",
    "monitor_port",
]
