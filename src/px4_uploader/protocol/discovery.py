"""
Device discovery by watching the serial port list.

A board that reboots into its bootloader shows up as a new port. The
watcher remembers which ports already exist and reports the first one that
appears afterwards.
"""

import logging
import threading
import time
from typing import Callable, Iterable, List, Optional

import serial.tools.list_ports

logger = logging.getLogger(__name__)

POLL_INTERVAL = 0.1


def list_port_names() -> List[str]:
    """Return device names of all serial ports currently present."""
    return [port.device for port in serial.tools.list_ports.comports()]


class PortWatcher:
    """
    Detect a freshly plugged-in serial device.

    Example:
        watcher = PortWatcher()
        port = watcher.wait_for_new_port(timeout=30)
        if port is None:
            print("No device plugged in")
    """

    def __init__(
        self,
        lister: Callable[[], Iterable[str]] = list_port_names,
        interval: float = POLL_INTERVAL,
        stop_event: Optional[threading.Event] = None,
    ):
        """
        Args:
            lister: Returns the names of available ports
            interval: Seconds between scans
            stop_event: Set from another thread to abandon the wait
        """
        self.lister = lister
        self.interval = interval
        self.stop_event = stop_event or threading.Event()

    def snapshot(self) -> List[str]:
        return list(self.lister())

    def wait_for_new_port(self, timeout: Optional[float] = None) -> Optional[str]:
        """
        Block until a port that was not present at the start appears.

        If ports disappear, the baseline is refreshed so an unplugged device
        that comes back is reported as new.

        Returns:
            Port name, or None if stopped or timed out
        """
        baseline = set(self.snapshot())
        size = len(baseline)
        logger.debug(f"Baseline ports: {sorted(baseline)}")
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            current = self.snapshot()
            for name in current:
                if name not in baseline:
                    logger.info(f"New port detected: {name}")
                    return name

            if size > len(current):
                # Something has been removed, rescan
                baseline = set(current)
                size = len(baseline)
                logger.debug(f"Port removed, new baseline: {sorted(baseline)}")

            if self.stop_event.is_set():
                logger.info("Port watch cancelled")
                return None
            if deadline is not None and time.monotonic() >= deadline:
                logger.info("Port watch timed out")
                return None
            self.stop_event.wait(self.interval)
