"""
Persisted link settings.

Stores the last used port configuration and the per-port baud memory in a
JSON file under the user's application directory.
"""

import json
import logging
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Dict, Iterator, Optional, Union

import typer

logger = logging.getLogger(__name__)

APP_NAME = "px4-uploader"
SETTINGS_FILENAME = "settings.json"


class PortBaudMemory:
    """
    Mapping of port name -> last used baud rate.

    Serialized as "port:baud,port:baud" for the settings file.
    Thread-safe: SerialLink updates it from whichever thread configures it.
    """

    def __init__(self, initial: Optional[Dict[str, int]] = None):
        self._bauds: Dict[str, int] = dict(initial or {})
        self._lock = threading.Lock()

    @classmethod
    def parse(cls, text: str) -> "PortBaudMemory":
        """Build from a "port:baud,..." string; malformed entries are skipped."""
        bauds: Dict[str, int] = {}
        for entry in (text or "").split(","):
            parts = entry.split(":")
            if len(parts) != 2:
                continue
            name, baud = parts[0].strip(), parts[1].strip()
            if not name:
                continue
            try:
                bauds[name] = int(baud)
            except ValueError:
                logger.debug(f"Skipping malformed port baud entry {entry!r}")
        return cls(bauds)

    def format(self) -> str:
        """Render as "port:baud,..." (no trailing comma)."""
        with self._lock:
            return ",".join(f"{name}:{baud}" for name, baud in self._bauds.items())

    def remember(self, port_name: str, baud_rate: int) -> None:
        if not port_name:
            return
        with self._lock:
            self._bauds[port_name] = int(baud_rate)

    def recall(self, port_name: str) -> Optional[int]:
        with self._lock:
            return self._bauds.get(port_name)

    def as_dict(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._bauds)

    def __contains__(self, port_name: object) -> bool:
        with self._lock:
            return port_name in self._bauds

    def __iter__(self) -> Iterator[str]:
        return iter(self.as_dict())

    def __len__(self) -> int:
        with self._lock:
            return len(self._bauds)


@dataclass
class LinkSettings:
    """Last used serial settings, as persisted on disk."""
    port: str = ""
    baud: int = 115200
    parity: str = "none"
    stop_bits: int = 1
    data_bits: int = 8
    flow_control: str = "none"
    port_baud_map: str = ""

    def to_configuration(self, port_name: Optional[str] = None):
        """Build a PortConfiguration, optionally for a different port."""
        from px4_uploader.protocol.serial_link import PortConfiguration

        return PortConfiguration(
            port_name=port_name or self.port,
            baud_rate=self.baud,
            data_bits=self.data_bits,
            parity=self.parity,
            stop_bits=self.stop_bits,
            flow_control=self.flow_control,
        )

    def baud_memory(self) -> PortBaudMemory:
        """Per-port baud memory, seeded with the last port when the map is empty."""
        memory = PortBaudMemory.parse(self.port_baud_map)
        if not len(memory) and self.port:
            memory.remember(self.port, self.baud)
        return memory

    @classmethod
    def from_configuration(cls, config, memory: PortBaudMemory) -> "LinkSettings":
        return cls(
            port=config.port_name,
            baud=config.baud_rate,
            parity=config.parity,
            stop_bits=config.stop_bits,
            data_bits=config.data_bits,
            flow_control=config.flow_control,
            port_baud_map=memory.format(),
        )


def default_settings_path() -> Path:
    """Settings file location inside the platform's app config directory."""
    return Path(typer.get_app_dir(APP_NAME)) / SETTINGS_FILENAME


class SettingsStore:
    """Load and save LinkSettings as JSON."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else default_settings_path()

    def load(self) -> LinkSettings:
        """
        Read settings from disk.

        Missing or unreadable files fall back to defaults.
        """
        if not self.path.exists():
            return LinkSettings()
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(f"Ignoring unreadable settings file {self.path}: {exc}")
            return LinkSettings()
        if not isinstance(raw, dict):
            logger.warning(f"Ignoring settings file {self.path}: not a JSON object")
            return LinkSettings()

        defaults = LinkSettings()
        known = {k: raw[k] for k in asdict(defaults) if k in raw}
        try:
            settings = LinkSettings(**known)
            settings.baud = int(settings.baud)
            settings.stop_bits = int(settings.stop_bits)
            settings.data_bits = int(settings.data_bits)
        except (TypeError, ValueError) as exc:
            logger.warning(f"Ignoring invalid settings in {self.path}: {exc}")
            return defaults
        return settings

    def save(self, settings: LinkSettings) -> None:
        """Write settings to disk, creating the directory if needed."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(asdict(settings), indent=2), encoding="utf-8")
        logger.debug(f"Saved settings to {self.path}")
