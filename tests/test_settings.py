"""Tests for persisted link settings and the per-port baud memory."""

import json

from px4_uploader.core.settings import LinkSettings, PortBaudMemory, SettingsStore
from px4_uploader.protocol.serial_link import PortConfiguration


class TestPortBaudMemory:
    """Parsing and formatting of the port:baud map."""

    def test_parse_and_format(self):
        memory = PortBaudMemory.parse("/dev/ttyUSB0:57600,COM3:115200")
        assert memory.recall("/dev/ttyUSB0") == 57600
        assert memory.recall("COM3") == 115200
        assert memory.format() == "/dev/ttyUSB0:57600,COM3:115200"

    def test_malformed_entries_skipped(self):
        """Entries without exactly one colon or with a bad baud are dropped."""
        memory = PortBaudMemory.parse("COM1:9600,,junk,COM2:fast,:1200,a:b:c,COM4:921600,")
        assert memory.as_dict() == {"COM1": 9600, "COM4": 921600}

    def test_format_has_no_trailing_comma(self):
        memory = PortBaudMemory()
        memory.remember("COM1", 9600)
        assert memory.format() == "COM1:9600"
        assert PortBaudMemory().format() == ""

    def test_remember_overwrites(self):
        memory = PortBaudMemory({"COM1": 9600})
        memory.remember("COM1", 57600)
        assert memory.recall("COM1") == 57600
        assert "COM1" in memory
        assert list(memory) == ["COM1"]

    def test_empty_port_name_ignored(self):
        memory = PortBaudMemory()
        memory.remember("", 9600)
        assert len(memory) == 0


class TestLinkSettings:
    """Conversion between stored settings and PortConfiguration."""

    def test_to_configuration(self):
        settings = LinkSettings(port="COM5", baud=921600, parity="even", stop_bits=2, data_bits=7, flow_control="hardware")
        assert settings.to_configuration() == PortConfiguration("COM5", 921600, 7, "even", 2, "hardware")
        assert settings.to_configuration("COM6").port_name == "COM6"

    def test_baud_memory_seeded_from_last_port(self):
        settings = LinkSettings(port="COM5", baud=57600)
        assert settings.baud_memory().as_dict() == {"COM5": 57600}

    def test_from_configuration(self):
        memory = PortBaudMemory({"COM5": 57600, "COM6": 9600})
        settings = LinkSettings.from_configuration(PortConfiguration("COM5", 57600), memory)
        assert settings.port == "COM5"
        assert settings.port_baud_map == "COM5:57600,COM6:9600"


class TestSettingsStore:
    """JSON persistence."""

    def test_missing_file_gives_defaults(self, tmp_path):
        assert SettingsStore(tmp_path / "settings.json").load() == LinkSettings()

    def test_save_and_load(self, tmp_path):
        store = SettingsStore(tmp_path / "nested" / "settings.json")
        settings = LinkSettings(port="/dev/ttyACM0", baud=115200, port_baud_map="/dev/ttyACM0:115200")
        store.save(settings)
        assert store.load() == settings
        raw = json.loads(store.path.read_text())
        assert raw["port_baud_map"] == "/dev/ttyACM0:115200"

    def test_corrupt_file_gives_defaults(self, tmp_path, caplog):
        path = tmp_path / "settings.json"
        path.write_text("{not json")
        assert SettingsStore(path).load() == LinkSettings()
        assert "Ignoring unreadable settings" in caplog.text

    def test_bad_types_give_defaults(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"port": "COM1", "baud": "fast"}))
        assert SettingsStore(path).load() == LinkSettings()

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "settings.json"
        path.write_text(json.dumps({"port": "COM1", "baud": 9600, "theme": "dark"}))
        loaded = SettingsStore(path).load()
        assert loaded.port == "COM1"
        assert loaded.baud == 9600
