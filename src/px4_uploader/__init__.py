"""
PX4 Uploader - firmware flashing for PX4 flight controllers

Serial link transport, device discovery and the PX4 bootloader upload
protocol, with a command-line front end.
"""

__version__ = "0.1.0"

from px4_uploader.firmware import FirmwareImage, load_firmware_package
from px4_uploader.protocol import BootloaderUploader, PortConfiguration, SerialLink, UploaderConfig

__all__ = [
    "FirmwareImage",
    "load_firmware_package",
    "BootloaderUploader",
    "UploaderConfig",
    "PortConfiguration",
    "SerialLink",
    "__version__",
]
