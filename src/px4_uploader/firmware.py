"""
Firmware package loader for .px4 files.

A .px4 package is a JSON document produced by px_mkfw. The fields this
module relies on are:

    "board_id": 9,
    "image_size": 1234567,
    "description": "Firmware for the PX4FMUv2 board",
    "image": "<base64 of zlib-compressed image>"

The image is decoded into a size-prefixed container (4-byte big-endian
uncompressed length followed by the zlib stream), decompressed, checked
against image_size and padded to a 4-byte multiple with 0xFF.
"""

import base64
import binascii
import hashlib
import json
import logging
import re
import struct
import tempfile
import zlib
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Dict, Optional, Union

from px4_uploader.errors import MalformedPackage, SizeMismatch

logger = logging.getLogger(__name__)

FILL_BYTE = 0xFF
WORD_SIZE = 4

_INT_KEYS = ("board_id", "image_size")
_OPTIONAL_INT_KEYS = ("image_maxsize", "build_time")
_OPTIONAL_STR_KEYS = ("summary", "version", "git_identity")


def _int_pattern(key: str) -> "re.Pattern[str]":
    return re.compile(r'"%s"\s*:\s*(-?\w+)' % re.escape(key))


def _str_pattern(key: str) -> "re.Pattern[str]":
    return re.compile(r'"%s"\s*:\s*"((?:[^"\\]|\\.)*)"' % re.escape(key))


def _last_match(pattern: "re.Pattern[str]", text: str) -> Optional[str]:
    matches = pattern.findall(text)
    return matches[-1] if matches else None


def _unescape(value: str) -> str:
    try:
        return json.loads(f'"{value}"')
    except ValueError:
        return value


@dataclass(frozen=True)
class FirmwareImage:
    """
    Firmware ready for transfer.

    Attributes:
        board_id: Board the firmware was built for
        declared_size: image_size from the package (unpadded length)
        description: Package description
        payload: Decompressed image padded to a 4-byte multiple with 0xFF
        summary, version, git_identity, image_maxsize: Optional package fields
    """
    board_id: int
    declared_size: int
    description: str
    payload: bytes
    summary: str = ""
    version: str = ""
    git_identity: str = ""
    image_maxsize: Optional[int] = None

    @property
    def size(self) -> int:
        """Bytes that will be sent to the device."""
        return len(self.payload)

    @property
    def padding(self) -> int:
        return len(self.payload) - self.declared_size

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.payload).hexdigest()


def pad_image(data: bytes, multiple: int = WORD_SIZE, fill: int = FILL_BYTE) -> bytes:
    """
    Pad data to a multiple of `multiple` bytes.

    Padding an already aligned buffer returns it unchanged.
    """
    remainder = len(data) % multiple
    if remainder == 0:
        return bytes(data)
    return bytes(data) + bytes([fill]) * (multiple - remainder)


def qt_uncompress(container: bytes) -> bytes:
    """
    Decompress a size-prefixed zlib container.

    The first 4 bytes carry the expected length (big-endian); the rest is a
    zlib stream.

    Raises:
        MalformedPackage: If the container is truncated or not valid zlib
        SizeMismatch: If the stream does not decompress to the prefixed length
    """
    if len(container) < 4:
        raise MalformedPackage("Compressed image is truncated")
    (expected,) = struct.unpack(">I", container[:4])
    try:
        data = zlib.decompress(container[4:])
    except zlib.error as exc:
        raise MalformedPackage(f"Error in decompressing firmware: {exc}") from exc
    logger.info(f"Firmware size: {len(data)} expected {expected} bytes")
    if len(data) != expected:
        raise SizeMismatch(
            f"Decompressed image is {len(data)} bytes, package declares {expected}. "
            "Please re-download and try again"
        )
    return data


def parse_package_fields(text: str) -> Dict[str, object]:
    """
    Extract package fields by key.

    Returns:
        Dict with board_id, image_size, description, image (raw base64) and
        any optional fields that are present

    Raises:
        MalformedPackage: If a required key is missing or has a bad value
    """
    fields: Dict[str, object] = {}

    for key in _INT_KEYS:
        raw = _last_match(_int_pattern(key), text)
        if raw is None:
            raise MalformedPackage(f"Error parsing {key.upper()} from .px4 file")
        try:
            fields[key] = int(raw)
        except ValueError:
            raise MalformedPackage(f"Invalid {key} value {raw!r} in .px4 file")

    description = _last_match(_str_pattern("description"), text)
    if description is None:
        raise MalformedPackage("Error parsing DESCRIPTION from .px4 file")
    fields["description"] = _unescape(description).strip()

    image = _last_match(_str_pattern("image"), text)
    if image is None:
        raise MalformedPackage("Error parsing IMAGE from .px4 file")
    fields["image"] = image

    for key in _OPTIONAL_STR_KEYS:
        raw = _last_match(_str_pattern(key), text)
        if raw is not None:
            fields[key] = _unescape(raw).strip()

    for key in _OPTIONAL_INT_KEYS:
        raw = _last_match(_int_pattern(key), text)
        if raw is not None:
            try:
                fields[key] = int(raw)
            except ValueError:
                logger.warning(f"Ignoring non-numeric {key} {raw!r}")

    return fields


def decode_image(encoded: str, declared_size: int) -> bytes:
    """
    Turn the base64 "image" field into the unpadded firmware bytes.

    Raises:
        MalformedPackage: If the base64 or zlib data is invalid
        SizeMismatch: If the result is not declared_size bytes long
    """
    cleaned = "".join(encoded.replace("\\n", "").replace("\\/", "/").split())
    try:
        compressed = base64.b64decode(cleaned, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedPackage(f"Image is not valid base64: {exc}") from exc

    if not 0 <= declared_size <= 0xFFFFFFFF:
        raise MalformedPackage(f"Invalid image_size {declared_size}")
    container = struct.pack(">I", declared_size) + compressed
    return qt_uncompress(container)


def load_firmware_text(text: str) -> FirmwareImage:
    """Parse package text into a padded FirmwareImage."""
    fields = parse_package_fields(text)
    declared_size = fields["image_size"]
    if declared_size < 0:
        raise MalformedPackage(f"Invalid image_size {declared_size}")

    payload = pad_image(decode_image(fields["image"], declared_size))

    return FirmwareImage(
        board_id=fields["board_id"],
        declared_size=declared_size,
        description=fields["description"],
        payload=payload,
        summary=fields.get("summary", ""),
        version=fields.get("version", ""),
        git_identity=fields.get("git_identity", ""),
        image_maxsize=fields.get("image_maxsize"),
    )


def load_firmware_package(path: Union[str, Path]) -> FirmwareImage:
    """
    Load a .px4 package from disk.

    Raises:
        FileNotFoundError: If the file does not exist
        MalformedPackage: If the package cannot be parsed
        SizeMismatch: If the image length is wrong
    """
    path = Path(path)
    text = path.read_text(encoding="utf-8", errors="replace")
    image = load_firmware_text(text)
    logger.info(
        f"Loaded {path.name}: board {image.board_id}, {image.declared_size} bytes "
        f"({image.padding} padding), {image.description!r}"
    )
    return image


def stage_image(image: FirmwareImage) -> IO[bytes]:
    """
    Write the padded payload to a temporary file positioned at offset 0.

    The caller owns the file and must close it; it is deleted on close.
    """
    staged = tempfile.TemporaryFile(prefix="px4-image-")
    staged.write(image.payload)
    staged.flush()
    staged.seek(0)
    return staged


def build_package_text(
    image: bytes,
    board_id: int,
    description: str = "",
    summary: str = "",
    version: str = "",
    git_identity: str = "",
    image_maxsize: Optional[int] = None,
) -> str:
    """Create .px4 package text for a raw firmware binary."""
    package = {
        "board_id": board_id,
        "magic": "PX4FWv1",
        "description": description,
        "image": base64.b64encode(zlib.compress(image, 9)).decode("ascii"),
        "build_time": 0,
        "summary": summary,
        "version": version,
        "image_size": len(image),
        "git_identity": git_identity,
        "board_revision": 0,
    }
    if image_maxsize is not None:
        package["image_maxsize"] = image_maxsize
    return json.dumps(package, indent=4)
