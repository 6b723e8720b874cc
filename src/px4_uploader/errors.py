"""
Exception hierarchy for PX4 Uploader.

Transport, package and bootloader layers all raise subclasses of
UploaderError so callers can catch one base type.
"""


class UploaderError(Exception):
    """Base exception for all uploader errors"""
    pass


# Serial transport

class InvalidConfiguration(UploaderError):
    """Port setting outside the supported hardware range"""
    pass


class PortUnavailable(UploaderError):
    """Port missing, busy, or rejected the configuration on open"""
    pass


class DeviceNotFound(PortUnavailable):
    """No new serial device appeared while waiting for the board"""
    pass


class NotConnected(UploaderError):
    """Operation requires an open port"""
    pass


class ReadTimeout(UploaderError):
    """Fewer bytes than requested arrived before the deadline"""
    pass


# Firmware package

class FirmwarePackageError(UploaderError):
    """Base exception for firmware package problems"""
    pass


class MalformedPackage(FirmwarePackageError):
    """Package is missing a key or carries an undecodable image"""
    pass


class SizeMismatch(FirmwarePackageError):
    """Decompressed image length differs from the declared image_size"""
    pass


# Bootloader protocol

class BootloaderError(UploaderError):
    """Base exception for bootloader protocol failures"""
    pass


class BadSync(BootloaderError):
    """Device answered with something other than the sync footer"""
    pass


class SyncFailed(BootloaderError):
    """Could not synchronise with the bootloader"""
    pass


class UnsupportedBootloader(BootloaderError):
    """Bootloader revision is not allowed by the current configuration"""
    pass


class BoardMismatch(BootloaderError):
    """Firmware was built for a different board"""
    pass


class ImageTooLarge(BootloaderError):
    """Firmware image does not fit in the device flash"""
    pass


class OtpReadFailed(BootloaderError):
    """OTP or serial number area could not be read or verified"""
    pass


class EraseTimeout(BootloaderError):
    """Device never confirmed the flash erase"""
    pass


class FlashWriteFailed(BootloaderError):
    """Too many failed chunk writes; image is unrecoverable without a fresh erase"""
    pass


class UserCancelled(UploaderError):
    """Session stopped on request"""
    pass
