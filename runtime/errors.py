"""
BreathLens - Error Taxonomy
============================
Typed failures raised by the device layer and the magnification engine.

Every error carries:
- kind: configuration | resource | io
- stage: pipeline stage that was running (filled in at the stage boundary)
- message: what went wrong
- suggestion: what the caller can try next

Cancellation is NOT an error and has no class here.
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure categories reported to callers."""
    CONFIGURATION = "configuration"
    RESOURCE = "resource"
    IO = "io"


class MagnificationError(Exception):
    """Base class for all engine failures."""

    kind: ErrorKind = ErrorKind.RESOURCE
    default_suggestion: str = "Restart the run from the first frame."

    def __init__(
        self,
        message: str,
        stage: Optional[str] = None,
        suggestion: Optional[str] = None
    ):
        super().__init__(message)
        self.message = message
        self.stage = stage
        self.suggestion = suggestion or self.default_suggestion

    def __str__(self) -> str:
        if self.stage:
            return f"[{self.stage}] {self.message}"
        return self.message


class ConfigurationError(MagnificationError):
    """Invalid ROI, frequency band, gain, or pyramid depth."""
    kind = ErrorKind.CONFIGURATION
    default_suggestion = "Check the region and processing parameters."


class ResourceError(MagnificationError):
    """Device-side resource failure."""
    kind = ErrorKind.RESOURCE
    default_suggestion = "Close other GPU-heavy applications and try again."


class OutOfMemoryError(ResourceError):
    """Allocation would exceed the configured memory budget."""
    default_suggestion = "Try a smaller region or fewer pyramid levels."


class DeviceLostError(ResourceError):
    """The device stopped accepting work."""
    default_suggestion = "Restart the run; the device must be re-initialized."


class UnsupportedCapabilityError(ResourceError):
    """Unknown kernel, wrong usage flags, or unsupported buffer layout."""
    default_suggestion = "This operation is not supported by the active device."


class KernelError(ResourceError):
    """A kernel raised while executing."""


class DeviceIOError(MagnificationError):
    """Upload to or readback from the device failed."""
    kind = ErrorKind.IO
    default_suggestion = "Check that the frames are intact and try again."
