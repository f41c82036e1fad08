"""BreathLens - Terminal results of a magnification run."""

from dataclasses import dataclass
from typing import Optional, Union

from runtime.errors import ErrorKind, MagnificationError
from runtime.video import FrameSequence


@dataclass(frozen=True)
class Success:
    """Every frame was magnified."""
    frames: FrameSequence

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Cancelled:
    """The caller cancelled the run; all resources were released."""
    frames_completed: int

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class Failed:
    """
    A stage failed; all resources were released.

    Attributes:
        stage: Pipeline stage that was running
        kind: Error category
        message: What went wrong
        suggestion: What the caller can try next
        error: The underlying exception, when one was raised
    """
    stage: str
    kind: ErrorKind
    message: str
    suggestion: str
    error: Optional[MagnificationError] = None

    @property
    def ok(self) -> bool:
        return False

    @classmethod
    def from_error(cls, error: MagnificationError, stage: str) -> 'Failed':
        return cls(
            stage=error.stage or stage,
            kind=error.kind,
            message=error.message,
            suggestion=error.suggestion,
            error=error
        )

    def describe(self) -> str:
        """Human-readable one-liner, e.g. for a status line or dialog."""
        stage = self.stage.replace('_', ' ')
        suggestion = self.suggestion[:1].lower() + self.suggestion[1:]
        return f"failed during {stage}: {self.message}; {suggestion}"


PipelineResult = Union[Success, Cancelled, Failed]
