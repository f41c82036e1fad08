"""
BreathLens - Shared Video Core
===============================
Frame data model shared by the engine and its collaborators.

This module handles:
- Immutable frames and fixed-length frame sequences
- Region of interest validation and cropping
- Video decoding (FFmpeg via PyAV) into frame sequences
- Image-directory sequences (Pillow)

It does NOT handle:
- Video encoding (see tools/offline_processor.py)
- Any magnification processing
"""

import av
import numpy as np
from PIL import Image
from typing import Iterator, List, Optional, Sequence, Tuple
from dataclasses import dataclass
from pathlib import Path

from runtime.errors import ConfigurationError


# Declared valid range per integer pixel type; floating point frames use [0, 1]
INTEGER_RANGES = {
    'uint8': 255.0,
    'uint16': 65535.0,
}


@dataclass(frozen=True)
class Frame:
    """
    Represents a single decoded frame.

    Attributes:
        data: Read-only pixel data (H, W) or (H, W, C)
        pts: Presentation timestamp (in seconds)
        frame_index: Sequential frame number (0-indexed)
    """
    data: np.ndarray
    pts: float = 0.0
    frame_index: int = 0

    def __post_init__(self):
        data = np.asarray(self.data)

        if data.ndim not in (2, 3):
            raise ConfigurationError(f"Frame data must be 2-D or 3-D, got shape {data.shape}")
        if data.dtype.kind == 'u' and data.dtype.name not in INTEGER_RANGES:
            raise ConfigurationError(f"Unsupported pixel type: {data.dtype}")
        if data.dtype.kind not in 'uf':
            raise ConfigurationError(f"Unsupported pixel type: {data.dtype}")

        view = data.view()
        view.flags.writeable = False
        object.__setattr__(self, 'data', view)

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def channels(self) -> int:
        return 1 if self.data.ndim == 2 else self.data.shape[2]

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype

    @property
    def max_value(self) -> float:
        """Upper bound of the declared valid range (lower bound is 0)."""
        return INTEGER_RANGES.get(self.data.dtype.name, 1.0)

    @classmethod
    def from_image(cls, image: Image.Image, pts: float = 0.0, frame_index: int = 0) -> 'Frame':
        """Build a frame from a PIL image (L, RGB or RGBA)."""
        return cls(data=np.array(image), pts=pts, frame_index=frame_index)

    def to_image(self) -> Image.Image:
        """Convert to a PIL image; float frames are quantized to 8 bits."""
        data = self.data
        if data.dtype.kind == 'f':
            data = np.clip(np.round(data * 255.0), 0, 255).astype(np.uint8)
        elif data.dtype != np.uint8:
            data = (data.astype(np.float64) / self.max_value * 255.0).round().astype(np.uint8)
        if data.ndim == 3 and data.shape[2] == 1:
            data = data[..., 0]
        return Image.fromarray(data)

    def __repr__(self) -> str:
        return (f"Frame(index={self.frame_index}, "
                f"size={self.width}×{self.height}x{self.channels}, "
                f"dtype={self.dtype}, pts={self.pts:.3f}s)")


@dataclass(frozen=True)
class FrameSequence:
    """
    Ordered, fixed-length frame collection with its frame rate.

    All frames share shape and dtype.
    """
    frames: Tuple[Frame, ...]
    frame_rate: float

    def __post_init__(self):
        frames = tuple(self.frames)
        object.__setattr__(self, 'frames', frames)

        if not frames:
            raise ConfigurationError("Frame sequence is empty")
        if not self.frame_rate > 0:
            raise ConfigurationError(f"Frame rate must be positive, got {self.frame_rate}")

        first = frames[0]
        for frame in frames[1:]:
            if frame.data.shape != first.data.shape or frame.dtype != first.dtype:
                raise ConfigurationError(
                    f"Frame {frame.frame_index} is {frame.data.shape} {frame.dtype}, "
                    f"expected {first.data.shape} {first.dtype}"
                )

    @classmethod
    def from_arrays(cls, arrays: Sequence[np.ndarray], frame_rate: float) -> 'FrameSequence':
        """Wrap raw arrays as frames timestamped at 1/frame_rate intervals."""
        if not frame_rate > 0:
            raise ConfigurationError(f"Frame rate must be positive, got {frame_rate}")
        frames = tuple(
            Frame(data=array, pts=i / frame_rate, frame_index=i)
            for i, array in enumerate(arrays)
        )
        return cls(frames=frames, frame_rate=frame_rate)

    def __len__(self) -> int:
        return len(self.frames)

    def __iter__(self) -> Iterator[Frame]:
        return iter(self.frames)

    def __getitem__(self, index: int) -> Frame:
        return self.frames[index]

    @property
    def count(self) -> int:
        return len(self.frames)

    @property
    def width(self) -> int:
        return self.frames[0].width

    @property
    def height(self) -> int:
        return self.frames[0].height

    @property
    def channels(self) -> int:
        return self.frames[0].channels

    @property
    def dtype(self) -> np.dtype:
        return self.frames[0].dtype

    @property
    def duration(self) -> float:
        return len(self.frames) / self.frame_rate

    def as_array(self) -> np.ndarray:
        """Stack all frames into one (T, H, W[, C]) array."""
        return np.stack([frame.data for frame in self.frames])


@dataclass(frozen=True)
class ROI:
    """Axis-aligned region of interest in pixel coordinates."""
    x: int
    y: int
    width: int
    height: int

    @classmethod
    def full_frame(cls, width: int, height: int) -> 'ROI':
        return cls(x=0, y=0, width=width, height=height)

    def validate(self, frame_width: int, frame_height: int):
        """
        Check the region lies fully within a frame.

        Raises:
            ConfigurationError: If the region is empty or out of bounds
        """
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError(
                f"ROI must have positive size, got {self.width}×{self.height}",
                suggestion="Drag a rectangle over the chest area."
            )
        if self.x < 0 or self.y < 0:
            raise ConfigurationError(f"ROI origin ({self.x}, {self.y}) is outside the frame")
        if self.x + self.width > frame_width or self.y + self.height > frame_height:
            raise ConfigurationError(
                f"ROI ({self.x}, {self.y}, {self.width}×{self.height}) exceeds "
                f"frame bounds {frame_width}×{frame_height}"
            )

    @property
    def slices(self) -> Tuple[slice, slice]:
        return (slice(self.y, self.y + self.height), slice(self.x, self.x + self.width))

    def crop(self, data: np.ndarray) -> np.ndarray:
        """View of `data` restricted to this region."""
        return data[self.slices]


class VideoDecoder:
    """
    FFmpeg-based video decoder using PyAV.

    Decodes video files to frames with timing information.
    """

    def __init__(self, video_path: str, pixel_format: str = 'rgb24'):
        """
        Initialize video decoder.

        Args:
            video_path: Path to video file
            pixel_format: Output pixel format ('rgb24' or 'gray')

        Raises:
            FileNotFoundError: If video file doesn't exist
            ValueError: If container cannot be opened
        """
        self.video_path = Path(video_path)
        self.pixel_format = pixel_format
        self.container = None

        if not self.video_path.exists():
            raise FileNotFoundError(f"Video file not found: {video_path}")

        try:
            self.container = av.open(str(self.video_path))
        except av.error.FFmpegError as e:
            raise ValueError(f"Failed to open video: {e}")

        if not self.container.streams.video:
            self.container.close()
            raise ValueError("No video stream found in file")

        self.stream = self.container.streams.video[0]

        # Extract metadata
        self.width = self.stream.width
        self.height = self.stream.height
        self.fps = float(self.stream.average_rate) if self.stream.average_rate else 30.0
        self.total_frames = self.stream.frames if self.stream.frames else None
        self.codec = self.stream.codec_context.name

        self.frame_index = 0

    def __iter__(self) -> Iterator[Frame]:
        """
        Iterate through all frames in the video.

        Yields:
            Frame objects in presentation order
        """
        self.frame_index = 0

        for av_frame in self.container.decode(self.stream):
            yield self._convert_frame(av_frame)

    def _convert_frame(self, av_frame) -> Frame:
        data = av_frame.to_ndarray(format=self.pixel_format)

        if av_frame.pts is not None:
            pts = float(av_frame.pts * self.stream.time_base)
        else:
            pts = self.frame_index / self.fps

        frame = Frame(data=data, pts=pts, frame_index=self.frame_index)
        self.frame_index += 1
        return frame

    def read_sequence(self, max_frames: Optional[int] = None) -> FrameSequence:
        """Decode the whole stream (or its first `max_frames`) into a FrameSequence."""
        frames: List[Frame] = []
        for frame in self:
            frames.append(frame)
            if max_frames is not None and len(frames) >= max_frames:
                break
        return FrameSequence(frames=tuple(frames), frame_rate=self.fps)

    def close(self):
        """Close the video container and release resources."""
        if self.container is not None:
            self.container.close()
            self.container = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


def load_image_sequence(
    input_dir: str,
    frame_rate: float,
    pattern: str = "*.png",
    mode: Optional[str] = None
) -> FrameSequence:
    """
    Load a directory of still images as a frame sequence.

    Args:
        input_dir: Directory containing frames (sorted by name)
        frame_rate: Frame rate to assign
        pattern: Glob pattern for input files
        mode: Optional PIL mode to convert to ('L', 'RGB')

    Raises:
        FileNotFoundError: If no files match
    """
    files = sorted(Path(input_dir).glob(pattern))
    if not files:
        raise FileNotFoundError(f"No files matching {pattern} in {input_dir}")

    frames = []
    for i, path in enumerate(files):
        with Image.open(path) as image:
            if mode is not None:
                image = image.convert(mode)
            frames.append(Frame.from_image(image, pts=i / frame_rate, frame_index=i))

    return FrameSequence(frames=tuple(frames), frame_rate=frame_rate)


def save_image_sequence(sequence: FrameSequence, output_dir: str, prefix: str = "frame") -> List[Path]:
    """Write every frame as a numbered PNG; returns the written paths."""
    output_path = Path(output_dir)
    output_path.mkdir(parents=True, exist_ok=True)

    digits = max(5, len(str(len(sequence))))
    written = []
    for frame in sequence:
        path = output_path / f"{prefix}_{frame.frame_index:0{digits}d}.png"
        frame.to_image().save(path)
        written.append(path)
    return written
