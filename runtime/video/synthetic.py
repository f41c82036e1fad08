"""
BreathLens - Synthetic Test Sequences
======================================
Generated frame sequences with known motion, used to validate the engine.
"""

import numpy as np
from typing import Optional, Tuple

from .video_core import FrameSequence


def oscillating_pixel_sequence(
    frame_count: int = 90,
    width: int = 64,
    height: int = 64,
    fps: float = 30.0,
    pixel: Tuple[int, int] = (32, 32),
    base: float = 0.5,
    amplitude: float = 0.1,
    frequency: float = 0.3,
    background: Optional[float] = None
) -> FrameSequence:
    """
    Float frames where one pixel follows base + amplitude·sin(2π·f·t).

    Args:
        frame_count: Number of frames to generate
        width: Frame width
        height: Frame height
        fps: Frames per second
        pixel: (x, y) of the oscillating pixel
        base: Mean value of the oscillating pixel
        amplitude: Oscillation amplitude
        frequency: Oscillation frequency in Hz
        background: Value of every other pixel (defaults to `base`)

    Returns:
        Single-channel float32 FrameSequence
    """
    x, y = pixel
    fill = base if background is None else background

    arrays = []
    for t in range(frame_count):
        frame = np.full((height, width), fill, dtype=np.float32)
        frame[y, x] = base + amplitude * np.sin(2.0 * np.pi * frequency * t / fps)
        arrays.append(frame)

    return FrameSequence.from_arrays(arrays, frame_rate=fps)


def moving_circle_sequence(
    frame_count: int = 60,
    width: int = 256,
    height: int = 256,
    fps: float = 15.0,
    amplitude: float = 2.0,
    frequency: float = 0.3,
    radius: float = 20.0
) -> FrameSequence:
    """
    White circle on black oscillating horizontally (~breathing rate).

    Defaults move the circle ±2 pixels at 0.3 Hz (18 breaths per minute).

    Returns:
        RGB uint8 FrameSequence
    """
    ys, xs = np.mgrid[0:height, 0:width]

    arrays = []
    for t in range(frame_count):
        offset = amplitude * np.sin(2.0 * np.pi * frequency * t / fps)
        cx = width / 2 + offset
        cy = height / 2
        inside = (xs - cx) ** 2 + (ys - cy) ** 2 < radius ** 2

        frame = np.zeros((height, width, 3), dtype=np.uint8)
        frame[inside] = 255
        arrays.append(frame)

    return FrameSequence.from_arrays(arrays, frame_rate=fps)
