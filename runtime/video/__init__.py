"""BreathLens - Video Core Module"""

from .video_core import (
    Frame,
    FrameSequence,
    ROI,
    VideoDecoder,
    load_image_sequence,
    save_image_sequence,
)
from .synthetic import oscillating_pixel_sequence, moving_circle_sequence

__all__ = [
    'Frame',
    'FrameSequence',
    'ROI',
    'VideoDecoder',
    'load_image_sequence',
    'save_image_sequence',
    'oscillating_pixel_sequence',
    'moving_circle_sequence',
]
