"""BreathLens - Offline Processing Tools"""

from .offline_processor import (
    EncoderConfig,
    OfflineProcessorConfig,
    VideoEncoder,
    OfflineVideoProcessor,
    magnify_video_file,
    write_video,
)

__all__ = [
    'EncoderConfig',
    'OfflineProcessorConfig',
    'VideoEncoder',
    'OfflineVideoProcessor',
    'magnify_video_file',
    'write_video',
]
__version__ = '0.1.0'
