"""BreathLens - Device Resource Layer"""

from .resource_manager import (
    BufferUsage,
    DeviceHandle,
    FRAME_USAGE,
    Kernel,
    ResourceManager,
    DEFAULT_MEMORY_BUDGET,
)

__all__ = [
    'BufferUsage',
    'DeviceHandle',
    'FRAME_USAGE',
    'Kernel',
    'ResourceManager',
    'DEFAULT_MEMORY_BUDGET',
]
