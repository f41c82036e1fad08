"""
BreathLens - Spatial Pyramid Builder
=====================================
Per-frame Laplacian-style decomposition on the device.

Level k+1 is a blurred, 2× decimated copy of level k. For every level except
the coarsest the residual band G_k − expand(G_{k+1}) is stored shifted by a
constant offset; the coarsest level's residual is its Gaussian image.
"""

import logging
import numpy as np
from dataclasses import dataclass
from concurrent.futures import Future
from typing import List, Sequence, Tuple

from core import kernels
from runtime.device import BufferUsage, DeviceHandle, ResourceManager
from runtime.errors import ConfigurationError


logger = logging.getLogger(__name__)

LEVEL_USAGE = BufferUsage.STORAGE | BufferUsage.COPY_SRC


@dataclass(frozen=True)
class PyramidLevel:
    """
    One level of one frame's pyramid.

    Attributes:
        index: Level number (0 = full resolution)
        shape: Buffer shape at this level
        base: Gaussian image buffer
        residual: Residual band buffer (same handle as `base` at the coarsest level)
        shifted: Whether `residual` carries the constant offset
    """
    index: int
    shape: Tuple[int, ...]
    base: DeviceHandle
    residual: DeviceHandle
    shifted: bool


def level_shapes(shape: Sequence[int], depth: int) -> List[Tuple[int, ...]]:
    """Buffer shapes of every level for a full-resolution `shape`."""
    shapes = [tuple(shape)]
    for _ in range(depth - 1):
        prev = shapes[-1]
        # [::2] keeps ceil(n / 2) samples
        shapes.append(((prev[0] + 1) // 2, (prev[1] + 1) // 2) + tuple(prev[2:]))
    return shapes


def validate_depth(shape: Sequence[int], depth: int):
    """
    Reject depths whose coarsest level would fall below one pixel.

    Raises:
        ConfigurationError: If depth < 1 or 2^(depth-1) exceeds the smaller side
    """
    if depth < 1:
        raise ConfigurationError(f"Pyramid depth must be at least 1, got {depth}")

    smallest = min(shape[0], shape[1])
    if 2 ** (depth - 1) > smallest:
        raise ConfigurationError(
            f"Pyramid depth {depth} is too large for a {shape[1]}×{shape[0]} region",
            suggestion="Use fewer pyramid levels or a larger region."
        )


def frame_bytes(shape: Sequence[int], depth: int, dtype=np.float32) -> int:
    """Device bytes held by one prepared frame (input buffer plus its pyramid)."""
    itemsize = np.dtype(dtype).itemsize
    shapes = level_shapes(shape, depth)
    gaussians = sum(int(np.prod(s)) for s in shapes)
    residuals = sum(int(np.prod(s)) for s in shapes[:-1])
    return (gaussians + residuals) * itemsize


class PyramidBuilder:
    """
    Builds pyramids for frames already uploaded to the device.

    The builder does not own the level-0 input buffer; every other buffer it
    allocates is returned by owned_handles() and released by the caller.
    """

    def __init__(
        self,
        resource_manager: ResourceManager,
        depth: int,
        residual_offset: float = 0.5,
        dtype=np.float32
    ):
        self.rm = resource_manager
        self.depth = depth
        self.residual_offset = residual_offset
        self.dtype = np.dtype(dtype)

    def build(self, frame: DeviceHandle) -> List[PyramidLevel]:
        """
        Submit the reduce and residual kernels for one frame.

        Args:
            frame: Normalized full-resolution input (level 0 Gaussian)

        Returns:
            PyramidLevels, finest first. Their buffers are complete once
            fence(owned_handles(levels)) resolves.
        """
        validate_depth(frame.shape, self.depth)

        gaussians = [frame]
        residuals: List[DeviceHandle] = []

        try:
            for k in range(1, self.depth):
                shape = level_shapes(frame.shape, k + 1)[-1]
                coarse = self.rm.allocate(shape, LEVEL_USAGE, self.dtype, owner=f"pyramid.G{k}")
                gaussians.append(coarse)
                self.rm.dispatch_kernel(
                    kernels.REDUCE,
                    {'src': gaussians[k - 1], 'dst': coarse},
                    work_size=shape[:2]
                )

            for k in range(self.depth - 1):
                fine = gaussians[k]
                band = self.rm.allocate(fine.shape, LEVEL_USAGE, self.dtype, owner=f"pyramid.r{k}")
                residuals.append(band)
                self.rm.dispatch_kernel(
                    kernels.RESIDUAL,
                    {'fine': fine, 'coarse': gaussians[k + 1], 'dst': band},
                    work_size=fine.shape[:2],
                    offset=self.residual_offset
                )
        except Exception:
            self.rm.release_many(gaussians[1:] + residuals)
            raise

        levels = []
        for k in range(self.depth):
            coarsest = k == self.depth - 1
            levels.append(PyramidLevel(
                index=k,
                shape=gaussians[k].shape,
                base=gaussians[k],
                residual=gaussians[k] if coarsest else residuals[k],
                shifted=not coarsest
            ))
        return levels

    def fence(self, levels: Sequence[PyramidLevel]) -> Future:
        """Future resolving once every level buffer has been written."""
        return self.rm.fence([level.residual for level in levels])

    @staticmethod
    def owned_handles(levels: Sequence[PyramidLevel]) -> List[DeviceHandle]:
        """Buffers allocated by build(), excluding the caller's input."""
        handles = []
        for level in levels:
            if level.index > 0:
                handles.append(level.base)
            if level.shifted:
                handles.append(level.residual)
        return handles
