"""
BreathLens - Amplifier / Reconstructor
=======================================
Scales each level's band-pass signal, adds it to the recentered residual and
collapses the pyramid coarsest to finest into one full-resolution frame.
"""

import logging
import numpy as np
from typing import List, Sequence, Tuple

from core import kernels
from core.pyramid import PyramidLevel
from runtime.device import BufferUsage, DeviceHandle, ResourceManager


logger = logging.getLogger(__name__)


class Reconstructor:
    """
    Persistent amplify/collapse buffers reused for every frame.

    Frame t+1 may be submitted while frame t is still being read back; the
    resource manager orders the writes after the outstanding readback.
    """

    def __init__(
        self,
        resource_manager: ResourceManager,
        shapes: Sequence[Tuple[int, ...]],
        gain: float,
        normalization: float = 1.0,
        residual_offset: float = 0.5,
        clamp_output: bool = True,
        dtype=np.float32
    ):
        """
        Allocate reconstruction buffers.

        Args:
            resource_manager: Device owning the buffers
            shapes: Buffer shape of each pyramid level, finest first
            gain: Amplification factor
            normalization: Passband normalization multiplied into the gain
            residual_offset: Offset removed from shifted residuals
            clamp_output: Clamp the full-resolution result to [0, 1]
            dtype: Element type
        """
        self.rm = resource_manager
        self.shapes = [tuple(s) for s in shapes]
        self.gain = gain
        self.normalization = normalization
        self.residual_offset = residual_offset
        self.clamp_output = clamp_output

        self.amplified: List[DeviceHandle] = []
        self.accumulated: List[DeviceHandle] = []

        try:
            for k, shape in enumerate(self.shapes):
                self.amplified.append(self.rm.allocate(
                    shape, BufferUsage.STORAGE | BufferUsage.COPY_SRC, dtype,
                    owner=f"reconstruct.amp{k}"))
            for k, shape in enumerate(self.shapes[:-1]):
                self.accumulated.append(self.rm.allocate(
                    shape, BufferUsage.STORAGE | BufferUsage.COPY_SRC, dtype,
                    owner=f"reconstruct.acc{k}"))
        except Exception:
            self.release()
            raise

    @staticmethod
    def buffer_bytes(shapes: Sequence[Tuple[int, ...]], dtype=np.float32) -> int:
        itemsize = np.dtype(dtype).itemsize
        pixels = sum(int(np.prod(s)) for s in shapes)
        pixels += sum(int(np.prod(s)) for s in shapes[:-1])
        return pixels * itemsize

    @property
    def effective_gain(self) -> float:
        return self.gain * self.normalization

    @property
    def output(self) -> DeviceHandle:
        """Full-resolution result buffer."""
        return self.accumulated[0] if self.accumulated else self.amplified[0]

    def submit(
        self,
        levels: Sequence[PyramidLevel],
        bandpass: Sequence[DeviceHandle]
    ) -> DeviceHandle:
        """
        Queue amplify, collapse and clamp for one frame.

        Returns:
            The output handle; read it back to wait for the frame
        """
        depth = len(self.shapes)

        for k, level in enumerate(levels):
            self.rm.dispatch_kernel(
                kernels.AMPLIFY,
                {'residual': level.residual, 'bandpass': bandpass[k], 'dst': self.amplified[k]},
                work_size=self.shapes[k][:2],
                gain=self.effective_gain,
                offset=self.residual_offset if level.shifted else 0.0
            )

        # acc_{N-1} is amp_{N-1}
        coarse = self.amplified[depth - 1]
        for k in range(depth - 2, -1, -1):
            self.rm.dispatch_kernel(
                kernels.COLLAPSE,
                {'coarse': coarse, 'band': self.amplified[k], 'dst': self.accumulated[k]},
                work_size=self.shapes[k][:2]
            )
            coarse = self.accumulated[k]

        if self.clamp_output:
            self.rm.dispatch_kernel(
                kernels.CLAMP,
                {'dst': self.output},
                work_size=self.shapes[0][:2],
                low=0.0,
                high=1.0
            )

        return self.output

    @property
    def handles(self) -> List[DeviceHandle]:
        return self.amplified + self.accumulated

    def release(self):
        """Release every reconstruction buffer (best effort)."""
        handles = self.handles
        self.amplified, self.accumulated = [], []
        self.rm.release_many(handles)
