"""
BreathLens - Temporal Band-Pass Filter
=======================================
Two-accumulator exponential recurrence applied per pixel, per pyramid level.

This module handles:
- Decay coefficients derived from the band edges and frame rate
- The analytic frequency response of the filter (for passband normalization)
- Filter state buffers, allocated once per run and updated in frame order

The filter is the only stage with cross-frame dependency: step() must be
called exactly once per frame, in increasing time order.
"""

import cmath
import logging
import math
import numpy as np
from concurrent.futures import Future
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from core import kernels
from core.pyramid import PyramidLevel
from runtime.device import BufferUsage, DeviceHandle, ResourceManager
from runtime.errors import ConfigurationError


logger = logging.getLogger(__name__)

# Below this passband magnitude the band is treated as collapsed
MIN_PASSBAND_GAIN = 1e-3


@dataclass(frozen=True)
class FilterCoefficients:
    """Decay coefficients for one run."""
    alpha_low: float
    alpha_high: float
    f_min: float
    f_max: float
    frame_rate: float

    @classmethod
    def from_band(cls, f_min: float, f_max: float, frame_rate: float) -> 'FilterCoefficients':
        """
        α_low = exp(−2π·f_min/fs), α_high = exp(−2π·f_max/fs)

        Raises:
            ConfigurationError: If either coefficient falls outside (0, 1)
        """
        alpha_low = math.exp(-2.0 * math.pi * f_min / frame_rate)
        alpha_high = math.exp(-2.0 * math.pi * f_max / frame_rate)

        for name, alpha in (('alpha_low', alpha_low), ('alpha_high', alpha_high)):
            if not 0.0 < alpha < 1.0:
                raise ConfigurationError(
                    f"{name}={alpha!r} is outside (0, 1) for band "
                    f"[{f_min}, {f_max}] Hz at {frame_rate} fps"
                )

        return cls(
            alpha_low=alpha_low,
            alpha_high=alpha_high,
            f_min=f_min,
            f_max=f_max,
            frame_rate=frame_rate
        )

    @property
    def center_frequency(self) -> float:
        """Geometric centre of the band in Hz."""
        return math.sqrt(self.f_min * self.f_max)

    def response(self, frequency: float) -> complex:
        """Complex response of slow − fast to a sinusoid at `frequency` Hz."""
        omega = 2.0 * math.pi * frequency / self.frame_rate
        z = cmath.exp(-1j * omega)

        def ema(alpha):
            return (1.0 - alpha) / (1.0 - alpha * z)

        return ema(self.alpha_low) - ema(self.alpha_high)

    @property
    def passband_gain(self) -> float:
        """Signed magnitude of the response at the band centre."""
        h = self.response(self.center_frequency)
        return math.copysign(abs(h), h.real)

    def normalization(self) -> float:
        """
        Factor applied to the gain so band-centre content is amplified by
        exactly `gain` with its phase preserved.

        Returns 1.0 for a collapsed band.
        """
        gain = self.passband_gain
        if abs(gain) < MIN_PASSBAND_GAIN:
            return 1.0
        return 1.0 / gain


class TemporalFilter:
    """
    Single-owner filter state for every pyramid level.

    Holds slow/fast accumulators (float64) and a band-pass output buffer per
    level. One TEMPORAL_UPDATE dispatch per level per frame mutates them.
    """

    def __init__(
        self,
        resource_manager: ResourceManager,
        shapes: Sequence[Tuple[int, ...]],
        coefficients: FilterCoefficients,
        residual_offset: float = 0.5,
        warm_start: bool = True,
        state_dtype=np.float64,
        output_dtype=np.float32
    ):
        """
        Allocate filter state.

        Args:
            resource_manager: Device owning the buffers
            shapes: Buffer shape of each pyramid level, finest first
            coefficients: Decay coefficients for this run
            residual_offset: Offset removed from shifted residuals before filtering
            warm_start: Seed both accumulators with the first frame instead of zero
            state_dtype: Accumulator precision
            output_dtype: Band-pass output element type

        Raises:
            OutOfMemoryError: If the state does not fit the memory budget
        """
        self.rm = resource_manager
        self.shapes = [tuple(s) for s in shapes]
        self.coefficients = coefficients
        self.residual_offset = residual_offset
        self.warm_start = warm_start
        self.frames_processed = 0

        self.slow: List[DeviceHandle] = []
        self.fast: List[DeviceHandle] = []
        self.bandpass: List[DeviceHandle] = []

        try:
            for k, shape in enumerate(self.shapes):
                self.slow.append(self.rm.allocate(
                    shape, BufferUsage.STORAGE, state_dtype, owner=f"temporal.slow{k}"))
                self.fast.append(self.rm.allocate(
                    shape, BufferUsage.STORAGE, state_dtype, owner=f"temporal.fast{k}"))
                self.bandpass.append(self.rm.allocate(
                    shape, BufferUsage.STORAGE | BufferUsage.COPY_SRC, output_dtype,
                    owner=f"temporal.bandpass{k}"))
        except Exception:
            self.release()
            raise

        logger.debug(
            "[TemporalFilter] α_low=%.6f α_high=%.6f over %d levels",
            coefficients.alpha_low, coefficients.alpha_high, len(self.shapes)
        )

    @staticmethod
    def state_bytes(
        shapes: Sequence[Tuple[int, ...]],
        state_dtype=np.float64,
        output_dtype=np.float32
    ) -> int:
        """Device bytes held by the filter for the given level shapes."""
        per_pixel = 2 * np.dtype(state_dtype).itemsize + np.dtype(output_dtype).itemsize
        return sum(int(np.prod(s)) for s in shapes) * per_pixel

    def step(self, levels: Sequence[PyramidLevel]) -> Future:
        """
        Advance the filter by one frame.

        Args:
            levels: The frame's pyramid levels, finest first

        Returns:
            Future resolving once every band-pass buffer holds this frame's output
        """
        if len(levels) != len(self.shapes):
            raise ConfigurationError(
                f"Expected {len(self.shapes)} pyramid levels, got {len(levels)}"
            )

        seed = self.warm_start and self.frames_processed == 0

        for k, level in enumerate(levels):
            self.rm.dispatch_kernel(
                kernels.TEMPORAL_UPDATE,
                {
                    'src': level.residual,
                    'slow': self.slow[k],
                    'fast': self.fast[k],
                    'dst': self.bandpass[k],
                },
                work_size=self.shapes[k][:2],
                alpha_low=self.coefficients.alpha_low,
                alpha_high=self.coefficients.alpha_high,
                offset=self.residual_offset if level.shifted else 0.0,
                seed=seed
            )

        self.frames_processed += 1
        return self.rm.fence(self.bandpass)

    @property
    def handles(self) -> List[DeviceHandle]:
        return self.slow + self.fast + self.bandpass

    def release(self):
        """Release every state buffer (best effort)."""
        handles = self.handles
        self.slow, self.fast, self.bandpass = [], [], []
        self.rm.release_many(handles)
