"""
BreathLens - Magnification Pipeline Orchestrator
=================================================
Sequences the device stages over a whole frame sequence.

Per frame:
1. Upload + normalize the ROI crop, build its pyramid
2. Temporal band-pass filter (strictly in frame order)
3. Amplify and collapse the pyramid
4. Read back and compose into a copy of the original frame

The upload and pyramid of frame t+1 are queued before frame t is filtered.
Every run ends in Success, Cancelled or Failed, with every device buffer
released.
"""

import logging
import math
import numbers
import threading
import numpy as np
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from core import kernels
from core.pyramid import PyramidBuilder, PyramidLevel, frame_bytes, level_shapes, validate_depth
from core.reconstruct import Reconstructor
from core.results import Cancelled, Failed, PipelineResult, Success
from core.temporal_filter import FilterCoefficients, TemporalFilter
from runtime.device import DEFAULT_MEMORY_BUDGET, FRAME_USAGE, DeviceHandle, ResourceManager
from runtime.errors import (
    ConfigurationError,
    DeviceIOError,
    KernelError,
    MagnificationError,
    OutOfMemoryError,
)
from runtime.video import ROI, Frame, FrameSequence


logger = logging.getLogger(__name__)

ProgressSink = Callable[[float, str], None]


class EngineConfig:
    """Configuration for the magnification engine."""

    def __init__(self):
        # Device
        self.memory_budget_bytes: int = DEFAULT_MEMORY_BUDGET
        self.max_workers: int = 4
        self.enable_buffer_reuse: bool = True

        # Pipelining: frames holding pyramid buffers at once (1 disables overlap)
        self.frames_in_flight: int = 2

        # Precision
        self.buffer_dtype = np.float32
        self.state_dtype = np.float64

        # Offset applied to stored residual bands
        self.residual_offset: float = 0.5

        # Clamp reconstruction to [0, 1]; off only for analysis of raw output
        self.clamp_output: bool = True

        self.log_every_frames: int = 30

    def as_dict(self) -> Dict[str, Any]:
        """Export configuration as dictionary."""
        return {
            'memory_budget_bytes': self.memory_budget_bytes,
            'max_workers': self.max_workers,
            'enable_buffer_reuse': self.enable_buffer_reuse,
            'frames_in_flight': self.frames_in_flight,
            'buffer_dtype': np.dtype(self.buffer_dtype).name,
            'state_dtype': np.dtype(self.state_dtype).name,
            'residual_offset': self.residual_offset,
            'clamp_output': self.clamp_output,
            'log_every_frames': self.log_every_frames,
        }


@dataclass
class ProcessingParameters:
    """
    Per-run magnification parameters.

    Attributes:
        gain: Amplification factor (recommended 1-100)
        f_min: Lower band edge in Hz
        f_max: Upper band edge in Hz
        pyramid_depth: Number of pyramid levels
        warm_start: Seed the filter with the first frame instead of zero
        normalize_passband: Scale the gain so band-centre motion grows by exactly `gain`
    """
    gain: float = 25.0
    f_min: float = 0.1
    f_max: float = 0.5
    pyramid_depth: int = 3
    warm_start: bool = True
    normalize_passband: bool = True

    def validate(self, frame_rate: float):
        """
        Raises:
            ConfigurationError: On a non-positive gain, an invalid band or depth
        """
        if not (math.isfinite(self.gain) and self.gain > 0):
            raise ConfigurationError(
                f"Gain must be a positive number, got {self.gain}",
                suggestion="Use a gain between 1 and 100."
            )
        if self.gain > 100:
            logger.warning("[Pipeline] Gain %.1f is above the recommended maximum of 100", self.gain)

        nyquist = frame_rate / 2.0
        if not 0 < self.f_min < self.f_max:
            raise ConfigurationError(
                f"Invalid frequency band [{self.f_min}, {self.f_max}] Hz",
                suggestion="The lower band edge must be positive and below the upper edge."
            )
        if self.f_max >= nyquist:
            raise ConfigurationError(
                f"Band upper edge {self.f_max} Hz is at or above Nyquist ({nyquist} Hz)",
                suggestion="Lower the upper band edge or use a higher frame rate."
            )

        if isinstance(self.pyramid_depth, bool) or not isinstance(self.pyramid_depth, numbers.Integral) \
                or self.pyramid_depth < 1:
            raise ConfigurationError(
                f"Pyramid depth must be a positive integer, got {self.pyramid_depth!r}"
            )


class PipelineState(str, Enum):
    IDLE = "idle"
    INITIALIZING = "initializing"
    PYRAMID_BUILDING = "pyramid_building"
    TEMPORAL_FILTERING = "temporal_filtering"
    RECONSTRUCTING = "reconstructing"
    READING_BACK = "reading_back"
    COMPLETE = "complete"
    CANCELLED = "cancelled"
    FAILED = "failed"


# Per-frame stages, in progress order
FRAME_STAGES = (
    PipelineState.PYRAMID_BUILDING,
    PipelineState.TEMPORAL_FILTERING,
    PipelineState.RECONSTRUCTING,
    PipelineState.READING_BACK,
)


class CancellationToken:
    """Cooperative cancellation flag shared between caller and pipeline."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()


class ProgressReporter:
    """Forwards (fraction, stage) to a sink, never letting the fraction go backwards."""

    def __init__(self, sink: Optional[ProgressSink], total_frames: int):
        self.sink = sink
        self.total_frames = max(total_frames, 1)
        self.fraction = 0.0

    def frame_stage(self, frame_index: int, stage: PipelineState):
        step = FRAME_STAGES.index(stage) + 1
        self.report((frame_index + step / len(FRAME_STAGES)) / self.total_frames, stage)

    def report(self, fraction: float, stage: PipelineState):
        self.fraction = min(1.0, max(self.fraction, fraction))
        if self.sink is not None:
            self.sink(self.fraction, stage.value)


@dataclass
class _FrameBuffers:
    """Device buffers held for one prepared frame."""
    frame_index: int
    input: DeviceHandle
    levels: List[PyramidLevel] = field(default_factory=list)

    def handles(self) -> List[DeviceHandle]:
        return [self.input] + PyramidBuilder.owned_handles(self.levels)


class MagnificationPipeline:
    """
    Eulerian motion-magnification engine.

    A pipeline instance runs one sequence at a time. Pass a ResourceManager to
    share a device across runs; otherwise one is created and shut down per run.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        resource_manager: Optional[ResourceManager] = None
    ):
        self.config = config or EngineConfig()
        self.resource_manager = resource_manager
        self.state = PipelineState.IDLE

    def run(
        self,
        sequence: FrameSequence,
        roi: Optional[ROI] = None,
        params: Optional[ProcessingParameters] = None,
        cancel_token: Optional[CancellationToken] = None,
        progress: Optional[ProgressSink] = None
    ) -> PipelineResult:
        """
        Magnify a frame sequence.

        Args:
            sequence: Input frames (never modified)
            roi: Region to magnify (defaults to the full frame)
            params: Processing parameters (defaults to ProcessingParameters())
            cancel_token: Polled between frames
            progress: Receives (fraction, stage) updates

        Returns:
            Success(frames), Cancelled(frames_completed) or Failed(...)
        """
        params = params or ProcessingParameters()
        token = cancel_token or CancellationToken()
        reporter = ProgressReporter(progress, len(sequence))

        self.state = PipelineState.IDLE
        rm: Optional[ResourceManager] = None
        owns_rm = False
        in_flight: List[_FrameBuffers] = []
        temporal: Optional[TemporalFilter] = None
        reconstructor: Optional[Reconstructor] = None

        try:
            with self._stage(PipelineState.INITIALIZING):
                reporter.report(0.0, PipelineState.INITIALIZING)

                roi = roi or ROI.full_frame(sequence.width, sequence.height)
                roi.validate(sequence.width, sequence.height)
                params.validate(sequence.frame_rate)

                crop_shape = (roi.height, roi.width) + sequence[0].data.shape[2:]
                validate_depth(crop_shape, params.pyramid_depth)
                shapes = level_shapes(crop_shape, params.pyramid_depth)
                coefficients = FilterCoefficients.from_band(
                    params.f_min, params.f_max, sequence.frame_rate
                )

                if self.resource_manager is not None:
                    rm = self.resource_manager
                else:
                    rm = ResourceManager(
                        memory_budget_bytes=self.config.memory_budget_bytes,
                        max_workers=self.config.max_workers,
                        enable_buffer_reuse=self.config.enable_buffer_reuse
                    )
                    owns_rm = True
                rm.register_kernels(kernels.KERNELS)

                self._check_memory(rm, crop_shape, shapes, params.pyramid_depth)

                normalization = 1.0
                if params.normalize_passband:
                    normalization = coefficients.normalization()

                temporal = TemporalFilter(
                    rm, shapes, coefficients,
                    residual_offset=self.config.residual_offset,
                    warm_start=params.warm_start,
                    state_dtype=self.config.state_dtype,
                    output_dtype=self.config.buffer_dtype
                )
                reconstructor = Reconstructor(
                    rm, shapes, params.gain,
                    normalization=normalization,
                    residual_offset=self.config.residual_offset,
                    clamp_output=self.config.clamp_output,
                    dtype=self.config.buffer_dtype
                )

            logger.info(
                "[Pipeline] Magnifying %d frames, ROI %d×%d at (%d, %d), gain %.1f "
                "(effective %.2f), band [%.3f, %.3f] Hz, %d levels",
                len(sequence), roi.width, roi.height, roi.x, roi.y, params.gain,
                reconstructor.effective_gain, params.f_min, params.f_max, params.pyramid_depth
            )

            builder = PyramidBuilder(
                rm, params.pyramid_depth,
                residual_offset=self.config.residual_offset,
                dtype=self.config.buffer_dtype
            )
            frames, cancelled = self._process(
                rm, builder, temporal, reconstructor, sequence, roi, crop_shape,
                token, reporter, in_flight
            )

            if not cancelled:
                with self._stage(PipelineState.COMPLETE):
                    reporter.report(1.0, PipelineState.COMPLETE)

        except MagnificationError as e:
            failed = Failed.from_error(e, self.state.value)
            self.state = PipelineState.FAILED
            logger.error("[Pipeline] Run %s", failed.describe())
            return failed

        finally:
            self._release(rm, owns_rm, in_flight, temporal, reconstructor)

        if cancelled:
            self.state = PipelineState.CANCELLED
            logger.info("[Pipeline] Cancelled after %d/%d frames", len(frames), len(sequence))
            return Cancelled(frames_completed=len(frames))

        self.state = PipelineState.COMPLETE
        logger.info("[Pipeline] Complete: %d frames", len(frames))
        return Success(frames=FrameSequence(frames=tuple(frames), frame_rate=sequence.frame_rate))

    # ==========================================================================
    # Frame loop
    # ==========================================================================

    def _process(
        self,
        rm: ResourceManager,
        builder: PyramidBuilder,
        temporal: TemporalFilter,
        reconstructor: Reconstructor,
        sequence: FrameSequence,
        roi: ROI,
        crop_shape: Tuple[int, ...],
        token: CancellationToken,
        reporter: ProgressReporter,
        in_flight: List[_FrameBuffers]
    ) -> Tuple[List[Frame], bool]:
        total = len(sequence)
        pipelined = self.config.frames_in_flight > 1
        outputs: List[Frame] = []

        with self._stage(PipelineState.PYRAMID_BUILDING):
            current = self._prepare(rm, builder, sequence[0], roi, crop_shape, in_flight)

        for t in range(total):
            if token.is_cancelled:
                return outputs, True

            with self._stage(PipelineState.PYRAMID_BUILDING):
                builder.fence(current.levels).result()
                reporter.frame_stage(t, PipelineState.PYRAMID_BUILDING)

                # Queue the next frame before waiting on this one's filter
                upcoming = None
                if pipelined and t + 1 < total:
                    upcoming = self._prepare(rm, builder, sequence[t + 1], roi, crop_shape, in_flight)

            with self._stage(PipelineState.TEMPORAL_FILTERING):
                temporal.step(current.levels).result()
                reporter.frame_stage(t, PipelineState.TEMPORAL_FILTERING)

            with self._stage(PipelineState.RECONSTRUCTING):
                output = reconstructor.submit(current.levels, temporal.bandpass)
                rm.fence([output]).result()
                reporter.frame_stage(t, PipelineState.RECONSTRUCTING)

            with self._stage(PipelineState.READING_BACK):
                magnified = rm.readback(output).result()
                outputs.append(self._compose(sequence[t], roi, magnified))

                in_flight.remove(current)
                rm.release_many(current.handles())
                reporter.frame_stage(t, PipelineState.READING_BACK)

            if (t + 1) % self.config.log_every_frames == 0:
                logger.info("[Pipeline] Frame %d/%d", t + 1, total)

            if not pipelined and t + 1 < total:
                with self._stage(PipelineState.PYRAMID_BUILDING):
                    upcoming = self._prepare(rm, builder, sequence[t + 1], roi, crop_shape, in_flight)

            current = upcoming

        return outputs, False

    def _prepare(
        self,
        rm: ResourceManager,
        builder: PyramidBuilder,
        frame: Frame,
        roi: ROI,
        crop_shape: Tuple[int, ...],
        in_flight: List[_FrameBuffers]
    ) -> _FrameBuffers:
        """Upload, normalize and decompose one frame's ROI."""
        handle = rm.allocate(
            crop_shape, FRAME_USAGE, self.config.buffer_dtype,
            owner=f"frame{frame.frame_index}"
        )
        buffers = _FrameBuffers(frame_index=frame.frame_index, input=handle)
        in_flight.append(buffers)

        rm.upload(handle, roi.crop(frame.data))
        rm.dispatch_kernel(
            kernels.NORMALIZE,
            {'dst': handle},
            work_size=crop_shape[:2],
            scale=1.0 / frame.max_value
        )
        buffers.levels = builder.build(handle)
        return buffers

    @staticmethod
    def _compose(frame: Frame, roi: ROI, magnified: np.ndarray) -> Frame:
        """Write the magnified ROI into a copy of the source frame."""
        data = np.array(frame.data, copy=True)

        if data.dtype.kind == 'f':
            region = magnified.astype(data.dtype)
        else:
            scaled = np.round(magnified.astype(np.float64) * frame.max_value)
            region = np.clip(scaled, 0, frame.max_value).astype(data.dtype)

        data[roi.slices] = region
        return Frame(data=data, pts=frame.pts, frame_index=frame.frame_index)

    # ==========================================================================
    # Helpers
    # ==========================================================================

    @contextmanager
    def _stage(self, stage: PipelineState):
        """Enter a stage; convert any fault raised inside it to a tagged MagnificationError."""
        self.state = stage
        try:
            yield
        except MagnificationError as e:
            if e.stage is None:
                e.stage = stage.value
            raise
        except MemoryError as e:
            raise OutOfMemoryError(f"Host out of memory: {e}", stage=stage.value) from e
        except OSError as e:
            raise DeviceIOError(f"{type(e).__name__}: {e}", stage=stage.value) from e
        except Exception as e:
            raise KernelError(f"{type(e).__name__}: {e}", stage=stage.value) from e

    def _check_memory(
        self,
        rm: ResourceManager,
        crop_shape: Tuple[int, ...],
        shapes: List[Tuple[int, ...]],
        depth: int
    ):
        """Fail before allocating when the run's peak usage cannot fit."""
        dtype = self.config.buffer_dtype
        frames = max(1, self.config.frames_in_flight)

        required = (
            TemporalFilter.state_bytes(shapes, self.config.state_dtype, dtype)
            + Reconstructor.buffer_bytes(shapes, dtype)
            + frames * (frame_bytes(crop_shape, depth, dtype))
        )
        available = rm.memory_budget_bytes - rm.bytes_in_use

        if required > available:
            raise OutOfMemoryError(
                f"Run needs {required / (1024 * 1024):.1f} MiB but only "
                f"{available / (1024 * 1024):.1f} MiB of the memory budget is free"
            )
        logger.debug("[Pipeline] Peak device memory %d bytes of %d available", required, available)

    @staticmethod
    def _release(
        rm: Optional[ResourceManager],
        owns_rm: bool,
        in_flight: List[_FrameBuffers],
        temporal: Optional[TemporalFilter],
        reconstructor: Optional[Reconstructor]
    ):
        if rm is None:
            return

        for buffers in in_flight:
            rm.release_many(buffers.handles())
        in_flight.clear()

        if temporal is not None:
            temporal.release()
        if reconstructor is not None:
            reconstructor.release()

        if owns_rm:
            rm.shutdown()


# ==============================================================================
# Convenience Functions
# ==============================================================================

def magnify(
    sequence: FrameSequence,
    roi: Optional[ROI] = None,
    params: Optional[ProcessingParameters] = None,
    config: Optional[EngineConfig] = None,
    cancel_token: Optional[CancellationToken] = None,
    progress: Optional[ProgressSink] = None
) -> PipelineResult:
    """Run a fresh pipeline over `sequence`."""
    pipeline = MagnificationPipeline(config)
    return pipeline.run(sequence, roi, params, cancel_token=cancel_token, progress=progress)
