"""
End-to-end tests for the magnification pipeline orchestrator.
"""
import logging

import numpy as np
import pytest

from core import kernels
from core.pipeline import (
    CancellationToken,
    EngineConfig,
    MagnificationPipeline,
    PipelineState,
    ProcessingParameters,
    magnify,
)
from core.results import Cancelled, Failed, Success
from core.temporal_filter import FilterCoefficients
from runtime.device import Kernel, ResourceManager
from runtime.errors import (
    ConfigurationError,
    DeviceLostError,
    ErrorKind,
    KernelError,
    OutOfMemoryError,
)
from runtime.video import ROI, FrameSequence, moving_circle_sequence, oscillating_pixel_sequence


SCENARIO = dict(gain=5.0, f_min=0.1, f_max=0.5, pyramid_depth=2)


def pixel_series(sequence, x=32, y=32):
    return np.array([frame.data[y, x] for frame in sequence], dtype=np.float64)


def fit_oscillation(signal, frequency, fps, coeffs):
    """
    Amplitude and phase (relative to sin) of the sinusoidal part of a filtered signal.

    The filter response is the steady-state sinusoid plus one decaying term
    per accumulator, so those are fitted alongside it.
    """
    t = np.arange(len(signal))
    omega = 2 * np.pi * frequency / fps
    design = np.column_stack([
        np.sin(omega * t),
        np.cos(omega * t),
        coeffs.alpha_low ** t,
        coeffs.alpha_high ** t,
        np.ones_like(t, dtype=np.float64),
    ])
    fit, *_ = np.linalg.lstsq(design, signal, rcond=None)
    return float(np.hypot(fit[0], fit[1])), float(np.arctan2(fit[1], fit[0]))


@pytest.fixture
def device():
    """Injected resource manager, so allocation accounting can be inspected after a run."""
    manager = ResourceManager(memory_budget_bytes=64 * 1024 * 1024)
    yield manager
    manager.shutdown()


@pytest.fixture
def small_sequence():
    return oscillating_pixel_sequence(frame_count=20, width=32, height=32, pixel=(16, 16))


class TestMagnification:
    """Tests for the numerical behaviour of a full run"""

    def test_identity_with_collapsed_band(self):
        sequence = oscillating_pixel_sequence(frame_count=30, width=32, height=32, pixel=(16, 16))
        params = ProcessingParameters(gain=1.0, f_min=1.0, f_max=1.0 + 1e-6, pyramid_depth=3)

        result = magnify(sequence, params=params)

        assert isinstance(result, Success)
        np.testing.assert_allclose(result.frames.as_array(), sequence.as_array(), atol=1e-4)

    def test_identity_preserves_integer_frames(self):
        sequence = moving_circle_sequence(frame_count=8, width=48, height=48, radius=10)
        params = ProcessingParameters(gain=1.0, f_min=1.0, f_max=1.0 + 1e-6, pyramid_depth=3)

        result = magnify(sequence, params=params)

        assert result.frames.dtype == np.uint8
        np.testing.assert_array_equal(result.frames.as_array(), sequence.as_array())

    def test_deterministic(self, small_sequence):
        params = ProcessingParameters(gain=20.0)
        first = magnify(small_sequence, params=params)
        second = magnify(small_sequence, params=params)
        np.testing.assert_array_equal(first.frames.as_array(), second.frames.as_array())

    def test_scenario_amplification(self, unclamped_config):
        sequence = oscillating_pixel_sequence(
            frame_count=90, width=64, height=64, fps=30.0,
            pixel=(32, 32), base=0.5, amplitude=0.1, frequency=0.3
        )
        result = MagnificationPipeline(unclamped_config).run(
            sequence, params=ProcessingParameters(**SCENARIO)
        )

        assert isinstance(result, Success)
        added = pixel_series(result.frames) - pixel_series(sequence)
        coeffs = FilterCoefficients.from_band(0.1, 0.5, 30.0)
        amplitude, _ = fit_oscillation(added, 0.3, 30.0, coeffs)
        assert amplitude == pytest.approx(0.1 * 5.0, rel=0.15)

    def test_amplified_motion_is_in_phase(self, unclamped_config):
        sequence = oscillating_pixel_sequence(frame_count=90, width=64, height=64)
        result = MagnificationPipeline(unclamped_config).run(
            sequence, params=ProcessingParameters(**SCENARIO)
        )
        added = pixel_series(result.frames) - pixel_series(sequence)
        coeffs = FilterCoefficients.from_band(0.1, 0.5, 30.0)
        _, phase = fit_oscillation(added, 0.3, 30.0, coeffs)
        # Added motion moves with the input, not against it
        assert abs(phase) < np.radians(30)

    def test_out_of_band_rejected(self, unclamped_config):
        sequence = oscillating_pixel_sequence(
            frame_count=90, width=64, height=64, fps=30.0, amplitude=0.1, frequency=12.0
        )
        result = MagnificationPipeline(unclamped_config).run(
            sequence, params=ProcessingParameters(**SCENARIO)
        )

        added = pixel_series(result.frames) - pixel_series(sequence)
        coeffs = FilterCoefficients.from_band(0.1, 0.5, 30.0)
        amplitude, _ = fit_oscillation(added, 12.0, 30.0, coeffs)
        assert amplitude < 0.1 * (0.1 * 5.0)

    def test_output_bounded(self):
        sequence = oscillating_pixel_sequence(
            frame_count=60, width=32, height=32, pixel=(16, 16), amplitude=0.3
        )
        result = magnify(sequence, params=ProcessingParameters(gain=100.0, pyramid_depth=3))

        frames = result.frames.as_array()
        assert frames.min() >= 0.0
        assert frames.max() <= 1.0
        assert frames.max() == 1.0 or frames.min() == 0.0

    def test_order_sensitive(self, small_sequence):
        params = ProcessingParameters(gain=20.0)
        arrays = [frame.data for frame in small_sequence]
        reversed_sequence = FrameSequence.from_arrays(arrays[::-1], small_sequence.frame_rate)

        forward = magnify(small_sequence, params=params).frames.as_array()
        backward = magnify(reversed_sequence, params=params).frames.as_array()[::-1]

        assert not np.allclose(forward, backward, atol=1e-4)

    def test_roi_outside_pixels_pass_through(self):
        sequence = moving_circle_sequence(frame_count=20, width=64, height=64, radius=10)
        roi = ROI(x=16, y=16, width=32, height=32)
        result = magnify(sequence, roi=roi, params=ProcessingParameters(gain=50.0, pyramid_depth=2))

        output = result.frames.as_array()
        original = sequence.as_array()
        assert output.shape == original.shape
        assert output.dtype == original.dtype

        outside = np.ones(original.shape[1:3], dtype=bool)
        outside[roi.slices] = False
        np.testing.assert_array_equal(output[:, outside], original[:, outside])
        assert not np.array_equal(output[:, ~outside], original[:, ~outside])

    def test_pipelining_does_not_change_output(self, small_sequence):
        params = ProcessingParameters(gain=20.0)
        sequential = EngineConfig()
        sequential.frames_in_flight = 1

        overlapped = magnify(small_sequence, params=params).frames.as_array()
        serial = magnify(small_sequence, params=params, config=sequential).frames.as_array()
        np.testing.assert_array_equal(overlapped, serial)


class TestProgressAndCancellation:
    """Tests for progress reporting and cooperative cancellation"""

    def test_progress_is_monotonic_and_completes(self, small_sequence):
        updates = []
        result = magnify(small_sequence, progress=lambda f, s: updates.append((f, s)))

        assert isinstance(result, Success)
        fractions = [f for f, _ in updates]
        assert fractions == sorted(fractions)
        assert all(0.0 <= f <= 1.0 for f in fractions)
        assert updates[-1] == (1.0, "complete")

        stages = {s for _, s in updates}
        assert {"pyramid_building", "temporal_filtering", "reconstructing", "reading_back"} <= stages

    def test_cancel_releases_everything(self, device, small_sequence):
        token = CancellationToken()
        cancel_after = 5

        def on_progress(fraction, stage):
            if stage == "reading_back" and fraction >= cancel_after / len(small_sequence) - 1e-9:
                token.cancel()

        pipeline = MagnificationPipeline(resource_manager=device)
        result = pipeline.run(small_sequence, cancel_token=token, progress=on_progress)

        assert result == Cancelled(frames_completed=cancel_after)
        assert pipeline.state == PipelineState.CANCELLED
        assert device.outstanding_handles() == []
        assert device.bytes_in_use == 0

    def test_cancel_before_start(self, device, small_sequence):
        token = CancellationToken()
        token.cancel()
        result = MagnificationPipeline(resource_manager=device).run(small_sequence, cancel_token=token)

        assert isinstance(result, Cancelled)
        assert result.frames_completed == 0
        assert device.outstanding_handles() == []

    def test_injected_manager_stays_usable(self, device, small_sequence):
        pipeline = MagnificationPipeline(resource_manager=device)
        assert isinstance(pipeline.run(small_sequence), Success)
        assert isinstance(pipeline.run(small_sequence), Success)
        assert device.outstanding_handles() == []
        assert pipeline.state == PipelineState.COMPLETE


class TestFailures:
    """Tests for typed failures and cleanup on every error path"""

    @pytest.mark.parametrize("roi", [
        ROI(x=20, y=20, width=20, height=20),
        ROI(x=-1, y=0, width=4, height=4),
        ROI(x=0, y=0, width=0, height=4),
    ])
    def test_invalid_roi(self, device, small_sequence, roi):
        result = MagnificationPipeline(resource_manager=device).run(small_sequence, roi=roi)

        assert isinstance(result, Failed)
        assert result.kind == ErrorKind.CONFIGURATION
        assert result.stage == "initializing"
        assert device.total_allocations == 0

    @pytest.mark.parametrize("params", [
        ProcessingParameters(gain=0.0),
        ProcessingParameters(gain=float('nan')),
        ProcessingParameters(f_min=0.5, f_max=0.5),
        ProcessingParameters(f_min=0.0, f_max=0.5),
        ProcessingParameters(f_min=1.0, f_max=15.0),
        ProcessingParameters(pyramid_depth=0),
        ProcessingParameters(pyramid_depth=7),
    ])
    def test_invalid_parameters(self, device, small_sequence, params):
        result = MagnificationPipeline(resource_manager=device).run(small_sequence, params=params)

        assert isinstance(result, Failed)
        assert isinstance(result.error, ConfigurationError)
        assert device.total_allocations == 0

    def test_over_budget_fails_at_initializing(self, small_sequence):
        tiny = ResourceManager(memory_budget_bytes=4096)
        try:
            result = MagnificationPipeline(resource_manager=tiny).run(small_sequence)
            assert isinstance(result, Failed)
            assert isinstance(result.error, OutOfMemoryError)
            assert result.kind == ErrorKind.RESOURCE
            assert result.stage == "initializing"
            assert tiny.total_allocations == 0
        finally:
            tiny.shutdown()

    def test_kernel_failure(self, device, small_sequence, monkeypatch):
        def broken_update(buffers, **params):
            raise RuntimeError("accumulator overflow")

        monkeypatch.setitem(
            kernels.KERNELS, kernels.TEMPORAL_UPDATE,
            Kernel(fn=broken_update, writes=('slow', 'fast', 'dst'))
        )
        pipeline = MagnificationPipeline(resource_manager=device)
        result = pipeline.run(small_sequence)

        assert isinstance(result, Failed)
        assert isinstance(result.error, KernelError)
        assert result.stage == "temporal_filtering"
        assert "accumulator overflow" in result.message
        assert result.describe().startswith("failed during temporal filtering:")
        assert pipeline.state == PipelineState.FAILED
        assert device.outstanding_handles() == []

    def test_device_lost_mid_run(self, device, small_sequence):
        def on_progress(fraction, stage):
            if fraction >= 0.5 and not device.device_lost:
                device.mark_device_lost("test reset")

        result = MagnificationPipeline(resource_manager=device).run(
            small_sequence, progress=on_progress
        )

        assert isinstance(result, Failed)
        assert isinstance(result.error, DeviceLostError)
        assert result.suggestion
        assert device.outstanding_handles() == []

    def test_progress_sink_error_is_contained(self, device, small_sequence):
        def on_progress(fraction, stage):
            if stage == "reconstructing":
                raise ValueError("display closed")

        result = MagnificationPipeline(resource_manager=device).run(
            small_sequence, progress=on_progress
        )
        assert isinstance(result, Failed)
        assert isinstance(result.error, KernelError)
        assert result.stage == "reconstructing"
        assert device.outstanding_handles() == []


class TestParameters:
    """Tests for ProcessingParameters and EngineConfig"""

    def test_high_gain_warns(self, caplog):
        with caplog.at_level(logging.WARNING):
            ProcessingParameters(gain=150.0).validate(30.0)
        assert "above the recommended maximum" in caplog.text

    def test_nyquist_limit(self):
        ProcessingParameters(f_min=1.0, f_max=14.9).validate(30.0)
        with pytest.raises(ConfigurationError):
            ProcessingParameters(f_min=1.0, f_max=15.0).validate(30.0)

    def test_depth_accepts_numpy_integers(self):
        sequence = moving_circle_sequence(frame_count=4, width=32, height=32, radius=8)
        result = magnify(sequence, params=ProcessingParameters(gain=5.0, pyramid_depth=np.int64(2)))
        assert isinstance(result, Success)
        assert len(result.frames) == 4

    @pytest.mark.parametrize("depth", [True, 2.0, 0])
    def test_depth_must_be_positive_integer(self, depth):
        with pytest.raises(ConfigurationError):
            ProcessingParameters(pyramid_depth=depth).validate(30.0)

    def test_engine_config_as_dict(self):
        config = EngineConfig().as_dict()
        assert config['frames_in_flight'] == 2
        assert config['state_dtype'] == 'float64'
        assert config['memory_budget_bytes'] == 512 * 1024 * 1024
