"""
Tests for the offline processor CLI and the PyAV encoder.
"""
import numpy as np
import pytest

from core.pipeline import ProcessingParameters
from core.results import Success
from runtime.video import VideoDecoder, load_image_sequence, moving_circle_sequence, save_image_sequence
from tools.offline_processor import (
    EXIT_FAILED,
    EXIT_SUCCESS,
    EncoderConfig,
    OfflineProcessorConfig,
    OfflineVideoProcessor,
    main,
    write_video,
)


@pytest.fixture
def frames_dir(tmp_path):
    sequence = moving_circle_sequence(frame_count=12, width=32, height=32, radius=8)
    directory = tmp_path / "input"
    save_image_sequence(sequence, str(directory))
    return directory


class TestCommandLine:
    """Tests for breathlens-magnify"""

    def test_frame_directory_round_trip(self, frames_dir, tmp_path):
        output = tmp_path / "output"
        code = main([str(frames_dir), str(output), '--fps', '15', '--levels', '2', '--gain', '5'])

        assert code == EXIT_SUCCESS
        result = load_image_sequence(str(output), frame_rate=15.0)
        assert len(result) == 12
        assert result[0].data.shape == (32, 32, 3)

    def test_roi_outside_frame_fails(self, frames_dir, tmp_path):
        code = main([str(frames_dir), str(tmp_path / "out"), '--roi', '20', '20', '20', '20'])
        assert code == EXIT_FAILED
        assert not (tmp_path / "out").exists()

    def test_missing_input_fails(self, tmp_path):
        assert main([str(tmp_path / "nope.mp4"), str(tmp_path / "out.mp4")]) == EXIT_FAILED

    def test_band_above_nyquist_fails(self, frames_dir, tmp_path):
        code = main([str(frames_dir), str(tmp_path / "out"), '--fps', '4', '--band', '0.5', '3'])
        assert code == EXIT_FAILED


class TestOfflineVideoProcessor:
    """Tests for the decode → magnify → encode path"""

    def test_grayscale_directory(self, frames_dir, tmp_path):
        config = OfflineProcessorConfig(
            input_path=str(frames_dir),
            output_path=str(tmp_path / "gray"),
            params=ProcessingParameters(gain=10.0, pyramid_depth=2),
            grayscale=True,
            frame_rate=15.0
        )
        result = OfflineVideoProcessor(config).process()

        assert isinstance(result, Success)
        assert result.frames.channels == 1
        assert len(list((tmp_path / "gray").glob("*.png"))) == 12

    def test_video_encode_decode(self, tmp_path):
        sequence = moving_circle_sequence(frame_count=10, width=64, height=64, radius=12)
        path = tmp_path / "circle.mp4"
        write_video(sequence, str(path), EncoderConfig(preset='ultrafast'))

        with VideoDecoder(str(path)) as decoder:
            decoded = decoder.read_sequence()

        assert (decoder.width, decoder.height) == (64, 64)
        assert len(decoded) == 10
        # Lossy, but the circle is still where it was
        centre = decoded[0].data[32, 32].astype(int)
        assert np.all(centre > 200)

    def test_video_max_frames(self, tmp_path):
        sequence = moving_circle_sequence(frame_count=10, width=64, height=64, radius=12)
        path = tmp_path / "circle.mp4"
        write_video(sequence, str(path), EncoderConfig(preset='ultrafast'))

        config = OfflineProcessorConfig(
            input_path=str(path),
            output_path=str(tmp_path / "out.mp4"),
            params=ProcessingParameters(gain=5.0, pyramid_depth=2),
            max_frames=6
        )
        processor = OfflineVideoProcessor(config)
        assert len(processor.load()) == 6
