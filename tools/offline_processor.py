"""
BreathLens - Offline Video Processor
=====================================
Batch magnification of recorded video.

Decode → Magnify (ROI) → Encode

Inputs are video files (PyAV) or directories of still frames (Pillow).
Outputs are encoded video files or PNG directories, chosen by the output
path's suffix.
"""

import argparse
import logging
import sys
import av
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Optional

from core.pipeline import (
    CancellationToken,
    EngineConfig,
    MagnificationPipeline,
    ProcessingParameters,
    ProgressSink,
)
from core.results import Cancelled, Failed, PipelineResult, Success
from runtime.errors import MagnificationError
from runtime.video import (
    ROI,
    Frame,
    FrameSequence,
    VideoDecoder,
    load_image_sequence,
    save_image_sequence,
)


logger = logging.getLogger(__name__)

VIDEO_SUFFIXES = {'.mp4', '.mkv', '.mov', '.avi', '.webm'}

EXIT_SUCCESS = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 2


@dataclass
class EncoderConfig:
    """Configuration for video encoding."""

    # Output settings
    codec: str = 'libx264'          # Video codec (libx264, libx265, etc.)
    pixel_format: str = 'yuv420p'   # Pixel format

    # Quality settings
    crf: int = 18                   # Constant Rate Factor (0-51, lower=better)
    preset: str = 'medium'          # Encoding preset (ultrafast, fast, medium, slow, veryslow)

    # Bitrate settings (alternative to CRF)
    bitrate: Optional[str] = None   # e.g., '5M' for 5 Mbps (overrides CRF if set)


@dataclass
class OfflineProcessorConfig:
    """Configuration for offline magnification."""

    # Input/Output
    input_path: str
    output_path: str

    # Region and processing parameters
    roi: Optional[ROI] = None
    params: ProcessingParameters = field(default_factory=ProcessingParameters)

    # Engine and encoder config
    engine_config: EngineConfig = field(default_factory=EngineConfig)
    encoder_config: EncoderConfig = field(default_factory=EncoderConfig)

    # Input options
    grayscale: bool = False          # Decode to a single channel
    frame_rate: float = 30.0         # Used for image-directory input only
    max_frames: Optional[int] = None


class VideoEncoder:
    """
    FFmpeg-based video encoder using PyAV.

    Encodes magnified frames to an output video file.
    """

    def __init__(
        self,
        output_path: str,
        width: int,
        height: int,
        fps: float,
        config: EncoderConfig
    ):
        """
        Initialize video encoder.

        Args:
            output_path: Path to output video file
            width: Output frame width
            height: Output frame height
            fps: Output frame rate
            config: Encoder configuration
        """
        self.output_path = Path(output_path)
        self.width = width
        self.height = height
        self.fps = fps
        self.config = config

        # Create output container
        self.container = av.open(str(self.output_path), 'w')

        # Create video stream; pts below count frames in 1/rate units
        rate = Fraction(fps).limit_denominator(1001)
        self.video_stream = self.container.add_stream(config.codec, rate=rate)
        self.video_stream.width = width
        self.video_stream.height = height
        self.video_stream.pix_fmt = config.pixel_format

        # Set encoding options
        options = {'preset': config.preset}
        if config.bitrate:
            self.video_stream.bit_rate = self._parse_bitrate(config.bitrate)
        else:
            options['crf'] = str(config.crf)
        self.video_stream.options = options

        self.frame_count = 0

        quality = f"bitrate {config.bitrate}" if config.bitrate else f"CRF {config.crf}"
        logger.info(
            "[VideoEncoder] %s: %d×%d @ %.2f fps, %s, %s",
            self.output_path, width, height, fps, config.codec, quality
        )

    @staticmethod
    def _parse_bitrate(bitrate_str: str) -> int:
        """Convert bitrate string like '5M' to bits per second."""
        if bitrate_str.endswith('M'):
            return int(float(bitrate_str[:-1]) * 1_000_000)
        elif bitrate_str.endswith('k'):
            return int(float(bitrate_str[:-1]) * 1_000)
        else:
            return int(bitrate_str)

    def encode_frame(self, frame: Frame):
        """
        Encode a single frame.

        Args:
            frame: uint8 gray (H, W) or RGB (H, W, 3) frame; other types are quantized
        """
        data = np.array(frame.to_image())
        pixel_format = 'gray' if data.ndim == 2 else 'rgb24'

        video_frame = av.VideoFrame.from_ndarray(np.ascontiguousarray(data), format=pixel_format)
        video_frame.pts = self.frame_count

        for packet in self.video_stream.encode(video_frame):
            self.container.mux(packet)

        self.frame_count += 1

        if self.frame_count % 100 == 0:
            logger.info("[VideoEncoder] Encoded %d frames", self.frame_count)

    def flush(self):
        """Flush encoder and finalize output."""
        for packet in self.video_stream.encode():
            self.container.mux(packet)

    def close(self):
        """Close output container and release resources."""
        if self.container is not None:
            self.container.close()
            self.container = None
            logger.info("[VideoEncoder] Closed %s (%d frames)", self.output_path, self.frame_count)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        try:
            if exc_type is None:
                self.flush()
        finally:
            self.close()


def write_video(sequence: FrameSequence, output_path: str, config: Optional[EncoderConfig] = None):
    """Encode a whole sequence to `output_path`."""
    with VideoEncoder(
        output_path=output_path,
        width=sequence.width,
        height=sequence.height,
        fps=sequence.frame_rate,
        config=config or EncoderConfig()
    ) as encoder:
        for frame in sequence:
            encoder.encode_frame(frame)


class OfflineVideoProcessor:
    """
    Offline magnification pipeline.

    Decode → MagnificationPipeline → Encode
    """

    def __init__(self, config: OfflineProcessorConfig):
        """
        Initialize offline processor.

        Args:
            config: Processing configuration

        Raises:
            FileNotFoundError: If the input does not exist
        """
        self.config = config

        input_path = Path(config.input_path)
        if not input_path.exists():
            raise FileNotFoundError(f"Input not found: {config.input_path}")

        output_path = Path(config.output_path)
        if output_path.suffix.lower() in VIDEO_SUFFIXES:
            output_path.parent.mkdir(parents=True, exist_ok=True)

        logger.info("[OfflineProcessor] Input:  %s", config.input_path)
        logger.info("[OfflineProcessor] Output: %s", config.output_path)

    def load(self) -> FrameSequence:
        """Decode the input video or image directory."""
        input_path = Path(self.config.input_path)

        if input_path.is_dir():
            mode = 'L' if self.config.grayscale else 'RGB'
            sequence = load_image_sequence(str(input_path), self.config.frame_rate, mode=mode)
        else:
            pixel_format = 'gray' if self.config.grayscale else 'rgb24'
            with VideoDecoder(str(input_path), pixel_format=pixel_format) as decoder:
                logger.info(
                    "[OfflineProcessor] Decoding %d×%d @ %.2f fps (%s)",
                    decoder.width, decoder.height, decoder.fps, decoder.codec
                )
                sequence = decoder.read_sequence(self.config.max_frames)

        logger.info("[OfflineProcessor] Loaded %d frames", len(sequence))
        return sequence

    def save(self, sequence: FrameSequence):
        """Write the magnified sequence as video or PNG frames."""
        output_path = Path(self.config.output_path)
        if output_path.suffix.lower() in VIDEO_SUFFIXES:
            write_video(sequence, str(output_path), self.config.encoder_config)
        else:
            save_image_sequence(sequence, str(output_path))

    def process(
        self,
        cancel_token: Optional[CancellationToken] = None,
        progress: Optional[ProgressSink] = None
    ) -> PipelineResult:
        """
        Execute decode → magnify → encode.

        The output is only written on Success.
        """
        sequence = self.load()

        pipeline = MagnificationPipeline(self.config.engine_config)
        result = pipeline.run(
            sequence,
            roi=self.config.roi,
            params=self.config.params,
            cancel_token=cancel_token,
            progress=progress
        )

        if isinstance(result, Success):
            self.save(result.frames)
            logger.info("[OfflineProcessor] Saved %s", self.config.output_path)
        return result


def magnify_video_file(
    input_path: str,
    output_path: str,
    roi: Optional[ROI] = None,
    params: Optional[ProcessingParameters] = None,
    cancel_token: Optional[CancellationToken] = None,
    progress: Optional[ProgressSink] = None
) -> PipelineResult:
    """Magnify one video file into another."""
    config = OfflineProcessorConfig(
        input_path=input_path,
        output_path=output_path,
        roi=roi,
        params=params or ProcessingParameters()
    )
    return OfflineVideoProcessor(config).process(cancel_token, progress)


class _ProgressLogger:
    """Logs progress every 10%."""

    def __init__(self):
        self.last_decile = -1

    def __call__(self, fraction: float, stage: str):
        decile = int(fraction * 10)
        if decile > self.last_decile:
            self.last_decile = decile
            logger.info("[Progress] %3d%% (%s)", decile * 10, stage)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='breathlens-magnify',
        description='Amplify subtle periodic motion (e.g. breathing) in a recorded video.'
    )
    parser.add_argument('input', help='Input video file or directory of frames')
    parser.add_argument('output', help='Output video file (.mp4, .mkv, ...) or frame directory')
    parser.add_argument('--roi', type=int, nargs=4, metavar=('X', 'Y', 'W', 'H'),
                        help='Region to magnify (default: full frame)')
    parser.add_argument('--gain', type=float, default=25.0, help='Amplification factor (default: 25)')
    parser.add_argument('--band', type=float, nargs=2, metavar=('FMIN', 'FMAX'), default=(0.1, 0.5),
                        help='Frequency band in Hz (default: 0.1 0.5)')
    parser.add_argument('--levels', type=int, default=3, help='Pyramid depth (default: 3)')
    parser.add_argument('--fps', type=float, default=30.0,
                        help='Frame rate for frame-directory input (default: 30)')
    parser.add_argument('--gray', action='store_true', help='Process a single luminance channel')
    parser.add_argument('--max-frames', type=int, default=None, help='Only process the first N frames')
    parser.add_argument('--crf', type=int, default=18, help='x264 quality (default: 18)')
    parser.add_argument('-v', '--verbose', action='store_true', help='Debug logging')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s %(levelname)s %(message)s'
    )

    params = ProcessingParameters(
        gain=args.gain,
        f_min=args.band[0],
        f_max=args.band[1],
        pyramid_depth=args.levels
    )
    config = OfflineProcessorConfig(
        input_path=args.input,
        output_path=args.output,
        roi=ROI(*args.roi) if args.roi else None,
        params=params,
        encoder_config=EncoderConfig(crf=args.crf),
        grayscale=args.gray,
        frame_rate=args.fps,
        max_frames=args.max_frames
    )

    try:
        processor = OfflineVideoProcessor(config)
    except FileNotFoundError as e:
        logger.error("[Error] %s", e)
        return EXIT_FAILED

    token = CancellationToken()
    with ThreadPoolExecutor(max_workers=1) as pool:
        future = pool.submit(processor.process, token, _ProgressLogger())
        try:
            try:
                result = future.result()
            except KeyboardInterrupt:
                logger.warning("[OfflineProcessor] Interrupted, cancelling...")
                token.cancel()
                result = future.result()
        except (OSError, ValueError, MagnificationError) as e:
            logger.error("[Error] Processing failed: %s", e)
            return EXIT_FAILED

    if isinstance(result, Cancelled):
        logger.warning("[OfflineProcessor] Cancelled after %d frames", result.frames_completed)
        return EXIT_CANCELLED
    if isinstance(result, Failed):
        logger.error("[Error] Magnification %s", result.describe())
        return EXIT_FAILED

    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
