"""
Video preprocessing with PyAV.

Before upload, videos are re-encoded to a lower frame rate to cut payload
size and cost:

- If the native frame rate is already at or below the target, the source
  itself is returned as a non-owned TempArtifact (no file is written).
- Otherwise frames are dropped by timestamp to hit the target rate, the
  orientation is baked into the pixels, audio is carried over as AAC, and
  the result is written as a fast-start MP4 under a fresh UUID name in the
  temp directory.

Encoding runs in a worker thread so the event loop is never blocked.
Image-only providers use extract_key_frame() to get one representative
JPEG from the middle of a clip.
"""
import asyncio
import io
import logging
import tempfile
import uuid
from fractions import Fraction
from functools import lru_cache
from pathlib import Path
from typing import Optional

import av
import numpy as np
from PIL import Image

from ai_analysis.core.config import Settings, settings as default_settings
from ai_analysis.core.metrics import record_temp_artifact
from ai_analysis.services.analysis_types import TempArtifact, VideoDescriptor
from ai_analysis.services.error_classifier import VideoProcessingError

logger = logging.getLogger(__name__)

# Tried in order; mpeg4 ships with every FFmpeg build
ENCODER_PREFERENCE = ("libx264", "h264", "mpeg4")

# Encoder options giving a good quality/size trade-off for upload
X264_OPTIONS = {"preset": "medium", "crf": "23"}

# Containers report rates like 10.0003; treat those as already at target
FPS_TOLERANCE = 0.01

KEY_FRAME_MAX_DIMENSION = 2048
KEY_FRAME_JPEG_QUALITY = 90

VIDEO_MIME_TYPES = {
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".avi": "video/x-msvideo",
    ".mpg": "video/mpeg",
    ".mpeg": "video/mpeg",
    ".mkv": "video/x-matroska",
}


def video_mime_type(path: Path) -> str:
    """Determine MIME type from file extension."""
    return VIDEO_MIME_TYPES.get(Path(path).suffix.lower(), "video/mp4")


@lru_cache(maxsize=1)
def select_video_encoder() -> str:
    """Return the first H.264-compatible encoder available in this FFmpeg build."""
    for name in ENCODER_PREFERENCE:
        try:
            av.Codec(name, "w")
        except ValueError:
            continue
        logger.debug(f"Using video encoder {name}")
        return name
    raise VideoProcessingError("No usable video encoder found")


def _even(value: int) -> int:
    return max(2, value - (value % 2))


def _stream_rotation(stream) -> int:
    """Clockwise display rotation in degrees from the stream's rotate tag."""
    raw = stream.metadata.get("rotate") if stream.metadata else None
    if not raw:
        return 0
    try:
        return int(float(raw)) % 360
    except ValueError:
        return 0


def _rotate_array(array: np.ndarray, rotation: int) -> np.ndarray:
    if rotation % 90 != 0 or rotation == 0:
        return array
    # np.rot90 turns counter-clockwise; display rotation is clockwise
    return np.ascontiguousarray(np.rot90(array, k=-(rotation // 90)))


class MediaPreprocessor:
    """Downsamples videos for upload and extracts key frames"""

    def __init__(self, settings: Optional[Settings] = None, temp_dir: Optional[Path] = None):
        cfg = settings or default_settings
        self.target_fps = cfg.ANALYSIS_TARGET_FPS
        self.temp_dir = Path(temp_dir or cfg.TEMP_DIR or tempfile.gettempdir())

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def probe_sync(self, source: Path) -> VideoDescriptor:
        source = Path(source)
        try:
            container = av.open(str(source))
        except Exception as e:
            raise VideoProcessingError(f"Could not open video: {e}") from e

        with container:
            if not container.streams.video:
                raise VideoProcessingError("No video track found")
            stream = container.streams.video[0]

            rate = stream.average_rate or stream.guessed_rate
            fps = float(rate) if rate else 0.0

            if container.duration is not None:
                duration = container.duration / av.time_base
            elif stream.duration and stream.time_base:
                duration = float(stream.duration * stream.time_base)
            else:
                duration = 0.0

            width = stream.codec_context.width
            height = stream.codec_context.height
            if _stream_rotation(stream) in (90, 270):
                width, height = height, width

        return VideoDescriptor(
            path=source,
            duration=duration,
            fps=fps,
            width=width,
            height=height,
            byte_size=source.stat().st_size,
        )

    async def probe(self, source: Path) -> VideoDescriptor:
        """
        Read duration, frame rate, display dimensions and size of a video.

        Raises:
            VideoProcessingError: If the file cannot be opened or has no video track
        """
        return await asyncio.to_thread(self.probe_sync, source)

    # ------------------------------------------------------------------
    # Downsampling
    # ------------------------------------------------------------------

    def _new_temp_path(self) -> Path:
        return self.temp_dir / f"{uuid.uuid4()}.mp4"

    async def downsample(self, source: Path, target_fps: Optional[int] = None) -> TempArtifact:
        """
        Re-encode a video to at most `target_fps` frames per second.

        Args:
            source: Path to the source video
            target_fps: Target frame rate (defaults to ANALYSIS_TARGET_FPS)

        Returns:
            TempArtifact owning the new file, or a non-owned artifact pointing
            at `source` when no re-encoding was needed

        Raises:
            VideoProcessingError: No video track, or the export failed
        """
        source = Path(source)
        target_fps = target_fps or self.target_fps
        descriptor = await self.probe(source)

        if descriptor.fps and descriptor.fps <= target_fps + FPS_TOLERANCE:
            logger.debug(
                f"Video already at {descriptor.fps:.2f} fps, skipping downsample",
                extra={
                    "event_type": "video_downsample_skipped",
                    "source_path": str(source),
                    "native_fps": descriptor.fps,
                    "target_fps": target_fps,
                }
            )
            return TempArtifact(source, owned=False)

        output_path = self._new_temp_path()
        logger.info(
            f"Downsampling video {descriptor.fps:.2f} -> {target_fps} fps",
            extra={
                "event_type": "video_downsample_start",
                "source_path": str(source),
                "target_path": str(output_path),
                "native_fps": descriptor.fps,
                "target_fps": target_fps,
                "source_bytes": descriptor.byte_size,
            }
        )

        encode = asyncio.ensure_future(
            asyncio.to_thread(self._transcode, source, output_path, target_fps)
        )
        try:
            await asyncio.shield(encode)
        except asyncio.CancelledError:
            # The worker thread cannot be interrupted; discard its output when it ends
            encode.add_done_callback(lambda _: self._discard(output_path))
            raise

        record_temp_artifact("created")
        logger.info(
            "Video downsample completed",
            extra={
                "event_type": "video_downsample_success",
                "source_path": str(source),
                "target_path": str(output_path),
                "output_bytes": output_path.stat().st_size,
            }
        )
        return TempArtifact(output_path, owned=True)

    def _discard(self, path: Path) -> None:
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Could not remove partial video {path}: {e}")

    def _transcode(self, source: Path, output_path: Path, target_fps: int) -> None:
        """Blocking re-encode; removes partial output on failure."""
        try:
            self._transcode_unchecked(source, output_path, target_fps)
        except VideoProcessingError:
            self._discard(output_path)
            raise
        except Exception as e:
            self._discard(output_path)
            logger.error(
                f"Video export failed: {e}",
                extra={
                    "event_type": "video_downsample_error",
                    "source_path": str(source),
                    "error_type": type(e).__name__,
                    "error_message": str(e),
                }
            )
            raise VideoProcessingError(f"Export failed: {e}") from e

    def _transcode_unchecked(self, source: Path, output_path: Path, target_fps: int) -> None:
        input_container = av.open(str(source))
        try:
            if not input_container.streams.video:
                raise VideoProcessingError("No video track found")
            input_video = input_container.streams.video[0]
            rotation = _stream_rotation(input_video)

            width = input_video.codec_context.width
            height = input_video.codec_context.height
            if rotation in (90, 270):
                width, height = height, width
            width, height = _even(width), _even(height)

            output_container = av.open(
                str(output_path),
                mode="w",
                format="mp4",
                container_options={"movflags": "+faststart"},
            )
            try:
                encoder = select_video_encoder()
                output_video = output_container.add_stream(encoder, rate=target_fps)
                output_video.width = width
                output_video.height = height
                output_video.pix_fmt = "yuv420p"
                output_video.codec_context.time_base = Fraction(1, target_fps)
                if encoder == "libx264":
                    output_video.options = dict(X264_OPTIONS)

                input_audio = input_container.streams.audio[0] if input_container.streams.audio else None
                output_audio = None
                if input_audio is not None:
                    output_audio = output_container.add_stream("aac", rate=input_audio.rate or 44100)

                frame_interval = 1.0 / target_fps
                native_rate = input_video.average_rate or input_video.guessed_rate
                native_interval = 1.0 / float(native_rate) if native_rate else frame_interval
                kept = 0
                for index, frame in enumerate(input_container.decode(input_video)):
                    timestamp = frame.time if frame.time is not None else index * native_interval
                    # Keep the first frame at or past each output slot
                    if timestamp + native_interval / 2 < kept * frame_interval:
                        continue

                    if rotation:
                        rotated = _rotate_array(frame.to_ndarray(format="rgb24"), rotation)
                        frame = av.VideoFrame.from_ndarray(rotated, format="rgb24")
                    out_frame = frame.reformat(width=width, height=height, format="yuv420p")
                    out_frame.pts = kept
                    out_frame.time_base = Fraction(1, target_fps)
                    for packet in output_video.encode(out_frame):
                        output_container.mux(packet)
                    kept += 1

                if kept == 0:
                    raise VideoProcessingError("No frames decoded")

                for packet in output_video.encode():
                    output_container.mux(packet)

                if input_audio is not None and output_audio is not None:
                    input_container.seek(0)
                    for frame in input_container.decode(input_audio):
                        for packet in output_audio.encode(frame):
                            output_container.mux(packet)
                    for packet in output_audio.encode():
                        output_container.mux(packet)
            finally:
                output_container.close()
        finally:
            input_container.close()

    # ------------------------------------------------------------------
    # Key frames
    # ------------------------------------------------------------------

    def _extract_key_frame_sync(self, source: Path) -> bytes:
        try:
            container = av.open(str(source))
        except Exception as e:
            raise VideoProcessingError(f"Could not open video: {e}") from e

        with container:
            if not container.streams.video:
                raise VideoProcessingError("No video track found")
            stream = container.streams.video[0]
            rotation = _stream_rotation(stream)

            if container.duration is not None:
                midpoint = container.duration / av.time_base / 2
            elif stream.duration and stream.time_base:
                midpoint = float(stream.duration * stream.time_base) / 2
            else:
                midpoint = 0.0

            # Decoding forward is more reliable than seeking for many codecs
            selected = None
            for frame in container.decode(stream):
                selected = frame
                if frame.time is None or frame.time >= midpoint:
                    break

            if selected is None:
                raise VideoProcessingError("No frames decoded")

            array = _rotate_array(selected.to_ndarray(format="rgb24"), rotation)

        image = Image.fromarray(array)
        if max(image.size) > KEY_FRAME_MAX_DIMENSION:
            ratio = KEY_FRAME_MAX_DIMENSION / max(image.size)
            new_size = tuple(int(dim * ratio) for dim in image.size)
            image = image.resize(new_size, Image.Resampling.LANCZOS)

        buffer = io.BytesIO()
        image.save(buffer, format="JPEG", quality=KEY_FRAME_JPEG_QUALITY)
        return buffer.getvalue()

    async def extract_key_frame(self, source: Path) -> bytes:
        """
        Extract the frame at the middle of a video as JPEG bytes.

        Raises:
            VideoProcessingError: If no frame can be decoded
        """
        jpeg_bytes = await asyncio.to_thread(self._extract_key_frame_sync, Path(source))
        logger.debug(
            f"Extracted key frame ({len(jpeg_bytes)} bytes)",
            extra={"event_type": "key_frame_extracted", "source_path": str(source)}
        )
        return jpeg_bytes
