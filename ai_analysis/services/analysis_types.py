"""
Value types shared by the analysis orchestrator and provider adapters.

AnalysisRequest is what callers submit; AnalysisOutcome is what every
adapter and the orchestrator hand back (never an exception).
"""
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ai_analysis.core.metrics import record_temp_artifact
from ai_analysis.services.error_classifier import ClassifiedError, ErrorKind
from ai_analysis.services.response_sanitizer import sanitize

logger = logging.getLogger(__name__)

# Open map of provider tuning keys (temperature, token limits, mime hints, schemas)
GenerationConfig = Dict[str, Any]

DEFAULT_METADATA_FPS = 10
MAX_METADATA_FPS = 24


class ContentType(Enum):
    """Kind of media carried by a request"""
    IMAGE = "image"
    VIDEO = "video"


@dataclass(frozen=True)
class AnalysisRequest:
    """Immutable analysis request: prompt plus one image or one-or-more videos"""
    prompt: str
    videos: Tuple[Path, ...] = ()
    image: Optional[bytes] = None
    target_fps: Optional[int] = None
    generation_config: Optional[GenerationConfig] = None

    @classmethod
    def single_video(
        cls,
        video: Path,
        prompt: str,
        target_fps: Optional[int] = None,
        generation_config: Optional[GenerationConfig] = None,
    ) -> "AnalysisRequest":
        return cls(
            prompt=prompt,
            videos=(Path(video),),
            target_fps=target_fps,
            generation_config=generation_config,
        )

    @classmethod
    def multiple_videos(
        cls,
        videos,
        prompt: str,
        target_fps: Optional[int] = None,
        generation_config: Optional[GenerationConfig] = None,
    ) -> "AnalysisRequest":
        return cls(
            prompt=prompt,
            videos=tuple(Path(v) for v in videos),
            target_fps=target_fps,
            generation_config=generation_config,
        )

    @classmethod
    def from_image(
        cls,
        image: bytes,
        prompt: str,
        generation_config: Optional[GenerationConfig] = None,
    ) -> "AnalysisRequest":
        return cls(prompt=prompt, image=image, generation_config=generation_config)

    @property
    def media_count(self) -> int:
        return len(self.videos) + (1 if self.image else 0)

    @property
    def content_type(self) -> ContentType:
        return ContentType.VIDEO if self.videos else ContentType.IMAGE

    @property
    def is_batch(self) -> bool:
        return len(self.videos) > 1


@dataclass(frozen=True)
class VideoDescriptor:
    """Metadata derived once from a source video"""
    path: Path
    duration: float  # seconds
    fps: float
    width: int
    height: int
    byte_size: int

    @property
    def is_landscape(self) -> bool:
        return self.width > self.height

    def to_dict(self) -> Dict[str, Any]:
        return {
            "duration": self.duration,
            "fps": self.fps,
            "width": self.width,
            "height": self.height,
            "fileSize": self.byte_size,
            "isLandscape": self.is_landscape,
        }


@dataclass(frozen=True)
class VideoMetadata:
    """Per-video hints forwarded to a video-native provider"""
    fps: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        fps = self.fps if self.fps else DEFAULT_METADATA_FPS
        return {"fps": min(fps, MAX_METADATA_FPS)}


@dataclass(frozen=True)
class VideoPayload:
    """Encoded bytes of one video in a batch, in request order"""
    data: bytes
    mime_type: str = "video/mp4"
    metadata: VideoMetadata = field(default_factory=VideoMetadata)


@dataclass(frozen=True)
class ProviderCapability:
    """Static facts about one provider adapter"""
    name: str
    available: bool
    native_video: bool
    supports_batch: bool = False


@dataclass(frozen=True)
class AnalysisOutcome:
    """Raw model text on success, or a classified error"""
    text: Optional[str] = None
    error: Optional[ClassifiedError] = None
    provider: Optional[str] = None
    attempts: int = 1
    elapsed_ms: int = 0

    @property
    def success(self) -> bool:
        return self.error is None and self.text is not None

    @property
    def error_kind(self) -> Optional[ErrorKind]:
        return self.error.kind if self.error else None

    @classmethod
    def ok(cls, text: str, provider: Optional[str] = None, elapsed_ms: int = 0) -> "AnalysisOutcome":
        return cls(text=text, provider=provider, elapsed_ms=elapsed_ms)

    @classmethod
    def failed(cls, error: ClassifiedError, provider: Optional[str] = None, elapsed_ms: int = 0) -> "AnalysisOutcome":
        return cls(error=error, provider=provider, elapsed_ms=elapsed_ms)

    def sanitized_json(self) -> Optional[str]:
        """Sanitized text for JSON decoding, or None on failure outcomes."""
        if not self.success:
            return None
        return sanitize(self.text)


class TempArtifact:
    """
    Handle to a video produced by downsampling.

    When `owned` is False the handle points at the caller's original file
    (fast path) and release() never touches it. Owned files are deleted at
    most once no matter how many times release() is called.
    """

    def __init__(self, path: Path, owned: bool):
        self.path = Path(path)
        self.owned = owned
        self._released = False

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> bool:
        """
        Delete the file if this artifact owns it.

        Returns:
            True if a file was deleted by this call
        """
        if self._released or not self.owned:
            self._released = True
            return False

        self._released = True
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        except OSError as e:
            logger.warning(
                f"Failed to delete temp video {self.path}: {e}",
                extra={
                    "event_type": "temp_artifact_cleanup_error",
                    "path": str(self.path),
                    "error_type": type(e).__name__,
                }
            )
            return False

        record_temp_artifact("deleted")
        logger.debug(
            "Deleted temp video",
            extra={"event_type": "temp_artifact_deleted", "path": str(self.path)}
        )
        return True

    def __repr__(self) -> str:
        return f"TempArtifact(path={str(self.path)!r}, owned={self.owned})"
