"""
Provider adapter contract shared by all AI backends.

Every adapter exposes analyze_image(), analyze_video() and is_available,
and never raises: transport errors are classified into an AnalysisOutcome.
Adapters without native video support analyze the middle frame of the
clip instead (a documented capability gap, not a silent failure).
"""
import asyncio
import base64
import io
import logging
import time
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from PIL import Image

from ai_analysis.core.config import Settings, settings as default_settings
from ai_analysis.core.logging_config import get_request_id, sanitize_log_value
from ai_analysis.core.metrics import record_ai_api_call
from ai_analysis.services.analysis_types import (
    AnalysisOutcome,
    GenerationConfig,
    ProviderCapability,
)
from ai_analysis.services.circuit_breaker import OPEN_CIRCUIT_MESSAGE, RequestCircuitBreaker
from ai_analysis.services.error_classifier import (
    AnalysisTimeoutError,
    ClassifiedError,
    ErrorKind,
    ProviderUnavailableError,
    VideoProcessingError,
    classify_error,
)
from ai_analysis.services.lifecycle import AnalysisEventSink, notify_sink
from ai_analysis.services.media_preprocessor import MediaPreprocessor

logger = logging.getLogger(__name__)

MAX_IMAGE_DIMENSION = 2048
IMAGE_JPEG_QUALITY = 85
IMAGE_FALLBACK_JPEG_QUALITY = 70
MAX_IMAGE_MB = 5


class AIProvider(Enum):
    """Supported AI providers"""
    OPENAI = "openai"
    GEMINI = "gemini"
    CLAUDE = "claude"


def encode_image_for_upload(image_bytes: bytes) -> str:
    """
    Prepare raw image bytes for AI API transmission.

    - Resize to max 2048x2048
    - Convert to JPEG (85% quality)
    - Re-encode at 70% if still over 5MB
    - Base64 encode

    Args:
        image_bytes: Raw image bytes (JPEG, PNG, ...)

    Returns:
        Base64-encoded JPEG string
    """
    image = Image.open(io.BytesIO(image_bytes))

    if max(image.size) > MAX_IMAGE_DIMENSION:
        ratio = MAX_IMAGE_DIMENSION / max(image.size)
        new_size = tuple(int(dim * ratio) for dim in image.size)
        image = image.resize(new_size, Image.Resampling.LANCZOS)
        logger.debug(f"Resized image to {new_size}", extra={"new_size": new_size})

    buffer = io.BytesIO()
    image.convert('RGB').save(buffer, format='JPEG', quality=IMAGE_JPEG_QUALITY)
    jpeg_bytes = buffer.getvalue()

    size_mb = len(jpeg_bytes) / (1024 * 1024)
    if size_mb > MAX_IMAGE_MB:
        buffer = io.BytesIO()
        image.convert('RGB').save(buffer, format='JPEG', quality=IMAGE_FALLBACK_JPEG_QUALITY)
        jpeg_bytes = buffer.getvalue()
        logger.warning(
            f"Image too large ({size_mb:.2f}MB), re-encoded at {IMAGE_FALLBACK_JPEG_QUALITY}% quality",
            extra={"original_size_mb": size_mb}
        )

    return base64.b64encode(jpeg_bytes).decode('utf-8')


def enhance_prompt_with_schema(prompt: str, schema: Optional[Dict[str, Any]]) -> str:
    """
    Append a plain-text description of a JSON schema to a prompt.

    Used for backends without strict schema enforcement. Only properties
    that declare both a type and a description are listed.
    """
    if not isinstance(schema, dict) or not isinstance(schema.get("properties"), dict):
        return prompt

    lines = ["\n\nIMPORTANT: You must respond with valid JSON in this exact format:\n{\n"]
    for key, details in schema["properties"].items():
        if not isinstance(details, dict):
            continue
        description = details.get("description")
        field_type = details.get("type")
        if isinstance(description, str) and isinstance(field_type, str):
            lines.append(f'  "{key}": {field_type} // {description}\n')
    lines.append(
        "}\n\nDo not include any markdown formatting or code blocks. "
        "Return only the raw JSON object."
    )
    return prompt + "".join(lines)


class AIProviderBase(ABC):
    """Base class for AI provider adapters"""

    provider: AIProvider
    native_video: bool = False
    supports_batch: bool = False

    def __init__(
        self,
        api_key: Optional[str],
        model: str,
        settings: Optional[Settings] = None,
        preprocessor: Optional[MediaPreprocessor] = None,
        event_sink: Optional[AnalysisEventSink] = None,
    ):
        cfg = settings or default_settings
        self.api_key = api_key
        self.model = model
        self.settings = cfg
        self.preprocessor = preprocessor or MediaPreprocessor(cfg)
        self.event_sink = event_sink
        self.image_timeout = cfg.IMAGE_REQUEST_TIMEOUT
        self.video_timeout = cfg.VIDEO_REQUEST_TIMEOUT
        self.circuit_breaker = RequestCircuitBreaker(
            name=self.provider.value,
            failure_threshold=cfg.CIRCUIT_FAILURE_THRESHOLD,
            recovery_timeout=cfg.CIRCUIT_RECOVERY_SECONDS,
        )
        self._active_tasks: Set[asyncio.Task] = set()

    @property
    def name(self) -> str:
        return self.provider.value

    @property
    def is_available(self) -> bool:
        return bool(self.api_key)

    @property
    def capability(self) -> ProviderCapability:
        return ProviderCapability(
            name=self.name,
            available=self.is_available,
            native_video=self.native_video,
            supports_batch=self.supports_batch,
        )

    # ------------------------------------------------------------------
    # Transport hooks
    # ------------------------------------------------------------------

    @abstractmethod
    async def _generate_from_image(
        self,
        image_base64: str,
        prompt: str,
        generation_config: Optional[GenerationConfig],
    ) -> str:
        """Send one JPEG image and return the raw model text; raise on failure."""
        pass

    async def close(self) -> None:
        """Release transport resources."""

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def analyze_image(
        self,
        image_bytes: bytes,
        prompt: str,
        generation_config: Optional[GenerationConfig] = None,
    ) -> AnalysisOutcome:
        """Analyze a single image; never raises."""
        if not self.is_available:
            return self._unavailable_outcome()

        try:
            image_base64 = await asyncio.to_thread(encode_image_for_upload, image_bytes)
        except Exception as e:
            logger.error(
                f"Image preparation failed: {e}",
                extra={"event_type": "image_prepare_error", "provider": self.name, "error_type": type(e).__name__}
            )
            return AnalysisOutcome.failed(
                classify_error(VideoProcessingError(f"Invalid image data: {e}")),
                provider=self.name,
            )

        return await self._execute(
            "image",
            lambda: self._generate_from_image(image_base64, prompt, generation_config),
            timeout=self.image_timeout,
        )

    async def analyze_video(
        self,
        video_path: Path,
        prompt: str,
        target_fps: Optional[int] = None,
        generation_config: Optional[GenerationConfig] = None,
    ) -> AnalysisOutcome:
        """
        Analyze a video; never raises.

        Image-only adapters send the middle frame of the clip. Callers that
        need motion across frames should use a video-native adapter.
        """
        if not self.is_available:
            return self._unavailable_outcome()

        logger.warning(
            f"{self.name} has no native video support, analyzing key frame only",
            extra={"event_type": "video_key_frame_fallback", "provider": self.name, "video_path": str(video_path)}
        )
        try:
            frame_bytes = await self.preprocessor.extract_key_frame(video_path)
        except VideoProcessingError as e:
            return AnalysisOutcome.failed(classify_error(e), provider=self.name)

        return await self.analyze_image(frame_bytes, prompt, generation_config)

    def cancel_active_requests(self) -> int:
        """
        Cancel in-flight calls of this adapter (best-effort).

        The provider may still finish the work server-side.

        Returns:
            Number of calls cancelled
        """
        cancelled = 0
        for task in list(self._active_tasks):
            if not task.done():
                task.cancel()
                cancelled += 1
        if cancelled:
            logger.info(
                f"Cancelled {cancelled} active {self.name} request(s)",
                extra={"event_type": "ai_request_cancelled", "provider": self.name, "count": cancelled}
            )
        return cancelled

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _unavailable_outcome(self) -> AnalysisOutcome:
        error = ProviderUnavailableError(f"{self.name} API key not available")
        return AnalysisOutcome.failed(classify_error(error), provider=self.name)

    async def _execute(
        self,
        operation: str,
        call: Callable[[], Awaitable[str]],
        timeout: float,
        media_count: int = 1,
    ) -> AnalysisOutcome:
        """
        Run one provider call under the circuit breaker and a timeout.

        Args:
            operation: Label for logs (image, video, batch, text)
            call: Factory producing the transport coroutine
            timeout: Upper bound in seconds
            media_count: Number of media items carried by the call

        Returns:
            AnalysisOutcome with raw text or a classified error
        """
        request_id = get_request_id() or "-"

        if not self.circuit_breaker.allow_request():
            logger.warning(
                f"Circuit breaker open for {self.name}, request blocked ({self.circuit_breaker.status})",
                extra={"event_type": "ai_api_blocked", "provider": self.name}
            )
            return AnalysisOutcome.failed(
                ClassifiedError(kind=ErrorKind.SERVER_OVERLOADED, message=OPEN_CIRCUIT_MESSAGE),
                provider=self.name,
            )

        start_time = time.time()
        notify_sink(
            self.event_sink, "request_sent",
            request_id=request_id, provider=self.name, content_type=operation, media_count=media_count,
        )

        task = asyncio.ensure_future(asyncio.wait_for(call(), timeout=timeout))
        self._active_tasks.add(task)
        try:
            text = await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                raise
            elapsed_ms = int((time.time() - start_time) * 1000)
            logger.info(
                "AI API call cancelled",
                extra={"event_type": "ai_api_cancelled", "provider": self.name, "operation": operation}
            )
            return AnalysisOutcome.failed(
                ClassifiedError.unknown("Request cancelled"), provider=self.name, elapsed_ms=elapsed_ms
            )
        except Exception as e:
            if isinstance(e, TimeoutError):
                e = AnalysisTimeoutError(f"Request timed out after {timeout:.0f}s")
            elapsed_ms = int((time.time() - start_time) * 1000)
            classified = classify_error(e)
            if classified.kind != ErrorKind.INVALID_CONTENT:
                self.circuit_breaker.record_failure()

            logger.error(
                "AI API call failed",
                extra={
                    "event_type": "ai_api_error",
                    "provider": self.name,
                    "model": self.model,
                    "operation": operation,
                    "response_time_ms": elapsed_ms,
                    "error_type": type(e).__name__,
                    "error_message": sanitize_log_value(str(e)),
                    "error_kind": classified.kind.value,
                    "retry_eligible": classified.retry_eligible,
                }
            )
            record_ai_api_call(self.name, self.model, "error", elapsed_ms / 1000)
            return AnalysisOutcome.failed(classified, provider=self.name, elapsed_ms=elapsed_ms)
        finally:
            self._active_tasks.discard(task)

        elapsed_ms = int((time.time() - start_time) * 1000)
        self.circuit_breaker.record_success()
        notify_sink(self.event_sink, "uploads_complete", request_id=request_id, provider=self.name)
        notify_sink(
            self.event_sink, "response_received",
            request_id=request_id, provider=self.name, elapsed_ms=elapsed_ms,
        )
        logger.info(
            "AI API call successful",
            extra={
                "event_type": "ai_api_success",
                "provider": self.name,
                "model": self.model,
                "operation": operation,
                "response_time_ms": elapsed_ms,
                "response_length": len(text),
            }
        )
        record_ai_api_call(self.name, self.model, "success", elapsed_ms / 1000)
        return AnalysisOutcome.ok(text, provider=self.name, elapsed_ms=elapsed_ms)
