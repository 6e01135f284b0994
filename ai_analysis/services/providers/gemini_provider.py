"""
Gemini provider: native video analysis over the generateContent REST API.

Videos are downsampled before upload and sent as inline base64 parts up to
MAX_INLINE_BYTES; larger media go through the File API and are referenced
by URI. Several videos can be analyzed together in one call.

Part ordering:
- single media: media part(s) first, prompt text last
- multi-video batch: prompt text first, then videos in request order
"""
import asyncio
import base64
import json
import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import httpx

from ai_analysis.core.config import Settings, settings as default_settings
from ai_analysis.core.retry import RETRY_FILE_UPLOAD, with_retry
from ai_analysis.services.analysis_types import (
    AnalysisOutcome,
    GenerationConfig,
    VideoMetadata,
    VideoPayload,
)
from ai_analysis.services.error_classifier import (
    ProviderAPIError,
    ProviderResponseError,
    VideoProcessingError,
    classify_error,
)
from ai_analysis.services.lifecycle import AnalysisEventSink
from ai_analysis.services.media_preprocessor import MediaPreprocessor, video_mime_type
from ai_analysis.services.providers.base import AIProvider, AIProviderBase

logger = logging.getLogger(__name__)

# Low randomness: these are inspection/scoring tasks
DEFAULT_GENERATION_CONFIG: Dict[str, Any] = {
    "temperature": 0.1,
    "topK": 10,
    "topP": 0.8,
    "maxOutputTokens": 8192,
}


def default_generation_config() -> Dict[str, Any]:
    return dict(DEFAULT_GENERATION_CONFIG)


class GeminiProvider(AIProviderBase):
    """Google Gemini provider with native and multi-video support"""

    provider = AIProvider.GEMINI
    native_video = True
    supports_batch = True

    def __init__(
        self,
        api_key: Optional[str],
        model: Optional[str] = None,
        settings: Optional[Settings] = None,
        preprocessor: Optional[MediaPreprocessor] = None,
        event_sink: Optional[AnalysisEventSink] = None,
    ):
        cfg = settings or default_settings
        super().__init__(api_key, model or cfg.GEMINI_MODEL, cfg, preprocessor, event_sink)
        self.base_url = cfg.GEMINI_BASE_URL.rstrip("/")
        self.max_inline_bytes = cfg.MAX_INLINE_BYTES

        # HTTP client (lazy initialized)
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.video_timeout, connect=10.0),
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    @property
    def generate_url(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    @property
    def upload_url(self) -> str:
        # https://host/v1beta -> https://host/upload/v1beta/files
        base = httpx.URL(self.base_url)
        return str(base.copy_with(path=f"/upload{base.path.rstrip('/')}/files"))

    def _headers(self) -> Dict[str, str]:
        # Key in a header so it never appears in logged URLs
        return {"x-goog-api-key": self.api_key or ""}

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def analyze_video(
        self,
        video_path: Path,
        prompt: str,
        target_fps: Optional[int] = None,
        generation_config: Optional[GenerationConfig] = None,
    ) -> AnalysisOutcome:
        """
        Downsample, upload and analyze one video.

        Any temp file created by downsampling is deleted before returning,
        on success and failure alike.
        """
        if not self.is_available:
            return self._unavailable_outcome()

        fps = target_fps or self.preprocessor.target_fps
        try:
            artifact = await self.preprocessor.downsample(video_path, fps)
        except VideoProcessingError as e:
            return AnalysisOutcome.failed(classify_error(e), provider=self.name)

        try:
            try:
                video_bytes = await asyncio.to_thread(artifact.path.read_bytes)
            except OSError as e:
                return AnalysisOutcome.failed(
                    classify_error(VideoProcessingError(f"Failed to read video file: {e}")),
                    provider=self.name,
                )

            logger.info(
                f"Gemini video analysis starting ({len(video_bytes) / 1024:.0f} KB)",
                extra={
                    "event_type": "video_analysis_start",
                    "provider": self.name,
                    "video_path": str(video_path),
                    "video_bytes": len(video_bytes),
                    "analysis_fps": fps,
                }
            )
            payload = VideoPayload(
                data=video_bytes,
                mime_type="video/mp4" if artifact.owned else video_mime_type(artifact.path),
                metadata=VideoMetadata(fps=fps),
            )
            config = generation_config or default_generation_config()
            return await self._execute(
                "video",
                lambda: self._generate_from_videos([payload], prompt, config, prompt_first=False),
                timeout=self.video_timeout,
            )
        finally:
            artifact.release()

    async def analyze_videos(
        self,
        videos: Sequence[VideoPayload],
        prompt: str,
        generation_config: Optional[GenerationConfig] = None,
    ) -> AnalysisOutcome:
        """
        Analyze several already-preprocessed videos in one call.

        Videos keep their order so per-video metadata lines up with the
        prompt's references to them.
        """
        if not self.is_available:
            return self._unavailable_outcome()

        config = generation_config or default_generation_config()
        return await self._execute(
            "batch",
            lambda: self._generate_from_videos(list(videos), prompt, config, prompt_first=True),
            timeout=self.video_timeout,
            media_count=len(videos),
        )

    async def generate_content(
        self,
        prompt: str,
        generation_config: Optional[GenerationConfig] = None,
    ) -> AnalysisOutcome:
        """Text-only generation (no media)."""
        if not self.is_available:
            return self._unavailable_outcome()

        config = generation_config or default_generation_config()
        return await self._execute(
            "text",
            lambda: self._generate_content([{"text": prompt}], config),
            timeout=self.image_timeout,
            media_count=0,
        )

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _generate_from_image(
        self,
        image_base64: str,
        prompt: str,
        generation_config: Optional[GenerationConfig],
    ) -> str:
        parts = [
            {"inlineData": {"mimeType": "image/jpeg", "data": image_base64}},
            {"text": prompt},
        ]
        return await self._generate_content(parts, generation_config or default_generation_config())

    async def _generate_from_videos(
        self,
        videos: List[VideoPayload],
        prompt: str,
        generation_config: GenerationConfig,
        prompt_first: bool,
    ) -> str:
        # gather() keeps input order even when uploads finish out of order
        video_parts = await asyncio.gather(*[
            self._build_video_part(video, index) for index, video in enumerate(videos)
        ])

        if prompt_first:
            parts = [{"text": prompt}, *video_parts]
        else:
            parts = [*video_parts, {"text": prompt}]
        return await self._generate_content(parts, generation_config)

    async def _build_video_part(self, video: VideoPayload, index: int) -> Dict[str, Any]:
        size_mb = len(video.data) / (1024 * 1024)
        if len(video.data) <= self.max_inline_bytes:
            logger.debug(
                f"Using inline data for video {index + 1} ({size_mb:.1f} MB)",
                extra={"event_type": "gemini_inline_part", "video_index": index}
            )
            part: Dict[str, Any] = {
                "inlineData": {
                    "mimeType": video.mime_type,
                    "data": base64.b64encode(video.data).decode("utf-8"),
                }
            }
        else:
            logger.info(
                f"Uploading large video {index + 1} via File API ({size_mb:.1f} MB)",
                extra={"event_type": "gemini_file_upload_start", "video_index": index}
            )
            file_uri = await self._upload_file(video.data, video.mime_type, f"video_{index + 1}_upload")
            part = {"fileData": {"mimeType": video.mime_type, "fileUri": file_uri}}

        part["videoMetadata"] = video.metadata.to_dict()
        return part

    @with_retry(config=RETRY_FILE_UPLOAD, operation_name="gemini_file_upload")
    async def _upload_file(self, data: bytes, mime_type: str, display_name: str) -> str:
        """
        Upload media through the File API (multipart/related).

        Returns:
            The uploaded file's URI
        """
        boundary = f"Boundary-{uuid.uuid4()}"
        metadata = json.dumps({"file": {"displayName": display_name}}).encode("utf-8")
        body = b"".join([
            f"--{boundary}\r\n".encode(),
            b"Content-Type: application/json\r\n\r\n",
            metadata,
            b"\r\n",
            f"--{boundary}\r\n".encode(),
            f"Content-Type: {mime_type}\r\n\r\n".encode(),
            data,
            b"\r\n",
            f"--{boundary}--\r\n".encode(),
        ])

        client = await self._get_client()
        response = await client.post(
            self.upload_url,
            content=body,
            headers={
                **self._headers(),
                "X-Goog-Upload-Protocol": "multipart",
                "Content-Type": f"multipart/related; boundary={boundary}",
            },
        )

        payload = self._decode_json(response)
        file_uri = (payload.get("file") or {}).get("uri") if isinstance(payload, dict) else None
        if not isinstance(file_uri, str):
            raise ProviderResponseError("File upload response missing file URI")

        logger.info(
            "Gemini File API upload complete",
            extra={"event_type": "gemini_file_upload_success", "bytes": len(data)}
        )
        return file_uri

    async def _generate_content(self, parts: List[Dict[str, Any]], generation_config: GenerationConfig) -> str:
        body: Dict[str, Any] = {"contents": [{"role": "user", "parts": parts}]}
        if generation_config:
            body["generationConfig"] = generation_config

        client = await self._get_client()
        response = await client.post(self.generate_url, json=body, headers=self._headers())
        payload = self._decode_json(response)
        return self._extract_text(payload)

    def _decode_json(self, response: httpx.Response) -> Any:
        """Decode a response body, raising the matching provider error."""
        try:
            payload = response.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict):
            error = payload.get("error")
            if isinstance(error, dict) and isinstance(error.get("message"), str):
                status_code = error.get("code") if isinstance(error.get("code"), int) else response.status_code
                raise ProviderAPIError(error["message"], status_code=status_code)

        if response.status_code >= 400:
            raise ProviderAPIError(f"HTTP {response.status_code}", status_code=response.status_code)
        if payload is None:
            raise ProviderResponseError()
        return payload

    @staticmethod
    def _extract_text(payload: Any) -> str:
        try:
            text = payload["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise ProviderResponseError()
        if not isinstance(text, str):
            raise ProviderResponseError()
        return text
