"""Pytest fixtures and configuration for the test suite

This module provides:
1. Settings with test credentials and an isolated temp directory
2. make_video(): writes a small real MP4 clip with PyAV
3. FakeProvider: scriptable adapter for orchestrator tests
"""
import io
from fractions import Fraction
from pathlib import Path
from typing import List, Optional

import av
import numpy as np
import pytest
from PIL import Image

from ai_analysis.core.config import Settings
from ai_analysis.services.analysis_types import AnalysisOutcome, VideoPayload
from ai_analysis.services.error_classifier import ClassifiedError
from ai_analysis.services.media_preprocessor import MediaPreprocessor
from ai_analysis.services.providers.base import AIProvider, AIProviderBase


# =============================================================================
# Factory Functions
# =============================================================================

def make_video(
    path: Path,
    fps: int = 30,
    frame_count: int = 30,
    width: int = 64,
    height: int = 48,
) -> Path:
    """
    Write a short MPEG-4 clip of solid-colour frames.

    Each frame has a different brightness so decoded frames are
    distinguishable.
    """
    path = Path(path)
    container = av.open(str(path), mode="w")
    stream = container.add_stream("mpeg4", rate=fps)
    stream.width = width
    stream.height = height
    stream.pix_fmt = "yuv420p"
    stream.codec_context.time_base = Fraction(1, fps)

    for index in range(frame_count):
        level = int(255 * index / max(frame_count - 1, 1))
        array = np.full((height, width, 3), level, dtype=np.uint8)
        frame = av.VideoFrame.from_ndarray(array, format="rgb24")
        frame.pts = index
        frame.time_base = Fraction(1, fps)
        for packet in stream.encode(frame):
            container.mux(packet)

    for packet in stream.encode():
        container.mux(packet)
    container.close()
    return path


def make_jpeg(width: int = 320, height: int = 240, color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="JPEG")
    return buffer.getvalue()


class FakeProvider(AIProviderBase):
    """
    Adapter returning scripted outcomes, recording what it was given.

    `outcomes` is consumed one per call; the last one repeats.
    """

    provider = AIProvider.GEMINI
    native_video = True
    supports_batch = True

    def __init__(
        self,
        outcomes: Optional[List[AnalysisOutcome]] = None,
        settings: Optional[Settings] = None,
        api_key: Optional[str] = "fake-key",
        native_video: bool = True,
        provider: AIProvider = AIProvider.GEMINI,
    ):
        self.provider = provider
        self.native_video = native_video
        super().__init__(api_key, "fake-model", settings or Settings())
        self.outcomes = list(outcomes or [AnalysisOutcome.ok('{"ok": true}', provider=provider.value)])
        self.video_calls: List[dict] = []
        self.batch_calls: List[List[VideoPayload]] = []
        self.image_calls: List[bytes] = []

    def _next(self) -> AnalysisOutcome:
        if len(self.outcomes) > 1:
            return self.outcomes.pop(0)
        return self.outcomes[0]

    @property
    def call_count(self) -> int:
        return len(self.video_calls) + len(self.batch_calls) + len(self.image_calls)

    async def _generate_from_image(self, image_base64, prompt, generation_config):
        return "unused"

    async def analyze_image(self, image_bytes, prompt, generation_config=None):
        self.image_calls.append(image_bytes)
        return self._next()

    async def analyze_video(self, video_path, prompt, target_fps=None, generation_config=None):
        self.video_calls.append({
            "path": Path(video_path),
            "exists": Path(video_path).exists(),
            "target_fps": target_fps,
        })
        return self._next()

    async def analyze_videos(self, videos, prompt, generation_config=None):
        self.batch_calls.append(list(videos))
        return self._next()


def failed(kind_error: ClassifiedError, provider: str = "gemini") -> AnalysisOutcome:
    return AnalysisOutcome.failed(kind_error, provider=provider)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def test_settings(tmp_path) -> Settings:
    """Settings with fake credentials and temp files under tmp_path"""
    temp_dir = tmp_path / "analysis-tmp"
    temp_dir.mkdir()
    return Settings(
        GEMINI_API_KEY="test-gemini-key",
        OPENAI_API_KEY="sk-test-openai-key",
        ANTHROPIC_API_KEY="sk-ant-test-key",
        TEMP_DIR=str(temp_dir),
        RETRY_BASE_DELAY=0.0,
        RETRY_MAX_DELAY=0.0,
        RETRY_JITTER_SECONDS=0.0,
    )


@pytest.fixture
def temp_dir(test_settings) -> Path:
    return Path(test_settings.TEMP_DIR)


@pytest.fixture
def preprocessor(test_settings) -> MediaPreprocessor:
    return MediaPreprocessor(test_settings)


@pytest.fixture
def video_30fps(tmp_path) -> Path:
    """One-second 30 fps clip (needs downsampling to 10 fps)"""
    return make_video(tmp_path / "clip_30fps.mp4", fps=30, frame_count=30)


@pytest.fixture
def video_10fps(tmp_path) -> Path:
    """One-second 10 fps clip (already at the target rate)"""
    return make_video(tmp_path / "clip_10fps.mp4", fps=10, frame_count=10)


@pytest.fixture
def sample_jpeg() -> bytes:
    return make_jpeg()
