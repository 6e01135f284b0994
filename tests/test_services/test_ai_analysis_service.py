"""Tests for the analysis orchestrator (retry policy, cleanup, routing)"""
import asyncio
import json
import shutil
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from ai_analysis.core.logging_config import get_request_id
from ai_analysis.core.retry import RetryConfig
from ai_analysis.services.ai_analysis_service import AIAnalysisService
from ai_analysis.services.analysis_types import AnalysisOutcome, AnalysisRequest
from ai_analysis.services.connectivity import NetworkPreflight
from ai_analysis.services.error_classifier import (
    DEFAULT_INVALID_CONTENT_TIPS,
    ClassifiedError,
    ErrorKind,
    VideoProcessingError,
)
from ai_analysis.services.lifecycle import AnalysisEventSink
from ai_analysis.services.provider_selection import ProviderSelectionPolicy, ProviderType
from ai_analysis.services.providers import AIProvider
from tests.conftest import FakeProvider, failed, make_jpeg

TIMEOUT = ClassifiedError.for_kind(ErrorKind.TIMEOUT)
NO_NETWORK = ClassifiedError.for_kind(ErrorKind.NETWORK_UNAVAILABLE)
RATE_LIMITED = ClassifiedError.for_kind(ErrorKind.RATE_LIMITED)


def make_service(
    settings,
    preprocessor,
    video_adapter=None,
    image_adapter=None,
    retry_config=None,
    event_sink=None,
    preflight=None,
) -> AIAnalysisService:
    providers = {}
    if video_adapter is not None:
        providers[video_adapter.provider] = video_adapter
    if image_adapter is not None:
        providers[image_adapter.provider] = image_adapter

    policy = ProviderSelectionPolicy(
        providers,
        image_provider=ProviderType(image_adapter.provider.value) if image_adapter else ProviderType.OPENAI,
        video_provider=ProviderType(video_adapter.provider.value) if video_adapter else ProviderType.GEMINI,
    )
    return AIAnalysisService(
        policy,
        preprocessor=preprocessor,
        event_sink=event_sink,
        retry_config=retry_config,
        preflight=preflight,
        settings=settings,
    )


def no_delay_retries(max_retries: int) -> RetryConfig:
    return RetryConfig(max_attempts=max_retries + 1, base_delay=0.0, max_delay=0.0, jitter=False)


class TestRetryPolicy:
    """Bounded, classification-driven retries for video requests"""

    @pytest.mark.asyncio
    async def test_timeout_retried_then_analysis_timeout(self, test_settings, preprocessor, video_10fps):
        adapter = FakeProvider([failed(TIMEOUT)], test_settings)
        service = make_service(test_settings, preprocessor, adapter, retry_config=no_delay_retries(2))

        outcome = await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))

        assert adapter.call_count == 3
        assert outcome.attempts == 3
        assert outcome.error_kind == ErrorKind.ANALYSIS_TIMEOUT
        assert not outcome.error.retry_eligible

    @pytest.mark.asyncio
    async def test_default_single_retry(self, test_settings, preprocessor, video_10fps):
        adapter = FakeProvider([failed(RATE_LIMITED)], test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        outcome = await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))

        assert adapter.call_count == test_settings.MAX_RETRIES + 1
        assert outcome.error_kind == ErrorKind.RATE_LIMITED

    @pytest.mark.asyncio
    async def test_network_unavailable_not_retried(self, test_settings, preprocessor, video_10fps):
        adapter = FakeProvider([failed(NO_NETWORK)], test_settings)
        service = make_service(test_settings, preprocessor, adapter, retry_config=no_delay_retries(3))

        outcome = await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))

        assert adapter.call_count == 1
        assert outcome.attempts == 1
        assert outcome.error_kind == ErrorKind.NETWORK_UNAVAILABLE

    @pytest.mark.asyncio
    async def test_lost_connection_retried(self, test_settings, preprocessor, video_10fps):
        lost = ClassifiedError(
            kind=ErrorKind.NETWORK_UNAVAILABLE,
            message="The network connection was lost.",
            retry_eligible=True,
        )
        adapter = FakeProvider([failed(lost), AnalysisOutcome.ok("ok")], test_settings)
        service = make_service(test_settings, preprocessor, adapter, retry_config=no_delay_retries(1))

        outcome = await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))

        assert outcome.success
        assert adapter.call_count == 2

    @pytest.mark.asyncio
    async def test_success_after_retry(self, test_settings, preprocessor, video_10fps):
        sink = MagicMock(spec=AnalysisEventSink)
        adapter = FakeProvider(
            [failed(TIMEOUT), AnalysisOutcome.ok('{"score": 7}', provider="gemini")],
            test_settings,
        )
        service = make_service(test_settings, preprocessor, adapter, event_sink=sink)

        outcome = await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))

        assert outcome.success
        assert outcome.attempts == 2
        retry_kwargs = sink.retry_scheduled.call_args.kwargs
        assert retry_kwargs["attempt"] == 2
        assert retry_kwargs["error_kind"] == "timeout"
        assert sink.request_succeeded.call_args.kwargs["attempts"] == 2

    @pytest.mark.asyncio
    async def test_retry_delays_follow_schedule(self, test_settings, preprocessor, video_10fps):
        adapter = FakeProvider([failed(TIMEOUT)], test_settings)
        config = RetryConfig(max_attempts=3, base_delay=1.0, max_delay=2.0, jitter=False)
        service = make_service(test_settings, preprocessor, adapter, retry_config=config)

        with patch("ai_analysis.services.ai_analysis_service.asyncio.sleep") as mock_sleep:
            await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))

        assert [call.args[0] for call in mock_sleep.call_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_images_are_single_attempt(self, test_settings, preprocessor):
        adapter = FakeProvider([failed(TIMEOUT, "openai")], test_settings, provider=AIProvider.OPENAI, native_video=False)
        service = make_service(test_settings, preprocessor, image_adapter=adapter, retry_config=no_delay_retries(3))

        outcome = await service.analyze(AnalysisRequest.from_image(make_jpeg(), "prompt"))

        assert adapter.call_count == 1
        assert outcome.error_kind == ErrorKind.TIMEOUT


class TestVideoPreprocessing:
    """Downsampling and temp-file cleanup around provider calls"""

    @pytest.mark.asyncio
    async def test_native_adapter_gets_downsampled_file_once(self, test_settings, preprocessor, video_30fps, temp_dir):
        adapter = FakeProvider([failed(TIMEOUT), AnalysisOutcome.ok("ok")], test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        with patch.object(preprocessor, "downsample", wraps=preprocessor.downsample) as mock_downsample:
            outcome = await service.analyze(AnalysisRequest.single_video(video_30fps, "prompt", target_fps=10))

        assert outcome.success
        assert mock_downsample.call_count == 1

        first, second = adapter.video_calls
        assert first["path"] == second["path"]
        assert first["path"].parent == temp_dir
        assert first["exists"] and second["exists"]
        assert first["target_fps"] == 10

        assert list(temp_dir.iterdir()) == []
        assert video_30fps.exists()

    @pytest.mark.asyncio
    async def test_temp_file_released_on_failure(self, test_settings, preprocessor, video_30fps, temp_dir):
        adapter = FakeProvider([failed(TIMEOUT)], test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        outcome = await service.analyze(AnalysisRequest.single_video(video_30fps, "prompt"))

        assert outcome.error_kind == ErrorKind.ANALYSIS_TIMEOUT
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_fast_path_passes_original(self, test_settings, preprocessor, video_10fps, temp_dir):
        adapter = FakeProvider(settings=test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt", target_fps=10))

        assert adapter.video_calls[0]["path"] == video_10fps
        assert video_10fps.exists()

    @pytest.mark.asyncio
    async def test_key_frame_adapter_gets_original(self, test_settings, preprocessor, video_30fps, temp_dir):
        adapter = FakeProvider(settings=test_settings, provider=AIProvider.OPENAI, native_video=False)
        service = make_service(test_settings, preprocessor, adapter)

        await service.analyze(AnalysisRequest.single_video(video_30fps, "prompt"))

        assert adapter.video_calls[0]["path"] == video_30fps
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_unreadable_video(self, test_settings, preprocessor, tmp_path):
        bogus = tmp_path / "bogus.mp4"
        bogus.write_bytes(b"not a video")
        adapter = FakeProvider(settings=test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        outcome = await service.analyze(AnalysisRequest.single_video(bogus, "prompt"))

        assert outcome.error_kind == ErrorKind.PROCESSING_FAILED
        assert adapter.call_count == 0


class TestBatch:
    """Multi-video requests"""

    @pytest.mark.asyncio
    async def test_videos_sent_in_order(self, test_settings, preprocessor, video_30fps, video_10fps, temp_dir):
        adapter = FakeProvider(settings=test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        outcome = await service.analyze(
            AnalysisRequest.multiple_videos([video_30fps, video_10fps], "Compare", target_fps=10)
        )

        assert outcome.success
        payloads = adapter.batch_calls[0]
        assert len(payloads) == 2
        # First was re-encoded, second went through the fast path untouched
        assert payloads[0].data != video_30fps.read_bytes()
        assert payloads[1].data == video_10fps.read_bytes()
        assert all(p.metadata.fps == 10 for p in payloads)
        assert all(p.mime_type == "video/mp4" for p in payloads)
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_failed_step_releases_sibling_artifacts(self, test_settings, preprocessor, video_30fps, tmp_path, temp_dir):
        second = tmp_path / "second.mp4"
        shutil.copy(video_30fps, second)
        broken = tmp_path / "broken.mp4"
        broken.write_bytes(b"broken")

        original = preprocessor.downsample
        produced = []

        async def flaky_downsample(source, target_fps=None):
            if Path(source) == broken:
                raise VideoProcessingError("Export failed: encoder exploded")
            artifact = await original(source, target_fps)
            produced.append(artifact)
            return artifact

        adapter = FakeProvider(settings=test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        with patch.object(preprocessor, "downsample", new=flaky_downsample):
            outcome = await service.analyze(
                AnalysisRequest.multiple_videos([video_30fps, broken, second], "Compare")
            )

        assert outcome.error_kind == ErrorKind.PROCESSING_FAILED
        assert "encoder exploded" in outcome.error.message
        assert adapter.call_count == 0
        assert len(produced) == 2
        assert all(artifact.released for artifact in produced)
        assert list(temp_dir.iterdir()) == []

    @pytest.mark.asyncio
    async def test_cancel_during_preprocessing_releases_finished_siblings(
        self, test_settings, preprocessor, video_30fps, tmp_path, temp_dir
    ):
        slow = tmp_path / "slow.mp4"
        shutil.copy(video_30fps, slow)

        original = preprocessor.downsample
        produced = []
        first_done = asyncio.Event()

        async def uneven_downsample(source, target_fps=None):
            if Path(source) == slow:
                await asyncio.sleep(30)
            artifact = await original(source, target_fps)
            produced.append(artifact)
            first_done.set()
            return artifact

        adapter = FakeProvider(settings=test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        with patch.object(preprocessor, "downsample", new=uneven_downsample):
            task = asyncio.create_task(
                service.analyze(AnalysisRequest.multiple_videos([video_30fps, slow], "Compare"))
            )
            await first_done.wait()
            assert len(list(temp_dir.iterdir())) == 1

            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        assert len(produced) == 1
        assert produced[0].released
        assert list(temp_dir.iterdir()) == []
        assert adapter.call_count == 0

    @pytest.mark.asyncio
    async def test_batch_needs_batch_capable_adapter(self, test_settings, preprocessor, video_10fps):
        adapter = FakeProvider(settings=test_settings, provider=AIProvider.OPENAI, native_video=False)
        adapter.supports_batch = False
        service = make_service(test_settings, preprocessor, adapter)

        outcome = await service.analyze(AnalysisRequest.multiple_videos([video_10fps, video_10fps], "Compare"))

        assert outcome.error_kind == ErrorKind.PROCESSING_FAILED
        assert "Multi-video analysis not supported" in outcome.error.message

    @pytest.mark.asyncio
    async def test_batch_retried(self, test_settings, preprocessor, video_10fps):
        adapter = FakeProvider([failed(RATE_LIMITED), AnalysisOutcome.ok("ok")], test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        outcome = await service.analyze(AnalysisRequest.multiple_videos([video_10fps, video_10fps], "Compare"))

        assert outcome.success
        assert len(adapter.batch_calls) == 2


class TestValidationAndRouting:
    """Request validation and adapter routing"""

    @pytest.mark.asyncio
    async def test_no_media(self, test_settings, preprocessor):
        adapter = FakeProvider(settings=test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        outcome = await service.analyze(AnalysisRequest(prompt="prompt"))

        assert outcome.error_kind == ErrorKind.PROCESSING_FAILED
        assert outcome.error.message == "No media provided"
        assert outcome.attempts == 1
        assert adapter.call_count == 0

    @pytest.mark.asyncio
    async def test_image_and_video_together_rejected(self, test_settings, preprocessor, video_10fps):
        adapter = FakeProvider(settings=test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        request = AnalysisRequest(prompt="prompt", videos=(video_10fps,), image=make_jpeg())
        outcome = await service.analyze(request)

        assert outcome.error_kind == ErrorKind.PROCESSING_FAILED
        assert adapter.call_count == 0

    @pytest.mark.asyncio
    async def test_unavailable_adapter(self, test_settings, preprocessor, video_10fps):
        adapter = FakeProvider(settings=test_settings, api_key=None)
        service = make_service(test_settings, preprocessor, adapter)

        assert not service.is_available
        outcome = await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))

        assert outcome.error_kind == ErrorKind.PROCESSING_FAILED
        assert "AI service is not available" in outcome.error.message
        assert adapter.call_count == 0

    @pytest.mark.asyncio
    async def test_image_invalid_content(self, test_settings, preprocessor):
        rejection = ClassifiedError.invalid_content("No person visible in the frame")
        adapter = FakeProvider([failed(rejection, "openai")], test_settings, provider=AIProvider.OPENAI)
        service = make_service(test_settings, preprocessor, image_adapter=adapter)

        outcome = await service.analyze(AnalysisRequest.from_image(make_jpeg(), "Rate the pose"))

        assert outcome.error_kind == ErrorKind.INVALID_CONTENT
        assert outcome.error.tips == DEFAULT_INVALID_CONTENT_TIPS
        assert outcome.error.display.message == "No person visible in the frame"
        assert outcome.error.display.action_text == "Record New Video"
        assert adapter.image_calls

    @pytest.mark.asyncio
    async def test_image_and_video_use_separate_adapters(self, test_settings, preprocessor, video_10fps):
        video_adapter = FakeProvider(settings=test_settings)
        image_adapter = FakeProvider(settings=test_settings, provider=AIProvider.OPENAI, native_video=False)
        service = make_service(test_settings, preprocessor, video_adapter, image_adapter)

        await service.analyze(AnalysisRequest.from_image(make_jpeg(), "prompt"))
        await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))

        assert len(image_adapter.image_calls) == 1
        assert len(video_adapter.video_calls) == 1
        assert image_adapter.call_count == 1

    @pytest.mark.asyncio
    async def test_sanitized_json(self, test_settings, preprocessor, video_10fps):
        text = '```json\n{"score": 8, "notes": "steady"}\n```'
        adapter = FakeProvider([AnalysisOutcome.ok(text, provider="gemini")], test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        outcome = await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))

        assert outcome.text == text
        assert json.loads(outcome.sanitized_json()) == {"score": 8, "notes": "steady"}


class TestObservability:
    """Sink notifications, request IDs, preflight and cancellation"""

    @pytest.mark.asyncio
    async def test_failure_notifies_sink(self, test_settings, preprocessor, video_10fps):
        sink = MagicMock(spec=AnalysisEventSink)
        adapter = FakeProvider([failed(TIMEOUT)], test_settings)
        service = make_service(test_settings, preprocessor, adapter, event_sink=sink)

        await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))

        kwargs = sink.request_failed.call_args.kwargs
        assert kwargs["error_kind"] == "analysis_timeout"
        assert kwargs["attempts"] == 2
        sink.request_succeeded.assert_not_called()

    @pytest.mark.asyncio
    async def test_sink_errors_do_not_fail_request(self, test_settings, preprocessor, video_10fps):
        sink = MagicMock(spec=AnalysisEventSink)
        sink.request_succeeded.side_effect = RuntimeError("analytics down")
        adapter = FakeProvider(settings=test_settings)
        service = make_service(test_settings, preprocessor, adapter, event_sink=sink)

        outcome = await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))

        assert outcome.success

    @pytest.mark.asyncio
    async def test_request_id_scoped_to_call(self, test_settings, preprocessor, video_10fps):
        seen = []

        class RecordingProvider(FakeProvider):
            async def analyze_video(self, *args, **kwargs):
                seen.append(get_request_id())
                return await super().analyze_video(*args, **kwargs)

        service = make_service(test_settings, preprocessor, RecordingProvider(settings=test_settings))
        await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))
        await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))

        assert len(seen) == 2
        assert all(seen)
        assert seen[0] != seen[1]
        assert get_request_id() is None

    @pytest.mark.asyncio
    async def test_preflight_for_video_only(self, test_settings, preprocessor, video_10fps):
        preflight = MagicMock(spec=NetworkPreflight)
        video_adapter = FakeProvider(settings=test_settings)
        image_adapter = FakeProvider(settings=test_settings, provider=AIProvider.OPENAI, native_video=False)
        service = make_service(test_settings, preprocessor, video_adapter, image_adapter, preflight=preflight)

        await service.analyze(AnalysisRequest.from_image(make_jpeg(), "prompt"))
        preflight.show_metered_notice_if_needed.assert_not_called()

        await service.analyze(AnalysisRequest.single_video(video_10fps, "prompt"))
        preflight.show_metered_notice_if_needed.assert_called_once()

    @pytest.mark.asyncio
    async def test_cancel_active(self, test_settings, preprocessor, video_10fps):
        started = asyncio.Event()
        release = asyncio.Event()

        class SlowProvider(FakeProvider):
            async def analyze_video(self, *args, **kwargs):
                started.set()
                await release.wait()
                return await super().analyze_video(*args, **kwargs)

        adapter = SlowProvider(settings=test_settings)
        service = make_service(test_settings, preprocessor, adapter)

        with patch.object(adapter, "cancel_active_requests", return_value=1) as mock_cancel:
            task = asyncio.create_task(service.analyze(AnalysisRequest.single_video(video_10fps, "prompt")))
            await started.wait()
            assert service.cancel_active() == 1

            release.set()
            await task
            assert service.cancel_active() == 0
            assert mock_cancel.call_count == 1


class TestConstruction:
    """Settings-driven construction"""

    @pytest.mark.asyncio
    async def test_from_settings(self, test_settings):
        service = AIAnalysisService.from_settings(test_settings)

        assert service.is_available
        assert service.retry_config.max_retries == test_settings.MAX_RETRIES
        info = service.describe()
        assert info["selected"] == {"image": "openai", "video": "gemini"}
        await service.close()
