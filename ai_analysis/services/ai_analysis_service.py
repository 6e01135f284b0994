"""
AI analysis orchestrator.

Single entry point for callers: validates the request, picks a provider
adapter, drives video downsampling, applies the retry policy and hands
back an AnalysisOutcome (never raises for provider or media failures).

Flow per request:
    validate -> select adapter -> [downsample] -> submit -> classify
             -> retry (video only, bounded, jittered) -> cleanup -> outcome

Every temp artifact created for a request is released exactly once before
analyze() returns, whichever branch is taken.
"""
import asyncio
import dataclasses
import logging
import time
import uuid
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Set

from ai_analysis.core.config import Settings, settings as default_settings
from ai_analysis.core.logging_config import clear_request_id, set_request_id
from ai_analysis.core.metrics import record_outcome, record_retry
from ai_analysis.core.retry import RetryConfig, calculate_delay, retry_config_from_settings
from ai_analysis.services.analysis_types import (
    AnalysisOutcome,
    AnalysisRequest,
    ContentType,
    TempArtifact,
    VideoMetadata,
    VideoPayload,
)
from ai_analysis.services.connectivity import NetworkPreflight
from ai_analysis.services.error_classifier import (
    ClassifiedError,
    ErrorKind,
    ProviderUnavailableError,
    VideoProcessingError,
    classify_error,
)
from ai_analysis.services.lifecycle import AnalysisEventSink, RequestLifecycle, notify_sink
from ai_analysis.services.media_preprocessor import MediaPreprocessor, video_mime_type
from ai_analysis.services.provider_selection import ProviderSelectionPolicy
from ai_analysis.services.providers import AIProviderBase

logger = logging.getLogger(__name__)


class AIAnalysisService:
    """Request orchestrator over the configured provider adapters"""

    def __init__(
        self,
        policy: ProviderSelectionPolicy,
        preprocessor: Optional[MediaPreprocessor] = None,
        event_sink: Optional[AnalysisEventSink] = None,
        retry_config: Optional[RetryConfig] = None,
        preflight: Optional[NetworkPreflight] = None,
        settings: Optional[Settings] = None,
    ):
        cfg = settings or default_settings
        self.settings = cfg
        self.policy = policy
        self.preprocessor = preprocessor or MediaPreprocessor(cfg)
        self.event_sink = event_sink
        self.retry_config = retry_config or retry_config_from_settings(cfg)
        self.preflight = preflight
        self._in_flight: Set[AIProviderBase] = set()

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        event_sink: Optional[AnalysisEventSink] = None,
        preflight: Optional[NetworkPreflight] = None,
    ) -> "AIAnalysisService":
        """Build the service and all adapters from settings."""
        cfg = settings or default_settings
        preprocessor = MediaPreprocessor(cfg)
        policy = ProviderSelectionPolicy.from_settings(cfg, preprocessor, event_sink)
        return cls(
            policy,
            preprocessor=preprocessor,
            event_sink=event_sink,
            preflight=preflight,
            settings=cfg,
        )

    @property
    def is_available(self) -> bool:
        adapter = self.policy.select(ContentType.VIDEO)
        return adapter is not None and adapter.is_available

    def describe(self):
        return self.policy.describe()

    async def close(self) -> None:
        await self.policy.close()

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def analyze(self, request: AnalysisRequest) -> AnalysisOutcome:
        """
        Run one analysis request end to end.

        Args:
            request: Prompt plus one image or one-or-more videos

        Returns:
            AnalysisOutcome carrying raw model text or a classified error.
            Call outcome.sanitized_json() before decoding structured output.
        """
        request_id = str(uuid.uuid4())
        token = set_request_id(request_id)
        lifecycle = RequestLifecycle(request_id)
        artifacts: List[TempArtifact] = []
        start_time = time.time()

        try:
            logger.info(
                f"Analysis request received ({request.content_type.value}, {request.media_count} media)",
                extra={
                    "event_type": "analysis_request_start",
                    "content_type": request.content_type.value,
                    "media_count": request.media_count,
                }
            )
            try:
                outcome = await self._run(request, lifecycle, artifacts)
            finally:
                self._release_all(artifacts)

            elapsed_ms = int((time.time() - start_time) * 1000)
            outcome = dataclasses.replace(outcome, attempts=max(lifecycle.attempts, 1), elapsed_ms=elapsed_ms)
            self._finish(request, lifecycle, outcome)
            return outcome
        finally:
            clear_request_id(token)

    def cancel_active(self) -> int:
        """
        Cancel in-flight provider calls (best-effort).

        Returns:
            Number of provider calls cancelled
        """
        cancelled = 0
        for adapter in list(self._in_flight):
            cancelled += adapter.cancel_active_requests()
        return cancelled

    # ------------------------------------------------------------------
    # Request flow
    # ------------------------------------------------------------------

    async def _run(
        self,
        request: AnalysisRequest,
        lifecycle: RequestLifecycle,
        artifacts: List[TempArtifact],
    ) -> AnalysisOutcome:
        if request.media_count == 0:
            return self._processing_failed("No media provided")
        if request.videos and request.image is not None:
            return self._processing_failed("A request carries either one image or videos, not both")

        if request.content_type == ContentType.IMAGE:
            return await self._analyze_image(request, lifecycle)

        if self.preflight is not None:
            self.preflight.show_metered_notice_if_needed()

        if request.is_batch:
            return await self._analyze_batch(request, lifecycle, artifacts)
        return await self._analyze_single_video(request, lifecycle, artifacts)

    async def _analyze_image(self, request: AnalysisRequest, lifecycle: RequestLifecycle) -> AnalysisOutcome:
        adapter = self.policy.select(ContentType.IMAGE)
        if adapter is None or not adapter.is_available:
            return self._unavailable("AI service is not available")

        lifecycle.submit()
        return await self._call(
            adapter,
            lambda: adapter.analyze_image(request.image, request.prompt, request.generation_config),
        )

    async def _analyze_single_video(
        self,
        request: AnalysisRequest,
        lifecycle: RequestLifecycle,
        artifacts: List[TempArtifact],
    ) -> AnalysisOutcome:
        adapter = self.policy.select(ContentType.VIDEO)
        if adapter is None or not adapter.is_available:
            return self._unavailable("AI service is not available")

        fps = request.target_fps or self.preprocessor.target_fps
        source = request.videos[0]

        if adapter.native_video:
            # Downsample once so retries never re-encode
            lifecycle.begin_preprocessing()
            try:
                artifact = await self.preprocessor.downsample(source, fps)
            except VideoProcessingError as e:
                return AnalysisOutcome.failed(classify_error(e), provider=adapter.name)
            artifacts.append(artifact)
            source = artifact.path

        return await self._submit_with_retry(
            adapter,
            lifecycle,
            lambda: adapter.analyze_video(source, request.prompt, fps, request.generation_config),
        )

    async def _analyze_batch(
        self,
        request: AnalysisRequest,
        lifecycle: RequestLifecycle,
        artifacts: List[TempArtifact],
    ) -> AnalysisOutcome:
        adapter = self.policy.select_batch()
        if adapter is None or not adapter.is_available:
            return self._unavailable("Multi-video analysis not supported")

        fps = request.target_fps or self.preprocessor.target_fps
        lifecycle.begin_preprocessing()
        logger.info(
            f"Downsampling {len(request.videos)} videos to {fps} fps",
            extra={"event_type": "batch_preprocess_start", "media_count": len(request.videos), "target_fps": fps}
        )

        tasks = [asyncio.ensure_future(self.preprocessor.downsample(video, fps)) for video in request.videos]
        try:
            results = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            # Unfinished siblings discard their own output; finished ones are ours to release
            for task in tasks:
                if task.done() and not task.cancelled() and task.exception() is None:
                    artifacts.append(task.result())
            raise

        # Keep every artifact that was produced so siblings of a failure get released too
        failure: Optional[BaseException] = None
        for result in results:
            if isinstance(result, TempArtifact):
                artifacts.append(result)
            elif failure is None:
                failure = result

        if failure is not None:
            if not isinstance(failure, Exception):
                raise failure
            if not isinstance(failure, VideoProcessingError):
                failure = VideoProcessingError(str(failure))
            logger.error(
                f"Batch preprocessing failed: {failure}",
                extra={"event_type": "batch_preprocess_error", "error_type": type(failure).__name__}
            )
            return AnalysisOutcome.failed(classify_error(failure), provider=adapter.name)

        payloads: List[VideoPayload] = []
        for video, artifact in zip(request.videos, artifacts):
            try:
                data = await asyncio.to_thread(artifact.path.read_bytes)
            except OSError:
                error = VideoProcessingError(f"Failed to read downsampled video file: {Path(video).name}")
                return AnalysisOutcome.failed(classify_error(error), provider=adapter.name)

            payloads.append(VideoPayload(
                data=data,
                mime_type="video/mp4" if artifact.owned else video_mime_type(artifact.path),
                metadata=VideoMetadata(fps=fps),
            ))
            logger.debug(
                f"Video {len(payloads)} ({Path(video).name}): {len(data) // 1024} KB, {fps} FPS",
                extra={"event_type": "batch_video_ready", "video_index": len(payloads) - 1}
            )

        return await self._submit_with_retry(
            adapter,
            lifecycle,
            lambda: adapter.analyze_videos(payloads, request.prompt, request.generation_config),
        )

    async def _submit_with_retry(
        self,
        adapter: AIProviderBase,
        lifecycle: RequestLifecycle,
        call: Callable[[], Awaitable[AnalysisOutcome]],
    ) -> AnalysisOutcome:
        """
        Submit, retrying retry-eligible failures up to max_retries times.

        A timeout that is still failing after the last attempt becomes
        ANALYSIS_TIMEOUT.
        """
        max_retries = self.retry_config.max_retries
        retries = 0

        while True:
            lifecycle.submit()
            outcome = await self._call(adapter, call)
            if outcome.success:
                return outcome

            error = outcome.error
            if error.retry_eligible and retries < max_retries:
                delay = calculate_delay(retries, self.retry_config)
                retries += 1
                lifecycle.schedule_retry()
                record_retry(adapter.name, error.kind.value)
                notify_sink(
                    self.event_sink, "retry_scheduled",
                    request_id=lifecycle.request_id,
                    provider=adapter.name,
                    attempt=lifecycle.attempts + 1,
                    delay_seconds=delay,
                    error_kind=error.kind.value,
                )
                logger.warning(
                    f"Analysis failed ({error.kind.value}), retrying in {delay:.1f}s "
                    f"(retry {retries}/{max_retries})",
                    extra={
                        "event_type": "analysis_retry",
                        "provider": adapter.name,
                        "attempt": lifecycle.attempts,
                        "delay_seconds": delay,
                        "error_kind": error.kind.value,
                    }
                )
                await asyncio.sleep(delay)
                continue

            if error.kind == ErrorKind.TIMEOUT:
                return dataclasses.replace(
                    outcome, error=ClassifiedError.for_kind(ErrorKind.ANALYSIS_TIMEOUT)
                )
            return outcome

    async def _call(
        self,
        adapter: AIProviderBase,
        call: Callable[[], Awaitable[AnalysisOutcome]],
    ) -> AnalysisOutcome:
        self._in_flight.add(adapter)
        try:
            return await call()
        finally:
            self._in_flight.discard(adapter)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    def _release_all(self, artifacts: List[TempArtifact]) -> None:
        released = sum(1 for artifact in artifacts if artifact.release())
        if released:
            logger.debug(
                f"Released {released} temp video(s)",
                extra={"event_type": "temp_artifacts_released", "count": released}
            )

    def _finish(self, request: AnalysisRequest, lifecycle: RequestLifecycle, outcome: AnalysisOutcome) -> None:
        content_type = request.content_type.value

        if outcome.success:
            lifecycle.succeed()
            record_outcome(content_type, "success")
            notify_sink(
                self.event_sink, "request_succeeded",
                request_id=lifecycle.request_id,
                provider=outcome.provider,
                attempts=outcome.attempts,
                elapsed_ms=outcome.elapsed_ms,
            )
            logger.info(
                "Analysis request succeeded",
                extra={
                    "event_type": "analysis_request_success",
                    "provider": outcome.provider,
                    "attempts": outcome.attempts,
                    "response_time_ms": outcome.elapsed_ms,
                }
            )
            return

        kind = outcome.error_kind
        lifecycle.fail(kind)
        record_outcome(content_type, kind.value)
        notify_sink(
            self.event_sink, "request_failed",
            request_id=lifecycle.request_id,
            error_kind=kind.value,
            attempts=outcome.attempts,
        )
        logger.error(
            f"Analysis request failed: {outcome.error}",
            extra={
                "event_type": "analysis_request_failed",
                "provider": outcome.provider,
                "attempts": outcome.attempts,
                "error_kind": kind.value,
                "response_time_ms": outcome.elapsed_ms,
            }
        )

    @staticmethod
    def _processing_failed(message: str) -> AnalysisOutcome:
        return AnalysisOutcome.failed(ClassifiedError.for_kind(ErrorKind.PROCESSING_FAILED, message))

    @staticmethod
    def _unavailable(message: str) -> AnalysisOutcome:
        return AnalysisOutcome.failed(classify_error(ProviderUnavailableError(message)))
