"""
Request lifecycle tracking and the analytics event sink.

Every analyze() call owns one RequestLifecycle:

    IDLE -> PREPROCESSING -> SUBMITTED -> (RETRYING -> SUBMITTED)* -> SUCCEEDED | FAILED

PREPROCESSING is only entered for video requests. Terminal states are
reached exactly once; the orchestrator releases temp artifacts before it
reports completion.

The event sink is a fire-and-forget observer (analytics, app-wide
notifications). Sink failures are logged and never affect a request.
"""
import logging
from enum import Enum
from typing import List, Optional

from ai_analysis.services.error_classifier import AnalysisError, ErrorKind

logger = logging.getLogger(__name__)


class RequestState(Enum):
    IDLE = "idle"
    PREPROCESSING = "preprocessing"
    SUBMITTED = "submitted"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


ALLOWED_TRANSITIONS = {
    RequestState.IDLE: {RequestState.PREPROCESSING, RequestState.SUBMITTED, RequestState.FAILED},
    RequestState.PREPROCESSING: {RequestState.SUBMITTED, RequestState.FAILED},
    RequestState.SUBMITTED: {RequestState.RETRYING, RequestState.SUCCEEDED, RequestState.FAILED},
    RequestState.RETRYING: {RequestState.SUBMITTED, RequestState.FAILED},
    RequestState.SUCCEEDED: set(),
    RequestState.FAILED: set(),
}

TERMINAL_STATES = {RequestState.SUCCEEDED, RequestState.FAILED}


class InvalidTransitionError(AnalysisError):
    def __init__(self, current: RequestState, target: RequestState):
        super().__init__(f"Invalid request transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class RequestLifecycle:
    """State machine for a single analysis request"""

    def __init__(self, request_id: str):
        self.request_id = request_id
        self.state = RequestState.IDLE
        self.history: List[RequestState] = [RequestState.IDLE]
        self.attempts = 0
        self.failure_kind: Optional[ErrorKind] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def transition(self, target: RequestState) -> None:
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.state, target)

        logger.debug(
            f"Request {self.request_id}: {self.state.value} -> {target.value}",
            extra={
                "event_type": "request_state_change",
                "from_state": self.state.value,
                "to_state": target.value,
            }
        )
        self.state = target
        self.history.append(target)

    def begin_preprocessing(self) -> None:
        self.transition(RequestState.PREPROCESSING)

    def submit(self) -> None:
        self.transition(RequestState.SUBMITTED)
        self.attempts += 1

    def schedule_retry(self) -> None:
        self.transition(RequestState.RETRYING)

    def succeed(self) -> None:
        self.transition(RequestState.SUCCEEDED)

    def fail(self, kind: ErrorKind) -> None:
        self.transition(RequestState.FAILED)
        self.failure_kind = kind


# =============================================================================
# Event sink
# =============================================================================

class AnalysisEventSink:
    """
    Observer notified of request lifecycle events.

    The base class ignores every event; subclasses override what they need.
    """

    def request_sent(self, request_id: str, provider: str, content_type: str, media_count: int) -> None:
        pass

    def uploads_complete(self, request_id: str, provider: str) -> None:
        pass

    def response_received(self, request_id: str, provider: str, elapsed_ms: int) -> None:
        pass

    def retry_scheduled(self, request_id: str, provider: str, attempt: int, delay_seconds: float, error_kind: str) -> None:
        pass

    def request_failed(self, request_id: str, error_kind: str, attempts: int) -> None:
        pass

    def request_succeeded(self, request_id: str, provider: str, attempts: int, elapsed_ms: int) -> None:
        pass


class NullEventSink(AnalysisEventSink):
    """Sink that drops every event"""


class LoggingEventSink(AnalysisEventSink):
    """Sink that writes each event as a structured log line"""

    def __init__(self, level: int = logging.INFO):
        self.level = level

    def _emit(self, event: str, **fields) -> None:
        logger.log(self.level, f"Analysis event: {event}", extra={"event_type": f"analysis_{event}", **fields})

    def request_sent(self, request_id, provider, content_type, media_count):
        self._emit("request_sent", provider=provider, content_type=content_type, media_count=media_count)

    def uploads_complete(self, request_id, provider):
        self._emit("uploads_complete", provider=provider)

    def response_received(self, request_id, provider, elapsed_ms):
        self._emit("response_received", provider=provider, response_time_ms=elapsed_ms)

    def retry_scheduled(self, request_id, provider, attempt, delay_seconds, error_kind):
        self._emit(
            "retry_scheduled",
            provider=provider,
            attempt=attempt,
            delay_seconds=delay_seconds,
            error_kind=error_kind,
        )

    def request_failed(self, request_id, error_kind, attempts):
        self._emit("request_failed", error_kind=error_kind, attempts=attempts)

    def request_succeeded(self, request_id, provider, attempts, elapsed_ms):
        self._emit("request_succeeded", provider=provider, attempts=attempts, response_time_ms=elapsed_ms)


def notify_sink(sink: Optional[AnalysisEventSink], event: str, **fields) -> None:
    """Deliver one event to a sink without letting it fail the caller."""
    if sink is None:
        return
    try:
        getattr(sink, event)(**fields)
    except Exception as e:
        logger.warning(
            f"Event sink failed on {event}: {e}",
            extra={
                "event_type": "event_sink_error",
                "sink_event": event,
                "error_type": type(e).__name__,
            }
        )
