"""
Error taxonomy and classification for AI analysis failures.

Maps raw exceptions from provider SDKs, HTTP transports and media
processing into a closed set of ErrorKind values plus a retry verdict.
Each kind carries a fixed display bundle so the UI layer never has to
interpret raw error strings.

Classification relies on substring heuristics over lower-cased error
messages for anything that is not one of our own typed exceptions. This is
fragile (SDK wording can change) but it is the observable contract callers
and tests rely on; structured error codes from providers would be the
stronger design.
"""
import errno
import logging
import socket
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Tuple

import httpx

logger = logging.getLogger(__name__)


class ErrorKind(Enum):
    """Closed set of analysis failure kinds"""
    NETWORK_UNAVAILABLE = "network_unavailable"
    TIMEOUT = "timeout"
    ANALYSIS_TIMEOUT = "analysis_timeout"  # timeout that survived all retries
    RATE_LIMITED = "rate_limited"
    SERVER_OVERLOADED = "server_overloaded"
    INVALID_CONTENT = "invalid_content"
    PROCESSING_FAILED = "processing_failed"
    UNKNOWN = "unknown"


# =============================================================================
# Internal exceptions
# =============================================================================

class AnalysisError(Exception):
    """Base class for errors raised inside the analysis layer"""


class ProviderUnavailableError(AnalysisError):
    def __init__(self, message: str):
        super().__init__(f"AI Provider unavailable: {message}")


class VideoProcessingError(AnalysisError):
    def __init__(self, message: str):
        super().__init__(f"Video processing failed: {message}")


class AnalysisTimeoutError(AnalysisError):
    def __init__(self, message: str = "AI analysis timed out"):
        super().__init__(message)


class ProviderResponseError(AnalysisError):
    """Provider answered but the payload had no usable text"""

    def __init__(self, message: str = "Invalid response from AI provider"):
        super().__init__(message)


class ProviderAPIError(AnalysisError):
    """Provider returned an explicit error message or HTTP error status"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class NetworkUnavailableError(AnalysisError):
    def __init__(self, message: str = "No network connection"):
        super().__init__(message)


class InvalidContentError(AnalysisError):
    """Media was rejected on content grounds (not a transport failure)"""

    def __init__(self, message: str, tips: Tuple[str, ...] = ()):
        super().__init__(message)
        self.message = message
        self.tips = tuple(tips)


# =============================================================================
# Display bundles
# =============================================================================

@dataclass(frozen=True)
class ErrorDisplay:
    """User-facing copy for one error kind"""
    icon: str
    title: str
    message: str
    suggestion: str
    tips: Tuple[str, ...] = ()
    action_text: str = "Try Again"


NETWORK_TIPS = (
    "Check your Wi-Fi or cellular connection",
    "Try moving closer to your router",
    "Disable VPN if enabled",
)

DEFAULT_INVALID_CONTENT_TIPS = (
    "Ensure the full motion is visible",
    "Use good lighting and keep camera steady",
)

_DISPLAY_BUNDLES = {
    ErrorKind.SERVER_OVERLOADED: ErrorDisplay(
        icon="server.rack",
        title="Server Busy",
        message="The AI service is experiencing high demand. This usually resolves within a few minutes.",
        suggestion="Try again in a minute or two",
    ),
    ErrorKind.RATE_LIMITED: ErrorDisplay(
        icon="clock.badge.exclamationmark",
        title="Too Many Requests",
        message="You've made too many requests. Please wait a moment before trying again.",
        suggestion="Wait 30 seconds before retrying",
    ),
    ErrorKind.NETWORK_UNAVAILABLE: ErrorDisplay(
        icon="wifi.exclamationmark",
        title="No Connection",
        message="Unable to connect. Please check your internet connection.",
        suggestion="Check Wi-Fi or cellular connection",
        tips=NETWORK_TIPS,
    ),
    ErrorKind.TIMEOUT: ErrorDisplay(
        icon="hourglass",
        title="Request Timeout",
        message="The request took too long to complete. Please try again.",
        suggestion="Try with a smaller file or better connection",
    ),
    ErrorKind.ANALYSIS_TIMEOUT: ErrorDisplay(
        icon="hourglass",
        title="Analysis Timed Out",
        message="The analysis took too long to complete.",
        suggestion="Try a shorter video or a faster connection",
    ),
    ErrorKind.PROCESSING_FAILED: ErrorDisplay(
        icon="exclamationmark.triangle",
        title="Processing Failed",
        message="We couldn't process your request. Please try again.",
        suggestion="Try recording a new video",
    ),
    ErrorKind.INVALID_CONTENT: ErrorDisplay(
        icon="video.slash",
        title="Invalid Video",
        message="",
        suggestion="Record a new video that shows the full motion",
        action_text="Record New Video",
    ),
    ErrorKind.UNKNOWN: ErrorDisplay(
        icon="exclamationmark.circle",
        title="Something Went Wrong",
        message="",
        suggestion="Try again or contact support",
    ),
}

# Retry verdict used when an error is built from a kind rather than classified
_DEFAULT_RETRY_ELIGIBLE = {
    ErrorKind.NETWORK_UNAVAILABLE: False,
    ErrorKind.TIMEOUT: True,
    ErrorKind.ANALYSIS_TIMEOUT: False,
    ErrorKind.RATE_LIMITED: True,
    ErrorKind.SERVER_OVERLOADED: True,
    ErrorKind.INVALID_CONTENT: False,
    ErrorKind.PROCESSING_FAILED: False,
    ErrorKind.UNKNOWN: False,
}


@dataclass(frozen=True)
class ClassifiedError:
    """A failure mapped into the analysis error taxonomy"""
    kind: ErrorKind
    message: str
    retry_eligible: bool = False
    tips: Tuple[str, ...] = field(default_factory=tuple)

    @classmethod
    def for_kind(cls, kind: ErrorKind, message: Optional[str] = None) -> "ClassifiedError":
        bundle = _DISPLAY_BUNDLES[kind]
        return cls(
            kind=kind,
            message=message or bundle.message or kind.value,
            retry_eligible=_DEFAULT_RETRY_ELIGIBLE[kind],
            tips=bundle.tips,
        )

    @classmethod
    def invalid_content(cls, message: str, tips: Tuple[str, ...] = DEFAULT_INVALID_CONTENT_TIPS) -> "ClassifiedError":
        return cls(kind=ErrorKind.INVALID_CONTENT, message=message, retry_eligible=False, tips=tuple(tips))

    @classmethod
    def unknown(cls, message: str) -> "ClassifiedError":
        return cls(kind=ErrorKind.UNKNOWN, message=message, retry_eligible=False)

    @property
    def display(self) -> ErrorDisplay:
        """Fixed display bundle for this error's kind"""
        bundle = _DISPLAY_BUNDLES[self.kind]
        if self.kind in (ErrorKind.INVALID_CONTENT, ErrorKind.UNKNOWN):
            return ErrorDisplay(
                icon=bundle.icon,
                title=bundle.title,
                message=self.message,
                suggestion=bundle.suggestion,
                tips=self.tips,
                action_text=bundle.action_text,
            )
        return bundle

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"


# =============================================================================
# Classification
# =============================================================================

# DNS failures and down interfaces: retrying immediately cannot help
_NO_NETWORK_ERRNOS = {errno.ENETUNREACH, errno.ENETDOWN}
_NO_NETWORK_MARKERS = (
    "name or service not known",
    "nodename nor servname provided",
    "temporary failure in name resolution",
    "network is unreachable",
    "not connected to the internet",
)

_RETRYABLE_MARKERS = (
    "max_tokens",
    "max output tokens",
    "timeout",
    "timed out",
    "network",
    "connection",
    "rate limit",
    "internal error",
    "429",
    "500",
    "503",
)


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


def _exception_chain(error: BaseException, max_depth: int = 6):
    seen = set()
    current: Optional[BaseException] = error
    depth = 0
    while current is not None and id(current) not in seen and depth < max_depth:
        yield current
        seen.add(id(current))
        current = current.__cause__ or current.__context__
        depth += 1


def is_network_absent(error: BaseException) -> bool:
    """True for explicit no-network conditions (offline, DNS failure)."""
    for exc in _exception_chain(error):
        if isinstance(exc, (NetworkUnavailableError, socket.gaierror)):
            return True
        if isinstance(exc, OSError) and exc.errno in _NO_NETWORK_ERRNOS:
            return True
        message = str(exc).lower()
        if any(marker in message for marker in _NO_NETWORK_MARKERS):
            return True
    return False


def _is_timeout(error: BaseException) -> bool:
    return isinstance(error, (TimeoutError, httpx.TimeoutException, AnalysisTimeoutError))


def classify_kind(error: BaseException) -> ErrorKind:
    """Map an exception to an ErrorKind."""
    if isinstance(error, InvalidContentError):
        return ErrorKind.INVALID_CONTENT
    if isinstance(error, (VideoProcessingError, ProviderUnavailableError)):
        return ErrorKind.PROCESSING_FAILED
    if _is_timeout(error):
        return ErrorKind.TIMEOUT
    if is_network_absent(error):
        return ErrorKind.NETWORK_UNAVAILABLE
    if isinstance(error, ProviderAPIError):
        if error.status_code == 503:
            return ErrorKind.SERVER_OVERLOADED
        if error.status_code == 429:
            return ErrorKind.RATE_LIMITED

    message = _error_message(error).lower()
    if "overloaded" in message or "503" in message:
        return ErrorKind.SERVER_OVERLOADED
    if "rate limit" in message or "429" in message or "quota" in message:
        return ErrorKind.RATE_LIMITED
    if (
        "network" in message
        or "internet" in message
        or "connection" in message
        or "offline" in message
    ):
        return ErrorKind.NETWORK_UNAVAILABLE
    if "timeout" in message or "timed out" in message:
        return ErrorKind.TIMEOUT
    return ErrorKind.PROCESSING_FAILED


def is_retry_eligible(error: BaseException) -> bool:
    """Decide whether a failed attempt is worth repeating."""
    if isinstance(error, (InvalidContentError, VideoProcessingError, ProviderUnavailableError)):
        return False
    if is_network_absent(error):
        return False
    if _is_timeout(error):
        return True
    if isinstance(error, (httpx.TransportError, ConnectionError)):
        # Lost mid-flight: may share the network_unavailable kind yet still be retried
        return True
    if isinstance(error, ProviderResponseError):
        return True
    if isinstance(error, ProviderAPIError) and error.status_code in (429, 500, 503):
        return True

    message = _error_message(error).lower()
    return any(marker in message for marker in _RETRYABLE_MARKERS)


def classify_error(error: BaseException) -> ClassifiedError:
    """
    Classify an exception into a ClassifiedError.

    Args:
        error: Exception raised by a provider transport or media step

    Returns:
        ClassifiedError with kind, message and retry verdict
    """
    if isinstance(error, InvalidContentError):
        return ClassifiedError.invalid_content(error.message, error.tips or DEFAULT_INVALID_CONTENT_TIPS)

    kind = classify_kind(error)
    classified = ClassifiedError(
        kind=kind,
        message=_error_message(error),
        retry_eligible=is_retry_eligible(error),
        tips=_DISPLAY_BUNDLES[kind].tips,
    )
    logger.debug(
        f"Classified {type(error).__name__} as {kind.value}",
        extra={
            "event_type": "error_classified",
            "error_type": type(error).__name__,
            "error_kind": kind.value,
            "retry_eligible": classified.retry_eligible,
        }
    )
    return classified
