"""
Multimodal AI analysis for images and short videos.

- AIAnalysisService - request orchestrator (provider selection, downsampling, retry)
- Provider adapters - Gemini (native video), OpenAI and Claude (image)
- sanitize() - best-effort JSON repair of raw model output
"""

__version__ = "1.0.0"

from ai_analysis.services.ai_analysis_service import AIAnalysisService
from ai_analysis.services.analysis_types import AnalysisOutcome, AnalysisRequest, ContentType
from ai_analysis.services.error_classifier import ClassifiedError, ErrorKind, classify_error
from ai_analysis.services.provider_selection import ProviderSelectionPolicy, ProviderType
from ai_analysis.services.response_sanitizer import sanitize

__all__ = [
    "AIAnalysisService",
    "AnalysisOutcome",
    "AnalysisRequest",
    "ContentType",
    "ClassifiedError",
    "ErrorKind",
    "classify_error",
    "ProviderSelectionPolicy",
    "ProviderType",
    "sanitize",
]
