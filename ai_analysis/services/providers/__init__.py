"""
AI provider adapters.

This package contains adapters for:
- Gemini - native video and multi-video analysis (REST over httpx)
- OpenAI - fast image analysis, key frame for video
- Claude - image analysis, key frame for video
"""

from ai_analysis.services.providers.base import (
    AIProvider,
    AIProviderBase,
    encode_image_for_upload,
    enhance_prompt_with_schema,
)
from ai_analysis.services.providers.gemini_provider import GeminiProvider
from ai_analysis.services.providers.openai_provider import OpenAIProvider
from ai_analysis.services.providers.claude_provider import ClaudeProvider

__all__ = [
    "AIProvider",
    "AIProviderBase",
    "encode_image_for_upload",
    "enhance_prompt_with_schema",
    "GeminiProvider",
    "OpenAIProvider",
    "ClaudeProvider",
]
