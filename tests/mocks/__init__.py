"""
Mock factories shaped like the provider SDK and REST responses.
"""
from tests.mocks.ai_mocks import (
    create_openai_completion,
    create_anthropic_message,
    create_gemini_response,
    create_gemini_error,
    create_http_response,
)

__all__ = [
    "create_openai_completion",
    "create_anthropic_message",
    "create_gemini_response",
    "create_gemini_error",
    "create_http_response",
]
