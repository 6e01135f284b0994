"""
OpenAI provider: fast image analysis via the Chat Completions vision API.

OpenAI has no native video input; analyze_video() sends the middle frame.
"""
import logging
from typing import Any, Dict, Optional

import openai

from ai_analysis.core.config import Settings, settings as default_settings
from ai_analysis.services.analysis_types import GenerationConfig
from ai_analysis.services.error_classifier import ProviderResponseError
from ai_analysis.services.lifecycle import AnalysisEventSink
from ai_analysis.services.media_preprocessor import MediaPreprocessor
from ai_analysis.services.providers.base import (
    AIProvider,
    AIProviderBase,
    enhance_prompt_with_schema,
)

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.3
DEFAULT_MAX_OUTPUT_TOKENS = 16384  # gpt-4o-mini output ceiling
STRUCTURED_OUTPUT_NAME = "analysis_response"


def build_response_format(generation_config: Optional[GenerationConfig]) -> Optional[Dict[str, Any]]:
    """
    Map Gemini-style output hints to OpenAI's response_format.

    - response_mime_type=application/json with response_schema -> strict json_schema
    - response_mime_type=application/json alone -> json_object
    - otherwise no response_format
    """
    config = generation_config or {}
    if config.get("response_mime_type") != "application/json":
        return None

    schema = config.get("response_schema")
    if isinstance(schema, dict):
        return {
            "type": "json_schema",
            "json_schema": {
                "name": STRUCTURED_OUTPUT_NAME,
                "strict": True,
                "schema": schema,
            },
        }
    return {"type": "json_object"}


class OpenAIProvider(AIProviderBase):
    """OpenAI GPT-4o mini vision provider"""

    provider = AIProvider.OPENAI

    def __init__(
        self,
        api_key: Optional[str],
        model: Optional[str] = None,
        settings: Optional[Settings] = None,
        preprocessor: Optional[MediaPreprocessor] = None,
        event_sink: Optional[AnalysisEventSink] = None,
    ):
        cfg = settings or default_settings
        super().__init__(api_key, model or cfg.OPENAI_MODEL, cfg, preprocessor, event_sink)
        # Retries are owned by the orchestrator
        self.client = openai.AsyncOpenAI(api_key=api_key, max_retries=0) if api_key else None

    async def close(self) -> None:
        if self.client is not None:
            await self.client.close()

    async def _generate_from_image(
        self,
        image_base64: str,
        prompt: str,
        generation_config: Optional[GenerationConfig],
    ) -> str:
        config = generation_config or {}
        temperature = config.get("temperature", DEFAULT_TEMPERATURE)
        max_tokens = config.get("maxOutputTokens", DEFAULT_MAX_OUTPUT_TOKENS)
        response_format = build_response_format(config)

        # Structured Outputs already enforce the schema
        prompt_text = prompt
        if (response_format or {}).get("type") != "json_schema" and config.get("response_schema"):
            prompt_text = enhance_prompt_with_schema(prompt, config["response_schema"])

        request: Dict[str, Any] = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": prompt_text},
                        {
                            "type": "image_url",
                            "image_url": {"url": f"data:image/jpeg;base64,{image_base64}"},
                        },
                    ],
                }
            ],
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format:
            request["response_format"] = response_format

        response = await self.client.chat.completions.create(**request)

        if not response.choices or response.choices[0].message.content is None:
            raise ProviderResponseError()
        choice = response.choices[0]

        if choice.finish_reason == "length":
            logger.warning(
                "OpenAI response truncated at max_tokens; increase maxOutputTokens",
                extra={"event_type": "ai_response_truncated", "provider": self.name, "max_tokens": max_tokens}
            )

        if response.usage:
            logger.debug(
                "OpenAI token usage",
                extra={
                    "event_type": "ai_token_usage",
                    "provider": self.name,
                    "input_tokens": response.usage.prompt_tokens,
                    "output_tokens": response.usage.completion_tokens,
                    "tokens_used": response.usage.total_tokens,
                }
            )

        return choice.message.content
