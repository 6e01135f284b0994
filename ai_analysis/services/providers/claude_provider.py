"""Anthropic Claude provider (image-only, key-frame fallback for video)"""
import logging
from typing import Optional

import anthropic

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
DEFAULT_MAX_OUTPUT_TOKENS = 4096  # Claude 3 Haiku output ceiling


class ClaudeProvider(AIProviderBase):
    """Anthropic Claude 3 Haiku vision provider"""

    provider = AIProvider.CLAUDE

    def __init__(
        self,
        api_key: Optional[str],
        model: Optional[str] = None,
        settings: Optional[Settings] = None,
        preprocessor: Optional[MediaPreprocessor] = None,
        event_sink: Optional[AnalysisEventSink] = None,
    ):
        cfg = settings or default_settings
        super().__init__(api_key, model or cfg.CLAUDE_MODEL, cfg, preprocessor, event_sink)
        self.client = anthropic.AsyncAnthropic(api_key=api_key, max_retries=0) if api_key else None

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
        max_tokens = min(config.get("maxOutputTokens", DEFAULT_MAX_OUTPUT_TOKENS), DEFAULT_MAX_OUTPUT_TOKENS)

        # No server-side schema enforcement; describe the schema in the prompt
        prompt_text = prompt
        if config.get("response_schema"):
            prompt_text = enhance_prompt_with_schema(prompt, config["response_schema"])

        response = await self.client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=config.get("temperature", DEFAULT_TEMPERATURE),
            messages=[
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image",
                            "source": {
                                "type": "base64",
                                "media_type": "image/jpeg",
                                "data": image_base64,
                            },
                        },
                        {"type": "text", "text": prompt_text},
                    ],
                }
            ],
        )

        text_blocks = [block.text for block in response.content if getattr(block, "type", None) == "text"]
        if not text_blocks:
            raise ProviderResponseError()

        if response.stop_reason == "max_tokens":
            logger.warning(
                "Claude response truncated at max_tokens",
                extra={"event_type": "ai_response_truncated", "provider": self.name, "max_tokens": max_tokens}
            )

        logger.debug(
            f"Claude usage: {response.usage.input_tokens} in / {response.usage.output_tokens} out",
            extra={"event_type": "ai_token_usage", "provider": self.name}
        )
        return text_blocks[0]
