"""
Provider selection per content type.

Images default to OpenAI (fast), videos to Gemini (native video). "auto"
walks a fixed preference order and picks the first adapter that has
credentials.
"""
import logging
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from ai_analysis.core.config import Settings, settings as default_settings
from ai_analysis.services.analysis_types import ContentType
from ai_analysis.services.lifecycle import AnalysisEventSink
from ai_analysis.services.media_preprocessor import MediaPreprocessor
from ai_analysis.services.providers import (
    AIProvider,
    AIProviderBase,
    ClaudeProvider,
    GeminiProvider,
    OpenAIProvider,
)

logger = logging.getLogger(__name__)


class ProviderType(Enum):
    """Configured provider choice, including automatic selection"""
    OPENAI = "openai"
    GEMINI = "gemini"
    CLAUDE = "claude"
    AUTO = "auto"


DEFAULT_IMAGE_PROVIDER = ProviderType.OPENAI
DEFAULT_VIDEO_PROVIDER = ProviderType.GEMINI

# "auto" preference: fastest first for images, most capable first for video
AUTO_ORDER = {
    ContentType.IMAGE: [AIProvider.OPENAI, AIProvider.CLAUDE, AIProvider.GEMINI],
    ContentType.VIDEO: [AIProvider.GEMINI, AIProvider.OPENAI, AIProvider.CLAUDE],
}


def build_providers(
    settings: Optional[Settings] = None,
    preprocessor: Optional[MediaPreprocessor] = None,
    event_sink: Optional[AnalysisEventSink] = None,
) -> Dict[AIProvider, AIProviderBase]:
    """
    Construct one adapter per backend from settings.

    Adapters are built even without a key; they then report
    is_available == False and are skipped by "auto".
    """
    cfg = settings or default_settings
    preprocessor = preprocessor or MediaPreprocessor(cfg)

    providers: Dict[AIProvider, AIProviderBase] = {
        AIProvider.OPENAI: OpenAIProvider(
            cfg.OPENAI_API_KEY, settings=cfg, preprocessor=preprocessor, event_sink=event_sink
        ),
        AIProvider.GEMINI: GeminiProvider(
            cfg.GEMINI_API_KEY, settings=cfg, preprocessor=preprocessor, event_sink=event_sink
        ),
        AIProvider.CLAUDE: ClaudeProvider(
            cfg.ANTHROPIC_API_KEY, settings=cfg, preprocessor=preprocessor, event_sink=event_sink
        ),
    }

    configured = [p.value for p, adapter in providers.items() if adapter.is_available]
    logger.info(
        f"AI providers configured: {configured or 'none'}",
        extra={"event_type": "providers_configured", "providers": configured}
    )
    return providers


class ProviderSelectionPolicy:
    """Chooses the adapter used for each content type"""

    def __init__(
        self,
        providers: Mapping[AIProvider, AIProviderBase],
        image_provider: ProviderType = DEFAULT_IMAGE_PROVIDER,
        video_provider: ProviderType = DEFAULT_VIDEO_PROVIDER,
    ):
        self.providers: Dict[AIProvider, AIProviderBase] = dict(providers)
        self.image_provider = ProviderType(image_provider)
        self.video_provider = ProviderType(video_provider)

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        preprocessor: Optional[MediaPreprocessor] = None,
        event_sink: Optional[AnalysisEventSink] = None,
    ) -> "ProviderSelectionPolicy":
        cfg = settings or default_settings
        return cls(
            build_providers(cfg, preprocessor, event_sink),
            image_provider=ProviderType(cfg.IMAGE_PROVIDER),
            video_provider=ProviderType(cfg.VIDEO_PROVIDER),
        )

    def configured(self, content_type: ContentType) -> ProviderType:
        if content_type == ContentType.IMAGE:
            return self.image_provider
        return self.video_provider

    def select(self, content_type: ContentType) -> Optional[AIProviderBase]:
        """
        Return the adapter for a content type.

        A static choice is returned even when it lacks credentials, so the
        caller gets a typed "unavailable" outcome from it. "auto" returns
        None when no adapter is available.
        """
        choice = self.configured(content_type)
        if choice != ProviderType.AUTO:
            return self.providers.get(AIProvider(choice.value))

        for provider in AUTO_ORDER[content_type]:
            adapter = self.providers.get(provider)
            if adapter is not None and adapter.is_available:
                logger.debug(
                    f"Auto-selected {provider.value} for {content_type.value}",
                    extra={"event_type": "provider_auto_selected", "provider": provider.value}
                )
                return adapter
        return None

    def select_batch(self) -> Optional[AIProviderBase]:
        """Adapter for multi-video requests: the video choice if it accepts batches, else any available one that does."""
        adapter = self.select(ContentType.VIDEO)
        if adapter is not None and adapter.supports_batch:
            return adapter

        for provider in AUTO_ORDER[ContentType.VIDEO]:
            candidate = self.providers.get(provider)
            if candidate is not None and candidate.supports_batch and candidate.is_available:
                return candidate
        return None

    def set_provider(self, content_type: ContentType, provider: ProviderType) -> None:
        provider = ProviderType(provider)
        if content_type == ContentType.IMAGE:
            self.image_provider = provider
        else:
            self.video_provider = provider
        logger.info(
            f"{content_type.value} provider set to {provider.value}",
            extra={"event_type": "provider_override", "content_type": content_type.value, "provider": provider.value}
        )

    def reset_to_defaults(self) -> None:
        self.image_provider = DEFAULT_IMAGE_PROVIDER
        self.video_provider = DEFAULT_VIDEO_PROVIDER

    def available_providers(self) -> List[str]:
        return [p.value for p, adapter in self.providers.items() if adapter.is_available]

    def describe(self) -> Dict[str, Any]:
        """
        Current configuration for debugging/diagnostics.

        Returns:
            {
                "image_provider": "openai",
                "video_provider": "gemini",
                "selected": {"image": "openai", "video": "gemini"},
                "capabilities": {"openai": {...}, ...}
            }
        """
        selected = {}
        for content_type in ContentType:
            adapter = self.select(content_type)
            selected[content_type.value] = adapter.name if adapter else None

        return {
            "image_provider": self.image_provider.value,
            "video_provider": self.video_provider.value,
            "selected": selected,
            "capabilities": {
                p.value: {
                    "available": adapter.is_available,
                    "native_video": adapter.native_video,
                    "supports_batch": adapter.supports_batch,
                    "circuit": adapter.circuit_breaker.status,
                }
                for p, adapter in self.providers.items()
            },
        }

    async def close(self) -> None:
        for adapter in self.providers.values():
            await adapter.close()
