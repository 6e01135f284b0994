"""Library configuration using Pydantic Settings"""
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from typing import List, Optional


VALID_PROVIDER_NAMES = ("openai", "gemini", "claude", "auto")


class Settings(BaseSettings):
    """Analysis settings loaded from environment variables"""

    # Provider credentials (injected from the secrets store)
    GEMINI_API_KEY: Optional[str] = None
    OPENAI_API_KEY: Optional[str] = None
    ANTHROPIC_API_KEY: Optional[str] = None

    # Models
    GEMINI_MODEL: str = "gemini-2.5-flash"
    GEMINI_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    OPENAI_MODEL: str = "gpt-4o-mini"
    CLAUDE_MODEL: str = "claude-3-haiku-20240307"

    # Provider selection per content type
    IMAGE_PROVIDER: str = "openai"  # Fast for images
    VIDEO_PROVIDER: str = "gemini"  # Native video support

    # Video preprocessing
    ANALYSIS_TARGET_FPS: int = 10
    TEMP_DIR: Optional[str] = None  # Defaults to the process temp directory

    # Retry / backoff
    MAX_RETRIES: int = 1
    RETRY_BASE_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 2.0
    RETRY_JITTER_SECONDS: float = 0.5

    # Transport
    IMAGE_REQUEST_TIMEOUT: float = 60.0
    VIDEO_REQUEST_TIMEOUT: float = 120.0
    MAX_INLINE_BYTES: int = 20 * 1024 * 1024  # Gemini inline data limit

    # Circuit breaker
    CIRCUIT_FAILURE_THRESHOLD: int = 3
    CIRCUIT_RECOVERY_SECONDS: float = 60.0

    # Connectivity
    # Stored as string to avoid pydantic-settings JSON parsing; use metered_interfaces_list
    METERED_INTERFACES: str = ""
    CONNECTIVITY_POLL_SECONDS: float = 5.0

    # Logging
    LOG_LEVEL: str = "INFO"

    @property
    def metered_interfaces_list(self) -> List[str]:
        """Parse METERED_INTERFACES from comma-separated string"""
        return [name.strip() for name in self.METERED_INTERFACES.split(",") if name.strip()]

    @field_validator("IMAGE_PROVIDER", "VIDEO_PROVIDER", mode="after")
    @classmethod
    def validate_provider_name(cls, v: str) -> str:
        """Validate provider names against the known adapters."""
        v = v.strip().lower()
        if v not in VALID_PROVIDER_NAMES:
            raise ValueError(f"Provider must be one of {list(VALID_PROVIDER_NAMES)}")
        return v

    @field_validator("ANALYSIS_TARGET_FPS", mode="after")
    @classmethod
    def validate_target_fps(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("ANALYSIS_TARGET_FPS must be positive")
        return v

    @field_validator("MAX_RETRIES", mode="after")
    @classmethod
    def validate_max_retries(cls, v: int) -> int:
        if v < 0:
            raise ValueError("MAX_RETRIES cannot be negative")
        return v

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )


# Global settings instance
settings = Settings()
