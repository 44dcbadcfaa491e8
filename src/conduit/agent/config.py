"""Configuration management using pydantic-settings.

Values come from the environment and from ``.env`` / ``.env.local``
(local overrides shared). There is no module-level instance: the CLI builds
``Settings()`` once and passes the values it needs into constructors, so
library code never reads the environment itself.

Usage:
    settings = Settings()
    backend = AnthropicBackend(api_key=settings.require_api_key())
"""

import logging
from typing import Self

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings loaded from environment variables.

    The API key uses its standard name (``ANTHROPIC_API_KEY``); harness
    settings use the ``CONDUIT_`` prefix.
    """

    model_config = SettingsConfigDict(
        env_file=(".env", ".env.local"),
        extra="ignore",
    )

    @model_validator(mode="after")
    def warn_missing_api_key(self) -> Self:
        if not self.anthropic_api_key:
            logger.warning("ANTHROPIC_API_KEY is not set; `chat` will not run")
        return self

    def require_api_key(self) -> str:
        if not self.anthropic_api_key:
            raise ValueError("ANTHROPIC_API_KEY must be set to chat with a model")
        return self.anthropic_api_key

    # ==========================================================================
    # API KEYS
    # ==========================================================================

    anthropic_api_key: str | None = Field(
        default=None,
        validation_alias="ANTHROPIC_API_KEY",
        description="Anthropic API key (needed by `chat` only)",
    )

    # ==========================================================================
    # MODEL SETTINGS
    # ==========================================================================

    model: str = Field(
        default="claude-sonnet-4-20250514",
        validation_alias="CONDUIT_MODEL",
        description="Model identifier passed to the backend",
    )

    max_turns: int = Field(
        default=8,
        ge=1,
        validation_alias="CONDUIT_MAX_TURNS",
        description="Backend streams opened per chat call, at most",
    )

    max_tokens: int = Field(
        default=4096,
        ge=1,
        validation_alias="CONDUIT_MAX_TOKENS",
        description="Max output tokens per backend stream",
    )

    # ==========================================================================
    # LIMITS
    # ==========================================================================

    kill_timeout_seconds: float = Field(
        default=5.0,
        gt=0,
        validation_alias="CONDUIT_KILL_TIMEOUT_SECONDS",
        description="Grace period between SIGTERM and SIGKILL for child processes",
    )

    http_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        validation_alias="CONDUIT_HTTP_TIMEOUT_SECONDS",
        description="Timeout for HTTP requests made by tools",
    )

    # ==========================================================================
    # TOOLS
    # ==========================================================================

    weather_api_base_url: str = Field(
        default="https://api.weather.gov",
        validation_alias="CONDUIT_WEATHER_API_BASE_URL",
        description="National Weather Service API root",
    )
