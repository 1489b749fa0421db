"""Configuration models for Moment Studio."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import AliasChoices, BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class DirectorSettings(BaseModel):
    """Bounds for the plan -> validate -> revise loop."""

    max_attempts: int = Field(3, description="Planner calls per moment")
    creative_pass_threshold: int = Field(2, description="Creative dimensions that must pass")


class GenerationSettings(BaseModel):
    interval_seconds: float = Field(10.0, description="Minimum gap between generation calls")
    call_timeout_seconds: float = 180.0
    export_timeout_seconds: float = 300.0
    vision_qc_auto_regenerate_kinds: frozenset[str] = frozenset({"action_frame"})
    vision_qc_max_regenerations: int = 1


class RetrySettings(BaseModel):
    transient_attempts: int = 3
    backoff_base_seconds: float = 10.0
    backoff_factor: float = 2.0
    max_backoff_seconds: float = 180.0


class Settings(BaseSettings):
    """Global application settings."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    environment: Literal["development", "staging", "production"] = Field(
        default="development", alias="APP_ENV"
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = Field(default="INFO", alias="LOG_LEVEL")
    output_root: Path = Field(default=Path("output"), alias="OUTPUT_ROOT")
    character_refs_path: Path = Field(default=Path("data/characters.json"), alias="CHARACTER_REFS_PATH")

    director: DirectorSettings = DirectorSettings()
    generation: GenerationSettings = GenerationSettings()
    retry: RetrySettings = RetrySettings()
    planner_timeout_seconds: float = Field(default=120.0, alias="PLANNER_TIMEOUT_SECONDS")

    llm_provider_mode: Literal["mock", "openrouter"] = Field(default="mock", alias="LLM_PROVIDER_MODE")
    openrouter_api_key: str | None = Field(default=None, alias="OPENROUTER_API_KEY")
    planner_model: str = Field(default="anthropic/claude-sonnet-4", alias="PLANNER_MODEL")
    validator_model: str = Field(default="anthropic/claude-haiku-4.5", alias="VALIDATOR_MODEL")

    image_provider_mode: Literal["mock", "gemini"] = Field(default="mock", alias="IMAGE_PROVIDER_MODE")
    google_ai_api_key: str | None = Field(
        default=None,
        alias="GOOGLE_AI_API_KEY",
        validation_alias=AliasChoices("GOOGLE_AI_API_KEY", "GEMINI_API_KEY"),
    )
    image_model: str = Field(default="gemini-2.5-flash-image", alias="IMAGE_MODEL")

    http_proxy: str | None = Field(default=None, alias="HTTP_PROXY")
    https_proxy: str | None = Field(default=None, alias="HTTPS_PROXY")

    @model_validator(mode="after")
    def validate_production_providers(self) -> "Settings":
        if self.environment == "production":
            if self.llm_provider_mode == "mock" or self.image_provider_mode == "mock":
                raise ValueError(
                    "Production cannot run with mock providers. "
                    "Set LLM_PROVIDER_MODE=openrouter and IMAGE_PROVIDER_MODE=gemini."
                )
            missing_keys: list[str] = []
            if not self.openrouter_api_key:
                missing_keys.append("OPENROUTER_API_KEY")
            if not self.google_ai_api_key:
                missing_keys.append("GOOGLE_AI_API_KEY")
            if missing_keys:
                raise ValueError(
                    f"Missing required production keys: {', '.join(missing_keys)}. "
                    "Populate them in the environment before starting the service."
                )
        return self

    @property
    def httpx_proxies(self) -> str | None:
        """Proxy URL for httpx clients (HTTPS preferred)."""
        return self.https_proxy or self.http_proxy


@lru_cache
def get_settings() -> Settings:
    """Return the cached settings instance."""
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
