from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the Cadence worker process."""

    model_config = SettingsConfigDict(
        env_prefix="CADENCE_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    llm_provider: str = Field(default="openai", max_length=64)
    llm_model: str = Field(
        default="gpt-4o-mini",
        max_length=128,
        description="Model identifier sent to the cloud chat-completions backend.",
    )
    llm_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Base URL of an OpenAI-compatible API (the /chat/completions path is appended).",
    )
    llm_api_key: SecretStr | None = Field(default=None, description="Bearer token for the cloud backend.")
    llm_timeout_seconds: float = Field(
        default=90.0,
        gt=0.0,
        le=600.0,
        description="Deadline applied to each individual LLM attempt.",
    )
    llm_max_retries: int = Field(
        default=2,
        ge=0,
        le=10,
        description="Retries after the first attempt; total attempts are this plus one.",
    )
    llm_retry_backoff_seconds: float = Field(
        default=0.5,
        ge=0.0,
        le=30.0,
        description="Base delay between attempts, doubled per retry (0 disables).",
    )
    llm_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    llm_max_tokens: int = Field(default=1024, ge=16, le=32_768)

    use_local_llm: bool = Field(
        default=False,
        description="Route every LLM call through the local Ollama endpoint.",
    )
    local_endpoint: str = Field(default="http://localhost:11434")
    local_model: str = Field(default="gemma3:4b", max_length=128)
    local_temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    local_max_tokens: int = Field(default=2000, ge=16, le=32_768)
    local_context_length: int = Field(default=4096, ge=512, le=131_072)

    max_prompt_chars: int = Field(
        default=1000,
        ge=100,
        le=10_000,
        description="Length budget for generated style prompts before condensing.",
    )
    min_prompt_chars: int = Field(default=20, ge=1, le=1000)

    trace_enabled: bool = Field(
        default=False,
        description="Attach a size-capped trace to every result unless the caller overrides it.",
    )
    trace_cap_bytes: int = Field(default=64 * 1024, ge=4 * 1024, le=1024 * 1024)
    trace_preview_chars: int = Field(default=600, ge=40, le=20_000)
    trace_dir: Path | None = Field(
        default=None,
        description="Directory the CLI writes finalized traces into.",
    )

    @model_validator(mode="after")
    def _normalise_endpoints(self) -> "Settings":
        self.llm_base_url = self.llm_base_url.rstrip("/")
        self.local_endpoint = self.local_endpoint.rstrip("/")
        if self.min_prompt_chars > self.max_prompt_chars:
            raise ValueError("min_prompt_chars must not exceed max_prompt_chars")
        return self

    def active_local_endpoint(self) -> str | None:
        return self.local_endpoint if self.use_local_llm else None

    def ensure_directories(self) -> None:
        if self.trace_dir is not None:
            self.trace_dir.mkdir(parents=True, exist_ok=True)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.ensure_directories()
    return settings
