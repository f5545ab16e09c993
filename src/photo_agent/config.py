"""Application configuration."""

import os

from pydantic_settings import BaseSettings, SettingsConfigDict

_ENVIRONMENT = os.getenv("ENVIRONMENT", "local")


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    openai_api_key: str | None = None
    openai_model: str = "gpt-5.2"
    openai_reasoning_effort: str | None = "low"
    openai_store: bool = False
    planner_kind: str = "rule"
    planner_timeout_seconds: float = 60.0
    planner_max_calls: int = 6
    planner_max_attempts: int = 3
    planner_deadline_seconds: float | None = None
    planner_ambiguous_terms: str | None = None
    planner_log_text: bool = False
    tool_provider_url: str | None = None
    tool_provider_timeout_seconds: float = 30.0
    preview_max_pixels: int = 1024
    thumbnail_max_pixels: int = 256
    preview_cache_ttl_seconds: int = 600
    export_quality: int = 90
    log_level: str = "INFO"
    environment: str = _ENVIRONMENT

    model_config = SettingsConfigDict(
        env_file=(f".env.{_ENVIRONMENT}", ".env"),
        extra="ignore",
    )


def parse_term_list(raw: str | None) -> tuple[str, ...] | None:
    """Parse a comma separated term list from env."""
    if raw is None:
        return None
    terms: list[str] = []
    for chunk in raw.split(","):
        value = chunk.strip().lower()
        if value and value not in terms:
            terms.append(value)
    return tuple(terms) or None
