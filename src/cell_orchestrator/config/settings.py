"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "cell-orchestrator"
    app_env: str = "dev"
    log_level: str = "INFO"
    cell_concurrency: int = Field(default=6, ge=1)
    section_concurrency: int = Field(default=4, ge=1)
    max_tool_iterations: int = Field(default=4, ge=1)
    run_deadline_s: float | None = Field(default=None, gt=0.0)
    limiter_queue_timeout_s: float | None = Field(default=None, gt=0.0)
    context_max_chars: int = Field(default=15000, ge=100)
    planner_provider: str = "anthropic"
    planner_model: str = "claude-sonnet-4-20250514"
    planner_temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    planner_max_tokens: int = Field(default=4096, ge=1)
    default_cell_provider: str = "anthropic"
    default_cell_model: str = "claude-3-haiku-20240307"
    tool_timeout_s: float = Field(default=10.0, ge=0.01)
    tool_max_retries: int = Field(default=0, ge=0)
    tool_retry_backoff_s: float = Field(default=0.0, ge=0.0)
    llm_timeout_s: float = Field(default=60.0, ge=0.5)
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.5, ge=0.0)
    openai_base_url: str = "https://api.openai.com/v1"
    anthropic_base_url: str = "https://api.anthropic.com/v1"
    openai_api_key: str = ""
    anthropic_api_key: str = ""

    model_config = SettingsConfigDict(
        env_prefix="CELL_ORCHESTRATOR_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")

    def resolved_anthropic_api_key(self) -> str:
        return self.anthropic_api_key or os.getenv("ANTHROPIC_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
