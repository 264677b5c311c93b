import logging
from pathlib import Path
from typing import Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


logger = logging.getLogger(__name__)


PROJECT_ROOT = Path(__file__).resolve().parents[2]
ROOT_ENV = PROJECT_ROOT / ".env"
ROOT_ENV_LOCAL = PROJECT_ROOT / ".env.local"


class Settings(BaseSettings):
    """
    studygraph - Global Configuration Registry
    Centralizes all environment variables using Pydantic Settings.
    """

    model_config = SettingsConfigDict(
        env_file=(str(ROOT_ENV), str(ROOT_ENV_LOCAL)),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # LLM proxy
    LLM_PROXY_URL: Optional[str] = Field(
        None, validation_alias=AliasChoices("LLM_PROXY_URL", "OPENAI_PROXY_URL")
    )
    LLM_PROXY_API_KEY: Optional[str] = Field(
        None, validation_alias=AliasChoices("LLM_PROXY_API_KEY", "OPENAI_API_KEY")
    )
    GRAPH_GENERATION_MODEL: str = "gpt-4o-mini"
    GRAPH_GENERATION_TEMPERATURE: float = 0.7
    LLM_TIMEOUT_SECONDS: float = 180.0

    # Self-imposed rate limiting
    LLM_MIN_CALL_INTERVAL_SECONDS: float = 1.5
    LLM_RATE_LIMIT_MAX_RETRIES: int = 2
    LLM_RATE_LIMIT_BACKOFF_SECONDS: float = 3.0

    # Output token budgets per pass
    SINGLE_PASS_MAX_TOKENS: int = 8192
    STRUCTURE_MAX_TOKENS: int = 4096
    CHAPTER_MAX_TOKENS: int = 8192
    CROSS_REFERENCE_MAX_TOKENS: int = 4096

    # Input limits
    MIN_INPUT_CHARS: int = 80
    MAX_TEXT_CHARS: int = 50000
    MAX_FILE_SIZE_MB: float = 20.0

    # Strategy selection
    MULTI_PASS_TEXT_THRESHOLD_CHARS: int = 20000
    MULTI_PASS_FILE_THRESHOLD_MB: float = 0.5
    STRUCTURE_MAX_INPUT_CHARS: int = 30000
    CHAPTER_TEXT_OVERLAP_CHARS: int = 500
    MAX_CHAPTERS: int = 12
    CROSS_REFERENCE_MIN_CONCEPTS: int = 4

    # API Config
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    ENVIRONMENT: str = "development"

    @field_validator("ENVIRONMENT", mode="before")
    @classmethod
    def _normalize_environment_label(cls, value: str | None) -> str:
        return str(value or "").strip().lower()

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def _normalize_log_level(cls, value: str | None) -> str:
        return str(value or "INFO").strip().upper()

    @model_validator(mode="after")
    def _enforce_budget_constraints(self) -> "Settings":
        if self.MULTI_PASS_TEXT_THRESHOLD_CHARS > self.MAX_TEXT_CHARS:
            logger.warning(
                "MULTI_PASS_TEXT_THRESHOLD_CHARS exceeds MAX_TEXT_CHARS; text input will never use multi-pass",
                extra={
                    "threshold": self.MULTI_PASS_TEXT_THRESHOLD_CHARS,
                    "max_text_chars": self.MAX_TEXT_CHARS,
                },
            )
        self.LLM_RATE_LIMIT_MAX_RETRIES = max(0, int(self.LLM_RATE_LIMIT_MAX_RETRIES))
        self.MAX_CHAPTERS = max(1, int(self.MAX_CHAPTERS))
        if self.LLM_PROXY_URL:
            self.LLM_PROXY_URL = self.LLM_PROXY_URL.strip() or None
        return self


settings = Settings()  # type: ignore[call-arg]
