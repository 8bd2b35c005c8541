"""Application settings."""

from functools import lru_cache
import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

PROJECT_ROOT = Path(__file__).resolve().parents[3]


class Settings(BaseSettings):
    """Runtime settings loaded from environment variables."""

    app_name: str = "assessment-api"
    database_url: str = ""
    assessment_mode: Literal["heuristic", "llm"] = "heuristic"
    report_mode: Literal["template", "llm"] = "template"
    assessment_timeout_s: float = Field(default=60.0, gt=0.0)
    report_timeout_s: float = Field(default=120.0, gt=0.0)
    worker_count: int = Field(default=4, ge=1)
    recover_on_startup: bool = True
    # In-flight records older than the call timeout plus this grace are swept.
    recovery_grace_s: float = Field(default=300.0, ge=0.0)
    recovery_interval_s: float = Field(default=60.0, ge=0.0)
    llm_provider: str = "openai"
    llm_model: str = "gpt-4o-mini"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_max_retries: int = Field(default=1, ge=0)
    llm_backoff_s: float = Field(default=0.2, ge=0.0)
    openai_api_key: str = ""

    model_config = SettingsConfigDict(
        env_prefix="ASSESSMENT_API_",
        extra="ignore",
        env_file=(PROJECT_ROOT / ".env", PROJECT_ROOT / ".env.local"),
        env_file_encoding="utf-8",
    )

    def resolved_database_url(self) -> str:
        return self.database_url or os.getenv("DATABASE_URL", "")

    def resolved_openai_api_key(self) -> str:
        return self.openai_api_key or os.getenv("OPENAI_API_KEY", "")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
