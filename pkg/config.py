"""
CostLens configuration module.

Loads settings from environment variables with sensible defaults.
Uses pydantic-settings for validation and type coercion.
"""

from __future__ import annotations

from functools import lru_cache

from pydantic import SecretStr
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # -------------------------------------------------------------------
    # Database
    # -------------------------------------------------------------------
    database_url: str = ""
    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_db: str = "costlens"
    postgres_user: str = "costlens"
    postgres_password: SecretStr = SecretStr("change_me")

    # -------------------------------------------------------------------
    # Service
    # -------------------------------------------------------------------
    costlens_port: int = 8081
    log_level: str = "INFO"
    cors_origins: list[str] = ["*"]

    # -------------------------------------------------------------------
    # Azure OpenAI (text generation)
    # -------------------------------------------------------------------
    azure_openai_endpoint: str = ""
    azure_openai_api_key: SecretStr = SecretStr("")
    azure_openai_api_version: str = "2024-02-01"
    azure_openai_deployment: str = "gpt-4"
    azure_openai_prediction_deployment: str = "gpt-4o-mini"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 800

    # -------------------------------------------------------------------
    # Collection
    # -------------------------------------------------------------------
    cost_lookback_days: int = 30
    aws_default_region: str = "us-east-1"

    # -------------------------------------------------------------------
    # Derived helpers
    # -------------------------------------------------------------------
    @property
    def postgres_url(self) -> str:
        """Return the configured database URL.

        ``DATABASE_URL`` wins when set; otherwise a PostgreSQL URL is built
        from the individual ``POSTGRES_*`` settings.
        """
        if self.database_url:
            return self.database_url
        return (
            f"postgresql://{self.postgres_user}:"
            f"{self.postgres_password.get_secret_value()}"
            f"@{self.postgres_host}:{self.postgres_port}/{self.postgres_db}"
        )

    @property
    def text_generation_configured(self) -> bool:
        """True when both the Azure OpenAI endpoint and key are present."""
        return bool(
            self.azure_openai_endpoint
            and self.azure_openai_api_key.get_secret_value()
        )

    model_config = {
        "env_prefix": "",
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
    }


@lru_cache()
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
