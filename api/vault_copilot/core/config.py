"""
Configuration module using Pydantic Settings.

Loads provider credentials, endpoints and local paths from environment
variables. Supports .env files for local development. Runtime chat settings
(active model, chain type, ...) live in the settings store instead.
"""

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # OpenAI and OpenAI-compatible providers
    openai_api_key: str = ""
    openai_org_id: str = ""
    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    ollama_base_url: str = "http://localhost:11434/v1"
    lm_studio_base_url: str = "http://localhost:1234/v1"

    # Azure OpenAI (Entra ID auth when no key is set)
    azure_openai_endpoint: str = ""
    azure_openai_api_key: str = ""
    azure_openai_api_version: str = "2024-06-01"

    # Vault and local index
    vault_path: Path = Path("vault")
    index_path: Path = Path(".copilot/index.json")
    settings_path: Path = Path(".copilot/settings.json")
    embedding_batch_size: int = 16

    # Tracing
    applicationinsights_connection_string: str = ""
    telemetry_console: bool = False

    # App
    log_level: str = "INFO"
    allowed_origins: str = "app://obsidian.md,http://localhost:3000"

    @property
    def cors_origins(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        return [origin.strip() for origin in self.allowed_origins.split(",")]


@lru_cache
def get_settings() -> Settings:
    """Factory for cached settings instance."""
    return Settings()
