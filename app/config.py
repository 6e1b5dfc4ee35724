"""Application configuration using pydantic-settings."""

import os
from pathlib import Path
from functools import lru_cache

from pydantic import BaseModel
from pydantic_settings import BaseSettings, SettingsConfigDict


class CustomIntegration(BaseModel):
    """A user-configured registry that speaks the Civitai by-hash API."""

    name: str
    base_url: str
    enabled: bool = True


class Settings(BaseSettings):
    """Application settings loaded from environment variables or .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Fingerprinting
    full_hash_limit_bytes: int = 1024 * 1024 * 1024
    quick_hash_window_bytes: int = 256 * 1024
    hash_chunk_bytes: int = 1024 * 1024
    hash_workers: int = 2
    fingerprint_cache_enabled: bool = True

    # Container parsing
    max_header_bytes: int = 100 * 1024 * 1024
    metadata_value_max_chars: int = 2000
    max_text_chunk_bytes: int = 16 * 1024 * 1024

    # Registries
    civitai_base_url: str = "https://civitai.com"
    civitai_api_key: str | None = None
    tensorart_base_url: str = "https://tensor.art"
    huggingface_base_url: str = "https://huggingface.co"
    huggingface_api_key: str | None = None
    seaart_base_url: str = "https://www.seaart.ai"
    custom_integrations: list[CustomIntegration] = []
    request_timeout: int = 20
    preview_width: int = 1024
    search_result_limit: int = 10

    # App data directory
    app_data_dir: Path | None = None

    # Server
    host: str = "127.0.0.1"
    port: int = 8430
    log_level: str = "INFO"

    def get_app_data_dir(self) -> Path:
        """Get the app data directory, creating it if needed."""
        if self.app_data_dir:
            path = self.app_data_dir
        else:
            appdata = os.environ.get("APPDATA")
            if appdata:
                path = Path(appdata) / "ModelAssetIdentify"
            else:
                path = Path.home() / ".model-asset-identify"

        path.mkdir(parents=True, exist_ok=True)
        return path

    def get_db_path(self) -> Path:
        """Get the SQLite database path."""
        return self.get_app_data_dir() / "fingerprints.db"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
