"""Environment overrides for the configuration file."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

from .config import CONFIG_FILE, AppConfig, load_config

ENV_PREFIX = "WEBPOPT_"


class Settings(BaseSettings):
    """Application runtime settings sourced from environment variables."""

    model_config = SettingsConfigDict(env_prefix=ENV_PREFIX, env_file=".env", extra="ignore")

    config_path: Path = CONFIG_FILE
    enable_local_api: bool | None = None


@lru_cache
def get_settings() -> Settings:
    """Return cached settings instance."""

    return Settings()


def load_effective_config(settings: Settings | None = None) -> AppConfig:
    settings = settings or get_settings()
    config = load_config(settings.config_path)
    if settings.enable_local_api is not None:
        config.runtime.enable_local_api = settings.enable_local_api
    return config


__all__ = ["ENV_PREFIX", "Settings", "get_settings", "load_effective_config"]
