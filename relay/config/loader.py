"""Load configuration from YAML and environment variables. No hardcoded secrets."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Default config lives next to this module
_DEFAULT_CONFIG_PATH = Path(__file__).parent / "default.yaml"


def _load_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


class RedisSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="REDIS_", extra="ignore", populate_by_name=True)
    url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")


class TelegramSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="TELEGRAM_", extra="ignore", populate_by_name=True)
    bot_token: str = Field(default="", alias="TELEGRAM_TOKEN")
    api_url: str = "https://api.telegram.org"
    long_poll_timeout: int = 10


class GeminiSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="GEMINI_", extra="ignore", populate_by_name=True)
    api_key: str = Field(default="", alias="GEMINI_TOKEN")
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    model: str = "gemini-2.0-flash"
    image_model: str = "gemini-2.0-flash-exp-image-generation"
    timeout: float = 60.0
    safety_threshold: str = "BLOCK_NONE"
    system_prompt: str = "You are a helpful assistant."
    photo_system_prompt: str = "You are a helpful assistant."


class HistorySettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="HISTORY_", extra="ignore", populate_by_name=True)
    backend: Literal["redis", "mokky"] = "redis"
    max_turns: int = 100
    key_prefix: str = "relay:history:"
    ttl_days: int = 30
    mokky_url: str = Field(default="", alias="MOKKY_URL")


class StreamSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="STREAM_", extra="ignore")
    edit_interval: float = 0.5
    final_marker: str = "\u200b"


class LoggingSettings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="LOG_", extra="ignore")
    level: str = "INFO"
    use_json: bool = True


class Config(BaseSettings):
    """Application config: YAML + env. Secrets from env only."""

    model_config = SettingsConfigDict(env_nested_delimiter="__", extra="ignore")

    redis: RedisSettings = Field(default_factory=RedisSettings)
    telegram: TelegramSettings = Field(default_factory=TelegramSettings)
    gemini: GeminiSettings = Field(default_factory=GeminiSettings)
    history: HistorySettings = Field(default_factory=HistorySettings)
    stream: StreamSettings = Field(default_factory=StreamSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @classmethod
    def load(cls, config_path: str | Path | None = None) -> "Config":
        path = Path(config_path) if config_path else _DEFAULT_CONFIG_PATH
        yaml_data = _load_yaml(path)
        env_prefix = os.getenv("ASSISTANT_ENV_PREFIX", "")
        if env_prefix:
            yaml_data = _deep_merge(yaml_data, _load_yaml(Path(f"config/{env_prefix}.yaml")))
        redis_url = os.getenv("REDIS_URL")
        if redis_url:
            yaml_data.setdefault("redis", {})["url"] = redis_url
        token = os.getenv("TELEGRAM_TOKEN")
        if token:
            yaml_data.setdefault("telegram", {})["bot_token"] = token
        gemini_key = os.getenv("GEMINI_TOKEN")
        if gemini_key:
            yaml_data.setdefault("gemini", {})["api_key"] = gemini_key
        mokky_url = os.getenv("MOKKY_URL")
        if mokky_url:
            yaml_data.setdefault("history", {})["mokky_url"] = mokky_url
        backend = os.getenv("HISTORY_BACKEND")
        if backend:
            yaml_data.setdefault("history", {})["backend"] = backend
        level = os.getenv("LOG_LEVEL")
        if level:
            yaml_data.setdefault("logging", {})["level"] = level
        return cls(**yaml_data)


def get_config(config_path: str | Path | None = None) -> Config:
    return Config.load(config_path)
