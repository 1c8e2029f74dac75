from __future__ import annotations

import json
from pathlib import Path

import httpx
from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from newsagg.core.errors import ConfigurationError


BACKEND_ROOT = Path(__file__).resolve().parents[2]
ENV_PATH = BACKEND_ROOT / ".env"


class Settings(BaseSettings):
    env: str = "dev"

    # Feeds to poll and how often (minutes)
    rss: list[str] = Field(min_length=1)
    request_period: float = Field(gt=0)

    database_url: str = Field(min_length=1)

    # host:port, empty host listens on every interface
    api_host: str = ":8080"

    fetch_timeout: float = Field(15.0, gt=0)
    batch_size: int = Field(25, gt=0)
    web_dir: str | None = None
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=str(ENV_PATH) if ENV_PATH.exists() else None,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("rss")
    @classmethod
    def _check_feed_urls(cls, feeds: list[str]) -> list[str]:
        cleaned = []
        for raw in feeds:
            url = raw.strip()
            try:
                parsed = httpx.URL(url)
            except httpx.InvalidURL as e:
                raise ValueError(f"invalid feed url {raw!r}: {e}") from e
            if parsed.scheme not in ("http", "https") or not parsed.host:
                raise ValueError(f"feed url must be http(s) with a host: {raw!r}")
            cleaned.append(url)
        return cleaned

    @field_validator("api_host")
    @classmethod
    def _check_api_host(cls, value: str) -> str:
        _split_host_port(value)
        return value

    @property
    def poll_interval_seconds(self) -> float:
        return self.request_period * 60

    @property
    def bind(self) -> tuple[str, int]:
        return _split_host_port(self.api_host)


def _split_host_port(value: str) -> tuple[str, int]:
    host, sep, port = value.strip().rpartition(":")
    if not sep:
        raise ValueError(f"api_host must look like host:port, got {value!r}")
    try:
        port_num = int(port)
    except ValueError as e:
        raise ValueError(f"api_host has an invalid port: {value!r}") from e
    if not 0 < port_num < 65536:
        raise ValueError(f"api_host port out of range: {value!r}")
    return host or "0.0.0.0", port_num


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Build settings from the environment (and .env), optionally overridden by
    a JSON config file such as:

        {"rss": ["https://example.com/feed"], "request_period": 5,
         "database_url": "postgresql+psycopg://...", "api_host": ":8080"}

    Raises:
        ConfigurationError: file unreadable, not JSON, or settings invalid
    """
    overrides: dict = {}
    if config_path:
        path = Path(config_path)
        try:
            overrides = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise ConfigurationError(f"read config {path}: {e}") from e
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"decode config {path}: {e}") from e
        if not isinstance(overrides, dict):
            raise ConfigurationError(f"config {path} must hold a JSON object")

    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"invalid configuration: {e}") from e
