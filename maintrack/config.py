"""
Configuration loading and validation.

Loads configuration from a YAML file. Secrets (API key, access token) are
never stored in the file; sections name the environment variable holding them.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .feed.listener import RefreshStrategy


class RemoteConfig(BaseModel):
    backend: Literal["rest", "sqlite"] = "sqlite"
    url: str = "http://localhost:54321"
    api_key_env: str = "MAINTRACK_API_KEY"
    access_token_env: str = "MAINTRACK_ACCESS_TOKEN"
    sqlite_path: str = "./data/maintrack.db"
    request_timeout_seconds: int = 30
    retry: int = 2
    verify_tls: bool = True

    @property
    def api_key(self) -> str | None:
        return os.environ.get(self.api_key_env)

    @property
    def access_token(self) -> str | None:
        return os.environ.get(self.access_token_env)


class FeedConfig(BaseModel):
    strategy: RefreshStrategy = RefreshStrategy.REFETCH
    debounce_seconds: float = 0.0
    path: str = "/realtime/v1/changes"
    ack_timeout_seconds: float = 10.0


class StoreConfig(BaseModel):
    optimistic_updates: bool = True


class NotificationsConfig(BaseModel):
    enabled: bool = True
    function_name: str = "send-notification"


class SessionConfig(BaseModel):
    user_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    designation: Optional[str] = None


class MetricsConfig(BaseModel):
    textfile: Optional[str] = None


class LoggingConfig(BaseModel):
    level: str = "info"
    format: Literal["json", "text"] = "json"


class AppConfig(BaseModel):
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    feed: FeedConfig = Field(default_factory=FeedConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    metrics: MetricsConfig = Field(default_factory=MetricsConfig)


def load_config(path: str | Path) -> AppConfig:
    """Load and validate configuration from a YAML file."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    with open(path) as f:
        raw = yaml.safe_load(f) or {}

    return AppConfig.model_validate(raw)
