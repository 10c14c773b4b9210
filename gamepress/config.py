from __future__ import annotations

import os
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_MAX_CONCURRENT_FLOWS,
    DEFAULT_STAGE_MAX_TOKENS,
    DEFAULT_STAGE_TEMPERATURE,
)


class ClientConfig(BaseModel):
    """Generation client configuration settings."""

    backend: Literal["scripted", "agent"] = "scripted"
    model: str = "deepseek:deepseek-chat"
    timeout: Optional[float] = None
    latency: float = 0.0
    stage_max_tokens: Dict[str, int] = Field(
        default_factory=lambda: dict(DEFAULT_STAGE_MAX_TOKENS)
    )
    stage_temperature: Dict[str, float] = Field(
        default_factory=lambda: dict(DEFAULT_STAGE_TEMPERATURE)
    )


class GamepressConfig(BaseModel):
    """Top-level configuration model."""

    client: ClientConfig = Field(default_factory=ClientConfig)
    database_url: Optional[str] = None
    log_level: str = "INFO"
    max_concurrent_flows: int = Field(default=DEFAULT_MAX_CONCURRENT_FLOWS, ge=1)
    flow_defaults: Dict[str, Any] = Field(default_factory=dict)


def load_config(path: Optional[str] = None) -> GamepressConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to GAMEPRESS_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("GAMEPRESS_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = GamepressConfig(**data)
    else:
        config = GamepressConfig()

    env_backend = os.getenv("GAMEPRESS_CLIENT_BACKEND")
    if env_backend:
        config.client.backend = env_backend
    env_model = os.getenv("GAMEPRESS_MODEL")
    if env_model:
        config.client.model = env_model
    env_db_url = os.getenv("GAMEPRESS_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
