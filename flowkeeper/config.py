from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, model_validator

from .constants import DEFAULT_EVENTS_TOPIC


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Event transport settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    topic: str = DEFAULT_EVENTS_TOPIC


class EngineConfig(BaseModel):
    """Execution engine and resumption sweep settings."""

    poll_interval: float = Field(default=5.0, gt=0)
    batch_size: int = Field(default=50, ge=1)
    max_concurrency: int = Field(default=10, ge=1)
    # Retry delays up to this many seconds are awaited in-process; longer
    # delays pause the execution and leave the wait to the sweep.
    inline_retry_max_delay: float = Field(default=30.0, ge=0)
    # Each further retry of a step waits this many times longer than the last.
    retry_backoff_factor: float = Field(default=1.0, ge=1.0)
    max_step_transitions: int = Field(default=1000, ge=1)
    stale_after_seconds: float = Field(default=600.0, gt=0)
    # A running execution refreshes its heartbeat this often while a step is
    # in flight, so sweeps elsewhere do not take it over.
    heartbeat_interval: float = Field(default=30.0, gt=0)

    @model_validator(mode="after")
    def heartbeat_within_stale_window(self) -> "EngineConfig":
        if self.heartbeat_interval >= self.stale_after_seconds:
            raise ValueError("heartbeat_interval must be shorter than stale_after_seconds")
        return self


class HttpConfig(BaseModel):
    """Outbound HTTP settings used by webhook and notification actions."""

    timeout: float = 30.0


class FlowkeeperConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    http: HttpConfig = HttpConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> FlowkeeperConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to FLOWKEEPER_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWKEEPER_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowkeeperConfig(**data)
    else:
        config = FlowkeeperConfig()

    env_db_url = os.getenv("FLOWKEEPER_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_log_level = os.getenv("FLOWKEEPER_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level
    return config
