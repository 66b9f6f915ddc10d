from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Connection settings for the Redis progress backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    prefix: str = "stepstone"


class ProgressConfig(BaseModel):
    """Where progress snapshots and activity rows are kept."""

    backend: Literal["inmemory", "sqlite", "redis"] = "inmemory"
    sqlite_path: str = "stepstone-progress.db"
    redis: RedisConfig = RedisConfig()


class EngineConfig(BaseModel):
    """Defaults applied to workflows and ``step.map`` calls."""

    default_timeout_seconds: float = Field(default=3600.0, gt=0)
    map_concurrency: int = Field(default=4, ge=1)
    max_attempts: int = Field(default=3, ge=1)
    retry_base_delay: float = Field(default=0.5, ge=0)
    retry_max_delay: float = Field(default=30.0, ge=0)
    retry_jitter: float = Field(default=0.1, ge=0)


class StepstoneConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    progress: ProgressConfig = ProgressConfig()
    engine: EngineConfig = EngineConfig()
    log_level: str = "INFO"
    log_json: bool = False


def load_config(path: Optional[str] = None) -> StepstoneConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to STEPSTONE_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("STEPSTONE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = StepstoneConfig(**data)
    else:
        config = StepstoneConfig()

    env_db_url = os.getenv("STEPSTONE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_backend = os.getenv("STEPSTONE_PROGRESS_BACKEND")
    if env_backend:
        config.progress = config.progress.model_copy(
            update={"backend": env_backend.lower()}
        )
    env_level = os.getenv("STEPSTONE_LOG_LEVEL")
    if env_level:
        config.log_level = env_level
    return config
