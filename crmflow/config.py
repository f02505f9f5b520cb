from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_MAX_RETRIES,
    DEFAULT_MAX_STEPS_PER_ADVANCE,
    DEFAULT_SCHEDULER_BATCH_SIZE,
    DEFAULT_SCHEDULER_INTERVAL,
    DEFAULT_WEBHOOK_TIMEOUT,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    queue_prefix: str = "crmflow"


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class SchedulerConfig(BaseModel):
    """Polling settings for due enrollments."""

    interval_seconds: float = DEFAULT_SCHEDULER_INTERVAL
    batch_size: int = DEFAULT_SCHEDULER_BATCH_SIZE


class EngineConfig(BaseModel):
    """Execution limits for the step engine."""

    max_steps_per_advance: int = DEFAULT_MAX_STEPS_PER_ADVANCE
    max_retries: int = DEFAULT_MAX_RETRIES
    webhook_timeout: float = DEFAULT_WEBHOOK_TIMEOUT


class CrmflowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    engine: EngineConfig = EngineConfig()
    database_url: Optional[str] = None
    entities_path: Optional[str] = None
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> CrmflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to CRMFLOW_CONFIG env
            variable or 'crmflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("CRMFLOW_CONFIG", "crmflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = CrmflowConfig(**data)
    else:
        config = CrmflowConfig()

    env_db_url = os.getenv("CRMFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_transport = os.getenv("CRMFLOW_TRANSPORT")
    if env_transport:
        config.transport.backend = env_transport.lower()
    env_log_level = os.getenv("CRMFLOW_LOG_LEVEL")
    if env_log_level:
        config.log_level = env_log_level.upper()
    return config
