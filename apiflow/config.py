from __future__ import annotations

import os
from typing import Dict, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    DEFAULT_BACKOFF_MULTIPLIER,
    DEFAULT_BASE_DELAY_MS,
    DEFAULT_EXECUTION_TIMEOUT_MS,
    DEFAULT_HTTP_TIMEOUT_SECONDS,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY_MS,
    DEFAULT_STUCK_EXECUTION_MINUTES,
    MAX_EXPRESSION_LENGTH,
)


class StoreConfig(BaseModel):
    """Execution store settings."""

    database_url: Optional[str] = None


class RetryConfig(BaseModel):
    """Retry policy settings."""

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    base_delay_ms: float = Field(default=DEFAULT_BASE_DELAY_MS, ge=0)
    multiplier: float = Field(default=DEFAULT_BACKOFF_MULTIPLIER, ge=1)
    max_delay_ms: float = Field(default=DEFAULT_MAX_DELAY_MS, ge=0)
    jitter_ms: float = Field(default=0, ge=0)
    execution_budget: Optional[int] = Field(default=None, ge=0)


class EngineConfig(BaseModel):
    """Orchestrator behaviour settings."""

    default_timeout_ms: Optional[int] = DEFAULT_EXECUTION_TIMEOUT_MS
    condition_failure: Literal["complete", "fail"] = "complete"
    stuck_execution_minutes: int = DEFAULT_STUCK_EXECUTION_MINUTES
    max_expression_length: int = MAX_EXPRESSION_LENGTH


class HttpConfig(BaseModel):
    """Outbound HTTP settings."""

    timeout_seconds: float = DEFAULT_HTTP_TIMEOUT_SECONDS
    follow_redirects: bool = False


class AuthConfig(BaseModel):
    """Connection authentication. Secret values are read from the environment."""

    type: Literal["api_key", "bearer", "basic", "oauth2"]
    header: str = "X-API-Key"
    query_param: Optional[str] = None
    username: Optional[str] = None
    secret_env: str


class ConnectionConfig(BaseModel):
    """A named API connection."""

    base_url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    auth: Optional[AuthConfig] = None


class ApiflowConfig(BaseModel):
    """Top-level configuration model."""

    store: StoreConfig = StoreConfig()
    retry: RetryConfig = RetryConfig()
    engine: EngineConfig = EngineConfig()
    http: HttpConfig = HttpConfig()
    connections: Dict[str, ConnectionConfig] = Field(default_factory=dict)


def load_config(path: Optional[str] = None) -> ApiflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to APIFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("APIFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ApiflowConfig(**data)
    else:
        config = ApiflowConfig()

    env_db_url = os.getenv("APIFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.store.database_url = env_db_url
    return config
