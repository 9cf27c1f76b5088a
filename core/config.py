"""
Connector configuration loaded from YAML into pydantic models.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config.yaml"
AUTH_TOKEN_ENV = "BALLCHASING_AUTH_TOKEN"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or incomplete"""
    pass


class _Section(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")


class EndpointConfig(_Section):
    """Credentials for the ballchasing API.

    Get a token by visiting https://ballchasing.com/login
    """
    auth_token: str = Field(default="", alias="authToken")
    base_url: str = Field(default="https://ballchasing.com/api", alias="baseUrl")


class ResourceConfig(_Section):
    # "me" resolves to the token owner's steam id.
    creator_id: str = Field(default="me", alias="creatorId")
    root_group_id: Optional[str] = Field(default=None, alias="rootGroupId")


class RateLimitConfig(_Section):
    requests_per_second: float = Field(default=2.0, gt=0)
    burst: int = Field(default=1, ge=1)


class RetryConfig(_Section):
    max_attempts: int = Field(default=5, ge=1)
    base_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=60.0, ge=0)


class SweepConfig(_Section):
    fan_out: int = Field(default=4, ge=1)
    fetch_details: bool = True
    page_size: int = Field(default=200, ge=1, le=200)


class ScheduleConfig(_Section):
    seconds: Optional[int] = None
    minutes: Optional[int] = None
    hours: Optional[int] = None
    cron: Optional[str] = None
    timezone: str = "UTC"
    stop_grace_seconds: float = 10.0

    @model_validator(mode="after")
    def _default_interval(self) -> "ScheduleConfig":
        if self.cron is None and self.seconds is None and self.minutes is None and self.hours is None:
            self.minutes = 30
        return self


class CheckpointConfig(_Section):
    backend: Literal["sqlite", "host"] = "sqlite"
    path: str = "ingester.db"
    # host backend: file holding the last committed state blob
    state_file: Optional[str] = None


class SinkConfig(_Section):
    type: Literal["database", "jsonl"] = "database"
    path: str = "ingester.db"
    binding: int = 0


class ConnectorConfig(_Section):
    endpoint: EndpointConfig = Field(default_factory=EndpointConfig)
    resource: ResourceConfig = Field(default_factory=ResourceConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    retries: RetryConfig = Field(default_factory=RetryConfig)
    sweep: SweepConfig = Field(default_factory=SweepConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)
    checkpoint: CheckpointConfig = Field(default_factory=CheckpointConfig)
    sink: SinkConfig = Field(default_factory=SinkConfig)


def parse_config(data: Optional[Dict[str, Any]]) -> ConnectorConfig:
    """Validate a config mapping, filling the auth token from the environment."""
    try:
        config = ConnectorConfig.model_validate(data or {})
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    if not config.endpoint.auth_token:
        config.endpoint.auth_token = os.getenv(AUTH_TOKEN_ENV, "")
    if not config.endpoint.auth_token:
        raise ConfigurationError(
            f"Missing auth token: set endpoint.authToken or {AUTH_TOKEN_ENV}"
        )
    return config


def load_config(path: str = DEFAULT_CONFIG_PATH) -> ConnectorConfig:
    """Load configuration from YAML file."""
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")

    with config_path.open() as f:
        try:
            data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {config_path}: {e}") from e

    if data is not None and not isinstance(data, dict):
        raise ConfigurationError(f"{config_path} must contain a mapping at the top level")

    config = parse_config(data)
    logger.info(f"Loaded configuration from {config_path}")
    return config
