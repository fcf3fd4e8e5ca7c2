"""Configuration for the instance health sweep."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, model_validator


DEFAULT_CONFIG_PATH = "config/instance_checks.yaml"


class ProbeConfig(BaseModel):
    """Outbound request settings for instance API probes."""
    timeout_seconds: float = Field(default=10.0, gt=0, description="Per-request timeout")
    user_agent: str = Field(default="fedi-directory-monitor/0.1", description="User-Agent sent to instances")


class ThumbnailConfig(BaseModel):
    """Where locally cached thumbnails live and what replaces broken ones."""
    placeholder: str = Field(default="/img/fedi_placeholder.png", description="Placeholder sentinel")
    local_prefix: str = Field(default="/img/", description="URL prefix of locally stored assets")
    public_dir: str = Field(default="public", description="Directory that serves local assets")


class HealthConfig(BaseModel):
    ban_threshold: int = Field(default=5, ge=1, description="Consecutive failures that ban an instance")
    ban_reason: str | None = Field(default=None, description="Reason stored on banned instances")

    @model_validator(mode="after")
    def _default_ban_reason(self) -> "HealthConfig":
        if not self.ban_reason:
            self.ban_reason = f"Instance failed {self.ban_threshold} checks in a row"
        return self


class InvalidationConfig(BaseModel):
    """Cache invalidation channels fired once after every sweep."""
    tags: list[str] = Field(default_factory=lambda: ["instances"], description="Cache tags to purge")
    paths: list[str] = Field(default_factory=lambda: ["/"], description="Cache paths to purge")
    revalidate_url: str | None = Field(default=None, description="Endpoint receiving the sweep.completed signal")
    revalidate_token: str = Field(default="", description="Bearer token for the revalidate endpoint")
    timeout_seconds: float = Field(default=10.0, gt=0)


class ScheduleConfig(BaseModel):
    interval_seconds: int = Field(default=3600, ge=60, description="Sweep interval when no cron is set")
    cron: str | None = Field(default=None, description="Cron expression (minute hour day month day_of_week)")


class SweepConfig(BaseModel):
    """Main configuration for the sweep engine."""
    db_path: str = Field(default="data/instances.db", description="SQLite database holding instances")
    concurrency: int = Field(default=8, ge=1, le=256, description="Instances probed at the same time")

    probe: ProbeConfig = Field(default_factory=ProbeConfig)
    thumbnails: ThumbnailConfig = Field(default_factory=ThumbnailConfig)
    health: HealthConfig = Field(default_factory=HealthConfig)
    invalidation: InvalidationConfig = Field(default_factory=InvalidationConfig)
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)


def _set_nested(data: dict[str, Any], dotted: str, value: Any) -> None:
    parts = dotted.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = value


_ENV_OVERRIDES = {
    "INSTANCES_DB_PATH": "db_path",
    "SWEEP_CONCURRENCY": "concurrency",
    "PROBE_TIMEOUT_SECONDS": "probe.timeout_seconds",
    "REVALIDATE_URL": "invalidation.revalidate_url",
    "REVALIDATE_TOKEN": "invalidation.revalidate_token",
}


def load_config(config_path: str | Path | None = None) -> SweepConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("INSTANCE_CHECKS_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: dict[str, Any] = {}
    path = Path(config_path)
    if path.exists():
        with open(path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
        if not isinstance(config_data, dict):
            raise ValueError("Config YAML must be a mapping")

    for env_name, dotted in _ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if value is None or not value.strip():
            continue
        _set_nested(config_data, dotted, value.strip())

    # pydantic coerces the string overrides into the declared field types.
    return SweepConfig(**config_data)
