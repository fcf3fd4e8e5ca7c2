from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


@dataclass(frozen=True)
class RegistrySettings:
    # YAML config for the sweep engine (db path, probe timeouts, invalidation, alerts).
    config_path: str = field(
        default_factory=lambda: _env_str("INSTANCE_CHECKS_CONFIG", "config/instance_checks.yaml")
    )
    # When set, GET /api/instances/cache requires `Authorization: Bearer <token>`.
    sweep_token: str = field(default_factory=lambda: os.getenv("SWEEP_TOKEN", "").strip())
    # Token accepted by POST /api/revalidate; empty means the endpoint is open.
    revalidate_token: str = field(default_factory=lambda: os.getenv("REVALIDATE_TOKEN", "").strip())

    # Run sweeps on the configured schedule inside the web process.
    schedule_enabled: bool = field(default_factory=lambda: _env_bool("SWEEP_SCHEDULE_ENABLED", False))

    host: str = field(default_factory=lambda: _env_str("INSTANCE_REGISTRY_HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("INSTANCE_REGISTRY_PORT", 3000))
    log_level: str = field(default_factory=lambda: _env_str("LOG_LEVEL", "INFO"))
