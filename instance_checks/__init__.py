"""Health checks and metadata refresh for fediverse instance directories."""

from instance_checks.config import SweepConfig, load_config
from instance_checks.sweep import SweepOrchestrator, SweepReport, SweepRunner, build_orchestrator

__all__ = [
    "SweepConfig",
    "SweepOrchestrator",
    "SweepReport",
    "SweepRunner",
    "build_orchestrator",
    "load_config",
]
