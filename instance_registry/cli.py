from __future__ import annotations

import argparse
import asyncio
import json
import os

import structlog

from instance_checks.config import DEFAULT_CONFIG_PATH, SweepConfig, load_config
from instance_checks.models import StorageError
from instance_checks.scheduler import SweepScheduler
from instance_checks.sweep import SWEEP_OK_MESSAGE, SweepFatalError, SweepRunner, build_orchestrator
from instance_registry.db import SqliteInstanceStore
from instance_registry.logging_config import configure_logging


logger = structlog.get_logger(__name__)


def _build_runner(config: SweepConfig) -> SweepRunner:
    store = SqliteInstanceStore(config.db_path)
    store.ensure_schema()
    return SweepRunner(build_orchestrator(config, store))


async def run_once(config: SweepConfig) -> int:
    try:
        report = await _build_runner(config).run()
    except (SweepFatalError, StorageError) as e:
        print(json.dumps({"message": str(e), "ok": False}, ensure_ascii=False))
        return 1
    print(json.dumps({"message": SWEEP_OK_MESSAGE, "ok": True, "report": report.to_dict()}, ensure_ascii=False))
    return 0


async def run_scheduled(config: SweepConfig) -> int:
    scheduler = SweepScheduler(_build_runner(config), config.schedule)
    scheduler.start(run_now=True)
    try:
        await asyncio.Event().wait()
    finally:
        scheduler.stop()
    return 0


def main() -> int:
    parser = argparse.ArgumentParser(description="Fediverse instance directory health sweep")
    parser.add_argument(
        "--config",
        default=os.getenv("INSTANCE_CHECKS_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to YAML config",
    )
    parser.add_argument("--db", default=None, help="Override the SQLite database path")
    parser.add_argument("--once", action="store_true", help="Run one sweep, print the report and exit")
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        help="Logging level (INFO, WARNING, ...)",
    )
    args = parser.parse_args()

    configure_logging(args.log_level)
    config = load_config(args.config)
    if args.db:
        config = config.model_copy(update={"db_path": str(args.db)})

    if args.once:
        return asyncio.run(run_once(config))
    try:
        return asyncio.run(run_scheduled(config))
    except KeyboardInterrupt:
        logger.info("Interrupted, shutting down")
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
