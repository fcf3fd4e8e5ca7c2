from __future__ import annotations

import asyncio
import time
from typing import Any

import httpx
import structlog
from fastapi import Depends, FastAPI, HTTPException
from fastapi.responses import JSONResponse

from instance_checks.config import SweepConfig, load_config
from instance_checks.dialects import probe_instance
from instance_checks.invalidation import TaggedCache
from instance_checks.models import InstanceNotFoundError, InstanceStore, InstanceStoreError
from instance_checks.scheduler import SweepScheduler
from instance_checks.sweep import (
    SWEEP_OK_MESSAGE,
    ProbeFn,
    SweepAlreadyRunning,
    SweepFatalError,
    SweepRunner,
    build_orchestrator,
)
from instance_registry.auth import require_revalidate_token, require_sweep_token
from instance_registry.db import SqliteInstanceStore
from instance_registry.schema import InstanceSummary, RevalidateEvent, RevalidateInstanceRequest
from instance_registry.settings import RegistrySettings


logger = structlog.get_logger(__name__)

LISTING_CACHE_PATH = "/"
LISTING_CACHE_TAG = "instances"


def create_app(
    settings: RegistrySettings | None = None,
    *,
    config: SweepConfig | None = None,
    store: InstanceStore | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    probe: ProbeFn = probe_instance,
) -> FastAPI:
    app = FastAPI(title="Fediverse Instance Directory", version="0.1.0")
    app.state.settings = settings or RegistrySettings()
    app.state.config = config or load_config(app.state.settings.config_path)
    app.state.store = store if store is not None else SqliteInstanceStore(app.state.config.db_path)
    app.state.cache = TaggedCache()

    orchestrator = build_orchestrator(
        app.state.config,
        app.state.store,
        cache=app.state.cache,
        transport=transport,
        probe=probe,
    )
    app.state.orchestrator = orchestrator
    app.state.runner = SweepRunner(orchestrator)
    app.state.scheduler = None

    @app.on_event("startup")
    def _startup() -> None:
        ensure_schema = getattr(app.state.store, "ensure_schema", None)
        if ensure_schema is not None:
            try:
                ensure_schema()
            except InstanceStoreError:
                logger.exception("Failed to prepare instance store")
        if app.state.settings.schedule_enabled:
            scheduler = SweepScheduler(app.state.runner, app.state.config.schedule)
            scheduler.start()
            app.state.scheduler = scheduler

    @app.on_event("shutdown")
    def _shutdown() -> None:
        if app.state.scheduler is not None:
            app.state.scheduler.stop()

    @app.get("/health")
    async def health() -> dict[str, Any]:
        runner: SweepRunner = app.state.runner
        last = runner.last_report
        return {
            "ok": True,
            "sweep_running": runner.running,
            "last_sweep": last.to_dict() if last is not None else None,
        }

    @app.get("/api/instances")
    async def list_instances() -> dict[str, Any]:
        cache: TaggedCache = app.state.cache
        cached = cache.get(LISTING_CACHE_PATH)
        if cached is not None:
            return cached
        try:
            items = await asyncio.to_thread(app.state.store.list_directory)
        except InstanceStoreError as e:
            logger.error("Instance listing failed", error=str(e))
            raise HTTPException(status_code=503, detail="store_unavailable") from e
        payload = {"instances": items, "count": len(items), "generated_at": time.time()}
        cache.set(LISTING_CACHE_PATH, payload, tags=[LISTING_CACHE_TAG])
        return payload

    @app.get("/api/instances/cache")
    async def run_sweep(_auth: None = Depends(require_sweep_token)) -> Any:
        try:
            report = await app.state.runner.run()
        except SweepAlreadyRunning as e:
            raise HTTPException(status_code=409, detail="sweep_already_running") from e
        except SweepFatalError as e:
            return JSONResponse({"message": str(e)}, status_code=500)
        return {"message": SWEEP_OK_MESSAGE, "report": report.to_dict(include_outcomes=True)}

    @app.post("/api/instances/cache")
    async def revalidate_instance(req: RevalidateInstanceRequest | None = None) -> Any:
        uri = ((req.uri if req else None) or "").strip()
        if not uri:
            return JSONResponse({"error": "URI is required"}, status_code=400)

        store: InstanceStore = app.state.store
        try:
            instance = await asyncio.to_thread(store.get_instance, uri)
        except InstanceNotFoundError:
            return JSONResponse({"error": "Instance not found"}, status_code=404)
        except InstanceStoreError as e:
            logger.error("Cache route error", uri=uri, error=str(e))
            return JSONResponse({"error": "Internal server error", "details": str(e)}, status_code=500)

        try:
            metadata = await asyncio.to_thread(store.get_metadata, instance.id)
        except InstanceNotFoundError:
            return JSONResponse({"error": "Instance data not found"}, status_code=404)
        except InstanceStoreError as e:
            logger.error("Cache route error", uri=uri, error=str(e))
            return JSONResponse({"error": "Internal server error", "details": str(e)}, status_code=500)

        if orchestrator.sanitizer.is_runaway(metadata.thumbnail):
            logger.info("Skipping invalid thumbnail path", uri=uri, thumbnail=metadata.thumbnail[:300])
            return JSONResponse(
                {"error": "Invalid thumbnail path detected", "thumbnail": metadata.thumbnail},
                status_code=400,
            )

        await orchestrator.notifier.notify({"uri": instance.uri})

        summary = InstanceSummary(
            id=instance.id,
            uri=instance.uri,
            title=metadata.title,
            thumbnail=metadata.thumbnail,
            description=metadata.description,
            registrations=metadata.registrations,
            approval_required=metadata.approval_required,
            user_count=metadata.user_count,
            nsfw=instance.nsfw,
        )
        return {"success": True, "instance": summary.model_dump()}

    @app.post("/api/revalidate")
    async def revalidate(
        event: RevalidateEvent | None = None,
        _auth: None = Depends(require_revalidate_token),
    ) -> dict[str, Any]:
        cache: TaggedCache = app.state.cache
        inv = app.state.config.invalidation
        purged = cache.purge_tags(inv.tags) + cache.purge_paths(inv.paths)
        logger.info("Revalidation signal received", event=event.event if event else None, purged=purged)
        return {"revalidated": True, "purged": purged}

    return app
