from __future__ import annotations

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

import httpx
import structlog

from instance_checks.config import SweepConfig
from instance_checks.dialects import InstanceInfo, ProbeResult, Unreachable, probe_instance
from instance_checks.health import HealthState, HealthTracker
from instance_checks.invalidation import InvalidationNotifier, TaggedCache
from instance_checks.models import Instance, InstanceMetadata, InstanceStore, InstanceStoreError
from instance_checks.thumbnails import LocalAssetStore, ThumbnailSanitizer


logger = structlog.get_logger(__name__)

SWEEP_OK_MESSAGE = "successfully updated instances"

ProbeFn = Callable[..., Awaitable[ProbeResult]]


class SweepFatalError(RuntimeError):
    """The set of instances to check could not be read."""


class SweepAlreadyRunning(RuntimeError):
    pass


@dataclass(frozen=True)
class InstanceOutcome:
    instance_id: int
    uri: str
    status: str  # updated|unreachable|banned|error
    reason: str
    failed_checks: int


@dataclass(frozen=True)
class SweepReport:
    started_at: float
    finished_at: float
    outcomes: list[InstanceOutcome] = field(default_factory=list)

    def _count(self, *statuses: str) -> int:
        return sum(1 for o in self.outcomes if o.status in statuses)

    @property
    def checked(self) -> int:
        return len(self.outcomes)

    @property
    def succeeded(self) -> int:
        return self._count("updated")

    @property
    def failed(self) -> int:
        return self._count("unreachable", "banned")

    @property
    def newly_banned(self) -> int:
        return self._count("banned")

    @property
    def errors(self) -> int:
        return self._count("error")

    @property
    def banned_uris(self) -> list[str]:
        return sorted(o.uri for o in self.outcomes if o.status == "banned")

    def to_dict(self, *, include_outcomes: bool = False) -> dict[str, Any]:
        out: dict[str, Any] = {
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "elapsed_ms": round((self.finished_at - self.started_at) * 1000.0, 3),
            "checked": self.checked,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "newly_banned": self.newly_banned,
            "errors": self.errors,
            "banned_uris": self.banned_uris,
        }
        if include_outcomes:
            out["outcomes"] = [
                {
                    "uri": o.uri,
                    "status": o.status,
                    "reason": o.reason,
                    "failed_checks": o.failed_checks,
                }
                for o in sorted(self.outcomes, key=lambda o: o.uri)
            ]
        return out


def build_cache_snapshot(info: InstanceInfo, *, instance: Instance, fetched_at: float) -> str:
    snapshot = {
        "uri": instance.uri,
        "api_mode": instance.api_mode,
        "fetched_at": fetched_at,
        "title": info.title,
        "description": info.description,
        "short_description": info.short_description,
        "thumbnail": info.thumbnail,
        "user_count": info.user_count,
        "status_count": info.status_count,
        "registrations": info.registrations,
        "approval_required": info.approval_required,
        "contact_account": info.contact_account,
        "payload": info.raw,
    }
    return json.dumps(snapshot, ensure_ascii=False, sort_keys=True, default=str)


class SweepOrchestrator:
    """One pass over every non-banned instance: probe, persist, count failures, notify."""

    def __init__(
        self,
        *,
        config: SweepConfig,
        store: InstanceStore,
        tracker: HealthTracker,
        sanitizer: ThumbnailSanitizer,
        notifier: InvalidationNotifier,
        transport: httpx.AsyncBaseTransport | None = None,
        probe: ProbeFn = probe_instance,
    ) -> None:
        self.config = config
        self.store = store
        self.tracker = tracker
        self.sanitizer = sanitizer
        self.notifier = notifier
        self.transport = transport
        self.probe = probe

    def _http_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=self.transport,
            headers={"User-Agent": self.config.probe.user_agent, "Accept": "application/json"},
            timeout=self.config.probe.timeout_seconds,
        )

    async def sweep(self) -> SweepReport:
        started = time.time()
        try:
            instances = await asyncio.to_thread(self.store.list_active_instances)
        except InstanceStoreError as e:
            logger.error("Could not enumerate instances", error=f"{type(e).__name__}: {e}")
            raise SweepFatalError(f"could not enumerate instances: {e}") from e

        logger.info("Running instance sweep", instances=len(instances), concurrency=self.config.concurrency)
        semaphore = asyncio.Semaphore(self.config.concurrency)
        outcomes: list[InstanceOutcome] = []

        async with self._http_client() as client:

            async def _safe_process(instance: Instance) -> InstanceOutcome:
                async with semaphore:
                    try:
                        return await self._process_instance(client, instance)
                    except Exception as e:
                        err = f"{type(e).__name__}: {e}"
                        logger.exception("Instance check crashed", uri=instance.uri, error=err)
                        return InstanceOutcome(
                            instance_id=instance.id,
                            uri=instance.uri,
                            status="error",
                            reason="check_crashed",
                            failed_checks=instance.failed_checks,
                        )

            tasks = [asyncio.create_task(_safe_process(instance)) for instance in instances]
            try:
                for fut in asyncio.as_completed(tasks):
                    outcomes.append(await fut)
            except asyncio.CancelledError:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
                logger.warning("Instance sweep cancelled", completed=len(outcomes), total=len(tasks))
                raise

            report = SweepReport(started_at=started, finished_at=time.time(), outcomes=outcomes)
            await self._notify(report)

        logger.info(
            "Instance sweep finished",
            checked=report.checked,
            succeeded=report.succeeded,
            failed=report.failed,
            newly_banned=report.newly_banned,
            errors=report.errors,
        )
        return report

    async def _process_instance(self, client: httpx.AsyncClient, instance: Instance) -> InstanceOutcome:
        result = await self.probe(
            client,
            instance.uri,
            instance.api_mode,
            timeout=self.config.probe.timeout_seconds,
            placeholder=self.sanitizer.placeholder,
        )

        if isinstance(result, Unreachable):
            logger.info(
                "Instance unreachable",
                uri=instance.uri,
                reason=result.reason,
                detail=result.detail[:300],
                failed_checks=instance.failed_checks,
            )
            try:
                state = await asyncio.to_thread(self.tracker.record_failure, instance)
            except InstanceStoreError as e:
                return self._storage_error(instance, e)
            return InstanceOutcome(
                instance_id=instance.id,
                uri=instance.uri,
                status="banned" if state.newly_banned else "unreachable",
                reason=result.reason,
                failed_checks=state.failed_checks,
            )

        try:
            state = await asyncio.to_thread(self._persist_success, instance, result)
        except InstanceStoreError as e:
            return self._storage_error(instance, e)

        return InstanceOutcome(
            instance_id=instance.id,
            uri=instance.uri,
            status="updated",
            reason="ok",
            failed_checks=state.failed_checks,
        )

    def _persist_success(self, instance: Instance, info: InstanceInfo) -> HealthState:
        # Runs in a worker thread: the thumbnail check touches the filesystem.
        metadata = InstanceMetadata(
            title=info.title,
            description=info.description,
            thumbnail=self.sanitizer.sanitize(info.thumbnail),
            user_count=info.user_count,
            status_count=info.status_count,
            registrations=info.registrations,
            approval_required=info.approval_required,
            cache=build_cache_snapshot(info, instance=instance, fetched_at=time.time()),
        )
        self.store.replace_metadata(instance.id, metadata)
        return self.tracker.record_success(instance)

    def _storage_error(self, instance: Instance, exc: InstanceStoreError) -> InstanceOutcome:
        logger.error("Instance update failed", uri=instance.uri, error=f"{type(exc).__name__}: {exc}")
        return InstanceOutcome(
            instance_id=instance.id,
            uri=instance.uri,
            status="error",
            reason="storage_error",
            failed_checks=instance.failed_checks,
        )

    async def _notify(self, report: SweepReport) -> None:
        try:
            await self.notifier.notify(report.to_dict())
        except Exception as e:
            logger.warning("Invalidation failed", error=f"{type(e).__name__}: {e}")


class SweepRunner:
    """Single-flight guard: at most one sweep per runner at any time."""

    def __init__(self, orchestrator: SweepOrchestrator) -> None:
        self.orchestrator = orchestrator
        self.last_report: SweepReport | None = None
        self._lock = asyncio.Lock()

    @property
    def running(self) -> bool:
        return self._lock.locked()

    async def run(self) -> SweepReport:
        if self._lock.locked():
            raise SweepAlreadyRunning("a sweep is already running")
        async with self._lock:
            report = await self.orchestrator.sweep()
            self.last_report = report
            return report


def build_orchestrator(
    config: SweepConfig,
    store: InstanceStore,
    *,
    cache: TaggedCache | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    probe: ProbeFn = probe_instance,
) -> SweepOrchestrator:
    sanitizer = ThumbnailSanitizer(
        LocalAssetStore(config.thumbnails.public_dir),
        placeholder=config.thumbnails.placeholder,
        local_prefix=config.thumbnails.local_prefix,
    )
    tracker = HealthTracker(
        store,
        threshold=config.health.ban_threshold,
        ban_reason=config.health.ban_reason or "",
    )
    notifier = InvalidationNotifier(
        config.invalidation,
        cache=cache if cache is not None else TaggedCache(),
        transport=transport,
    )
    return SweepOrchestrator(
        config=config,
        store=store,
        tracker=tracker,
        sanitizer=sanitizer,
        notifier=notifier,
        transport=transport,
        probe=probe,
    )
