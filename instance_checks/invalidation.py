from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable

import httpx
import structlog

from instance_checks.config import InvalidationConfig


logger = structlog.get_logger(__name__)

SWEEP_COMPLETED_EVENT = "sweep.completed"


@dataclass
class _CacheEntry:
    value: Any
    tags: frozenset[str]
    stored_at: float


class TaggedCache:
    """In-process response cache keyed by path, purgeable by tag or by path."""

    def __init__(self) -> None:
        self._entries: dict[str, _CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, path: str) -> Any | None:
        entry = self._entries.get(path)
        return entry.value if entry is not None else None

    def set(self, path: str, value: Any, *, tags: Iterable[str] = ()) -> None:
        self._entries[path] = _CacheEntry(value=value, tags=frozenset(tags), stored_at=time.time())

    def purge_tags(self, tags: Iterable[str]) -> int:
        wanted = set(tags)
        doomed = [path for path, entry in self._entries.items() if entry.tags & wanted]
        for path in doomed:
            del self._entries[path]
        return len(doomed)

    def purge_paths(self, paths: Iterable[str]) -> int:
        purged = 0
        for path in paths:
            if self._entries.pop(path, None) is not None:
                purged += 1
        return purged


@dataclass(frozen=True)
class ChannelResult:
    channel: str
    ok: bool
    skipped: bool = False
    detail: str = ""


class ChannelSkipped(Exception):
    """Raised by a channel that has nothing to do with the current config."""


Channel = Callable[[httpx.AsyncClient, dict[str, Any]], Awaitable[str]]


@dataclass
class InvalidationNotifier:
    """Best-effort fan-out telling dependent caches that instance data changed.

    Every channel is attempted on every call; a failing channel is logged and
    recorded, it never stops the remaining channels and never raises.
    """

    config: InvalidationConfig
    cache: TaggedCache = field(default_factory=TaggedCache)
    transport: httpx.AsyncBaseTransport | None = None

    @property
    def channels(self) -> list[tuple[str, Channel]]:
        return [
            ("tag_purge", self._purge_tags),
            ("path_purge", self._purge_paths),
            ("revalidate_signal", self._send_revalidate_signal),
        ]

    async def _purge_tags(self, client: httpx.AsyncClient, event: dict[str, Any]) -> str:
        purged = self.cache.purge_tags(self.config.tags)
        return f"tags={','.join(self.config.tags)} purged={purged}"

    async def _purge_paths(self, client: httpx.AsyncClient, event: dict[str, Any]) -> str:
        purged = self.cache.purge_paths(self.config.paths)
        return f"paths={','.join(self.config.paths)} purged={purged}"

    async def _send_revalidate_signal(self, client: httpx.AsyncClient, event: dict[str, Any]) -> str:
        url = (self.config.revalidate_url or "").strip()
        if not url:
            raise ChannelSkipped("revalidate_url not configured")
        headers = {"Content-Type": "application/json"}
        if self.config.revalidate_token:
            headers["Authorization"] = f"Bearer {self.config.revalidate_token}"
        resp = await client.post(url, json=event, headers=headers, timeout=self.config.timeout_seconds)
        resp.raise_for_status()
        return f"status={resp.status_code}"

    async def notify(self, report: dict[str, Any] | None = None) -> list[ChannelResult]:
        event = {"event": SWEEP_COMPLETED_EVENT, "ts": time.time(), "report": report or {}}
        results: list[ChannelResult] = []
        async with httpx.AsyncClient(transport=self.transport) as client:
            for name, channel in self.channels:
                try:
                    detail = await channel(client, event)
                except ChannelSkipped as e:
                    logger.debug("Invalidation channel skipped", channel=name, reason=str(e))
                    results.append(ChannelResult(channel=name, ok=True, skipped=True, detail=str(e)))
                except Exception as e:
                    err = f"{type(e).__name__}: {e}"
                    logger.warning("Invalidation channel failed", channel=name, error=err)
                    results.append(ChannelResult(channel=name, ok=False, detail=err))
                else:
                    logger.info("Invalidation channel completed", channel=name, detail=detail)
                    results.append(ChannelResult(channel=name, ok=True, detail=detail))
        return results
