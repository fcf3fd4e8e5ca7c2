from __future__ import annotations

import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable
from urllib.parse import urlsplit

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from instance_checks.thumbnails import DEFAULT_PLACEHOLDER


logger = structlog.get_logger(__name__)


class ApiMode(str, Enum):
    MASTODON = "mastodon"
    PLEROMA = "pleroma"
    AKKOMA = "akkoma"
    GOTOSOCIAL = "gotosocial"
    FRIENDICA = "friendica"
    PIXELFED = "pixelfed"
    MISSKEY = "misskey"
    FIREFISH = "firefish"

    @classmethod
    def parse(cls, value: Any) -> "ApiMode":
        s = str(value or "").strip().lower()
        try:
            return cls(s)
        except ValueError:
            raise ValueError(f"Unsupported api mode: {value!r}") from None


@dataclass(frozen=True)
class InstanceInfo:
    title: str
    description: str
    short_description: str
    thumbnail: str
    user_count: int
    status_count: int
    registrations: bool
    approval_required: bool
    contact_account: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Unreachable:
    reason: str
    detail: str = ""
    elapsed_ms: float | None = None


ProbeResult = InstanceInfo | Unreachable


class _Lenient(BaseModel):
    model_config = ConfigDict(extra="ignore")


class _MastodonStats(_Lenient):
    user_count: int | None = None
    status_count: int | None = None


class _ContactAccount(_Lenient):
    username: str | None = None
    acct: str | None = None


class MastodonInstancePayload(_Lenient):
    """`GET /api/v1/instance`, shared by Mastodon-compatible servers."""
    title: str
    uri: str | None = None
    short_description: str | None = None
    description: str | None = None
    thumbnail: str | None = None
    stats: _MastodonStats = Field(default_factory=_MastodonStats)
    registrations: bool | None = None
    approval_required: bool | None = None
    contact_account: _ContactAccount | None = None


class MisskeyMetaPayload(_Lenient):
    """`POST /api/meta` on Misskey and its forks."""
    version: str
    name: str | None = None
    uri: str | None = None
    description: str | None = None
    bannerUrl: str | None = None  # noqa: N815
    iconUrl: str | None = None  # noqa: N815
    disableRegistration: bool | None = None  # noqa: N815
    emailRequiredForSignup: bool | None = None  # noqa: N815
    maintainerName: str | None = None  # noqa: N815


def _count(value: int | None) -> int:
    if value is None:
        return 0
    return max(0, int(value))


def _text(value: str | None) -> str:
    return (value or "").strip()


def _host(uri: str) -> str:
    return (urlsplit(instance_base_url(uri)).hostname or uri).lower()


def _normalize_mastodon(payload: MastodonInstancePayload, *, uri: str, placeholder: str) -> InstanceInfo:
    short = _text(payload.short_description)
    contact = None
    if payload.contact_account is not None:
        contact = _text(payload.contact_account.username) or _text(payload.contact_account.acct) or None
    return InstanceInfo(
        title=_text(payload.title) or _host(uri),
        description=_text(payload.description) or short,
        short_description=short,
        thumbnail=_text(payload.thumbnail) or placeholder,
        user_count=_count(payload.stats.user_count),
        status_count=_count(payload.stats.status_count),
        registrations=bool(payload.registrations),
        approval_required=bool(payload.approval_required),
        contact_account=contact,
    )


def _normalize_misskey(payload: MisskeyMetaPayload, *, uri: str, placeholder: str) -> InstanceInfo:
    # /api/meta carries no user or note counts.
    description = _text(payload.description)
    return InstanceInfo(
        title=_text(payload.name) or _host(uri),
        description=description,
        short_description=description,
        thumbnail=_text(payload.bannerUrl) or _text(payload.iconUrl) or placeholder,
        user_count=0,
        status_count=0,
        registrations=not bool(payload.disableRegistration),
        approval_required=False,
        contact_account=_text(payload.maintainerName) or None,
    )


@dataclass(frozen=True)
class Dialect:
    method: str
    path: str
    payload_model: type[BaseModel]
    normalize: Callable[..., InstanceInfo]
    body: dict[str, Any] | None = None


_MASTODON_API = Dialect(
    method="GET",
    path="/api/v1/instance",
    payload_model=MastodonInstancePayload,
    normalize=_normalize_mastodon,
)
_MISSKEY_API = Dialect(
    method="POST",
    path="/api/meta",
    payload_model=MisskeyMetaPayload,
    normalize=_normalize_misskey,
    body={"detail": True},
)

DIALECTS: dict[ApiMode, Dialect] = {
    ApiMode.MASTODON: _MASTODON_API,
    ApiMode.PLEROMA: _MASTODON_API,
    ApiMode.AKKOMA: _MASTODON_API,
    ApiMode.GOTOSOCIAL: _MASTODON_API,
    ApiMode.FRIENDICA: _MASTODON_API,
    ApiMode.PIXELFED: _MASTODON_API,
    ApiMode.MISSKEY: _MISSKEY_API,
    ApiMode.FIREFISH: _MISSKEY_API,
}


def instance_base_url(uri: str) -> str:
    s = (uri or "").strip()
    if "://" not in s:
        s = f"https://{s}"
    parts = urlsplit(s)
    return f"{parts.scheme}://{parts.netloc}"


async def probe_instance(
    client: httpx.AsyncClient,
    uri: str,
    mode: ApiMode | str,
    *,
    timeout: float = 10.0,
    placeholder: str = DEFAULT_PLACEHOLDER,
) -> ProbeResult:
    """Fetch instance metadata with a single request.

    Never raises: transport errors, timeouts, non-2xx responses and payloads
    that do not match the dialect all come back as Unreachable. Redirects are
    not followed, so a 3xx answer is an http_status failure.
    """
    if not (uri or "").strip():
        return Unreachable(reason="empty_uri")
    try:
        api_mode = ApiMode.parse(mode)
    except ValueError as e:
        return Unreachable(reason="unsupported_api_mode", detail=str(e))

    dialect = DIALECTS[api_mode]
    started = time.perf_counter()

    def _elapsed() -> float:
        return round((time.perf_counter() - started) * 1000.0, 3)

    try:
        url = instance_base_url(uri) + dialect.path
        resp = await client.request(
            dialect.method,
            url,
            json=dialect.body,
            timeout=timeout,
            follow_redirects=False,
        )
        if not (200 <= resp.status_code < 300):
            return Unreachable(reason="http_status", detail=str(resp.status_code), elapsed_ms=_elapsed())
        try:
            data = resp.json()
        except ValueError as e:
            return Unreachable(reason="invalid_json", detail=str(e)[:300], elapsed_ms=_elapsed())
        if not isinstance(data, dict):
            return Unreachable(reason="malformed_payload", detail="not a JSON object", elapsed_ms=_elapsed())
        try:
            payload = dialect.payload_model.model_validate(data)
        except ValidationError as e:
            return Unreachable(
                reason="malformed_payload",
                detail=f"{e.error_count()} validation error(s)",
                elapsed_ms=_elapsed(),
            )
        info = dialect.normalize(payload, uri=uri, placeholder=placeholder)
    except httpx.TimeoutException as e:
        return Unreachable(reason="timeout", detail=f"{type(e).__name__}: {e}", elapsed_ms=_elapsed())
    except httpx.HTTPError as e:
        return Unreachable(reason="http_error", detail=f"{type(e).__name__}: {e}", elapsed_ms=_elapsed())
    except Exception as e:
        logger.warning("Instance probe crashed", uri=uri, mode=api_mode.value, error=f"{type(e).__name__}: {e}")
        return Unreachable(reason="probe_crashed", detail=f"{type(e).__name__}: {e}", elapsed_ms=_elapsed())

    return replace(info, raw=data)
