from __future__ import annotations

import json
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from typing import Any, Callable, Iterator

import httpx
import pytest

from instance_checks.dialects import (
    ApiMode,
    InstanceInfo,
    Unreachable,
    instance_base_url,
    probe_instance,
)
from instance_checks.thumbnails import DEFAULT_PLACEHOLDER


MASTODON_INSTANCE = {
    "uri": "social.example",
    "title": "Social Example",
    "short_description": "A small server",
    "description": "<p>A small server for friends</p>",
    "thumbnail": "https://social.example/files/thumb.png",
    "stats": {"user_count": 1234, "status_count": 98765, "domain_count": 4000},
    "registrations": True,
    "approval_required": True,
    "contact_account": {"username": "admin", "acct": "admin"},
    "languages": ["en"],
}

MISSKEY_META = {
    "version": "13.14.2",
    "name": "Misskey Example",
    "uri": "https://misskey.example",
    "description": "Notes for everyone",
    "bannerUrl": "https://misskey.example/banner.webp",
    "iconUrl": "https://misskey.example/icon.png",
    "disableRegistration": True,
    "maintainerName": "mod",
}


def _recording_client(handler: Callable[[httpx.Request], httpx.Response]) -> tuple[httpx.AsyncClient, list[httpx.Request]]:
    calls: list[httpx.Request] = []

    def _handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return handler(request)

    return httpx.AsyncClient(transport=httpx.MockTransport(_handler)), calls


@pytest.mark.asyncio
async def test_probe_mastodon_normalizes_payload() -> None:
    client, calls = _recording_client(lambda r: httpx.Response(200, json=MASTODON_INSTANCE))
    async with client:
        result = await probe_instance(client, "social.example", "mastodon")

    assert isinstance(result, InstanceInfo)
    assert result.title == "Social Example"
    assert result.description == "<p>A small server for friends</p>"
    assert result.short_description == "A small server"
    assert result.thumbnail == "https://social.example/files/thumb.png"
    assert result.user_count == 1234
    assert result.status_count == 98765
    assert result.registrations is True
    assert result.approval_required is True
    assert result.contact_account == "admin"
    assert result.raw["languages"] == ["en"]

    assert len(calls) == 1
    assert calls[0].method == "GET"
    assert str(calls[0].url) == "https://social.example/api/v1/instance"


@pytest.mark.asyncio
async def test_probe_defaults_missing_optional_fields() -> None:
    payload = {"title": "Bare", "thumbnail": None, "stats": {"user_count": None, "status_count": -3}}
    client, _calls = _recording_client(lambda r: httpx.Response(200, json=payload))
    async with client:
        result = await probe_instance(client, "bare.example", ApiMode.GOTOSOCIAL)

    assert isinstance(result, InstanceInfo)
    assert result.thumbnail == DEFAULT_PLACEHOLDER
    assert result.description == ""
    assert result.user_count == 0
    assert result.status_count == 0
    assert result.registrations is False
    assert result.approval_required is False
    assert result.contact_account is None


@pytest.mark.asyncio
async def test_probe_misskey_posts_meta_request() -> None:
    client, calls = _recording_client(lambda r: httpx.Response(200, json=MISSKEY_META))
    async with client:
        result = await probe_instance(client, "misskey.example", "misskey")

    assert isinstance(result, InstanceInfo)
    assert result.title == "Misskey Example"
    assert result.thumbnail == "https://misskey.example/banner.webp"
    assert result.registrations is False
    assert result.contact_account == "mod"
    assert result.user_count == 0

    assert len(calls) == 1
    assert calls[0].method == "POST"
    assert calls[0].url.path == "/api/meta"
    assert json.loads(calls[0].content) == {"detail": True}


@pytest.mark.asyncio
async def test_probe_misskey_without_name_falls_back_to_host() -> None:
    meta = {"version": "2024.1.0", "name": None, "disableRegistration": False}
    client, _calls = _recording_client(lambda r: httpx.Response(200, json=meta))
    async with client:
        result = await probe_instance(client, "Fire.Example", "firefish")

    assert isinstance(result, InstanceInfo)
    assert result.title == "fire.example"
    assert result.registrations is True
    assert result.thumbnail == DEFAULT_PLACEHOLDER


@pytest.mark.asyncio
async def test_probe_non_2xx_is_unreachable_without_retry() -> None:
    client, calls = _recording_client(lambda r: httpx.Response(503, text="Service Unavailable"))
    async with client:
        result = await probe_instance(client, "down.example", "mastodon")

    assert isinstance(result, Unreachable)
    assert result.reason == "http_status"
    assert result.detail == "503"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_probe_redirect_is_not_followed() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(301, headers={"Location": "https://elsewhere.example/api/v1/instance"})

    client, calls = _recording_client(_handler)
    async with client:
        result = await probe_instance(client, "moved.example", "mastodon")

    assert isinstance(result, Unreachable)
    assert result.reason == "http_status"
    assert result.detail == "301"
    assert len(calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("response", "reason"),
    [
        (httpx.Response(200, text="<html>maintenance</html>"), "invalid_json"),
        (httpx.Response(200, json=[1, 2, 3]), "malformed_payload"),
        (httpx.Response(200, json={"stats": {}}), "malformed_payload"),
        (httpx.Response(200, json={"title": "x", "stats": {"user_count": "many"}}), "malformed_payload"),
    ],
)
async def test_probe_bad_payloads_are_unreachable(response: httpx.Response, reason: str) -> None:
    client, _calls = _recording_client(lambda r: response)
    async with client:
        result = await probe_instance(client, "odd.example", "mastodon")
    assert isinstance(result, Unreachable)
    assert result.reason == reason


@pytest.mark.asyncio
async def test_probe_timeout_is_unreachable() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    client, calls = _recording_client(_handler)
    async with client:
        result = await probe_instance(client, "slow.example", "pleroma", timeout=0.5)
    assert isinstance(result, Unreachable)
    assert result.reason == "timeout"
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_probe_connect_error_is_unreachable() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    client, _calls = _recording_client(_handler)
    async with client:
        result = await probe_instance(client, "gone.example", "akkoma")
    assert isinstance(result, Unreachable)
    assert result.reason == "http_error"
    assert "ConnectError" in result.detail


@pytest.mark.asyncio
async def test_probe_unknown_mode_makes_no_request() -> None:
    client, calls = _recording_client(lambda r: httpx.Response(200, json=MASTODON_INSTANCE))
    async with client:
        result = await probe_instance(client, "social.example", "diaspora")
    assert isinstance(result, Unreachable)
    assert result.reason == "unsupported_api_mode"
    assert calls == []


@pytest.mark.asyncio
async def test_probe_empty_uri_is_unreachable() -> None:
    client, calls = _recording_client(lambda r: httpx.Response(200, json=MASTODON_INSTANCE))
    async with client:
        result = await probe_instance(client, "  ", "mastodon")
    assert isinstance(result, Unreachable)
    assert result.reason == "empty_uri"
    assert calls == []


def test_api_mode_parse() -> None:
    assert ApiMode.parse(" Mastodon ") is ApiMode.MASTODON
    with pytest.raises(ValueError):
        ApiMode.parse("")


@pytest.mark.parametrize(
    ("uri", "expected"),
    [
        ("social.example", "https://social.example"),
        ("social.example/", "https://social.example"),
        ("http://127.0.0.1:8080", "http://127.0.0.1:8080"),
        ("https://social.example/about", "https://social.example"),
    ],
)
def test_instance_base_url(uri: str, expected: str) -> None:
    assert instance_base_url(uri) == expected


class _InstanceApiHandler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
        return

    def do_GET(self) -> None:  # noqa: N802
        if self.path != "/api/v1/instance":
            self.send_error(404)
            return
        body = json.dumps(MASTODON_INSTANCE).encode("utf-8")
        self.send_response(200)
        self.send_header("Content-Type", "application/json; charset=utf-8")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


@pytest.fixture()
def local_instance_url() -> Iterator[str]:
    httpd = HTTPServer(("127.0.0.1", 0), _InstanceApiHandler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.mark.asyncio
async def test_probe_against_local_server(local_instance_url: str) -> None:
    async with httpx.AsyncClient() as client:
        result = await probe_instance(client, local_instance_url, "mastodon", timeout=5.0)
    assert isinstance(result, InstanceInfo)
    assert result.title == "Social Example"
    assert result.user_count == 1234
