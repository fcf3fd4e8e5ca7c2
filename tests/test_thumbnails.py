from __future__ import annotations

from pathlib import Path

import pytest

from instance_checks.thumbnails import DEFAULT_PLACEHOLDER, LocalAssetStore, ThumbnailSanitizer


def _sanitizer(tmp_path: Path) -> ThumbnailSanitizer:
    public = tmp_path / "public"
    (public / "img").mkdir(parents=True)
    (public / "img" / "present.png").write_bytes(b"\x89PNG")
    (tmp_path / "secret.png").write_bytes(b"\x89PNG")
    return ThumbnailSanitizer(LocalAssetStore(public))


@pytest.mark.parametrize("value", ["", "   ", None])
def test_empty_thumbnail_becomes_placeholder(tmp_path: Path, value: str | None) -> None:
    assert _sanitizer(tmp_path).sanitize(value) == DEFAULT_PLACEHOLDER


@pytest.mark.parametrize(
    "value",
    [
        "/img/img/foo.png",
        "img/img/foo.png",
        "/img/img/img/img/present.png",
        "https://cdn.example.org//img/img/foo.png",
    ],
)
def test_runaway_paths_become_placeholder(tmp_path: Path, value: str) -> None:
    sanitizer = _sanitizer(tmp_path)
    assert sanitizer.is_runaway(value) is True
    assert sanitizer.sanitize(value) == DEFAULT_PLACEHOLDER


def test_missing_local_asset_becomes_placeholder(tmp_path: Path) -> None:
    assert _sanitizer(tmp_path).sanitize("/img/foo.png") == DEFAULT_PLACEHOLDER


def test_present_local_asset_is_kept(tmp_path: Path) -> None:
    assert _sanitizer(tmp_path).sanitize("/img/present.png") == "/img/present.png"


def test_local_asset_outside_public_dir_is_not_trusted(tmp_path: Path) -> None:
    assert _sanitizer(tmp_path).sanitize("/img/../../secret.png") == DEFAULT_PLACEHOLDER


def test_remote_url_passes_through(tmp_path: Path) -> None:
    sanitizer = _sanitizer(tmp_path)
    assert sanitizer.sanitize("https://example.org/x.png") == "https://example.org/x.png"
    assert sanitizer.sanitize("https://example.org/img/x.png") == "https://example.org/img/x.png"


@pytest.mark.parametrize(
    "value",
    [
        "",
        None,
        "/img/img/foo.png",
        "/img/foo.png",
        "/img/present.png",
        "https://example.org/x.png",
        DEFAULT_PLACEHOLDER,
    ],
)
def test_sanitize_is_idempotent(tmp_path: Path, value: str | None) -> None:
    sanitizer = _sanitizer(tmp_path)
    once = sanitizer.sanitize(value)
    assert sanitizer.sanitize(once) == once


def test_placeholder_present_on_disk_is_kept(tmp_path: Path) -> None:
    sanitizer = _sanitizer(tmp_path)
    (tmp_path / "public" / "img" / "fedi_placeholder.png").write_bytes(b"\x89PNG")
    assert sanitizer.sanitize(DEFAULT_PLACEHOLDER) == DEFAULT_PLACEHOLDER


def test_custom_local_prefix(tmp_path: Path) -> None:
    public = tmp_path / "public"
    (public / "static" / "thumbs").mkdir(parents=True)
    (public / "static" / "thumbs" / "a.png").write_bytes(b"\x89PNG")
    sanitizer = ThumbnailSanitizer(
        LocalAssetStore(public),
        placeholder="/static/thumbs/none.png",
        local_prefix="/static/thumbs/",
    )
    assert sanitizer.sanitize("/static/thumbs/a.png") == "/static/thumbs/a.png"
    assert sanitizer.sanitize("/static/thumbs/static/thumbs/a.png") == "/static/thumbs/none.png"
    # The default prefix is no longer special.
    assert sanitizer.sanitize("/img/img/a.png") == "/img/img/a.png"


def test_runaway_placeholder_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        ThumbnailSanitizer(LocalAssetStore(tmp_path), placeholder="/img/img/placeholder.png")


def test_placeholder_skips_asset_lookup(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    sanitizer = _sanitizer(tmp_path)
    lookups: list[str] = []

    def _exists(asset_path: str) -> bool:
        lookups.append(asset_path)
        return False

    monkeypatch.setattr(sanitizer.assets, "exists", _exists)

    assert sanitizer.sanitize(DEFAULT_PLACEHOLDER) == DEFAULT_PLACEHOLDER
    assert lookups == []
    assert sanitizer.sanitize("/img/other.png") == DEFAULT_PLACEHOLDER
    assert lookups == ["/img/other.png"]
