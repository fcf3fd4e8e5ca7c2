from __future__ import annotations

import re
from pathlib import Path

import structlog


logger = structlog.get_logger(__name__)

DEFAULT_PLACEHOLDER = "/img/fedi_placeholder.png"
DEFAULT_LOCAL_PREFIX = "/img/"


class LocalAssetStore:
    """Answers whether a local asset path (e.g. `/img/x.png`) exists under the public dir."""

    def __init__(self, public_dir: str | Path) -> None:
        self.root = Path(public_dir).resolve()

    def exists(self, asset_path: str) -> bool:
        rel = str(asset_path or "").lstrip("/")
        if not rel:
            return False
        candidate = (self.root / rel).resolve()
        # Paths escaping the public dir never count as present.
        if candidate != self.root and self.root not in candidate.parents:
            return False
        return candidate.is_file()


def _runaway_pattern(local_prefix: str) -> re.Pattern[str]:
    segment = local_prefix.strip("/")
    if not segment:
        raise ValueError("local_prefix must name a directory, e.g. '/img/'")
    seg = re.escape(segment)
    return re.compile(rf"(?:^|/){seg}/{seg}/")


class ThumbnailSanitizer:
    """Repairs thumbnail references before they are persisted.

    Rules, first match wins:
      - empty or the placeholder itself -> placeholder
      - local prefix nested in itself (`/img/img/...`) -> placeholder
      - local asset that is missing on disk -> placeholder
      - anything else (remote URLs) -> unchanged

    The result is stable under repeated application, which matters because the
    sweep feeds previously sanitized values back through it.
    """

    def __init__(
        self,
        assets: LocalAssetStore,
        *,
        placeholder: str = DEFAULT_PLACEHOLDER,
        local_prefix: str = DEFAULT_LOCAL_PREFIX,
    ) -> None:
        self.assets = assets
        self.placeholder = placeholder
        self.local_prefix = "/" + local_prefix.strip("/") + "/"
        self._runaway_re = _runaway_pattern(local_prefix)
        if not placeholder or self._runaway_re.search(placeholder):
            raise ValueError(f"Invalid thumbnail placeholder: {placeholder!r}")

    def is_runaway(self, path: str | None) -> bool:
        return bool(path) and bool(self._runaway_re.search(str(path)))

    def sanitize(self, path: str | None) -> str:
        if path is None or not str(path).strip():
            return self.placeholder

        value = str(path)
        if value == self.placeholder:
            return value

        if self.is_runaway(value):
            logger.info("Fixing runaway thumbnail path", thumbnail=value[:300])
            return self.placeholder

        if value.startswith(self.local_prefix):
            try:
                present = self.assets.exists(value)
            except (OSError, ValueError) as e:
                logger.warning("Error validating cached thumbnail", thumbnail=value, error=str(e))
                return self.placeholder
            if not present:
                logger.info("Cached thumbnail not found, using fallback", thumbnail=value)
                return self.placeholder
            return value

        return value
