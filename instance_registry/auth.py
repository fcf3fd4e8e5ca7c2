from __future__ import annotations

import hmac
from typing import Any

from fastapi import Depends, HTTPException, Request

from instance_registry.settings import RegistrySettings


def _auth_header_token(req: Request) -> str:
    raw = req.headers.get("authorization") or ""
    if not raw:
        return ""
    parts = raw.split(None, 1)
    if len(parts) != 2:
        return ""
    scheme, rest = parts[0].strip().lower(), parts[1].strip()
    if scheme != "bearer":
        return ""
    return rest


def get_settings(req: Request) -> RegistrySettings:
    settings: Any = getattr(req.app.state, "settings", None)
    if not isinstance(settings, RegistrySettings):
        raise RuntimeError("Registry settings not configured")
    return settings


def _require_token(req: Request, expected: str, *, label: str) -> None:
    # An unset token leaves the endpoint open (scheduler on the same host).
    if not expected:
        return
    token = _auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not hmac.compare_digest(token.strip(), expected.strip()):
        raise HTTPException(status_code=403, detail=f"invalid_{label}_token")


def require_sweep_token(req: Request, settings: RegistrySettings = Depends(get_settings)) -> None:
    _require_token(req, settings.sweep_token, label="sweep")


def require_revalidate_token(req: Request, settings: RegistrySettings = Depends(get_settings)) -> None:
    _require_token(req, settings.revalidate_token, label="revalidate")
