from __future__ import annotations

import hmac
from typing import Any

from fastapi import Depends, HTTPException, Request

from edge_registry.settings import RegistrySettings


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


def require_api_token(req: Request, settings: RegistrySettings = Depends(get_settings)) -> None:
    # No token configured: the API is open (local/dev deployments).
    if not settings.api_token:
        return
    token = _auth_header_token(req)
    if not token:
        raise HTTPException(status_code=401, detail="missing_bearer_token")
    if not hmac.compare_digest(token.strip().encode("utf-8"), settings.api_token.strip().encode("utf-8")):
        raise HTTPException(status_code=403, detail="invalid_token")
