"""
Origin/Referer allow-list applied before any provider route is served.

Requests carrying neither header are allowed: those come from the product's own
backend calling server-to-server, which authenticates separately.
"""

import logging
from typing import Iterable, Optional
from urllib.parse import urlparse

from fastapi import Request

from ..core.config import cfg
from ..core.errors import AccessDenied

logger = logging.getLogger(__name__)


def _host_of(value: str) -> Optional[str]:
    candidate = value.strip().lower()
    if "://" not in candidate:
        candidate = f"//{candidate}"
    try:
        host = urlparse(candidate).hostname
    except ValueError:
        return None
    return host or None


def _matches(candidate: str, allowed: Iterable[str]) -> bool:
    candidate_host = _host_of(candidate)
    for entry in allowed:
        entry = entry.strip().lower()
        if not entry:
            continue
        if entry == "*":
            return True
        if "localhost" in entry:
            if "localhost" in candidate.lower():
                return True
            continue
        allowed_host = _host_of(entry)
        if not allowed_host or not candidate_host:
            continue
        if candidate_host == allowed_host or candidate_host.endswith(f".{allowed_host}"):
            return True
    return False


def _origin_of(referer: str) -> Optional[str]:
    try:
        parsed = urlparse(referer)
    except ValueError:
        return None
    if not parsed.scheme or not parsed.netloc:
        return None
    return f"{parsed.scheme}://{parsed.netloc}"


def is_allowed_origin(origin: Optional[str], referer: Optional[str], allowed: Iterable[str]) -> bool:
    allowed = list(allowed)
    if not origin and not referer:
        return True
    if origin and _matches(origin, allowed):
        return True
    if referer:
        referer_origin = _origin_of(referer)
        if referer_origin and _matches(referer_origin, allowed):
            return True
    return False


def require_allowed_origin(request: Request) -> None:
    """FastAPI dependency guarding provider routes."""
    origin = request.headers.get("origin")
    referer = request.headers.get("referer")
    if not is_allowed_origin(origin, referer, cfg.ALLOWED_ORIGINS):
        logger.warning(f"Blocked request from origin={origin!r} referer={referer!r} path={request.url.path}")
        raise AccessDenied()
