"""
Response and request helpers shared by every provider route.
"""

from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.responses import JSONResponse, Response

from ..core.config import cfg
from ..models.schemas import StreamRequest
from .constants import CORS_HEADERS, HLS_CONTENT_TYPE, PLAYLIST_CACHE_CONTROL
from .fetchers import FetchResult
from .sniffer import MediaKind, media_type_for, sniff


def cors_headers() -> Dict[str, str]:
    return dict(CORS_HEADERS)


def json_response(body: Any, status_code: int = 200, headers: Optional[Dict[str, str]] = None) -> JSONResponse:
    merged = cors_headers()
    if headers:
        merged.update(headers)
    return JSONResponse(content=body, status_code=status_code, headers=merged)


def playlist_response(text: str, headers: Optional[Dict[str, str]] = None) -> Response:
    merged = cors_headers()
    merged["Cache-Control"] = PLAYLIST_CACHE_CONTROL
    if headers:
        merged.update(headers)
    return Response(content=text, media_type=HLS_CONTENT_TYPE, headers=merged)


def media_response(result: FetchResult, cache_control: str, kind: Optional[MediaKind] = None,
                   headers: Optional[Dict[str, str]] = None) -> Response:
    if kind is None:
        kind = sniff(result.content, result.content_type, result.url)
    merged = cors_headers()
    merged["Cache-Control"] = cache_control
    merged["X-Fetched-By"] = result.stage
    if headers:
        merged.update(headers)
    return Response(content=result.content, media_type=media_type_for(kind, result.content_type), headers=merged)


def client_ip(request: Request) -> Optional[str]:
    """
    IP of the end user.

    Without a trusted edge in front, every forwarded header is client supplied and
    ignored. With one, only the header that edge sets is read.
    """
    if cfg.TRUST_PROXY_HEADERS:
        value = request.headers.get(cfg.CLIENT_IP_HEADER)
        if value:
            # Hops are appended left to right; only the last one was written by our edge
            return value.split(",")[-1].strip()
    return request.client.host if request.client else None


FORWARDED_REQUEST_HEADERS = ("user-agent", "referer", "origin")


def stream_request(provider_id: str, resource_kind: str, target_url: Optional[str], request: Request) -> StreamRequest:
    return StreamRequest(
        provider_id=provider_id,
        resource_kind=resource_kind,
        target_url=target_url or "",
        request_headers={h: request.headers[h] for h in FORWARDED_REQUEST_HEADERS if h in request.headers},
        client_ip=client_ip(request),
    )


def gateway_origin(request: Request) -> str:
    """Scheme and host players use to reach us, as rewritten playlists must point back here."""
    if cfg.PUBLIC_BASE_URL:
        return cfg.PUBLIC_BASE_URL.rstrip("/")
    if cfg.TRUST_PROXY_HEADERS:
        host = request.headers.get("x-forwarded-host")
        if host:
            proto = request.headers.get("x-forwarded-proto", request.url.scheme)
            return f"{proto}://{host.split(',')[0].strip()}"
    return str(request.base_url).rstrip("/")
