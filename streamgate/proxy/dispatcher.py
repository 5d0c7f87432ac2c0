"""
Standard route set mounted for every provider.

  GET  /<p>/health            provider health and configured backends
  GET  /<p>?channel=|url=     rewritten playlist
  GET  /<p>/key?url=          key proxy
  GET  /<p>/segment?url=      segment proxy
  POST /<p>/token             issue an IP-bound stream token
  GET  /<p>/stream?t=         redeem a token
  GET  /<p>/stream?t=&r=      sub-resource of a playlist served under a token
"""

import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from ..core.errors import BadRequest, InvalidToken
from ..models.schemas import HealthResponse, StreamToken, TokenIssueRequest, TokenIssueResponse
from ..providers.base import Provider
from ..services import metrics
from ..utils.logging import short_url
from .constants import KEY_CACHE_CONTROL, SEGMENT_CACHE_CONTROL, STREAM_CACHE_CONTROL
from .fetchers import FetchResult
from .origin_gate import require_allowed_origin
from .playlist_rewriter import PlaylistRewriter, TokenPlaylistRewriter, describe_playlist
from .responses import (
    client_ip, gateway_origin, json_response, media_response, playlist_response, stream_request,
)
from .sniffer import MediaKind, sniff
from .token_store import TokenStore

logger = logging.getLogger(__name__)


def _rewriter(provider: Provider, request: Request, context: Optional[dict] = None) -> PlaylistRewriter:
    return PlaylistRewriter(
        gateway_origin(request),
        provider.name,
        context=context,
        playlist_suffixes=provider.playlist_suffixes,
    )


def _proxied(provider: Provider, request: Request, result: FetchResult, cache_control: str,
             context: Optional[dict] = None) -> Response:
    """Binary passthrough, unless the body turns out to be a playlist that needs rewriting."""
    kind = sniff(result.content, result.content_type, result.url)
    if kind is MediaKind.PLAYLIST:
        rewritten = _rewriter(provider, request, context).rewrite(result.text, result.url)
        return playlist_response(rewritten, {"X-Fetched-By": result.stage})
    return media_response(result, cache_control, kind)


async def _tokenized_playlist(provider: Provider, request: Request, tokens: TokenStore,
                              stream_token: StreamToken, text: str, base_url: str,
                              headers: Optional[dict] = None) -> Response:
    rewriter = TokenPlaylistRewriter(gateway_origin(request), provider.name, stream_token.token,
                                     playlist_suffixes=provider.playlist_suffixes)
    rewritten = rewriter.rewrite(text, base_url)
    await tokens.attach_refs(stream_token, rewriter.refs)
    return playlist_response(rewritten, headers)


async def _tokenized(provider: Provider, request: Request, tokens: TokenStore, stream_token: StreamToken,
                     result: FetchResult, cache_control: str) -> Response:
    """Like _proxied, but playlists keep every reference behind the token."""
    kind = sniff(result.content, result.content_type, result.url)
    if kind is MediaKind.PLAYLIST:
        return await _tokenized_playlist(provider, request, tokens, stream_token, result.text, result.url,
                                         {"X-Fetched-By": result.stage})
    return media_response(result, cache_control, kind)


def build_provider_router(provider: Provider, tokens: TokenStore) -> APIRouter:
    name = provider.name
    router = APIRouter(prefix=f"/{name}", tags=[name])
    gate = [Depends(require_allowed_origin)]

    @router.get("/health")
    async def provider_health():
        metrics.on_request(name, "health")
        body = HealthResponse(
            status="healthy",
            provider=name,
            config=provider.health_config(),
            timestamp=datetime.now(timezone.utc),
        )
        return json_response(body.model_dump(mode="json"))

    @router.get("", dependencies=gate)
    async def playlist(request: Request, channel: Optional[str] = None, url: Optional[str] = None):
        metrics.on_request(name, "playlist")
        params = dict(request.query_params)
        if not channel and not url:
            raise BadRequest("Missing channel or url parameter")
        if channel:
            fetched = await provider.playlist_for_channel(channel)
        else:
            fetched = await provider.playlist_for_url(provider.validate_upstream_url(url), params)
        logger.info(f"{name}: {describe_playlist(fetched.text)} from {short_url(fetched.base_url)}")
        rewritten = _rewriter(provider, request, provider.rewrite_context(params)).rewrite(
            fetched.text, fetched.base_url
        )
        return playlist_response(rewritten, fetched.headers)

    @router.get("/key", dependencies=gate)
    async def key(request: Request, url: Optional[str] = None):
        metrics.on_request(name, "key")
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(stream_request(name, "key", url, request))
        params = dict(request.query_params)
        result = await provider.fetch_key(url, params)
        return media_response(result, KEY_CACHE_CONTROL)

    @router.get("/segment", dependencies=gate)
    async def segment(request: Request, url: Optional[str] = None):
        metrics.on_request(name, "segment")
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug(stream_request(name, "segment", url, request))
        params = dict(request.query_params)
        result = await provider.fetch_segment(url, params)
        return _proxied(provider, request, result, SEGMENT_CACHE_CONTROL, provider.rewrite_context(params))

    @router.post("/token", dependencies=gate)
    async def issue_token(request: Request, body: TokenIssueRequest):
        metrics.on_request(name, "token")
        resolution = provider.resolution_for(body)
        bound_ip = body.client_binding_key or client_ip(request)
        stream_token = await tokens.issue(resolution, bound_ip)
        response = TokenIssueResponse(
            stream_url=f"/{name}/stream?t={stream_token.token}",
            expires_in=int(stream_token.expires_at - stream_token.created_at),
        )
        return json_response(response.model_dump(by_alias=True))

    @router.get("/stream", dependencies=gate)
    async def stream(request: Request, t: Optional[str] = Query(default=None),
                     r: Optional[str] = Query(default=None)):
        metrics.on_request(name, "stream")
        stream_token = await tokens.resolve(t, client_ip(request))
        if stream_token is None:
            raise InvalidToken()
        if r is None:
            result = await provider.fetch_resolution(stream_token.resolution)
            return await _tokenized(provider, request, tokens, stream_token, result, STREAM_CACHE_CONTROL)

        ref = await tokens.resolve_ref(stream_token, r)
        if ref is None:
            raise InvalidToken()
        headers = provider.resolution_headers(stream_token.resolution, ref.url)
        if ref.kind == "key":
            result = await provider.fetch_key(ref.url, headers=headers)
            return media_response(result, KEY_CACHE_CONTROL)
        if ref.kind == "playlist":
            fetched = await provider.playlist_for_url(ref.url, headers=headers)
            return await _tokenized_playlist(provider, request, tokens, stream_token, fetched.text,
                                             fetched.base_url, fetched.headers)
        result = await provider.fetch_segment(ref.url, headers=headers)
        return await _tokenized(provider, request, tokens, stream_token, result, SEGMENT_CACHE_CONTROL)

    provider.register_routes(router)
    return router
