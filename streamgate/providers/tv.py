"""
Live TV channels.

Channels are numbered; each is served from one of several edge servers whose
playlist hides behind a `mono.css` path. The server is discovered through the
resolver and the other known servers are tried when it does not answer.
"""

import json
import logging
from typing import Dict, List, Mapping, Optional

import httpx
from fastapi import APIRouter, Depends
from fastapi.responses import Response

from ..core.errors import BadRequest, UpstreamExhausted
from ..proxy.fetch_chain import FetchChain
from ..proxy.fetchers import FetchResult, ResponseClassifier
from ..proxy.origin_gate import require_allowed_origin
from ..proxy.responses import cors_headers
from ..proxy.server_resolver import PLAYER_DOMAIN, ServerResolver, build_playlist_url, player_headers
from ..services import metrics
from ..utils.logging import short_url
from .base import PlaylistFetch, Provider
from .tv_auth import KeySession, KeySessionPool, channel_from_key_url

logger = logging.getLogger(__name__)

MAX_CHANNEL = 850
KEY_LENGTH = 16
SCHEDULE_DOMAIN = "daddyhd.com"
SCHEDULE_CACHE_CONTROL = "public, max-age=60"


class KeyClassifier(ResponseClassifier):
    """Keys are exactly 16 raw bytes; anything else is an error page or an auth failure."""

    body_markers = ('"E2"', "Session must be created", '"E3"', "Token expired")

    def failure_reason(self, result: FetchResult) -> Optional[str]:
        reason = super().failure_reason(result)
        if reason:
            return reason
        if len(result.content) != KEY_LENGTH:
            return f"invalid key length {len(result.content)}"
        if result.content[:1] in (b"{", b"["):
            return "json instead of key"
        return None


def session_rejected(error: UpstreamExhausted) -> bool:
    """True when the key server refused the session rather than the exit IP."""
    return any(
        marker in (attempt.get("error") or "")
        for attempt in error.attempts
        for marker in KeyClassifier.body_markers
    )


def parse_channel(channel: str) -> int:
    try:
        number = int(channel)
    except (TypeError, ValueError):
        raise BadRequest("Channel must be numeric", channel=channel)
    if not 1 <= number <= MAX_CHANNEL:
        raise BadRequest(f"Channel must be between 1 and {MAX_CHANNEL}", channel=channel)
    return number


class TvProvider(Provider):
    name = "tv"
    referer = f"https://{PLAYER_DOMAIN}/"
    playlist_suffixes = (".m3u8", ".css")

    def __init__(self, chain: FetchChain, resolver: ServerResolver, sessions: Optional[KeySessionPool] = None):
        super().__init__(chain)
        self.resolver = resolver
        self.sessions = sessions or KeySessionPool(chain.client)
        self.key_classifier = KeyClassifier()
        # The key server blocks datacenter ranges; with a relay available the direct attempt is wasted
        self.direct_keys = not chain.has_relays

    def upstream_headers(self, url: str, params: Optional[Mapping[str, str]] = None):
        return player_headers()

    async def playlist_for_channel(self, channel: str) -> PlaylistFetch:
        channel_key = f"premium{parse_channel(channel)}"
        entry = await self.resolver.resolve(channel_key)

        attempts: List[dict] = []
        for server_key, domain in self.resolver.candidates(entry):
            url = build_playlist_url(server_key, channel_key, domain)
            try:
                result = await self.chain.fetch(url, self.upstream_headers(url), self.playlist_classifier)
            except UpstreamExhausted as e:
                attempts.extend({**a, "stage": f"{server_key}@{domain}/{a['stage']}"} for a in e.attempts)
                continue

            if server_key != entry.server_key:
                self.resolver.remember(channel_key, server_key, domain)
            logger.info(f"Channel {channel_key} served by {server_key}@{domain} via {result.stage}")
            return PlaylistFetch(
                text=result.text,
                base_url=result.url or url,
                headers={"X-Stream-Server": server_key, "X-Stream-Domain": domain},
            )

        self.resolver.forget(channel_key)
        raise UpstreamExhausted(
            f"No server returned a playlist for {channel_key}",
            attempts=attempts,
            no_relay_configured=not self.chain.has_relays,
        )

    async def fetch_key(self, url: str, params: Optional[Mapping[str, str]] = None,
                        headers: Optional[Dict[str, str]] = None) -> FetchResult:
        url = self.validate_upstream_url(url)
        channel = channel_from_key_url(url)
        if channel is None:
            return await super().fetch_key(url, params, headers)

        base = headers if headers is not None else self.upstream_headers(url, params)
        session = await self.sessions.get(channel)
        if session is None:
            logger.warning(f"No key session for channel {channel}, fetching key without one")
            return await super().fetch_key(url, params, base)

        try:
            return await self._fetch_key_with(url, base, session)
        except UpstreamExhausted as e:
            if not session_rejected(e):
                raise
            logger.info(f"Key server rejected session for {session.channel_key}, fetching a fresh one")
            self.sessions.discard(channel, session)
            fresh = await self.sessions.get(channel, force_new=True)
            if fresh is None:
                raise
            return await self._fetch_key_with(url, base, fresh)

    async def _fetch_key_with(self, url: str, base: Dict[str, str], session: KeySession) -> FetchResult:
        # A failed heartbeat is often just rate limiting; the key may still be served
        await self.sessions.heartbeat(session)
        headers = dict(base)
        headers.update(session.auth_headers())
        return await self.chain.fetch(url, headers, self.key_classifier, direct=self.direct_keys)

    async def fetch_schedule(self, source: Optional[str]) -> Response:
        url = f"https://{SCHEDULE_DOMAIN}/schedule-api.php" if source else f"https://{SCHEDULE_DOMAIN}/"
        if source:
            url = str(httpx.URL(url, params={"source": source}))
        headers = {
            "User-Agent": player_headers()["User-Agent"],
            "Accept": "text/html,application/json",
            "Referer": f"https://{SCHEDULE_DOMAIN}/",
        }
        result = await self.chain.fetch(url, headers)
        content = result.text
        if source:
            # The API wraps the schedule HTML in a JSON envelope
            try:
                data = json.loads(content)
            except ValueError:
                data = None
            if isinstance(data, dict) and data.get("success") and data.get("html"):
                content = data["html"]
        logger.debug(f"Schedule fetched from {short_url(url)} ({len(content)} chars)")
        headers = cors_headers()
        headers["Cache-Control"] = SCHEDULE_CACHE_CONTROL
        return Response(content=content, media_type="text/html; charset=utf-8", headers=headers)

    def health_config(self):
        config = super().health_config()
        config["lookup_mirrors"] = len(self.resolver.mirrors)
        config["key_session_pool_size"] = self.sessions.pool_size
        return config

    def register_routes(self, router: APIRouter):
        @router.get("/schedule", dependencies=[Depends(require_allowed_origin)])
        async def schedule(source: Optional[str] = None):
            metrics.on_request(self.name, "schedule")
            return await self.fetch_schedule(source)
