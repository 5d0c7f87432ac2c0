"""
Server key discovery for the live TV provider.

Each channel is served by one of a handful of edge servers. The provider exposes a
lookup endpoint on several mirror domains; the answer is cached per channel for a
TTL and replaced whenever a different server turns out to be the one serving.
"""

import logging
import time
from typing import Callable, Iterator, List, Optional, Tuple

import httpx

from ..core.config import cfg
from ..core.errors import ResolutionFailed
from ..models.schemas import ServerKeyCacheEntry
from ..services.metrics import gw_server_lookups
from ..utils.simple_cache import SimpleCache
from .constants import BROWSER_USER_AGENT

logger = logging.getLogger(__name__)

ALL_SERVER_KEYS = ["zeko", "wind", "nfs", "ddy6", "chevy", "top1/cdn"]
CDN_DOMAINS = ["kiko2.ru", "giokko.ru"]
PLAYER_DOMAIN = "epicplayplay.cfd"
LOOKUP_TIMEOUT_S = 10.0


def build_playlist_url(server_key: str, channel_key: str, domain: str) -> str:
    if server_key == "top1/cdn":
        return f"https://top1.{domain}/top1/cdn/{channel_key}/mono.css"
    return f"https://{server_key}new.{domain}/{server_key}/{channel_key}/mono.css"


def player_headers(player_domain: str = PLAYER_DOMAIN) -> dict:
    return {
        "User-Agent": BROWSER_USER_AGENT,
        "Referer": f"https://{player_domain}/",
        "Origin": f"https://{player_domain}",
    }


class ServerResolver:
    def __init__(self, client: httpx.AsyncClient, mirrors: Optional[List[str]] = None,
                 ttl: Optional[float] = None, clock: Callable[[], float] = time.time):
        self.client = client
        self.mirrors = list(mirrors if mirrors is not None else cfg.SERVER_LOOKUP_MIRRORS)
        self.ttl = ttl if ttl is not None else cfg.SERVER_KEY_CACHE_TTL_S
        self._clock = clock
        self._cache = SimpleCache(default_ttl=self.ttl, clock=clock)

    async def resolve(self, channel_key: str) -> ServerKeyCacheEntry:
        """
        Return the server key for a channel, querying mirrors on a cache miss.

        Raises:
            ResolutionFailed: no mirror returned a usable server key
        """
        cached = self._cache.get(channel_key)
        if cached is not None:
            gw_server_lookups.labels(result="cache_hit").inc()
            return cached

        errors = []
        for mirror in self.mirrors:
            lookup_url = f"https://{mirror}/server_lookup"
            try:
                response = await self.client.get(
                    lookup_url,
                    params={"channel_id": channel_key},
                    headers=player_headers(),
                    timeout=LOOKUP_TIMEOUT_S,
                )
            except httpx.HTTPError as e:
                errors.append(f"{mirror}: {type(e).__name__}")
                logger.warning(f"Server lookup via {mirror} failed for {channel_key}: {e}")
                continue

            server_key = self._parse_lookup(response)
            if server_key:
                entry = ServerKeyCacheEntry(
                    channel_key=channel_key,
                    server_key=server_key,
                    player_domain=PLAYER_DOMAIN,
                    fetched_at=self._clock(),
                )
                self._cache.set(channel_key, entry)
                gw_server_lookups.labels(result="resolved").inc()
                logger.info(f"Resolved {channel_key} to server {server_key} via {mirror}")
                return entry
            errors.append(f"{mirror}: HTTP {response.status_code}")

        gw_server_lookups.labels(result="failed").inc()
        logger.error(f"Server lookup failed on every mirror for {channel_key}")
        raise ResolutionFailed(f"Server lookup failed for {channel_key}", mirrors=errors)

    @staticmethod
    def _parse_lookup(response: httpx.Response) -> Optional[str]:
        if response.status_code != 200:
            return None
        text = response.text.lstrip()
        # Mirrors answer with an HTML challenge page when they block us
        if not text or text.startswith("<"):
            return None
        try:
            data = response.json()
        except ValueError:
            return None
        if not isinstance(data, dict):
            return None
        server_key = data.get("server_key")
        return server_key if isinstance(server_key, str) and server_key.strip() else None

    def remember(self, channel_key: str, server_key: str, domain: Optional[str] = None) -> ServerKeyCacheEntry:
        """Record the server that actually served a playlist, replacing the looked-up one."""
        entry = ServerKeyCacheEntry(
            channel_key=channel_key,
            server_key=server_key,
            player_domain=PLAYER_DOMAIN,
            fetched_at=self._clock(),
        )
        self._cache.set(channel_key, entry)
        if domain:
            logger.debug(f"Remembered {channel_key} -> {server_key}@{domain}")
        return entry

    def forget(self, channel_key: str):
        self._cache.delete(channel_key)

    @staticmethod
    def candidates(entry: ServerKeyCacheEntry) -> Iterator[Tuple[str, str]]:
        """(server_key, domain) pairs to try: resolved server first, then the rest."""
        ordered = [entry.server_key] + [k for k in ALL_SERVER_KEYS if k != entry.server_key]
        for server_key in ordered:
            for domain in CDN_DOMAINS:
                yield server_key, domain
