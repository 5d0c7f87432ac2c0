"""
Common provider behaviour.

A provider knows how to turn a request into upstream URLs and headers, and which
responses from its upstream count as usable. Route wiring, rewriting, tokens and
CORS are handled once in the dispatcher.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple
from urllib.parse import urlparse

from fastapi import APIRouter

from ..core.config import cfg
from ..core.errors import BadRequest
from ..models.schemas import Resolution, TokenIssueRequest, UrlResolution
from ..proxy.constants import BROWSER_USER_AGENT
from ..proxy.fetch_chain import FetchChain
from ..proxy.fetchers import FetchResult, PlaylistClassifier, ResponseClassifier

logger = logging.getLogger(__name__)


@dataclass
class PlaylistFetch:
    """An upstream playlist ready for rewriting."""
    text: str
    base_url: str
    headers: Dict[str, str] = field(default_factory=dict)


class Provider:
    name = ""
    referer: Optional[str] = None
    playlist_suffixes: Tuple[str, ...] = (".m3u8",)
    # Upstreams that always block datacenter IPs skip the direct attempt for keys
    direct_keys = True

    def __init__(self, chain: FetchChain):
        self.chain = chain
        self.playlist_classifier: ResponseClassifier = PlaylistClassifier()
        self.key_classifier: ResponseClassifier = ResponseClassifier()
        self.segment_classifier: ResponseClassifier = ResponseClassifier()

    def upstream_headers(self, url: str, params: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        headers = {"User-Agent": BROWSER_USER_AGENT, "Accept": "*/*"}
        if self.referer:
            headers["Referer"] = self.referer
            headers["Origin"] = self.referer.rstrip("/")
        return headers

    def validate_upstream_url(self, url: Optional[str]) -> str:
        if not url:
            raise BadRequest("Missing url parameter")
        parsed = urlparse(url)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise BadRequest("Invalid url parameter")
        return url

    def rewrite_context(self, params: Mapping[str, str]) -> Dict[str, str]:
        """Query parameters carried over onto every rewritten sub-request URL."""
        return {}

    async def playlist_for_channel(self, channel: str) -> PlaylistFetch:
        raise BadRequest(f"Channel lookup is not supported by {self.name}")

    async def playlist_for_url(self, url: str, params: Optional[Mapping[str, str]] = None,
                               headers: Optional[Dict[str, str]] = None) -> PlaylistFetch:
        url = self.validate_upstream_url(url)
        if headers is None:
            headers = self.upstream_headers(url, params)
        result = await self.chain.fetch(url, headers, self.playlist_classifier)
        return PlaylistFetch(text=result.text, base_url=result.url or url)

    async def fetch_key(self, url: str, params: Optional[Mapping[str, str]] = None,
                        headers: Optional[Dict[str, str]] = None) -> FetchResult:
        url = self.validate_upstream_url(url)
        if headers is None:
            headers = self.upstream_headers(url, params)
        return await self.chain.fetch(url, headers, self.key_classifier,
                                      direct=self.direct_keys)

    async def fetch_segment(self, url: str, params: Optional[Mapping[str, str]] = None,
                            headers: Optional[Dict[str, str]] = None) -> FetchResult:
        url = self.validate_upstream_url(url)
        if headers is None:
            headers = self.upstream_headers(url, params)
        return await self.chain.fetch(url, headers, self.segment_classifier)

    def resolution_for(self, body: TokenIssueRequest) -> Resolution:
        return UrlResolution(url=self.validate_upstream_url(body.url), headers=body.headers)

    def resolution_headers(self, resolution: Resolution, url: str) -> Dict[str, str]:
        """Upstream headers for url, or any sub-resource of it, fetched under a token."""
        if not isinstance(resolution, UrlResolution):
            raise BadRequest(f"{self.name} tokens must carry a URL resolution")
        headers = self.upstream_headers(url)
        headers.update(resolution.headers)
        return headers

    async def fetch_resolution(self, resolution: Resolution) -> FetchResult:
        headers = self.resolution_headers(resolution, resolution.url)
        return await self.chain.fetch(resolution.url, headers, self.segment_classifier)

    def health_config(self) -> Dict:
        config = cfg.config_flags()
        config["relays"] = len(self.chain.relays)
        return config

    def register_routes(self, router: APIRouter):
        """Hook for provider-specific routes beyond the standard set."""
