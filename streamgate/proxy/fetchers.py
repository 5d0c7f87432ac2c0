"""
Outbound fetchers used by the fallback chain.

Each fetcher performs one HTTP attempt against the upstream, either directly or
through a relay, and returns the upstream's status, body and headers. Network
failures surface as httpx.HTTPError for the chain to record; fetchers never retry.
"""

import base64
import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

import httpx

from ..models.schemas import ProxyTarget
from ..utils.logging import short_url
from .constants import STAGE_DIRECT
from .sniffer import looks_like_playlist

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    status: int
    content: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    stage: str = STAGE_DIRECT
    url: str = ""

    @property
    def content_type(self) -> Optional[str]:
        for name, value in self.headers.items():
            if name.lower() == "content-type":
                return value
        return None

    @property
    def text(self) -> str:
        return self.content.decode("utf-8", errors="replace")


class ResponseClassifier:
    """Decides whether an upstream response is usable or should fall through.

    The base rules treat any 2xx with a non-empty body as success, and 403, 429
    and other non-2xx codes as failures. Providers subclass this to recognise
    their own expired-token codes and offline/error body markers.
    """

    retry_statuses: Tuple[int, ...] = (403, 429)
    body_markers: Tuple[str, ...] = ()
    allow_empty: bool = False

    def failure_reason(self, result: FetchResult) -> Optional[str]:
        """Return None when the response is usable, otherwise a short reason."""
        if result.status in self.retry_statuses:
            return f"blocked ({result.status})"
        if not 200 <= result.status < 300:
            return f"http {result.status}"
        if not result.content and not self.allow_empty:
            return "empty body"
        marker = self.find_marker(result)
        if marker:
            return f"provider marker {marker!r}"
        return None

    def find_marker(self, result: FetchResult) -> Optional[str]:
        if not self.body_markers:
            return None
        # Markers only ever appear in short textual error bodies
        head = result.content[:512].decode("utf-8", errors="ignore")
        for marker in self.body_markers:
            if marker in head:
                return marker
        return None


class Fetcher:
    """One way of reaching an upstream URL."""

    stage = STAGE_DIRECT

    def __init__(self, client: httpx.AsyncClient, timeout: float):
        self.client = client
        self.timeout = timeout

    async def fetch(self, url: str, headers: Dict[str, str]) -> FetchResult:
        raise NotImplementedError


class DirectFetcher(Fetcher):
    stage = STAGE_DIRECT

    async def fetch(self, url: str, headers: Dict[str, str]) -> FetchResult:
        response = await self.client.get(url, headers=headers, timeout=self.timeout, follow_redirects=True)
        return FetchResult(
            status=response.status_code,
            content=response.content,
            headers=dict(response.headers),
            stage=self.stage,
            url=str(response.url),
        )


class RelayFetcher(Fetcher):
    """Relay that fetches on our behalf from another network.

    Wire format: GET <base>/proxy?url=<target>&key=<secret>[&headers=<json>] with the
    shared secret repeated in X-API-Key. The relay answers with the upstream's own
    status and body.
    """

    def __init__(self, client: httpx.AsyncClient, target: ProxyTarget, timeout: float):
        super().__init__(client, timeout)
        self.target = target
        self.stage = target.name

    async def fetch(self, url: str, headers: Dict[str, str]) -> FetchResult:
        params = {"url": url, "key": self.target.auth_secret}
        if headers:
            params["headers"] = json.dumps(headers, separators=(",", ":"))
        endpoint = f"{self.target.base_endpoint.rstrip('/')}/proxy"
        logger.debug(f"Relay {self.target.name} fetching {short_url(url)}")
        response = await self.client.get(
            endpoint,
            params=params,
            headers={"X-API-Key": self.target.auth_secret},
            timeout=self.timeout,
        )
        return FetchResult(
            status=response.status_code,
            content=response.content,
            headers=dict(response.headers),
            stage=self.stage,
            url=url,
        )


class PaidApiFetcher(Fetcher):
    """Paid residential scraping API.

    The API wraps the upstream reply in JSON; results[0].content and
    results[0].status_code carry what the upstream actually returned.
    """

    def __init__(self, client: httpx.AsyncClient, target: ProxyTarget, timeout: float,
                 session_provider: Optional[Callable[[], str]] = None):
        super().__init__(client, timeout)
        self.target = target
        self.stage = target.name
        self.session_provider = session_provider

    def build_payload(self, url: str, headers: Dict[str, str]) -> dict:
        context = [
            {"key": "http_method", "value": "GET"},
            {"key": "headers", "value": headers},
        ]
        if self.session_provider is not None:
            context.append({"key": "session_id", "value": self.session_provider()})
        payload = {"source": "universal", "url": url, "context": context}
        if self.target.geo_hint:
            payload["geo_location"] = self.target.geo_hint
        return payload

    async def fetch(self, url: str, headers: Dict[str, str]) -> FetchResult:
        credentials = f"{self.target.username}:{self.target.auth_secret}".encode()
        response = await self.client.post(
            self.target.base_endpoint,
            json=self.build_payload(url, headers),
            headers={
                "Content-Type": "application/json",
                "Authorization": "Basic " + base64.b64encode(credentials).decode(),
            },
            timeout=self.timeout,
        )
        if response.status_code != 200:
            # The API itself refused; report its status as the attempt status
            return FetchResult(status=response.status_code, content=b"", stage=self.stage, url=url)

        try:
            result = response.json()["results"][0]
        except (ValueError, KeyError, IndexError, TypeError):
            logger.warning(f"Paid relay returned an unexpected body for {short_url(url)}")
            return FetchResult(status=502, content=b"", stage=self.stage, url=url)

        content = result.get("content") or ""
        if isinstance(content, (dict, list)):
            body = json.dumps(content).encode()
        else:
            body = str(content).encode("utf-8")
        upstream_headers = result.get("headers") if isinstance(result.get("headers"), dict) else {}
        return FetchResult(
            status=int(result.get("status_code") or 200),
            content=body,
            headers={str(k): str(v) for k, v in upstream_headers.items()},
            stage=self.stage,
            url=url,
        )


class PlaylistClassifier(ResponseClassifier):
    """A playlist fetch only succeeds when the body really is a playlist.

    Blocked upstreams often answer 200 with an HTML challenge page instead.
    """

    def failure_reason(self, result: FetchResult) -> Optional[str]:
        reason = super().failure_reason(result)
        if reason:
            return reason
        if not looks_like_playlist(result.content[:4096].decode("utf-8", errors="ignore")):
            return "not a playlist"
        return None
