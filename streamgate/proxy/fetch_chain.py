"""
Layered fallback fetch: direct first, then relays in priority order.

The chain is provider-agnostic. What counts as "blocked" or "expired" is decided
by the ResponseClassifier the caller passes in.
"""

import logging
from typing import Dict, List, Optional

import httpx

from ..core.config import Cfg, cfg
from ..core.errors import UpstreamExhausted
from ..models.schemas import ProxyTarget
from ..services.metrics import gw_fetch_attempts, gw_fetch_exhausted
from ..utils.logging import short_url
from .constants import STAGE_DIRECT
from .fetchers import DirectFetcher, Fetcher, FetchResult, PaidApiFetcher, RelayFetcher, ResponseClassifier
from .sticky_session import StickySessionManager, sticky_sessions

logger = logging.getLogger(__name__)

STAGE_RESIDENTIAL = "residential"
STAGE_DATACENTER = "datacenter"
STAGE_PAID = "paid"


def build_targets(config: Cfg = cfg) -> List[ProxyTarget]:
    """Relay targets from configuration, sorted by priority. Unconfigured relays are skipped."""
    targets = []
    if config.RPI_PROXY_URL and config.RPI_PROXY_KEY:
        targets.append(ProxyTarget(
            name=STAGE_RESIDENTIAL,
            base_endpoint=config.RPI_PROXY_URL,
            auth_secret=config.RPI_PROXY_KEY,
            priority=1,
        ))
    if config.HETZNER_PROXY_URL and config.HETZNER_PROXY_KEY:
        targets.append(ProxyTarget(
            name=STAGE_DATACENTER,
            base_endpoint=config.HETZNER_PROXY_URL,
            auth_secret=config.HETZNER_PROXY_KEY,
            priority=2,
        ))
    if config.OXYLABS_USERNAME and config.OXYLABS_PASSWORD:
        targets.append(ProxyTarget(
            name=STAGE_PAID,
            base_endpoint=config.OXYLABS_ENDPOINT,
            auth_secret=config.OXYLABS_PASSWORD,
            username=config.OXYLABS_USERNAME,
            priority=3,
            geo_hint=config.OXYLABS_COUNTRY,
        ))
    return sorted(targets, key=lambda t: t.priority)


class FetchChain:
    def __init__(self, client: httpx.AsyncClient, targets: Optional[List[ProxyTarget]] = None,
                 sessions: Optional[StickySessionManager] = None, config: Cfg = cfg):
        self.client = client
        self.targets = sorted(targets if targets is not None else build_targets(config), key=lambda t: t.priority)
        self.sessions = sessions or sticky_sessions
        self.direct = DirectFetcher(client, config.DIRECT_FETCH_TIMEOUT_S)
        self.relays: List[Fetcher] = [self._fetcher_for(t, config) for t in self.targets]

    def _fetcher_for(self, target: ProxyTarget, config: Cfg) -> Fetcher:
        if target.username:
            return PaidApiFetcher(self.client, target, config.PAID_RELAY_TIMEOUT_S,
                                  session_provider=self.sessions.current_session_id)
        return RelayFetcher(self.client, target, config.RELAY_TIMEOUT_S)

    @property
    def has_relays(self) -> bool:
        return bool(self.relays)

    async def fetch(self, url: str, headers: Optional[Dict[str, str]] = None,
                    classifier: Optional[ResponseClassifier] = None, direct: bool = True) -> FetchResult:
        """
        Fetch a URL, falling back through relays until one yields a usable response.

        Args:
            url: Upstream URL
            headers: Headers the upstream expects (Referer, UA, cookies...)
            classifier: Decides success vs. fall-through; defaults to ResponseClassifier()
            direct: Set False for upstreams known to block every datacenter IP

        Returns:
            The first successful FetchResult

        Raises:
            UpstreamExhausted: every stage failed; carries one entry per attempt
        """
        headers = headers or {}
        classifier = classifier or ResponseClassifier()
        attempts: List[Dict] = []

        stages: List[Fetcher] = ([self.direct] if direct else []) + self.relays
        for fetcher in stages:
            result = await self._attempt(fetcher, url, headers, classifier, attempts)
            if result is not None:
                if attempts:
                    logger.info(f"Fetched {short_url(url)} via {fetcher.stage} after {len(attempts)} failed attempt(s)")
                return result

        gw_fetch_exhausted.inc()
        no_relay = not self.relays
        summary = ", ".join(f"{a['stage']}={a['status'] or a['error']}" for a in attempts)
        logger.warning(f"All fetch stages failed for {short_url(url)}: {summary or 'no stages'}")
        raise UpstreamExhausted(
            "No relay configured and direct fetch failed" if no_relay else "All fetch stages failed",
            attempts=attempts,
            no_relay_configured=no_relay,
        )

    async def _attempt(self, fetcher: Fetcher, url: str, headers: Dict[str, str],
                       classifier: ResponseClassifier, attempts: List[Dict]) -> Optional[FetchResult]:
        try:
            result = await fetcher.fetch(url, headers)
        except httpx.HTTPError as e:
            reason = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            attempts.append({"stage": fetcher.stage, "status": None, "error": reason})
            gw_fetch_attempts.labels(stage=fetcher.stage, outcome="error").inc()
            logger.debug(f"{fetcher.stage} fetch of {short_url(url)} raised {reason}")
            return None

        reason = classifier.failure_reason(result)
        if reason is None:
            gw_fetch_attempts.labels(stage=fetcher.stage, outcome="success").inc()
            return result

        attempts.append({"stage": fetcher.stage, "status": result.status, "error": reason})
        gw_fetch_attempts.labels(stage=fetcher.stage, outcome="failure").inc()
        if fetcher.stage == STAGE_DIRECT:
            logger.info(f"Direct fetch of {short_url(url)} failed ({reason}), trying relays")
        elif isinstance(fetcher, PaidApiFetcher) and result.status in classifier.retry_statuses:
            # The pinned exit IP got blocked; the next request gets a fresh one
            self.sessions.reset()
            logger.warning(f"Paid relay blocked for {short_url(url)} ({reason}), rotating sticky session")
        else:
            logger.warning(f"Relay {fetcher.stage} failed for {short_url(url)}: {reason}")
        return None
