"""
Key server sessions for the live TV provider.

The key server only answers requests carrying a session scraped from the channel
player page (AUTH_TOKEN and friends) that has been activated with a heartbeat.
One session serves a limited number of viewers, so a small pool is kept per
channel and handed out round-robin.
"""

import base64
import logging
import re
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import httpx

from ..core.config import cfg
from ..proxy.constants import BROWSER_USER_AGENT
from ..proxy.server_resolver import PLAYER_DOMAIN, player_headers
from ..services.metrics import gw_key_sessions

logger = logging.getLogger(__name__)

PARENT_DOMAIN = "daddyhd.com"
PATH_VARIANTS = ["stream", "cast", "watch", "plus", "casting", "player"]
HEARTBEAT_URL = "https://chevy.kiko2.ru/heartbeat"
HEARTBEAT_OK_MARKERS = ("Session created", "Session extended", '"status":"ok"')
SESSION_TIMEOUT_S = 10.0

AUTH_TOKEN = re.compile(r"""AUTH_TOKEN\s*=\s*["']([^"']+)["']""")
CHANNEL_KEY = re.compile(r"""CHANNEL_KEY\s*=\s*["']([^"']+)["']""")
AUTH_COUNTRY = re.compile(r"""AUTH_COUNTRY\s*=\s*["']([^"']+)["']""")
AUTH_TS = re.compile(r"""AUTH_TS\s*=\s*["']([^"']+)["']""")
CHANNEL_IN_URL = re.compile(r"premium(\d+)")


def channel_from_key_url(url: str) -> Optional[str]:
    match = CHANNEL_IN_URL.search(url)
    return match.group(1) if match else None


def client_token(channel_key: str, country: str, timestamp: str, user_agent: str = BROWSER_USER_AGENT) -> str:
    """Browser fingerprint the key server expects next to the bearer token."""
    fingerprint = f"{user_agent}|1920x1080|America/New_York|en-US"
    return base64.b64encode(f"{channel_key}|{country}|{timestamp}|{user_agent}|{fingerprint}".encode()).decode()


@dataclass
class KeySession:
    token: str
    channel_key: str
    country: str
    timestamp: str
    fetched_at: float
    use_count: int = 0

    def auth_headers(self) -> Dict[str, str]:
        headers = player_headers()
        headers.update({
            "Accept": "*/*",
            "Authorization": f"Bearer {self.token}",
            "X-Channel-Key": self.channel_key,
            "X-Client-Token": client_token(self.channel_key, self.country, self.timestamp),
        })
        return headers


def parse_player_page(html: str, channel: str, now: float) -> Optional[KeySession]:
    token = AUTH_TOKEN.search(html)
    if not token:
        return None
    channel_key = CHANNEL_KEY.search(html)
    country = AUTH_COUNTRY.search(html)
    ts = AUTH_TS.search(html)
    return KeySession(
        token=token.group(1),
        channel_key=channel_key.group(1) if channel_key else f"premium{channel}",
        country=country.group(1) if country else "US",
        timestamp=ts.group(1) if ts else str(int(now)),
        fetched_at=now,
    )


class KeySessionPool:
    def __init__(self, client: httpx.AsyncClient, pool_size: Optional[int] = None, ttl: Optional[float] = None,
                 clock: Callable[[], float] = time.time):
        self.client = client
        self.pool_size = pool_size if pool_size is not None else cfg.TV_SESSION_POOL_SIZE
        self.ttl = ttl if ttl is not None else cfg.TV_SESSION_TTL_S
        self._clock = clock
        self._lock = threading.Lock()
        self._pools: Dict[str, List[KeySession]] = {}
        self._next: Dict[str, int] = {}

    def _live(self, channel: str, now: float) -> List[KeySession]:
        pool = [s for s in self._pools.get(channel, []) if now - s.fetched_at < self.ttl]
        if pool:
            self._pools[channel] = pool
        else:
            self._pools.pop(channel, None)
        return pool

    def pooled(self, channel: str) -> Optional[KeySession]:
        with self._lock:
            pool = self._live(channel, self._clock())
            if not pool:
                return None
            index = self._next.get(channel, 0) % len(pool)
            self._next[channel] = index + 1
            session = pool[index]
            session.use_count += 1
            return session

    def add(self, channel: str, session: KeySession):
        with self._lock:
            pool = self._live(channel, self._clock())
            for i, existing in enumerate(pool):
                if existing.token == session.token:
                    pool[i] = session
                    break
            else:
                if len(pool) < self.pool_size:
                    pool.append(session)
                else:
                    worn = max(range(len(pool)), key=lambda i: (pool[i].use_count, -pool[i].fetched_at))
                    pool[worn] = session
            self._pools[channel] = pool

    def discard(self, channel: str, session: KeySession):
        with self._lock:
            pool = [s for s in self._pools.get(channel, []) if s.token != session.token]
            if pool:
                self._pools[channel] = pool
            else:
                self._pools.pop(channel, None)

    def size(self, channel: str) -> int:
        with self._lock:
            return len(self._live(channel, self._clock()))

    async def get(self, channel: str, force_new: bool = False) -> Optional[KeySession]:
        if not force_new:
            session = self.pooled(channel)
            if session is not None:
                gw_key_sessions.labels(outcome="pooled").inc()
                return session
        session = await self.fetch_session(channel)
        if session is None:
            gw_key_sessions.labels(outcome="unavailable").inc()
            return None
        self.add(channel, session)
        gw_key_sessions.labels(outcome="fetched").inc()
        return session

    async def fetch_session(self, channel: str) -> Optional[KeySession]:
        """Scrape a session from the player page, trying each embedding page as referer."""
        player_url = f"https://{PLAYER_DOMAIN}/premiumtv/daddyhd.php?id={channel}"
        referers = [f"https://{PARENT_DOMAIN}/watch.php?id={channel}"]
        referers += [f"https://{PARENT_DOMAIN}/{path}/stream-{channel}.php" for path in PATH_VARIANTS]

        for referer in referers:
            headers = {
                "User-Agent": BROWSER_USER_AGENT,
                "Referer": referer,
                "Accept": "text/html,application/xhtml+xml",
                "Accept-Language": "en-US,en;q=0.9",
            }
            try:
                response = await self.client.get(player_url, headers=headers, timeout=SESSION_TIMEOUT_S)
            except httpx.HTTPError as e:
                logger.debug(f"Player page for channel {channel} via {referer} failed: {e}")
                continue
            if response.status_code != 200:
                logger.debug(f"Player page for channel {channel} via {referer}: HTTP {response.status_code}")
                continue
            session = parse_player_page(response.text, channel, self._clock())
            if session is None:
                logger.debug(f"No auth token on player page for channel {channel} via {referer}")
                continue
            logger.info(f"Fetched key session for {session.channel_key}")
            return session

        logger.warning(f"No player page yielded a key session for channel {channel}")
        return None

    async def heartbeat(self, session: KeySession) -> bool:
        """Activate a session; the key server rejects keys for sessions it has not seen."""
        try:
            response = await self.client.get(HEARTBEAT_URL, headers=session.auth_headers(), timeout=SESSION_TIMEOUT_S)
        except httpx.HTTPError as e:
            logger.warning(f"Heartbeat for {session.channel_key} failed: {e}")
            return False
        ok = response.status_code == 200 and any(marker in response.text for marker in HEARTBEAT_OK_MARKERS)
        if not ok:
            # Rate limited heartbeats are common and the key fetch often still succeeds
            logger.info(f"Heartbeat for {session.channel_key}: HTTP {response.status_code} {response.text[:80]!r}")
        return ok
