"""
Lifecycle of the movie/TV API authentication bridge.

The bridge syncs with the API's clock, loads the WebAssembly auth module behind
the browser shim and derives an API key. That state is built once per process
and reused; repeated authentication failures throw it away so the next request
starts over with a fresh key.
"""

import asyncio
import json
import logging
import time
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import httpx

from ..core.config import cfg
from ..core.errors import BridgeError
from ..services.metrics import gw_bridge_extractions, gw_bridge_resets
from ..utils.logging import mask_secret, short_url
from .shim import BrowserShim
from .signer import RequestSigner, local_timezone_offset
from .wasm_loader import WasmAuthModule

logger = logging.getLogger(__name__)

API_TIMEOUT_S = 15.0


class AuthModule(Protocol):
    def derive_key(self) -> str: ...

    def decrypt(self, payload: str, key: str) -> str: ...


class BridgeState(Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"


def default_module_factory(shim: BrowserShim) -> AuthModule:
    return WasmAuthModule.from_file(cfg.FLIXER_WASM_PATH, shim)


def extract_stream_url(data: Any, server: str) -> Optional[str]:
    """Find the playable URL in a decrypted payload; its location varies between responses."""
    if not isinstance(data, dict):
        return None

    def pick(obj: Any) -> Optional[str]:
        if isinstance(obj, dict):
            return obj.get("url") or obj.get("file") or obj.get("stream")
        return None

    url = None
    sources = data.get("sources")
    if isinstance(sources, list) and sources:
        source = next((s for s in sources if isinstance(s, dict) and s.get("server") == server), sources[0])
        url = pick(source)
        if not url and isinstance(source, dict) and isinstance(source.get("sources"), list) and source["sources"]:
            url = pick(source["sources"][0])
    if not url:
        url = pick(sources) or pick(data)
    servers = data.get("servers")
    if not url and isinstance(servers, dict) and server in servers:
        server_data = servers[server]
        if isinstance(server_data, list):
            url = pick(server_data[0]) if server_data else None
        else:
            url = pick(server_data)

    if isinstance(url, str) and url.strip():
        return url.strip()
    return None


class AuthBridge:
    def __init__(self, client: httpx.AsyncClient, module_factory: Callable[[BrowserShim], AuthModule] = None,
                 api_base: Optional[str] = None, failure_threshold: Optional[int] = None,
                 attempts_per_server: Optional[int] = None, retry_delay: float = 0.2,
                 warmup_delay: float = 0.1, clock: Callable[[], float] = time.time):
        self.client = client
        self.module_factory = module_factory or default_module_factory
        self.api_base = (api_base or cfg.FLIXER_API_BASE).rstrip("/")
        self.failure_threshold = failure_threshold or cfg.BRIDGE_FAILURE_THRESHOLD
        self.attempts_per_server = attempts_per_server or cfg.BRIDGE_ATTEMPTS_PER_SERVER
        self.retry_delay = retry_delay
        self.warmup_delay = warmup_delay
        self._clock = clock
        self._lock = asyncio.Lock()

        self.state = BridgeState.UNINITIALIZED
        self.module: Optional[AuthModule] = None
        self.api_key: Optional[str] = None
        self.clock_offset_ms: float = 0
        self.signer: Optional[RequestSigner] = None
        self.failure_count = 0

    async def sync_clock(self) -> float:
        """Estimate server minus local clock in ms from one round trip to /api/time."""
        before = self._clock() * 1000
        try:
            response = await self.client.get(
                f"{self.api_base}/api/time", params={"t": int(before)}, timeout=API_TIMEOUT_S
            )
            after = self._clock() * 1000
            server_ms = float(response.json()["timestamp"]) * 1000
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            raise BridgeError(f"Clock sync failed: {e}") from e
        rtt = after - before
        return server_ms + rtt / 2 - after

    async def ensure_ready(self):
        if self.state is BridgeState.READY:
            return
        async with self._lock:
            if self.state is BridgeState.READY:
                return
            self.state = BridgeState.INITIALIZING
            logger.info("Initializing authentication bridge")
            try:
                offset = await self.sync_clock()
                shim = BrowserShim(clock_offset_ms=offset, clock=self._clock,
                                   timezone_offset=local_timezone_offset())
                module = self.module_factory(shim)
                api_key = module.derive_key()
            except BridgeError:
                self.state = BridgeState.UNINITIALIZED
                raise
            except Exception as e:
                self.state = BridgeState.UNINITIALIZED
                raise BridgeError(f"Bridge initialization failed: {e}") from e

            if not api_key:
                self.state = BridgeState.UNINITIALIZED
                raise BridgeError("Auth module derived an empty key")

            self.module = module
            self.api_key = api_key
            self.clock_offset_ms = offset
            self.signer = RequestSigner(api_key, clock_offset_ms=offset, clock=self._clock)
            self.failure_count = 0
            self.state = BridgeState.READY
            logger.info(f"Authentication bridge ready (key {mask_secret(api_key, 8)}, clock offset {offset:.0f}ms)")

    def reset(self):
        self.state = BridgeState.UNINITIALIZED
        self.module = None
        self.api_key = None
        self.signer = None
        self.failure_count = 0
        gw_bridge_resets.inc()
        logger.warning("Authentication bridge reset; next request re-derives the key")

    def record_failure(self):
        self.failure_count += 1
        if self.failure_count >= self.failure_threshold and self.state is BridgeState.READY:
            logger.warning(f"Authentication bridge failed {self.failure_count} times in a row")
            self.reset()

    def record_success(self):
        self.failure_count = 0

    async def request(self, path: str, extra_headers: Optional[Dict[str, str]] = None,
                      signer: Optional[RequestSigner] = None) -> str:
        signer = signer or self.signer
        if signer is None:
            raise BridgeError("Bridge is not initialized")
        url = f"{self.api_base}{path}"
        try:
            response = await self.client.get(url, headers=signer.headers(path, extra_headers),
                                              timeout=API_TIMEOUT_S)
        except httpx.HTTPError as e:
            raise BridgeError(f"API request failed: {type(e).__name__}") from e
        if response.status_code != 200:
            raise BridgeError(f"API returned HTTP {response.status_code}", path=path)
        return response.text

    async def _warm_up(self, path: str, signer: RequestSigner):
        # The API rejects the first sourced request of a session without a plain one before it
        try:
            await self.request(path, signer=signer)
        except BridgeError as e:
            logger.debug(f"Warm-up request for {path} failed: {e}")
        await asyncio.sleep(self.warmup_delay)

    async def extract_from_server(self, path: str, server: str, module: AuthModule, api_key: str,
                                  signer: RequestSigner) -> Optional[Tuple[str, Dict]]:
        for attempt in range(1, self.attempts_per_server + 1):
            encrypted = await self.request(path, {"X-Only-Sources": "1", "X-Server": server}, signer)
            decrypted = module.decrypt(encrypted, api_key)
            try:
                data = json.loads(decrypted)
            except ValueError as e:
                raise BridgeError("Decrypted payload is not JSON") from e
            url = extract_stream_url(data, server)
            if url:
                logger.info(f"Server {server} returned {short_url(url)} on attempt {attempt}")
                return url, data
            if attempt < self.attempts_per_server:
                await asyncio.sleep(self.retry_delay)
        logger.info(f"Server {server} returned no stream after {self.attempts_per_server} attempts")
        return None

    async def extract(self, path: str, servers: List[str]) -> Optional[Tuple[str, str]]:
        """
        Find a playable URL for an API path, trying servers in order.

        Returns:
            (server, url) for the first server that yields one, or None

        Raises:
            BridgeError: initialization, signing, transport or decryption failed
        """
        await self.ensure_ready()
        # A concurrent reset() clears the shared fields; this extraction keeps the state it started with
        module, api_key, signer = self.module, self.api_key, self.signer
        if module is None or api_key is None or signer is None:
            raise BridgeError("Bridge is not initialized")
        try:
            await self._warm_up(path, signer)
            for server in servers:
                result = await self.extract_from_server(path, server, module, api_key, signer)
                if result:
                    self.record_success()
                    gw_bridge_extractions.labels(outcome="found").inc()
                    return server, result[0]
        except BridgeError:
            self.record_failure()
            gw_bridge_extractions.labels(outcome="error").inc()
            raise
        gw_bridge_extractions.labels(outcome="not_found").inc()
        return None

    def status(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "has_key": self.api_key is not None,
            "clock_offset_ms": round(self.clock_offset_ms),
            "failure_count": self.failure_count,
        }
