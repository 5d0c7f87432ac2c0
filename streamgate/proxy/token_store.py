"""
Opaque, IP-bound stream tokens.

A trusted caller exchanges an upstream resolution (a URL with headers, or portal
credentials) for a short-lived token. The player then only ever sees
/<provider>/stream?t=<token>. Tokens live in an external key-value store with a
server-side TTL so every gateway instance can redeem them.

Playlists served under a token reference their keys, variants and segments as
/<provider>/stream?t=<token>&r=<ref>; the upstream URL behind each ref is stored
next to the token and expires with it.
"""

import hashlib
import logging
import math
import re
import secrets
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import RedisError

from ..core.config import cfg
from ..core.errors import TokenStoreUnavailable
from ..core.utils import RedisClient
from ..models.schemas import Resolution, StreamToken, TokenRef
from ..services.metrics import gw_tokens
from ..utils.logging import mask_secret
from .redis_keys import RedisKeys

logger = logging.getLogger(__name__)

TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{16,128}$")
REF_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def ref_id_for(token: str, url: str) -> str:
    """Stable opaque id for a sub-resource URL under one token."""
    return hashlib.sha256(f"{token}\n{url}".encode()).hexdigest()[:32]


class KeyValueStore(Protocol):
    async def put(self, key: str, value: str, ttl: int) -> None: ...

    async def get(self, key: str) -> Optional[str]: ...


class RedisKeyValueStore:
    """Redis-backed store; expiry is enforced by the server via SET ... EX."""

    def __init__(self, client: aioredis.Redis):
        self.client = client

    async def put(self, key: str, value: str, ttl: int) -> None:
        try:
            await self.client.set(key, value, ex=int(ttl))
        except RedisError as e:
            logger.error(f"Token store write failed: {e}")
            raise TokenStoreUnavailable() from e

    async def get(self, key: str) -> Optional[str]:
        try:
            return await self.client.get(key)
        except RedisError as e:
            logger.error(f"Token store read failed: {e}")
            raise TokenStoreUnavailable() from e


class MemoryKeyValueStore:
    """In-process store for tests and single-instance deployments."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._data: Dict[str, Tuple[str, float]] = {}
        self._lock = threading.Lock()

    async def put(self, key: str, value: str, ttl: int) -> None:
        with self._lock:
            now = self._clock()
            # Tokens that are issued but never redeemed are only ever reclaimed here
            expired = [k for k, (_, expires_at) in self._data.items() if now >= expires_at]
            for k in expired:
                del self._data[k]
            self._data[key] = (value, now + ttl)

    def size(self) -> int:
        with self._lock:
            return len(self._data)

    async def get(self, key: str) -> Optional[str]:
        with self._lock:
            item = self._data.get(key)
            if item is None:
                return None
            value, expires_at = item
            if self._clock() >= expires_at:
                del self._data[key]
                return None
            return value


class TokenStore:
    def __init__(self, store: KeyValueStore, ttl: Optional[int] = None, clock: Callable[[], float] = time.time):
        self.store = store
        self.ttl = ttl if ttl is not None else cfg.TOKEN_TTL_S
        self._clock = clock

    async def issue(self, resolution: Resolution, client_ip: Optional[str], ttl: Optional[int] = None) -> StreamToken:
        """
        Store a resolution under a new random token bound to client_ip.

        Raises:
            TokenStoreUnavailable: the backing store could not be written
        """
        ttl = ttl or self.ttl
        now = self._clock()
        stream_token = StreamToken(
            token=secrets.token_urlsafe(24),
            resolution=resolution,
            client_ip=client_ip,
            created_at=now,
            expires_at=now + ttl,
        )
        await self.store.put(RedisKeys.stream_token(stream_token.token), stream_token.model_dump_json(), ttl)
        gw_tokens.labels(operation="issue", outcome="ok").inc()
        logger.info(f"Issued token {mask_secret(stream_token.token)} ({resolution.kind}, ttl {ttl}s)")
        return stream_token

    async def resolve(self, token: Optional[str], requesting_ip: Optional[str]) -> Optional[StreamToken]:
        """
        Look up a token for a request coming from requesting_ip.

        Returns:
            The StreamToken, or None when it is malformed, unknown, expired or bound
            to a different client IP

        Raises:
            TokenStoreUnavailable: the backing store could not be read
        """
        if not token or not TOKEN_PATTERN.match(token):
            gw_tokens.labels(operation="resolve", outcome="malformed").inc()
            return None

        raw = await self.store.get(RedisKeys.stream_token(token))
        if raw is None:
            gw_tokens.labels(operation="resolve", outcome="missing").inc()
            return None

        try:
            stream_token = StreamToken.model_validate_json(raw)
        except ValidationError:
            logger.warning(f"Discarding unreadable token record {mask_secret(token)}")
            gw_tokens.labels(operation="resolve", outcome="corrupt").inc()
            return None

        if self._clock() >= stream_token.expires_at:
            gw_tokens.labels(operation="resolve", outcome="expired").inc()
            return None

        if stream_token.client_ip and stream_token.client_ip != requesting_ip:
            logger.warning(
                f"Token {mask_secret(token)} bound to {stream_token.client_ip} presented by {requesting_ip}; "
                f"possible redistribution"
            )
            gw_tokens.labels(operation="resolve", outcome="ip_mismatch").inc()
            return None

        gw_tokens.labels(operation="resolve", outcome="ok").inc()
        return stream_token

    async def attach_refs(self, stream_token: StreamToken, refs: Dict[str, TokenRef]):
        """
        Store the sub-resources of a playlist served under a token.

        Each ref lives no longer than the token itself, so a sub-request can never
        outlive the redemption window.

        Raises:
            TokenStoreUnavailable: the backing store could not be written
        """
        ttl = math.ceil(stream_token.expires_at - self._clock())
        if ttl <= 0:
            return
        for ref_id, ref in refs.items():
            await self.store.put(RedisKeys.token_ref(stream_token.token, ref_id), ref.model_dump_json(), ttl)
        logger.debug(f"Attached {len(refs)} ref(s) to token {mask_secret(stream_token.token)}")

    async def resolve_ref(self, stream_token: StreamToken, ref_id: Optional[str]) -> Optional[TokenRef]:
        """Sub-resource behind ref_id, for a token already resolved for the caller's IP."""
        if not ref_id or not REF_PATTERN.match(ref_id):
            gw_tokens.labels(operation="resolve_ref", outcome="malformed").inc()
            return None
        raw = await self.store.get(RedisKeys.token_ref(stream_token.token, ref_id))
        if raw is None:
            gw_tokens.labels(operation="resolve_ref", outcome="missing").inc()
            return None
        try:
            ref = TokenRef.model_validate_json(raw)
        except ValidationError:
            gw_tokens.labels(operation="resolve_ref", outcome="corrupt").inc()
            return None
        gw_tokens.labels(operation="resolve_ref", outcome="ok").inc()
        return ref


def create_token_store(backend: Optional[str] = None) -> TokenStore:
    backend = backend or cfg.TOKEN_STORE_BACKEND
    if backend == "memory":
        logger.info("Using in-memory token store")
        return TokenStore(MemoryKeyValueStore())
    logger.info(f"Using Redis token store at {cfg.REDIS_HOST}:{cfg.REDIS_PORT}")
    return TokenStore(RedisKeyValueStore(RedisClient.get_client()))
