from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import Response
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
from typing import List, Optional
import logging

import httpx

from .utils.logging import setup
from .core.config import cfg
from .core.errors import GatewayError
from .core.utils import RedisClient
from .bridge.auth_bridge import AuthBridge
from .models.schemas import ProxyTarget
from .proxy.constants import CORS_HEADERS
from .proxy.dispatcher import build_provider_router
from .proxy.fetch_chain import FetchChain
from .proxy.responses import json_response
from .proxy.server_resolver import ServerResolver
from .proxy.token_store import TokenStore, create_token_store
from .providers.base import Provider
from .providers.flixer import FlixerProvider
from .providers.iptv import IptvProvider
from .providers.ppv import PpvProvider
from .providers.stream import AnimeKaiProvider, StreamProvider
from .providers.tv import TvProvider
from .services import metrics

logger = logging.getLogger(__name__)

setup(cfg.LOG_LEVEL)


def _provider_of(request: Request) -> str:
    segment = request.url.path.strip("/").split("/", 1)[0]
    return segment or "gateway"


def create_app(client: Optional[httpx.AsyncClient] = None, token_store: Optional[TokenStore] = None,
               targets: Optional[List[ProxyTarget]] = None, resolver: Optional[ServerResolver] = None,
               bridge: Optional[AuthBridge] = None) -> FastAPI:
    """
    Build the gateway application.

    Every collaborator can be injected; tests pass an httpx client on a mock
    transport and an in-memory token store so no network or Redis is needed.
    """
    owns_client = client is None
    client = client or httpx.AsyncClient()
    tokens = token_store or create_token_store()
    chain = FetchChain(client, targets=targets)

    providers: List[Provider] = [
        TvProvider(chain, resolver or ServerResolver(client)),
        IptvProvider(chain),
        PpvProvider(chain),
        FlixerProvider(chain, bridge or AuthBridge(client)),
        StreamProvider(chain),
        AnimeKaiProvider(chain),
    ]

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(
            f"Gateway starting with providers {', '.join(p.name for p in providers)} "
            f"and {len(chain.relays)} relay(s)"
        )
        yield
        # Shutdown
        if owns_client:
            await client.aclose()
        await RedisClient.close()

    app = FastAPI(title="Streaming Gateway", lifespan=lifespan)

    # Players preflight every sub-request; answer them here and stamp CORS on everything else
    @app.middleware("http")
    async def cors(request: Request, call_next):
        if request.method == "OPTIONS":
            return Response(status_code=204, headers=dict(CORS_HEADERS))
        response = await call_next(request)
        for name, value in CORS_HEADERS.items():
            response.headers.setdefault(name, value)
        return response

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        provider = _provider_of(request)
        metrics.on_error(provider, exc.status_code)
        if exc.status_code >= 500:
            logger.error(f"{provider}: {exc.message} ({exc.status_code})")
        return json_response(exc.to_dict(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        metrics.on_error(_provider_of(request), 400)
        return json_response({"error": "Bad request", "details": str(exc.errors()[:1])}, status_code=400)

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        provider = _provider_of(request)
        metrics.on_error(provider, 500)
        logger.exception(f"{provider}: unhandled error for {request.url.path}")
        return json_response({"error": "Proxy error", "details": type(exc).__name__}, status_code=500)

    @app.get("/health")
    def health():
        summary = metrics.get_summary()
        return json_response({
            "status": "healthy",
            **summary,
            "providers": [p.name for p in providers],
            "config": cfg.config_flags(),
        })

    # Prometheus metrics endpoint
    @app.get("/metrics")
    def get_metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    for provider in providers:
        app.include_router(build_provider_router(provider, tokens))

    app.state.providers = {p.name: p for p in providers}
    app.state.chain = chain
    app.state.tokens = tokens
    return app


app = create_app()


def run():
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=cfg.APP_PORT, log_config=None)


if __name__ == "__main__":
    run()
