"""
Movie and TV episode streams behind the WebAssembly-authenticated API.

The API only answers signed requests and returns encrypted source lists, so
every extraction goes through the authentication bridge. The playable URLs it
yields are ordinary HLS playlists served through the standard routes.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, Request

from ..bridge.auth_bridge import AuthBridge
from ..core.errors import BadRequest
from ..models.schemas import ExtractResponse, StreamSource
from ..proxy.fetch_chain import FetchChain
from ..proxy.origin_gate import require_allowed_origin
from ..proxy.responses import gateway_origin, json_response
from ..services import metrics
from .base import Provider

logger = logging.getLogger(__name__)

SERVER_NAMES = {
    "alpha": "Ares",
    "bravo": "Balder",
    "charlie": "Circe",
    "delta": "Dionysus",
    "echo": "Eros",
    "foxtrot": "Freya",
}
SERVER_ORDER = ["alpha", "bravo", "charlie", "delta", "echo", "foxtrot"]


def images_path(tmdb_id: str, media_type: str, season: Optional[str] = None,
                episode: Optional[str] = None) -> str:
    if media_type == "tv":
        return f"/api/tmdb/tv/{tmdb_id}/season/{season}/episode/{episode}/images"
    return f"/api/tmdb/movie/{tmdb_id}/images"


class FlixerProvider(Provider):
    name = "flixer"
    referer = "https://flixer.sh/"

    def __init__(self, chain: FetchChain, bridge: AuthBridge):
        super().__init__(chain)
        self.bridge = bridge

    def servers_for(self, server: Optional[str]) -> List[str]:
        if not server:
            return list(SERVER_ORDER)
        server = server.lower()
        if server not in SERVER_NAMES:
            raise BadRequest("Unknown server", server=server, servers=SERVER_ORDER)
        return [server]

    async def extract(self, origin: str, tmdb_id: Optional[str], media_type: str,
                      season: Optional[str], episode: Optional[str], server: Optional[str]):
        if not tmdb_id:
            raise BadRequest("Missing tmdbId parameter")
        if media_type not in ("movie", "tv"):
            raise BadRequest("type must be movie or tv")
        if media_type == "tv" and (not season or not episode):
            raise BadRequest("season and episode are required for tv")
        servers = self.servers_for(server)

        path = images_path(tmdb_id, media_type, season, episode)
        found = await self.bridge.extract(path, servers)
        now = datetime.now(timezone.utc)
        if found is None:
            logger.info(f"No stream found for {media_type} {tmdb_id} on {', '.join(servers)}")
            body = ExtractResponse(success=False, timestamp=now)
            return json_response(body.model_dump(mode="json", by_alias=True), status_code=404)

        server_key, url = found
        source = StreamSource(
            title=f"Flixer {SERVER_NAMES[server_key]}",
            url=url,
            stream_url=f"{origin}/{self.name}?url={quote(url, safe='')}",
            referer=self.referer,
            server=server_key,
        )
        body = ExtractResponse(success=True, sources=[source], server=server_key, timestamp=now)
        return json_response(body.model_dump(mode="json", by_alias=True))

    def health_config(self):
        config = super().health_config()
        config["bridge"] = self.bridge.status()
        return config

    def register_routes(self, router: APIRouter):
        @router.get("/extract", dependencies=[Depends(require_allowed_origin)])
        async def extract(request: Request, tmdbId: Optional[str] = None, type: str = "movie",
                          season: Optional[str] = None, episode: Optional[str] = None,
                          server: Optional[str] = None):
            metrics.on_request(self.name, "extract")
            return await self.extract(gateway_origin(request), tmdbId, type, season, episode, server)
