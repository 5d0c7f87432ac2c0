"""
IPTV set-top-box portals.

Portals authenticate a device by its MAC address (sent as a cookie) and a bearer
token from the portal handshake, and only answer clients presenting a MAG
set-top-box identity. Stream links are minted per channel with `create_link`.
"""

import json
import logging
from typing import Dict, Mapping, Optional
from urllib.parse import quote, urlparse

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from ..core.errors import BadRequest, ResolutionFailed
from ..models.schemas import CredentialResolution, Resolution, TokenIssueRequest, UrlResolution
from ..proxy.constants import JSON_CONTENT_TYPE, STB_USER_AGENT
from ..proxy.fetchers import FetchResult
from ..proxy.origin_gate import require_allowed_origin
from ..proxy.responses import cors_headers
from ..services import metrics
from ..utils.logging import short_url
from .base import Provider

logger = logging.getLogger(__name__)


def stb_headers(mac: Optional[str], token: Optional[str] = None, referer: Optional[str] = None) -> Dict[str, str]:
    headers = {
        "User-Agent": STB_USER_AGENT,
        "X-User-Agent": "Model: MAG250; Link: WiFi",
        "Accept": "*/*",
        "Accept-Language": "en-US,en;q=0.9",
        "Cookie": f"mac={quote(mac or '', safe='')}; stb_lang=en; timezone=GMT",
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    if referer:
        headers["Referer"] = referer
    return headers


def portal_origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def link_from_command(cmd: str) -> Optional[str]:
    """`create_link` answers with a player command such as `ffmpeg http://host/...`."""
    for part in cmd.split():
        if part.startswith(("http://", "https://")):
            return part
    return None


class IptvProvider(Provider):
    name = "iptv"

    def upstream_headers(self, url: str, params: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
        params = params or {}
        return stb_headers(params.get("mac"), params.get("token"), f"{portal_origin(url)}/")

    def rewrite_context(self, params: Mapping[str, str]) -> Dict[str, str]:
        return {k: params[k] for k in ("mac", "token") if params.get(k)}

    def resolution_for(self, body: TokenIssueRequest) -> Resolution:
        url = self.validate_upstream_url(body.url)
        if body.mac:
            return CredentialResolution(
                portal_url=url,
                mac=body.mac,
                portal_token=body.portal_token,
                channel_ref=body.channel_ref,
            )
        return UrlResolution(url=url, headers=body.headers)

    async def create_link(self, resolution: CredentialResolution) -> str:
        api_url = f"{portal_origin(resolution.portal_url)}/portal.php"
        params = {
            "type": "itv",
            "action": "create_link",
            "cmd": resolution.channel_ref,
            "mac": resolution.mac,
            "JsHttpRequest": "1-xml",
        }
        if resolution.portal_token:
            params["token"] = resolution.portal_token
        query = "&".join(f"{k}={quote(str(v), safe='')}" for k, v in params.items())
        result = await self.chain.fetch(
            f"{api_url}?{query}",
            stb_headers(resolution.mac, resolution.portal_token, f"{portal_origin(api_url)}/"),
        )
        try:
            cmd = json.loads(result.text)["js"]["cmd"]
        except (ValueError, KeyError, TypeError):
            raise ResolutionFailed("Portal did not return a stream link")
        link = link_from_command(cmd) if isinstance(cmd, str) else None
        if not link:
            raise ResolutionFailed("Portal returned an unusable stream link")
        logger.info(f"Portal minted stream link {short_url(link)}")
        return link

    def resolution_headers(self, resolution: Resolution, url: str) -> Dict[str, str]:
        if isinstance(resolution, UrlResolution):
            return super().resolution_headers(resolution, url)
        return stb_headers(resolution.mac, resolution.portal_token, f"{portal_origin(url)}/")

    async def fetch_resolution(self, resolution: Resolution) -> FetchResult:
        if isinstance(resolution, UrlResolution):
            return await super().fetch_resolution(resolution)
        stream_url = await self.create_link(resolution) if resolution.channel_ref else resolution.portal_url
        return await self.chain.fetch(stream_url, self.resolution_headers(resolution, stream_url),
                                      self.segment_classifier)

    async def portal_api(self, url: str, mac: Optional[str], token: Optional[str], direct: bool) -> Response:
        url = self.validate_upstream_url(url)
        if not mac:
            raise BadRequest("Missing mac parameter")
        headers = stb_headers(mac, token, f"{portal_origin(url)}/")
        headers["Origin"] = portal_origin(url)
        result = await self.chain.fetch(url, headers, direct=direct or not self.chain.has_relays)
        response_headers = cors_headers()
        response_headers["X-Used-Method"] = result.stage
        return Response(
            content=result.content,
            status_code=result.status,
            media_type=result.content_type or JSON_CONTENT_TYPE,
            headers=response_headers,
        )

    def register_routes(self, router: APIRouter):
        @router.get("/api", dependencies=[Depends(require_allowed_origin)])
        async def api(url: Optional[str] = None, mac: Optional[str] = None, token: Optional[str] = None,
                      prefer_direct: bool = Query(default=False, alias="direct")):
            metrics.on_request(self.name, "api")
            return await self.portal_api(url, mac, token, prefer_direct)
