from __future__ import annotations
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, Optional, Literal, List, Union
from datetime import datetime


class StreamRequest(BaseModel):
    provider_id: str
    resource_kind: Literal["playlist", "key", "segment", "api_call"]
    target_url: str
    request_headers: Dict[str, str] = {}
    client_ip: Optional[str] = None


class ProxyTarget(BaseModel):
    model_config = ConfigDict(frozen=True)

    name: str
    base_endpoint: str
    auth_secret: str
    priority: int
    username: Optional[str] = None  # paid API relays authenticate with username + secret
    geo_hint: Optional[str] = None


class ServerKeyCacheEntry(BaseModel):
    channel_key: str
    server_key: str
    player_domain: str
    fetched_at: float


class StickySession(BaseModel):
    session_id: str
    created_at: float


class UrlResolution(BaseModel):
    kind: Literal["url"] = "url"
    url: str
    headers: Dict[str, str] = {}


class CredentialResolution(BaseModel):
    kind: Literal["credentials"] = "credentials"
    portal_url: str
    mac: str
    portal_token: Optional[str] = None
    channel_ref: Optional[str] = None


Resolution = Union[UrlResolution, CredentialResolution]


class StreamToken(BaseModel):
    token: str
    resolution: Resolution = Field(discriminator="kind")
    client_ip: Optional[str] = None
    created_at: float
    expires_at: float


class TokenRef(BaseModel):
    """Sub-resource of a tokenized playlist, addressed by an opaque id under its token."""
    url: str
    kind: Literal["playlist", "key", "segment"]


class TokenIssueRequest(BaseModel):
    """Body of POST /<provider>/token.

    clientBindingKey is the end-user IP the token is bound to. Trusted backends
    calling server-to-server pass it explicitly; otherwise the caller's IP is used.
    """
    model_config = ConfigDict(populate_by_name=True)

    url: str
    client_binding_key: Optional[str] = Field(default=None, alias="clientBindingKey")
    headers: Dict[str, str] = {}
    mac: Optional[str] = None
    portal_token: Optional[str] = Field(default=None, alias="portalToken")
    channel_ref: Optional[str] = Field(default=None, alias="channelRef")


class TokenIssueResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = True
    stream_url: str = Field(serialization_alias="streamUrl")
    expires_in: int = Field(serialization_alias="expiresIn")


class HealthResponse(BaseModel):
    status: Literal["healthy", "degraded"]
    provider: str
    config: Dict[str, Any] = {}
    timestamp: datetime


class StreamSource(BaseModel):
    quality: str = "auto"
    title: str
    url: str
    stream_url: Optional[str] = Field(default=None, serialization_alias="streamUrl")
    type: Literal["hls"] = "hls"
    referer: Optional[str] = None
    server: str
    language: str = "en"


class ExtractResponse(BaseModel):
    success: bool
    sources: List[StreamSource] = []
    server: Optional[str] = None
    timestamp: datetime
