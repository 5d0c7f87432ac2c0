"""
Classifies upstream bodies as playlist text or binary media.

Upstreams disguise both playlists and segments (playlists served as `mono.css`,
segments as images), so the declared content type alone cannot be trusted.
"""

from enum import Enum
from typing import Optional
from urllib.parse import urlparse

from .constants import (
    BINARY_CONTENT_TYPE, HLS_CONTENT_TYPE, HLS_MIME_MARKER, MP4_CONTENT_TYPE,
    PLAYLIST_EXTENSION, PLAYLIST_HEADER, TS_CONTENT_TYPE, TS_SYNC_BYTE,
)


class MediaKind(Enum):
    PLAYLIST = "playlist"
    TRANSPORT_STREAM = "transport_stream"
    FRAGMENTED_MP4 = "fragmented_mp4"
    UNKNOWN = "unknown"


def _url_path(url: Optional[str]) -> str:
    if not url:
        return ""
    try:
        return urlparse(url).path.lower()
    except ValueError:
        return ""


def sniff(data: bytes, content_type: Optional[str] = None, url: Optional[str] = None) -> MediaKind:
    """Classify a body. Never raises."""
    declared = (content_type or "").lower()
    if HLS_MIME_MARKER in declared or _url_path(url).endswith(PLAYLIST_EXTENSION):
        return MediaKind.PLAYLIST

    head = bytes(data[:16]) if data else b""
    if not head:
        return MediaKind.UNKNOWN
    if head[0] == TS_SYNC_BYTE:
        return MediaKind.TRANSPORT_STREAM
    if head[:3] == b"\x00\x00\x00":
        return MediaKind.FRAGMENTED_MP4
    # Playlists behind disguised extensions still start with the header line
    if head.lstrip(b"\xef\xbb\xbf \t\r\n").startswith(PLAYLIST_HEADER.encode()):
        return MediaKind.PLAYLIST
    return MediaKind.UNKNOWN


def media_type_for(kind: MediaKind, declared: Optional[str] = None) -> str:
    if kind is MediaKind.PLAYLIST:
        return HLS_CONTENT_TYPE
    if kind is MediaKind.TRANSPORT_STREAM:
        return TS_CONTENT_TYPE
    if kind is MediaKind.FRAGMENTED_MP4:
        return MP4_CONTENT_TYPE
    if declared and not declared.lower().startswith(("text/html", "image/")):
        return declared
    return BINARY_CONTENT_TYPE


def looks_like_playlist(text: str) -> bool:
    return PLAYLIST_HEADER in text or "#EXT-X-" in text
