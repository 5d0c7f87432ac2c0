"""
HLS playlist rewriting.

Every URL a player would follow (segments, keys, init maps, sub-playlists) is
replaced by a gateway URL carrying the absolute upstream URL as a query parameter,
so the follow-up request receives the same anti-blocking treatment. Rewriting is
line based so tag order and unknown directives survive verbatim.
"""

import logging
import re
from typing import Dict, Iterable, Optional
from urllib.parse import quote, urlencode, urljoin, urlparse

import m3u8

from ..models.schemas import TokenRef
from .constants import ENDLIST_TAG, KEY_URI_TAGS
from .token_store import ref_id_for

logger = logging.getLogger(__name__)

URI_ATTRIBUTE = re.compile(r'URI="([^"]*)"')

# Tags whose URI attribute is followed by players
URI_TAGS = KEY_URI_TAGS + ("#EXT-X-MEDIA", "#EXT-X-MAP", "#EXT-X-I-FRAME-STREAM-INF")
PLAYLIST_URI_TAGS = ("#EXT-X-MEDIA", "#EXT-X-I-FRAME-STREAM-INF")


def resolve_url(ref: str, base_url: str) -> str:
    """Make a playlist reference absolute against the playlist's own URL."""
    ref = ref.strip()
    if ref.startswith(("http://", "https://")):
        return ref
    if ref.startswith("//"):
        return f"{urlparse(base_url).scheme or 'https'}:{ref}"
    if ref.startswith("/"):
        base = urlparse(base_url)
        return f"{base.scheme}://{base.netloc}{ref}"
    return urljoin(base_url, ref)


class PlaylistRewriter:
    def __init__(self, gateway_origin: str, route: str, context: Optional[Dict[str, str]] = None,
                 playlist_suffixes: Iterable[str] = (".m3u8",)):
        """
        Args:
            gateway_origin: Scheme and host the player reaches the gateway on
            route: Provider prefix, e.g. "tv" for /tv, /tv/key and /tv/segment
            context: Extra query parameters appended to every rewritten URL
            playlist_suffixes: Path suffixes that mark a reference as a sub-playlist
        """
        self.gateway_origin = gateway_origin.rstrip("/")
        self.route = route.strip("/")
        self.context = {k: v for k, v in (context or {}).items() if v is not None}
        self.playlist_suffixes = tuple(s.lower() for s in playlist_suffixes)

    @property
    def playlist_path(self) -> str:
        return f"/{self.route}"

    @property
    def key_path(self) -> str:
        return f"/{self.route}/key"

    @property
    def segment_path(self) -> str:
        return f"/{self.route}/segment"

    def gateway_url(self, path: str, absolute_url: str) -> str:
        params = {"url": absolute_url}
        params.update(self.context)
        return f"{self.gateway_origin}{path}?{urlencode(params, quote_via=quote, safe='')}"

    def is_proxied(self, ref: str) -> bool:
        for path in (self.key_path, self.segment_path, self.playlist_path):
            if f"{path}?" in ref and (ref.startswith(self.gateway_origin) or ref.startswith(path)):
                return True
        return False

    def is_playlist_ref(self, absolute_url: str) -> bool:
        path = urlparse(absolute_url).path.lower()
        return path.endswith(self.playlist_suffixes)

    def _rewrite_ref(self, ref: str, base_url: str, path: Optional[str] = None) -> str:
        if self.is_proxied(ref):
            return ref
        absolute = resolve_url(ref, base_url)
        if path is None:
            path = self.playlist_path if self.is_playlist_ref(absolute) else self.segment_path
        return self.gateway_url(path, absolute)

    def _rewrite_tag(self, line: str, base_url: str) -> str:
        tag = line.split(":", 1)[0]
        if tag in KEY_URI_TAGS:
            path = self.key_path
        elif tag in PLAYLIST_URI_TAGS:
            path = self.playlist_path
        else:
            path = self.segment_path
        return URI_ATTRIBUTE.sub(
            lambda m: f'URI="{self._rewrite_ref(m.group(1), base_url, path)}"' if m.group(1) else m.group(0),
            line,
        )

    def rewrite(self, text: str, base_url: str) -> str:
        out = []
        for line in text.splitlines():
            stripped = line.strip()
            if not stripped:
                out.append(line)
            elif stripped.startswith("#"):
                if stripped.startswith(ENDLIST_TAG):
                    # Live streams must not be told the playlist is complete
                    continue
                if stripped.split(":", 1)[0] in URI_TAGS and 'URI="' in stripped:
                    out.append(self._rewrite_tag(line, base_url))
                else:
                    out.append(line)
            else:
                out.append(self._rewrite_ref(stripped, base_url))

        rewritten = "\n".join(out)
        if text.endswith("\n"):
            rewritten += "\n"
        return rewritten


class TokenPlaylistRewriter(PlaylistRewriter):
    """
    Rewriter for playlists served under a stream token.

    References become /<p>/stream?t=<token>&r=<ref>, so the upstream URL never
    reaches the player and every sub-request is redeemed against the same token.
    The refs collected during rewrite() must be attached to the token before the
    playlist is returned.
    """

    def __init__(self, gateway_origin: str, route: str, token: str,
                 playlist_suffixes: Iterable[str] = (".m3u8",)):
        super().__init__(gateway_origin, route, playlist_suffixes=playlist_suffixes)
        self.token = token
        self.refs: Dict[str, TokenRef] = {}

    @property
    def stream_path(self) -> str:
        return f"/{self.route}/stream"

    def is_proxied(self, ref: str) -> bool:
        path = self.stream_path
        if f"{path}?" in ref and (ref.startswith(self.gateway_origin) or ref.startswith(path)):
            return True
        return super().is_proxied(ref)

    def gateway_url(self, path: str, absolute_url: str) -> str:
        if path == self.key_path:
            kind = "key"
        elif path == self.playlist_path:
            kind = "playlist"
        else:
            kind = "segment"
        ref_id = ref_id_for(self.token, absolute_url)
        self.refs[ref_id] = TokenRef(url=absolute_url, kind=kind)
        params = {"t": self.token, "r": ref_id}
        return f"{self.gateway_origin}{self.stream_path}?{urlencode(params, quote_via=quote, safe='')}"


def rewrite_playlist(text: str, base_url: str, gateway_origin: str, route: str,
                     context: Optional[Dict[str, str]] = None,
                     playlist_suffixes: Iterable[str] = (".m3u8",)) -> str:
    rewriter = PlaylistRewriter(gateway_origin, route, context, playlist_suffixes)
    return rewriter.rewrite(text, base_url)


def describe_playlist(text: str) -> str:
    """Short description for log lines; never raises."""
    try:
        playlist = m3u8.loads(text)
    except Exception as e:
        return f"unparseable playlist ({type(e).__name__})"
    if playlist.is_variant:
        return f"master playlist with {len(playlist.playlists)} variant(s)"
    keyed = any(key is not None and key.method and key.method != "NONE" for key in playlist.keys)
    return (
        f"media playlist with {len(playlist.segments)} segment(s), "
        f"target duration {playlist.target_duration}{', encrypted' if keyed else ''}"
    )
