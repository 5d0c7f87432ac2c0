"""
Tests for HLS playlist rewriting.
"""
from urllib.parse import parse_qs, urlparse

import m3u8

from streamgate.proxy.playlist_rewriter import PlaylistRewriter, TokenPlaylistRewriter, resolve_url, rewrite_playlist
from streamgate.proxy.token_store import ref_id_for

GW = "https://gw.example"
BASE = "https://cdn.example/live/ch1/index.m3u8"

MEDIA_PLAYLIST = """#EXTM3U
#EXT-X-VERSION:3
#EXT-X-TARGETDURATION:4
#EXT-X-MEDIA-SEQUENCE:120
#EXT-X-KEY:METHOD=AES-128,URI="key.php?id=1",IV=0x1234
#EXTINF:4.000,
seg120.ts
#EXTINF:4.000,
/abs/seg121.ts
#EXTINF:4.000,
//other.example/seg122.ts
#EXTINF:4.000,
https://full.example/seg123.ts
#EXT-X-ENDLIST
"""

MASTER_PLAYLIST = """#EXTM3U
#EXT-X-MEDIA:TYPE=AUDIO,GROUP-ID="aud",NAME="en",URI="audio/en.m3u8"
#EXT-X-STREAM-INF:BANDWIDTH=2000000,RESOLUTION=1280x720,AUDIO="aud"
720p/index.m3u8
#EXT-X-I-FRAME-STREAM-INF:BANDWIDTH=100000,URI="720p/iframes.m3u8"
"""


def target_of(gateway_url):
    """Upstream URL carried in a rewritten gateway URL."""
    return parse_qs(urlparse(gateway_url).query)["url"][0]


def test_resolve_url_forms():
    assert resolve_url("https://x.example/a.ts", BASE) == "https://x.example/a.ts"
    assert resolve_url("//x.example/a.ts", BASE) == "https://x.example/a.ts"
    assert resolve_url("/root/a.ts", BASE) == "https://cdn.example/root/a.ts"
    assert resolve_url("a.ts", BASE) == "https://cdn.example/live/ch1/a.ts"
    assert resolve_url("../up/a.ts", BASE) == "https://cdn.example/live/up/a.ts"


def test_media_playlist_rewrite():
    out = rewrite_playlist(MEDIA_PLAYLIST, BASE, GW, "tv")
    lines = out.splitlines()

    assert lines[:4] == MEDIA_PLAYLIST.splitlines()[:4]
    assert "#EXT-X-ENDLIST" not in out
    assert out.endswith("\n")

    key_line = lines[4]
    assert key_line.startswith('#EXT-X-KEY:METHOD=AES-128,URI="https://gw.example/tv/key?url=')
    assert key_line.endswith(',IV=0x1234')
    key_url = key_line.split('URI="')[1].split('"')[0]
    assert target_of(key_url) == "https://cdn.example/live/ch1/key.php?id=1"

    segments = [line for line in lines if not line.startswith("#")]
    assert all(s.startswith("https://gw.example/tv/segment?url=") for s in segments)
    assert [target_of(s) for s in segments] == [
        "https://cdn.example/live/ch1/seg120.ts",
        "https://cdn.example/abs/seg121.ts",
        "https://other.example/seg122.ts",
        "https://full.example/seg123.ts",
    ]


def test_upstream_url_is_fully_quoted():
    out = rewrite_playlist("#EXTM3U\n#EXTINF:4,\nhttps://origin.example/path/seg1.ts\n", BASE, GW, "tv")
    assert "https://gw.example/tv/segment?url=https%3A%2F%2Forigin.example%2Fpath%2Fseg1.ts" in out


def test_master_playlist_routes_variants_back_to_playlist_route():
    out = rewrite_playlist(MASTER_PLAYLIST, BASE, GW, "ppv")
    lines = out.splitlines()

    assert 'URI="https://gw.example/ppv?url=' in lines[1]
    assert lines[2] == MASTER_PLAYLIST.splitlines()[2]
    assert lines[3].startswith("https://gw.example/ppv?url=")
    assert target_of(lines[3]) == "https://cdn.example/live/ch1/720p/index.m3u8"
    assert 'URI="https://gw.example/ppv?url=' in lines[4]


def test_map_tag_routes_to_segment():
    text = '#EXTM3U\n#EXT-X-MAP:URI="init.mp4"\n#EXTINF:4,\nfrag1.m4s\n'
    out = rewrite_playlist(text, BASE, GW, "flixer")
    assert '#EXT-X-MAP:URI="https://gw.example/flixer/segment?url=' in out


def test_already_proxied_lines_untouched():
    proxied = "https://gw.example/tv/segment?url=https%3A%2F%2Fcdn.example%2Fa.ts"
    relative = "/tv/key?url=https%3A%2F%2Fcdn.example%2Fk"
    text = f'#EXTM3U\n#EXT-X-KEY:METHOD=AES-128,URI="{relative}"\n#EXTINF:4,\n{proxied}\n'

    assert rewrite_playlist(text, BASE, GW, "tv") == text


def test_tags_without_uri_and_blank_lines_preserved():
    text = "#EXTM3U\n\n#EXT-X-KEY:METHOD=NONE\n#EXT-X-DISCONTINUITY\n#EXT-X-CUSTOM-THING:foo=bar\n"
    assert rewrite_playlist(text, BASE, GW, "tv") == text


def test_context_parameters_carried_over():
    rewriter = PlaylistRewriter(GW, "iptv", context={"mac": "00:1A:79:00:00:01"})
    out = rewriter.rewrite("#EXTM3U\n#EXTINF:4,\nseg.ts\n", BASE)
    segment = out.splitlines()[2]

    query = parse_qs(urlparse(segment).query)
    assert query["mac"] == ["00:1A:79:00:00:01"]
    assert query["url"] == ["https://cdn.example/live/ch1/seg.ts"]


def test_custom_playlist_suffix():
    rewriter = PlaylistRewriter(GW, "tv", playlist_suffixes=(".m3u8", ".css"))
    out = rewriter.rewrite("#EXTM3U\n#EXT-X-STREAM-INF:BANDWIDTH=1\nmono.css\n", BASE)
    assert out.splitlines()[2].startswith("https://gw.example/tv?url=")


def test_rewritten_playlist_still_parses():
    out = rewrite_playlist(MEDIA_PLAYLIST, BASE, GW, "tv")
    parsed = m3u8.loads(out)

    assert len(parsed.segments) == 4
    assert parsed.media_sequence == 120
    assert parsed.target_duration == 4
    assert parsed.keys[0].uri.startswith("https://gw.example/tv/key?url=")
    assert not parsed.is_endlist


def test_crlf_playlist():
    text = "#EXTM3U\r\n#EXTINF:4,\r\nseg.ts\r\n"
    out = rewrite_playlist(text, BASE, GW, "tv")
    assert out.splitlines()[2].startswith("https://gw.example/tv/segment?url=")


def test_token_rewriter_hides_upstream_behind_refs():
    token = "T" * 32
    rewriter = TokenPlaylistRewriter(GW, "iptv", token)
    out = rewriter.rewrite(MEDIA_PLAYLIST, BASE)

    assert "cdn.example" not in out
    assert "example/seg" not in out
    key_url = out.splitlines()[4].split('URI="')[1].split('"')[0]
    segments = [line for line in out.splitlines() if not line.startswith("#")]
    for gateway_url in [key_url] + segments:
        assert gateway_url.startswith("https://gw.example/iptv/stream?")
        query = parse_qs(urlparse(gateway_url).query)
        assert query["t"] == [token]
        assert query["r"][0] in rewriter.refs

    key_ref = rewriter.refs[parse_qs(urlparse(key_url).query)["r"][0]]
    assert key_ref.kind == "key"
    assert key_ref.url == "https://cdn.example/live/ch1/key.php?id=1"
    assert rewriter.refs[ref_id_for(token, "https://cdn.example/abs/seg121.ts")].kind == "segment"
    assert len(rewriter.refs) == 5


def test_token_rewriter_marks_variants_as_playlists():
    rewriter = TokenPlaylistRewriter(GW, "ppv", "T" * 32)
    rewriter.rewrite(MASTER_PLAYLIST, BASE)

    kinds = {ref.url: ref.kind for ref in rewriter.refs.values()}
    assert kinds["https://cdn.example/live/ch1/720p/index.m3u8"] == "playlist"
    assert kinds["https://cdn.example/live/ch1/audio/en.m3u8"] == "playlist"
