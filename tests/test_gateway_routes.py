"""
End-to-end route tests for the gateway.

The app is built with create_app() around an httpx client on a MockTransport,
so upstream CDNs, lookup mirrors and relays are all stubbed in-process and the
token store lives in memory.
"""
import logging
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from fastapi.testclient import TestClient

from streamgate.main import create_app
from streamgate.models.schemas import ProxyTarget
from streamgate.proxy.server_resolver import ServerResolver
from streamgate.proxy.token_store import MemoryKeyValueStore, TokenStore

PLAYLIST = (
    "#EXTM3U\n"
    "#EXT-X-VERSION:3\n"
    "#EXT-X-TARGETDURATION:4\n"
    "#EXT-X-MEDIA-SEQUENCE:1\n"
    '#EXT-X-KEY:METHOD=AES-128,URI="https://origin.example/path/key1"\n'
    "#EXTINF:4.0,\n"
    "https://origin.example/path/seg1.ts\n"
)
RELATIVE_PLAYLIST = (
    "#EXTM3U\n"
    "#EXT-X-TARGETDURATION:4\n"
    '#EXT-X-KEY:METHOD=AES-128,URI="key1"\n'
    "#EXTINF:4.0,\n"
    "seg1.ts\n"
)
KEY = b"0123456789abcdef"
SEGMENT = bytes([0x47]) + b"\x11" * 187

RELAY = ProxyTarget(name="residential", base_endpoint="https://relay.example", auth_secret="rk", priority=1)


class Upstream:
    """Stubbed internet: lookup mirror, CDN edge servers, origin and an optional relay."""

    def __init__(self, serving_server="zeko", lookup_server="zeko", blocked_direct=False, redirect_playlist=False):
        self.serving_server = serving_server
        self.lookup_server = lookup_server
        self.blocked_direct = blocked_direct
        self.redirect_playlist = redirect_playlist
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        if host == "lookup.example":
            return httpx.Response(200, json={"server_key": self.lookup_server})
        if host == "relay.example":
            return self.origin(httpx.Request("GET", request.url.params["url"]))
        if self.blocked_direct:
            return httpx.Response(403, text="Forbidden")
        return self.origin(request)

    def origin(self, request):
        host, path = request.url.host, request.url.path
        if host.endswith((".kiko2.ru", ".giokko.ru")):
            if host.startswith(f"{self.serving_server}new.") and path.endswith("/premium325/mono.css"):
                if self.redirect_playlist:
                    return httpx.Response(302, headers={"Location": "https://origin.example/path/live.m3u8"})
                return httpx.Response(200, text=PLAYLIST, headers={"Content-Type": "text/css"})
            return httpx.Response(404, text="not here")
        if host == "origin.example":
            if path == "/path/key1":
                return httpx.Response(200, content=KEY, headers={"Content-Type": "application/octet-stream"})
            if path == "/path/badkey":
                return httpx.Response(200, json={"error": "E2", "message": "Session must be created"})
            if path == "/path/seg1.ts":
                return httpx.Response(200, content=SEGMENT, headers={"Content-Type": "image/png"})
            if path == "/path/index.m3u8":
                return httpx.Response(200, text=PLAYLIST, headers={"Content-Type": "application/vnd.apple.mpegurl"})
            if path == "/path/live.m3u8":
                return httpx.Response(200, text=RELATIVE_PLAYLIST, headers={"Content-Type": "application/vnd.apple.mpegurl"})
        return httpx.Response(404)

    def hosts(self):
        return [r.url.host for r in self.requests]


def build(upstream, targets=()):
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    app = create_app(
        client=client,
        token_store=TokenStore(MemoryKeyValueStore(), ttl=60),
        targets=list(targets),
        resolver=ServerResolver(client, mirrors=["lookup.example"]),
    )
    return TestClient(app)


@pytest.fixture
def upstream():
    return Upstream()


@pytest.fixture
def client(upstream):
    return build(upstream)


def test_channel_playlist_is_rewritten_through_gateway(client, upstream):
    response = client.get("/tv?channel=325")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("application/vnd.apple.mpegurl")
    assert response.headers["access-control-allow-origin"] == "*"
    assert response.headers["x-stream-server"] == "zeko"

    body = response.text
    assert 'URI="http://testserver/tv/key?url=https%3A%2F%2Forigin.example%2Fpath%2Fkey1"' in body
    assert "http://testserver/tv/segment?url=https%3A%2F%2Forigin.example%2Fpath%2Fseg1.ts" in body
    assert "\nhttps://origin.example" not in body
    assert upstream.hosts() == ["lookup.example", "zekonew.kiko2.ru"]


def test_channel_lookup_is_cached(client, upstream):
    client.get("/tv?channel=325")
    client.get("/tv?channel=325")

    assert upstream.hosts().count("lookup.example") == 1


def test_other_server_tried_and_remembered():
    upstream = Upstream(serving_server="wind", lookup_server="zeko")
    client = build(upstream)

    response = client.get("/tv?channel=325")

    assert response.status_code == 200
    assert response.headers["x-stream-server"] == "wind"
    assert upstream.hosts()[:3] == ["lookup.example", "zekonew.kiko2.ru", "zekonew.giokko.ru"]

    upstream.requests.clear()
    client.get("/tv?channel=325")
    assert upstream.hosts() == ["windnew.kiko2.ru"]


def test_blocked_direct_uses_relay():
    upstream = Upstream(blocked_direct=True)
    client = build(upstream, targets=[RELAY])

    response = client.get("/tv?channel=325")

    assert response.status_code == 200
    assert upstream.hosts() == ["lookup.example", "zekonew.kiko2.ru", "relay.example"]


def test_blocked_without_relay_is_503():
    upstream = Upstream(blocked_direct=True)
    client = build(upstream)

    response = client.get("/tv?channel=325")

    assert response.status_code == 503
    body = response.json()
    assert body["attempts"]
    assert all(a["status"] == 403 for a in body["attempts"])
    assert "hint" in body


def test_failed_channel_is_looked_up_again():
    upstream = Upstream(serving_server="none")
    client = build(upstream)

    assert client.get("/tv?channel=325").status_code == 503
    client.get("/tv?channel=325")

    assert upstream.hosts().count("lookup.example") == 2


def test_invalid_channel_params(client):
    assert client.get("/tv").status_code == 400
    assert client.get("/tv?channel=abc").status_code == 400
    assert client.get("/tv?channel=0").status_code == 400
    response = client.get("/tv?channel=851")
    assert response.status_code == 400
    assert response.json()["error"] == "Bad request"


def test_lookup_failure_is_502():
    class NoLookup(Upstream):
        def __call__(self, request):
            if request.url.host == "lookup.example":
                self.requests.append(request)
                return httpx.Response(500)
            return super().__call__(request)

    client = build(NoLookup())

    response = client.get("/tv?channel=325")

    assert response.status_code == 502
    assert response.json()["error"] == "Server resolution failed"


def test_key_proxy(client):
    response = client.get("/tv/key", params={"url": "https://origin.example/path/key1"})

    assert response.status_code == 200
    assert response.content == KEY
    assert response.headers["cache-control"] == "private, max-age=30"


def test_key_error_body_is_not_served_as_key(client):
    response = client.get("/tv/key", params={"url": "https://origin.example/path/badkey"})

    assert response.status_code == 503
    assert "provider marker" in response.json()["attempts"][0]["error"]


def test_segment_proxy_sniffs_real_type(client):
    response = client.get("/tv/segment", params={"url": "https://origin.example/path/seg1.ts"})

    assert response.status_code == 200
    assert response.content == SEGMENT
    assert response.headers["content-type"] == "video/mp2t"
    assert response.headers["cache-control"] == "public, max-age=300"
    assert response.headers["x-fetched-by"] == "direct"


def test_request_summary_only_built_when_debug_logging(client):
    dispatcher_logger = logging.getLogger("streamgate.proxy.dispatcher")
    level = dispatcher_logger.level
    dispatcher_logger.setLevel(logging.INFO)
    try:
        with patch("streamgate.proxy.dispatcher.stream_request") as summary:
            client.get("/tv/segment", params={"url": "https://origin.example/path/seg1.ts"})
        summary.assert_not_called()

        dispatcher_logger.setLevel(logging.DEBUG)
        with patch("streamgate.proxy.dispatcher.stream_request") as summary:
            client.get("/tv/segment", params={"url": "https://origin.example/path/seg1.ts"})
        summary.assert_called_once()
    finally:
        dispatcher_logger.setLevel(level)


def test_segment_rejects_non_http_urls(client):
    assert client.get("/tv/segment", params={"url": "file:///etc/passwd"}).status_code == 400
    assert client.get("/tv/segment").status_code == 400


def trusted_edge():
    """Gateway deployed behind an edge that sets CF-Connecting-IP."""
    mocked = patch("streamgate.proxy.responses.cfg")
    mock_cfg = mocked.start()
    mock_cfg.PUBLIC_BASE_URL = None
    mock_cfg.TRUST_PROXY_HEADERS = True
    mock_cfg.CLIENT_IP_HEADER = "cf-connecting-ip"
    return mocked


def gateway_query(gateway_url):
    return {k: v[0] for k, v in parse_qs(urlparse(gateway_url).query).items()}


def test_token_redeemed_from_other_ip_is_401(client):
    issued = client.post("/tv/token", json={
        "url": "https://origin.example/path/index.m3u8",
        "clientBindingKey": "1.2.3.4",
    })
    assert issued.status_code == 200
    body = issued.json()
    assert body["success"] is True
    assert body["expiresIn"] == 60
    assert body["streamUrl"].startswith("/tv/stream?t=")
    assert "origin.example" not in body["streamUrl"]

    stolen = client.get(body["streamUrl"])
    assert stolen.status_code == 401
    assert stolen.json() == {"error": "Invalid or expired token"}
    assert "origin.example" not in stolen.text

    legit = client.post("/tv/token", json={
        "url": "https://origin.example/path/index.m3u8",
        "clientBindingKey": "testclient",
    }).json()
    redeemed = client.get(legit["streamUrl"])
    assert redeemed.status_code == 200
    assert "http://testserver/tv/stream?t=" in redeemed.text


def test_spoofed_forwarded_for_cannot_redeem_token(client):
    issued = client.post("/tv/token", json={
        "url": "https://origin.example/path/index.m3u8",
        "clientBindingKey": "1.2.3.4",
    }).json()

    spoofed = client.get(issued["streamUrl"], headers={
        "X-Forwarded-For": "1.2.3.4",
        "CF-Connecting-IP": "1.2.3.4",
        "X-Real-IP": "1.2.3.4",
    })

    assert spoofed.status_code == 401


def test_token_binds_to_caller_ip_by_default(client):
    issued = client.post("/tv/token", json={"url": "https://origin.example/path/seg1.ts"},
                         headers={"X-Forwarded-For": "9.9.9.9"})
    stream_url = issued.json()["streamUrl"]

    # Bound to the direct peer, not to what the caller claimed
    assert client.get(stream_url).status_code == 200
    assert client.get(stream_url, headers={"X-Forwarded-For": "9.9.9.9"}).status_code == 200


def test_token_binds_to_edge_reported_ip(client):
    mocked = trusted_edge()
    try:
        issued = client.post("/tv/token", json={"url": "https://origin.example/path/seg1.ts"},
                             headers={"CF-Connecting-IP": "9.9.9.9"})
        stream_url = issued.json()["streamUrl"]

        assert client.get(stream_url, headers={"CF-Connecting-IP": "9.9.9.9"}).status_code == 200
        assert client.get(stream_url, headers={"CF-Connecting-IP": "9.9.9.8"}).status_code == 401
        assert client.get(stream_url, headers={"X-Forwarded-For": "9.9.9.9"}).status_code == 401
    finally:
        mocked.stop()


def test_tokenized_playlist_keeps_upstream_and_headers_behind_token(client, upstream):
    issued = client.post("/tv/token", json={
        "url": "https://origin.example/path/index.m3u8",
        "headers": {"Referer": "https://site.example/"},
    }).json()

    playlist = client.get(issued["streamUrl"])

    assert playlist.status_code == 200
    assert "origin.example" not in playlist.text
    key_url = playlist.text.split('URI="')[1].split('"')[0]
    segment_url = [line for line in playlist.text.splitlines() if line and not line.startswith("#")][0]
    for gateway_url in (key_url, segment_url):
        assert gateway_url.startswith("http://testserver/tv/stream?")
        assert gateway_query(gateway_url)["t"] == gateway_query("http://testserver" + issued["streamUrl"])["t"]

    upstream.requests.clear()
    key = client.get(key_url)
    segment = client.get(segment_url)

    assert key.status_code == 200
    assert key.content == KEY
    assert segment.status_code == 200
    assert segment.content == SEGMENT
    assert [r.url.path for r in upstream.requests] == ["/path/key1", "/path/seg1.ts"]
    assert all(r.headers["referer"] == "https://site.example/" for r in upstream.requests)


def test_token_sub_resources_are_bound_like_the_token(client):
    issued = client.post("/tv/token", json={"url": "https://origin.example/path/index.m3u8"}).json()
    segment_url = [line for line in client.get(issued["streamUrl"]).text.splitlines()
                   if line and not line.startswith("#")][0]
    query = gateway_query(segment_url)

    assert client.get("/tv/stream", params={"t": query["t"], "r": "0" * 32}).status_code == 401
    assert client.get("/tv/stream", params={"t": query["t"], "r": "../x"}).status_code == 401

    other = client.post("/tv/token", json={"url": "https://origin.example/path/index.m3u8"}).json()
    other_token = gateway_query("http://testserver" + other["streamUrl"])["t"]
    assert client.get("/tv/stream", params={"t": other_token, "r": query["r"]}).status_code == 401

    mocked = trusted_edge()
    try:
        assert client.get(segment_url, headers={"CF-Connecting-IP": "5.6.7.8"}).status_code == 401
    finally:
        mocked.stop()


def test_relative_references_resolve_against_redirected_playlist():
    upstream = Upstream(redirect_playlist=True)
    client = build(upstream)

    response = client.get("/tv?channel=325")

    assert response.status_code == 200
    lines = response.text.splitlines()
    assert 'URI="http://testserver/tv/key?url=https%3A%2F%2Forigin.example%2Fpath%2Fkey1"' in lines[2]
    assert lines[4] == "http://testserver/tv/segment?url=https%3A%2F%2Forigin.example%2Fpath%2Fseg1.ts"
    assert "kiko2.ru" not in response.text

    key = client.get(lines[2].split('URI="')[1].split('"')[0].replace("http://testserver", ""))
    assert key.content == KEY


def test_tv_keys_go_through_relay_first_when_one_exists():
    upstream = Upstream()
    client = build(upstream, targets=[RELAY])

    response = client.get("/tv/key", params={"url": "https://origin.example/path/key1"})

    assert response.status_code == 200
    assert response.content == KEY
    assert response.headers["x-fetched-by"] == "residential"
    assert upstream.hosts() == ["relay.example"]


def test_unknown_token_is_401(client):
    assert client.get("/tv/stream?t=" + "A" * 32).status_code == 401
    assert client.get("/tv/stream").status_code == 401


def test_token_request_validation(client):
    response = client.post("/tv/token", json={"clientBindingKey": "1.2.3.4"})
    assert response.status_code == 400
    assert client.post("/tv/token", json={"url": "ftp://x"}).status_code == 400


def test_preflight_is_204(client):
    response = client.options("/tv/segment")

    assert response.status_code == 204
    assert response.headers["access-control-allow-origin"] == "*"
    assert "GET" in response.headers["access-control-allow-methods"]


def test_foreign_origin_blocked(client, upstream):
    response = client.get("/tv?channel=325", headers={"Origin": "https://evil.example"})

    assert response.status_code == 403
    assert response.json()["error"] == "Access denied"
    assert response.headers["access-control-allow-origin"] == "*"
    assert upstream.requests == []


def test_allowed_referer_passes(client):
    response = client.get("/tv?channel=325", headers={"Referer": "https://flyx.tv/watch/live/325"})
    assert response.status_code == 200


def test_provider_health_is_ungated(client):
    response = client.get("/tv/health", headers={"Origin": "https://evil.example"})

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["provider"] == "tv"
    assert body["config"]["relays"] == 0
    assert "timestamp" in body


def test_gateway_health_and_metrics(client):
    client.get("/tv?channel=325")

    health = client.get("/health").json()
    assert health["status"] == "healthy"
    assert health["providers"] == ["tv", "iptv", "ppv", "flixer", "stream", "animekai"]
    assert health["requests"]["tv"] >= 1

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert "gw_requests_total" in metrics.text
    assert "gw_fetch_attempts_total" in metrics.text
