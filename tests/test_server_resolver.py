"""
Tests for server key discovery and its TTL cache.
"""
import httpx
import pytest

from streamgate.core.errors import ResolutionFailed
from streamgate.proxy.server_resolver import (
    ALL_SERVER_KEYS, CDN_DOMAINS, ServerResolver, build_playlist_url, player_headers,
)


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def make_resolver(handler, mirrors=("mirror-a.example", "mirror-b.example"), ttl=1800, clock=None):
    calls = []

    def recording(request):
        calls.append(request)
        return handler(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(recording))
    resolver = ServerResolver(client, mirrors=list(mirrors), ttl=ttl, clock=clock or FakeClock())
    return resolver, calls


@pytest.mark.asyncio
async def test_resolves_and_caches():
    resolver, calls = make_resolver(lambda r: httpx.Response(200, json={"server_key": "zeko"}))

    entry = await resolver.resolve("premium325")

    assert entry.server_key == "zeko"
    assert entry.channel_key == "premium325"
    assert calls[0].url.params["channel_id"] == "premium325"
    assert calls[0].url.path == "/server_lookup"
    assert calls[0].headers["referer"] == "https://epicplayplay.cfd/"

    again = await resolver.resolve("premium325")
    assert again == entry
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_one_lookup_after_expiry():
    clock = FakeClock()
    resolver, calls = make_resolver(lambda r: httpx.Response(200, json={"server_key": "wind"}),
                                    ttl=1800, clock=clock)

    await resolver.resolve("premium51")
    clock.now += 1800
    await resolver.resolve("premium51")
    await resolver.resolve("premium51")

    assert len(calls) == 2


@pytest.mark.asyncio
async def test_falls_through_bad_mirrors():
    def handler(request):
        if request.url.host == "mirror-a.example":
            return httpx.Response(200, text="<html>challenge</html>")
        return httpx.Response(200, json={"server_key": "nfs"})

    resolver, calls = make_resolver(handler)

    entry = await resolver.resolve("premium7")

    assert entry.server_key == "nfs"
    assert [c.url.host for c in calls] == ["mirror-a.example", "mirror-b.example"]


@pytest.mark.asyncio
async def test_all_mirrors_fail_is_terminal():
    def handler(request):
        if request.url.host == "mirror-a.example":
            raise httpx.ConnectError("refused", request=request)
        return httpx.Response(200, json={"server_key": ""})

    resolver, calls = make_resolver(handler)

    with pytest.raises(ResolutionFailed) as exc_info:
        await resolver.resolve("premium9")

    assert exc_info.value.status_code == 502
    assert len(exc_info.value.details["mirrors"]) == 2

    # Nothing was cached, so the next request queries the mirrors again
    with pytest.raises(ResolutionFailed):
        await resolver.resolve("premium9")
    assert len(calls) == 4


@pytest.mark.asyncio
async def test_remember_replaces_cached_server():
    resolver, calls = make_resolver(lambda r: httpx.Response(200, json={"server_key": "zeko"}))
    await resolver.resolve("premium325")

    resolver.remember("premium325", "ddy6", "giokko.ru")

    assert (await resolver.resolve("premium325")).server_key == "ddy6"
    assert len(calls) == 1

    resolver.forget("premium325")
    assert (await resolver.resolve("premium325")).server_key == "zeko"
    assert len(calls) == 2


@pytest.mark.asyncio
async def test_candidates_start_with_resolved_server():
    resolver, _ = make_resolver(lambda r: httpx.Response(200, json={"server_key": "chevy"}))
    entry = await resolver.resolve("premium1")

    candidates = list(resolver.candidates(entry))

    assert candidates[0] == ("chevy", CDN_DOMAINS[0])
    assert len(candidates) == len(ALL_SERVER_KEYS) * len(CDN_DOMAINS)
    assert len(set(candidates)) == len(candidates)


def test_playlist_url_templates():
    assert build_playlist_url("zeko", "premium325", "kiko2.ru") == \
        "https://zekonew.kiko2.ru/zeko/premium325/mono.css"
    assert build_playlist_url("top1/cdn", "premium325", "giokko.ru") == \
        "https://top1.giokko.ru/top1/cdn/premium325/mono.css"


def test_player_headers():
    headers = player_headers()
    assert headers["Origin"] == "https://epicplayplay.cfd"
    assert headers["Referer"] == "https://epicplayplay.cfd/"
