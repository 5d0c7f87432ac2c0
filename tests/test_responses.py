"""
Tests for client IP and public origin detection.
"""
from unittest.mock import patch

from starlette.requests import Request

from streamgate.proxy.responses import client_ip, gateway_origin


def make_request(headers=None, peer="10.0.0.7"):
    scope = {
        "type": "http",
        "method": "GET",
        "scheme": "http",
        "path": "/tv/stream",
        "query_string": b"",
        "server": ("gw.internal", 8000),
        "client": (peer, 51000),
        "headers": [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()],
    }
    return Request(scope)


def test_forwarded_headers_ignored_by_default():
    request = make_request({"X-Forwarded-For": "1.2.3.4", "CF-Connecting-IP": "1.2.3.4"})

    with patch("streamgate.proxy.responses.cfg") as mock_cfg:
        mock_cfg.TRUST_PROXY_HEADERS = False
        assert client_ip(request) == "10.0.0.7"


def test_trusted_edge_header_is_used():
    request = make_request({"CF-Connecting-IP": "1.2.3.4"})

    with patch("streamgate.proxy.responses.cfg") as mock_cfg:
        mock_cfg.TRUST_PROXY_HEADERS = True
        mock_cfg.CLIENT_IP_HEADER = "cf-connecting-ip"
        assert client_ip(request) == "1.2.3.4"


def test_leftmost_forwarded_for_value_is_never_trusted():
    # The client wrote 6.6.6.6 itself; the edge appended the address it actually saw
    request = make_request({"X-Forwarded-For": "6.6.6.6, 1.2.3.4"})

    with patch("streamgate.proxy.responses.cfg") as mock_cfg:
        mock_cfg.TRUST_PROXY_HEADERS = True
        mock_cfg.CLIENT_IP_HEADER = "x-forwarded-for"
        assert client_ip(request) == "1.2.3.4"


def test_other_forwarded_headers_ignored_when_edge_header_configured():
    request = make_request({"X-Forwarded-For": "6.6.6.6"})

    with patch("streamgate.proxy.responses.cfg") as mock_cfg:
        mock_cfg.TRUST_PROXY_HEADERS = True
        mock_cfg.CLIENT_IP_HEADER = "cf-connecting-ip"
        assert client_ip(request) == "10.0.0.7"


def test_forwarded_host_only_honoured_behind_trusted_edge():
    request = make_request({"X-Forwarded-Host": "cdn-edge.example", "X-Forwarded-Proto": "https"})

    with patch("streamgate.proxy.responses.cfg") as mock_cfg:
        mock_cfg.PUBLIC_BASE_URL = None
        mock_cfg.TRUST_PROXY_HEADERS = False
        assert gateway_origin(request) == "http://gw.internal:8000"
        mock_cfg.TRUST_PROXY_HEADERS = True
        assert gateway_origin(request) == "https://cdn-edge.example"
