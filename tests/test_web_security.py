"""Tests for tools/web.py — SSRF guard, body formatting, fetch_url."""

import json
import socket

import httpx
import pytest

from tools import ToolError, web
from tools.web import (
    _is_private_ip,
    format_body,
    html_to_text,
    make_sparkline,
    price_sparkline,
    tool_fetch_url,
    validate_url,
)

# ─── _is_private_ip ──────────────────────────────────────────────


class TestIsPrivateIp:
    @pytest.mark.parametrize("addr", [
        "127.0.0.1", "::1", "10.0.0.1", "172.16.0.1", "192.168.1.1",
        "169.254.169.254", "0.0.0.0", "::ffff:127.0.0.1",
    ])
    def test_private(self, addr):
        assert _is_private_ip(addr) is True

    def test_public(self):
        assert _is_private_ip("8.8.8.8") is False

    def test_octal_encoding(self):
        assert _is_private_ip("0177.0.0.1") is True

    def test_garbage_fails_closed(self):
        assert _is_private_ip("not-an-ip") is True


class TestValidateUrl:
    def test_scheme_blocked(self):
        assert "Blocked URL scheme" in validate_url("file:///etc/passwd")

    def test_no_host(self):
        assert validate_url("http://") == "URL has no hostname"

    def test_loopback_blocked(self):
        assert "private/loopback" in validate_url("http://127.0.0.1:8080/admin")

    def test_private_allowed_when_disabled(self, monkeypatch):
        monkeypatch.setattr(web, "_block_private", False)
        assert validate_url("http://127.0.0.1/") is None


# ─── Formatting ──────────────────────────────────────────────────


class TestFormatBody:
    def test_html_reduced(self):
        html = "<html><script>evil()</script><h1>Title</h1><p>Body text</p></html>"
        text = html_to_text(html)
        assert "evil" not in text
        assert "Title" in text and "Body text" in text

    def test_capped(self):
        body = format_body("a" * 50, "text/plain", cap=10)
        assert body == "a" * 10 + "\n[truncated at 10 chars]"

    def test_sparkline(self):
        assert make_sparkline([1, 2, 3, 4, 5, 6, 7, 8]) == "▁▂▃▄▅▆▇█"
        assert make_sparkline([]) == ""
        assert make_sparkline([5, 5]) == "▁▁"

    def test_price_series(self):
        raw = json.dumps({"prices": [[0, 1.0], [1, 3.0], [2, 2.0]]})
        assert price_sparkline(raw) == "▁█▄"
        assert format_body(raw, "application/json").endswith("\n\nSparkline: ▁█▄")

    def test_no_prices(self):
        assert price_sparkline("{\"a\": 1}") == ""
        assert price_sparkline("not json") == ""


# ─── fetch_url ───────────────────────────────────────────────────


@pytest.fixture
def mock_http(monkeypatch):
    """Route httpx.AsyncClient through a MockTransport and skip DNS checks."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        if request.url.path == "/html":
            return httpx.Response(200, text="<p>Hello</p>",
                                  headers={"Content-Type": "text/html"})
        return httpx.Response(201, text=request.content.decode() or "empty",
                              headers={"Content-Type": "text/plain"})

    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    monkeypatch.setattr(web.httpx, "AsyncClient", client_factory)
    monkeypatch.setattr(web, "validate_url", lambda url: None)
    return seen


class TestFetchUrl:
    @pytest.mark.asyncio
    async def test_status_prefix_and_html(self, mock_http):
        result = await tool_fetch_url("https://example.com/html")
        assert result == "[HTTP 200]\nHello"

    @pytest.mark.asyncio
    async def test_method_headers_body_passthrough(self, mock_http):
        result = await tool_fetch_url(
            "https://example.com/api", method="post",
            headers={"X-Test": "1"}, body="payload",
        )
        assert result == "[HTTP 201]\npayload"
        (request,) = mock_http
        assert request.method == "POST"
        assert request.headers["X-Test"] == "1"

    @pytest.mark.asyncio
    async def test_unsupported_method(self, mock_http):
        with pytest.raises(ToolError, match="unsupported method"):
            await tool_fetch_url("https://example.com/", method="TRACE")

    @pytest.mark.asyncio
    async def test_blocked_url(self):
        with pytest.raises(ToolError, match="Blocked URL scheme"):
            await tool_fetch_url("ftp://example.com/file")


# ─── Redirects ───────────────────────────────────────────────────


@pytest.fixture
def redirecting_http(monkeypatch):
    """A public host whose redirects point at itself or at loopback."""
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(str(request.url))
        if request.url.host != "public.example":
            return httpx.Response(200, text="INTERNAL SECRET")
        if request.url.path == "/x":
            return httpx.Response(302, headers={"Location": "http://127.0.0.1:8080/admin"})
        if request.url.path == "/hop":
            return httpx.Response(301, headers={"Location": "/final"})
        if request.url.path == "/loop":
            return httpx.Response(302, headers={"Location": "/loop"})
        return httpx.Response(200, text="landed", headers={"Content-Type": "text/plain"})

    real_client = httpx.AsyncClient

    def client_factory(**kwargs):
        return real_client(transport=httpx.MockTransport(handler), **kwargs)

    def fake_getaddrinfo(host, port, *args, **kwargs):
        ip = "93.184.216.34" if host == "public.example" else host
        return [(socket.AF_INET, socket.SOCK_STREAM, socket.IPPROTO_TCP, "", (ip, port))]

    monkeypatch.setattr(web.httpx, "AsyncClient", client_factory)
    monkeypatch.setattr(web.socket, "getaddrinfo", fake_getaddrinfo)
    return seen


class TestRedirects:
    @pytest.mark.asyncio
    async def test_redirect_to_loopback_refused(self, redirecting_http):
        with pytest.raises(ToolError, match="Redirect blocked"):
            await tool_fetch_url("http://public.example/x")
        assert redirecting_http == ["http://public.example/x"]

    @pytest.mark.asyncio
    async def test_directive_redirect_to_loopback_refused(self, redirecting_http):
        with pytest.raises(ToolError, match="Redirect blocked"):
            await web.fetch_directive("http://public.example/x")
        assert redirecting_http == ["http://public.example/x"]

    @pytest.mark.asyncio
    async def test_public_redirect_followed(self, redirecting_http):
        assert await tool_fetch_url("http://public.example/hop") == "[HTTP 200]\nlanded"
        assert redirecting_http == ["http://public.example/hop", "http://public.example/final"]

    @pytest.mark.asyncio
    async def test_redirect_loop_capped(self, redirecting_http):
        with pytest.raises(ToolError, match="too many redirects"):
            await tool_fetch_url("http://public.example/loop")
        assert len(redirecting_http) == web.MAX_REDIRECTS + 1
