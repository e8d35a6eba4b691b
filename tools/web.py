"""Web tool — fetch_url.

Fetches a URL with the requested method, headers and body, reduces HTML
to readable text, and caps the body. JSON bodies carrying a ``prices``
series get a sparkline appended.
"""

from __future__ import annotations

import ipaddress
import json
import logging
import re
import socket
import urllib.parse
from html.parser import HTMLParser

import httpx

from . import ToolError

log = logging.getLogger(__name__)

FETCH_MAX_RESPONSE = 20_000
_TIMEOUT = 30.0
MAX_REDIRECTS = 5
_ALLOWED_SCHEMES = {"http", "https"}
_ALLOWED_METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE", "HEAD", "OPTIONS"}
_SPARK_BLOCKS = "▁▂▃▄▅▆▇█"

# Set at startup
_block_private = True


def configure(block_private: bool = True, max_response: int = FETCH_MAX_RESPONSE) -> None:
    global _block_private, FETCH_MAX_RESPONSE
    _block_private = block_private
    FETCH_MAX_RESPONSE = max_response


# ─── SSRF Protection ────────────────────────────────────────────

def _is_private_ip(addr: str) -> bool:
    """Check if an IP address is private/loopback/reserved.

    Handles non-standard encodings (octal, hex, decimal) that
    ipaddress rejects but socket.inet_aton accepts.
    """
    try:
        try:
            ip = ipaddress.ip_address(addr)
        except ValueError:
            ip = ipaddress.ip_address(socket.inet_ntoa(socket.inet_aton(addr)))
        return ip.is_private or ip.is_loopback or ip.is_reserved or ip.is_link_local
    except (ValueError, OSError):
        return True  # Fail closed: unknown format = block


def validate_url(url: str) -> str | None:
    """Return an error message for an unfetchable URL, None if OK."""
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in _ALLOWED_SCHEMES:
        return f"Blocked URL scheme: {parsed.scheme!r} (only http/https allowed)"
    hostname = parsed.hostname or ""
    if not hostname:
        return "URL has no hostname"
    if not _block_private:
        return None
    try:
        addrinfos = socket.getaddrinfo(hostname, parsed.port or 443, proto=socket.IPPROTO_TCP)
    except socket.gaierror:
        return f"Cannot resolve hostname: {hostname}"
    for *_, sockaddr in addrinfos:
        if _is_private_ip(sockaddr[0]):
            return f"Blocked: {hostname} resolves to private/loopback address {sockaddr[0]}"
    return None


# ─── Text processing ────────────────────────────────────────────

class _HTMLToText(HTMLParser):
    """Simple HTML→text converter preserving structure."""

    def __init__(self):
        super().__init__()
        self._result: list[str] = []
        self._skip = False
        self._in_pre = False

    def handle_starttag(self, tag: str, attrs: list) -> None:
        if tag in ("script", "style", "noscript"):
            self._skip = True
        elif tag in ("p", "div", "br", "li", "tr", "h1", "h2", "h3", "h4", "h5", "h6"):
            self._result.append("\n")
        elif tag == "pre":
            self._in_pre = True
            self._result.append("\n")

    def handle_endtag(self, tag: str) -> None:
        if tag in ("script", "style", "noscript"):
            self._skip = False
        elif tag == "pre":
            self._in_pre = False
            self._result.append("\n")

    def handle_data(self, data: str) -> None:
        if self._skip:
            return
        if self._in_pre:
            self._result.append(data)
        elif data.strip():
            self._result.append(data.strip() + " ")

    def get_text(self) -> str:
        text = "".join(self._result)
        text = re.sub(r"[ \t]+\n", "\n", text)
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()


def html_to_text(html: str) -> str:
    parser = _HTMLToText()
    parser.feed(html)
    parser.close()
    return parser.get_text()


def make_sparkline(values: list[float]) -> str:
    if not values:
        return ""
    low, high = min(values), max(values)
    span = (high - low) or 1
    top = len(_SPARK_BLOCKS) - 1
    return "".join(_SPARK_BLOCKS[int((v - low) / span * top)] for v in values)


def price_sparkline(raw: str) -> str:
    """Sparkline for a JSON body shaped like ``{"prices": [[ts, value], ...]}``."""
    try:
        data = json.loads(raw)
    except ValueError:
        return ""
    if not isinstance(data, dict) or not isinstance(data.get("prices"), list):
        return ""
    values = []
    for point in data["prices"]:
        if isinstance(point, list) and len(point) > 1:
            try:
                values.append(float(point[1]))
            except (TypeError, ValueError):
                continue
    return make_sparkline(values)


def format_body(raw: str, content_type: str, cap: int | None = None) -> str:
    """HTML reduced to text, capped, sparkline appended when applicable."""
    cap = cap or FETCH_MAX_RESPONSE
    body = raw
    if "html" in content_type.lower() or raw.lstrip().startswith("<"):
        body = html_to_text(raw)
    if len(body) > cap:
        body = body[:cap] + f"\n[truncated at {cap} chars]"
    spark = price_sparkline(raw)
    if spark:
        body += f"\n\nSparkline: {spark}"
    return body


# ─── Tool ───────────────────────────────────────────────────────

async def _send(client: httpx.AsyncClient, request: httpx.Request) -> httpx.Response:
    """Send a request, following redirects by hand so every hop passes validate_url."""
    resp = await client.send(request)
    hops = 0
    while resp.next_request is not None:
        hops += 1
        if hops > MAX_REDIRECTS:
            raise ToolError(f"too many redirects (more than {MAX_REDIRECTS})")
        target = resp.next_request
        error = validate_url(str(target.url))
        if error:
            raise ToolError(f"Redirect blocked: {error}")
        log.debug("Following redirect %d -> %s", resp.status_code, target.url)
        resp = await client.send(target)
    return resp


async def tool_fetch_url(url: str, method: str = "GET", headers: dict | None = None,
                         body: str | None = None) -> str:
    """Fetch a URL and return ``[HTTP status]`` plus the readable body."""
    method = method.upper()
    if method not in _ALLOWED_METHODS:
        raise ToolError(f"unsupported method {method}")
    error = validate_url(url)
    if error:
        raise ToolError(error)

    async with httpx.AsyncClient(timeout=_TIMEOUT, follow_redirects=False) as client:
        request = client.build_request(
            method, url,
            headers={"User-Agent": "Mozilla/5.0 (compatible; Clawd/1.0)", **(headers or {})},
            content=body.encode("utf-8") if body is not None else None,
        )
        try:
            resp = await _send(client, request)
        except httpx.HTTPError as e:
            raise ToolError(f"request to {url} failed: {e}") from e

    log.debug("fetch_url %s %s -> %d (%d bytes)", method, url, resp.status_code, len(resp.content))
    return f"[HTTP {resp.status_code}]\n" + format_body(
        resp.text, resp.headers.get("Content-Type", ""),
    )


async def fetch_directive(url: str) -> str:
    """Follow-up fetch for a URL the model asked for inline in its answer."""
    error = validate_url(url)
    if error:
        raise ToolError(error)
    async with httpx.AsyncClient(timeout=_TIMEOUT, follow_redirects=False) as client:
        resp = await _send(client, client.build_request("GET", url))
    return format_body(resp.text, resp.headers.get("Content-Type", ""))


TOOLS = [
    {
        "name": "fetch_url",
        "description": "Make an HTTP request. Returns the status and the response body "
                       "(HTML reduced to text, long bodies truncated).",
        "input_schema": {
            "type": "object",
            "properties": {
                "url": {"type": "string", "description": "URL to fetch"},
                "method": {"type": "string", "description": "HTTP method (default: GET)", "default": "GET"},
                "headers": {"type": "object", "description": "Request headers",
                            "additionalProperties": {"type": "string"}},
                "body": {"type": "string", "description": "Request body"},
            },
            "required": ["url"],
        },
        "function": tool_fetch_url,
    },
]
