from __future__ import annotations

import asyncio
import ipaddress
import logging
import re
import socket
import urllib.parse
from html.parser import HTMLParser
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, Union

import aiohttp
from aiohttp.abc import AbstractResolver

from .errors import PreviewBlockedError, PreviewError
from .models import UrlPreview

logger = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
Resolver = Callable[[str, int], Awaitable[List[str]]]
SessionFactory = Callable[[], aiohttp.ClientSession]

USER_AGENT = "Gotify-Companion-Preview/1.0"
ACCEPT = "text/html,application/xhtml+xml"
READ_CHUNK_BYTES = 8192

BLOCKED_HOSTNAMES = frozenset(
    {
        "localhost",
        "metadata",
        "metadata.google.internal",
        "metadata.azure.internal",
        "instance-data.ec2.internal",
    }
)
METADATA_ADDRESSES = frozenset(
    ipaddress.ip_address(value)
    for value in ("169.254.169.254", "169.254.170.2", "100.100.100.200", "fd00:ec2::254")
)
SHARED_ADDRESS_SPACE = ipaddress.ip_network("100.64.0.0/10")


def is_blocked_hostname(host: str) -> bool:
    normalized = host.strip().rstrip(".").lower()
    if not normalized:
        return True
    if normalized.endswith(".localhost"):
        return True
    return normalized in BLOCKED_HOSTNAMES


def block_reason_for_ip(ip: IPAddress) -> Optional[str]:
    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped
    if ip in METADATA_ADDRESSES:
        return "metadata endpoint"
    if ip.is_unspecified:
        return "unspecified"
    if ip.is_loopback:
        return "loopback"
    if ip.is_link_local:
        return "link-local"
    if ip.is_multicast:
        return "multicast"
    if isinstance(ip, ipaddress.IPv4Address) and ip in SHARED_ADDRESS_SPACE:
        return "shared address space"
    if ip.is_private:
        return "private"
    if ip.is_reserved:
        return "reserved"
    return None


def _parse_ip(value: str) -> Optional[IPAddress]:
    text = value.strip().strip("[]").split("%", 1)[0]
    try:
        return ipaddress.ip_address(text)
    except ValueError:
        return None


async def resolve_host_addresses(host: str, port: int) -> List[str]:
    loop = asyncio.get_running_loop()
    try:
        infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    except OSError as exc:
        raise PreviewError(f"Failed to resolve preview host '{host}': {exc}") from exc
    addresses: List[str] = []
    for info in infos:
        address = str(info[4][0])
        if address not in addresses:
            addresses.append(address)
    if not addresses:
        raise PreviewError(f"Failed to resolve preview host '{host}' to an IP address")
    return addresses


class PolicyResolver(AbstractResolver):
    """Connector-level resolver that refuses disallowed addresses.

    Re-checks whatever the connection is about to use, so a name that
    resolves differently between the policy check and the connect is
    still refused.
    """

    def __init__(self) -> None:
        self._inner = aiohttp.ThreadedResolver()

    async def resolve(
        self, host: str, port: int = 0, family: socket.AddressFamily = socket.AF_INET
    ) -> List[Dict[str, Any]]:
        results = await self._inner.resolve(host, port, family)
        for result in results:
            ip = _parse_ip(str(result["host"]))
            reason = block_reason_for_ip(ip) if ip is not None else "unparseable"
            if reason is not None:
                raise PreviewBlockedError(
                    f"Preview blocked for {reason} target (domain '{host}' resolved to {result['host']})"
                )
        return results

    async def close(self) -> None:
        await self._inner.close()


def _default_session_factory() -> aiohttp.ClientSession:
    connector = aiohttp.TCPConnector(resolver=PolicyResolver(), force_close=True)
    return aiohttp.ClientSession(connector=connector)


class _MetaParser(HTMLParser):
    def __init__(self) -> None:
        super().__init__(convert_charrefs=True)
        self.meta: List[Tuple[str, str]] = []
        self._title_parts: List[str] = []
        self._in_title = False
        self._title_done = False

    @property
    def title(self) -> Optional[str]:
        text = "".join(self._title_parts).strip()
        return text or None

    def handle_starttag(self, tag: str, attrs: List[Tuple[str, Optional[str]]]) -> None:
        if tag == "meta":
            values = {name.lower(): (value or "") for name, value in attrs}
            prop = values.get("property") or values.get("name") or ""
            if prop:
                self.meta.append((prop.lower(), values.get("content", "")))
        elif tag == "title" and not self._title_done:
            self._in_title = True

    def handle_endtag(self, tag: str) -> None:
        if tag == "title" and self._in_title:
            self._in_title = False
            self._title_done = True

    def handle_data(self, data: str) -> None:
        if self._in_title:
            self._title_parts.append(data)

    def find_meta(self, keys: Sequence[str]) -> Optional[str]:
        for key in keys:
            wanted = key.lower()
            for prop, content in self.meta:
                if prop == wanted and content.strip():
                    return content.strip()
        return None


def _host_is_blocked(host: str) -> bool:
    if is_blocked_hostname(host):
        return True
    ip = _parse_ip(host)
    return ip is not None and block_reason_for_ip(ip) is not None


def resolve_meta_url(base_url: str, raw: Optional[str]) -> Optional[str]:
    if not raw or not raw.strip():
        return None
    resolved = urllib.parse.urljoin(base_url, raw.strip())
    parts = urllib.parse.urlsplit(resolved)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    if _host_is_blocked(parts.hostname):
        return None
    return resolved


def parse_preview_html(url: str, html: str) -> UrlPreview:
    parser = _MetaParser()
    parser.feed(html)
    parser.close()
    host = urllib.parse.urlsplit(url).hostname
    return UrlPreview(
        url=url,
        title=parser.find_meta(["og:title"]) or parser.title,
        description=parser.find_meta(["og:description", "description"]),
        site_name=parser.find_meta(["og:site_name"]) or host,
        image=resolve_meta_url(url, parser.find_meta(["og:image"])),
    )


_MARKDOWN_IMAGE_RE = re.compile(
    r"!\[[^\]]*\]\((https?://[^)\s]+)(?:\s+[\"'][^\"']*[\"'])?\)", re.IGNORECASE
)
_MARKDOWN_LINK_RE = re.compile(
    r"\[[^\]]*\]\((https?://[^)\s]+)(?:\s+[\"'][^\"']*[\"'])?\)", re.IGNORECASE
)
_AUTOLINK_RE = re.compile(r"<https?://[^>\s]+>", re.IGNORECASE)
_PLAIN_URL_RE = re.compile(r"https?://[^\s)]+")
_TRAILING_PUNCT_RE = re.compile(r"[.,!?;:]+$")


def extract_plain_urls(text: str) -> List[str]:
    """Plain URLs in a message body, skipping markdown links and autolinks."""
    stripped = _MARKDOWN_IMAGE_RE.sub(" ", text or "")
    stripped = _MARKDOWN_LINK_RE.sub(" ", stripped)
    stripped = _AUTOLINK_RE.sub(" ", stripped)
    seen: List[str] = []
    for match in _PLAIN_URL_RE.findall(stripped):
        url = _TRAILING_PUNCT_RE.sub("", match)
        if url and url not in seen:
            seen.append(url)
    return seen


def extract_preview_url(text: str) -> Optional[str]:
    urls = extract_plain_urls(text)
    return urls[0] if urls else None


class UrlPreviewFetcher:
    def __init__(
        self,
        timeout_sec: float = 6.0,
        max_redirects: int = 5,
        max_html_bytes: int = 120_000,
        session_factory: Optional[SessionFactory] = None,
        resolver: Optional[Resolver] = None,
    ) -> None:
        self._timeout_sec = timeout_sec
        self._max_redirects = max(0, int(max_redirects))
        self._max_html_bytes = max(1, int(max_html_bytes))
        self._session_factory = session_factory or _default_session_factory
        self._resolver = resolver or resolve_host_addresses

    async def fetch(self, url: str) -> UrlPreview:
        target = (url or "").strip()
        try:
            return await asyncio.wait_for(self._fetch(target), timeout=self._timeout_sec)
        except asyncio.TimeoutError as exc:
            logger.info("preview_failed url=%s err=timeout", target)
            raise PreviewError(
                f"Preview request timed out after {self._timeout_sec:g} seconds"
            ) from exc
        except PreviewError as exc:
            logger.info("preview_failed url=%s err=%s", target, exc)
            raise

    async def enforce_target_policy(self, url: str) -> None:
        try:
            parts = urllib.parse.urlsplit(url)
            port = parts.port
        except ValueError as exc:
            raise PreviewError(f"Invalid preview URL: {exc}") from exc
        if parts.scheme not in ("http", "https"):
            raise PreviewBlockedError(
                f"Only http/https URLs are supported for previews (got '{parts.scheme}')"
            )
        host = parts.hostname
        if not host:
            raise PreviewError("Preview URL is missing a host")
        if is_blocked_hostname(host):
            raise PreviewBlockedError(f"Preview blocked for restricted hostname '{host}'")

        ip = _parse_ip(host)
        if ip is not None:
            reason = block_reason_for_ip(ip)
            if reason is not None:
                raise PreviewBlockedError(f"Preview blocked for {reason} target '{ip}'")
            return

        if port is None:
            port = 443 if parts.scheme == "https" else 80
        for address in await self._resolver(host, port):
            resolved = _parse_ip(address)
            reason = block_reason_for_ip(resolved) if resolved is not None else "unparseable"
            if reason is not None:
                raise PreviewBlockedError(
                    f"Preview blocked for {reason} target (domain '{host}' resolved to {address})"
                )

    async def _fetch(self, url: str) -> UrlPreview:
        current = url
        await self.enforce_target_policy(current)
        async with self._session_factory() as session:
            for hop in range(self._max_redirects + 1):
                try:
                    async with session.get(
                        current,
                        allow_redirects=False,
                        headers={"User-Agent": USER_AGENT, "Accept": ACCEPT},
                    ) as response:
                        status = response.status
                        if 300 <= status < 400:
                            if hop == self._max_redirects:
                                raise PreviewError(
                                    f"Preview request redirected too many times (>{self._max_redirects})"
                                )
                            current = self._next_hop(current, response.headers.get("Location"))
                            await self.enforce_target_policy(current)
                            logger.debug("preview_redirect hop=%s url=%s", hop + 1, current)
                            continue
                        if status < 200 or status >= 300:
                            raise PreviewError(f"Preview request failed with HTTP {status}")
                        return await self._build_preview(current, response)
                except aiohttp.ClientError as exc:
                    raise PreviewError(f"Preview request failed: {exc}") from exc
        raise PreviewError("Preview request failed after redirects")

    @staticmethod
    def _next_hop(current: str, location: Optional[str]) -> str:
        if location is None:
            raise PreviewError("Preview redirect missing location header")
        trimmed = location.strip()
        if not trimmed:
            raise PreviewError("Preview redirect location is empty")
        return urllib.parse.urljoin(current, trimmed)

    async def _build_preview(self, url: str, response: aiohttp.ClientResponse) -> UrlPreview:
        length = response.content_length
        if length is not None and length > self._max_html_bytes:
            raise PreviewError(
                f"Preview response too large ({length} bytes > {self._max_html_bytes} bytes)"
            )
        content_type = response.headers.get("Content-Type", "").lower()
        if "text/html" not in content_type:
            return UrlPreview(url=url, site_name=urllib.parse.urlsplit(url).hostname)

        body = bytearray()
        async for chunk in response.content.iter_chunked(READ_CHUNK_BYTES):
            if len(body) + len(chunk) > self._max_html_bytes:
                raise PreviewError(f"Preview response exceeded {self._max_html_bytes} byte limit")
            body.extend(chunk)
        charset = response.charset or "utf-8"
        try:
            html = body.decode(charset, errors="replace")
        except LookupError:
            html = body.decode("utf-8", errors="replace")
        preview = parse_preview_html(url, html)
        logger.debug("preview_ok url=%s title=%s", url, preview.title)
        return preview
