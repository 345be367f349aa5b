import asyncio
import ipaddress

import pytest

from gotify_companion.errors import PreviewBlockedError, PreviewError
from gotify_companion.preview import (
    UrlPreviewFetcher,
    block_reason_for_ip,
    extract_preview_url,
    is_blocked_hostname,
    parse_preview_html,
    resolve_meta_url,
)

PUBLIC_IP = "93.184.216.34"

ARTICLE_HTML = """
<html><head>
<title>Fallback title</title>
<meta property="og:title" content="Release 2.0">
<meta name="description" content="Plain description">
<meta property="og:description" content="All the changes">
<meta property="og:image" content="/img/cover.png">
</head><body>hi</body></html>
"""


class FakeContent:
    def __init__(self, body: bytes) -> None:
        self._body = body

    async def iter_chunked(self, size):
        for start in range(0, len(self._body), size):
            yield self._body[start : start + size]


class FakeResponse:
    def __init__(self, status=200, body=b"", headers=None, content_length=None, charset="utf-8"):
        self.status = status
        self.headers = {"Content-Type": "text/html; charset=utf-8"} if headers is None else headers
        self.content = FakeContent(body)
        self.content_length = content_length
        self.charset = charset

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False


class FakeSession:
    def __init__(self, routes):
        self.routes = routes
        self.requested = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc_info):
        return False

    def get(self, url, allow_redirects=True, headers=None):
        assert allow_redirects is False
        self.requested.append(url)
        return self.routes[url]


class FakeResolver:
    def __init__(self, table=None):
        self.table = table or {}
        self.calls = []

    async def __call__(self, host, port):
        self.calls.append((host, port))
        return self.table.get(host, [PUBLIC_IP])


def make_fetcher(routes, resolver=None, **kwargs):
    session = FakeSession(routes)
    fetcher = UrlPreviewFetcher(
        session_factory=lambda: session,
        resolver=resolver or FakeResolver(),
        **kwargs,
    )
    return fetcher, session


def test_fetch_parses_open_graph_metadata():
    url = "https://news.example/post"
    fetcher, _ = make_fetcher({url: FakeResponse(body=ARTICLE_HTML.encode())})

    preview = asyncio.run(fetcher.fetch(url))
    assert preview.url == url
    assert preview.title == "Release 2.0"
    assert preview.description == "All the changes"
    assert preview.site_name == "news.example"
    assert preview.image == "https://news.example/img/cover.png"


def test_non_html_response_returns_bare_preview():
    url = "https://files.example/report.pdf"
    fetcher, _ = make_fetcher(
        {url: FakeResponse(body=b"%PDF", headers={"Content-Type": "application/pdf"})}
    )
    preview = asyncio.run(fetcher.fetch(url))
    assert preview.as_dict() == {
        "url": url,
        "title": None,
        "description": None,
        "site_name": "files.example",
        "image": None,
    }


@pytest.mark.parametrize(
    "url",
    [
        "http://127.0.0.1/admin",
        "http://localhost:8080/",
        "http://api.localhost/",
        "http://169.254.169.254/latest/meta-data/",
        "http://metadata.google.internal/",
        "http://10.1.2.3/",
        "http://[::1]/",
        "http://[::ffff:192.168.1.1]/",
        "file:///etc/passwd",
    ],
)
def test_blocked_targets_fail_before_any_request(url):
    fetcher, session = make_fetcher({})
    with pytest.raises(PreviewBlockedError):
        asyncio.run(fetcher.fetch(url))
    assert session.requested == []


def test_hostname_resolving_to_private_address_is_blocked():
    resolver = FakeResolver({"intranet.example": ["192.168.10.5"]})
    fetcher, session = make_fetcher({}, resolver=resolver)
    with pytest.raises(PreviewBlockedError, match="private"):
        asyncio.run(fetcher.fetch("https://intranet.example/wiki"))
    assert resolver.calls == [("intranet.example", 443)]
    assert session.requested == []


def test_redirect_to_loopback_is_blocked():
    start = "https://short.example/abc"
    fetcher, session = make_fetcher(
        {start: FakeResponse(status=302, headers={"Location": "http://127.0.0.1:9000/secret"})}
    )
    with pytest.raises(PreviewBlockedError):
        asyncio.run(fetcher.fetch(start))
    assert session.requested == [start]


def test_relative_redirect_is_followed():
    start = "https://short.example/abc"
    final = "https://short.example/articles/1"
    fetcher, session = make_fetcher(
        {
            start: FakeResponse(status=301, headers={"Location": "/articles/1"}),
            final: FakeResponse(body=b"<title> Article </title>"),
        }
    )
    preview = asyncio.run(fetcher.fetch(start))
    assert preview.url == final
    assert preview.title == "Article"
    assert session.requested == [start, final]


def test_redirect_limit_is_enforced():
    routes = {
        f"https://loop.example/{i}": FakeResponse(
            status=302, headers={"Location": f"https://loop.example/{i + 1}"}
        )
        for i in range(10)
    }
    fetcher, session = make_fetcher(routes, max_redirects=2)
    with pytest.raises(PreviewError, match="too many"):
        asyncio.run(fetcher.fetch("https://loop.example/0"))
    assert len(session.requested) == 3


def test_redirect_without_location_fails():
    url = "https://bad.example/"
    fetcher, _ = make_fetcher({url: FakeResponse(status=302, headers={})})
    with pytest.raises(PreviewError, match="location"):
        asyncio.run(fetcher.fetch(url))


def test_oversized_body_is_rejected():
    url = "https://big.example/"
    body = b"<html>" + b"a" * 5000
    fetcher, _ = make_fetcher({url: FakeResponse(body=body)}, max_html_bytes=1024)
    with pytest.raises(PreviewError, match="byte limit"):
        asyncio.run(fetcher.fetch(url))

    fetcher, _ = make_fetcher({url: FakeResponse(body=b"", content_length=10_000)}, max_html_bytes=1024)
    with pytest.raises(PreviewError, match="too large"):
        asyncio.run(fetcher.fetch(url))


def test_http_error_status_fails():
    url = "https://down.example/"
    fetcher, _ = make_fetcher({url: FakeResponse(status=503)})
    with pytest.raises(PreviewError, match="HTTP 503"):
        asyncio.run(fetcher.fetch(url))


def test_timeout_maps_to_preview_error():
    class SlowResolver:
        async def __call__(self, host, port):
            await asyncio.sleep(1)
            return [PUBLIC_IP]

    fetcher, _ = make_fetcher({}, resolver=SlowResolver(), timeout_sec=0.05)
    with pytest.raises(PreviewError, match="timed out"):
        asyncio.run(fetcher.fetch("https://slow.example/"))


def test_meta_image_pointing_inside_network_is_dropped():
    html = '<meta property="og:image" content="http://169.254.169.254/x.png"><title>t</title>'
    preview = parse_preview_html("https://site.example/a", html)
    assert preview.image is None
    assert resolve_meta_url("https://site.example/a", "javascript:alert(1)") is None
    assert resolve_meta_url("https://site.example/a", "b.png") == "https://site.example/b.png"


def test_address_classification():
    assert block_reason_for_ip(ipaddress.ip_address("100.100.100.200")) == "metadata endpoint"
    assert block_reason_for_ip(ipaddress.ip_address("100.64.0.1")) == "shared address space"
    assert block_reason_for_ip(ipaddress.ip_address("224.0.0.1")) == "multicast"
    assert block_reason_for_ip(ipaddress.ip_address("fe80::1")) == "link-local"
    assert block_reason_for_ip(ipaddress.ip_address("fc00::1")) == "private"
    assert block_reason_for_ip(ipaddress.ip_address("0.0.0.0")) == "unspecified"
    assert block_reason_for_ip(ipaddress.ip_address(PUBLIC_IP)) is None
    assert is_blocked_hostname("Metadata.Azure.Internal.")
    assert not is_blocked_hostname("gotify.example")


def test_extract_preview_url_skips_markdown_links():
    body = (
        "See ![shot](https://img.example/a.png) and [docs](https://docs.example/x) "
        "or <https://auto.example/> then https://plain.example/path?q=1). Thanks"
    )
    assert extract_preview_url(body) == "https://plain.example/path?q=1"
    assert extract_preview_url("done: https://a.example/end.") == "https://a.example/end"
    assert extract_preview_url("no links here") is None
