import io
import socket
from urllib.error import HTTPError

import pytest

from nebularnews import feeds
from nebularnews.enrichment.images import extract_lead_image, first_content_image
from nebularnews.feeds import FeedFetchError, fetch_feed, parse_feed

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/">
  <channel>
    <title>Orbit Weekly</title>
    <link>https://orbit.example.com/</link>
    <item>
      <title>Rocket lands</title>
      <link>https://orbit.example.com/rocket?utm_source=rss</link>
      <guid>rocket-1</guid>
      <pubDate>Mon, 10 Mar 2025 12:00:00 GMT</pubDate>
      <description><![CDATA[<p>The booster came back.</p><img src="/logo.png"><img src="/img/booster.jpg" width="800">]]></description>
    </item>
    <item>
      <title>Probe update</title>
      <link>https://orbit.example.com/probe</link>
      <media:content url="https://cdn.example.com/probe.jpg" medium="image" />
      <description>Probe is fine.</description>
    </item>
  </channel>
</rss>
"""


class _Response:
    def __init__(self, body: bytes, status: int = 200, headers: dict | None = None) -> None:
        self._body = io.BytesIO(body)
        self._status = status
        self.headers = headers or {}

    def getcode(self):
        return self._status

    def read(self, *args):
        return self._body.read(*args)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


def test_parse_feed_extracts_items_and_images():
    parsed = parse_feed(RSS, base_url="https://orbit.example.com/feed")

    assert parsed.title == "Orbit Weekly"
    assert parsed.site_url == "https://orbit.example.com/"
    assert len(parsed.items) == 2
    first, second = parsed.items
    assert first.url == "https://orbit.example.com/rocket?utm_source=rss"
    assert first.guid == "rocket-1"
    assert first.published_at.startswith("2025-03-10T12:00:00")
    assert first.content_text == "The booster came back."
    assert first.image_url == "https://orbit.example.com/img/booster.jpg"
    assert second.image_url == "https://cdn.example.com/probe.jpg"
    assert second.published_at is None


def test_parse_feed_malformed_yields_empty():
    parsed = parse_feed(b"this is not xml <<< {", base_url="https://bad.example.com/feed")
    assert parsed.items == []


def test_first_content_image_skips_small_and_decorative():
    html = (
        '<img src="https://x.example.com/avatar/me.png">'
        '<img src="https://x.example.com/tiny.png" width="16" height="16">'
        '<img src="data:image/gif;base64,AAAA">'
        '<img data-src="https://x.example.com/real.jpg">'
    )
    assert first_content_image(html) == "https://x.example.com/real.jpg"
    assert first_content_image("<p>no images</p>") is None


def test_extract_lead_image_prefers_og_meta():
    html = (
        '<html><head><meta property="og:image" content="/social.jpg"></head>'
        '<body><article><img src="/inline.jpg"></article></body></html>'
    )
    assert extract_lead_image(html, "https://site.example.com/a") == "https://site.example.com/social.jpg"


def test_fetch_feed_sends_validators_and_parses(monkeypatch):
    seen = {}

    def fake_urlopen(request, timeout):
        seen["etag"] = request.get_header("If-none-match")
        seen["since"] = request.get_header("If-modified-since")
        seen["timeout"] = timeout
        return _Response(RSS, headers={"ETag": '"v2"'})

    monkeypatch.setattr(feeds, "urlopen", fake_urlopen)
    result = fetch_feed(
        "https://orbit.example.com/feed",
        etag='"v1"',
        last_modified="Mon, 10 Mar 2025 00:00:00 GMT",
    )

    assert seen == {
        "etag": '"v1"',
        "since": "Mon, 10 Mar 2025 00:00:00 GMT",
        "timeout": 12,
    }
    assert not result.not_modified
    assert result.etag == '"v2"'
    assert len(result.feed.items) == 2


def test_fetch_feed_not_modified(monkeypatch):
    def fake_urlopen(request, timeout):
        raise HTTPError(request.full_url, 304, "Not Modified", {}, None)

    monkeypatch.setattr(feeds, "urlopen", fake_urlopen)
    result = fetch_feed("https://orbit.example.com/feed", etag='"v1"')

    assert result.not_modified
    assert result.feed is None
    assert result.etag == '"v1"'


def test_fetch_feed_http_error_is_typed(monkeypatch):
    def fake_urlopen(request, timeout):
        raise HTTPError(request.full_url, 503, "Unavailable", {}, None)

    monkeypatch.setattr(feeds, "urlopen", fake_urlopen)
    with pytest.raises(FeedFetchError) as excinfo:
        fetch_feed("https://orbit.example.com/feed")
    assert excinfo.value.status == 503


def test_fetch_feed_timeout_is_typed(monkeypatch):
    def fake_urlopen(request, timeout):
        raise socket.timeout("timed out")

    monkeypatch.setattr(feeds, "urlopen", fake_urlopen)
    with pytest.raises(FeedFetchError) as excinfo:
        fetch_feed("https://orbit.example.com/feed")
    assert excinfo.value.reason == "timeout"
