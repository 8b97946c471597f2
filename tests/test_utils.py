from datetime import datetime, timedelta, timezone

from nebularnews.enrichment.url import canonicalize_url
from nebularnews.utils import (
    content_hash,
    day_range,
    is_same_day,
    isoformat_utc,
    json_dumps,
    normalize_published_at,
    parse_date_value,
    safe_log_event,
)

FETCHED = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)


def test_future_published_beyond_skew_is_clamped():
    published = FETCHED + timedelta(hours=25)
    assert normalize_published_at(published, FETCHED) == FETCHED


def test_near_future_published_is_kept():
    published = FETCHED + timedelta(minutes=10)
    assert normalize_published_at(published, FETCHED) == published


def test_missing_published_normalizes_to_none():
    assert normalize_published_at(None, FETCHED) is None


def test_same_day_window():
    start, end = day_range(FETCHED)
    assert start == datetime(2025, 3, 10, tzinfo=timezone.utc)
    assert end == datetime(2025, 3, 11, tzinfo=timezone.utc)
    assert is_same_day(start, FETCHED)
    assert is_same_day(None, FETCHED)
    assert not is_same_day(start - timedelta(microseconds=1), FETCHED)


def test_prior_utc_day_is_not_same_day_even_minutes_apart():
    fetched = datetime(2025, 3, 10, 0, 1, tzinfo=timezone.utc)
    published = datetime(2025, 3, 9, 23, 59, tzinfo=timezone.utc)
    assert not is_same_day(published, fetched)


def test_day_range_with_offset_is_clamped():
    start, end = day_range(FETCHED, tz_offset_minutes=120)
    assert start == datetime(2025, 3, 9, 22, 0, tzinfo=timezone.utc)
    assert end - start == timedelta(days=1)
    clamped, _ = day_range(FETCHED, tz_offset_minutes=10_000)
    assert clamped == day_range(FETCHED, tz_offset_minutes=14 * 60)[0]


def test_isoformat_utc_sorts_lexically():
    early = isoformat_utc(datetime(2025, 1, 1, 9, 0, tzinfo=timezone.utc))
    late = isoformat_utc(datetime(2025, 1, 1, 10, 0, 0, 1, tzinfo=timezone.utc))
    assert len(early) == len(late)
    assert early < late


def test_parse_date_value_handles_rfc822_and_iso():
    rfc = parse_date_value("Mon, 10 Mar 2025 12:00:00 GMT")
    iso = parse_date_value("2025-03-10T12:00:00Z")
    assert rfc == FETCHED
    assert iso == FETCHED
    assert parse_date_value("not a date") is None


def test_content_hash_prefers_first_non_empty():
    assert content_hash("  ", "Title", "https://x") == content_hash("Title")
    assert content_hash(None, None, "https://x") == content_hash("https://x")


def test_canonicalize_url_strips_tracking_and_fragment():
    url = "HTTPS://News.Example.com:443/a?id=3&utm_source=rss&fbclid=abc#top"
    assert canonicalize_url(url) == "https://news.example.com/a?id=3"
    assert canonicalize_url("/relative", "https://example.com/feed") == "https://example.com/relative"
    assert canonicalize_url("mailto:someone@example.com") is None
    assert canonicalize_url("") is None


def test_json_dumps_handles_datetimes():
    payload = json_dumps({"at": FETCHED, "values": (1, 2)})
    assert "2025-03-10T12:00:00+00:00" in payload


def test_safe_log_event_never_raises():
    class Exploding:
        def log(self, *args, **kwargs):
            raise RuntimeError("boom")

    safe_log_event(Exploding(), 20, "event", a=1)
