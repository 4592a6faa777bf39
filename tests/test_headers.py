"""
Tests for HTTP cache header helpers.
"""

from datetime import datetime

import pytest
from starlette.requests import Request
from starlette.responses import Response

from thanalytica.cache.headers import (
    CacheHeadersBuilder,
    check_not_modified,
    envelope_etag,
    etags_match,
    generate_etag,
    parse_etag,
    processing_headers,
)


def _request(**headers) -> Request:
    raw = [(name.replace("_", "-").lower().encode(), value.encode())
           for name, value in headers.items()]
    return Request({"type": "http", "method": "GET", "path": "/", "headers": raw})


# =============================================================================
# ETAGS
# =============================================================================

class TestETags:
    """ETag generation and comparison."""

    def test_generate_is_deterministic(self):
        first = generate_etag("user_123", "dashboard", "2024-06-15T12:00:00")
        assert first == generate_etag("user_123", "dashboard", "2024-06-15T12:00:00")
        assert first != generate_etag("user_123", "dashboard", "2024-06-15T13:00:00")
        assert first.startswith('"') and first.endswith('"')
        assert len(parse_etag(first)) == 16

    def test_weak(self):
        etag = generate_etag("a", weak=True)
        assert etag.startswith('W/"')
        assert parse_etag(etag) == parse_etag(generate_etag("a"))

    def test_match(self):
        etag = generate_etag("a")
        assert etags_match(etag, etag)
        assert etags_match(f'"other", {etag}', etag)
        assert etags_match("*", etag)
        assert not etags_match('"other"', etag)
        assert not etags_match(None, etag)
        assert parse_etag("") == ""


# =============================================================================
# BUILDER & PRESETS
# =============================================================================

class TestHeaders:
    """Cache-Control building."""

    def test_builder_from_preset(self):
        envelope = {"data": {}, "lastUpdated": "2024-06-15T12:00:00"}
        headers = (CacheHeadersBuilder("dashboard")
                   .for_envelope("u1", "dashboard", envelope)
                   .build())

        assert headers == {
            "Cache-Control": "public, max-age=300",
            "ETag": envelope_etag("u1", "dashboard", envelope),
            "Last-Modified": "Sat, 15 Jun 2024 12:00:00 GMT",
        }

    def test_builder_overrides(self):
        assert CacheHeadersBuilder().max_age(60, public=False).build() == {
            "Cache-Control": "private, max-age=60",
        }
        assert CacheHeadersBuilder("metrics").no_store().build()["Cache-Control"] == "no-store"

    def test_envelope_etag_tracks_last_updated(self):
        first = envelope_etag("u1", "weekly_metrics", {"lastUpdated": "2024-06-15T12:00:00"})
        second = envelope_etag("u1", "weekly_metrics", {"lastUpdated": "2024-06-15T13:00:00"})
        assert first != second
        assert first == generate_etag("u1", "weekly_metrics", "2024-06-15T12:00:00")

    def test_apply_to_response(self):
        response = CacheHeadersBuilder().no_store().retry_after(15).apply(Response())

        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["Retry-After"] == "15"

    def test_presets(self):
        assert CacheHeadersBuilder("dashboard").build() == {"Cache-Control": "public, max-age=300"}
        assert CacheHeadersBuilder("metrics").etag('"abc"').build()["ETag"] == '"abc"'
        assert CacheHeadersBuilder("realtime").build() == {"Cache-Control": "no-store"}

    def test_processing(self):
        assert processing_headers(30) == {"Cache-Control": "no-store", "Retry-After": "30"}


# =============================================================================
# CONDITIONAL REQUESTS
# =============================================================================

class TestNotModified:
    """304 handling."""

    def test_if_none_match(self):
        etag = generate_etag("u1")
        response = check_not_modified(_request(if_none_match=etag), etag)

        assert response is not None
        assert response.status_code == 304
        assert response.headers["ETag"] == etag

    def test_if_none_match_mismatch(self):
        assert check_not_modified(_request(if_none_match='"stale"'), generate_etag("u1")) is None

    def test_if_none_match_wins_over_date(self):
        request = _request(if_none_match='"stale"',
                           if_modified_since="Sat, 15 Jun 2024 13:00:00 GMT")
        assert check_not_modified(request, generate_etag("u1"), datetime(2024, 6, 15, 12, 0)) is None

    def test_if_modified_since(self):
        request = _request(if_modified_since="Sat, 15 Jun 2024 12:00:00 GMT")

        assert check_not_modified(request, '"x"', datetime(2024, 6, 15, 12, 0, 0, 500)).status_code == 304
        assert check_not_modified(request, '"x"', datetime(2024, 6, 15, 12, 5, 0)) is None

    def test_unparseable_date(self):
        request = _request(if_modified_since="yesterday-ish")
        assert check_not_modified(request, '"x"', datetime(2024, 6, 15, 12, 0)) is None

    def test_no_conditional_headers(self):
        assert check_not_modified(_request(), '"x"', datetime(2024, 6, 15, 12, 0)) is None


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
