"""
HTTP Cache Headers

Cache-Control, ETag and Retry-After handling for the metrics endpoints.

- Cache hits carry Cache-Control from a preset and an ETag derived from the
  envelope's lastUpdated, so clients can revalidate with If-None-Match.
- 202 "processing" responses are never cacheable and tell the client when
  to poll again.
"""

import hashlib
import logging
from datetime import datetime, timezone
from email.utils import format_datetime, parsedate_to_datetime
from typing import Any, Dict, Optional

from fastapi import Request, Response

from thanalytica.cache.config import HTTP_CACHE_PRESETS
from thanalytica.utils.clock import from_iso

logger = logging.getLogger(__name__)


# =============================================================================
# ETAGS
# =============================================================================

def generate_etag(*components: Any, weak: bool = False) -> str:
    """
    Quoted ETag built from a sha256 of the components.

    Returns:
        e.g. '"3f2a9c0e1b7d4a55"' (W/ prefixed when weak)
    """
    digest = hashlib.sha256(":".join(str(c) for c in components).encode()).hexdigest()[:16]
    return f'W/"{digest}"' if weak else f'"{digest}"'


def envelope_etag(user_id: str, cache_key: str, envelope: Dict[str, Any]) -> str:
    """ETag of one cached sub-cache; changes whenever it is recomputed."""
    return generate_etag(user_id, cache_key, envelope.get("lastUpdated"))


def parse_etag(etag: str) -> str:
    """Opaque part of an ETag (no W/ prefix, no quotes)."""
    if not etag:
        return ""
    return etag[2:].strip('"') if etag.startswith("W/") else etag.strip('"')


def etags_match(request_etag: Optional[str], current_etag: str) -> bool:
    """
    Weak comparison of an If-None-Match header against the current ETag.

    Handles comma-separated lists and the ``*`` wildcard.
    """
    if not request_etag:
        return False

    wanted = parse_etag(current_etag)
    candidates = [c.strip() for c in request_etag.split(",")]
    return any(c == "*" or parse_etag(c) == wanted for c in candidates)


def _http_date(dt: datetime) -> str:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return format_datetime(dt.astimezone(timezone.utc), usegmt=True)


# =============================================================================
# BUILDER
# =============================================================================

class CacheHeadersBuilder:
    """
    Fluent builder for response headers, starting from a preset.

    Usage:
        headers = (CacheHeadersBuilder("dashboard")
            .for_envelope(user_id, "dashboard", envelope)
            .build())

        headers = CacheHeadersBuilder("realtime").retry_after(30).build()
    """

    def __init__(self, preset: Optional[str] = None):
        config = HTTP_CACHE_PRESETS[preset] if preset else {}
        self._cache_control = self._directives(config)
        self._extra: Dict[str, str] = {}

    @staticmethod
    def _directives(config: Dict[str, Any]) -> str:
        if config.get("no_store"):
            return "no-store"
        visibility = "public" if config.get("public", True) else "private"
        return f"{visibility}, max-age={config.get('max_age', 0)}"

    def max_age(self, seconds: int, public: bool = True) -> "CacheHeadersBuilder":
        self._cache_control = self._directives({"max_age": seconds, "public": public})
        return self

    def no_store(self) -> "CacheHeadersBuilder":
        self._cache_control = "no-store"
        return self

    def etag(self, value: str) -> "CacheHeadersBuilder":
        self._extra["ETag"] = value
        return self

    def last_modified(self, dt: datetime) -> "CacheHeadersBuilder":
        self._extra["Last-Modified"] = _http_date(dt)
        return self

    def for_envelope(
        self,
        user_id: str,
        cache_key: str,
        envelope: Dict[str, Any],
    ) -> "CacheHeadersBuilder":
        """ETag and Last-Modified for a cached sub-cache envelope."""
        self.etag(envelope_etag(user_id, cache_key, envelope))
        if envelope.get("lastUpdated"):
            self.last_modified(from_iso(envelope["lastUpdated"]))
        return self

    def retry_after(self, seconds: int) -> "CacheHeadersBuilder":
        self._extra["Retry-After"] = str(seconds)
        return self

    def build(self) -> Dict[str, str]:
        return {"Cache-Control": self._cache_control, **self._extra}

    def apply(self, response: Response) -> Response:
        """Copy the headers onto an existing response."""
        response.headers.update(self.build())
        return response


def processing_headers(retry_after: int) -> Dict[str, str]:
    """Headers for a 202 response while the cache is being rebuilt."""
    return CacheHeadersBuilder("realtime").retry_after(retry_after).build()


# =============================================================================
# CONDITIONAL REQUESTS
# =============================================================================

def _modified_since(header: str, last_modified: datetime) -> Optional[bool]:
    """None when the header can't be parsed."""
    try:
        since = parsedate_to_datetime(header)
    except (TypeError, ValueError):
        logger.debug(f"Ignoring unparseable If-Modified-Since: {header!r}")
        return None
    if since.tzinfo is None:
        since = since.replace(tzinfo=timezone.utc)
    # HTTP dates have whole-second precision
    return last_modified.replace(tzinfo=timezone.utc, microsecond=0) > since


def check_not_modified(
    request: Request,
    etag: str,
    last_modified: Optional[datetime] = None,
) -> Optional[Response]:
    """
    304 when the client's copy is still current, otherwise None.

    If-None-Match takes precedence over If-Modified-Since.
    """
    headers = {"ETag": etag}

    if_none_match = request.headers.get("If-None-Match")
    if if_none_match:
        if not etags_match(if_none_match, etag):
            return None
        return Response(status_code=304, headers=headers)

    since = request.headers.get("If-Modified-Since")
    if not since or last_modified is None:
        return None
    if _modified_since(since, last_modified) is False:
        headers["Last-Modified"] = _http_date(last_modified)
        return Response(status_code=304, headers=headers)
    return None
