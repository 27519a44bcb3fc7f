#!/usr/bin/env python3
"""
Request signing for the feed API.

Every request carries an ``X-Authorization: HMAC <signature>`` header computed
over a canonical request string and the ``X-Timestamp`` header value. The
canonical string is::

    METHOD%host%443%path%token%timestamp%query%body
"""

from datetime import datetime, timezone
from hashlib import sha1
from hmac import HMAC
from typing import Optional
from urllib.parse import urlencode, urlsplit

from errors import ConfigError

HTTPS_PORT = 443


def generate_timestamp(now: Optional[datetime] = None) -> str:
    """ISO-8601 UTC timestamp with second precision, e.g. ``2017-06-17T20:40:35Z``."""
    now = now or datetime.now(timezone.utc)
    return now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def canonical_request(method: str, url: str, body: str, timestamp: str, token: Optional[str] = None, query: Optional[dict] = None) -> str:
    """Build the string that gets signed; ``query`` overrides the URL's own query string."""
    parts = urlsplit(url)
    query_string = urlencode(query) if query else parts.query
    return "%".join([
        method.upper(),
        parts.hostname or "",
        str(HTTPS_PORT),
        parts.path,
        token or "",
        timestamp,
        query_string,
        body,
    ])


class HmacSigner:
    """HMAC-SHA1 signer keyed with the client secret; signatures are upper-case hex."""

    def __init__(self, secret: str):
        if not secret:
            raise ConfigError("HMAC secret is required for signing requests")
        self._key = secret.encode("utf-8")

    def sign(self, method: str, url: str, body: str, timestamp: str, token: Optional[str] = None, query: Optional[dict] = None) -> str:
        raw = canonical_request(method, url, body, timestamp, token, query).encode("utf-8")
        return HMAC(self._key, raw, sha1).hexdigest().upper()
