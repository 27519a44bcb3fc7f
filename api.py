#!/usr/bin/env python3
"""
Signed client for the location feed API.

Implements both collaborator contracts used by the scrapers:

- session requests (``POST /v2/users``) for an identity and location
- channel pages (``GET /v2/posts/location[/popular|/discussed]``), paging a
  channel to exhaustion, and single items (``GET /v2/posts/{id}``)

Network-level failures are retried with exponential backoff. HTTP error
statuses and malformed bodies are reported immediately as AuthError/FetchError.
"""

from __future__ import annotations

from asyncio import TimeoutError
from json import JSONDecodeError, dumps, loads
from typing import Any, Dict, List, Optional, Tuple

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import get_logger
from entities import Item, Location, Session
from errors import AuthError, FetchError
from signing import generate_timestamp
from telemetry import trace_span
from utils import RateLimiter, RetryHelper, truncate_string

# Module-specific logger
logger = get_logger("api")

HTTP_NOT_FOUND = 404

# Channel name -> path suffix below /posts/location
CHANNEL_PATHS = {
    "recent": "",
    "popular": "/popular",
    "discussed": "/discussed",
}


def _is_success(status: int) -> bool:
    return 200 <= status < 300


class FeedApiClient:
    """aiohttp based API client shared by every scraper of a process.

    A single ClientSession is created lazily on the running loop and is safe
    for concurrent use by unrelated scrapers.
    """

    def __init__(
        self,
        base_url: str,
        signer,
        *,
        client_id: str,
        client_version: str,
        api_version: str = "0.2",
        user_agent: Optional[str] = None,
        page_size: int = 100,
        timeout: int = 30,
        max_retries: int = 3,
        retry_delay_base: float = 1.0,
        requests_per_minute: int = 0,
        session: Optional[ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.signer = signer
        self.client_id = client_id
        self.client_version = client_version
        self.api_version = api_version
        self.user_agent = user_agent or f"Jodel/{client_version} Dalvik/2.1.0 (Linux; U; Android 5.1.1; )"
        self.page_size = page_size
        self.timeout = timeout
        self.retry_helper = RetryHelper(max_retries=max_retries, base_delay=retry_delay_base)
        self.rate_limiter = RateLimiter(requests_per_minute)
        self._session = session
        self._owns_session = session is None

    async def __aenter__(self) -> "FeedApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP session if this client created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    def _get_session(self) -> ClientSession:
        if self._session is None or self._session.closed:
            self._session = ClientSession(timeout=ClientTimeout(total=self.timeout))
            self._owns_session = True
        return self._session

    def _headers(self, timestamp: str, signature: str, token: Optional[str] = None) -> Dict[str, str]:
        headers = {
            "User-Agent": self.user_agent,
            "Content-Type": "application/json; charset=utf-8",
            "Accept-Encoding": "gzip",
            "X-Client-Type": f"android_{self.client_version}",
            "X-Api-Version": self.api_version,
            "X-Timestamp": timestamp,
            "X-Authorization": f"HMAC {signature}",
        }
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        url: str,
        *,
        token: Optional[str] = None,
        params: Optional[Dict[str, str]] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Tuple[int, str]:
        """Send one signed request, retrying network failures. Returns (status, body text).

        Raises:
            FetchError: When every attempt failed at the transport level.
        """
        body = dumps(payload) if payload is not None else ""
        max_retries = self.retry_helper.max_retries
        for attempt in range(max_retries + 1):
            await self.rate_limiter.acquire()
            # Re-sign on every attempt; the timestamp is part of the signature
            timestamp = generate_timestamp()
            signature = self.signer.sign(method, url, body, timestamp, token, params)
            try:
                async with self._get_session().request(
                    method,
                    url,
                    params=params,
                    data=body.encode("utf-8") if body else None,
                    headers=self._headers(timestamp, signature, token),
                ) as response:
                    return response.status, await response.text()
            except (ClientError, TimeoutError) as e:
                detail = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
                if attempt < max_retries:
                    logger.warning("Retry %d/%d for %s %s due to error: %s", attempt + 1, max_retries, method, url, detail)
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise FetchError(f"{method} {url} failed after {max_retries} retries ({detail})") from e
        raise FetchError(f"{method} {url} was not attempted")

    @staticmethod
    def _decode(text: str, error_cls, what: str) -> Any:
        try:
            return loads(text)
        except (JSONDecodeError, TypeError) as e:
            raise error_cls(f"Malformed {what} response: {truncate_string(text, 200)!r}") from e

    # ------------------------------------------------------------------
    # AuthProvider
    # ------------------------------------------------------------------
    @trace_span(
        "api.request_session",
        tracer_name="api",
        attr_from_args=lambda self, identity, location: {"location.name": location.name},
    )
    async def request_session(self, identity: str, location: Location) -> Session:
        """Request a new access token for ``identity`` at ``location``.

        Raises:
            AuthError: On transport failure, non-success status or malformed body.
        """
        payload = {
            "client_id": self.client_id,
            "device_uid": identity,
            "location": {
                "name": location.name,
                "city": location.name,
                "country": location.country_code,
                "loc_accuracy": location.accuracy,
                "loc_coordinates": {
                    "lat": location.latitude,
                    "lng": location.longitude,
                },
            },
        }
        try:
            status, text = await self._request("POST", f"{self.base_url}/v2/users", payload=payload)
        except FetchError as e:
            raise AuthError(str(e)) from e
        if not _is_success(status):
            raise AuthError(f"Session request returned HTTP {status}: {truncate_string(text, 200)}", status=status)
        return Session.from_response(self._decode(text, AuthError, "authorization"))

    # ------------------------------------------------------------------
    # FeedClient
    # ------------------------------------------------------------------
    def channel_url(self, channel: str) -> str:
        if channel not in CHANNEL_PATHS:
            raise ValueError(f"Unknown channel '{channel}' (expected one of {', '.join(CHANNEL_PATHS)})")
        return f"{self.base_url}/v2/posts/location{CHANNEL_PATHS[channel]}"

    @trace_span(
        "api.fetch_page",
        tracer_name="api",
        attr_from_args=lambda self, token, channel, location, cursor=None: {
            "feed.channel": channel,
            "feed.cursor": cursor or "",
        },
    )
    async def fetch_page(self, token: str, channel: str, location: Location, cursor: Optional[str] = None) -> List[Item]:
        """Fetch one page of ``channel`` starting after ``cursor``.

        Raises:
            FetchError: On transport failure, non-success status, or a page without
                a ``posts`` list / with posts lacking an id.
        """
        url = self.channel_url(channel)
        params = {
            "lat": str(location.latitude),
            "lng": str(location.longitude),
            "limit": str(self.page_size),
        }
        if cursor:
            params["after"] = cursor
        status, text = await self._request("GET", url, token=token, params=params)
        if not _is_success(status):
            raise FetchError(f"HTTP {status} fetching {channel} feed", status=status)
        body = self._decode(text, FetchError, f"{channel} feed")
        posts = body.get("posts") if isinstance(body, dict) else None
        if not isinstance(posts, list):
            raise FetchError(f"Malformed {channel} page: missing posts list", status=status)
        return [Item.from_payload(post) for post in posts]

    async def fetch_all(self, token: str, channel: str, location: Location) -> List[Item]:
        """Page through ``channel`` until a page comes back short of the page size.

        The shortfall is the only end-of-feed signal, so the client keeps working
        if the server lowers its maximum page size.
        """
        items: List[Item] = []
        cursor: Optional[str] = None
        pages = 0
        while True:
            page = await self.fetch_page(token, channel, location, cursor)
            pages += 1
            items.extend(page)
            if len(page) < self.page_size:
                logger.debug(f"Fetched {len(items)} items from {channel} in {pages} page(s)")
                return items
            next_cursor = page[-1].id
            if next_cursor == cursor:
                raise FetchError(f"{channel} feed did not advance past cursor {cursor}")
            cursor = next_cursor

    @trace_span(
        "api.fetch_one",
        tracer_name="api",
        attr_from_args=lambda self, token, item_id: {"item.id": item_id},
    )
    async def fetch_one(self, token: str, item_id: str) -> Optional[Item]:
        """Fetch a single item with its replies; None if the item no longer exists."""
        status, text = await self._request("GET", f"{self.base_url}/v2/posts/{item_id}", token=token)
        if status == HTTP_NOT_FOUND:
            logger.debug(f"Item {item_id} not found")
            return None
        if not _is_success(status):
            raise FetchError(f"HTTP {status} fetching item {item_id}", status=status)
        return Item.from_payload(self._decode(text, FetchError, f"item {item_id}"))
