"""Event service HTTP client (subscribe + offsets)."""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Any

import aiohttp

from core.errors import (
    EventDecodeError,
    EventSourceError,
    EventSourceRejectedError,
    classify_http_status,
)
from core.resilience import RetryConfig, with_retry_async
from core.types import ErrorCategory
from events_to_db.filters import Subscription, to_wire
from events_to_db.types import BEGINNING_OFFSET, Event

logger = logging.getLogger(__name__)

SUBSCRIBE_PATH = "v1/events/subscribe"
OFFSETS_PATH = "v1/events/offsets"

# Events are one JSON document per line; payloads can be large
READ_BUFFER_BYTES = 4 * 1024 * 1024

OFFSETS_RETRY = RetryConfig(max_attempts=3, base_delay=0.5, max_delay=5.0)


class EventServiceClient:
    """Async client for the event service's streaming HTTP API.

    The service treats request offsets as exclusive lower bounds ("deliver
    everything after this"), so inclusive start offsets are shifted by one
    before sending and sources starting at the beginning are left out.
    """

    def __init__(
        self,
        base_url: str = "http://localhost:4454/api/",
        connect_timeout_seconds: float = 10.0,
        request_timeout_seconds: float = 30.0,
    ):
        self.base_url = base_url if base_url.endswith("/") else base_url + "/"
        if not self.base_url.startswith(("http://", "https://")):
            raise ValueError(
                f"EventServiceClient base_url must start with http:// or https://, got: {base_url!r}"
            )

        self.connect_timeout_seconds = connect_timeout_seconds
        self.request_timeout_seconds = request_timeout_seconds
        self._session: aiohttp.ClientSession | None = None
        self._closed = False

    async def __aenter__(self) -> "EventServiceClient":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def start(self) -> None:
        await self._ensure_session()

    async def _ensure_session(self) -> aiohttp.ClientSession:
        if self._closed:
            raise RuntimeError("EventServiceClient is closed, cannot create new session")
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={"Accept": "application/json"},
                read_bufsize=READ_BUFFER_BYTES,
            )
        return self._session

    async def close(self) -> None:
        self._closed = True
        if self._session and not self._session.closed:
            await self._session.close()
            # Let the connector finish closing transports
            await asyncio.sleep(0)
        self._session = None

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    @staticmethod
    def to_lower_bounds(start_offsets: Mapping[str, int]) -> dict[str, int]:
        """Inclusive start offsets -> the service's exclusive lower bounds."""
        return {
            source: start - 1
            for source, start in start_offsets.items()
            if start > BEGINNING_OFFSET
        }

    async def _raise_for_status(self, response: aiohttp.ClientResponse, url: str) -> None:
        try:
            body = await response.text()
        except (aiohttp.ClientError, UnicodeDecodeError):
            body = "<unable to read response body>"
        if len(body) > 500:
            body = body[:500] + "..."

        message = f"Event service returned HTTP {response.status} for {url}: {body}"
        logger.warning(
            "Event service request failed",
            extra={"http_status": response.status, "http_url": url, "error_message": body},
        )
        if classify_http_status(response.status) == ErrorCategory.PERMANENT:
            raise EventSourceRejectedError(message, status=response.status)
        raise EventSourceError(message, context={"status": response.status})

    @with_retry_async(config=OFFSETS_RETRY)
    async def get_offsets(self) -> dict[str, int]:
        """Per-source offsets currently present in the event service."""
        session = await self._ensure_session()
        url = self._url(OFFSETS_PATH)
        timeout = aiohttp.ClientTimeout(
            total=self.request_timeout_seconds, connect=self.connect_timeout_seconds
        )
        try:
            async with session.get(url, timeout=timeout) as response:
                if response.status >= 400:
                    await self._raise_for_status(response, url)
                data = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise EventSourceError(f"Failed to fetch offsets from {url}: {e}", cause=e) from e

        # Newer services nest the map under "present"
        if isinstance(data, dict) and isinstance(data.get("present"), dict):
            data = data["present"]
        if not isinstance(data, dict):
            raise EventDecodeError(f"Unexpected offsets response: {str(data)[:200]}")
        return {str(source): int(offset) for source, offset in data.items()}

    async def subscribe(
        self,
        subscriptions: Sequence[Subscription],
        start_offsets: Mapping[str, int],
    ) -> AsyncIterator[Event]:
        """Stream matching events until the server closes the response.

        Undecodable lines are logged and skipped.

        Raises:
            EventSourceError: Connection failed or dropped mid-stream
            EventSourceRejectedError: The service refused the subscription
        """
        session = await self._ensure_session()
        url = self._url(SUBSCRIBE_PATH)
        body = {
            "subscriptions": to_wire(subscriptions),
            "offsets": self.to_lower_bounds(start_offsets),
        }
        # No read deadline: a quiet stream is not a broken one
        timeout = aiohttp.ClientTimeout(
            total=None, connect=self.connect_timeout_seconds, sock_read=None
        )

        try:
            async with session.post(url, json=body, timeout=timeout) as response:
                if response.status >= 400:
                    await self._raise_for_status(response, url)

                logger.info(
                    "Subscribed to event service",
                    extra={
                        "http_url": url,
                        "subscriptions": body["subscriptions"],
                        "source_count": len(body["offsets"]),
                    },
                )
                async for raw_line in response.content:
                    event = self.parse_line(raw_line)
                    if event is not None:
                        yield event
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise EventSourceError(f"Event stream from {url} failed: {e}", cause=e) from e
        except ValueError as e:
            # aiohttp raises ValueError for a line longer than the read buffer
            raise EventSourceError(f"Event stream from {url} failed: {e}", cause=e) from e

    @staticmethod
    def parse_line(raw_line: bytes | str) -> Event | None:
        """Decode one line of the subscription response.

        Accepts bare NDJSON as well as server-sent-event framing
        (``data:`` prefix, ``event:``/``id:`` fields, ``:`` comments).
        Returns None for anything that is not an event.
        """
        line = raw_line.decode("utf-8", errors="replace") if isinstance(raw_line, bytes) else raw_line
        line = line.strip()
        if not line or line.startswith(":"):
            return None
        if line.startswith("data:"):
            line = line[len("data:"):].strip()
        elif line.startswith(("event:", "id:", "retry:")):
            return None

        try:
            data: Any = json.loads(line)
        except json.JSONDecodeError as e:
            logger.error(
                "Error parsing event as JSON, skipping",
                extra={"error_message": str(e), "error": line[:200]},
            )
            return None

        if isinstance(data, dict) and data.get("type") not in (None, "event"):
            logger.debug("Skipping non-event message", extra={"error": str(data.get("type"))})
            return None

        try:
            return Event.from_wire(data)
        except EventDecodeError as e:
            logger.error(
                "Error decoding event, skipping",
                extra={"error_message": str(e), "error": line[:200]},
            )
            return None
