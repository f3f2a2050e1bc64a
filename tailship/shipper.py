"""HTTP shipper: posts NDJSON batches to a stream's ingest endpoint."""

import logging
import platform
import sys
import time

import requests

from tailship.config import DEFAULT_BASE_URL, StreamConfig

logger = logging.getLogger(__name__)

AGENT_VERSION = "0.4.0"
SHIP_TIMEOUT = 10.0
NDJSON_CONTENT_TYPE = "application/x-ndjson"

# Characters of an error response body kept on ShipError
MAX_ERROR_BODY = 2048


class ShipError(Exception):
    """A batch could not be delivered. ``status`` is None for transport errors."""

    def __init__(self, message: str, status: int | None = None, body: str = ""):
        super().__init__(message)
        self.status = status
        self.body = body


def user_agent() -> str:
    return f"tailship/{AGENT_VERSION} ({sys.platform}; {platform.machine() or 'unknown'})"


def serialize_ndjson(events, log: logging.Logger | None = None) -> bytes:
    """One compact JSON value per event, newline-joined, trailing newline.

    An event that cannot be encoded is logged and left out of the body.
    """
    log = log or logger
    lines = []
    for event in events:
        try:
            lines.append(event.to_json())
        except (TypeError, ValueError) as e:
            log.warning("Skipping event that cannot be encoded as JSON: %s", e)
    if not lines:
        return b""
    return ("\n".join(lines) + "\n").encode("utf-8")


class Shipper:
    """Resolves per-stream URL and credential and POSTs batches over a pooled session."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        fallback_key: str = "",
        timeout: float = SHIP_TIMEOUT,
        session: requests.Session | None = None,
        log: logging.Logger | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._fallback_key = fallback_key
        self._timeout = timeout
        self._session = session or requests.Session()
        self._session.headers["User-Agent"] = user_agent()
        self._log = log or logger

    def resolve_url(self, stream: StreamConfig) -> str:
        if stream.url:
            return stream.url
        if not stream.stream_id:
            raise ShipError(f"stream {stream.name!r} has no stream_id or url")
        return f"{self._base_url}/api/ingest/{stream.stream_id}"

    def resolve_key(self, stream: StreamConfig) -> str:
        return stream.key or self._fallback_key

    def ship(self, stream: StreamConfig, events) -> int:
        """POST one batch. Returns the HTTP status, raises ShipError on failure."""
        url = self.resolve_url(stream)
        headers = {"Content-Type": NDJSON_CONTENT_TYPE}
        key = self.resolve_key(stream)
        if key:
            headers["Authorization"] = f"Bearer {key}"

        body = serialize_ndjson(events, self._log)
        if not body:
            raise ShipError(f"batch for stream {stream.name!r} has no encodable events")
        start = time.monotonic()
        try:
            resp = self._session.post(url, data=body, headers=headers, timeout=self._timeout)
        except requests.RequestException as e:
            raise ShipError(f"ship to {url} failed: {e}") from e
        elapsed_ms = (time.monotonic() - start) * 1000

        text = resp.text[:MAX_ERROR_BODY]
        self._log.debug("HTTP %d from %s in %.1fms: %s", resp.status_code, url, elapsed_ms, text)
        if not 200 <= resp.status_code < 300:
            raise ShipError(
                f"ship to {url}: HTTP {resp.status_code} {resp.reason}",
                status=resp.status_code,
                body=text,
            )
        return resp.status_code

    def close(self):
        self._session.close()
