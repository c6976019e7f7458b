"""HTTP response classification shared by the backend adapters."""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Generator

import httpx

from crossfeed.errors import (
    AuthError,
    PermanentFetchError,
    RateLimited,
    TransientFetchError,
)

USER_AGENT = "crossfeed/0.1"


def parse_retry_after(value: str | None, default: float = 1.0) -> float:
    """Parse a Retry-After header given as seconds or an HTTP date."""
    if not value:
        return default
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return default
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return max(0.0, (when - datetime.now(timezone.utc)).total_seconds())


def check_response(
    resp: httpx.Response,
    source: str,
    retry_after: float | None = None,
) -> None:
    """Raise the matching FetchError subclass for a failed response.

    401/403 are auth failures, 429 is a rate limit (``retry_after`` overrides
    the Retry-After header when the backend reports it elsewhere), 408 and
    5xx are transient, any other 4xx is permanent.
    """
    status = resp.status_code
    if status < 400:
        return
    if status == 429:
        if retry_after is None:
            retry_after = parse_retry_after(resp.headers.get("Retry-After"))
        raise RateLimited(f"{source}: rate limited (HTTP 429)", retry_after=retry_after)
    if status in (401, 403):
        raise AuthError(f"{source}: HTTP {status}, check credentials and permissions")
    if status == 408 or status >= 500:
        raise TransientFetchError(f"{source}: HTTP {status}")
    raise PermanentFetchError(f"{source}: HTTP {status}")


def decode_json(resp: httpx.Response, source: str):
    """Decode a JSON body; an undecodable page is treated as transient."""
    try:
        return resp.json()
    except ValueError:
        raise TransientFetchError(f"{source}: response body is not valid JSON") from None


@contextmanager
def transport_errors(source: str) -> Generator[None, None, None]:
    """Map httpx timeouts and connection failures to TransientFetchError."""
    try:
        yield
    except httpx.TimeoutException as exc:
        raise TransientFetchError(f"{source}: request timed out") from exc
    except httpx.TransportError as exc:
        raise TransientFetchError(f"{source}: {exc.__class__.__name__}: {exc}") from exc
