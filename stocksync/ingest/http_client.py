"""Single-attempt HTTP requests with status-aware error mapping.

Retries are not done here: each request runs inside
RateLimitedGateway.execute_call, which meters and retries it.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import httpx

from stocksync.ingest.errors import (
    AuthExpiredError,
    CursorExpiredError,
    ItemNotFoundError,
    RateLimitedError,
    TransientUpstreamError,
    UpstreamRequestError,
)

logger = logging.getLogger(__name__)

# Transport errors worth another attempt
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
    httpx.WriteTimeout,
)

CURSOR_ERROR_MARKERS = ("scroll", "cursor")


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Parse a Retry-After header given in seconds."""
    if not value:
        return None
    try:
        return float(value)
    except (ValueError, TypeError):
        return None


def raise_for_marketplace_status(resp: httpx.Response, context: str) -> None:
    """
    Translate a marketplace API status into the sync error taxonomy.

    Args:
        resp: Response to inspect
        context: Short description of the request for error messages

    Raises:
        AuthExpiredError: 401
        ItemNotFoundError: 404
        RateLimitedError: 429
        CursorExpiredError: 400 complaining about the scroll cursor
        UpstreamRequestError: Other 4xx
        TransientUpstreamError: 5xx and unexpected codes
    """
    sc = resp.status_code
    if 200 <= sc < 300:
        return

    if sc == 401:
        raise AuthExpiredError(f"{context}: access token rejected (401)")

    if sc == 404:
        raise ItemNotFoundError(f"{context}: not found")

    if sc == 429:
        raise RateLimitedError(retry_after=parse_retry_after(resp.headers.get("Retry-After")))

    if 400 <= sc < 500:
        body = resp.text.lower()
        if sc == 400 and any(marker in body for marker in CURSOR_ERROR_MARKERS):
            raise CursorExpiredError(f"{context}: scroll cursor rejected")
        raise UpstreamRequestError(f"{context}: HTTP {sc}", status_code=sc)

    raise TransientUpstreamError(f"{context}: HTTP {sc}")


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    context: str,
    params: Optional[dict[str, Any]] = None,
    headers: Optional[dict[str, str]] = None,
) -> Any:
    """
    Perform one request and decode its JSON body.

    Args:
        client: Shared httpx AsyncClient
        method: HTTP method
        url: Absolute or base-relative URL
        context: Short description used in errors and logs
        params: Query parameters
        headers: Extra headers (authorization)

    Returns:
        Decoded JSON body
    """
    try:
        resp = await client.request(method, url, params=params, headers=headers)
    except RETRYABLE_EXC as e:
        raise TransientUpstreamError(f"{context}: transport error ({type(e).__name__})") from e

    raise_for_marketplace_status(resp, context)

    try:
        return resp.json()
    except ValueError as e:
        raise TransientUpstreamError(f"{context}: invalid JSON body") from e
