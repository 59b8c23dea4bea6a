"""
Shared HTTP client with timeouts and optional retries for external APIs.
Used by the token exchange and every platform data client so no outbound call can hang.
"""
import asyncio
import logging
from typing import Any, Optional

import httpx

from app.config import settings

logger = logging.getLogger(__name__)

RETRY_BACKOFF_BASE = 1.0  # seconds


async def _sleep_backoff(attempt: int) -> None:
    if attempt <= 0:
        return
    delay = RETRY_BACKOFF_BASE * (2 ** (attempt - 1))
    await asyncio.sleep(min(delay, 10.0))


async def request_with_retry(
    method: str,
    url: str,
    *,
    timeout: Optional[float] = None,
    max_retries: Optional[int] = None,
    retry_on: tuple[int, ...] = (502, 503, 504),
    transport: Optional[httpx.AsyncBaseTransport] = None,
    **kwargs: Any,
) -> httpx.Response:
    """
    Perform HTTP request with timeout and optional retries for server/network errors.
    Retries only on retry_on status codes and on connection/timeout errors.
    """
    timeout = settings.HTTP_TIMEOUT_SECONDS if timeout is None else timeout
    max_retries = settings.HTTP_MAX_RETRIES if max_retries is None else max_retries
    resp: Optional[httpx.Response] = None
    for attempt in range(max_retries + 1):
        try:
            async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
                resp = await client.request(method, url, **kwargs)
            if attempt < max_retries and resp.status_code in retry_on:
                logger.warning("HTTP %s %s returned %s, retrying", method, url, resp.status_code)
                await _sleep_backoff(attempt + 1)
                continue
            return resp
        except (httpx.ConnectError, httpx.TimeoutException) as e:
            if attempt < max_retries:
                logger.warning("HTTP %s %s attempt %s failed: %s", method, url, attempt + 1, e)
                await _sleep_backoff(attempt + 1)
            else:
                raise
    return resp  # type: ignore


async def get_with_retry(
    url: str,
    *,
    params: Optional[dict] = None,
    headers: Optional[dict] = None,
    timeout: Optional[float] = None,
    max_retries: Optional[int] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    """GET with retries on 5xx and connection errors."""
    return await request_with_retry(
        "GET",
        url,
        params=params,
        headers=headers,
        timeout=timeout,
        max_retries=max_retries,
        transport=transport,
    )


async def post_form_no_retry(
    url: str,
    *,
    data: dict,
    headers: Optional[dict] = None,
    auth: Optional[tuple[str, str]] = None,
    timeout: Optional[float] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    """Form-encoded POST with no retries (token exchanges are not idempotent). Single attempt with timeout."""
    timeout = settings.HTTP_TIMEOUT_SECONDS if timeout is None else timeout
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        return await client.post(url, data=data, headers=headers or {}, auth=auth)
