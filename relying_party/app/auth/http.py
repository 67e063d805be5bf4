"""
Outbound HTTP helper shared by the discovery cache and the token client.

Requests get exactly one retry, and only when the failure is transient: the
connection could not be established, or the provider answered 5xx. Read
timeouts and 4xx responses are returned/raised to the caller immediately.
"""

import asyncio
import logging
from typing import Any

import httpx

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 2

RETRYABLE_TRANSPORT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    timeout: float,
    backoff_seconds: float,
    **kwargs: Any,
) -> httpx.Response:
    """
    Send a request, retrying once on a transient failure.

    Args:
        client: Shared async HTTP client
        method: HTTP method
        url: Absolute URL
        timeout: Per-attempt timeout in seconds
        backoff_seconds: Delay before the retry
        **kwargs: Passed through to ``client.request`` (data, headers, auth...)

    Returns:
        The last response received (may still be a 5xx after the retry)

    Raises:
        httpx.HTTPError: Transport failure that was not retryable or persisted
    """
    for attempt in range(MAX_ATTEMPTS):
        last_attempt = attempt == MAX_ATTEMPTS - 1
        try:
            response = await client.request(method, url, timeout=timeout, **kwargs)
        except RETRYABLE_TRANSPORT_ERRORS as e:
            if last_attempt:
                raise
            logger.warning(
                f"Connection to provider failed (attempt {attempt + 1}/{MAX_ATTEMPTS}), "
                f"retrying after {backoff_seconds}s",
                extra={"url": url, "error_type": type(e).__name__},
            )
            await asyncio.sleep(backoff_seconds)
            continue

        if response.status_code >= 500 and not last_attempt:
            logger.warning(
                f"Provider 5xx error (attempt {attempt + 1}/{MAX_ATTEMPTS}), "
                f"retrying after {backoff_seconds}s",
                extra={"url": url, "status_code": response.status_code},
            )
            await asyncio.sleep(backoff_seconds)
            continue

        return response

    raise RuntimeError("unreachable")  # pragma: no cover
