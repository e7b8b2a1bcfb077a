from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Iterable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_RETRYABLE_STATUS_CODES = (429, 500, 502, 503)


async def sleep(ms: float) -> None:
    await asyncio.sleep(ms / 1000.0)


def _status_of(err: BaseException) -> int | None:
    if isinstance(err, httpx.HTTPStatusError):
        return err.response.status_code
    status = getattr(err, "status_code", None) or getattr(err, "status", None)
    return status if isinstance(status, int) else None


def _retry_after_ms(err: BaseException) -> float | None:
    response = getattr(err, "response", None)
    headers = getattr(response, "headers", None)
    if not headers:
        return None
    raw = headers.get("retry-after")
    if not raw:
        return None
    try:
        return float(raw) * 1000.0
    except ValueError:
        return None


def _backoff_ms(attempt: int, base_delay_ms: float, max_delay_ms: float) -> float:
    return min(base_delay_ms * (2**attempt) + random.random() * 500, max_delay_ms)


async def with_retry(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay_ms: float = 1000,
    max_delay_ms: float = 30000,
    retryable_status_codes: Iterable[int] = DEFAULT_RETRYABLE_STATUS_CODES,
) -> T:
    """Await fn(), retrying on retryable HTTP statuses with exponential backoff.

    Errors without a retryable status are raised immediately. After
    max_retries retries the last error is raised.
    """
    codes = set(retryable_status_codes)
    last_error: BaseException | None = None

    for attempt in range(max_retries + 1):
        try:
            return await fn()
        except Exception as e:
            last_error = e
            status = _status_of(e)
            if status is None or status not in codes:
                raise
            if attempt >= max_retries:
                break

            delay = _retry_after_ms(e)
            if delay is None:
                delay = _backoff_ms(attempt, base_delay_ms, max_delay_ms)
            logger.warning(
                "retrying after HTTP %s (attempt %d/%d, %.0fms)", status, attempt + 1, max_retries, delay
            )
            await sleep(delay)

    assert last_error is not None
    raise last_error


async def get_json(client: httpx.AsyncClient, url: str, **kwargs: Any) -> Any:
    """GET with retry; raises httpx.HTTPStatusError on non-2xx."""

    async def _call() -> Any:
        r = await client.get(url, **kwargs)
        r.raise_for_status()
        return r.json()

    return await with_retry(_call)


async def post_json(client: httpx.AsyncClient, url: str, **kwargs: Any) -> Any:
    async def _call() -> Any:
        r = await client.post(url, **kwargs)
        r.raise_for_status()
        return r.json()

    return await with_retry(_call)
