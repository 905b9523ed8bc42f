from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

import httpx
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_random_exponential,
)

from ingest.errors import FetchHttpError, FetchTimeout


logger = logging.getLogger(__name__)

SleepFn = Callable[[float], Awaitable[None]]

MAX_RETRY_DELAY_SECONDS = 30.0


@dataclass(frozen=True)
class FetchResult:
    status_code: int
    content: bytes | None
    etag: str | None
    last_modified: str | None
    elapsed_ms: int


def _succeeded(status_code: int) -> bool:
    return 200 <= status_code < 300 or status_code == 304


def _should_retry(exc: BaseException) -> bool:
    if isinstance(exc, FetchTimeout):
        return True
    if isinstance(exc, FetchHttpError):
        code = exc.status_code
        return code is None or code == 429 or code >= 500
    return False


async def fetch(
    client: httpx.AsyncClient,
    *,
    url: str,
    user_agent: str,
    etag: str | None = None,
    last_modified: str | None = None,
    timeout: httpx.Timeout | None = None,
) -> FetchResult:
    headers = {
        "User-Agent": user_agent,
        "Accept": "application/rss+xml, application/atom+xml, application/xml, text/xml, */*",
    }
    if etag is not None:
        headers["If-None-Match"] = etag
    if last_modified is not None:
        headers["If-Modified-Since"] = last_modified

    if timeout is None:
        timeout = httpx.Timeout(connect=5.0, read=15.0, write=5.0, pool=5.0)
    start = time.perf_counter()
    response = await client.get(url, headers=headers, timeout=timeout)
    elapsed_ms = int((time.perf_counter() - start) * 1000)
    ok = 200 <= response.status_code < 300
    return FetchResult(
        status_code=response.status_code,
        content=response.content if ok else None,
        etag=response.headers.get("ETag"),
        last_modified=response.headers.get("Last-Modified"),
        elapsed_ms=elapsed_ms,
    )


async def _fetch_once(client: httpx.AsyncClient, *, url: str, **kwargs) -> FetchResult:
    try:
        result = await fetch(client, url=url, **kwargs)
    except httpx.TimeoutException as e:
        raise FetchTimeout(f"timeout fetching {url}") from e
    except httpx.RequestError as e:
        raise FetchHttpError(None, f"request_error:{e.__class__.__name__}") from e
    if not _succeeded(result.status_code):
        raise FetchHttpError(result.status_code)
    return result


async def fetch_with_retries(
    client: httpx.AsyncClient,
    *,
    url: str,
    user_agent: str,
    etag: str | None = None,
    last_modified: str | None = None,
    timeout: httpx.Timeout | None = None,
    retries: int = 2,
    backoff_seconds: float = 0.5,
    sleep: SleepFn = asyncio.sleep,
) -> FetchResult:
    """GET ``url``, retrying timeouts, transport errors, 429 and 5xx.

    Returns on any 2xx and on 304. Raises ``FetchTimeout`` or
    ``FetchHttpError`` once the attempts are used up, or straight away for
    other statuses.
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_random_exponential(multiplier=backoff_seconds, max=MAX_RETRY_DELAY_SECONDS),
        retry=retry_if_exception(_should_retry),
        before_sleep=before_sleep_log(logger, logging.INFO),
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            result = await _fetch_once(
                client,
                url=url,
                user_agent=user_agent,
                etag=etag,
                last_modified=last_modified,
                timeout=timeout,
            )
    return result
