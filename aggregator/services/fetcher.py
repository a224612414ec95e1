"""Outbound HTTP client for upstream price providers, with bounded retry."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Mapping, Optional

import httpx

from aggregator.errors import FetchError

logger = logging.getLogger("token_aggregator.fetch")


def is_transient_status(status: Optional[int]) -> bool:
    return status is not None and (status == 429 or status >= 500)


def backoff_delay(
    attempt: int,
    base_seconds: float = 1.0,
    jitter_seconds: float = 0.5,
    rng: Callable[[float, float], float] = random.uniform,
) -> float:
    """Delay before retrying after 0-indexed ``attempt``: base * 2^attempt plus jitter."""
    return base_seconds * (2 ** attempt) + rng(0.0, jitter_seconds)


class RetryingFetchClient:
    """
    Wraps an ``httpx.AsyncClient``.

    HTTP 429 and 5xx are retried up to ``retries`` attempts in total. Any other
    status, a transport failure or an unparsable body fails on the spot.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        *,
        retries: int = 3,
        backoff_base_seconds: float = 1.0,
        jitter_seconds: float = 0.5,
        timeout_seconds: float = 10.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        rng: Callable[[float, float], float] = random.uniform,
    ):
        if retries < 1:
            raise ValueError("retries must be >= 1")
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_seconds)
        self.retries = retries
        self.backoff_base_seconds = backoff_base_seconds
        self.jitter_seconds = jitter_seconds
        self._sleep = sleep
        self._rng = rng

    async def fetch(
        self,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        for attempt in range(self.retries):
            try:
                response = await self._client.get(url, params=params, headers=headers)
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                status = exc.response.status_code
                transient = is_transient_status(status)
                if not transient or attempt == self.retries - 1:
                    raise FetchError(
                        f"GET {url} failed with status {status}",
                        url=url,
                        status=status,
                        transient=transient,
                    ) from exc

                delay = backoff_delay(
                    attempt, self.backoff_base_seconds, self.jitter_seconds, self._rng
                )
                logger.warning(
                    "⚠️ fetch retry | url=%s | status=%s | attempt=%s/%s | sleep=%.2fs",
                    url[:50],
                    status,
                    attempt + 1,
                    self.retries,
                    delay,
                )
                await self._sleep(delay)
                continue
            except httpx.HTTPError as exc:
                raise FetchError(f"GET {url} failed: {exc!r}", url=url) from exc

            try:
                return response.json()
            except ValueError as exc:
                raise FetchError(
                    f"GET {url} returned a non-JSON body",
                    url=url,
                    status=response.status_code,
                ) from exc

        # unreachable: the last attempt either returns or raises
        raise FetchError(f"GET {url} exhausted retries", url=url)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()
