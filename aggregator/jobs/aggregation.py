# aggregator/jobs/aggregation.py
from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, List, Optional, Sequence

from aggregator.jobs.scheduler import JobResult
from aggregator.schemas.tokens import RawSourceResult
from aggregator.services.fetcher import RetryingFetchClient
from aggregator.services.merge import merge_token_data
from aggregator.services.query import TOKEN_LIST_KEY
from aggregator.services.sources import fetch_dexscreener, fetch_geckoterminal, fetch_jupiter
from aggregator.utils.cache import CacheStore

logger = logging.getLogger("token_aggregator.scheduler")

IDLE = "idle"
FETCHING = "fetching"
MERGING = "merging"
STORING = "storing"


def _settled(symbol: str, source: str, outcome: Any, expected: type) -> Any:
    """A failed call or a payload of the wrong shape both mean the source is absent."""
    if isinstance(outcome, BaseException):
        logger.warning("⚠️ source failed | symbol=%s | source=%s | err=%s", symbol, source, outcome)
        return None
    if not isinstance(outcome, expected):
        logger.warning(
            "⚠️ source payload ignored | symbol=%s | source=%s | type=%s",
            symbol,
            source,
            type(outcome).__name__,
        )
        return None
    return outcome


class AggregationJob:
    """
    Full refresh: fetch every tracked symbol from every source, merge, and
    overwrite the catalog key in one write.
    """

    def __init__(
        self,
        cache: CacheStore,
        fetcher: RetryingFetchClient,
        symbols: Sequence[str],
        *,
        catalog_ttl: int = 86400,
        gecko_api_key: Optional[str] = None,
    ):
        self.cache = cache
        self.fetcher = fetcher
        self.symbols = [s.upper() for s in symbols]
        self.catalog_ttl = catalog_ttl
        self.gecko_api_key = gecko_api_key
        self.phase = IDLE

    async def fetch_symbol(self, symbol: str) -> RawSourceResult:
        calls = [
            fetch_dexscreener(self.fetcher, symbol),
            fetch_jupiter(self.fetcher, symbol),
        ]
        if self.gecko_api_key:
            calls.append(fetch_geckoterminal(self.fetcher, symbol, self.gecko_api_key))

        outcomes = await asyncio.gather(*calls, return_exceptions=True)
        gecko = _settled(symbol, "geckoterminal", outcomes[2], dict) if len(outcomes) > 2 else None
        return RawSourceResult(
            symbol=symbol,
            dexScreener=_settled(symbol, "dexscreener", outcomes[0], list),
            jupiterPrice=_settled(symbol, "jupiter", outcomes[1], list),
            geckoTerminal=gecko,
        )

    async def fetch_all(self) -> List[RawSourceResult]:
        results = await asyncio.gather(*(self.fetch_symbol(s) for s in self.symbols))
        return [r for r in results if r.has_any_source()]

    async def __call__(self) -> JobResult:
        t0 = time.perf_counter()
        logger.info("🔄 aggregation job running | symbols=%s", len(self.symbols))
        try:
            self.phase = FETCHING
            raw = await self.fetch_all()
            if not raw:
                logger.warning("⚠️ aggregation skipped | every source failed for every symbol")
                return JobResult.skipped("no source data")

            self.phase = MERGING
            catalog = merge_token_data(raw)
            if not catalog:
                logger.warning("⚠️ aggregation skipped | merge produced no records")
                return JobResult.skipped("empty merge result", fetched=len(raw))

            self.phase = STORING
            await self.cache.set_json(
                TOKEN_LIST_KEY,
                [r.model_dump(mode="json") for r in catalog],
                self.catalog_ttl,
            )
        finally:
            self.phase = IDLE

        dt_ms = int((time.perf_counter() - t0) * 1000)
        logger.info("✅ aggregation done | tokens=%s | key=%s | %dms", len(catalog), TOKEN_LIST_KEY, dt_ms)
        return JobResult.success(f"stored {len(catalog)} tokens", tokens=len(catalog), fetched=len(raw))
