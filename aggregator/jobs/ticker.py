# aggregator/jobs/ticker.py
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from aggregator.jobs.scheduler import JobResult
from aggregator.schemas.tokens import PriceUpdateEvent, TickerState
from aggregator.services.fetcher import RetryingFetchClient
from aggregator.services.merge import dexscreener_quotes, select_representative
from aggregator.services.sources import fetch_dexscreener
from aggregator.utils.cache import CacheStore
from aggregator.utils.time import utcnow

logger = logging.getLogger("token_aggregator.ticker")

REALTIME_CHANNEL = "token_price_updates"
TICKER_KEY_FMT = "ticker:{symbol}"


def ticker_key(symbol: str) -> str:
    return TICKER_KEY_FMT.format(symbol=symbol.upper())


def exceeds_threshold(old_price: float, new_price: float, threshold: float) -> bool:
    if old_price <= 0:
        return True
    return abs(new_price - old_price) / old_price > threshold


class TickerJob:
    """
    Fast poll for a handful of symbols. Publishes a ``PriceUpdateEvent`` when the
    price moved more than ``threshold`` since the last observation, and always
    records the new observation.
    """

    def __init__(
        self,
        cache: CacheStore,
        fetcher: RetryingFetchClient,
        symbols: Sequence[str] = ("SOL",),
        *,
        threshold: float = 0.0005,
        state_ttl: int = 60,
        channel: str = REALTIME_CHANNEL,
    ):
        self.cache = cache
        self.fetcher = fetcher
        self.symbols = [s.upper() for s in symbols]
        self.threshold = threshold
        self.state_ttl = state_ttl
        self.channel = channel

    async def tick(self, symbol: str) -> Optional[PriceUpdateEvent]:
        """One observation for ``symbol``; returns the published event, if any."""
        pairs, previous = await asyncio.gather(
            fetch_dexscreener(self.fetcher, symbol),
            self.cache.get_json(ticker_key(symbol)),
        )

        picked = select_representative(dexscreener_quotes(symbol, pairs))
        if picked is None:
            logger.debug("ticker no quote | symbol=%s", symbol)
            return None

        pool, _ = picked
        new_price = pool.price
        event: Optional[PriceUpdateEvent] = None

        old = TickerState.model_validate(previous) if previous else None
        try:
            if old is not None and exceeds_threshold(old.price, new_price, self.threshold):
                event = PriceUpdateEvent(
                    symbol=symbol,
                    price=new_price,
                    volume24h=pool.volume24h,
                    timestamp=utcnow(),
                )
                await self.cache.publish(self.channel, event.model_dump_json())
                logger.info("📣 price change published | symbol=%s | old=%s | new=%s", symbol, old.price, new_price)
        finally:
            # the observation is recorded even when the publish failed
            await self.cache.set_json(
                ticker_key(symbol),
                TickerState(price=new_price).model_dump(),
                self.state_ttl,
            )
        return event

    async def __call__(self) -> JobResult:
        outcomes = await asyncio.gather(*(self.tick(s) for s in self.symbols), return_exceptions=True)

        published = 0
        errors = []
        for symbol, outcome in zip(self.symbols, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("❌ ticker error | symbol=%s | err=%s", symbol, outcome)
                errors.append(f"{symbol}: {outcome!r}")
            elif outcome is not None:
                published += 1

        if errors and len(errors) == len(self.symbols):
            return JobResult.failed("; ".join(errors))
        return JobResult.success(f"published {published}", published=published, errors=len(errors))
