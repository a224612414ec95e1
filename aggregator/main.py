# aggregator/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from aggregator.api.health import router as health_router
from aggregator.api.realtime import router as realtime_router
from aggregator.api.tokens import router as tokens_router
from aggregator.config.settings import Settings, get_settings
from aggregator.jobs.aggregation import AggregationJob
from aggregator.jobs.scheduler import PeriodicJob, Scheduler
from aggregator.jobs.ticker import TickerJob
from aggregator.services.broadcast import BroadcastGateway
from aggregator.services.fetcher import RetryingFetchClient
from aggregator.services.query import QueryService
from aggregator.utils.cache import CacheStore
from aggregator.utils.log import configure_logging

logger = logging.getLogger("token_aggregator")


def build_scheduler(settings: Settings, cache: CacheStore, fetcher: RetryingFetchClient) -> Scheduler:
    aggregation = AggregationJob(
        cache,
        fetcher,
        settings.TRACKED_TOKENS,
        catalog_ttl=settings.CATALOG_TTL_SECONDS,
        gecko_api_key=settings.GECKOTERMINAL_API_KEY,
    )
    ticker = TickerJob(
        cache,
        fetcher,
        settings.TICKER_TOKENS,
        threshold=settings.TICKER_THRESHOLD,
        state_ttl=settings.TICKER_TTL_SECONDS,
    )
    return Scheduler(
        [
            PeriodicJob("aggregation", settings.AGGREGATION_SCHEDULE_SECONDS, aggregation),
            PeriodicJob("ticker", settings.TICKER_SCHEDULE_SECONDS, ticker),
        ]
    )


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cache = CacheStore(settings.REDIS_URL, default_ttl=settings.CACHE_TTL_SECONDS)
        await cache.connect()
        fetcher = RetryingFetchClient(
            retries=settings.FETCH_RETRIES,
            backoff_base_seconds=settings.FETCH_BACKOFF_BASE_SECONDS,
            jitter_seconds=settings.FETCH_JITTER_SECONDS,
            timeout_seconds=settings.FETCH_TIMEOUT_SECONDS,
        )
        gateway = BroadcastGateway(cache)
        await gateway.start()

        app.state.cache = cache
        app.state.query_service = QueryService(cache, ttl=settings.CACHE_TTL_SECONDS)
        app.state.gateway = gateway

        scheduler: Optional[Scheduler] = None
        if settings.SCHEDULER_ENABLED:
            scheduler = build_scheduler(settings, cache, fetcher)
            app.state.scheduler = scheduler.start()
        else:
            logger.info("ℹ️ scheduler disabled (SCHEDULER_ENABLED=false)")
            app.state.scheduler = None

        try:
            yield
        finally:
            if scheduler is not None:
                await scheduler.stop()
            app.state.scheduler = None
            await gateway.stop()
            await fetcher.aclose()
            await cache.close()

    app = FastAPI(title="Token Aggregation API", lifespan=lifespan)

    app.include_router(health_router)
    app.include_router(tokens_router)
    app.include_router(realtime_router)

    @app.get("/", response_class=PlainTextResponse)
    def root() -> str:
        return "Crypto Aggregation Service is Running."

    return app


app = create_app()


def run() -> None:  # pragma: no cover
    import uvicorn

    settings = get_settings()
    configure_logging(settings.LOG_LEVEL)
    uvicorn.run("aggregator.main:app", host="0.0.0.0", port=settings.PORT)
