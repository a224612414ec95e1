"""Filtered / sorted / paginated views of the aggregated token catalog."""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from aggregator.errors import CatalogUnavailable
from aggregator.schemas.tokens import Pagination, QueryResultView
from aggregator.utils.cache import CACHE_TTL_SECONDS, CacheStore
from aggregator.utils.time import utcnow

logger = logging.getLogger("token_aggregator.query")

TOKEN_LIST_KEY = "global_token_list"


def view_cache_key(limit: int, sort_by: str, filter_by: str, cursor: int) -> str:
    return f"{TOKEN_LIST_KEY}_{limit}_{sort_by}_{filter_by}_{cursor}"


def parse_cursor(next_cursor: Optional[str]) -> int:
    if next_cursor is None or str(next_cursor).strip() == "":
        return 0
    cursor = int(str(next_cursor).strip())
    if cursor < 0:
        raise ValueError("cursor must be >= 0")
    return cursor


def _sort_value(item: Any, field: str) -> float:
    value = item.get(field) if isinstance(item, dict) else None
    if isinstance(value, bool):
        return 0.0
    try:
        return float(value) if value is not None else 0.0
    except (TypeError, ValueError):
        return 0.0


def sort_catalog(catalog: List[dict], sort_by: str) -> List[dict]:
    """Descending by ``sort_by``; stable, so equal values keep catalog order."""
    return sorted(catalog, key=lambda item: _sort_value(item, sort_by), reverse=True)


class QueryService:
    def __init__(self, cache: CacheStore, ttl: int = CACHE_TTL_SECONDS):
        self.cache = cache
        self.ttl = ttl

    async def get_view(
        self,
        limit: int = 20,
        sort_by: str = "volume24h",
        filter_by: str = "24h",
        next_cursor: Optional[str] = None,
    ) -> dict[str, Any]:
        cursor = parse_cursor(next_cursor)
        cache_key = view_cache_key(limit, sort_by, filter_by, cursor)

        cached = await self.cache.get_json(cache_key)
        if cached is not None:
            logger.debug("cache hit | key=%s", cache_key)
            return {**cached, "cached": True}

        logger.debug("cache miss | key=%s", cache_key)
        catalog = await self.cache.get_json(TOKEN_LIST_KEY)
        if not catalog:
            raise CatalogUnavailable()

        ordered = sort_catalog(list(catalog), sort_by)
        page = ordered[cursor : cursor + limit]
        next_offset = cursor + limit
        view = QueryResultView(
            data=page,
            pagination=Pagination(
                limit=limit,
                nextCursor=str(next_offset) if next_offset < len(ordered) else None,
            ),
            cached=False,
            cacheTime=utcnow(),
        )

        body = view.model_dump(mode="json")
        await self.cache.set_json(cache_key, body, self.ttl)
        return body
