# aggregator/api/tokens.py
from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from aggregator.errors import CatalogUnavailable
from aggregator.services.query import QueryService, parse_cursor

logger = logging.getLogger("token_aggregator.query")

router = APIRouter(prefix="/api", tags=["tokens"])

RETRY_AFTER_SECONDS = 5


def get_query_service(request: Request) -> QueryService:
    return request.app.state.query_service


def _error_response(message: str, status_code: int, **extra) -> JSONResponse:
    headers = None
    if status_code == 503:
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
    return JSONResponse(status_code=status_code, content={"error": message, **extra}, headers=headers)


@router.get("/token-list")
async def get_token_list(
    limit: int = Query(20, ge=1, le=100),
    sortBy: str = Query("volume24h", min_length=1, max_length=64),
    filterBy: Literal["1h", "24h"] = "24h",
    nextCursor: Optional[str] = None,
    service: QueryService = Depends(get_query_service),
):
    """
    Paginated, sorted slice of the aggregated token list.
    Example: /api/token-list?limit=10&sortBy=volume24h&nextCursor=10
    """
    try:
        parse_cursor(nextCursor)
    except ValueError:
        return _error_response(f"Invalid nextCursor: {nextCursor}", 400)

    try:
        return await service.get_view(
            limit=limit,
            sort_by=sortBy,
            filter_by=filterBy,
            next_cursor=nextCursor,
        )
    except CatalogUnavailable as e:
        return _error_response(str(e), 503, retryAfter=RETRY_AFTER_SECONDS)
    except Exception:
        logger.exception("❌ token list retrieval failed")
        return _error_response("Internal server error during list retrieval.", 500)
