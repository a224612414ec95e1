"""Pydantic models for the token catalog and realtime price events."""

from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class TokenRecord(BaseModel):
    """One canonical, merged entry of the token catalog."""

    id: str
    price: float
    volume24h: float = 0.0
    priceChange1h: float = 0.0
    priceChange24h: float = 0.0


class RawSourceResult(BaseModel):
    """Per-symbol upstream payloads from one fetch cycle; ``None`` means the source failed."""

    symbol: str
    dexScreener: Optional[List[Any]] = None
    jupiterPrice: Optional[List[Any]] = None
    geckoTerminal: Optional[dict[str, Any]] = None

    def has_any_source(self) -> bool:
        return any(
            src is not None for src in (self.dexScreener, self.jupiterPrice, self.geckoTerminal)
        )


class TickerState(BaseModel):
    price: float


class PriceUpdateEvent(BaseModel):
    symbol: str
    price: float
    volume24h: float = 0.0
    timestamp: datetime


class Pagination(BaseModel):
    limit: int
    nextCursor: Optional[str] = None


class QueryResultView(BaseModel):
    data: List[TokenRecord] = Field(default_factory=list)
    pagination: Pagination
    cached: bool = False
    cacheTime: datetime
