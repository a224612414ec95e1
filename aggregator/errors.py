# aggregator/errors.py
from __future__ import annotations

from typing import Optional


class AggregatorError(RuntimeError):
    """Base class for every failure raised by the aggregation service."""


class FetchError(AggregatorError):
    def __init__(
        self,
        message: str,
        *,
        url: str,
        status: Optional[int] = None,
        transient: bool = False,
    ):
        super().__init__(message)
        self.url = url
        self.status = status
        self.transient = transient


class MergeError(AggregatorError):
    """Raw source data could not be mapped onto token records."""


class CatalogUnavailable(AggregatorError):
    def __init__(self, message: str = "Token list is currently being aggregated. Try again shortly."):
        super().__init__(message)


class CacheError(AggregatorError):
    """Cache store unreachable or returned unreadable data."""


class ParseError(AggregatorError):
    def __init__(self, message: str, payload: object = None):
        super().__init__(message)
        self.payload = payload
