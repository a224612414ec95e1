from __future__ import annotations

import json
from typing import Any, Callable, Dict, List, Optional, Tuple

import pytest

from aggregator.errors import CacheError


class FakeCache:
    """In-memory stand-in for CacheStore (no expiry; TTLs are recorded)."""

    default_ttl = 30

    def __init__(self) -> None:
        self.values: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.published: List[Tuple[str, Any]] = []
        self.handlers: Dict[str, Callable] = {}
        self.fail_with: Optional[Exception] = None
        self.set_calls = 0

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def ping(self) -> bool:
        self._check()
        return True

    async def get_json(self, key: str) -> Any:
        self._check()
        raw = self.values.get(key)
        return json.loads(raw) if raw is not None else None

    async def set_json(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        self._check()
        self.set_calls += 1
        self.values[key] = json.dumps(value)
        self.ttls[key] = self.default_ttl if ttl is None else ttl

    async def publish(self, channel: str, payload: Any) -> int:
        self._check()
        self.published.append((channel, payload))
        return 1

    async def subscribe(self, channel: str, handler: Callable):
        self.handlers[channel] = handler
        return _FakeSubscription(self, channel)


class _FakeSubscription:
    def __init__(self, cache: FakeCache, channel: str) -> None:
        self.cache = cache
        self.channel = channel

    async def close(self) -> None:
        self.cache.handlers.pop(self.channel, None)


class FakeSocket:
    def __init__(self, fail: bool = False) -> None:
        self.frames: List[Any] = []
        self.fail = fail

    async def send_json(self, data: Any) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.frames.append(data)


def make_pair(
    symbol: str = "SOL",
    price: Any = "100.0",
    volume: Any = 1000.0,
    address: str = "So111",
    pair_address: str = "pairA",
    h1: Any = 0.5,
    h24: Any = 7.2,
) -> dict:
    return {
        "chainId": "solana",
        "dexId": "raydium",
        "pairAddress": pair_address,
        "baseToken": {"address": address, "name": symbol.title(), "symbol": symbol},
        "priceUsd": price,
        "volume": {"h24": volume, "h1": 10.0},
        "priceChange": {"h1": h1, "h24": h24},
    }


def make_jupiter_token(
    symbol: str = "SOL",
    price: Any = 101.0,
    address: str = "So111",
    buy: float = 400.0,
    sell: float = 600.0,
) -> dict:
    return {
        "id": address,
        "symbol": symbol,
        "name": symbol.title(),
        "usdPrice": price,
        "stats1h": {"priceChange": -1.0},
        "stats24h": {"priceChange": 3.0, "buyVolume": buy, "sellVolume": sell},
    }


@pytest.fixture()
def fake_cache() -> FakeCache:
    return FakeCache()


@pytest.fixture()
def broken_cache() -> FakeCache:
    cache = FakeCache()
    cache.fail_with = CacheError("redis unreachable")
    return cache
