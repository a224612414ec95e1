"""Upstream data providers: DexScreener, Jupiter and GeckoTerminal search endpoints."""

from __future__ import annotations

from typing import Any, Optional

from aggregator.errors import FetchError
from aggregator.services.fetcher import RetryingFetchClient


DEXSCREENER_SEARCH_URL = "https://api.dexscreener.com/latest/dex/search"
JUPITER_SEARCH_URL = "https://lite-api.jup.ag/tokens/v2/search"
GECKOTERMINAL_SEARCH_URL = "https://api.geckoterminal.com/api/v2/search/pools"

_PLACEHOLDER_KEYS = {"", "YOUR_GECKOTERMINAL_API_KEY"}


async def fetch_dexscreener(client: RetryingFetchClient, symbol: str) -> list[dict[str, Any]]:
    """Return the trading pairs matching ``symbol`` (empty list if none)."""
    data = await client.fetch(DEXSCREENER_SEARCH_URL, params={"q": symbol})
    if not isinstance(data, dict):
        return []
    pairs = data.get("pairs")
    return pairs if isinstance(pairs, list) else []


async def fetch_jupiter(client: RetryingFetchClient, symbol: str) -> list[dict[str, Any]]:
    data = await client.fetch(JUPITER_SEARCH_URL, params={"query": symbol})
    if not isinstance(data, list):
        return []
    return data


async def fetch_geckoterminal(
    client: RetryingFetchClient,
    symbol: str,
    api_key: Optional[str],
) -> dict[str, list[Any]]:
    if api_key is None or api_key.strip() in _PLACEHOLDER_KEYS:
        raise FetchError(
            "GeckoTerminal API key is missing or invalid",
            url=GECKOTERMINAL_SEARCH_URL,
        )

    headers = {
        "Accept": "application/json",
        "Authorization": f"Bearer {api_key}",
    }
    data = await client.fetch(GECKOTERMINAL_SEARCH_URL, params={"query": symbol}, headers=headers)
    if not isinstance(data, dict):
        return {"pools": [], "related": []}
    return {
        "pools": _as_list(data.get("data")),
        "related": _as_list(data.get("included")),
    }


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []
