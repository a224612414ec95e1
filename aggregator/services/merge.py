"""
Merge engine: folds per-symbol upstream payloads into one canonical token list.

Selection rule (deterministic):
  1. Normalize every upstream entry into a ``PoolQuote``; entries whose base
     symbol differs from the tracked symbol, or whose price is unusable, are skipped.
  2. Deduplicate quotes by pool id.
  3. Group quotes by token address; the address with the highest summed 24h
     volume wins (ties -> smallest address).
  4. The representative pool of that address is the one with the highest 24h
     volume (ties -> smallest pool id). Price and price changes come from it;
     ``volume24h`` is the sum over the address's pools.

Sources are consulted in priority order DexScreener, GeckoTerminal, Jupiter;
the first one that yields a usable quote decides the record.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from aggregator.errors import MergeError
from aggregator.schemas.tokens import RawSourceResult, TokenRecord

logger = logging.getLogger("token_aggregator.merge")


@dataclass(frozen=True)
class PoolQuote:
    token_address: str
    pool_id: str
    price: float
    volume24h: float
    change1h: float
    change24h: float


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(out):
        return None
    return out


def _num(value: Any) -> float:
    out = _to_float(value)
    return 0.0 if out is None else out


def _get(obj: Any, *path: str) -> Any:
    for key in path:
        if not isinstance(obj, Mapping):
            return None
        obj = obj.get(key)
    return obj


def _price(value: Any) -> Optional[float]:
    price = _to_float(value)
    if price is None or price <= 0:
        return None
    return price


# ----------------------------
# per-source normalization
# ----------------------------
def dexscreener_quotes(symbol: str, pairs: Iterable[Any]) -> List[PoolQuote]:
    out: List[PoolQuote] = []
    for pair in pairs:
        if not isinstance(pair, Mapping):
            continue
        base_symbol = _get(pair, "baseToken", "symbol")
        address = _get(pair, "baseToken", "address")
        pool_id = pair.get("pairAddress")
        price = _price(pair.get("priceUsd"))
        if not isinstance(base_symbol, str) or base_symbol.upper() != symbol:
            continue
        if not address or not pool_id or price is None:
            continue
        out.append(
            PoolQuote(
                token_address=str(address),
                pool_id=str(pool_id),
                price=price,
                volume24h=_num(_get(pair, "volume", "h24")),
                change1h=_num(_get(pair, "priceChange", "h1")),
                change24h=_num(_get(pair, "priceChange", "h24")),
            )
        )
    return out


def geckoterminal_quotes(symbol: str, payload: Mapping[str, Any]) -> List[PoolQuote]:
    related = payload.get("related") or []
    token_symbols: Dict[str, str] = {}
    for item in related:
        token_id = _get(item, "id")
        token_symbol = _get(item, "attributes", "symbol")
        if isinstance(token_id, str) and isinstance(token_symbol, str):
            token_symbols[token_id] = token_symbol.upper()

    out: List[PoolQuote] = []
    for pool in payload.get("pools") or []:
        attrs = _get(pool, "attributes")
        if not isinstance(attrs, Mapping):
            continue
        base_id = _get(pool, "relationships", "base_token", "data", "id")
        if not isinstance(base_id, str):
            continue

        base_symbol = token_symbols.get(base_id)
        if base_symbol is None:
            # no token sideload: fall back on the "BASE / QUOTE" pool name
            name = attrs.get("name")
            base_symbol = name.split("/")[0].strip().upper() if isinstance(name, str) else None
        if base_symbol != symbol:
            continue

        pool_id = attrs.get("address") or _get(pool, "id")
        price = _price(attrs.get("base_token_price_usd"))
        if not pool_id or price is None:
            continue
        out.append(
            PoolQuote(
                token_address=base_id.split("_", 1)[-1],
                pool_id=str(pool_id),
                price=price,
                volume24h=_num(_get(attrs, "volume_usd", "h24")),
                change1h=_num(_get(attrs, "price_change_percentage", "h1")),
                change24h=_num(_get(attrs, "price_change_percentage", "h24")),
            )
        )
    return out


def jupiter_quotes(symbol: str, tokens: Iterable[Any]) -> List[PoolQuote]:
    out: List[PoolQuote] = []
    for token in tokens:
        if not isinstance(token, Mapping):
            continue
        token_symbol = token.get("symbol")
        address = token.get("id")
        price = _price(token.get("usdPrice"))
        if not isinstance(token_symbol, str) or token_symbol.upper() != symbol:
            continue
        if not address or price is None:
            continue
        out.append(
            PoolQuote(
                token_address=str(address),
                pool_id=str(address),
                price=price,
                volume24h=_num(_get(token, "stats24h", "buyVolume"))
                + _num(_get(token, "stats24h", "sellVolume")),
                change1h=_num(_get(token, "stats1h", "priceChange")),
                change24h=_num(_get(token, "stats24h", "priceChange")),
            )
        )
    return out


# ----------------------------
# selection
# ----------------------------
def select_representative(quotes: Sequence[PoolQuote]) -> Optional[tuple[PoolQuote, float]]:
    """Return ``(representative_pool, total_volume24h)`` or ``None`` for no quotes."""
    if not quotes:
        return None

    unique: Dict[str, PoolQuote] = {}
    for q in quotes:
        seen = unique.get(q.pool_id)
        # the same pool reported twice keeps its higher-volume reading
        if seen is None or q.volume24h > seen.volume24h:
            unique[q.pool_id] = q

    by_address: Dict[str, List[PoolQuote]] = defaultdict(list)
    for q in unique.values():
        by_address[q.token_address].append(q)

    address, pools = min(
        by_address.items(),
        key=lambda kv: (-sum(p.volume24h for p in kv[1]), kv[0]),
    )
    representative = min(pools, key=lambda p: (-p.volume24h, p.pool_id))
    return representative, sum(p.volume24h for p in pools)


def _group_by_symbol(raw_results: Iterable[Any]) -> Dict[str, Dict[str, list]]:
    grouped: Dict[str, Dict[str, list]] = {}
    for raw in raw_results:
        if isinstance(raw, RawSourceResult):
            raw = raw.model_dump()
        if not isinstance(raw, Mapping):
            raise MergeError(f"Raw source result must be a mapping, got {type(raw).__name__}")

        symbol = raw.get("symbol")
        if not isinstance(symbol, str) or not symbol.strip():
            raise MergeError(f"Raw source result without a symbol: {raw!r:.120}")
        symbol = symbol.strip().upper()

        slot = grouped.setdefault(symbol, {"dex": [], "gecko": [], "jup": []})

        dex = raw.get("dexScreener")
        jup = raw.get("jupiterPrice")
        gecko = raw.get("geckoTerminal")
        if dex is not None and not isinstance(dex, list):
            raise MergeError(f"dexScreener payload for {symbol} must be a list")
        if jup is not None and not isinstance(jup, list):
            raise MergeError(f"jupiterPrice payload for {symbol} must be a list")
        if gecko is not None and not isinstance(gecko, Mapping):
            raise MergeError(f"geckoTerminal payload for {symbol} must be a mapping")

        slot["dex"].extend(dex or [])
        slot["jup"].extend(jup or [])
        if gecko is not None:
            slot["gecko"].append(gecko)
    return grouped


def merge_token_data(raw_results: Iterable[Any]) -> List[TokenRecord]:
    """
    Merge raw per-symbol results into the canonical catalog, one record per symbol,
    sorted by ``id``.
    """
    grouped = _group_by_symbol(raw_results)

    records: List[TokenRecord] = []
    for symbol in sorted(grouped):
        sources = grouped[symbol]
        gecko_quotes: List[PoolQuote] = []
        for payload in sources["gecko"]:
            gecko_quotes.extend(geckoterminal_quotes(symbol, payload))

        picked = None
        for source_name, quotes in (
            ("dexscreener", dexscreener_quotes(symbol, sources["dex"])),
            ("geckoterminal", gecko_quotes),
            ("jupiter", jupiter_quotes(symbol, sources["jup"])),
        ):
            picked = select_representative(quotes)
            if picked is not None:
                logger.debug("merge pick | symbol=%s | source=%s | pool=%s", symbol, source_name, picked[0].pool_id)
                break

        if picked is None:
            logger.warning("⚠️ merge dropped symbol | symbol=%s | no usable quotes", symbol)
            continue

        pool, total_volume = picked
        records.append(
            TokenRecord(
                id=symbol,
                price=pool.price,
                volume24h=total_volume,
                priceChange1h=pool.change1h,
                priceChange24h=pool.change24h,
            )
        )

    return records
