"""
Relay of price-change notifications from the cache pub/sub channel to realtime clients.

Delivery rule: a client that has not joined any topic sits on the wildcard
topic ``ALL`` and gets every event. Once it joins one or more symbol topics it
only gets events for those symbols (plus everything, if it joined ``ALL`` explicitly).
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from typing import Any, Dict, List, Optional, Protocol, Set

from pydantic import ValidationError

from aggregator.errors import ParseError
from aggregator.jobs.ticker import REALTIME_CHANNEL
from aggregator.schemas.tokens import PriceUpdateEvent
from aggregator.utils.cache import CacheStore, Subscription

logger = logging.getLogger("token_aggregator.broadcast")

PRICE_UPDATE_EVENT = "priceUpdate"
WILDCARD_TOPIC = "ALL"


class RealtimeClient(Protocol):
    async def send_json(self, data: Any) -> None: ...


def normalize_topic(topic: Any) -> str:
    if not isinstance(topic, str) or not topic.strip():
        raise ValueError("topic must be a non-empty string")
    return topic.strip().upper()


def parse_price_update(raw: Any) -> PriceUpdateEvent:
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    if not isinstance(raw, str):
        raise ParseError("pub/sub payload must be text", raw)
    try:
        return PriceUpdateEvent.model_validate_json(raw)
    except ValidationError as e:
        raise ParseError(f"malformed price update: {e.error_count()} error(s)", raw) from e


def event_frame(event: str, data: Any) -> Dict[str, Any]:
    return {"event": event, "data": data}


class BroadcastGateway:
    def __init__(self, cache: CacheStore, channel: str = REALTIME_CHANNEL):
        self.cache = cache
        self.channel = channel
        self._clients: Dict[str, RealtimeClient] = {}
        self._client_topics: Dict[str, Set[str]] = {}
        self._topics: Dict[str, Set[str]] = defaultdict(set)  # topic -> client ids
        self._ids = itertools.count(1)
        self._subscription: Optional[Subscription] = None

    # ----------------------------
    # lifecycle
    # ----------------------------
    async def start(self) -> None:
        if self._subscription is None:
            self._subscription = await self.cache.subscribe(self.channel, self.handle_message)
            logger.info("✅ broadcast gateway listening | channel=%s", self.channel)

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._subscription.close()
            self._subscription = None
        self._clients.clear()
        self._client_topics.clear()
        self._topics.clear()
        logger.info("🛑 broadcast gateway stopped")

    # ----------------------------
    # client registry
    # ----------------------------
    @property
    def client_count(self) -> int:
        return len(self._clients)

    def connect(self, client: RealtimeClient) -> str:
        client_id = f"client-{next(self._ids)}"
        self._clients[client_id] = client
        self._client_topics[client_id] = set()
        logger.info("Client connected | id=%s", client_id)
        return client_id

    def disconnect(self, client_id: str) -> None:
        if self._clients.pop(client_id, None) is None:
            return
        for topic in self._client_topics.pop(client_id, set()):
            members = self._topics.get(topic)
            if members is not None:
                members.discard(client_id)
                if not members:
                    del self._topics[topic]
        logger.info("Client disconnected | id=%s", client_id)

    def join(self, client_id: str, topic: Any) -> str:
        if client_id not in self._clients:
            raise KeyError(client_id)
        name = normalize_topic(topic)
        self._client_topics[client_id].add(name)
        self._topics[name].add(client_id)
        logger.info("%s subscribed to updates for %s", client_id, name)
        return name

    def leave(self, client_id: str, topic: Any) -> str:
        if client_id not in self._clients:
            raise KeyError(client_id)
        name = normalize_topic(topic)
        self._client_topics[client_id].discard(name)
        members = self._topics.get(name)
        if members is not None:
            members.discard(client_id)
            if not members:
                del self._topics[name]
        logger.info("%s unsubscribed from %s", client_id, name)
        return name

    def topics_for(self, client_id: str) -> Set[str]:
        return set(self._client_topics.get(client_id, set()))

    def recipients(self, symbol: str) -> List[str]:
        symbol = symbol.upper()
        out = []
        for client_id, topics in self._client_topics.items():
            if not topics or WILDCARD_TOPIC in topics or symbol in topics:
                out.append(client_id)
        return sorted(out)

    # ----------------------------
    # delivery
    # ----------------------------
    async def _send(self, client_id: str, frame: Dict[str, Any]) -> bool:
        client = self._clients.get(client_id)
        if client is None:
            return False
        try:
            await client.send_json(frame)
            return True
        except Exception as e:
            logger.warning("⚠️ dropping client after failed send | id=%s | err=%s", client_id, e)
            self.disconnect(client_id)
            return False

    async def handle_message(self, raw: Any) -> int:
        """Parse one pub/sub payload and push it to matching clients; returns deliveries."""
        try:
            event = parse_price_update(raw)
        except ParseError as e:
            logger.error("❌ dropping pub/sub payload | channel=%s | err=%s", self.channel, e)
            return 0

        frame = event_frame(PRICE_UPDATE_EVENT, event.model_dump(mode="json"))
        targets = self.recipients(event.symbol)
        sent = await asyncio.gather(*(self._send(cid, frame) for cid in targets))
        delivered = sum(1 for ok in sent if ok)
        logger.info("[WS Push] Broadcasted update | symbol=%s | clients=%s", event.symbol, delivered)
        return delivered
