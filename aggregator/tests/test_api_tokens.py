from __future__ import annotations

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from aggregator.api import tokens as tokens_module
from aggregator.errors import CacheError
from aggregator.services.query import TOKEN_LIST_KEY, QueryService

from conftest import FakeCache


@pytest.fixture()
def token_client():
    cache = FakeCache()
    app = FastAPI()
    app.include_router(tokens_module.router)
    app.state.query_service = QueryService(cache)
    client = TestClient(app)
    yield client, cache


def _seed(cache: FakeCache, count: int = 5) -> None:
    catalog = [
        {"id": f"T{i}", "price": float(i + 1), "volume24h": float(100 * (i + 1)), "priceChange1h": 0.0, "priceChange24h": 0.0}
        for i in range(count)
    ]
    cache.values[TOKEN_LIST_KEY] = json.dumps(catalog)


def test_empty_catalog_returns_503_with_retry_hint(token_client):
    client, _ = token_client
    resp = client.get("/api/token-list")
    assert resp.status_code == 503
    body = resp.json()
    assert "Try again" in body["error"]
    assert body["retryAfter"] == tokens_module.RETRY_AFTER_SECONDS
    assert resp.headers["Retry-After"] == str(tokens_module.RETRY_AFTER_SECONDS)


def test_returns_paginated_view(token_client):
    client, cache = token_client
    _seed(cache)
    resp = client.get("/api/token-list", params={"limit": 2, "sortBy": "volume24h"})
    assert resp.status_code == 200
    body = resp.json()
    assert [t["id"] for t in body["data"]] == ["T4", "T3"]
    assert body["pagination"] == {"limit": 2, "nextCursor": "2"}
    assert body["cached"] is False
    assert body["cacheTime"]

    again = client.get("/api/token-list", params={"limit": 2, "sortBy": "volume24h"}).json()
    assert again["cached"] is True
    assert again["data"] == body["data"]


def test_next_page_is_not_served_from_first_page_cache(token_client):
    client, cache = token_client
    _seed(cache)
    first = client.get("/api/token-list", params={"limit": 2}).json()
    second = client.get("/api/token-list", params={"limit": 2, "nextCursor": first["pagination"]["nextCursor"]}).json()
    assert second["cached"] is False
    assert [t["id"] for t in second["data"]] == ["T2", "T1"]


def test_bad_cursor_is_400(token_client):
    client, cache = token_client
    _seed(cache)
    resp = client.get("/api/token-list", params={"nextCursor": "abc"})
    assert resp.status_code == 400
    assert "nextCursor" in resp.json()["error"]


def test_invalid_limit_rejected(token_client):
    client, _ = token_client
    assert client.get("/api/token-list", params={"limit": 0}).status_code == 422
    assert client.get("/api/token-list", params={"filterBy": "7d"}).status_code == 422


def test_cache_failure_is_500(token_client):
    client, cache = token_client
    cache.fail_with = CacheError("redis unreachable")
    resp = client.get("/api/token-list")
    assert resp.status_code == 500
    assert resp.json() == {"error": "Internal server error during list retrieval."}
