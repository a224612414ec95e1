from __future__ import annotations

import json
import time

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from aggregator.api import health as health_module
from aggregator.errors import CacheError
from aggregator.jobs.scheduler import SchedulerHandle, SchedulerState
from aggregator.services.query import TOKEN_LIST_KEY
from aggregator.utils.readiness import annotate_scheduler_jobs

from conftest import FakeCache


class _RunningEvent:
    def is_set(self) -> bool:
        return False


def _handle(last_success_age_s: float | None, schedule_s: float = 300) -> SchedulerHandle:
    now = time.time()
    state = SchedulerState(started=True, stop_event=_RunningEvent())
    state.meta = {"started_at": now - 10_000}
    state.job_stats["aggregation"] = {
        "schedule_s": schedule_s,
        "last_success_ts": None if last_success_age_s is None else now - last_success_age_s,
        "consecutive_failures": 0,
    }
    return SchedulerHandle(state)


@pytest.fixture()
def health_client():
    cache = FakeCache()
    app = FastAPI()
    app.include_router(health_module.router)
    app.state.cache = cache
    app.state.scheduler = None
    yield TestClient(app), app, cache


def test_live(health_client):
    client, _, _ = health_client
    assert client.get("/live").json() == {"status": "ok"}


def test_ready_without_catalog_is_degraded(health_client):
    client, _, _ = health_client
    resp = client.get("/ready")
    assert resp.status_code == 503
    assert resp.json()["degraded_reasons"] == ["catalog_unavailable"]


def test_ready_ok(health_client):
    client, app, cache = health_client
    cache.values[TOKEN_LIST_KEY] = json.dumps([{"id": "SOL", "price": 1.0}])
    app.state.scheduler = _handle(last_success_age_s=30)

    resp = client.get("/ready")

    assert resp.status_code == 200
    body = resp.json()
    assert body["status"] == "ok"
    assert body["checks"]["catalog"]["tokens"] == 1
    assert body["checks"]["scheduler"]["per_job"]["aggregation"]["stalled"] is False


def test_ready_flags_stalled_job(health_client):
    client, app, cache = health_client
    cache.values[TOKEN_LIST_KEY] = json.dumps([{"id": "SOL", "price": 1.0}])
    app.state.scheduler = _handle(last_success_age_s=3600)

    resp = client.get("/health")

    assert resp.status_code == 503
    body = resp.json()
    assert "scheduler_stalled_jobs" in body["degraded_reasons"]
    assert body["stale_jobs"][0]["job_id"] == "aggregation"


def test_ready_reports_cache_outage(health_client):
    client, _, cache = health_client
    cache.fail_with = CacheError("redis unreachable")
    body = client.get("/ready").json()
    assert "cache_unhealthy" in body["degraded_reasons"]
    assert body["checks"]["cache"]["error"] == "redis unreachable"


def test_never_succeeded_job_uses_started_at():
    check = {
        "meta": {"started_at": 1000.0},
        "per_job": {"ticker": {"schedule_s": 5, "last_success_ts": None, "last_run_ts": None}},
    }
    _, stale = annotate_scheduler_jobs(check, now_ts=1020.0)
    assert stale[0]["job_id"] == "ticker"
    assert stale[0]["ref_ts_key"] == "meta.started_at"
    assert check["per_job"]["ticker"]["never_succeeded"] is True
