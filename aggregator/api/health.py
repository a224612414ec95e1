# aggregator/api/health.py
from __future__ import annotations

import time
from typing import Any, Dict

from fastapi import APIRouter, Request, Response

from aggregator.errors import CacheError
from aggregator.services.query import TOKEN_LIST_KEY
from aggregator.utils.readiness import annotate_scheduler_jobs
from aggregator.utils.time import iso_z_from_epoch

router = APIRouter(tags=["health"])

APP_STARTED_AT = time.time()


def _now_meta() -> Dict[str, Any]:
    now_ts = time.time()
    return {
        "now_unix": int(now_ts),
        "now_iso": iso_z_from_epoch(now_ts),
        "uptime_s": int(now_ts - APP_STARTED_AT),
    }


async def _check_cache(cache) -> Dict[str, Any]:
    t0 = time.time()
    try:
        await cache.ping()
        return {"ok": True, "latency_ms": int((time.time() - t0) * 1000)}
    except CacheError as e:
        return {"ok": False, "latency_ms": int((time.time() - t0) * 1000), "error": str(e)}


async def _check_catalog(cache) -> Dict[str, Any]:
    try:
        catalog = await cache.get_json(TOKEN_LIST_KEY)
    except CacheError as e:
        return {"ok": False, "error": str(e)}
    if not catalog:
        return {"ok": False, "tokens": 0, "error": "catalog not aggregated yet"}
    return {"ok": True, "tokens": len(catalog)}


def _check_scheduler(handle) -> Dict[str, Any]:
    if handle is None:
        return {"ok": True, "running": False, "enabled": False, "per_job": {}, "meta": {}}
    return {"enabled": True, **handle.info()}


@router.get("/live")
async def live():
    return {"status": "ok"}


@router.get("/ready")
async def ready(request: Request, response: Response):
    state = request.app.state
    cache = state.cache

    checks = {
        "cache": await _check_cache(cache),
        "catalog": await _check_catalog(cache),
        "scheduler": _check_scheduler(getattr(state, "scheduler", None)),
    }
    payload: Dict[str, Any] = {"status": "ok", **_now_meta()}

    degraded_reasons = []
    if not checks["cache"]["ok"]:
        degraded_reasons.append("cache_unhealthy")
    if not checks["catalog"]["ok"]:
        degraded_reasons.append("catalog_unavailable")

    scheduler = checks["scheduler"]
    if scheduler.get("running"):
        scheduler, stale = annotate_scheduler_jobs(scheduler)
        checks["scheduler"] = scheduler
        if stale:
            degraded_reasons.append("scheduler_stalled_jobs")
            payload["stale_jobs"] = stale
            scheduler["ok"] = False
    elif scheduler.get("enabled"):
        degraded_reasons.append("scheduler_not_running")

    payload["degraded"] = bool(degraded_reasons)
    payload["degraded_reasons"] = degraded_reasons
    if degraded_reasons:
        payload["status"] = "degraded"
        response.status_code = 503

    payload["checks"] = checks
    return payload


@router.get("/health")
async def health(request: Request, response: Response):
    return await ready(request, response)
