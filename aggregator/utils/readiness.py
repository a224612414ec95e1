# aggregator/utils/readiness.py
from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

# job is stale if age > STALL_MULTIPLIER * schedule_s
STALL_MULTIPLIER_DEFAULT = 2.5


def _to_unix_ts(value: Any) -> Optional[float]:
    """
    Coerce a timestamp-like value into a unix seconds float (UTC).
    Accepts int/float (unix seconds), datetime (naive assumed UTC) and ISO strings.
    Returns None if it can't parse.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        return float(value)

    if isinstance(value, str):
        s = value.strip().replace("Z", "+00:00")
        if not s:
            return None
        try:
            value = datetime.fromisoformat(s)
        except ValueError:
            return None

    if isinstance(value, datetime):
        dt = value
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return float(dt.timestamp())

    return None


def _coerce_float(value: Any, default: float = 0.0) -> float:
    try:
        if value is None:
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def annotate_scheduler_jobs(
    scheduler_check: Dict[str, Any],
    now_ts: float | None = None,
    stall_multiplier: float = STALL_MULTIPLIER_DEFAULT,
) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """
    Adds stall detection to a ``SchedulerHandle.info()`` payload.

    Stall rule:
      stalled if (now - last_success_ts) > stall_multiplier * schedule_s
      If never succeeded, last_run_ts or the scheduler's started_at is the reference.

    Updates ``scheduler_check`` in place and returns it with the list of stalled jobs.
    """
    now = float(now_ts) if now_ts is not None else time.time()
    stall_mult = _coerce_float(stall_multiplier, default=STALL_MULTIPLIER_DEFAULT)

    per_job: Dict[str, Dict[str, Any]] = {
        str(k): v for k, v in (scheduler_check.get("per_job") or {}).items() if isinstance(v, dict)
    }

    meta = scheduler_check.get("meta") or {}
    started_at_unix = _to_unix_ts(meta.get("started_at"))

    stale: List[Dict[str, Any]] = []

    for job_id, j in per_job.items():
        schedule_s = _coerce_float(j.get("schedule_s"), default=0.0)
        allowed_age_s = schedule_s * stall_mult if schedule_s > 0 else None

        last_success_unix = _to_unix_ts(j.get("last_success_ts"))
        last_run_unix = _to_unix_ts(j.get("last_run_ts"))

        ref_ts_unix: Optional[float]
        ref_ts_key: Optional[str]
        if last_success_unix is not None:
            ref_ts_unix, ref_ts_key = last_success_unix, "last_success_ts"
        elif last_run_unix is not None:
            ref_ts_unix, ref_ts_key = last_run_unix, "last_run_ts"
        elif started_at_unix is not None:
            ref_ts_unix, ref_ts_key = started_at_unix, "meta.started_at"
        else:
            ref_ts_unix, ref_ts_key = None, None

        age_s = max(0.0, now - ref_ts_unix) if ref_ts_unix is not None else None

        stalled = allowed_age_s is not None and age_s is not None and age_s > allowed_age_s
        stalled_by_s = (age_s - allowed_age_s) if stalled else 0.0

        j["age_s"] = age_s
        j["allowed_age_s"] = allowed_age_s
        j["ref_ts_key"] = ref_ts_key
        j["stalled"] = stalled
        j["stalled_by_s"] = stalled_by_s
        j["never_succeeded"] = last_success_unix is None

        if stalled:
            stale.append(
                {
                    "job_id": job_id,
                    "schedule_s": schedule_s,
                    "age_s": age_s,
                    "allowed_age_s": allowed_age_s,
                    "stalled_by_s": stalled_by_s,
                    "ref_ts_key": ref_ts_key,
                    "last_error": j.get("last_error"),
                    "consecutive_failures": j.get("consecutive_failures"),
                    "never_succeeded": last_success_unix is None,
                }
            )

    stale.sort(key=lambda x: (-(x.get("stalled_by_s") or 0.0), str(x.get("job_id") or "")))

    scheduler_check["per_job"] = per_job
    scheduler_check["stale_jobs"] = stale
    scheduler_check["stale_count"] = len(stale)
    scheduler_check["stall_multiplier"] = stall_mult
    scheduler_check["computed_at_ts"] = now

    return scheduler_check, stale
