# aggregator/jobs/scheduler.py
from __future__ import annotations

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from aggregator.utils.time import iso_z_from_epoch, now_epoch

logger = logging.getLogger("token_aggregator.scheduler")


# ----------------------------
# per-cycle result
# ----------------------------
SUCCESS = "success"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass(frozen=True)
class JobResult:
    status: str
    detail: Optional[str] = None
    duration_ms: int = 0
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, detail: Optional[str] = None, **data: Any) -> "JobResult":
        return cls(SUCCESS, detail, data=data)

    @classmethod
    def skipped(cls, detail: str, **data: Any) -> "JobResult":
        return cls(SKIPPED, detail, data=data)

    @classmethod
    def failed(cls, detail: str, **data: Any) -> "JobResult":
        return cls(FAILED, detail, data=data)

    @property
    def ok(self) -> bool:
        return self.status != FAILED


JobFn = Callable[[], Awaitable[JobResult]]


@dataclass(frozen=True)
class PeriodicJob:
    name: str
    interval_s: float
    run: JobFn


# ----------------------------
# scheduler state + handle
# ----------------------------
@dataclass
class SchedulerState:
    started: bool = False
    stop_event: Optional[asyncio.Event] = None
    tasks: Dict[str, asyncio.Task] = field(default_factory=dict)      # job name -> task
    meta: Dict[str, Any] = field(default_factory=dict)
    job_stats: Dict[str, Dict[str, Any]] = field(default_factory=dict)  # job name -> stats


@dataclass(frozen=True)
class SchedulerHandle:
    """
    Stored in app.state.scheduler so /ready can report scheduler status.
    """
    _state: SchedulerState

    @property
    def running(self) -> bool:
        return bool(self._state.started and self._state.stop_event and not self._state.stop_event.is_set())

    @property
    def jobs(self) -> int:
        return len(self._state.tasks)

    def info(self) -> Dict[str, Any]:
        meta = dict(self._state.meta) if self._state.meta else {}
        started_at = meta.get("started_at")
        started_at_f = float(started_at) if started_at is not None else None

        info: Dict[str, Any] = {
            "ok": self.running,
            "running": self.running,
            "jobs": self.jobs,
            "uptime_s": int(now_epoch() - started_at_f) if started_at_f else None,
            "meta": {
                **meta,
                "started_at_iso": iso_z_from_epoch(started_at_f),
            },
            "per_job": {},
        }

        for name, s in self._state.job_stats.items():
            info["per_job"][name] = {
                "schedule_s": s.get("schedule_s"),
                "runs": s.get("runs", 0),
                "last_status": s.get("last_status"),
                "last_detail": s.get("last_detail"),
                "last_run_ts": s.get("last_run_ts"),
                "last_run_iso": iso_z_from_epoch(s.get("last_run_ts")),
                "last_success_ts": s.get("last_success_ts"),
                "last_success_iso": iso_z_from_epoch(s.get("last_success_ts")),
                "last_duration_ms": s.get("last_duration_ms"),
                "consecutive_failures": s.get("consecutive_failures", 0),
                "last_error_ts": s.get("last_error_ts"),
                "last_error_iso": iso_z_from_epoch(s.get("last_error_ts")),
                "last_error": s.get("last_error"),
            }

        return info


class Scheduler:
    """
    Runs each ``PeriodicJob`` in its own task: once immediately, then every
    ``interval_s`` seconds until ``stop()``.

    A run never overlaps the previous run of the same job; when a run overshoots
    its slot the next tick is realigned instead of firing back-to-back.
    """

    def __init__(self, jobs: List[PeriodicJob]):
        names = [j.name for j in jobs]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate job names: {names}")
        self._jobs = list(jobs)
        self._state = SchedulerState()
        self.on_result: Optional[Callable[[str, JobResult], None]] = None

    @property
    def handle(self) -> SchedulerHandle:
        return SchedulerHandle(self._state)

    def _record(self, name: str, result: JobResult, run_ts: float) -> None:
        js = self._state.job_stats[name]
        js["runs"] = int(js.get("runs", 0)) + 1
        js["last_run_ts"] = run_ts
        js["last_status"] = result.status
        js["last_detail"] = result.detail
        js["last_duration_ms"] = result.duration_ms

        if result.status == FAILED:
            js["last_error_ts"] = now_epoch()
            js["last_error"] = (result.detail or "")[:300]  # bounded for payload sanity
            js["consecutive_failures"] = int(js.get("consecutive_failures", 0)) + 1
        else:
            js["last_success_ts"] = now_epoch()
            js["consecutive_failures"] = 0

        if self.on_result is not None:
            try:
                self.on_result(name, result)
            except Exception:
                logger.exception("❌ on_result hook error | %s", name)

    async def run_once(self, job: PeriodicJob) -> JobResult:
        """Run one cycle of ``job``; exceptions become a failed result."""
        t0 = time.perf_counter()
        try:
            result = await job.run()
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.exception("❌ job error | %s", job.name)
            result = JobResult.failed(repr(e))

        dt_ms = int((time.perf_counter() - t0) * 1000)
        return JobResult(result.status, result.detail, dt_ms, result.data)

    async def _job_loop(self, job: PeriodicJob, stop_event: asyncio.Event) -> None:
        next_tick = time.monotonic()  # run immediately once

        while not stop_event.is_set():
            now = time.monotonic()
            if now < next_tick:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=(next_tick - now))
                except asyncio.TimeoutError:
                    pass
                continue

            run_ts = now_epoch()
            result = await self.run_once(job)
            self._record(job.name, result, run_ts)
            logger.debug("job cycle | %s | status=%s | %dms", job.name, result.status, result.duration_ms)

            next_tick += job.interval_s
            if next_tick < time.monotonic():
                next_tick = time.monotonic() + job.interval_s

    def start(self) -> SchedulerHandle:
        if self._state.started and self._state.stop_event and not self._state.stop_event.is_set():
            logger.warning("⚠️ scheduler already started (in-process)")
            return self.handle

        self._state.stop_event = asyncio.Event()
        self._state.started = True
        self._state.meta = {
            "pid": os.getpid(),
            "started_at": now_epoch(),
            "jobs": [j.name for j in self._jobs],
        }
        self._state.job_stats.clear()

        for job in self._jobs:
            self._state.job_stats[job.name] = {
                "schedule_s": job.interval_s,
                "runs": 0,
                "last_status": None,
                "last_detail": None,
                "last_run_ts": None,
                "last_success_ts": None,
                "last_duration_ms": None,
                "last_error_ts": None,
                "last_error": None,
                "consecutive_failures": 0,
            }
            self._state.tasks[job.name] = asyncio.create_task(
                self._job_loop(job, self._state.stop_event),
                name=f"job:{job.name}",
            )

        logger.info("✅ scheduler started | jobs=%s", len(self._state.tasks))
        return self.handle

    async def stop(self, timeout_s: float = 6.0) -> None:
        if not self._state.started:
            return

        stop_event = self._state.stop_event
        if stop_event:
            stop_event.set()

        tasks = list(self._state.tasks.values())

        try:
            if tasks:
                await asyncio.wait_for(asyncio.gather(*tasks, return_exceptions=True), timeout=timeout_s)
        except asyncio.TimeoutError:
            for t in tasks:
                if not t.done():
                    t.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        finally:
            self._state.tasks.clear()
            self._state.started = False
            self._state.stop_event = None

        logger.info("🛑 scheduler stopped")
