from __future__ import annotations

import asyncio

import pytest

from aggregator.jobs.scheduler import FAILED, SKIPPED, SUCCESS, JobResult, PeriodicJob, Scheduler


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def test_duplicate_job_names_rejected():
    async def noop():
        return JobResult.success()

    with pytest.raises(ValueError):
        Scheduler([PeriodicJob("a", 1, noop), PeriodicJob("a", 2, noop)])


@pytest.mark.asyncio
async def test_runs_immediately_then_on_cadence():
    calls = []

    async def job():
        calls.append(asyncio.get_running_loop().time())
        return JobResult.success()

    scheduler = Scheduler([PeriodicJob("fast", 0.05, job)])
    handle = scheduler.start()
    try:
        await _wait_for(lambda: len(calls) >= 3)
        assert handle.running
        assert handle.jobs == 1
    finally:
        await scheduler.stop()

    assert not handle.running
    assert calls[1] - calls[0] >= 0.04


@pytest.mark.asyncio
async def test_exception_becomes_failed_result_and_loop_survives():
    attempts = {"n": 0}
    seen = []

    async def flaky():
        attempts["n"] += 1
        if attempts["n"] == 1:
            raise RuntimeError("upstream exploded")
        return JobResult.skipped("nothing new")

    scheduler = Scheduler([PeriodicJob("flaky", 0.02, flaky)])
    scheduler.on_result = lambda name, result: seen.append((name, result.status))
    handle = scheduler.start()
    try:
        await _wait_for(lambda: len(seen) >= 2)
        stats = handle.info()["per_job"]["flaky"]
    finally:
        await scheduler.stop()

    assert seen[0] == ("flaky", FAILED)
    assert seen[1] == ("flaky", SKIPPED)
    assert stats["consecutive_failures"] == 0
    assert "upstream exploded" in stats["last_error"]
    assert stats["last_success_ts"] is not None


@pytest.mark.asyncio
async def test_consecutive_failures_counted():
    async def broken():
        return JobResult.failed("still broken")

    scheduler = Scheduler([PeriodicJob("broken", 0.01, broken)])
    handle = scheduler.start()
    try:
        await _wait_for(lambda: handle.info()["per_job"]["broken"]["consecutive_failures"] >= 3)
        info = handle.info()["per_job"]["broken"]
    finally:
        await scheduler.stop()

    assert info["last_status"] == FAILED
    assert info["last_success_ts"] is None


@pytest.mark.asyncio
async def test_run_once_reports_duration():
    async def slow():
        await asyncio.sleep(0.02)
        return JobResult.success("done", tokens=3)

    job = PeriodicJob("slow", 10, slow)
    result = await Scheduler([job]).run_once(job)

    assert result.status == SUCCESS
    assert result.data == {"tokens": 3}
    assert result.duration_ms >= 15


@pytest.mark.asyncio
async def test_stop_cancels_hung_job():
    started = asyncio.Event()

    async def hung():
        started.set()
        await asyncio.sleep(3600)
        return JobResult.success()

    scheduler = Scheduler([PeriodicJob("hung", 1, hung)])
    handle = scheduler.start()
    await started.wait()
    await scheduler.stop(timeout_s=0.05)

    assert not handle.running
    assert handle.jobs == 0


@pytest.mark.asyncio
async def test_raising_result_hook_does_not_stop_job():
    runs = {"n": 0}

    async def job():
        runs["n"] += 1
        return JobResult.success()

    def hook(name, result):
        raise RuntimeError("hook exploded")

    scheduler = Scheduler([PeriodicJob("tick", 0.02, job)])
    scheduler.on_result = hook
    handle = scheduler.start()
    try:
        await _wait_for(lambda: runs["n"] >= 3)
        stats = handle.info()["per_job"]["tick"]
    finally:
        await scheduler.stop()

    assert stats["runs"] >= 2
    assert stats["last_status"] == SUCCESS
