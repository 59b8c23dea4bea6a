"""
In-process worker scheduler: due-worker selection, crash containment and status reporting
"""
from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from app.services.time_utils import utcnow
from app.workers.scheduler import WorkerScheduler


def test_all_workers_due_before_first_run() -> None:
    scheduler = WorkerScheduler()

    assert set(scheduler.due_workers()) == {"reconciliation", "token_maintenance"}


def test_worker_not_due_inside_interval() -> None:
    scheduler = WorkerScheduler()
    now = utcnow()
    for config in scheduler.workers.values():
        config["last_run"] = now - timedelta(seconds=30)

    assert scheduler.due_workers(now) == []

    later = now + timedelta(seconds=scheduler.workers["token_maintenance"]["interval"])
    assert "token_maintenance" in scheduler.due_workers(later)


def test_disabled_and_running_workers_skipped() -> None:
    scheduler = WorkerScheduler()
    scheduler.workers["reconciliation"]["enabled"] = False
    scheduler.workers["token_maintenance"]["in_progress"] = True

    assert scheduler.due_workers() == []


@pytest.mark.asyncio
async def test_crashing_worker_is_contained() -> None:
    async def boom(registry):
        raise RuntimeError("database unavailable")

    scheduler = WorkerScheduler()
    config = {"func": boom, "interval": 60, "last_run": None, "in_progress": False, "enabled": True}

    result = await scheduler.run_worker("boom", config)

    assert result["success"] is False
    assert "database unavailable" in result["message"]
    assert config["in_progress"] is False
    assert config["last_run"] is not None


@pytest.mark.asyncio
async def test_worker_receives_registry(registry) -> None:
    seen = []

    async def record(reg):
        seen.append(reg)
        return {"success": True, "message": "ok"}

    scheduler = WorkerScheduler(registry)
    result = await scheduler.run_worker(
        "record", {"func": record, "interval": 60, "last_run": None, "in_progress": False, "enabled": True}
    )

    assert result == {"success": True, "message": "ok"}
    assert seen == [registry]


def test_status_reports_next_run() -> None:
    scheduler = WorkerScheduler()
    now = utcnow()
    scheduler.workers["reconciliation"]["last_run"] = now

    status = scheduler.get_worker_status()

    assert status["reconciliation"]["next_run"] == (
        now + timedelta(seconds=scheduler.workers["reconciliation"]["interval"])
    ).isoformat()
    assert status["token_maintenance"]["last_run"] is None
    assert status["reconciliation"]["status"] == "stopped"


@pytest.mark.asyncio
async def test_start_without_registry_refuses() -> None:
    with pytest.raises(RuntimeError):
        await WorkerScheduler().start_scheduler()


@pytest.mark.asyncio
async def test_running_workers_are_tracked_until_done(registry) -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    async def slow(reg):
        started.set()
        await release.wait()
        return {"success": True, "message": "done"}

    scheduler = WorkerScheduler(registry)
    scheduler.tick_seconds = 0.01
    scheduler.workers = {
        "slow": {"func": slow, "interval": 3600, "last_run": None, "in_progress": False, "enabled": True}
    }

    loop_task = asyncio.create_task(scheduler.start_scheduler())
    await asyncio.wait_for(started.wait(), timeout=1)

    assert len(scheduler.tasks) == 1

    release.set()
    scheduler.stop_scheduler()
    await asyncio.wait_for(loop_task, timeout=1)
    await asyncio.sleep(0.01)

    assert scheduler.tasks == set()
    assert scheduler.workers["slow"]["last_run"] is not None
