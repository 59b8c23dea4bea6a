"""
Worker Scheduler Configuration

Registers and schedules in-process background workers: periodic reconciliation
(full resync + receipt drain) and proactive token refresh.
"""

import logging
import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from app.config import settings
from app.database import SessionLocal
from app.services.platforms import PlatformRegistry

logger = logging.getLogger(__name__)

TOKEN_MAINTENANCE_INTERVAL_SECONDS = 900


async def run_reconciliation_worker(registry: PlatformRegistry) -> Dict[str, Any]:
    """Run one reconciliation pass in its own session."""
    from app.services.sync_engine import SyncEngine

    db = SessionLocal()
    try:
        summary = await SyncEngine(db, registry).run_reconciliation()
        return {
            "success": summary["failedSyncs"] == 0,
            "message": (
                f"{summary['successfulSyncs']}/{summary['totalIntegrations']} integrations synced, "
                f"{summary['webhooksProcessed']} receipts processed"
            ),
            "summary": summary,
        }
    finally:
        db.close()


async def run_token_maintenance_worker(registry: PlatformRegistry) -> Dict[str, Any]:
    """Refresh every stale token of every owner with an active credential."""
    from app.services.credentials import list_resyncable_credentials
    from app.services.token_refresh import refresh_all_expiring_tokens

    db = SessionLocal()
    try:
        owners = sorted({c.user_id for c in list_resyncable_credentials(db)})
        failures = 0
        for owner in owners:
            results = await refresh_all_expiring_tokens(db, registry, owner)
            failures += sum(1 for r in results.values() if not r["success"] and r.get("error") != "not configured")
        return {"success": failures == 0, "message": f"{len(owners)} owners checked, {failures} refresh failures"}
    finally:
        db.close()


class WorkerScheduler:
    """Scheduler for running background workers at specified intervals."""

    def __init__(self, registry: Optional[PlatformRegistry] = None):
        self.registry = registry
        self.workers: Dict[str, Dict[str, Any]] = {
            "reconciliation": {
                "func": run_reconciliation_worker,
                "interval": settings.RECONCILIATION_INTERVAL_SECONDS,
                "last_run": None,
                "in_progress": False,
                "enabled": True,
            },
            "token_maintenance": {
                "func": run_token_maintenance_worker,
                "interval": TOKEN_MAINTENANCE_INTERVAL_SECONDS,
                "last_run": None,
                "in_progress": False,
                "enabled": True,
            },
        }
        self.running = False
        self.tick_seconds = 60
        # in-flight tasks, discarded on completion
        self.tasks: Set[asyncio.Task] = set()

    def spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        """Schedule a coroutine and keep it referenced until it finishes."""
        task = asyncio.create_task(coro)
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)
        return task

    async def run_worker(self, worker_name: str, worker_config: Dict[str, Any]) -> Dict[str, Any]:
        """
        Run a single worker and log results.

        Args:
            worker_name: Name of the worker
            worker_config: Worker configuration

        Returns:
            Worker result
        """
        func: Callable[[PlatformRegistry], Awaitable[Dict[str, Any]]] = worker_config["func"]
        worker_config["in_progress"] = True
        try:
            logger.info(f"Starting worker: {worker_name}")
            result = await func(self.registry)
            if result.get("success", False):
                logger.info(f"Worker {worker_name} completed: {result.get('message', 'No message')}")
            else:
                logger.error(f"Worker {worker_name} finished with errors: {result.get('message', 'Unknown error')}")
            return result
        except Exception as e:
            logger.exception(f"Worker {worker_name} crashed: {e}")
            return {
                "success": False,
                "message": f"Worker crashed: {str(e)}",
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        finally:
            worker_config["last_run"] = datetime.now(timezone.utc)
            worker_config["in_progress"] = False

    def due_workers(self, now: Optional[datetime] = None) -> list[str]:
        """Names of enabled, idle workers whose interval has elapsed."""
        now = now or datetime.now(timezone.utc)
        due = []
        for worker_name, worker_config in self.workers.items():
            if not worker_config["enabled"] or worker_config["in_progress"]:
                continue
            last_run = worker_config["last_run"]
            if last_run is None or (now - last_run).total_seconds() >= worker_config["interval"]:
                due.append(worker_name)
        return due

    async def start_scheduler(self):
        """Start the background worker scheduler."""
        if self.registry is None:
            raise RuntimeError("WorkerScheduler needs a platform registry")
        self.running = True
        logger.info("Worker scheduler started")

        while self.running:
            for worker_name in self.due_workers():
                self.spawn(self.run_worker(worker_name, self.workers[worker_name]))
            await asyncio.sleep(self.tick_seconds)

    def stop_scheduler(self):
        """Stop the background worker scheduler."""
        self.running = False
        logger.info("Worker scheduler stopped")

    def get_worker_status(self) -> Dict[str, Any]:
        """Get current status of all workers."""
        status = {}
        for worker_name, worker_config in self.workers.items():
            last_run = worker_config["last_run"]
            next_run = last_run + timedelta(seconds=worker_config["interval"]) if last_run else None
            status[worker_name] = {
                "enabled": worker_config["enabled"],
                "last_run": last_run.isoformat() if last_run else None,
                "next_run": next_run.isoformat() if next_run else None,
                "interval_seconds": worker_config["interval"],
                "in_progress": worker_config["in_progress"],
                "status": "running" if self.running else "stopped",
            }
        return status


# Global scheduler instance
scheduler = WorkerScheduler()


def start_background_workers(registry: PlatformRegistry):
    """Start the background worker scheduler."""
    scheduler.registry = registry
    scheduler.spawn(scheduler.start_scheduler())
    logger.info(f"Background workers started (reconciliation every {scheduler.workers['reconciliation']['interval']}s)")


def stop_background_workers():
    """Stop the background worker scheduler."""
    scheduler.stop_scheduler()


def get_workers_status() -> Dict[str, Any]:
    """Get status of all background workers."""
    return scheduler.get_worker_status()
