"""
APScheduler Configuration for Maintenance Jobs

Runs the periodic housekeeping the order lifecycle depends on:
- Session sweep: expires checkout sessions past their deadline and cancels
  the Draft orders behind them
- Idempotency reaper: deletes ledger records older than the retention window

Jobs are registered on every startup from settings, so the in-memory job
store is sufficient.
"""
import logging
from typing import List

from apscheduler.executors.asyncio import AsyncIOExecutor
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from ..config import Settings
from .checkout_service import CheckoutSessionManager
from .idempotency_ledger import IdempotencyLedger

logger = logging.getLogger(__name__)

SESSION_SWEEP_JOB_ID = "checkout_session_sweep"
IDEMPOTENCY_REAP_JOB_ID = "idempotency_reaper"


class MaintenanceScheduler:
    """
    Owns one AsyncIOScheduler for the application's lifetime.

    Each job runs with ``max_instances=1`` so a slow sweep is never
    overlapped by the next tick.
    """

    def __init__(self, sessions: CheckoutSessionManager, ledger: IdempotencyLedger, settings: Settings):
        self._sessions = sessions
        self._ledger = ledger
        self._settings = settings
        self._scheduler = AsyncIOScheduler(
            executors={"default": AsyncIOExecutor()},
            job_defaults={
                "coalesce": True,  # Combine missed runs into one
                "max_instances": 1,
                "misfire_grace_time": 30,
            },
            timezone="UTC",
        )

    @property
    def running(self) -> bool:
        return self._scheduler.running

    def start(self) -> None:
        """
        Register maintenance jobs and start the scheduler.

        Must be called from within a running event loop (FastAPI lifespan).
        """
        if self._scheduler.running:
            logger.warning("Scheduler already running")
            return

        self._scheduler.add_job(
            self.sweep_sessions,
            trigger=IntervalTrigger(seconds=self._settings.session_sweep_interval_seconds),
            id=SESSION_SWEEP_JOB_ID,
            name="Expire stale checkout sessions",
            replace_existing=True,
        )
        self._scheduler.add_job(
            self.reap_idempotency_records,
            trigger=IntervalTrigger(minutes=self._settings.idempotency_reap_interval_minutes),
            id=IDEMPOTENCY_REAP_JOB_ID,
            name="Reap idempotency records",
            replace_existing=True,
        )
        self._scheduler.start()

        logger.info(f"Scheduler started. Jobs: {len(self._scheduler.get_jobs())}")
        for job in self._scheduler.get_jobs():
            logger.info(f"  - Job {job.id}: next_run={job.next_run_time}")

    def shutdown(self, wait: bool = True) -> None:
        if self._scheduler.running:
            self._scheduler.shutdown(wait=wait)
            logger.info(f"Scheduler shutdown (wait={wait})")

    def get_all_jobs(self) -> List:
        return self._scheduler.get_jobs()

    # ========================================================================
    # Jobs
    # ========================================================================

    async def sweep_sessions(self) -> int:
        try:
            expired = await self._sessions.expire_stale_sessions()
        except Exception as e:
            logger.error(f"Session sweep failed: {e}", exc_info=True)
            return 0
        if expired:
            logger.info(f"Session sweep expired {len(expired)} session(s)")
        return len(expired)

    async def reap_idempotency_records(self) -> int:
        try:
            removed = await self._ledger.reap()
        except Exception as e:
            logger.error(f"Idempotency reap failed: {e}", exc_info=True)
            return 0
        if removed:
            logger.info(f"Reaped {removed} idempotency record(s)")
        return removed
