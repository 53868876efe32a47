"""
Tests for the maintenance scheduler jobs.
"""
from unittest.mock import AsyncMock, MagicMock

import pytest

from orderflow.services.scheduler import IDEMPOTENCY_REAP_JOB_ID, SESSION_SWEEP_JOB_ID, MaintenanceScheduler


def make_scheduler(settings, expired=None, reaped=0):
    sessions = MagicMock()
    sessions.expire_stale_sessions = AsyncMock(return_value=expired or [])
    ledger = MagicMock()
    ledger.reap = AsyncMock(return_value=reaped)
    return MaintenanceScheduler(sessions, ledger, settings), sessions, ledger


@pytest.mark.asyncio
async def test_sweep_job_reports_expired_count(settings):
    scheduler, sessions, _ = make_scheduler(settings, expired=[MagicMock(), MagicMock()])
    assert await scheduler.sweep_sessions() == 2
    sessions.expire_stale_sessions.assert_awaited_once()


@pytest.mark.asyncio
async def test_failing_sweep_does_not_raise(settings):
    scheduler, sessions, _ = make_scheduler(settings)
    sessions.expire_stale_sessions.side_effect = RuntimeError("database is locked")
    assert await scheduler.sweep_sessions() == 0


@pytest.mark.asyncio
async def test_reap_job(settings):
    scheduler, _, ledger = make_scheduler(settings, reaped=7)
    assert await scheduler.reap_idempotency_records() == 7
    ledger.reap.assert_awaited_once()


@pytest.mark.asyncio
async def test_start_registers_both_jobs(settings):
    scheduler, _, _ = make_scheduler(settings)
    scheduler.start()
    try:
        assert scheduler.running
        assert {job.id for job in scheduler.get_all_jobs()} == {SESSION_SWEEP_JOB_ID, IDEMPOTENCY_REAP_JOB_ID}
        assert all(job.max_instances == 1 for job in scheduler.get_all_jobs())
    finally:
        scheduler.shutdown(wait=False)
