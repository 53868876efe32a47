"""
Tests for the idempotency ledger.
"""
import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import update

from orderflow.db.models import IdempotencyRecordModel
from orderflow.exceptions import ConcurrentModificationError
from orderflow.models.events import IdempotencyOutcome, ProcessingOutcome
from orderflow.models.orders import OrderState


def applied(order_state=OrderState.PAID, recorded_at=None):
    return IdempotencyOutcome(
        outcome=ProcessingOutcome.APPLIED,
        order_id="ord_1",
        order_state=order_state,
        recorded_at=recorded_at or datetime.utcnow(),
    )


@pytest.mark.asyncio
async def test_first_reservation_is_fresh(container):
    reservation = await container.ledger.check_and_reserve("stripe", "evt_1", "payment-succeeded")
    assert reservation.fresh
    assert not reservation.duplicate


@pytest.mark.asyncio
async def test_duplicate_returns_recorded_outcome(container):
    ledger = container.ledger
    await ledger.check_and_reserve("stripe", "evt_1")
    await ledger.commit("stripe", "evt_1", applied())

    reservation = await ledger.check_and_reserve("stripe", "evt_1")
    assert reservation.duplicate
    assert reservation.prior.outcome == ProcessingOutcome.APPLIED
    assert reservation.prior.order_state == OrderState.PAID


@pytest.mark.asyncio
async def test_same_event_id_from_different_providers_is_distinct(container):
    ledger = container.ledger
    await ledger.check_and_reserve("stripe", "evt_1")
    await ledger.commit("stripe", "evt_1", applied())

    reservation = await ledger.check_and_reserve("paypal", "evt_1")
    assert reservation.fresh


@pytest.mark.asyncio
async def test_waiting_duplicate_sees_winner_outcome(container):
    ledger = container.ledger
    await ledger.check_and_reserve("stripe", "evt_1")

    async def finish_later():
        await asyncio.sleep(0.1)
        await ledger.commit("stripe", "evt_1", applied())

    reservation, _ = await asyncio.gather(
        ledger.check_and_reserve("stripe", "evt_1"),
        finish_later(),
    )
    assert reservation.duplicate
    assert reservation.prior.outcome == ProcessingOutcome.APPLIED


@pytest.mark.asyncio
async def test_waiting_duplicate_times_out(container):
    container.ledger._wait_seconds = 0.1
    await container.ledger.check_and_reserve("stripe", "evt_1")

    with pytest.raises(ConcurrentModificationError):
        await container.ledger.check_and_reserve("stripe", "evt_1")


@pytest.mark.asyncio
async def test_released_reservation_can_be_retried(container):
    ledger = container.ledger
    await ledger.check_and_reserve("stripe", "evt_1")
    await ledger.release("stripe", "evt_1")

    reservation = await ledger.check_and_reserve("stripe", "evt_1")
    assert reservation.fresh


@pytest.mark.asyncio
async def test_abandoned_reservation_is_taken_over(container):
    ledger = container.ledger
    await ledger.check_and_reserve("stripe", "evt_1")

    async with container.session_factory() as db:
        await db.execute(
            update(IdempotencyRecordModel)
            .where(IdempotencyRecordModel.event_id == "evt_1")
            .values(reserved_at=datetime.utcnow() - timedelta(hours=1))
        )
        await db.commit()

    reservation = await ledger.check_and_reserve("stripe", "evt_1")
    assert reservation.fresh


@pytest.mark.asyncio
async def test_concurrent_reservations_have_one_winner(container):
    container.ledger._wait_seconds = 0.2
    results = await asyncio.gather(*[
        container.ledger.check_and_reserve("stripe", f"evt_{i % 2}") for i in range(6)
    ], return_exceptions=True)

    fresh = [r for r in results if not isinstance(r, Exception) and r.fresh]
    assert len(fresh) == 2


@pytest.mark.asyncio
async def test_reap_removes_only_old_terminal_records(container):
    ledger = container.ledger
    old = datetime.utcnow() - timedelta(days=60)

    await ledger.check_and_reserve("stripe", "evt_old")
    await ledger.commit("stripe", "evt_old", applied(recorded_at=old))
    await ledger.check_and_reserve("stripe", "evt_new")
    await ledger.commit("stripe", "evt_new", applied())
    await ledger.check_and_reserve("stripe", "evt_open")

    assert await ledger.reap() == 1
    assert await ledger.get_outcome("stripe", "evt_old") is None
    assert await ledger.get_outcome("stripe", "evt_new") is not None
