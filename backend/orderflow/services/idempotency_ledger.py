"""
Idempotency Ledger

Durable record of which gateway events have been processed.

Reservation is a plain INSERT on the (provider, event_id) primary key:
exactly one concurrent delivery wins, the others see an IntegrityError and
wait (bounded) for the winner's recorded outcome. Nothing holds a lock
while the winner works.
"""
import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db.models import IdempotencyRecordModel
from ..exceptions import ConcurrentModificationError
from ..models.events import IdempotencyOutcome, ProcessingOutcome
from ..models.orders import OrderState

logger = logging.getLogger(__name__)

RESERVED = "reserved"


@dataclass(frozen=True)
class Reservation:
    """Result of ``check_and_reserve``: fresh, or a duplicate with the prior outcome."""
    fresh: bool
    prior: Optional[IdempotencyOutcome] = None

    @property
    def duplicate(self) -> bool:
        return not self.fresh


def _to_outcome(record: IdempotencyRecordModel) -> IdempotencyOutcome:
    return IdempotencyOutcome(
        outcome=ProcessingOutcome(record.status),
        order_id=record.order_id,
        order_state=OrderState(record.order_state) if record.order_state else None,
        reason=record.reason,
        recorded_at=record.completed_at or record.reserved_at,
    )


class IdempotencyLedger:
    """Exactly-once bookkeeping for at-least-once webhook deliveries."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: Settings):
        self._session_factory = session_factory
        self._wait_seconds = settings.idempotency_wait_seconds
        self._poll_interval = settings.idempotency_poll_interval_seconds
        self._reservation_ttl = timedelta(seconds=settings.idempotency_reservation_ttl_seconds)
        self._retention = timedelta(days=settings.idempotency_retention_days)

    async def check_and_reserve(
        self,
        provider: str,
        event_id: str,
        event_type: str = "unknown",
        payload_digest: Optional[str] = None,
    ) -> Reservation:
        """
        Atomically reserve an event for processing.

        Returns a fresh reservation for the first caller. Later callers get
        the recorded outcome; while the winner is still working they poll
        for up to ``idempotency_wait_seconds``. A reservation older than the
        reservation TTL is treated as abandoned and taken over.

        Raises:
            ConcurrentModificationError: the winner did not finish in time
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._wait_seconds

        while True:
            if await self._try_insert(provider, event_id, event_type, payload_digest):
                logger.debug(f"Reserved event {provider}:{event_id}")
                return Reservation(fresh=True)

            record = await self._load(provider, event_id)
            if record is None:
                # winner released its reservation in the meantime
                continue

            if record.status != RESERVED:
                logger.info(f"Duplicate delivery of {provider}:{event_id} (outcome={record.status})")
                return Reservation(fresh=False, prior=_to_outcome(record))

            if datetime.utcnow() - record.reserved_at > self._reservation_ttl:
                if await self._take_over(record):
                    logger.warning(f"Took over abandoned reservation for {provider}:{event_id}")
                    return Reservation(fresh=True)

            if loop.time() >= deadline:
                raise ConcurrentModificationError(
                    f"Event {event_id} is still being processed by another delivery",
                    {"provider": provider, "event_id": event_id},
                )
            await asyncio.sleep(self._poll_interval)

    async def commit(self, provider: str, event_id: str, outcome: IdempotencyOutcome) -> None:
        """Finalize a reservation with its terminal outcome."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(IdempotencyRecordModel)
                .where(
                    IdempotencyRecordModel.provider == provider,
                    IdempotencyRecordModel.event_id == event_id,
                    IdempotencyRecordModel.status == RESERVED,
                )
                .values(
                    status=outcome.outcome.value,
                    order_id=outcome.order_id,
                    order_state=outcome.order_state.value if outcome.order_state else None,
                    reason=outcome.reason,
                    completed_at=outcome.recorded_at,
                )
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        if result.rowcount != 1:
            logger.warning(f"No open reservation to commit for {provider}:{event_id}")
        else:
            logger.debug(f"Committed {provider}:{event_id} as {outcome.outcome.value}")

    async def release(self, provider: str, event_id: str) -> None:
        """Drop an unfinished reservation so a redelivery can process the event."""
        async with self._session_factory() as db:
            await db.execute(
                delete(IdempotencyRecordModel).where(
                    IdempotencyRecordModel.provider == provider,
                    IdempotencyRecordModel.event_id == event_id,
                    IdempotencyRecordModel.status == RESERVED,
                )
            )
            await db.commit()
        logger.info(f"Released reservation for {provider}:{event_id}")

    async def get_outcome(self, provider: str, event_id: str) -> Optional[IdempotencyOutcome]:
        record = await self._load(provider, event_id)
        if record is None or record.status == RESERVED:
            return None
        return _to_outcome(record)

    async def reap(self, now: Optional[datetime] = None) -> int:
        """
        Delete terminal records older than the retention window.

        Returns:
            Number of records removed
        """
        cutoff = (now or datetime.utcnow()) - self._retention
        async with self._session_factory() as db:
            result = await db.execute(
                delete(IdempotencyRecordModel).where(
                    IdempotencyRecordModel.status != RESERVED,
                    IdempotencyRecordModel.completed_at < cutoff,
                )
            )
            await db.commit()

        if result.rowcount:
            logger.info(f"Reaped {result.rowcount} idempotency records older than {cutoff.isoformat()}")
        return result.rowcount

    async def _try_insert(
        self,
        provider: str,
        event_id: str,
        event_type: str,
        payload_digest: Optional[str],
    ) -> bool:
        async with self._session_factory() as db:
            db.add(IdempotencyRecordModel(
                provider=provider,
                event_id=event_id,
                event_type=event_type,
                status=RESERVED,
                payload_digest=payload_digest,
                reserved_at=datetime.utcnow(),
            ))
            try:
                await db.commit()
                return True
            except IntegrityError:
                await db.rollback()
                return False

    async def _load(self, provider: str, event_id: str) -> Optional[IdempotencyRecordModel]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(IdempotencyRecordModel).where(
                    IdempotencyRecordModel.provider == provider,
                    IdempotencyRecordModel.event_id == event_id,
                )
            )
            return result.scalar_one_or_none()

    async def _take_over(self, record: IdempotencyRecordModel) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(IdempotencyRecordModel)
                .where(
                    IdempotencyRecordModel.provider == record.provider,
                    IdempotencyRecordModel.event_id == record.event_id,
                    IdempotencyRecordModel.status == RESERVED,
                    IdempotencyRecordModel.reserved_at == record.reserved_at,
                )
                .values(reserved_at=datetime.utcnow())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1
