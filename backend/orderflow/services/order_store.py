"""
Order State Store

Durable, versioned order records with an append-only state history.

Every write is a compare-and-swap on ``orders.version``: the UPDATE only
matches the row if nobody else committed since the caller read it. The
matching history row is inserted in the same database transaction, so the
history sequence always equals the order version.
"""
import json
import logging
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..db.models import OrderModel, OrderHistoryModel
from ..models.orders import LineItem, Order, OrderState, OrderTransition, StateChange

logger = logging.getLogger(__name__)


class VersionConflict(Exception):
    """The order changed between read and write."""

    def __init__(self, order_id: str, expected_version: int):
        self.order_id = order_id
        self.expected_version = expected_version
        super().__init__(f"Order {order_id} is no longer at version {expected_version}")


class EventAlreadyApplied(Exception):
    """A history row already records this gateway event."""

    def __init__(self, event_id: str):
        self.event_id = event_id
        super().__init__(f"Event {event_id} already applied")


def _to_order(row: OrderModel, history: Optional[List[StateChange]] = None) -> Order:
    return Order(
        order_id=row.order_id,
        user_id=row.user_id,
        line_items=[LineItem(**item) for item in json.loads(row.line_items)],
        total_cents=row.total_cents,
        currency=row.currency,
        state=OrderState(row.state),
        version=row.version,
        payment_session_id=row.payment_session_id,
        created_at=row.created_at,
        updated_at=row.updated_at,
        history=history or [],
    )


def _to_change(row: OrderHistoryModel) -> StateChange:
    return StateChange(
        order_id=row.order_id,
        sequence=row.sequence,
        state=OrderState(row.state),
        event_id=row.event_id,
        cause=row.cause,
        occurred_at=row.occurred_at,
    )


class OrderStore:
    """
    Exclusive owner of order state.

    Callers compute the next state elsewhere and hand it to
    ``apply_transition``; the store only enforces the version check.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    # ========================================================================
    # Creation
    # ========================================================================

    def stage_order(
        self,
        db: AsyncSession,
        order_id: str,
        user_id: str,
        line_items: List[LineItem],
        currency: str,
        payment_session_id: Optional[str] = None,
    ) -> OrderModel:
        """
        Add a new Draft order (version 1) and its first history entry to
        ``db`` without committing, so checkout can create the order and its
        session atomically.
        """
        now = datetime.utcnow()
        total_cents = sum(item.line_total_cents for item in line_items)

        row = OrderModel(
            order_id=order_id,
            user_id=user_id,
            line_items=json.dumps([item.model_dump() for item in line_items]),
            total_cents=total_cents,
            currency=currency.upper(),
            state=OrderState.DRAFT.value,
            version=1,
            payment_session_id=payment_session_id,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        db.add(OrderHistoryModel(
            order_id=order_id,
            sequence=1,
            state=OrderState.DRAFT.value,
            cause="checkout-created",
            occurred_at=now,
        ))
        return row

    async def create_order(
        self,
        order_id: str,
        user_id: str,
        line_items: List[LineItem],
        currency: str = "USD",
    ) -> Order:
        async with self._session_factory() as db:
            row = self.stage_order(db, order_id, user_id, line_items, currency)
            await db.commit()
            logger.info(f"Created order {order_id} for user {user_id}, total={row.total_cents}")
            return _to_order(row)

    # ========================================================================
    # Retrieval
    # ========================================================================

    async def get_order(self, order_id: str, with_history: bool = False) -> Optional[Order]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderModel).where(OrderModel.order_id == order_id)
            )
            row = result.scalar_one_or_none()
            if not row:
                return None

            history = None
            if with_history:
                history = await self._load_history(db, order_id)
            return _to_order(row, history)

    async def get_history(self, order_id: str, after_sequence: int = 0) -> List[StateChange]:
        """History entries with sequence greater than ``after_sequence``, in order."""
        async with self._session_factory() as db:
            return await self._load_history(db, order_id, after_sequence)

    async def _load_history(
        self, db: AsyncSession, order_id: str, after_sequence: int = 0
    ) -> List[StateChange]:
        result = await db.execute(
            select(OrderHistoryModel)
            .where(
                OrderHistoryModel.order_id == order_id,
                OrderHistoryModel.sequence > after_sequence,
            )
            .order_by(OrderHistoryModel.sequence.asc())
        )
        return [_to_change(row) for row in result.scalars().all()]

    async def list_user_orders(
        self,
        user_id: str,
        limit: int = 10,
        offset: int = 0
    ) -> List[Order]:
        """Orders for a user, most recent first."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderModel)
                .where(OrderModel.user_id == user_id)
                .order_by(OrderModel.created_at.desc())
                .limit(limit)
                .offset(offset)
            )
            return [_to_order(row) for row in result.scalars().all()]

    async def history_for_user(
        self,
        user_id: str,
        after: Union[int, Mapping[str, int]] = 0,
    ) -> List[OrderTransition]:
        """
        Every committed transition of the user's orders newer than ``after``.

        ``after`` is either one sequence number applied to every order or a
        per-order mapping; orders missing from the mapping replay in full.
        Results are ordered per order by sequence, orders interleaved by
        commit time.
        """
        async with self._session_factory() as db:
            result = await db.execute(
                select(OrderHistoryModel)
                .join(OrderModel, OrderModel.order_id == OrderHistoryModel.order_id)
                .where(OrderModel.user_id == user_id)
                .order_by(OrderHistoryModel.id.asc())
            )
            rows = result.scalars().all()

        previous: Dict[str, OrderState] = {}
        transitions: List[OrderTransition] = []
        for row in rows:
            state = OrderState(row.state)
            threshold = after.get(row.order_id, 0) if isinstance(after, Mapping) else after
            if row.sequence > threshold:
                transitions.append(OrderTransition(
                    order_id=row.order_id,
                    user_id=user_id,
                    previous_state=previous.get(row.order_id),
                    state=state,
                    sequence=row.sequence,
                    event_id=row.event_id,
                    cause=row.cause,
                    occurred_at=row.occurred_at,
                ))
            previous[row.order_id] = state
        return transitions

    # ========================================================================
    # Transitions
    # ========================================================================

    async def apply_transition(
        self,
        order: Order,
        new_state: OrderState,
        event_id: Optional[str] = None,
        cause: Optional[str] = None,
    ) -> OrderTransition:
        """
        Move ``order`` to ``new_state`` if it is still at ``order.version``.

        Raises:
            VersionConflict: someone else committed first
            EventAlreadyApplied: ``event_id`` is already in the history
        """
        now = datetime.utcnow()
        new_version = order.version + 1

        async with self._session_factory() as db:
            result = await db.execute(
                update(OrderModel)
                .where(
                    OrderModel.order_id == order.order_id,
                    OrderModel.version == order.version,
                )
                .values(state=new_state.value, version=new_version, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await db.rollback()
                raise VersionConflict(order.order_id, order.version)

            db.add(OrderHistoryModel(
                order_id=order.order_id,
                sequence=new_version,
                state=new_state.value,
                event_id=event_id,
                cause=cause,
                occurred_at=now,
            ))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                if event_id:
                    raise EventAlreadyApplied(event_id)
                raise VersionConflict(order.order_id, order.version)

        logger.info(
            f"Order {order.order_id}: {order.state.value} -> {new_state.value} "
            f"(sequence={new_version}, event={event_id}, cause={cause})"
        )
        return OrderTransition(
            order_id=order.order_id,
            user_id=order.user_id,
            previous_state=order.state,
            state=new_state,
            sequence=new_version,
            event_id=event_id,
            cause=cause,
            occurred_at=now,
        )
