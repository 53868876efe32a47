"""
Checkout Session Manager

Creates payment sessions linked to a Draft order and owns the session
lifecycle: created -> completed | expired | cancelled.

Session status changes are compare-and-swap updates guarded by
``status = 'created'``, so a late completion and the expiry sweep can
never both succeed for the same session.
"""
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Awaitable, Callable, List, Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..config import Settings
from ..db.models import CheckoutSessionModel, OrderModel
from ..exceptions import (
    ConcurrentModificationError,
    InvalidCartStateError,
    SessionExpiredError,
    SessionNotFoundError,
)
from ..models.checkout import CheckoutSession, SessionStatus, SessionToken
from ..models.orders import CartSnapshot, OrderDraft, OrderState
from .order_store import OrderStore
from .signature_service import create_canonical_json, sha256_digest

logger = logging.getLogger(__name__)

AbandonHandler = Callable[[str, str], Awaitable[object]]


def cart_digest(cart: CartSnapshot) -> str:
    """Stable SHA-256 of the cart snapshot contents."""
    return sha256_digest(create_canonical_json(cart.model_dump()))


def _to_session(row: CheckoutSessionModel) -> CheckoutSession:
    return CheckoutSession(
        session_id=row.session_id,
        order_id=row.order_id,
        user_id=row.user_id,
        cart_digest=row.cart_digest,
        amount_cents=row.amount_cents,
        currency=row.currency,
        status=SessionStatus(row.status),
        expires_at=row.expires_at,
        created_at=row.created_at,
        completed_at=row.completed_at,
    )


def validate_cart(cart: CartSnapshot) -> int:
    """
    Check the snapshot can be paid for.

    Returns:
        Total in minor units

    Raises:
        InvalidCartStateError: empty cart, unavailable items, or a
            non-positive or inconsistent total
    """
    if not cart.items:
        raise InvalidCartStateError("Cart snapshot has no items", {"cart_id": cart.cart_id})

    unavailable = [item.product_id for item in cart.items if not item.available]
    if unavailable:
        raise InvalidCartStateError(
            "Cart contains unavailable items",
            {"cart_id": cart.cart_id, "unavailable": unavailable},
        )

    total = cart.computed_total_cents
    if cart.total_cents is not None and cart.total_cents != total:
        raise InvalidCartStateError(
            f"Cart total {cart.total_cents} != sum of line items ({total})",
            {"cart_id": cart.cart_id},
        )
    if total <= 0:
        raise InvalidCartStateError(
            "Cart total must be positive",
            {"cart_id": cart.cart_id, "total_cents": total},
        )
    return total


class CheckoutSessionManager:
    """Bridges an immutable cart snapshot to a gateway-agnostic session token."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        order_store: OrderStore,
        settings: Settings,
    ):
        self._session_factory = session_factory
        self._orders = order_store
        self._ttl = timedelta(minutes=settings.checkout_session_ttl_minutes)
        self._abandon_handler: Optional[AbandonHandler] = None

    def set_abandon_handler(self, handler: AbandonHandler) -> None:
        """Called with ``(order_id, cause)`` whenever a session is expired or cancelled."""
        self._abandon_handler = handler

    # ========================================================================
    # Creation
    # ========================================================================

    async def create_session(self, draft: OrderDraft, cart: CartSnapshot) -> SessionToken:
        """
        Create a checkout session (and the Draft order on first use).

        Any other active session for the same order draft is cancelled, so
        at most one is active at a time. The order total is fixed by the
        first session; a later snapshot with a different total is refused.
        """
        total = validate_cart(cart)
        if cart.user_id != draft.user_id:
            raise InvalidCartStateError(
                "Cart snapshot belongs to a different user",
                {"cart_id": cart.cart_id},
            )

        now = datetime.utcnow()
        order_id = draft.order_id or f"ord_{uuid.uuid4().hex[:16]}"
        session_id = f"cs_{uuid.uuid4().hex[:16]}"
        client_secret = f"{session_id}_secret_{secrets.token_hex(12)}"
        expires_at = now + self._ttl
        currency = cart.currency.upper()

        async with self._session_factory() as db:
            result = await db.execute(select(OrderModel).where(OrderModel.order_id == order_id))
            existing = result.scalar_one_or_none()

            if existing:
                self._check_reusable(existing, draft, total, currency)
                cancelled = await db.execute(
                    update(CheckoutSessionModel)
                    .where(
                        CheckoutSessionModel.order_id == order_id,
                        CheckoutSessionModel.status == SessionStatus.CREATED.value,
                    )
                    .values(status=SessionStatus.CANCELLED.value)
                    .execution_options(synchronize_session=False)
                )
                if cancelled.rowcount:
                    logger.info(f"Cancelled {cancelled.rowcount} earlier session(s) for order {order_id}")
                existing.payment_session_id = session_id
            else:
                self._orders.stage_order(
                    db, order_id, draft.user_id, list(cart.items), currency,
                    payment_session_id=session_id,
                )

            db.add(CheckoutSessionModel(
                session_id=session_id,
                order_id=order_id,
                user_id=draft.user_id,
                cart_digest=cart_digest(cart),
                amount_cents=total,
                currency=currency,
                status=SessionStatus.CREATED.value,
                client_secret=client_secret,
                expires_at=expires_at,
                created_at=now,
            ))
            try:
                await db.commit()
            except IntegrityError:
                await db.rollback()
                raise ConcurrentModificationError(
                    f"Order {order_id} was created concurrently",
                    {"order_id": order_id},
                )

        logger.info(
            f"Created checkout session {session_id} for order {order_id}, "
            f"amount={total} {currency}, expires_at={expires_at.isoformat()}"
        )
        return SessionToken(
            session_id=session_id,
            client_secret=client_secret,
            order_id=order_id,
            amount_cents=total,
            currency=currency,
            expires_at=expires_at,
        )

    @staticmethod
    def _check_reusable(existing: OrderModel, draft: OrderDraft, total: int, currency: str) -> None:
        if existing.user_id != draft.user_id:
            raise InvalidCartStateError(
                "Order belongs to a different user",
                {"order_id": existing.order_id},
            )
        if existing.state != OrderState.DRAFT.value:
            raise InvalidCartStateError(
                f"Order is already {existing.state}",
                {"order_id": existing.order_id, "state": existing.state},
            )
        if existing.total_cents != total or existing.currency != currency:
            raise InvalidCartStateError(
                "Order total is fixed once the order exists",
                {
                    "order_id": existing.order_id,
                    "total_cents": existing.total_cents,
                    "snapshot_total_cents": total,
                },
            )

    # ========================================================================
    # Retrieval
    # ========================================================================

    async def get_session(self, session_id: str) -> Optional[CheckoutSession]:
        async with self._session_factory() as db:
            result = await db.execute(
                select(CheckoutSessionModel).where(CheckoutSessionModel.session_id == session_id)
            )
            row = result.scalar_one_or_none()
            return _to_session(row) if row else None

    # ========================================================================
    # Status changes
    # ========================================================================

    async def complete_session(self, session_id: str, now: Optional[datetime] = None) -> CheckoutSession:
        """
        Mark a session completed.

        Idempotent for an already-completed session.

        Raises:
            SessionNotFoundError: unknown session
            SessionExpiredError: session expired, was cancelled, or is past
                its expiry and not yet swept
        """
        now = now or datetime.utcnow()
        async with self._session_factory() as db:
            result = await db.execute(
                update(CheckoutSessionModel)
                .where(
                    CheckoutSessionModel.session_id == session_id,
                    CheckoutSessionModel.status == SessionStatus.CREATED.value,
                    CheckoutSessionModel.expires_at > now,
                )
                .values(status=SessionStatus.COMPLETED.value, completed_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()

        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if session.status != SessionStatus.COMPLETED:
            raise SessionExpiredError(
                f"Checkout session {session_id} can no longer be completed",
                {"session_id": session_id, "status": session.status.value},
            )
        if result.rowcount:
            logger.info(f"Completed checkout session {session_id}")
        return session

    async def cancel_session(self, session_id: str) -> CheckoutSession:
        """
        Customer abandons checkout; the linked Draft order is cancelled.

        Raises:
            SessionNotFoundError: unknown session
            SessionExpiredError: session is no longer active
        """
        changed = await self._finish(session_id, SessionStatus.CANCELLED)
        session = await self.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        if not changed:
            raise SessionExpiredError(
                f"Checkout session {session_id} is no longer active",
                {"session_id": session_id, "status": session.status.value},
            )

        logger.info(f"Cancelled checkout session {session_id}")
        await self._notify_abandoned(session.order_id, "session-cancelled")
        return session

    async def expire_stale_sessions(self, now: Optional[datetime] = None) -> List[CheckoutSession]:
        """
        Periodic sweep: unconsumed sessions past expiry become ``expired``.

        This is the only path that abandons an order draft without a
        terminal payment event; each expired session's order is cancelled.
        Orders left in Draft behind a session expired by an earlier sweep
        (their cancellation failed) are cancelled again first.

        Returns:
            Sessions expired by this sweep
        """
        now = now or datetime.utcnow()
        for session_id, order_id in await self._stranded_drafts():
            logger.info(f"Retrying cancellation of order {order_id} behind expired session {session_id}")
            await self._notify_abandoned(order_id, "session-expired")

        async with self._session_factory() as db:
            result = await db.execute(
                select(CheckoutSessionModel.session_id).where(
                    CheckoutSessionModel.status == SessionStatus.CREATED.value,
                    CheckoutSessionModel.expires_at <= now,
                )
            )
            candidates = list(result.scalars().all())

        expired = []
        for session_id in candidates:
            if await self._finish(session_id, SessionStatus.EXPIRED):
                session = await self.get_session(session_id)
                expired.append(session)
                await self._notify_abandoned(session.order_id, "session-expired")

        if expired:
            logger.info(f"Expired {len(expired)} stale checkout sessions")
        return expired

    async def cancel_order_sessions(self, order_id: str) -> int:
        """Cancel every active session of an order; the order itself is not touched."""
        async with self._session_factory() as db:
            result = await db.execute(
                update(CheckoutSessionModel)
                .where(
                    CheckoutSessionModel.order_id == order_id,
                    CheckoutSessionModel.status == SessionStatus.CREATED.value,
                )
                .values(status=SessionStatus.CANCELLED.value)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
        if result.rowcount:
            logger.info(f"Cancelled {result.rowcount} active session(s) of order {order_id}")
        return result.rowcount

    async def _stranded_drafts(self) -> List[Tuple[str, str]]:
        """(session_id, order_id) of expired current sessions whose order is still Draft."""
        async with self._session_factory() as db:
            result = await db.execute(
                select(CheckoutSessionModel.session_id, CheckoutSessionModel.order_id)
                .join(OrderModel, OrderModel.order_id == CheckoutSessionModel.order_id)
                .where(
                    CheckoutSessionModel.status == SessionStatus.EXPIRED.value,
                    OrderModel.payment_session_id == CheckoutSessionModel.session_id,
                    OrderModel.state == OrderState.DRAFT.value,
                )
            )
            return [(row.session_id, row.order_id) for row in result.all()]

    async def _finish(self, session_id: str, status: SessionStatus) -> bool:
        async with self._session_factory() as db:
            result = await db.execute(
                update(CheckoutSessionModel)
                .where(
                    CheckoutSessionModel.session_id == session_id,
                    CheckoutSessionModel.status == SessionStatus.CREATED.value,
                )
                .values(status=status.value)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            return result.rowcount == 1

    async def _notify_abandoned(self, order_id: str, cause: str) -> None:
        if self._abandon_handler is None:
            return
        try:
            await self._abandon_handler(order_id, cause)
        except Exception as e:
            logger.error(f"Failed to cancel abandoned order {order_id}: {e}", exc_info=True)
