"""
Reconciliation Processor

Turns normalized payment events and admin requests into committed order
transitions.

Webhook path, per delivery:
1. Reserve the (provider, event_id) pair in the idempotency ledger. A
   duplicate returns the recorded outcome without side effects.
2. Resolve the checkout session and order.
3. Read, decide (state_machine.decide), compare-and-swap write. On a
   version conflict re-read and try again, up to max_transition_attempts.
4. Commit the ledger outcome and publish the transition.

Admin transitions take the same write path without the ledger.
"""
import logging
from datetime import datetime
from typing import Optional

from ..config import Settings
from ..exceptions import (
    ConcurrentModificationError,
    InvalidTransitionError,
    OrderNotFoundError,
    SessionExpiredError,
)
from ..models.checkout import CheckoutSession, SessionStatus
from ..models.events import (
    IdempotencyOutcome,
    NormalizedEvent,
    PaymentEventType,
    ProcessingOutcome,
    ProcessingResult,
)
from ..models.orders import Order, OrderState, OrderTransition
from . import state_machine
from .broadcast_service import BroadcastHub
from .checkout_service import CheckoutSessionManager
from .idempotency_ledger import IdempotencyLedger
from .order_store import EventAlreadyApplied, OrderStore, VersionConflict
from .state_machine import Decision, DecisionKind

logger = logging.getLogger(__name__)

# Events that promote an order out of Draft and therefore consume the session
SESSION_CONSUMING_EVENTS = frozenset({
    PaymentEventType.SESSION_COMPLETED,
    PaymentEventType.PAYMENT_SUCCEEDED,
})

_DECISION_OUTCOMES = {
    DecisionKind.APPLY: ProcessingOutcome.APPLIED,
    DecisionKind.IGNORE: ProcessingOutcome.IGNORED,
    DecisionKind.REJECT: ProcessingOutcome.REJECTED,
}


class ReconciliationProcessor:
    """Provider-agnostic order reconciliation."""

    def __init__(
        self,
        order_store: OrderStore,
        ledger: IdempotencyLedger,
        sessions: CheckoutSessionManager,
        hub: BroadcastHub,
        settings: Settings,
    ):
        self._orders = order_store
        self._ledger = ledger
        self._sessions = sessions
        self._hub = hub
        self._max_attempts = max(1, settings.max_transition_attempts)

    # ========================================================================
    # Webhook events
    # ========================================================================

    async def process_event(self, event: NormalizedEvent) -> ProcessingResult:
        """
        Apply one normalized payment event at most once.

        Raises:
            ConcurrentModificationError: retry budget exhausted, or another
                delivery of the same event is still in flight
        """
        if event.event_type == PaymentEventType.UNKNOWN:
            logger.debug(f"Ignoring {event.provider} event {event.event_id} of type {event.raw_type}")
            return ProcessingResult(
                provider=event.provider,
                event_id=event.event_id,
                outcome=ProcessingOutcome.IGNORED,
                reason="unrecognized_event_type",
            )

        reservation = await self._ledger.check_and_reserve(
            event.provider, event.event_id, event.event_type.value, event.payload_digest
        )
        if reservation.duplicate:
            prior = reservation.prior
            return ProcessingResult(
                provider=event.provider,
                event_id=event.event_id,
                outcome=prior.outcome,
                duplicate=True,
                order_id=prior.order_id,
                order_state=prior.order_state,
                reason=prior.reason,
            )

        try:
            result, transition = await self._reconcile(event)
        except Exception:
            await self._ledger.release(event.provider, event.event_id)
            raise

        await self._ledger.commit(event.provider, event.event_id, IdempotencyOutcome(
            outcome=result.outcome,
            order_id=result.order_id,
            order_state=result.order_state,
            reason=result.reason,
            recorded_at=datetime.utcnow(),
        ))

        if transition is not None:
            self._hub.publish(transition)
        return result

    async def _reconcile(self, event: NormalizedEvent):
        def finish(outcome, order: Optional[Order] = None, reason=None, transition=None):
            return ProcessingResult(
                provider=event.provider,
                event_id=event.event_id,
                outcome=outcome,
                order_id=order.order_id if order else None,
                order_state=transition.state if transition else (order.state if order else None),
                sequence=transition.sequence if transition else (order.version if order else None),
                reason=reason,
            ), transition

        if not event.session_id:
            logger.warning(f"Event {event.provider}:{event.event_id} carries no checkout session reference")
            return finish(ProcessingOutcome.REJECTED, reason="missing_session_reference")

        session = await self._sessions.get_session(event.session_id)
        if session is None:
            logger.warning(f"Event {event.provider}:{event.event_id} references unknown session {event.session_id}")
            return finish(ProcessingOutcome.REJECTED, reason="unknown_session")

        if event.event_type in SESSION_CONSUMING_EVENTS and not await self._order_closed(session):
            try:
                await self._sessions.complete_session(session.session_id)
            except SessionExpiredError:
                order = await self._orders.get_order(session.order_id)
                logger.info(
                    f"Late {event.event_type.value} for session {session.session_id} "
                    f"({session.status.value}) ignored"
                )
                return finish(ProcessingOutcome.IGNORED, order, reason="session_expired")

        ledger_key = f"{event.provider}:{event.event_id}"
        for attempt in range(1, self._max_attempts + 1):
            order = await self._orders.get_order(session.order_id)
            if order is None:
                return finish(ProcessingOutcome.REJECTED, reason="unknown_order")

            decision: Decision = state_machine.decide(order, event)
            if not decision.applies:
                self._log_unapplied(event, order, decision)
                return finish(_DECISION_OUTCOMES[decision.kind], order, reason=decision.reason)

            if decision.reason == "amount_mismatch":
                logger.warning(
                    f"Amount mismatch on order {order.order_id}: expected {order.total_cents} "
                    f"{order.currency}, got {event.amount_cents} {event.currency}"
                )

            try:
                transition = await self._orders.apply_transition(
                    order, decision.target, event_id=ledger_key, cause=event.event_type.value
                )
            except VersionConflict:
                logger.info(
                    f"Version conflict on order {order.order_id} "
                    f"(attempt {attempt}/{self._max_attempts})"
                )
                continue
            except EventAlreadyApplied:
                current = await self._orders.get_order(order.order_id)
                return finish(ProcessingOutcome.APPLIED, current, reason="already_applied")

            return finish(ProcessingOutcome.APPLIED, order, reason=decision.reason, transition=transition)

        raise ConcurrentModificationError(
            f"Order {session.order_id} kept changing; gave up after {self._max_attempts} attempts",
            {"order_id": session.order_id, "event_id": event.event_id, "attempts": self._max_attempts},
        )

    async def _order_closed(self, session: CheckoutSession) -> bool:
        """An active session whose order already ended is left unconsumed."""
        if session.status != SessionStatus.CREATED:
            return False
        order = await self._orders.get_order(session.order_id)
        return order is not None and order.state.is_terminal

    @staticmethod
    def _log_unapplied(event: NormalizedEvent, order: Order, decision: Decision) -> None:
        message = (
            f"Event {event.provider}:{event.event_id} ({event.event_type.value}) not applied to "
            f"order {order.order_id} in {order.state.value}: {decision.reason}"
        )
        if decision.kind == DecisionKind.REJECT:
            logger.error(message)
        else:
            logger.info(message)

    # ========================================================================
    # Admin and system transitions
    # ========================================================================

    async def apply_admin_transition(self, order_id: str, target: OrderState) -> OrderTransition:
        """
        Privileged forward move (Processing, Shipped, Delivered) or
        cancellation of an unpaid order. Cancelling also closes the order's
        active checkout session.

        Raises:
            OrderNotFoundError: unknown order
            InvalidTransitionError: target is not the immediate successor
            ConcurrentModificationError: retry budget exhausted
        """
        transition = await self._transition(
            order_id,
            lambda current: state_machine.decide_admin(current, target),
            cause=f"admin:{target.value}",
        )
        if transition.state == OrderState.CANCELLED:
            await self._sessions.cancel_order_sessions(order_id)
        return transition

    async def cancel_abandoned(self, order_id: str, cause: str = "session-expired") -> Optional[OrderTransition]:
        """
        Cancel an order whose checkout was abandoned.

        Orders that already moved past Pending are left alone.
        """
        def choose(current: OrderState) -> OrderState:
            if not state_machine.can_cancel_abandoned(current):
                raise InvalidTransitionError(current.value, OrderState.CANCELLED.value)
            return OrderState.CANCELLED

        try:
            return await self._transition(order_id, choose, cause=cause)
        except InvalidTransitionError as e:
            logger.info(f"Not cancelling order {order_id} ({cause}): already {e.details['current_state']}")
            return None

    async def _transition(self, order_id: str, choose, cause: str) -> OrderTransition:
        for attempt in range(1, self._max_attempts + 1):
            order = await self._orders.get_order(order_id)
            if order is None:
                raise OrderNotFoundError(order_id)

            target = choose(order.state)
            try:
                transition = await self._orders.apply_transition(order, target, cause=cause)
            except VersionConflict:
                logger.info(f"Version conflict on order {order_id} (attempt {attempt}/{self._max_attempts})")
                continue

            self._hub.publish(transition)
            return transition

        raise ConcurrentModificationError(
            f"Order {order_id} kept changing; gave up after {self._max_attempts} attempts",
            {"order_id": order_id, "attempts": self._max_attempts},
        )
