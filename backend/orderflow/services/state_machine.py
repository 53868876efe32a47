"""
Order State Machine

Pure decision logic. Given an order's current state and a normalized
payment event, decide whether to move the order, ignore the event or
reject it. Nothing here touches the database.

Lifecycle:
    Draft -> Pending -> Paid -> Processing -> Shipped -> Delivered
Terminal alternates:
    PaymentFailed, Cancelled, Refunded
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from ..exceptions import AmountMismatchError, InvalidTransitionError
from ..models.events import NormalizedEvent, PaymentEventType
from ..models.orders import Order, OrderState


class DecisionKind(str, Enum):
    APPLY = "apply"
    IGNORE = "ignore"
    REJECT = "reject"


@dataclass(frozen=True)
class Decision:
    kind: DecisionKind
    target: Optional[OrderState] = None
    reason: Optional[str] = None

    @property
    def applies(self) -> bool:
        return self.kind == DecisionKind.APPLY


def move_to(target: OrderState) -> Decision:
    return Decision(DecisionKind.APPLY, target)


def ignore(reason: str) -> Decision:
    return Decision(DecisionKind.IGNORE, reason=reason)


def reject(reason: str) -> Decision:
    return Decision(DecisionKind.REJECT, reason=reason)


S = OrderState
E = PaymentEventType

# current state x event type -> decision. Pairs not listed are ignored.
PAYMENT_TRANSITIONS: Dict[Tuple[OrderState, PaymentEventType], Decision] = {
    # Session completed: lighter-weight step ahead of settlement
    (S.DRAFT, E.SESSION_COMPLETED): move_to(S.PENDING),

    # Settlement; some gateways never send a separate session-completed
    (S.DRAFT, E.PAYMENT_SUCCEEDED): move_to(S.PAID),
    (S.PENDING, E.PAYMENT_SUCCEEDED): move_to(S.PAID),

    (S.DRAFT, E.PAYMENT_FAILED): move_to(S.PAYMENT_FAILED),
    (S.PENDING, E.PAYMENT_FAILED): move_to(S.PAYMENT_FAILED),

    (S.DRAFT, E.PAYMENT_CANCELED): move_to(S.CANCELLED),
    (S.PENDING, E.PAYMENT_CANCELED): move_to(S.CANCELLED),

    (S.PAID, E.PAYMENT_REFUNDED): move_to(S.REFUNDED),
    (S.PROCESSING, E.PAYMENT_REFUNDED): move_to(S.REFUNDED),
    (S.SHIPPED, E.PAYMENT_REFUNDED): move_to(S.REFUNDED),
    (S.DELIVERED, E.PAYMENT_REFUNDED): reject("refund_after_delivery"),
    (S.DRAFT, E.PAYMENT_REFUNDED): ignore("nothing_to_refund"),
    (S.PENDING, E.PAYMENT_REFUNDED): ignore("nothing_to_refund"),
}

# Privileged forward moves: current state -> the only allowed next state
ADMIN_SUCCESSORS: Dict[OrderState, OrderState] = {
    S.PAID: S.PROCESSING,
    S.PROCESSING: S.SHIPPED,
    S.SHIPPED: S.DELIVERED,
}

# Admins may also abandon an order that has not been paid yet
ADMIN_CANCELLABLE = frozenset({S.DRAFT, S.PENDING})

# Happy-path rank; used to check that history never moves backward
LIFECYCLE_RANK: Dict[OrderState, int] = {
    S.DRAFT: 0,
    S.PENDING: 1,
    S.PAID: 2,
    S.PROCESSING: 3,
    S.SHIPPED: 4,
    S.DELIVERED: 5,
}


def verify_amount(order: Order, event: NormalizedEvent) -> None:
    """Raise AmountMismatchError unless amount and currency equal the order total."""
    if (
        event.amount_cents is None
        or event.currency is None
        or event.amount_cents != order.total_cents
        or event.currency.upper() != order.currency.upper()
    ):
        raise AmountMismatchError(
            f"Payment of {event.amount_cents} {event.currency} does not match order total "
            f"{order.total_cents} {order.currency}",
            {
                "order_id": order.order_id,
                "expected_cents": order.total_cents,
                "expected_currency": order.currency,
                "received_cents": event.amount_cents,
                "received_currency": event.currency,
            },
        )


def decide(order: Order, event: NormalizedEvent) -> Decision:
    """
    Decide what a payment event does to an order.

    A payment-succeeded event whose amount or currency differs from the
    order total routes the order to PaymentFailed instead of Paid.
    """
    if event.event_type == E.UNKNOWN:
        return ignore("unrecognized_event_type")

    if order.state.is_terminal:
        return ignore(f"order_terminal:{order.state.value}")

    decision = PAYMENT_TRANSITIONS.get((order.state, event.event_type))
    if decision is None:
        return ignore(f"no_transition:{order.state.value}:{event.event_type.value}")

    if decision.target == S.PAID:
        try:
            verify_amount(order, event)
        except AmountMismatchError:
            return Decision(DecisionKind.APPLY, S.PAYMENT_FAILED, reason="amount_mismatch")

    return decision


def decide_admin(current: OrderState, target: OrderState) -> OrderState:
    """
    Validate a privileged status update.

    Only the immediate successor (or cancellation of an unpaid order) is
    allowed; anything else raises InvalidTransitionError.
    """
    if target == S.CANCELLED and current in ADMIN_CANCELLABLE:
        return target
    if ADMIN_SUCCESSORS.get(current) == target:
        return target
    raise InvalidTransitionError(current.value, target.value)


def can_cancel_abandoned(current: OrderState) -> bool:
    return current in ADMIN_CANCELLABLE


def is_forward(previous: OrderState, nxt: OrderState) -> bool:
    """True if ``nxt`` does not move backward along the lifecycle chain."""
    if nxt.is_terminal:
        return not previous.is_terminal
    if previous not in LIFECYCLE_RANK or nxt not in LIFECYCLE_RANK:
        return False
    return LIFECYCLE_RANK[nxt] > LIFECYCLE_RANK[previous]
