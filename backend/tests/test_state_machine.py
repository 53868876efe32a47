"""
Tests for the order state machine decision table.
"""
from datetime import datetime

import pytest

from orderflow.exceptions import AmountMismatchError, InvalidTransitionError
from orderflow.models.events import PaymentEventType
from orderflow.models.orders import LineItem, Order, OrderState
from orderflow.services import state_machine
from orderflow.services.state_machine import DecisionKind


def make_order(state=OrderState.PENDING, total_cents=4200, currency="USD"):
    now = datetime.utcnow()
    return Order(
        order_id="ord_test",
        user_id="user_1",
        line_items=[LineItem(product_id="p1", quantity=1, unit_price_cents=total_cents)],
        total_cents=total_cents,
        currency=currency,
        state=state,
        version=2,
        created_at=now,
        updated_at=now,
    )


def test_matching_payment_moves_pending_to_paid(make_event):
    decision = state_machine.decide(make_order(), make_event(PaymentEventType.PAYMENT_SUCCEEDED, "cs_1", 4200))
    assert decision.applies
    assert decision.target == OrderState.PAID


def test_amount_mismatch_routes_to_payment_failed(make_event):
    decision = state_machine.decide(make_order(), make_event(PaymentEventType.PAYMENT_SUCCEEDED, "cs_1", 4199))
    assert decision.applies
    assert decision.target == OrderState.PAYMENT_FAILED
    assert decision.reason == "amount_mismatch"


def test_currency_mismatch_routes_to_payment_failed(make_event):
    event = make_event(PaymentEventType.PAYMENT_SUCCEEDED, "cs_1", 4200, currency="EUR")
    assert state_machine.decide(make_order(), event).target == OrderState.PAYMENT_FAILED


def test_verify_amount_reports_expected_and_received(make_event):
    with pytest.raises(AmountMismatchError) as exc_info:
        state_machine.verify_amount(make_order(), make_event(PaymentEventType.PAYMENT_SUCCEEDED, "cs_1", 4199))
    assert exc_info.value.details["expected_cents"] == 4200
    assert exc_info.value.details["received_cents"] == 4199


def test_session_completed_moves_draft_to_pending(make_event):
    decision = state_machine.decide(
        make_order(OrderState.DRAFT), make_event(PaymentEventType.SESSION_COMPLETED, "cs_1")
    )
    assert decision.target == OrderState.PENDING


@pytest.mark.parametrize("state", [OrderState.DRAFT, OrderState.PENDING])
def test_refund_before_payment_is_ignored(make_event, state):
    decision = state_machine.decide(make_order(state), make_event(PaymentEventType.PAYMENT_REFUNDED, "cs_1"))
    assert decision.kind == DecisionKind.IGNORE
    assert decision.reason == "nothing_to_refund"


def test_refund_after_delivery_is_rejected(make_event):
    decision = state_machine.decide(
        make_order(OrderState.DELIVERED), make_event(PaymentEventType.PAYMENT_REFUNDED, "cs_1")
    )
    assert decision.kind == DecisionKind.REJECT


@pytest.mark.parametrize("state", [OrderState.PAID, OrderState.PROCESSING, OrderState.SHIPPED])
def test_refund_of_paid_order(make_event, state):
    decision = state_machine.decide(make_order(state), make_event(PaymentEventType.PAYMENT_REFUNDED, "cs_1"))
    assert decision.target == OrderState.REFUNDED


@pytest.mark.parametrize("state", [OrderState.PAYMENT_FAILED, OrderState.CANCELLED, OrderState.REFUNDED])
def test_terminal_states_ignore_everything(make_event, state):
    for event_type in PaymentEventType:
        decision = state_machine.decide(make_order(state), make_event(event_type, "cs_1"))
        assert not decision.applies


def test_unknown_event_type_is_ignored(make_event):
    decision = state_machine.decide(make_order(), make_event(PaymentEventType.UNKNOWN, "cs_1"))
    assert decision.kind == DecisionKind.IGNORE


def test_payment_after_paid_is_ignored(make_event):
    decision = state_machine.decide(
        make_order(OrderState.PAID), make_event(PaymentEventType.PAYMENT_SUCCEEDED, "cs_1")
    )
    assert decision.kind == DecisionKind.IGNORE


def test_every_applied_payment_transition_moves_forward():
    for (current, _), decision in state_machine.PAYMENT_TRANSITIONS.items():
        if decision.applies:
            assert state_machine.is_forward(current, decision.target), (current, decision.target)


def test_admin_moves_only_to_immediate_successor():
    assert state_machine.decide_admin(OrderState.PAID, OrderState.PROCESSING) == OrderState.PROCESSING
    assert state_machine.decide_admin(OrderState.SHIPPED, OrderState.DELIVERED) == OrderState.DELIVERED

    with pytest.raises(InvalidTransitionError) as exc_info:
        state_machine.decide_admin(OrderState.PAID, OrderState.DELIVERED)
    assert exc_info.value.details == {"current_state": "Paid", "attempted_state": "Delivered"}


def test_admin_cannot_move_backward():
    with pytest.raises(InvalidTransitionError):
        state_machine.decide_admin(OrderState.SHIPPED, OrderState.PROCESSING)


def test_admin_cancel_only_before_payment():
    assert state_machine.decide_admin(OrderState.PENDING, OrderState.CANCELLED) == OrderState.CANCELLED
    with pytest.raises(InvalidTransitionError):
        state_machine.decide_admin(OrderState.PAID, OrderState.CANCELLED)
