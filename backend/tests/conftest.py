"""
Shared fixtures: a throwaway SQLite database per test and helpers for
building carts, checkout sessions and normalized events.
"""
import uuid
from datetime import datetime

import pytest
import pytest_asyncio

from orderflow.config import Settings
from orderflow.container import ServiceContainer
from orderflow.models.events import NormalizedEvent, PaymentEventType
from orderflow.models.orders import CartSnapshot, LineItem, OrderDraft


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_path=str(tmp_path / "orderflow.db"),
        idempotency_wait_seconds=2.0,
        idempotency_poll_interval_seconds=0.01,
        subscriber_queue_size=100,
        stream_heartbeat_seconds=0.2,
    )


@pytest_asyncio.fixture
async def container(settings):
    container = await ServiceContainer.build(settings)
    yield container
    await container.close()


def _cart(user_id="user_1", cart_id="cart_1", unit_price_cents=2100, quantity=2, currency="USD"):
    return CartSnapshot(
        cart_id=cart_id,
        user_id=user_id,
        currency=currency,
        items=[
            LineItem(
                product_id="prod_mug_001",
                product_name="Ceramic Travel Mug",
                quantity=quantity,
                unit_price_cents=unit_price_cents,
            )
        ],
    )


@pytest.fixture
def make_cart():
    return _cart


@pytest.fixture
def checkout(container):
    """Create a checkout session (4200 USD by default) and return its token."""
    async def _checkout(user_id="user_1", order_id=None, **cart_kwargs):
        cart = _cart(user_id=user_id, **cart_kwargs)
        return await container.sessions.create_session(OrderDraft(order_id=order_id, user_id=user_id), cart)
    return _checkout


@pytest.fixture
def make_event():
    def _make_event(
        event_type,
        session_id,
        amount_cents=4200,
        currency="USD",
        event_id=None,
        provider="stripe",
    ):
        return NormalizedEvent(
            provider=provider,
            event_id=event_id or f"evt_{uuid.uuid4().hex[:12]}",
            event_type=event_type,
            raw_type=event_type.value,
            session_id=session_id,
            amount_cents=amount_cents,
            currency=currency,
            payload_digest="0" * 64,
            received_at=datetime.utcnow(),
        )
    return _make_event


@pytest.fixture
def pay(container, make_event):
    """Drive a session to Paid: session-completed then payment-succeeded."""
    async def _pay(token):
        await container.processor.process_event(
            make_event(PaymentEventType.SESSION_COMPLETED, token.session_id, token.amount_cents)
        )
        return await container.processor.process_event(
            make_event(PaymentEventType.PAYMENT_SUCCEEDED, token.session_id, token.amount_cents)
        )
    return _pay
