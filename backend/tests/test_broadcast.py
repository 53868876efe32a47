"""
Tests for the broadcast hub: replay on subscribe, live fan-out, per-order
deduplication and slow-consumer handling.
"""
import asyncio
from datetime import datetime

import pytest

from orderflow.models.orders import OrderState, OrderTransition
from orderflow.services.broadcast_service import BroadcastHub, Connection, ConnectionRegistry


async def collect(connection, count, timeout=2.0):
    received = []

    async def _read():
        async for transition in connection.events():
            received.append(transition)
            if len(received) == count:
                return

    await asyncio.wait_for(_read(), timeout=timeout)
    return received


async def deliver(container, order_id):
    """Drive a paid order through fulfillment to sequence 6."""
    for target in (OrderState.PROCESSING, OrderState.SHIPPED, OrderState.DELIVERED):
        await container.processor.apply_admin_transition(order_id, target)


def transition(order_id="ord_1", sequence=1, state=OrderState.DRAFT, user_id="user_1"):
    return OrderTransition(
        order_id=order_id,
        user_id=user_id,
        state=state,
        sequence=sequence,
        occurred_at=datetime.utcnow(),
    )


@pytest.mark.asyncio
async def test_subscribe_replays_missed_transitions_then_goes_live(container, checkout, pay):
    token = await checkout()
    second = await checkout(cart_id="cart_2")
    await pay(token)
    await deliver(container, token.order_id)

    connection = await container.hub.subscribe("user_1", "conn_1", last_known_sequence=3)
    replayed = await collect(connection, 3)
    assert [t.sequence for t in replayed] == [4, 5, 6]
    assert [t.state for t in replayed] == [OrderState.PROCESSING, OrderState.SHIPPED, OrderState.DELIVERED]
    assert replayed[0].previous_state == OrderState.PAID

    await pay(second)
    live = await collect(connection, 2)
    assert [(t.order_id, t.sequence) for t in live] == [(second.order_id, 2), (second.order_id, 3)]

    await container.hub.unsubscribe("user_1", "conn_1", connection)


@pytest.mark.asyncio
async def test_live_transitions_reach_every_connection_of_the_user(container, checkout, pay):
    token = await checkout()
    first = await container.hub.subscribe("user_1", "conn_a", last_known_sequence=1)
    second = await container.hub.subscribe("user_1", "conn_b", last_known_sequence=1)
    other_user = await container.hub.subscribe("user_2", "conn_c")

    await pay(token)

    for connection in (first, second):
        received = await collect(connection, 2)
        assert [t.state for t in received] == [OrderState.PENDING, OrderState.PAID]
    assert other_user.queue_size() == 0


@pytest.mark.asyncio
async def test_per_order_cursor(container, checkout, pay):
    first = await checkout()
    second = await checkout(cart_id="cart_2")
    await pay(first)

    connection = await container.hub.subscribe(
        "user_1", "conn_1", last_known_sequence={first.order_id: 2, second.order_id: 1}
    )

    received = await collect(connection, 1)
    assert [(t.order_id, t.sequence) for t in received] == [(first.order_id, 3)]


@pytest.mark.asyncio
async def test_live_delivery_overlapping_replay_is_dropped():
    connection = Connection("user_1", "conn_1", queue_size=10)
    connection.seed([transition(sequence=1), transition(sequence=2)], {})

    connection.offer(transition(sequence=2))
    connection.offer(transition(sequence=3))

    received = await collect(connection, 3)
    assert [t.sequence for t in received] == [1, 2, 3]
    assert connection.queue_size() == 0


@pytest.mark.asyncio
async def test_duplicate_live_delivery_is_dropped():
    connection = Connection("user_1", "conn_1", queue_size=10)
    connection.seed([], {"ord_1": 1})

    connection.offer(transition(sequence=2, state=OrderState.PENDING))
    connection.offer(transition(sequence=2, state=OrderState.PENDING))
    connection.offer(transition(sequence=3, state=OrderState.PAID))

    received = await collect(connection, 2)
    assert [t.sequence for t in received] == [2, 3]
    assert connection.queue_size() == 0


@pytest.mark.asyncio
async def test_gap_in_live_delivery_is_filled_from_history(container, checkout, pay):
    token = await checkout()
    await pay(token)

    connection = Connection("user_1", "conn_1", queue_size=10, store=container.orders)
    connection.seed([], {token.order_id: 1})
    connection.offer(transition(order_id=token.order_id, sequence=3, state=OrderState.PAID))

    received = await collect(connection, 2)
    assert [t.sequence for t in received] == [2, 3]
    assert received[0].state == OrderState.PENDING


@pytest.mark.asyncio
async def test_slow_consumer_is_closed_for_resync(container):
    registry = ConnectionRegistry()
    hub = BroadcastHub(registry, container.orders, queue_size=2)
    connection = await hub.subscribe("user_1", "conn_1")

    delivered = [hub.publish(transition(sequence=n)) for n in (1, 2, 3)]

    assert delivered == [1, 1, 0]
    assert connection.overflowed
    assert connection.closed
    assert registry.count("user_1") == 0

    received = [t async for t in connection.events()]
    assert received == []


@pytest.mark.asyncio
async def test_publish_without_subscribers_is_a_no_op(container):
    assert container.hub.publish(transition(user_id="nobody")) == 0


@pytest.mark.asyncio
async def test_registry_replaces_connection_with_same_id():
    registry = ConnectionRegistry()
    old = Connection("user_1", "conn_1", queue_size=5)
    new = Connection("user_1", "conn_1", queue_size=5)

    await registry.add(old)
    await registry.add(new)

    assert old.closed
    assert registry.snapshot("user_1") == (new,)

    # a stale handle must not evict its replacement
    assert await registry.remove("user_1", "conn_1", old) is None
    assert registry.count() == 1


@pytest.mark.asyncio
async def test_unsubscribe_removes_connection(container):
    connection = await container.hub.subscribe("user_1", "conn_1")
    assert container.registry.count("user_1") == 1

    await container.hub.unsubscribe("user_1", "conn_1", connection)

    assert container.registry.count("user_1") == 0
    assert connection.closed
