"""
Tests for the order state store's optimistic concurrency.
"""
import pytest

from orderflow.models.orders import LineItem, OrderState
from orderflow.services.order_store import EventAlreadyApplied, VersionConflict


async def new_order(container, order_id="ord_1", user_id="user_1"):
    return await container.orders.create_order(
        order_id, user_id, [LineItem(product_id="p1", quantity=2, unit_price_cents=2100)]
    )


@pytest.mark.asyncio
async def test_create_order_starts_at_draft_version_1(container):
    order = await new_order(container)
    assert order.state == OrderState.DRAFT
    assert order.version == 1
    assert order.total_cents == 4200


@pytest.mark.asyncio
async def test_stale_version_is_refused(container):
    order = await new_order(container)
    await container.orders.apply_transition(order, OrderState.PENDING)

    with pytest.raises(VersionConflict):
        await container.orders.apply_transition(order, OrderState.CANCELLED)

    current = await container.orders.get_order("ord_1", with_history=True)
    assert current.state == OrderState.PENDING
    assert [c.sequence for c in current.history] == [1, 2]


@pytest.mark.asyncio
async def test_event_id_is_recorded_once(container):
    order = await new_order(container)
    await container.orders.apply_transition(order, OrderState.PENDING, event_id="stripe:evt_1")
    current = await container.orders.get_order("ord_1")

    with pytest.raises(EventAlreadyApplied):
        await container.orders.apply_transition(current, OrderState.PAID, event_id="stripe:evt_1")

    assert (await container.orders.get_order("ord_1")).version == 2


@pytest.mark.asyncio
async def test_history_for_user_honours_per_order_cursor(container):
    first = await new_order(container, "ord_1")
    await new_order(container, "ord_2")
    await container.orders.apply_transition(first, OrderState.PENDING)

    transitions = await container.orders.history_for_user("user_1", after={"ord_1": 1})

    assert [(t.order_id, t.sequence) for t in transitions] == [("ord_2", 1), ("ord_1", 2)]
    assert transitions[1].previous_state == OrderState.DRAFT


@pytest.mark.asyncio
async def test_history_for_user_is_scoped_to_user(container):
    await new_order(container, "ord_1", "user_1")
    await new_order(container, "ord_2", "user_2")

    transitions = await container.orders.history_for_user("user_2")

    assert [t.order_id for t in transitions] == ["ord_2"]
