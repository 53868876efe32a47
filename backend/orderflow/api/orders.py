"""
Orders API Endpoints

Order lookup, history and the admin fulfillment transitions.
"""
from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel
from typing import Dict, Any
import logging

from ..container import ServiceContainer
from ..exceptions import OrderNotFoundError
from ..models.orders import OrderState
from ..services.collaborators import require_admin
from .dependencies import get_container

logger = logging.getLogger(__name__)

router = APIRouter()


class StatusUpdateRequest(BaseModel):
    target_state: OrderState


@router.get("/user/{user_id}")
async def list_user_orders_endpoint(
    user_id: str,
    limit: int = Query(10, ge=1, le=100, description="Maximum number of results"),
    offset: int = Query(0, ge=0, description="Pagination offset"),
    container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    """
    Get a user's orders, most recent first.

    Example:
        GET /api/orders/user/user_demo_001?limit=10&offset=0
    """
    orders = await container.orders.list_user_orders(user_id, limit=limit, offset=offset)
    return {
        "user_id": user_id,
        "orders": [order.model_dump(mode="json") for order in orders],
        "count": len(orders),
        "limit": limit,
        "offset": offset,
    }


@router.get("/{order_id}")
async def get_order_endpoint(
    order_id: str,
    container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    order = await container.orders.get_order(order_id)
    if order is None:
        raise OrderNotFoundError(order_id)
    return order.model_dump(mode="json")


@router.get("/{order_id}/history")
async def get_order_history_endpoint(
    order_id: str,
    after_sequence: int = Query(0, ge=0),
    container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    """Committed transitions in sequence order, optionally after a known sequence."""
    order = await container.orders.get_order(order_id)
    if order is None:
        raise OrderNotFoundError(order_id)

    history = await container.orders.get_history(order_id, after_sequence=after_sequence)
    return {
        "order_id": order_id,
        "state": order.state.value,
        "version": order.version,
        "history": [change.model_dump(mode="json") for change in history],
    }


@router.post("/{order_id}/status")
async def update_order_status_endpoint(
    order_id: str,
    body: StatusUpdateRequest,
    request: Request,
    container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    """
    Admin fulfillment move: Paid -> Processing -> Shipped -> Delivered, or
    cancellation of an unpaid order.

    Errors:
        403 orderflow:auth:permission_denied
        404 orderflow:order:not_found
        409 orderflow:order:invalid_transition (details: current_state, attempted_state)
    """
    require_admin(container.authorization.caller_role(request))

    logger.info(f"Admin status update for order {order_id} -> {body.target_state.value}")
    transition = await container.processor.apply_admin_transition(order_id, body.target_state)
    return transition.to_event_data()
