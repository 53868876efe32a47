"""
Checkout API Endpoints

Creates checkout sessions from cart snapshots and lets a customer abandon
one. Session completion is driven by gateway webhooks, not by this router.
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from typing import Dict, Any, Optional
import logging

from ..container import ServiceContainer
from ..exceptions import SessionNotFoundError
from ..models.orders import OrderDraft
from .dependencies import get_container

logger = logging.getLogger(__name__)

router = APIRouter()


class CreateSessionRequest(BaseModel):
    user_id: str = Field(min_length=1)
    cart_id: str = Field(min_length=1)
    order_id: Optional[str] = Field(None, description="Existing Draft order to retry payment for")


@router.post("/sessions", status_code=201)
async def create_checkout_session_endpoint(
    body: CreateSessionRequest,
    container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    """
    Create a checkout session for a cart.

    Request Body:
        {"user_id": str, "cart_id": str, "order_id": str | null}

    Returns:
        {session_id, client_secret, order_id, amount_cents, currency, expires_at}

    Errors:
        400 orderflow:checkout:invalid_cart_state
        409 orderflow:order:concurrent_modification
    """
    logger.info(f"Checkout requested by user {body.user_id} for cart {body.cart_id}")

    cart = await container.carts.get_snapshot(body.cart_id, body.user_id)
    token = await container.sessions.create_session(
        OrderDraft(order_id=body.order_id, user_id=body.user_id),
        cart,
    )
    return token.model_dump(mode="json")


@router.get("/sessions/{session_id}")
async def get_checkout_session_endpoint(
    session_id: str,
    container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    session = await container.sessions.get_session(session_id)
    if session is None:
        raise SessionNotFoundError(session_id)
    return session.model_dump(mode="json")


@router.post("/sessions/{session_id}/cancel")
async def cancel_checkout_session_endpoint(
    session_id: str,
    container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    """Customer abandons checkout; the Draft order behind it is cancelled."""
    session = await container.sessions.cancel_session(session_id)
    order = await container.orders.get_order(session.order_id)
    return {
        "session": session.model_dump(mode="json"),
        "order_state": order.state.value if order else None,
    }
