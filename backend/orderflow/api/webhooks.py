"""
Webhook API Endpoints

Single entry point for payment gateway callbacks. The raw body is passed
through untouched because signatures are computed over the exact bytes.

Status codes tell the gateway whether to redeliver:
- 2xx: accepted, including duplicates and events we ignore
- 400: signature or payload invalid (redelivery will not help)
- 409: transient contention, redeliver later
"""
from fastapi import APIRouter, Depends, Request
from typing import Dict, Any
import logging

from ..container import ServiceContainer
from .dependencies import get_container

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{provider}")
async def receive_webhook_endpoint(
    provider: str,
    request: Request,
    container: ServiceContainer = Depends(get_container)
) -> Dict[str, Any]:
    """
    Verify, normalize and reconcile one gateway delivery.

    Path Parameters:
        provider: "stripe" or "paypal"

    Returns:
        {"received": true, "outcome": "applied" | "ignored" | "rejected",
         "duplicate": bool, "order_id": str | null, "order_state": str | null, ...}
    """
    raw_payload = await request.body()

    event = container.intake.ingest(provider, raw_payload, request.headers)
    result = await container.processor.process_event(event)

    if result.duplicate:
        logger.info(f"Duplicate delivery {provider}:{event.event_id} acknowledged")

    return {"received": True, **result.model_dump(mode="json")}
