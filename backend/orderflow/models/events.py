"""
Pydantic Payment Event Models

The gateway-agnostic event shape every provider normalizer produces, and
the processing outcomes recorded in the idempotency ledger.
"""
from datetime import datetime
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field

from .orders import OrderState


class PaymentEventType(str, Enum):
    """Internal payment event types."""
    SESSION_COMPLETED = "payment-session-completed"
    PAYMENT_SUCCEEDED = "payment-succeeded"
    PAYMENT_FAILED = "payment-failed"
    PAYMENT_REFUNDED = "payment-refunded"
    PAYMENT_CANCELED = "payment-canceled"
    UNKNOWN = "unknown"


class NormalizedEvent(BaseModel):
    """
    Provider-independent payment event.

    ``(provider, event_id)`` is the idempotency key.
    """
    provider: str
    event_id: str = Field(min_length=1)
    event_type: PaymentEventType
    raw_type: str
    session_id: Optional[str] = None
    amount_cents: Optional[int] = None
    currency: Optional[str] = None
    payload_digest: str
    received_at: datetime

    model_config = {
        "json_schema_extra": {
            "example": {
                "provider": "stripe",
                "event_id": "evt_1Nq2xY",
                "event_type": "payment-succeeded",
                "raw_type": "payment_intent.succeeded",
                "session_id": "cs_4f1c2a9b7d3e8f60",
                "amount_cents": 4200,
                "currency": "USD",
                "payload_digest": "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08",
                "received_at": "2026-10-17T14:35:00Z"
            }
        }
    }


class ProcessingOutcome(str, Enum):
    """Terminal outcome recorded for a gateway event."""
    APPLIED = "applied"
    IGNORED = "ignored"
    REJECTED = "rejected"


class IdempotencyOutcome(BaseModel):
    """What happened the first (and only effective) time an event was seen."""
    outcome: ProcessingOutcome
    order_id: Optional[str] = None
    order_state: Optional[OrderState] = None
    reason: Optional[str] = None
    recorded_at: datetime


class ProcessingResult(BaseModel):
    """Returned to the webhook endpoint for every delivery."""
    provider: str
    event_id: str
    outcome: ProcessingOutcome
    duplicate: bool = False
    order_id: Optional[str] = None
    order_state: Optional[OrderState] = None
    sequence: Optional[int] = None
    reason: Optional[str] = None
