"""
Pydantic Checkout Session Models

A checkout session is one gateway-facing attempt to collect payment for
a cart snapshot.
"""
from datetime import datetime
from typing import Optional
from enum import Enum
from pydantic import BaseModel, Field


class SessionStatus(str, Enum):
    CREATED = "created"
    COMPLETED = "completed"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class CheckoutSession(BaseModel):
    session_id: str = Field(pattern="^cs_")
    order_id: str
    user_id: str
    cart_digest: str
    amount_cents: int = Field(gt=0)
    currency: str
    status: SessionStatus
    expires_at: datetime
    created_at: datetime
    completed_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return self.status == SessionStatus.CREATED and self.expires_at > now


class SessionToken(BaseModel):
    """Returned to the client; ``client_secret`` goes to the gateway SDK."""
    session_id: str
    client_secret: str
    order_id: str
    amount_cents: int
    currency: str
    expires_at: datetime

    model_config = {
        "json_schema_extra": {
            "example": {
                "session_id": "cs_4f1c2a9b7d3e8f60",
                "client_secret": "cs_4f1c2a9b7d3e8f60_secret_3b9d0c7a51e2",
                "order_id": "ord_8a2e61f0c4b9d713",
                "amount_cents": 4200,
                "currency": "USD",
                "expires_at": "2026-10-17T15:05:00Z"
            }
        }
    }
