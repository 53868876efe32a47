"""
Pydantic Order Models

Order lifecycle states, immutable cart snapshots and the versioned order
record owned by the order state store. All monetary values are in minor
units (cents).
"""
from datetime import datetime
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, Field, model_validator


class OrderState(str, Enum):
    """Order lifecycle states."""
    DRAFT = "Draft"
    PENDING = "Pending"
    PAID = "Paid"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    PAYMENT_FAILED = "PaymentFailed"
    CANCELLED = "Cancelled"
    REFUNDED = "Refunded"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    OrderState.PAYMENT_FAILED,
    OrderState.CANCELLED,
    OrderState.REFUNDED,
})


class LineItem(BaseModel):
    """Individual product line captured at checkout time."""
    product_id: str
    product_name: str = ""
    quantity: int = Field(gt=0)
    unit_price_cents: int = Field(ge=0)
    available: bool = True

    model_config = {"frozen": True}

    @property
    def line_total_cents(self) -> int:
        return self.quantity * self.unit_price_cents


class CartSnapshot(BaseModel):
    """
    Immutable cart snapshot supplied by the cart service.

    ``total_cents`` is optional; when given it must equal the sum of the
    line totals.
    """
    cart_id: str
    user_id: str
    items: List[LineItem] = Field(default_factory=list)
    currency: str = Field(default="USD", min_length=3, max_length=3)
    total_cents: Optional[int] = None

    model_config = {"frozen": True}

    @property
    def computed_total_cents(self) -> int:
        return sum(item.line_total_cents for item in self.items)


class OrderDraft(BaseModel):
    """What the checkout caller knows about the order it is starting."""
    order_id: Optional[str] = None
    user_id: str


class StateChange(BaseModel):
    """One entry of an order's append-only state history."""
    order_id: str
    sequence: int = Field(ge=1)
    state: OrderState
    event_id: Optional[str] = None
    cause: Optional[str] = None
    occurred_at: datetime


class Order(BaseModel):
    """
    Authoritative order record.

    ``version`` doubles as the sequence number of the latest history entry.
    """
    order_id: str
    user_id: str
    line_items: List[LineItem]
    total_cents: int = Field(gt=0)
    currency: str
    state: OrderState
    version: int = Field(ge=1)
    payment_session_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    history: List[StateChange] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_total(self):
        """Ensure total matches the snapshot line items."""
        expected = sum(item.line_total_cents for item in self.line_items)
        if self.line_items and self.total_cents != expected:
            raise ValueError(f"Order total {self.total_cents} != sum of line items ({expected})")
        return self


class OrderTransition(BaseModel):
    """A committed state change, as handed to the broadcast hub."""
    order_id: str
    user_id: str
    previous_state: Optional[OrderState] = None
    state: OrderState
    sequence: int
    event_id: Optional[str] = None
    cause: Optional[str] = None
    occurred_at: datetime

    def to_event_data(self) -> dict:
        return {
            "order_id": self.order_id,
            "state": self.state.value,
            "previous_state": self.previous_state.value if self.previous_state else None,
            "sequence": self.sequence,
            "event_id": self.event_id,
            "cause": self.cause,
            "occurred_at": self.occurred_at.isoformat(),
        }
