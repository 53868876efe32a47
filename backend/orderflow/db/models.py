"""
SQLAlchemy ORM Models for Orderflow

Orders carry an integer ``version`` used for compare-and-swap writes;
history is append-only and keyed by (order_id, sequence).
"""
from datetime import datetime
from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Text, CheckConstraint,
    UniqueConstraint, Index,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class OrderModel(Base):
    """
    ORM model for orders table.

    ``line_items`` is an immutable JSON snapshot taken at checkout.
    """
    __tablename__ = "orders"

    order_id = Column(String, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    line_items = Column(Text, nullable=False)  # JSON blob
    total_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    state = Column(String, nullable=False, index=True)
    version = Column(Integer, nullable=False, default=1)
    payment_session_id = Column(String, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        CheckConstraint("total_cents > 0", name="order_total_positive"),
        CheckConstraint(
            "state IN ('Draft', 'Pending', 'Paid', 'Processing', 'Shipped', 'Delivered', "
            "'PaymentFailed', 'Cancelled', 'Refunded')",
            name="order_state_check",
        ),
    )


class OrderHistoryModel(Base):
    """
    ORM model for order_history table.

    One row per committed transition. ``event_id`` is unique when present so
    a gateway event can never be applied to order state twice.
    """
    __tablename__ = "order_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("orders.order_id"), nullable=False)
    sequence = Column(Integer, nullable=False)
    state = Column(String, nullable=False)
    event_id = Column(String, unique=True)
    cause = Column(String)
    occurred_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint("order_id", "sequence", name="uq_order_history_sequence"),
        Index("idx_order_history_order", "order_id", "sequence"),
    )


class CheckoutSessionModel(Base):
    """ORM model for checkout_sessions table."""
    __tablename__ = "checkout_sessions"

    session_id = Column(String, primary_key=True)
    order_id = Column(String, ForeignKey("orders.order_id"), nullable=False, index=True)
    user_id = Column(String, nullable=False, index=True)
    cart_digest = Column(String, nullable=False)
    amount_cents = Column(Integer, nullable=False)
    currency = Column(String, nullable=False, default="USD")
    status = Column(String, nullable=False, default="created", index=True)
    client_secret = Column(String, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime)

    __table_args__ = (
        CheckConstraint(
            "status IN ('created', 'completed', 'expired', 'cancelled')",
            name="session_status_check",
        ),
    )


class IdempotencyRecordModel(Base):
    """
    ORM model for idempotency_records table.

    The composite primary key is the atomic reservation point: the first
    insert wins, every later insert for the same event fails.
    """
    __tablename__ = "idempotency_records"

    provider = Column(String, primary_key=True)
    event_id = Column(String, primary_key=True)
    event_type = Column(String, nullable=False)
    status = Column(String, nullable=False, default="reserved", index=True)
    order_id = Column(String)
    order_state = Column(String)
    reason = Column(String)
    payload_digest = Column(String)
    reserved_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    completed_at = Column(DateTime, index=True)

    __table_args__ = (
        CheckConstraint(
            "status IN ('reserved', 'applied', 'ignored', 'rejected')",
            name="idempotency_status_check",
        ),
    )
