"""
Database package for Orderflow.

Exports engine setup and ORM models.
"""
from .init_db import initialize_database, create_engine, create_session_factory
from .models import (
    Base,
    OrderModel,
    OrderHistoryModel,
    CheckoutSessionModel,
    IdempotencyRecordModel,
)

__all__ = [
    "initialize_database",
    "create_engine",
    "create_session_factory",
    "Base",
    "OrderModel",
    "OrderHistoryModel",
    "CheckoutSessionModel",
    "IdempotencyRecordModel",
]
