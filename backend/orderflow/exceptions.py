"""
Orderflow Exception Hierarchy

Stable error codes shared by the API layer and the reconciliation core.
All errors use an ``orderflow:`` prefix.
"""
from typing import Optional, Dict, Any


class OrderflowError(Exception):
    """
    Base exception for all order lifecycle errors.

    Carries a machine-readable error code, a human message, structured
    details and the HTTP status the API layer should answer with.
    """

    status_code: int = 400

    def __init__(
        self,
        error_code: str,
        message: str,
        details: Optional[Dict[str, Any]] = None
    ):
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to API error response format."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details
        }


class InvalidCartStateError(OrderflowError):
    """
    Cart snapshot cannot be checked out.

    Examples:
    - Snapshot has no line items
    - Total is zero or negative
    - A line item is no longer available
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("orderflow:checkout:invalid_cart_state", message, details)


class SignatureInvalidError(OrderflowError):
    """
    Webhook authenticity check failed.

    The delivery is discarded and never applied.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("orderflow:webhook:signature_invalid", message, details)


class AmountMismatchError(OrderflowError):
    """
    Payment amount or currency differs from the order total.

    A business outcome: the order is routed to PaymentFailed instead of Paid.
    """

    status_code = 422

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("orderflow:payment:amount_mismatch", message, details)


class InvalidTransitionError(OrderflowError):
    """
    Requested state change is not allowed from the current state.

    Details always carry ``current_state`` and ``attempted_state``.
    """

    status_code = 409

    def __init__(self, current_state: str, attempted_state: str, message: Optional[str] = None):
        super().__init__(
            "orderflow:order:invalid_transition",
            message or f"Cannot move order from {current_state} to {attempted_state}",
            {"current_state": current_state, "attempted_state": attempted_state},
        )


class ConcurrentModificationError(OrderflowError):
    """
    Optimistic write kept losing the race.

    Transient: callers (or the gateway, via redelivery) should retry.
    """

    status_code = 409

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("orderflow:order:concurrent_modification", message, details)


class SessionExpiredError(OrderflowError):
    """Checkout session is past its expiry or no longer active."""

    status_code = 410

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("orderflow:checkout:session_expired", message, details)


class OrderNotFoundError(OrderflowError):
    status_code = 404

    def __init__(self, order_id: str):
        super().__init__(
            "orderflow:order:not_found",
            f"No order found with ID: {order_id}",
            {"order_id": order_id},
        )


class SessionNotFoundError(OrderflowError):
    status_code = 404

    def __init__(self, session_id: str):
        super().__init__(
            "orderflow:checkout:session_not_found",
            f"No checkout session found with ID: {session_id}",
            {"session_id": session_id},
        )


class PermissionDeniedError(OrderflowError):
    """Caller role is not allowed to perform the operation."""

    status_code = 403

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("orderflow:auth:permission_denied", message, details)
