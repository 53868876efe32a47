"""
External Collaborator Contracts

Interfaces this service consumes but does not own: the cart service that
supplies immutable snapshots at checkout, and the authorization layer that
tells us the caller's role for admin transitions.
"""
import logging
from typing import Optional, Protocol

from fastapi import Request

from ..exceptions import PermissionDeniedError
from ..models.orders import CartSnapshot

logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"


class CartService(Protocol):
    async def get_snapshot(self, cart_id: str, user_id: str) -> CartSnapshot:
        """Return the immutable snapshot of ``cart_id``; raise InvalidCartStateError if unusable."""
        ...


class AuthorizationProvider(Protocol):
    def caller_role(self, request: Request) -> Optional[str]:
        ...


class HeaderAuthorizationProvider:
    """
    Reads the role asserted by an upstream gateway.

    Assumes an authenticating proxy in front of the service sets (and
    strips client-supplied copies of) the header.
    """

    def __init__(self, header_name: str = "X-Caller-Role"):
        self.header_name = header_name

    def caller_role(self, request: Request) -> Optional[str]:
        return request.headers.get(self.header_name)


def require_admin(role: Optional[str]) -> None:
    if role != ADMIN_ROLE:
        logger.warning(f"Admin operation refused for role {role!r}")
        raise PermissionDeniedError(
            "Admin role required for order status updates",
            {"role": role},
        )
