"""
Shared FastAPI dependencies.
"""
from fastapi import Request

from ..container import ServiceContainer


def get_container(request: Request) -> ServiceContainer:
    """The service container built by the application lifespan."""
    return request.app.state.container
