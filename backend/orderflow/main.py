"""
Orderflow Backend - FastAPI Application

Order lifecycle and payment reconciliation service: checkout sessions,
gateway webhooks, order state and a live transition stream.
"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from typing import Optional
import logging

from .config import Settings, settings as default_settings
from .container import ServiceContainer
from .exceptions import OrderflowError
from .api.checkout import router as checkout_router
from .api.orders import router as orders_router
from .api.stream import router as stream_router
from .api.webhooks import router as webhooks_router

logger = logging.getLogger(__name__)

VERSION = "0.1.0"


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the application; each call gets its own service container."""
    settings = settings or default_settings

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        Application lifespan manager.

        Handles startup and shutdown events:
        - Startup: Create tables, wire services, start maintenance jobs
        - Shutdown: Stop jobs, close live streams, dispose the engine
        """
        logger.info("Starting Orderflow backend server...")
        logger.info(f"Demo mode: {settings.demo_mode}")

        try:
            container = await ServiceContainer.build(settings)
        except Exception as e:
            logger.error(f"Failed to initialize services: {e}")
            raise
        app.state.container = container

        try:
            container.scheduler.start()
        except Exception as e:
            logger.error(f"Failed to start scheduler: {e}")
            if not settings.demo_mode:
                raise
            logger.warning("Continuing without scheduler in demo mode")

        logger.info("Server startup complete")

        yield

        logger.info("Shutting down Orderflow backend server...")
        try:
            await container.close()
        except Exception as e:
            logger.error(f"Error during shutdown: {e}")

    app = FastAPI(
        title="Orderflow API",
        description="Order lifecycle and payment reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["*"],
    )

    @app.exception_handler(OrderflowError)
    async def orderflow_error_handler(request: Request, exc: OrderflowError):
        """
        Handle domain errors with the standard response format.

        The status code comes from the exception class; the body from
        OrderflowError.to_dict().
        """
        logger.warning(
            f"Orderflow error: {exc.error_code} - {exc.message}",
            extra={"details": exc.details}
        )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(ValueError)
    async def value_error_handler(request: Request, exc: ValueError):
        """Input validation failures not caught by Pydantic."""
        logger.warning(f"Validation error: {str(exc)}")
        return JSONResponse(
            status_code=400,
            content={
                "error_code": "validation_error",
                "message": str(exc),
                "details": {}
            }
        )

    @app.exception_handler(Exception)
    async def general_error_handler(request: Request, exc: Exception):
        """
        Catch-all handler for unexpected errors.

        Logs full exception for debugging but returns generic message to client.
        """
        logger.error(f"Unexpected error: {str(exc)}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={
                "error_code": "internal_error",
                "message": "An unexpected error occurred",
                "details": {"error_type": type(exc).__name__} if settings.demo_mode else {}
            }
        )

    @app.get("/api/health")
    async def health_check():
        """Health check endpoint for monitoring and load balancers."""
        container = getattr(app.state, "container", None)
        return {
            "status": "healthy",
            "version": VERSION,
            "demo_mode": settings.demo_mode,
            "providers": container.intake.providers if container else [],
            "live_connections": container.registry.count() if container else 0,
            "scheduler_running": container.scheduler.running if container else False,
        }

    # Stream router first: /api/orders/stream must not match /api/orders/{order_id}
    app.include_router(stream_router, prefix="/api/orders", tags=["Stream"])
    app.include_router(orders_router, prefix="/api/orders", tags=["Orders"])
    app.include_router(checkout_router, prefix="/api/checkout", tags=["Checkout"])
    app.include_router(webhooks_router, prefix="/api/webhooks", tags=["Webhooks"])

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "orderflow.main:app",
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.demo_mode,
        log_level=default_settings.log_level.lower()
    )
