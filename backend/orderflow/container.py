"""
Service Container

Builds and tears down every long-lived component of the backend. One
container per application instance; nothing here is a module-level global,
so tests can run several side by side.
"""
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from .config import Settings
from .db.init_db import create_engine, create_session_factory, initialize_database
from .mocks.cart_service import DemoCartService
from .services.broadcast_service import BroadcastHub, ConnectionRegistry
from .services.checkout_service import CheckoutSessionManager
from .services.collaborators import AuthorizationProvider, CartService, HeaderAuthorizationProvider
from .services.idempotency_ledger import IdempotencyLedger
from .services.order_store import OrderStore
from .services.reconciliation import ReconciliationProcessor
from .services.scheduler import MaintenanceScheduler
from .services.webhook_intake import WebhookIntakeGateway, build_intake_gateway

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    orders: OrderStore
    ledger: IdempotencyLedger
    sessions: CheckoutSessionManager
    registry: ConnectionRegistry
    hub: BroadcastHub
    processor: ReconciliationProcessor
    intake: WebhookIntakeGateway
    carts: CartService
    authorization: AuthorizationProvider
    scheduler: MaintenanceScheduler

    @classmethod
    async def build(
        cls,
        settings: Settings,
        carts: Optional[CartService] = None,
        authorization: Optional[AuthorizationProvider] = None,
    ) -> "ServiceContainer":
        """Create the database schema and wire all services together."""
        engine = create_engine(settings)
        await initialize_database(engine)
        session_factory = create_session_factory(engine)

        orders = OrderStore(session_factory)
        ledger = IdempotencyLedger(session_factory, settings)
        sessions = CheckoutSessionManager(session_factory, orders, settings)
        registry = ConnectionRegistry()
        hub = BroadcastHub(registry, orders, queue_size=settings.subscriber_queue_size)
        processor = ReconciliationProcessor(orders, ledger, sessions, hub, settings)
        sessions.set_abandon_handler(processor.cancel_abandoned)

        container = cls(
            settings=settings,
            engine=engine,
            session_factory=session_factory,
            orders=orders,
            ledger=ledger,
            sessions=sessions,
            registry=registry,
            hub=hub,
            processor=processor,
            intake=build_intake_gateway(settings),
            carts=carts or DemoCartService(),
            authorization=authorization or HeaderAuthorizationProvider(),
            scheduler=MaintenanceScheduler(sessions, ledger, settings),
        )
        logger.info(f"Service container ready (providers: {', '.join(container.intake.providers)})")
        return container

    async def close(self) -> None:
        self.scheduler.shutdown(wait=False)
        await self.hub.close_all()
        await self.engine.dispose()
        logger.info("Service container closed")
