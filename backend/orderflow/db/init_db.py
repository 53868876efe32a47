"""
Database Initialization

Creates the async engine, the session factory and the Orderflow tables:
orders, order_history, checkout_sessions, idempotency_records.
"""
import logging
from pathlib import Path

from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker

from ..config import Settings
from .models import Base

logger = logging.getLogger(__name__)


def _set_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    """
    Enable WAL mode on every new connection.

    WAL lets readers proceed while a single writer commits; the busy
    timeout makes competing writers wait instead of failing immediately.
    """
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")  # 30 second timeout
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.close()


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured SQLite file."""
    db_path = Path(settings.database_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{db_path}",
        echo=False,
        connect_args={
            "timeout": 30,  # 30 second timeout for lock acquisition
            "check_same_thread": False
        },
        pool_pre_ping=True,
    )
    event.listen(engine.sync_engine, "connect", _set_sqlite_pragmas)
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def initialize_database(engine: AsyncEngine) -> None:
    """
    Create all tables if they don't exist.

    Called during FastAPI startup and by the test fixtures.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database initialized at {engine.url.database}")
