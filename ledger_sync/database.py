"""
ledger_sync/database.py
Async database engine and session factory for the vote store
"""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ledger_sync.orm.base import Base
import ledger_sync.orm  # ensures all models are registered

logger = logging.getLogger(__name__)


def create_engine_for(database_url: str) -> AsyncEngine:
    """
    Build the async engine.

    SQLite and PostgreSQL need different pool settings.
    """
    if "sqlite" in database_url.lower():
        return create_async_engine(
            database_url,
            echo=False,
            future=True,
            pool_pre_ping=True,
            connect_args={
                "timeout": 30.0,   # SQLite busy timeout in seconds
            }
        )
    return create_async_engine(
        database_url,
        echo=False,
        future=True,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=5,
        pool_timeout=30,
        pool_recycle=3600,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


class Database:
    """
    Owns the single engine shared by the subscriber, ingester and reconciler.
    """

    def __init__(self, database_url: str):
        self.database_url = database_url
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker] = None

    def connect(self) -> async_sessionmaker:
        if self.engine is None:
            self.engine = create_engine_for(self.database_url)
            self.session_factory = create_session_factory(self.engine)
            logger.info(f"Database engine created ({self.engine.url.get_backend_name()})")
        return self.session_factory

    async def init_db(self, create_tables: bool = True) -> None:
        """
        Initialize database:
        1. Create the engine
        2. Create missing tables when allowed
        """
        logger.info("Initializing database...")
        self.connect()
        try:
            if create_tables:
                async with self.engine.begin() as conn:
                    await conn.run_sync(Base.metadata.create_all)
            logger.info("✓ Database initialization complete")
        except Exception as e:
            logger.error(f"Database initialization failed: {str(e)}")
            raise

    async def close_db(self) -> None:
        """Close database connection"""
        if self.engine is not None:
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None
            logger.info("Database connection closed")

