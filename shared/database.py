"""
Subscriber database layer for the IndexNotifier service.

This module provides:
- Async engine and session management
- SubscriberRepository, the subscriber lookup used by the dispatcher
"""

import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, List, Optional

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.sql import delete, select

from config.settings import Settings, get_database_url, settings
from shared.models import Base, SubscriptionModel

logger = logging.getLogger(__name__)


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or settings
        self.async_engine: Optional[AsyncEngine] = None
        self.AsyncSessionLocal = None
        self._initialized = False

    def initialize(self):
        """Initialize database connections."""
        if self._initialized:
            return

        self.async_engine = create_async_engine(
            get_database_url(self.config),
            pool_size=self.config.database.pool_size,
            echo=self.config.database.echo,
        )
        self.AsyncSessionLocal = async_sessionmaker(
            self.async_engine, class_=AsyncSession, expire_on_commit=False
        )

        self._initialized = True
        logger.info("Database manager initialized successfully")

    async def create_tables(self):
        """Create all database tables."""
        if not self._initialized:
            self.initialize()

        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created successfully")

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get an asynchronous database session."""
        if not self._initialized:
            self.initialize()

        async with self.AsyncSessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> Dict[str, Any]:
        """Perform database health check."""
        try:
            async with self.get_async_session() as session:
                await session.execute(text("SELECT 1"))
            return {"status": "healthy"}
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return {"status": "unhealthy", "error": str(e)}

    async def close(self):
        """Close database connections."""
        if self.async_engine:
            await self.async_engine.dispose()
        self._initialized = False
        logger.info("Database connections closed")


class SubscriberLookup(ABC):
    """Source of the chats to notify about a package."""

    @abstractmethod
    async def list_subscribers(self, package: str) -> List[int]:
        """Chat ids subscribed to ``package``."""
        pass


class SubscriberRepository(SubscriberLookup):
    """Chats subscribed to package updates."""

    def __init__(self, manager: DatabaseManager):
        self.manager = manager

    async def list_subscribers(self, package: str) -> List[int]:
        """Chat ids subscribed to ``package``, oldest subscription first."""
        try:
            async with self.manager.get_async_session() as session:
                result = await session.execute(
                    select(SubscriptionModel.chat_id)
                    .where(SubscriptionModel.package == package)
                    .order_by(SubscriptionModel.created_at, SubscriptionModel.chat_id)
                )
                return list(result.scalars().all())
        except SQLAlchemyError as e:
            logger.error(f"Error listing subscribers of {package}: {e}")
            raise

    async def subscribe(self, chat_id: int, package: str) -> bool:
        """Subscribe a chat. Returns False if it was already subscribed."""
        try:
            async with self.manager.get_async_session() as session:
                session.add(SubscriptionModel(chat_id=chat_id, package=package))
                await session.flush()
            return True
        except IntegrityError:
            return False

    async def unsubscribe(self, chat_id: int, package: str) -> bool:
        """Unsubscribe a chat. Returns False if it was not subscribed."""
        async with self.manager.get_async_session() as session:
            result = await session.execute(
                delete(SubscriptionModel).where(
                    SubscriptionModel.chat_id == chat_id,
                    SubscriptionModel.package == package,
                )
            )
            return result.rowcount > 0

    async def list_packages(self, chat_id: int) -> List[str]:
        """Packages a chat is subscribed to, alphabetically."""
        async with self.manager.get_async_session() as session:
            result = await session.execute(
                select(SubscriptionModel.package)
                .where(SubscriptionModel.chat_id == chat_id)
                .order_by(SubscriptionModel.package)
            )
            return list(result.scalars().all())
