"""
Database connection management with graceful degradation.

Tier 1 (Critical): SQL database (PostgreSQL or SQLite)
Tier 2 (Optional): Redis

The authority engine keeps all of its state in the SQL database; Redis only
backs the action type catalog cache and may be absent.
"""

from typing import AsyncIterator, Optional
import logging
from contextlib import asynccontextmanager
from pathlib import Path

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

logger = logging.getLogger(__name__)


class DatabaseManager:
    """
    Manages database connections with fallback strategies.

    Degradation Tiers:
    - Tier 1 (Critical): SQL database
      - Without it: System cannot start
    - Tier 2 (Optional): Redis
      - Fallback: in-memory catalog cache per process
    """

    def __init__(self):
        self.sql_available = False
        self.redis_available = False

        # Database clients
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker] = None
        self.redis_pool = None
        self.redis_client = None

    async def initialize(self, database_url: Optional[str] = None):
        """Initialize all database connections and determine availability"""
        from steward.common.config import settings

        self.sql_available = await self._init_sql(database_url or settings.database_url)
        if not self.sql_available:
            db_type = "SQLite" if settings.database_type == "sqlite" else "PostgreSQL"
            raise RuntimeError(
                f"{db_type} is not available. This is a critical dependency. "
                f"Check your configuration and database setup."
            )

        if settings.redis_enabled:
            self.redis_available = await self._init_redis()
            if not self.redis_available:
                logger.warning(
                    "Redis is not available. Action type catalog will be cached in-process only."
                )

        self._log_status()

    async def _init_sql(self, database_url: str) -> bool:
        """Initialize database connection (PostgreSQL or SQLite)"""
        from steward.common.config import settings

        is_sqlite = database_url.startswith("sqlite")
        engine_kwargs = {
            "echo": settings.debug,
        }

        # SQLite和PostgreSQL的配置不同
        if is_sqlite:
            db_file = database_url.split(":///", 1)[-1]
            if db_file and db_file != ":memory:":
                Path(db_file).parent.mkdir(parents=True, exist_ok=True)
        else:
            engine_kwargs.update({
                "pool_size": 10,
                "max_overflow": 20,
                "pool_pre_ping": True,
            })

        try:
            self.engine = create_async_engine(database_url, **engine_kwargs)
            self.session_factory = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            # 测试连接
            async with self.engine.begin() as conn:
                await conn.execute(text("SELECT 1"))

            db_type = "SQLite" if is_sqlite else "PostgreSQL"
            logger.info(f"✓ {db_type} connection established")
            return True
        except Exception as e:
            db_type = "SQLite" if is_sqlite else "PostgreSQL"
            logger.error(f"✗ {db_type} connection failed: {e}")
            return False

    async def _init_redis(self) -> bool:
        """Initialize Redis connection"""
        try:
            import redis.asyncio as redis
            from steward.common.config import settings

            # 创建Redis连接池
            self.redis_pool = redis.ConnectionPool.from_url(
                settings.redis_url,
                max_connections=10,
                decode_responses=True
            )
            self.redis_client = redis.Redis(connection_pool=self.redis_pool)

            # 测试连接
            await self.redis_client.ping()

            logger.info("✓ Redis connection established")
            return True
        except Exception as e:
            logger.error(f"✗ Redis connection failed: {e}")
            self.redis_client = None
            return False

    def _log_status(self):
        """Log current database availability status"""
        status = {
            "SQL": "✓" if self.sql_available else "✗",
            "Redis": "✓" if self.redis_available else "⚠ (in-memory cache only)",
        }

        logger.info("Database availability:")
        for db, state in status.items():
            logger.info(f"  {db}: {state}")

    async def create_tables(self):
        """Create all tables registered on Base.metadata"""
        from steward.common.base import Base
        from steward.common.config import settings

        # 确保模型注册到metadata
        from steward.domains.authority import models  # noqa: F401

        if self.engine is None:
            raise RuntimeError("Database is not initialized")

        async with self.engine.begin() as conn:
            if settings.database_type != "sqlite":
                await conn.execute(text("CREATE SCHEMA IF NOT EXISTS authority"))
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        """Close connection pools"""
        if self.redis_client is not None:
            await self.redis_client.aclose()
            self.redis_client = None
            self.redis_available = False
        if self.engine is not None:
            await self.engine.dispose()
            self.sql_available = False

    @asynccontextmanager
    async def get_session(self) -> AsyncIterator[AsyncSession]:
        """
        Get SQL session

        Usage:
            async with db_manager.get_session() as session:
                result = await session.execute(stmt)
        """
        if not self.sql_available:
            raise RuntimeError("SQL database is not available")

        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def get_redis(self):
        """
        Get Redis client

        Usage:
            redis = await db_manager.get_redis()
            await redis.set("key", "value")
        """
        if not self.redis_available:
            raise RuntimeError("Redis is not available")
        return self.redis_client


# Global database manager instance
db_manager = DatabaseManager()


async def get_db_session() -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a session bound to the global manager"""
    async with db_manager.get_session() as session:
        yield session
