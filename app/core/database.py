from typing import Dict, Iterable
import logging

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from app.core.config import settings

logger = logging.getLogger(__name__)

# Create async engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DEBUG,
    poolclass=NullPool,  # Use NullPool for serverless/container environments
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)

# Create Base class for models
Base = declarative_base()


# Dependency to get DB session
async def get_db() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_tables(bind: AsyncEngine = engine) -> None:
    """Create every mapped table that does not exist yet"""
    # Models register themselves on Base when imported
    import app.models  # noqa: F401

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


class SchemaCapabilities:
    """Which optional tables exist, probed once at startup.

    Features that depend on a missing table soft-disable instead of failing;
    the caller is expected to log through ``SchemaWarning`` so a missing table
    produces at most one warning per interval.
    """

    def __init__(self, tables: Iterable[str] = ()):
        self.tables = set(tables)

    def has(self, table: str) -> bool:
        return table in self.tables

    def snapshot(self) -> Dict[str, bool]:
        return {name: name in self.tables for name in sorted(Base.metadata.tables)}

    @classmethod
    def everything(cls) -> "SchemaCapabilities":
        import app.models  # noqa: F401

        return cls(Base.metadata.tables.keys())

    @classmethod
    async def probe(cls, bind: AsyncEngine = engine) -> "SchemaCapabilities":
        try:
            async with bind.connect() as conn:
                names = await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
        except Exception as e:
            logger.error(f"Schema probe failed, realtime features disabled: {e}")
            return cls()

        capabilities = cls(names)
        missing = [name for name, present in capabilities.snapshot().items() if not present]
        if missing:
            logger.warning(f"Schema probe: missing tables {missing}; dependent features are disabled")
        else:
            logger.info("Schema probe: all tables present")
        return capabilities
