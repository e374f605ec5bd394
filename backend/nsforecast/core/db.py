import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


class Database:
    """Owns one async engine and its session factory."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self.session_factory = async_sessionmaker(engine, expire_on_commit=False)

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        async with self.session_factory() as session:
            yield session

    async def create_tables(self) -> None:
        # Tables live on Base.metadata once the ORM modules are imported.
        import nsforecast.models.observation  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def check_health(self) -> dict:
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return {"ok": True, "driver": self.engine.driver}
        except Exception as e:
            logger.error(f"DB Health Check Failed: {e}")
            return {"ok": False, "error": str(e)}

    async def dispose(self) -> None:
        await self.engine.dispose()


def init_db(url: str) -> Database:
    safe_url = url.split("@")[-1] if "@" in url else url
    logger.info(f"Connecting to database: {safe_url}")
    engine = create_async_engine(url, echo=False, pool_pre_ping=True)
    return Database(engine)


__all__ = ["Base", "Database", "init_db"]
