import asyncio
import logging
from typing import Optional
from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

logger = logging.getLogger("storefront.db")

Base = declarative_base()

class Database:
    """
    Owns the async engine for the durable store.

    The engine is created lazily by :meth:`connect` so the availability
    monitor can retry a failed first connection and rebuild the pool
    after :meth:`dispose`.
    """

    def __init__(self, url: str, echo: bool = False, connect_timeout: float = 10.0):
        self.url = url
        self.echo = echo
        self.connect_timeout = connect_timeout
        self.engine: Optional[AsyncEngine] = None
        self._sessions: Optional[async_sessionmaker[AsyncSession]] = None

    @property
    def host(self) -> Optional[str]:
        return make_url(self.url).host

    async def connect(self) -> None:
        if self.engine is None:
            self.engine = create_async_engine(
                self.url,
                echo=self.echo,
                pool_pre_ping=True,
            )
            self._sessions = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
            )

        async def _create_schema() -> None:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

        await asyncio.wait_for(_create_schema(), timeout=self.connect_timeout)
        logger.info("[DB] Connected to %s", self.host or self.url)

    async def ping(self) -> None:
        if self.engine is None:
            raise ConnectionError("Database engine is not initialized")

        async def _select_one() -> None:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        await asyncio.wait_for(_select_one(), timeout=self.connect_timeout)

    async def dispose(self) -> None:
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("[DB] Engine disposed")
        self.engine = None
        self._sessions = None

    def session(self) -> AsyncSession:
        if self._sessions is None:
            raise ConnectionError("Database engine is not initialized")
        return self._sessions()
