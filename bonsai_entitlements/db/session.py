"""Async SQLAlchemy engine and session lifecycle for the entitlement store."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from bonsai_entitlements.config import DatabaseSettings, EngineSettings, get_settings
from bonsai_entitlements.db.base import Base
from bonsai_entitlements.logging import logger
from bonsai_entitlements.utils.store import bounded


def engine_options(db_cfg: DatabaseSettings) -> dict[str, Any]:
    """Pool and driver options for the configured backend.

    The statement timeout is also handed to the driver so a stuck query is
    cut off server-side, not just abandoned by ``asyncio.wait_for``.
    """

    backend = make_url(db_cfg.dsn).get_backend_name()
    timeout = db_cfg.statement_timeout_seconds
    options: dict[str, Any] = {"echo": db_cfg.echo}
    if backend == "sqlite":
        return options

    options.update(
        pool_size=db_cfg.pool_size,
        max_overflow=db_cfg.max_overflow,
        pool_recycle=db_cfg.pool_recycle,
        pool_pre_ping=db_cfg.pool_pre_ping,
        pool_timeout=timeout,
    )
    if backend == "mysql":
        options["connect_args"] = {
            "connect_timeout": max(1, int(timeout)),
            "init_command": f"SET SESSION max_execution_time={int(timeout * 1000)}",
        }
    elif backend == "postgresql":
        options["connect_args"] = {
            "timeout": timeout,
            "server_settings": {"statement_timeout": str(int(timeout * 1000))},
        }
    return options


class Database:
    """Lazily created engine plus the session factory handed to requests."""

    def __init__(self, settings: EngineSettings | None = None) -> None:
        self.settings = settings or get_settings()
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = create_async_engine(
                self.settings.database.dsn, **engine_options(self.settings.database)
            )
            self._session_factory = async_sessionmaker(
                bind=self._engine,
                expire_on_commit=False,
                autoflush=False,
            )
            logger.info("db_engine_initialized", dialect=self._engine.dialect.name)
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        if self._session_factory is None:
            _ = self.engine
        assert self._session_factory is not None
        return self._session_factory

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """One unit of work; anything not committed is rolled back on exit."""

        async with self.session_factory() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> None:
        async def _select_one() -> None:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

        await bounded(
            _select_one(),
            timeout=self.settings.database.statement_timeout_seconds,
            store="database",
        )

    async def create_all(self) -> None:
        """Create missing tables; deployments normally run migrations instead."""

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


__all__ = ["Database", "engine_options"]
