"""Async database engine/session ownership."""

from __future__ import annotations

from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from tgnotify.models.base import Base
from tgnotify.util.logger import log_db, logger


def _import_all_models() -> None:
    """Import models so SQLAlchemy metadata knows all tables."""
    import tgnotify.models.notification  # noqa: F401
    import tgnotify.models.notification_preference  # noqa: F401
    import tgnotify.models.notification_recipient  # noqa: F401


def _engine_kwargs(url: str, *, pool_size: int, max_overflow: int, echo: bool) -> dict[str, Any]:
    kwargs: dict[str, Any] = {"echo": echo}
    if url.startswith("sqlite"):
        if ":memory:" in url or "mode=memory" in url:
            # One shared connection, otherwise every session sees an empty DB.
            kwargs["poolclass"] = StaticPool
            kwargs["connect_args"] = {"check_same_thread": False}
        return kwargs
    kwargs.update(
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
    )
    return kwargs


class Database:
    """Owns one async engine and its session factory.

    Open it once per process (API lifespan or worker runtime) and close it on
    shutdown; ``async with Database(url) as db`` does both.
    """

    def __init__(
        self,
        url: str,
        *,
        pool_size: int = 10,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        self.url = url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo
        self.engine: AsyncEngine | None = None
        self.session_factory: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: Any) -> Database:
        return cls(
            settings.database_url,
            pool_size=settings.postgres_pool_size,
            max_overflow=settings.postgres_max_overflow,
            echo=settings.sqlalchemy_echo,
        )

    async def open(self, *, ensure_schema: bool = True) -> Database:
        """Create the engine, verify connectivity and optionally create tables."""
        _import_all_models()
        if self.engine is None:
            self.engine = create_async_engine(
                self.url,
                **_engine_kwargs(
                    self.url,
                    pool_size=self._pool_size,
                    max_overflow=self._max_overflow,
                    echo=self._echo,
                ),
            )
            self.session_factory = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False,
            )

        if ensure_schema:
            async with self.engine.begin() as connection:
                await connection.run_sync(Base.metadata.create_all)
            log_db("schema", "notification tables ensured")
        else:
            async with self.engine.connect() as connection:
                await connection.execute(text("SELECT 1"))
        logger.info("Database pool initialized.")
        return self

    async def close(self) -> None:
        """Dispose engine and drop the session factory."""
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database pool closed.")
        self.engine = None
        self.session_factory = None

    def sessions(self) -> async_sessionmaker[AsyncSession]:
        if self.session_factory is None:
            raise RuntimeError("Database is not open.")
        return self.session_factory
