"""SQLAlchemy (async) usage store.

Works with any async driver SQLAlchemy supports; SQLite via aiosqlite in
tests, PostgreSQL via asyncpg in deployments. Times are stored as epoch
seconds to stay independent of driver timezone handling.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import Column, Float, Integer, String, delete, func, select, text, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.adapters.usage_store.base import AbstractUsageStore
from app.core.errors import DurableStoreError
from app.schemas.usage import UsageRecord, UsageStatistics

logger = logging.getLogger(__name__)

Base = declarative_base()


class IPUsageLimit(Base):
    __tablename__ = "ip_usage_limits"

    ip_address = Column(String(64), primary_key=True)
    usage_count = Column(Integer, nullable=False, default=0)
    window_start = Column(Float, nullable=False)
    reset_at = Column(Float, nullable=False, index=True)
    last_used_at = Column(Float, nullable=True)
    created_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)

    def to_record(self) -> UsageRecord:
        return UsageRecord(
            ip_address=self.ip_address,
            count=self.usage_count,
            window_start=self.window_start,
            reset_at=self.reset_at,
            last_used_at=self.last_used_at,
        )


class SQLAlchemyUsageStore(AbstractUsageStore):
    """Usage records in the ``ip_usage_limits`` table."""

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine
        self._sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    @classmethod
    def from_url(cls, url: str, **engine_kwargs) -> "SQLAlchemyUsageStore":
        return cls(create_async_engine(url, **engine_kwargs))

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    async def create_schema(self) -> None:
        """Create the table if missing (deployments may run migrations instead)."""
        async with self._guard("create_schema"):
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def _guard(self, op: str) -> AsyncIterator[None]:
        try:
            yield
        except SQLAlchemyError as exc:
            logger.error(
                "usage_store.error",
                extra={"op": op, "error_type": type(exc).__name__, "error_msg": str(exc)},
            )
            raise DurableStoreError(
                code="DATABASE_ERROR",
                message=f"Usage store operation '{op}' failed",
            ) from exc

    async def get(self, ip: str) -> UsageRecord | None:
        async with self._guard("get"):
            async with self._sessions() as session:
                row = await session.get(IPUsageLimit, ip)
                return row.to_record() if row is not None else None

    async def increment(
        self,
        ip: str,
        *,
        max_usage: int,
        window_seconds: int,
        now: float,
    ) -> UsageRecord | None:
        async with self._guard("increment"):
            try:
                return await self._increment_once(ip, max_usage, window_seconds, now)
            except IntegrityError:
                # Lost the insert race for a new IP; the row exists now
                return await self._increment_once(ip, max_usage, window_seconds, now)

    async def _increment_once(
        self,
        ip: str,
        max_usage: int,
        window_seconds: int,
        now: float,
    ) -> UsageRecord | None:
        async with self._sessions() as session:
            async with session.begin():
                renewed = await session.execute(
                    update(IPUsageLimit)
                    .where(IPUsageLimit.ip_address == ip, IPUsageLimit.reset_at <= now)
                    .values(
                        usage_count=1,
                        window_start=now,
                        reset_at=now + window_seconds,
                        last_used_at=now,
                        updated_at=now,
                    )
                )
                if renewed.rowcount == 0:
                    bumped = await session.execute(
                        update(IPUsageLimit)
                        .where(
                            IPUsageLimit.ip_address == ip,
                            IPUsageLimit.reset_at > now,
                            IPUsageLimit.usage_count < max_usage,
                        )
                        .values(
                            usage_count=IPUsageLimit.usage_count + 1,
                            last_used_at=now,
                            updated_at=now,
                        )
                    )
                    if bumped.rowcount == 0:
                        existing = await session.get(IPUsageLimit, ip)
                        if existing is not None:
                            return None
                        session.add(
                            IPUsageLimit(
                                ip_address=ip,
                                usage_count=1,
                                window_start=now,
                                reset_at=now + window_seconds,
                                last_used_at=now,
                                created_at=now,
                                updated_at=now,
                            )
                        )
                        await session.flush()
                row = await session.get(IPUsageLimit, ip, populate_existing=True)
                return row.to_record() if row is not None else None

    async def decrement(self, ip: str, *, now: float) -> UsageRecord | None:
        async with self._guard("decrement"):
            async with self._sessions() as session:
                async with session.begin():
                    await session.execute(
                        update(IPUsageLimit)
                        .where(IPUsageLimit.ip_address == ip, IPUsageLimit.usage_count > 0)
                        .values(usage_count=IPUsageLimit.usage_count - 1, updated_at=now)
                    )
                    row = await session.get(IPUsageLimit, ip, populate_existing=True)
                    return row.to_record() if row is not None else None

    async def delete(self, ip: str) -> bool:
        async with self._guard("delete"):
            async with self._sessions() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(IPUsageLimit).where(IPUsageLimit.ip_address == ip)
                    )
                    return result.rowcount > 0

    async def cleanup_expired(self, *, now: float) -> int:
        async with self._guard("cleanup_expired"):
            async with self._sessions() as session:
                async with session.begin():
                    result = await session.execute(
                        delete(IPUsageLimit).where(IPUsageLimit.reset_at <= now)
                    )
                    return int(result.rowcount or 0)

    async def statistics(self, *, max_usage: int, now: float) -> UsageStatistics:
        active = IPUsageLimit.reset_at > now
        async with self._guard("statistics"):
            async with self._sessions() as session:
                totals = (
                    await session.execute(
                        select(
                            func.count(),
                            func.avg(IPUsageLimit.usage_count),
                            func.max(IPUsageLimit.usage_count),
                        ).select_from(IPUsageLimit)
                    )
                ).one()
                active_users = await session.scalar(
                    select(func.count()).select_from(IPUsageLimit).where(active)
                )
                limit_reached = await session.scalar(
                    select(func.count())
                    .select_from(IPUsageLimit)
                    .where(active, IPUsageLimit.usage_count >= max_usage)
                )
        total, average, highest = totals
        return UsageStatistics(
            total_users=int(total or 0),
            active_users=int(active_users or 0),
            limit_reached_users=int(limit_reached or 0),
            average_usage=round(float(average or 0.0), 2),
            max_usage_reached=int(highest or 0),
        )

    async def ping(self) -> bool:
        try:
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as exc:
            logger.warning("usage_store.ping_failed", extra={"error_msg": str(exc)})
            return False

    async def close(self) -> None:
        await self._engine.dispose()
