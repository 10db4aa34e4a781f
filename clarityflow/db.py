from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from clarityflow.models import Base


def make_engine(database_url: str) -> AsyncEngine:
  return create_async_engine(database_url, pool_pre_ping=not database_url.startswith("sqlite"))


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
  return async_sessionmaker(engine, expire_on_commit=False)


async def create_tables(engine: AsyncEngine) -> None:
  async with engine.begin() as conn:
    await conn.run_sync(Base.metadata.create_all)
