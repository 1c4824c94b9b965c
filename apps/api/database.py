"""
Async SQLAlchemy engine construction, session factory, and declarative base.

The engine is built once by the application lifespan and stored on
``app.state``; request handlers receive sessions through ``get_db``.
"""

from typing import AsyncIterator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from config import settings

Base = declarative_base()


def async_database_url(url: str) -> str:
    """Map sync driver URLs onto their async drivers."""
    if url.startswith("postgresql://"):
        return "postgresql+asyncpg://" + url[len("postgresql://"):]
    if url.startswith("sqlite:///"):
        return "sqlite+aiosqlite:///" + url[len("sqlite:///"):]
    return url


def build_engine(url: Optional[str] = None) -> AsyncEngine:
    resolved = async_database_url(url or settings.DATABASE_URL)
    if resolved.startswith("sqlite"):
        return create_async_engine(resolved)
    return create_async_engine(resolved, pool_pre_ping=True)


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """FastAPI dependency yielding a request-scoped database session."""
    session_maker = getattr(request.app.state, "session_maker", None)
    if session_maker is None:
        raise RuntimeError("Database is not initialised; the application lifespan has not run.")
    async with session_maker() as session:
        yield session
