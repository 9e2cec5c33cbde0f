"""
BottleOps Database Session Management

Async SQLAlchemy engine and session factory.

The variance engine reads the store from many concurrent unit analyses, so
every collaborator opens its own short-lived session from a factory rather
than sharing one AsyncSession across tasks.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import get_settings


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo)
    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=20,
        max_overflow=10,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


settings = get_settings()

engine = create_engine_for_url(settings.database_url, echo=settings.database_echo)

AsyncSessionLocal = build_session_factory(engine)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass
