"""
BottleOps API Dependencies

Dependency injection for DB sessions, the variance engine, and actor context.
"""

from collections.abc import AsyncGenerator
from uuid import UUID

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from db.session import AsyncSessionLocal
from variance.engine import VarianceDetectionEngine
from variance.store import SqlConfigSource, build_organization_detection_engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory the engine's collaborators open their sessions from."""
    return AsyncSessionLocal


async def get_db(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_detection_engine(
    organization_id: UUID,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> VarianceDetectionEngine:
    """Engine for the organization in the path, using its menu-item mapping if any."""
    return await build_organization_detection_engine(session_factory, organization_id)


def get_config_source(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> SqlConfigSource:
    return SqlConfigSource(session_factory)


async def get_actor_id(x_actor_id: str | None = Header(default=None)) -> UUID | None:
    """
    Acting user for audit trails, passed explicitly by the calling layer.
    Authentication happens upstream; absent header means an automated caller.
    """
    if not x_actor_id:
        return None
    try:
        return UUID(x_actor_id)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="X-Actor-Id must be a UUID",
        )
