"""
Gate Discovery API Dependencies

Dependency injection for DB sessions, event lookup, and the event lock.
"""

from collections.abc import AsyncGenerator
from uuid import UUID

from fastapi import Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import get_settings
from db.models import Event
from db.session import AsyncSessionLocal
from discovery.locks import EventLockRegistry, RedisEventLocks, event_locks


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def get_event(event_id: UUID, db: AsyncSession = Depends(get_db)) -> Event:
    """Resolve the path's event or 404."""
    event = await db.get(Event, event_id)
    if event is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Event not found")
    return event


def get_event_locks() -> EventLockRegistry | RedisEventLocks:
    """Event lock shared with workers and the CLI (Redis unless configured otherwise)."""
    return event_locks(get_settings())
