"""
Gate Discovery Database Sessions

``AsyncSessionLocal`` serves API requests (via ``api.deps.get_db``) on the
process-wide engine. Discovery runs commit per step on whatever session
they are handed, so they do not care which factory produced it.

Celery tasks and the CLI each run under their own ``asyncio.run`` loop,
which cannot reuse the pooled engine's connections; they open a
``standalone_session`` on a private engine that is disposed on exit.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from core.config import get_settings

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def standalone_session(database_url: str) -> AsyncIterator[AsyncSession]:
    """Session on a throwaway engine bound to the current event loop."""
    private_engine = create_async_engine(database_url)
    try:
        factory = async_sessionmaker(private_engine, class_=AsyncSession, expire_on_commit=False)
        async with factory() as session:
            yield session
    finally:
        await private_engine.dispose()


class Base(DeclarativeBase):
    """Declarative base for gate discovery models."""
    pass
