from __future__ import annotations
from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator
from sqlalchemy import JSON, text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from talentvote.config import settings

# JSONB on PostgreSQL, plain JSON elsewhere (tests run on SQLite)
JSONType = JSON().with_variant(JSONB(), "postgresql")

class Base(DeclarativeBase):
    pass

engine = create_async_engine(settings.database_url, future=True, echo=False)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)

async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with SessionLocal() as session:
        yield session

def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    return SessionLocal

@asynccontextmanager
async def unit_of_work(sessions: async_sessionmaker[AsyncSession] | None = None) -> AsyncIterator[AsyncSession]:
    """
    Short-lived atomic unit, independent of any request-scoped session.
    Commits when the block exits cleanly, rolls back on any exception.
    """
    factory = sessions or SessionLocal
    async with factory() as session:
        async with session.begin():
            yield session

async def advisory_xact_lock(session: AsyncSession, key: str) -> None:
    """
    Transaction-scoped lock named by `key`, released at commit or rollback.
    Call it before the reads it protects.
    """
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        await session.execute(text("SELECT pg_advisory_xact_lock(hashtext(:k))"), {"k": key})
    elif dialect == "sqlite":
        # no named locks: take the database write lock instead, which serializes every writer
        await session.execute(text("UPDATE candidacies SET vote_count = vote_count WHERE 0"))
