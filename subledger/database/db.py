"""
Database Access

Async SQLAlchemy engine and session factory for the ledger store, plus the
transaction scope every state transition runs in.

Usage:
    from subledger.database.db import async_db_session, transaction

    async with transaction(async_db_session) as db:
        account = await db.get(Account, account_id)
"""

import logging

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from subledger.billing.shared.exceptions import PersistenceError
from subledger.common.model import Base
from subledger.core.conf import settings
from subledger.utils.timezone import timezone

logger = logging.getLogger(__name__)


def create_async_engine_and_session(
    url: str, echo: bool = False
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    """
    Create an async engine and its session factory.

    Args:
        url: SQLAlchemy async database URL
        echo: Log emitted SQL

    Returns:
        Tuple of (engine, session factory)
    """
    engine = create_async_engine(url, echo=echo, future=True)
    db_session = async_sessionmaker(bind=engine, class_=AsyncSession, autoflush=False, expire_on_commit=False)
    return engine, db_session


async_engine, async_db_session = create_async_engine_and_session(settings.DATABASE_URL, settings.DATABASE_ECHO)


@asynccontextmanager
async def transaction(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session inside a single database transaction.

    Commits when the block exits normally and rolls back on any exception.
    Driver and constraint failures surface as a retryable PersistenceError;
    billing errors raised inside the block propagate unchanged after rollback.

    Args:
        session_factory: Session factory bound to the ledger store
    """
    async with session_factory() as session:
        try:
            async with session.begin():
                yield session
        except SQLAlchemyError as e:
            logger.error(f'[DB] Transaction rolled back: {e}', exc_info=True)
            raise PersistenceError(f'Ledger transaction failed: {type(e).__name__}') from e


async def next_created_at(db: AsyncSession, column, account_column, account_id: str, now: datetime) -> datetime:
    """
    Timestamp for a new append-only row that sorts strictly after the
    account's latest row, so replay order equals commit order.
    """
    result = await db.execute(select(func.max(column)).where(account_column == account_id))
    latest = result.scalar_one_or_none()
    if latest is not None:
        latest = timezone.ensure_aware(latest)
        if latest >= now:
            return latest + timedelta(microseconds=1)
    return now


async def create_tables(engine: AsyncEngine = async_engine) -> None:
    """Create ledger tables"""
    # Import models so they register on the metadata
    from subledger.billing.domain import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
