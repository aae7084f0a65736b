"""
Ledger Repository

Row access used inside a reconciler transaction. Every function takes the
transaction's session and never commits; the caller's transaction scope
decides whether all of it lands or none of it does.
"""

import logging

from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from subledger.billing.domain.models import (
    Account,
    EventSource,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
from subledger.database.db import next_created_at

logger = logging.getLogger(__name__)


async def lock_account(db: AsyncSession, account_id: str) -> Optional[Account]:
    """Load an account row with a row lock (SELECT ... FOR UPDATE where supported)."""
    result = await db.execute(select(Account).where(Account.id == account_id).with_for_update())
    return result.scalar_one_or_none()


async def get_or_create_account(db: AsyncSession, account_id: str, email: Optional[str] = None) -> Account:
    """Lock the account row, creating it with an empty balance if missing."""
    account = await lock_account(db, account_id)
    if account is None:
        account = Account(id=account_id, email=email)
        db.add(account)
        await db.flush()
        logger.info(f"[REPOSITORY] Created account {account_id}")
    elif email and not account.email:
        account.email = email
    return account


async def get_account(db: AsyncSession, account_id: str) -> Optional[Account]:
    result = await db.execute(select(Account).where(Account.id == account_id))
    return result.scalar_one_or_none()


async def get_subscription(db: AsyncSession, account_id: str, for_update: bool = False) -> Optional[Subscription]:
    stmt = select(Subscription).where(Subscription.account_id == account_id)
    if for_update:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    return result.scalar_one_or_none()


async def find_account_id_by_external(
    db: AsyncSession,
    subscription_id: Optional[str] = None,
    customer_id: Optional[str] = None,
) -> Optional[str]:
    """
    Resolve the account that owns an external subscription or customer.

    The subscription id is preferred; the customer id is the fallback for
    events that arrive before the subscription id was stored.
    """
    if subscription_id:
        result = await db.execute(
            select(Subscription.account_id).where(Subscription.external_subscription_id == subscription_id)
        )
        account_id = result.scalar_one_or_none()
        if account_id:
            return account_id
    if customer_id:
        result = await db.execute(
            select(Subscription.account_id).where(Subscription.external_customer_id == customer_id)
        )
        return result.scalar_one_or_none()
    return None


async def event_applied(db: AsyncSession, idempotency_key: Optional[str]) -> bool:
    """Whether a delivery with this natural key already produced a transition."""
    if not idempotency_key:
        return False
    result = await db.execute(
        select(SubscriptionEvent.id).where(SubscriptionEvent.idempotency_key == idempotency_key)
    )
    return result.first() is not None


async def append_event(
    db: AsyncSession,
    *,
    subscription: Subscription,
    previous_status: Optional[SubscriptionStatus],
    reason: str,
    source: EventSource,
    now: datetime,
    idempotency_key: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> SubscriptionEvent:
    """Write the audit row of a transition; the unique key rejects concurrent duplicates on flush."""
    event_metadata = dict(metadata or {})
    if idempotency_key:
        event_metadata['idempotency_key'] = idempotency_key
    event = SubscriptionEvent(
        account_id=subscription.account_id,
        subscription_id=subscription.id,
        new_status=subscription.status,
        reason=reason,
        source=source,
        previous_status=previous_status,
        idempotency_key=idempotency_key,
        event_metadata=event_metadata,
        created_at=await next_created_at(
            db, SubscriptionEvent.created_at, SubscriptionEvent.account_id, subscription.account_id, now
        ),
    )
    db.add(event)
    await db.flush()
    return event


async def list_events(db: AsyncSession, account_id: str) -> List[SubscriptionEvent]:
    """Audit log of an account in commit order."""
    result = await db.execute(
        select(SubscriptionEvent)
        .where(SubscriptionEvent.account_id == account_id)
        .order_by(SubscriptionEvent.created_at, SubscriptionEvent.id)
    )
    return list(result.scalars().all())


async def list_lapsed_subscriptions(db: AsyncSession, now: datetime) -> List[str]:
    """Account ids whose trial or canceled grace period has ended."""
    result = await db.execute(
        select(Subscription.account_id).where(
            or_(
                (Subscription.status == SubscriptionStatus.TRIAL) & (Subscription.trial_end <= now),
                (Subscription.status == SubscriptionStatus.CANCELED) & (Subscription.current_period_end <= now),
            )
        )
    )
    return list(result.scalars().all())
