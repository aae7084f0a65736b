"""
Credit Ledger

Balance mutations on an Account, each paired with exactly one append-only
CreditTransaction row in the same transaction.

Ledger semantics (used by replay_ledger):
- RENEWAL / TRIAL_GRANT: total += amount, used resets to 0
  (amount is the signed difference between the new and previous allowance)
- MANUAL_ADJUST: total += amount
- USAGE: used += -amount (amount is negative)

resulting_credits on every row is the remaining balance (total - used)
after the row is applied.
"""

import logging

from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subledger.billing.domain.models import Account, CreditTransaction, CreditTransactionType
from subledger.billing.shared.exceptions import InsufficientCreditsError, ValidationError
from subledger.database.db import next_created_at

logger = logging.getLogger(__name__)

GRANT_TYPES = (CreditTransactionType.RENEWAL, CreditTransactionType.TRIAL_GRANT)


async def _append(
    db: AsyncSession,
    account: Account,
    amount: int,
    tx_type: CreditTransactionType,
    description: str,
    now: datetime,
) -> CreditTransaction:
    row = CreditTransaction(
        account_id=account.id,
        amount=amount,
        resulting_credits=account.total_credits - account.used_credits,
        type=tx_type,
        description=description,
        created_at=await next_created_at(
            db, CreditTransaction.created_at, CreditTransaction.account_id, account.id, now
        ),
    )
    db.add(row)
    await db.flush()
    return row


async def grant_credits(
    db: AsyncSession,
    account: Account,
    allowance: int,
    tx_type: CreditTransactionType,
    description: str,
    now: datetime,
) -> CreditTransaction:
    """
    Reset an account's allowance for a new period.

    Sets total to ``allowance`` and used to 0.
    """
    if tx_type not in GRANT_TYPES:
        raise ValueError(f"Not a grant type: {tx_type}")
    delta = allowance - (account.total_credits or 0)
    account.total_credits = allowance
    account.used_credits = 0
    row = await _append(db, account, delta, tx_type, description, now)
    logger.info(f"[LEDGER] {tx_type.value} {allowance} credits for {account.id} (delta {delta:+d})")
    return row


async def record_usage(
    db: AsyncSession,
    account: Account,
    amount: int,
    description: str,
    now: datetime,
) -> CreditTransaction:
    """
    Consume credits.

    Raises:
        ValidationError: If amount is not a positive integer
        InsufficientCreditsError: If the remaining balance is smaller than amount
    """
    validate_usage_amount(amount)
    available = max(0, account.total_credits - account.used_credits)
    if amount > available:
        raise InsufficientCreditsError(
            message=f"Insufficient credits. Required: {amount}, Available: {available}",
            required=amount,
            available=available,
        )
    account.used_credits += amount
    return await _append(db, account, -amount, CreditTransactionType.USAGE, description, now)


async def adjust_credits(
    db: AsyncSession,
    account: Account,
    amount: int,
    description: str,
    now: datetime,
) -> CreditTransaction:
    """
    Manually add (or remove) allowance without resetting usage.

    Raises:
        ValidationError: If amount is zero or would leave total below used
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount == 0:
        raise ValidationError("Adjustment amount must be a non-zero integer", details={'amount': amount})
    if account.total_credits + amount < account.used_credits:
        raise ValidationError(
            "Adjustment would leave total credits below used credits",
            details={'amount': amount, 'total': account.total_credits, 'used': account.used_credits}
        )
    account.total_credits += amount
    return await _append(db, account, amount, CreditTransactionType.MANUAL_ADJUST, description, now)


def validate_usage_amount(amount) -> None:
    """Reject non-integer and non-positive usage amounts before any mutation."""
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError(
            "Usage amount must be a positive integer",
            code="INVALID_AMOUNT",
            details={'amount': amount}
        )


async def latest_grant(db: AsyncSession, account_id: str, tx_type: CreditTransactionType) -> Optional[CreditTransaction]:
    result = await db.execute(
        select(CreditTransaction)
        .where(CreditTransaction.account_id == account_id, CreditTransaction.type == tx_type)
        .order_by(CreditTransaction.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def list_transactions(db: AsyncSession, account_id: str, limit: Optional[int] = None) -> List[CreditTransaction]:
    """Credit history, newest first."""
    stmt = (
        select(CreditTransaction)
        .where(CreditTransaction.account_id == account_id)
        .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc())
    )
    if limit:
        stmt = stmt.limit(limit)
    result = await db.execute(stmt)
    return list(result.scalars().all())


def replay_ledger(rows: Iterable[CreditTransaction]) -> Tuple[int, int]:
    """
    Rebuild (total_credits, used_credits) from ledger rows in commit order.
    """
    total = 0
    used = 0
    for row in sorted(rows, key=lambda r: r.created_at):
        if row.type in GRANT_TYPES:
            total += row.amount
            used = 0
        elif row.type == CreditTransactionType.MANUAL_ADJUST:
            total += row.amount
        elif row.type == CreditTransactionType.USAGE:
            used -= row.amount
    return total, used
