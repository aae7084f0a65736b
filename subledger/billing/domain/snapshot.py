"""
Subscription Snapshot

The read-only, normalized view of an account's subscription and credits that
is returned to every caller. Normalization happens here and only here:

- a CANCELED subscription past its period end, or a TRIAL past its trial end,
  reads as EXPIRED even before the lapse sweep has written it;
- an account without a live paid subscription reads as the FREE plan;
- for free or inactive accounts used credits are clamped to [0, total].
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from subledger.utils.timezone import timezone
from .models import Account, Subscription, SubscriptionStatus

# Statuses in which the paid plan is still usable
LIVE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELED,
})


def effective_status(subscription: Subscription, now: Optional[datetime] = None) -> SubscriptionStatus:
    """Status of a subscription row as of ``now``, accounting for lapsed periods."""
    now = now or timezone.now()
    status = subscription.status
    if status == SubscriptionStatus.CANCELED and subscription.current_period_end and subscription.current_period_end <= now:
        return SubscriptionStatus.EXPIRED
    if status == SubscriptionStatus.TRIAL and subscription.trial_end and subscription.trial_end <= now:
        return SubscriptionStatus.EXPIRED
    return status


@dataclass(frozen=True)
class SubscriptionSnapshot:
    """
    Normalized subscription + credit state of one account.

    Attributes:
        account_id: Account the snapshot belongs to
        plan_id: Effective plan ('FREE' unless a paid plan is live)
        status: Effective subscription status
        credits: Total granted credits
        used_credits: Consumed credits (clamped for free/inactive accounts)
        remaining_credits: credits - used_credits, never negative
        cancel_at_period_end: Whether a cancellation is pending
        current_period_start: Start of the billing period (ISO 8601)
        current_period_end: End of the billing period (ISO 8601)
        trial_end: End of the trial (ISO 8601)
        is_subscribed: Whether a paid plan is currently usable
    """
    account_id: str
    plan_id: str
    status: str
    credits: int
    used_credits: int
    remaining_credits: int
    cancel_at_period_end: bool = False
    current_period_start: Optional[str] = None
    current_period_end: Optional[str] = None
    trial_end: Optional[str] = None
    is_subscribed: bool = False

    @classmethod
    def default_free(cls, account_id: str, free_credits: int) -> 'SubscriptionSnapshot':
        """Synthesized snapshot for accounts that were never provisioned."""
        return cls(
            account_id=account_id,
            plan_id='FREE',
            status=SubscriptionStatus.ACTIVE.value,
            credits=free_credits,
            used_credits=0,
            remaining_credits=free_credits,
        )

    @classmethod
    def from_records(
        cls,
        account: Account,
        subscription: Optional[Subscription],
        now: Optional[datetime] = None,
    ) -> 'SubscriptionSnapshot':
        """Build the normalized snapshot from ledger rows."""
        total = max(0, account.total_credits or 0)
        used = max(0, account.used_credits or 0)

        if subscription is None:
            status = SubscriptionStatus.INACTIVE
            plan_id = account.active_plan_id or 'FREE'
        else:
            status = effective_status(subscription, now)
            plan_id = subscription.plan_id

        is_paid = plan_id != 'FREE'
        is_subscribed = is_paid and status in LIVE_STATUSES
        if is_paid and not is_subscribed:
            plan_id = 'FREE'

        if plan_id == 'FREE' or status not in LIVE_STATUSES:
            used = min(used, total)

        return cls(
            account_id=account.id,
            plan_id=plan_id,
            status=status.value,
            credits=total,
            used_credits=used,
            remaining_credits=max(0, total - used),
            cancel_at_period_end=bool(subscription and subscription.cancel_at_period_end),
            current_period_start=_iso(subscription.current_period_start) if subscription else None,
            current_period_end=_iso(subscription.current_period_end) if subscription else None,
            trial_end=_iso(subscription.trial_end) if subscription else None,
            is_subscribed=is_subscribed,
        )

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return asdict(self)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
