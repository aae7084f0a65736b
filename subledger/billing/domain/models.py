"""Ledger store tables: accounts, subscriptions, credit ledger and subscription event log."""

from datetime import datetime
from enum import Enum

import sqlalchemy as sa

from sqlalchemy.orm import Mapped, mapped_column

from subledger.common.model import Base, TimeZone, id_key, uuid4_str
from subledger.utils.timezone import timezone


class SubscriptionStatus(str, Enum):
    """Internal subscription states."""
    INACTIVE = "INACTIVE"
    TRIAL = "TRIAL"
    ACTIVE = "ACTIVE"
    PAST_DUE = "PAST_DUE"
    CANCELED = "CANCELED"
    EXPIRED = "EXPIRED"


class CreditTransactionType(str, Enum):
    """Kinds of credit ledger rows."""
    RENEWAL = "RENEWAL"
    TRIAL_GRANT = "TRIAL_GRANT"
    MANUAL_ADJUST = "MANUAL_ADJUST"
    USAGE = "USAGE"


class EventSource(str, Enum):
    """Origin of a subscription transition."""
    EXTERNAL = "EXTERNAL"
    INTERNAL = "INTERNAL"


class Account(Base):
    """Credit balance of one end user."""

    __tablename__ = 'billing_accounts'

    id: Mapped[str] = mapped_column(sa.String(64), primary_key=True, comment='Account (user) ID')
    email: Mapped[str | None] = mapped_column(sa.String(255), default=None)
    total_credits: Mapped[int] = mapped_column(sa.Integer, default=0, comment='Granted allowance')
    used_credits: Mapped[int] = mapped_column(sa.Integer, default=0, comment='Consumed credits, never decreases except on grant reset')
    active_plan_id: Mapped[str | None] = mapped_column(sa.String(32), default=None)
    created_at: Mapped[datetime] = mapped_column(TimeZone, init=False, default_factory=timezone.now)
    updated_at: Mapped[datetime] = mapped_column(
        TimeZone, init=False, default_factory=timezone.now, onupdate=timezone.now
    )


class Subscription(Base):
    """At most one subscription per account; never deleted."""

    __tablename__ = 'billing_subscriptions'

    id: Mapped[id_key] = mapped_column(init=False, default_factory=uuid4_str)
    account_id: Mapped[str] = mapped_column(
        sa.String(64), sa.ForeignKey('billing_accounts.id'), unique=True, index=True
    )
    plan_id: Mapped[str] = mapped_column(sa.String(32))
    status: Mapped[SubscriptionStatus] = mapped_column(
        sa.Enum(SubscriptionStatus, native_enum=False, length=16), default=SubscriptionStatus.INACTIVE
    )
    current_period_start: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    current_period_end: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    cancel_at_period_end: Mapped[bool] = mapped_column(default=False)
    trial_end: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    billing_duration: Mapped[int] = mapped_column(sa.Integer, default=1, comment='Billing duration in months')
    external_customer_id: Mapped[str | None] = mapped_column(sa.String(255), default=None, index=True)
    external_subscription_id: Mapped[str | None] = mapped_column(sa.String(255), default=None, index=True)
    external_price_id: Mapped[str | None] = mapped_column(sa.String(255), default=None)
    last_external_status: Mapped[str | None] = mapped_column(sa.String(32), default=None)
    last_external_event_type: Mapped[str | None] = mapped_column(sa.String(64), default=None)
    last_external_event_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    canceled_at: Mapped[datetime | None] = mapped_column(TimeZone, default=None)
    created_at: Mapped[datetime] = mapped_column(TimeZone, init=False, default_factory=timezone.now)
    updated_at: Mapped[datetime] = mapped_column(
        TimeZone, init=False, default_factory=timezone.now, onupdate=timezone.now
    )


class CreditTransaction(Base):
    """Append-only credit ledger row."""

    __tablename__ = 'billing_credit_transactions'

    id: Mapped[id_key] = mapped_column(init=False, default_factory=uuid4_str)
    account_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey('billing_accounts.id'), index=True)
    amount: Mapped[int] = mapped_column(sa.Integer, comment='Signed delta')
    resulting_credits: Mapped[int] = mapped_column(sa.Integer, comment='Remaining balance after this row')
    type: Mapped[CreditTransactionType] = mapped_column(sa.Enum(CreditTransactionType, native_enum=False, length=16))
    description: Mapped[str] = mapped_column(sa.String(255), default='')
    created_at: Mapped[datetime] = mapped_column(TimeZone, default_factory=timezone.now, index=True)


class SubscriptionEvent(Base):
    """Append-only audit row, one per state transition."""

    __tablename__ = 'billing_subscription_events'

    id: Mapped[id_key] = mapped_column(init=False, default_factory=uuid4_str)
    account_id: Mapped[str] = mapped_column(sa.String(64), sa.ForeignKey('billing_accounts.id'), index=True)
    subscription_id: Mapped[str] = mapped_column(sa.String(36), sa.ForeignKey('billing_subscriptions.id'))
    new_status: Mapped[SubscriptionStatus] = mapped_column(sa.Enum(SubscriptionStatus, native_enum=False, length=16))
    reason: Mapped[str] = mapped_column(sa.String(255))
    source: Mapped[EventSource] = mapped_column(sa.Enum(EventSource, native_enum=False, length=16))
    previous_status: Mapped[SubscriptionStatus | None] = mapped_column(
        sa.Enum(SubscriptionStatus, native_enum=False, length=16), default=None
    )
    idempotency_key: Mapped[str | None] = mapped_column(
        sa.String(255), default=None, unique=True, comment='Natural key of the external delivery that caused this row'
    )
    event_metadata: Mapped[dict] = mapped_column('metadata', sa.JSON, default_factory=dict)
    created_at: Mapped[datetime] = mapped_column(TimeZone, default_factory=timezone.now, index=True)
