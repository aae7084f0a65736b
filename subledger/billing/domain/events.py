"""
Domain Events

Typed events produced by the payment gateway adapter and consumed by the
subscription reconciler. They carry only what the state machine needs, so
no provider SDK object ever reaches the ledger.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional, Union


@dataclass(frozen=True)
class CheckoutCompleted:
    """A paid checkout finished; authoritative activation of a paid plan."""
    event_id: str
    session_id: str
    account_id: str
    plan_id: str
    duration: int = 1
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None
    price_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    created: Optional[datetime] = None

    @property
    def idempotency_key(self) -> str:
        return f"checkout:{self.session_id}"


@dataclass(frozen=True)
class SubscriptionUpdated:
    """The provider changed a subscription (status, period, cancel flag, price)."""
    event_id: Optional[str]
    subscription_id: str
    status: str
    customer_id: Optional[str] = None
    account_id: Optional[str] = None
    price_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    cancel_at_period_end: bool = False
    trial_end: Optional[datetime] = None
    created: Optional[datetime] = None

    @property
    def idempotency_key(self) -> Optional[str]:
        # Reconciliation pulls carry no event id and are always applied
        return f"event:{self.event_id}" if self.event_id else None


@dataclass(frozen=True)
class SubscriptionDeleted:
    """The provider ended a subscription."""
    event_id: str
    subscription_id: str
    customer_id: Optional[str] = None
    account_id: Optional[str] = None
    created: Optional[datetime] = None

    @property
    def idempotency_key(self) -> str:
        return f"event:{self.event_id}"


@dataclass(frozen=True)
class InvoicePaid:
    """An invoice was paid; grants credits only for renewal cycles."""
    event_id: str
    invoice_id: str
    billing_reason: Optional[str]
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    created: Optional[datetime] = None

    @property
    def idempotency_key(self) -> str:
        return f"invoice_paid:{self.invoice_id}"


@dataclass(frozen=True)
class InvoiceFailed:
    """An invoice payment attempt failed."""
    event_id: str
    invoice_id: str
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    attempt_count: int = 1
    created: Optional[datetime] = None

    @property
    def idempotency_key(self) -> str:
        return f"event:{self.event_id}"


@dataclass(frozen=True)
class IgnoredEvent:
    """A verified provider event this core does not act on."""
    event_id: str
    event_type: str
    details: Dict = field(default_factory=dict)


DomainEvent = Union[CheckoutCompleted, SubscriptionUpdated, SubscriptionDeleted, InvoicePaid, InvoiceFailed, IgnoredEvent]
