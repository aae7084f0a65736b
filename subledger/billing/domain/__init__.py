"""
Billing Domain

Ledger store tables, provider-neutral domain events and the normalized
subscription snapshot.
"""

from .events import (
    CheckoutCompleted,
    DomainEvent,
    IgnoredEvent,
    InvoiceFailed,
    InvoicePaid,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from .models import (
    Account,
    CreditTransaction,
    CreditTransactionType,
    EventSource,
    Subscription,
    SubscriptionEvent,
    SubscriptionStatus,
)
from .snapshot import SubscriptionSnapshot, effective_status

__all__ = [
    'Account',
    'CheckoutCompleted',
    'CreditTransaction',
    'CreditTransactionType',
    'DomainEvent',
    'EventSource',
    'IgnoredEvent',
    'InvoiceFailed',
    'InvoicePaid',
    'Subscription',
    'SubscriptionDeleted',
    'SubscriptionEvent',
    'SubscriptionSnapshot',
    'SubscriptionStatus',
    'SubscriptionUpdated',
    'effective_status',
]
