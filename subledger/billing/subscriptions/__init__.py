"""
Subscriptions Module

The subscription state machine and the billing facade built on it.
"""

from .reconciler import (
    SubscriptionReconciler,
    TransitionOutcome,
    TransitionResult,
    map_external_status,
)
from .service import BillingService, CheckoutRedirect

__all__ = [
    'BillingService',
    'CheckoutRedirect',
    'SubscriptionReconciler',
    'TransitionOutcome',
    'TransitionResult',
    'map_external_status',
]
