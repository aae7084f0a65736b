"""
Stripe Idempotency Key Generation

Deterministic idempotency keys for outbound Stripe calls, so a client retry
of the same request inside a short window reuses the provider-side result
instead of creating a second customer or checkout session.
"""

import hashlib
import logging

from datetime import datetime
from typing import Callable, Optional

from subledger.utils.timezone import timezone

logger = logging.getLogger(__name__)


class StripeIdempotencyManager:
    """
    Generates deterministic idempotency keys for Stripe operations.

    Keys are:
    - Unique per operation + account + parameters
    - Stable within a time bucket, so retries inside the window collapse

    Usage:
        key = manager.generate_checkout_key(account_id, price_id)
        session = await stripe.checkout.Session.create_async(idempotency_key=key, ...)
    """

    def __init__(self, clock: Callable[[], datetime] = timezone.now):
        self._clock = clock

    def generate_key(
        self,
        operation: str,
        account_id: str,
        *args,
        time_bucket_minutes: int = 5,
        **kwargs
    ) -> str:
        """
        Generate an idempotency key.

        Args:
            operation: Operation type (e.g., 'checkout', 'customer')
            account_id: Account (or subscription) identifier
            *args: Additional positional values included in the key
            time_bucket_minutes: Window in which the same request maps to the same key
            **kwargs: Additional keyword values included in the key

        Returns:
            40-character hex idempotency key
        """
        timestamp_bucket = int(self._clock().timestamp() // (time_bucket_minutes * 60))

        components = [
            operation,
            account_id,
            *[str(arg) for arg in args],
            *[f"{k}={v}" for k, v in sorted(kwargs.items())],
            str(timestamp_bucket),
        ]
        return hashlib.sha256("_".join(components).encode()).hexdigest()[:40]

    def generate_customer_key(self, account_id: str, email: Optional[str] = None) -> str:
        return self.generate_key('customer', account_id, email=email or 'none')

    def generate_checkout_key(self, account_id: str, price_id: str, duration: int) -> str:
        """Generate idempotency key for a subscription checkout."""
        return self.generate_key('checkout', account_id, price_id, duration=duration)
