"""
Stripe Event Parser

Maps verified Stripe event payloads (plain dicts) onto domain events.
Handles:
- checkout.session.completed
- customer.subscription.created / customer.subscription.updated
- customer.subscription.deleted
- invoice.paid / invoice.payment_succeeded
- invoice.payment_failed

Everything else becomes an IgnoredEvent. Payloads missing the ids a
transition needs raise ValueError.
"""

import logging

from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from subledger.billing.domain.events import (
    CheckoutCompleted,
    DomainEvent,
    IgnoredEvent,
    InvoiceFailed,
    InvoicePaid,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from subledger.utils.timezone import timezone

logger = logging.getLogger(__name__)

PAID_CHECKOUT_STATUSES = ('paid', 'no_payment_required')


def parse_event(event: Dict[str, Any]) -> DomainEvent:
    """
    Convert a Stripe event into a domain event.

    Args:
        event: Verified event payload ({id, type, created, data: {object}})
    """
    event_id = event.get('id')
    event_type = event.get('type')
    if not event_id or not event_type:
        raise ValueError("Event payload is missing id or type")

    obj = (event.get('data') or {}).get('object') or {}
    created = timezone.from_timestamp(event.get('created'))

    if event_type == 'checkout.session.completed':
        return checkout_from_session(obj, event_id, created)
    if event_type in ('customer.subscription.created', 'customer.subscription.updated'):
        return subscription_from_object(obj, event_id, created)
    if event_type == 'customer.subscription.deleted':
        return SubscriptionDeleted(
            event_id=event_id,
            subscription_id=_require(obj, 'id'),
            customer_id=_id_of(obj.get('customer')),
            account_id=(obj.get('metadata') or {}).get('account_id'),
            created=created,
        )
    if event_type in ('invoice.paid', 'invoice.payment_succeeded'):
        if obj.get('status') not in (None, 'paid'):
            return IgnoredEvent(event_id, event_type, {'invoice_status': obj.get('status')})
        price_id, period_start, period_end = _invoice_line(obj)
        return InvoicePaid(
            event_id=event_id,
            invoice_id=_require(obj, 'id'),
            billing_reason=obj.get('billing_reason'),
            subscription_id=_invoice_subscription(obj),
            customer_id=_id_of(obj.get('customer')),
            price_id=price_id,
            period_start=period_start,
            period_end=period_end,
            created=created,
        )
    if event_type == 'invoice.payment_failed':
        return InvoiceFailed(
            event_id=event_id,
            invoice_id=_require(obj, 'id'),
            subscription_id=_invoice_subscription(obj),
            customer_id=_id_of(obj.get('customer')),
            attempt_count=obj.get('attempt_count') or 1,
            created=created,
        )

    logger.debug(f"[WEBHOOK] Unhandled event type: {event_type}")
    return IgnoredEvent(event_id, event_type)


def checkout_from_session(
    session: Dict[str, Any],
    event_id: str,
    created: Optional[datetime] = None,
) -> DomainEvent:
    """
    Build CheckoutCompleted from a checkout session object.

    Only paid subscription-mode sessions carrying our account/plan metadata
    activate anything.
    """
    session_id = _require(session, 'id')
    metadata = session.get('metadata') or {}

    if session.get('mode') != 'subscription':
        return IgnoredEvent(event_id, 'checkout.session.completed', {'mode': session.get('mode')})
    if session.get('payment_status') not in PAID_CHECKOUT_STATUSES:
        return IgnoredEvent(event_id, 'checkout.session.completed', {'payment_status': session.get('payment_status')})

    account_id = metadata.get('account_id') or session.get('client_reference_id')
    plan_id = metadata.get('plan_id')
    if not account_id or not plan_id:
        logger.warning(f"[WEBHOOK] Checkout session {session_id} has no account/plan metadata")
        return IgnoredEvent(event_id, 'checkout.session.completed', {'session_id': session_id})

    subscription = session.get('subscription')
    period_start = period_end = price_id = None
    if isinstance(subscription, dict):
        price_id, period_start, period_end = _subscription_period(subscription)

    return CheckoutCompleted(
        event_id=event_id,
        session_id=session_id,
        account_id=account_id,
        plan_id=plan_id,
        duration=int(metadata.get('duration') or 1),
        customer_id=_id_of(session.get('customer')),
        subscription_id=_id_of(subscription),
        price_id=price_id,
        period_start=period_start,
        period_end=period_end,
        created=created,
    )


def subscription_from_object(
    subscription: Dict[str, Any],
    event_id: Optional[str],
    created: Optional[datetime] = None,
) -> SubscriptionUpdated:
    """Build SubscriptionUpdated from a subscription object (webhook or pull)."""
    price_id, period_start, period_end = _subscription_period(subscription)
    return SubscriptionUpdated(
        event_id=event_id,
        subscription_id=_require(subscription, 'id'),
        status=_require(subscription, 'status'),
        customer_id=_id_of(subscription.get('customer')),
        account_id=(subscription.get('metadata') or {}).get('account_id'),
        price_id=price_id,
        period_start=period_start,
        period_end=period_end,
        cancel_at_period_end=bool(subscription.get('cancel_at_period_end')),
        trial_end=timezone.from_timestamp(subscription.get('trial_end')),
        created=created,
    )


def _require(obj: Dict[str, Any], key: str) -> Any:
    value = obj.get(key)
    if not value:
        raise ValueError(f"Event object is missing '{key}'")
    return value


def _id_of(value: Any) -> Optional[str]:
    """Stripe sends either an id or an expanded object."""
    if isinstance(value, dict):
        return value.get('id')
    return value


def _subscription_period(subscription: Dict[str, Any]) -> Tuple[Optional[str], Optional[datetime], Optional[datetime]]:
    # Newer API versions moved the period onto the subscription items
    items = (subscription.get('items') or {}).get('data') or []
    item = items[0] if items else {}
    price_id = _id_of(item.get('price'))
    start = subscription.get('current_period_start') or item.get('current_period_start')
    end = subscription.get('current_period_end') or item.get('current_period_end')
    return price_id, timezone.from_timestamp(start), timezone.from_timestamp(end)


def _invoice_subscription(invoice: Dict[str, Any]) -> Optional[str]:
    subscription = invoice.get('subscription')
    if subscription:
        return _id_of(subscription)
    details = ((invoice.get('parent') or {}).get('subscription_details')) or {}
    return _id_of(details.get('subscription'))


def _invoice_line(invoice: Dict[str, Any]) -> Tuple[Optional[str], Optional[datetime], Optional[datetime]]:
    lines = (invoice.get('lines') or {}).get('data') or []
    line = lines[0] if lines else {}
    price_id = _id_of(line.get('price'))
    if not price_id:
        price_details = ((line.get('pricing') or {}).get('price_details')) or {}
        price_id = price_details.get('price')
    period = line.get('period') or {}
    return (
        price_id,
        timezone.from_timestamp(period.get('start')),
        timezone.from_timestamp(period.get('end')),
    )
