"""
Webhook Endpoints

Inbound Stripe webhook: verify, parse, reconcile.

Responses:
- 200: processed, duplicate or ignored (the provider stops retrying)
- 400: signature or payload rejected (never triggers a transition)
- 500: ledger transaction failed (the provider redelivers)
"""

import logging
from typing import Dict

from fastapi import APIRouter, Depends, Request

from subledger.billing.shared.exceptions import ValidationError
from subledger.billing.subscriptions import SubscriptionReconciler, TransitionOutcome
from .dependencies import get_gateway, get_reconciler

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing-webhooks"])


@router.post("/webhooks/payment")
async def payment_webhook(
    request: Request,
    gateway=Depends(get_gateway),
    reconciler: SubscriptionReconciler = Depends(get_reconciler),
) -> Dict:
    """
    Process Stripe webhook events.

    Handles:
    - checkout.session.completed
    - customer.subscription.created / updated / deleted
    - invoice.paid / invoice.payment_succeeded
    - invoice.payment_failed
    """
    payload = await request.body()
    # SignatureError propagates to the billing exception handler as a 400
    event = gateway.verify_and_parse_webhook(payload, request.headers.get('stripe-signature'))

    try:
        result = await reconciler.apply(event)
    except ValidationError as e:
        # Retrying a payload we cannot map would fail forever
        logger.warning(f"[WEBHOOK] Event {getattr(event, 'event_id', None)} rejected: {e.message}")
        return {'status': TransitionOutcome.IGNORED.value, 'reason': e.code}

    body = result.to_dict()
    if result.outcome == TransitionOutcome.APPLIED:
        body['status'] = 'processed'
    logger.info(f"[WEBHOOK] Event {getattr(event, 'event_id', None)}: {body['status']} ({result.reason})")
    return body
