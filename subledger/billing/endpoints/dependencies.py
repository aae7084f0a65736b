"""
Endpoint Dependencies

Shared dependencies for billing API endpoints. Collaborators are taken from
``app.state`` (set up by ``create_app``) so tests can swap them per app.
"""

import logging
from typing import Optional

from fastapi import Header, HTTPException, Request

from subledger.billing.external.stripe import StripeGateway
from subledger.billing.subscriptions import BillingService, SubscriptionReconciler

logger = logging.getLogger(__name__)


async def get_account_id(
    x_account_id: Optional[str] = Header(None, alias="X-Account-Id")
) -> str:
    """
    Account the request acts on.

    Authentication happens upstream; this core only needs the resolved id.
    """
    if not x_account_id or not x_account_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-Account-Id header")
    return x_account_id.strip()


def get_billing_service(request: Request) -> BillingService:
    return request.app.state.billing_service


def get_reconciler(request: Request) -> SubscriptionReconciler:
    return request.app.state.reconciler


def get_gateway(request: Request) -> StripeGateway:
    return request.app.state.gateway
