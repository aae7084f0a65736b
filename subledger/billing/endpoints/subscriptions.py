"""
Subscription Endpoints

HTTP surface of the billing facade.
"""

import logging
from typing import Dict, List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from subledger.billing.subscriptions import BillingService, CheckoutRedirect
from .dependencies import get_account_id, get_billing_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing", tags=["billing-subscriptions"])


# ============================================================================
# Request Models
# ============================================================================

class SubscribeRequest(BaseModel):
    """Request to subscribe to a plan."""
    plan_id: str
    duration: int = 1  # months: 1, 6 or 12
    email: Optional[str] = None


class StartTrialRequest(BaseModel):
    plan_id: str
    email: Optional[str] = None


class RecordUsageRequest(BaseModel):
    """Credits consumed by one operation."""
    amount: int
    description: str = Field(default='Usage', max_length=255)


class VerifyCheckoutRequest(BaseModel):
    session_id: str


# ============================================================================
# Endpoints
# ============================================================================

@router.get("/status")
async def get_status(
    account_id: str = Depends(get_account_id),
    service: BillingService = Depends(get_billing_service),
) -> Dict:
    """Current subscription snapshot (default FREE snapshot for unknown accounts)."""
    snapshot = await service.get_status(account_id)
    return snapshot.to_dict()


@router.post("/refresh")
async def refresh_status(
    force: bool = Query(False, description="Pull the provider's subscription state first"),
    account_id: str = Depends(get_account_id),
    service: BillingService = Depends(get_billing_service),
) -> Dict:
    snapshot = await service.refresh(account_id, force=force)
    return snapshot.to_dict()


@router.post("/subscribe")
async def subscribe(
    request: SubscribeRequest,
    account_id: str = Depends(get_account_id),
    service: BillingService = Depends(get_billing_service),
) -> Dict:
    """
    Subscribe to a plan.

    FREE is activated immediately and the snapshot is returned; paid plans
    return a checkout URL.
    """
    result = await service.subscribe(account_id, request.plan_id, request.duration, request.email)
    if isinstance(result, CheckoutRedirect):
        return {'type': 'checkout', **result.to_dict()}
    return {'type': 'snapshot', 'snapshot': result.to_dict()}


@router.post("/trial")
async def start_trial(
    request: StartTrialRequest,
    account_id: str = Depends(get_account_id),
    service: BillingService = Depends(get_billing_service),
) -> Dict:
    snapshot = await service.start_trial(account_id, request.plan_id, request.email)
    return snapshot.to_dict()


@router.post("/cancel")
async def cancel_subscription(
    account_id: str = Depends(get_account_id),
    service: BillingService = Depends(get_billing_service),
) -> Dict:
    """Schedule cancellation at the end of the current period."""
    snapshot = await service.cancel(account_id)
    return snapshot.to_dict()


@router.post("/resume")
async def resume_subscription(
    account_id: str = Depends(get_account_id),
    service: BillingService = Depends(get_billing_service),
) -> Dict:
    snapshot = await service.resume(account_id)
    return snapshot.to_dict()


@router.post("/usage")
async def record_usage(
    request: RecordUsageRequest,
    account_id: str = Depends(get_account_id),
    service: BillingService = Depends(get_billing_service),
) -> Dict:
    return await service.record_usage(account_id, request.amount, request.description)


@router.get("/usage")
async def get_usage(
    account_id: str = Depends(get_account_id),
    service: BillingService = Depends(get_billing_service),
) -> Dict:
    return await service.get_usage(account_id)


@router.get("/history")
async def get_billing_history(
    limit: int = Query(50, ge=1, le=500),
    account_id: str = Depends(get_account_id),
    service: BillingService = Depends(get_billing_service),
) -> Dict:
    transactions = await service.get_billing_history(account_id, limit)
    events = await service.get_subscription_events(account_id)
    return {'transactions': transactions, 'events': events}


@router.post("/checkout/verify")
async def verify_checkout(
    request: VerifyCheckoutRequest,
    account_id: str = Depends(get_account_id),
    service: BillingService = Depends(get_billing_service),
) -> Dict:
    """Apply a completed checkout without waiting for the webhook."""
    snapshot = await service.verify_checkout(account_id, request.session_id)
    return snapshot.to_dict()


@router.get("/plans")
async def list_plans(service: BillingService = Depends(get_billing_service)) -> List[Dict]:
    return [plan.to_dict() for plan in service.list_plans()]
