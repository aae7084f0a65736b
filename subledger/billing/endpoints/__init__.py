"""
Billing Endpoints Module

API routes for billing operations.

Routers:
- subscriptions: facade routes under /billing
- webhooks: Stripe webhook processing

Usage:
    from subledger.billing.endpoints import billing_router, webhooks_router

    app.include_router(billing_router, prefix=settings.FASTAPI_API_V1_PATH)
    app.include_router(webhooks_router)
"""

from .dependencies import get_account_id, get_billing_service, get_gateway, get_reconciler
from .subscriptions import router as billing_router
from .webhooks import router as webhooks_router

__all__ = [
    'billing_router',
    'webhooks_router',
    'get_account_id',
    'get_billing_service',
    'get_gateway',
    'get_reconciler',
]
