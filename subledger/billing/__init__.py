"""
Billing Module

Subscription lifecycle and credit ledger.

Submodules:
- shared: plan catalog, error taxonomy, snapshot cache
- domain: ledger tables, domain events, normalized snapshot
- credits: credit ledger writes and replay
- subscriptions: reconciler (state machine) and billing facade
- external: payment gateway adapter (Stripe)
- endpoints: FastAPI routers

Usage:
    from subledger.billing.subscriptions import BillingService
    snapshot = await service.get_status(account_id)
"""
