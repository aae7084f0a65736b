"""
Billing Service

Query/command facade consumed by the rest of the product. Reads go through
the snapshot cache; commands are delegated to the reconciler (and, for paid
plans, to the payment gateway first, so nothing is committed locally when
the provider call fails).

Provides:
- get_status / refresh: normalized subscription snapshot
- subscribe: free plan activation or a checkout redirect for paid plans
- cancel / resume: scheduled cancellation and its undo
- record_usage / get_usage / add_credits: credit consumption and adjustments
- verify_checkout: apply a completed checkout without waiting for the webhook
- get_billing_history / get_subscription_events: ledger and audit log
"""

import logging

from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subledger.billing.credits import ledger
from subledger.billing.domain.events import CheckoutCompleted
from subledger.billing.domain.models import SubscriptionStatus
from subledger.billing.domain.snapshot import LIVE_STATUSES, SubscriptionSnapshot, effective_status
from subledger.billing.shared.cache import SNAPSHOT_NAMESPACE, USAGE_NAMESPACE, SnapshotCache
from subledger.billing.shared.config import Plan, PlanCatalog
from subledger.billing.shared.exceptions import ConflictError, NotFoundError, ValidationError
from subledger.billing.subscriptions import repository
from subledger.billing.subscriptions.reconciler import SubscriptionReconciler, TransitionResult
from subledger.core.conf import Settings
from subledger.utils.timezone import timezone

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutRedirect:
    """Result of subscribing to a paid plan; the snapshot changes once the checkout completes."""
    url: str
    plan_id: str
    duration: int

    def to_dict(self) -> dict:
        return {'checkout_url': self.url, 'plan_id': self.plan_id, 'duration': self.duration}


class BillingService:
    """
    Unified billing facade.

    Usage:
        service = BillingService(async_db_session, reconciler, gateway, catalog, cache, settings)

        snapshot = await service.get_status(user_id)
        result = await service.subscribe(user_id, 'BASIC', 1, email=user_email)
        await service.record_usage(user_id, 3)
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        reconciler: SubscriptionReconciler,
        gateway,
        catalog: PlanCatalog,
        cache: SnapshotCache,
        config: Settings,
        clock: Callable[[], datetime] = timezone.now,
    ):
        self._session_factory = session_factory
        self._reconciler = reconciler
        self._gateway = gateway
        self._catalog = catalog
        self._cache = cache
        self._free_credits = config.FREE_PLAN_CREDITS
        self._snapshot_ttl = config.SNAPSHOT_CACHE_TTL
        self._usage_ttl = config.USAGE_CACHE_TTL
        self._clock = clock

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_status(self, account_id: str) -> SubscriptionSnapshot:
        """
        Normalized snapshot of an account.

        Never fails for unknown accounts: they read as a default FREE snapshot.
        """
        return await self._cache.get_or_load(
            account_id,
            lambda: self._load_snapshot(account_id),
            ttl=self._snapshot_ttl,
            namespace=SNAPSHOT_NAMESPACE,
        )

    async def refresh(self, account_id: str, force: bool = False) -> SubscriptionSnapshot:
        """
        Bypass the cache and reload the snapshot.

        With force, the provider's view of the subscription is pulled and
        applied first.
        """
        if force:
            await self._pull_subscription(account_id)
        await self._cache.invalidate(account_id)
        return await self.get_status(account_id)

    async def get_usage(self, account_id: str) -> Dict[str, int]:
        """Used / total / remaining credits, cached under the short usage TTL."""
        async def load() -> Dict[str, int]:
            snapshot = await self._load_snapshot(account_id)
            return {
                'used': snapshot.used_credits,
                'total': snapshot.credits,
                'remaining': snapshot.remaining_credits,
            }

        return await self._cache.get_or_load(account_id, load, ttl=self._usage_ttl, namespace=USAGE_NAMESPACE)

    async def get_billing_history(self, account_id: str, limit: int = 50) -> List[Dict]:
        """Credit ledger rows, newest first."""
        async with self._session_factory() as db:
            rows = await ledger.list_transactions(db, account_id, limit)
        return [
            {
                'id': row.id,
                'amount': row.amount,
                'resulting_credits': row.resulting_credits,
                'type': row.type.value,
                'description': row.description,
                'created_at': row.created_at.isoformat(),
            }
            for row in rows
        ]

    async def get_subscription_events(self, account_id: str) -> List[Dict]:
        """Subscription audit log in commit order."""
        async with self._session_factory() as db:
            events = await repository.list_events(db, account_id)
        return [
            {
                'id': event.id,
                'previous_status': event.previous_status.value if event.previous_status else None,
                'new_status': event.new_status.value,
                'reason': event.reason,
                'source': event.source.value,
                'metadata': event.event_metadata,
                'created_at': event.created_at.isoformat(),
            }
            for event in events
        ]

    def list_plans(self) -> List[Plan]:
        return self._catalog.list_plans()

    # =========================================================================
    # Commands
    # =========================================================================

    async def subscribe(
        self,
        account_id: str,
        plan_id: str,
        duration: int = 1,
        email: Optional[str] = None,
    ) -> Union[SubscriptionSnapshot, CheckoutRedirect]:
        """
        Subscribe an account to a plan.

        The FREE plan is activated synchronously and the new snapshot is
        returned. Paid plans return a checkout redirect; the snapshot is
        updated when the checkout.session.completed webhook arrives.

        Raises:
            ValidationError: Unknown plan or unsupported duration
            ConflictError: Free plan requested while a paid plan is live, or a
                provider subscription is still live for a paid plan request
            ExternalGatewayError: Customer or checkout creation failed
        """
        plan = self._catalog.get_plan(plan_id)

        if plan.is_free:
            current = await self._load_snapshot(account_id)
            if current.is_subscribed:
                raise ConflictError(
                    "Cancel the current paid plan before switching to the free plan",
                    code="PAID_PLAN_ACTIVE",
                    account_id=account_id,
                )
            await self._reconciler.activate_free(account_id, email)
            return await self.get_status(account_id)

        # Fail on bad durations before calling the provider
        self._catalog.get_price_id(plan.id, duration)
        subscription = await self._get_subscription(account_id)
        if (
            subscription is not None
            and subscription.external_subscription_id
            and effective_status(subscription, self._clock()) in LIVE_STATUSES
        ):
            # A second checkout would leave the first provider subscription billing
            raise ConflictError(
                "A paid subscription is already live; cancel it and wait for the period to end first",
                code="SUBSCRIPTION_ACTIVE",
                account_id=account_id,
            )
        customer_id = await self._ensure_customer(account_id, email)
        url = await self._gateway.create_checkout_session(account_id, plan.id, duration, customer_id)
        logger.info(f"[BILLING] Checkout created for {account_id}: {plan.id} ({duration}m)")
        return CheckoutRedirect(url=url, plan_id=plan.id, duration=duration)

    async def start_trial(self, account_id: str, plan_id: str, email: Optional[str] = None) -> SubscriptionSnapshot:
        await self._reconciler.start_trial(account_id, plan_id, email)
        return await self.get_status(account_id)

    async def cancel(self, account_id: str) -> SubscriptionSnapshot:
        """
        Schedule cancellation at period end.

        Provider-backed subscriptions are canceled at the provider first.
        """
        subscription = await self._get_subscription(account_id)
        if subscription is None:
            raise NotFoundError("No subscription found", account_id=account_id)
        if subscription.external_subscription_id and subscription.status == SubscriptionStatus.ACTIVE:
            await self._gateway.cancel_at_period_end(subscription.external_subscription_id)
        await self._reconciler.cancel(account_id)
        return await self.get_status(account_id)

    async def resume(self, account_id: str) -> SubscriptionSnapshot:
        """Undo a pending cancellation."""
        subscription = await self._get_subscription(account_id)
        if subscription is None:
            raise NotFoundError("No subscription found", account_id=account_id)
        if (
            subscription.external_subscription_id
            and subscription.cancel_at_period_end
            and effective_status(subscription, self._clock()) in LIVE_STATUSES
        ):
            await self._gateway.reactivate(subscription.external_subscription_id)
        await self._reconciler.resume(account_id)
        return await self.get_status(account_id)

    async def record_usage(self, account_id: str, amount: int, description: str = 'Usage') -> Dict[str, int]:
        """
        Consume credits.

        Raises:
            ValidationError: amount <= 0 or not an integer
            InsufficientCreditsError: Not enough remaining credits
        """
        row = await self._reconciler.record_usage(account_id, amount, description)
        return {'recorded': amount, 'remaining': row.resulting_credits}

    async def add_credits(self, account_id: str, amount: int, reason: str = 'Manual adjustment') -> Dict[str, int]:
        row = await self._reconciler.add_credits(account_id, amount, reason)
        return {'adjusted': amount, 'remaining': row.resulting_credits}

    async def verify_checkout(self, account_id: str, session_id: str) -> SubscriptionSnapshot:
        """
        Apply a completed checkout pulled from the provider.

        Goes through the same idempotent path as the webhook, so whichever
        arrives second is a no-op.
        """
        if not session_id:
            raise ValidationError("session_id is required", code="INVALID_SESSION")
        event = await self._gateway.retrieve_checkout_session(session_id)
        if not isinstance(event, CheckoutCompleted):
            raise ConflictError("Checkout is not complete", code="CHECKOUT_INCOMPLETE", account_id=account_id)
        if event.account_id != account_id:
            raise NotFoundError("Checkout session not found", account_id=account_id)
        await self._reconciler.checkout_completed(event)
        return await self.get_status(account_id)

    async def expire_lapsed(self) -> List[TransitionResult]:
        return await self._reconciler.expire_lapsed()

    # =========================================================================
    # Internals
    # =========================================================================

    async def _load_snapshot(self, account_id: str) -> SubscriptionSnapshot:
        async with self._session_factory() as db:
            account = await repository.get_account(db, account_id)
            if account is None:
                return SubscriptionSnapshot.default_free(account_id, self._free_credits)
            subscription = await repository.get_subscription(db, account_id)
        return SubscriptionSnapshot.from_records(account, subscription, self._clock())

    async def _get_subscription(self, account_id: str):
        async with self._session_factory() as db:
            return await repository.get_subscription(db, account_id)

    async def _ensure_customer(self, account_id: str, email: Optional[str]) -> str:
        subscription = await self._get_subscription(account_id)
        if subscription is not None and subscription.external_customer_id:
            return subscription.external_customer_id
        return await self._gateway.create_customer(account_id, email)

    async def _pull_subscription(self, account_id: str) -> Optional[TransitionResult]:
        subscription = await self._get_subscription(account_id)
        if subscription is None or not subscription.external_subscription_id:
            logger.debug(f"[BILLING] Nothing to pull for {account_id}")
            return None
        event = await self._gateway.retrieve_subscription(subscription.external_subscription_id)
        return await self._reconciler.subscription_updated(event)
