"""
Subscription Reconciler

The subscription state machine. Every transition (an internal command or a
verified provider event) runs as one ledger transaction:

1. derive the natural idempotency key of the delivery and skip if applied
2. lock the account row
3. mutate Subscription / Account (and append a CreditTransaction if credits move)
4. append exactly one SubscriptionEvent
5. commit, then invalidate the account's cached snapshot

Internal states:
- INACTIVE: no plan activated, or the provider ended the subscription
- TRIAL: plan-tier credits until trial_end
- ACTIVE: paid or free plan in good standing
- PAST_DUE: last invoice failed, plan still usable
- CANCELED: cancellation pending, usable until current_period_end
- EXPIRED: trial or canceled period lapsed

Provider status mapping (customer.subscription.updated):
    active -> ACTIVE (CANCELED when cancel_at_period_end is set)
    past_due, unpaid -> PAST_DUE
    trialing -> TRIAL
    canceled, incomplete, incomplete_expired, paused -> INACTIVE
"""

import logging

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from subledger.billing.credits import ledger
from subledger.billing.domain.events import (
    CheckoutCompleted,
    DomainEvent,
    IgnoredEvent,
    InvoiceFailed,
    InvoicePaid,
    SubscriptionDeleted,
    SubscriptionUpdated,
)
from subledger.billing.domain.models import (
    Account,
    CreditTransaction,
    CreditTransactionType,
    EventSource,
    Subscription,
    SubscriptionStatus,
)
from subledger.billing.domain.snapshot import effective_status
from subledger.billing.shared.cache import SnapshotCache
from subledger.billing.shared.config import FREE_PLAN_ID, RENEWAL_BILLING_REASONS, PlanCatalog
from subledger.billing.shared.exceptions import (
    AlreadySubscribedError,
    ConflictError,
    NotCancelableError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from subledger.billing.subscriptions import repository
from subledger.core.conf import Settings
from subledger.database.db import transaction
from subledger.utils.timezone import timezone

logger = logging.getLogger(__name__)

# Days per billing month when the provider did not send period bounds
DAYS_PER_MONTH = 30

EXTERNAL_STATUS_MAP: Dict[str, SubscriptionStatus] = {
    'active': SubscriptionStatus.ACTIVE,
    'past_due': SubscriptionStatus.PAST_DUE,
    'unpaid': SubscriptionStatus.PAST_DUE,
    'trialing': SubscriptionStatus.TRIAL,
    'canceled': SubscriptionStatus.INACTIVE,
    'incomplete': SubscriptionStatus.INACTIVE,
    'incomplete_expired': SubscriptionStatus.INACTIVE,
    'paused': SubscriptionStatus.INACTIVE,
}

USABLE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.TRIAL,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.CANCELED,
})

# States a paid invoice moves back to ACTIVE
PAYABLE_STATUSES = frozenset({
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.PAST_DUE,
    SubscriptionStatus.TRIAL,
})


def map_external_status(status: str, cancel_at_period_end: bool = False) -> Optional[SubscriptionStatus]:
    """Map a provider subscription status onto an internal state, or None if unknown."""
    mapped = EXTERNAL_STATUS_MAP.get((status or '').lower())
    if mapped == SubscriptionStatus.ACTIVE and cancel_at_period_end:
        return SubscriptionStatus.CANCELED
    return mapped


class TransitionOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


@dataclass(frozen=True)
class TransitionResult:
    """Typed result of one reconciler call."""
    outcome: TransitionOutcome
    account_id: Optional[str] = None
    previous_status: Optional[SubscriptionStatus] = None
    status: Optional[SubscriptionStatus] = None
    reason: str = ''

    @property
    def applied(self) -> bool:
        return self.outcome == TransitionOutcome.APPLIED

    def to_dict(self) -> dict:
        return {
            'status': self.outcome.value,
            'account_id': self.account_id,
            'previous_status': self.previous_status.value if self.previous_status else None,
            'subscription_status': self.status.value if self.status else None,
            'reason': self.reason,
        }


def _ignored(reason: str, account_id: Optional[str] = None) -> TransitionResult:
    return TransitionResult(TransitionOutcome.IGNORED, account_id=account_id, reason=reason)


def _duplicate(reason: str, account_id: Optional[str] = None) -> TransitionResult:
    return TransitionResult(TransitionOutcome.DUPLICATE, account_id=account_id, reason=reason)


class SubscriptionReconciler:
    """
    Applies subscription transitions to the ledger store.

    Each public method is one transition and returns a TransitionResult.
    Errors from the taxonomy in billing.shared.exceptions are raised before
    anything is committed.

    Usage:
        reconciler = SubscriptionReconciler(async_db_session, catalog, cache, settings)
        result = await reconciler.apply(event)
        if result.outcome == TransitionOutcome.DUPLICATE:
            ...
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        catalog: PlanCatalog,
        cache: SnapshotCache,
        config: Settings,
        clock: Callable[[], datetime] = timezone.now,
    ):
        self._session_factory = session_factory
        self._catalog = catalog
        self._cache = cache
        self._free_period = timedelta(days=config.FREE_PERIOD_DAYS)
        self._trial_period = timedelta(days=config.TRIAL_DAYS)
        self._clock = clock
        self._handlers: Dict[type, Callable[..., Awaitable[TransitionResult]]] = {
            CheckoutCompleted: self.checkout_completed,
            SubscriptionUpdated: self.subscription_updated,
            SubscriptionDeleted: self.subscription_deleted,
            InvoicePaid: self.invoice_paid,
            InvoiceFailed: self.invoice_failed,
        }

    # =========================================================================
    # TRANSACTION SCOPE
    # =========================================================================

    async def _run(
        self,
        apply: Callable[[AsyncSession, datetime], Awaitable[TransitionResult]],
        idempotency_key: Optional[str] = None,
    ) -> TransitionResult:
        now = self._clock()
        try:
            async with transaction(self._session_factory) as db:
                if await repository.event_applied(db, idempotency_key):
                    logger.info(f"[RECONCILER] Duplicate delivery {idempotency_key}, skipping")
                    return _duplicate('already_applied')
                result = await apply(db, now)
        except PersistenceError as e:
            # A concurrent delivery of the same event won the unique-key race
            if idempotency_key and isinstance(e.__cause__, IntegrityError):
                async with self._session_factory() as db:
                    if await repository.event_applied(db, idempotency_key):
                        logger.info(f"[RECONCILER] Concurrent duplicate {idempotency_key}, skipping")
                        return _duplicate('already_applied')
            raise

        if result.applied and result.account_id:
            await self._cache.invalidate(result.account_id)
            logger.info(
                f"[RECONCILER] {result.account_id}: {result.reason} "
                f"{result.previous_status.value if result.previous_status else None} -> {result.status.value}"
            )
        return result

    async def _record(
        self,
        db: AsyncSession,
        subscription: Subscription,
        previous_status: Optional[SubscriptionStatus],
        reason: str,
        source: EventSource,
        now: datetime,
        idempotency_key: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> TransitionResult:
        await repository.append_event(
            db,
            subscription=subscription,
            previous_status=previous_status,
            reason=reason,
            source=source,
            now=now,
            idempotency_key=idempotency_key,
            metadata=metadata,
        )
        return TransitionResult(
            TransitionOutcome.APPLIED,
            account_id=subscription.account_id,
            previous_status=previous_status,
            status=subscription.status,
            reason=reason,
        )

    async def _resolve_account(
        self,
        db: AsyncSession,
        account_id: Optional[str],
        subscription_id: Optional[str],
        customer_id: Optional[str],
    ) -> Optional[str]:
        if account_id:
            return account_id
        return await repository.find_account_id_by_external(db, subscription_id, customer_id)

    @staticmethod
    def _is_stale(subscription: Subscription, subscription_id: Optional[str], created: Optional[datetime]) -> Optional[str]:
        if subscription_id and subscription.external_subscription_id and subscription.external_subscription_id != subscription_id:
            return 'stale_subscription'
        if created and subscription.last_external_event_at and created < subscription.last_external_event_at:
            return 'out_of_order'
        return None

    @staticmethod
    def _touch_external(subscription: Subscription, event_type: str, status: Optional[str], created: Optional[datetime]) -> None:
        subscription.last_external_event_type = event_type
        if status:
            subscription.last_external_status = status
        if created and (subscription.last_external_event_at is None or created > subscription.last_external_event_at):
            subscription.last_external_event_at = created

    # =========================================================================
    # INTERNAL COMMANDS
    # =========================================================================

    async def activate_free(self, account_id: str, email: Optional[str] = None) -> TransitionResult:
        """
        Put the account on the FREE plan and grant the free allotment.

        Repeated calls within the current free period are no-ops: the grant is
        skipped when the latest RENEWAL row already belongs to the period.
        """
        free_plan = self._catalog.free_plan

        async def apply(db: AsyncSession, now: datetime) -> TransitionResult:
            account = await repository.get_or_create_account(db, account_id, email)
            subscription = await repository.get_subscription(db, account_id, for_update=True)

            if (
                subscription is not None
                and subscription.plan_id == free_plan.id
                and subscription.status == SubscriptionStatus.ACTIVE
                and subscription.current_period_end
                and subscription.current_period_end > now
            ):
                last_grant = await ledger.latest_grant(db, account_id, CreditTransactionType.RENEWAL)
                if last_grant and subscription.current_period_start and last_grant.created_at >= subscription.current_period_start:
                    return _duplicate('free_plan_already_active', account_id)

            return await self._grant_free_plan(db, account, subscription, now)

        return await self._run(apply)

    async def _grant_free_plan(
        self,
        db: AsyncSession,
        account: Account,
        subscription: Optional[Subscription],
        now: datetime,
    ) -> TransitionResult:
        free_plan = self._catalog.free_plan
        previous = subscription.status if subscription else None
        if subscription is None:
            subscription = Subscription(account_id=account.id, plan_id=free_plan.id)
            db.add(subscription)

        subscription.plan_id = free_plan.id
        subscription.status = SubscriptionStatus.ACTIVE
        subscription.current_period_start = now
        subscription.current_period_end = now + self._free_period
        subscription.cancel_at_period_end = False
        subscription.trial_end = None
        subscription.billing_duration = 1
        account.active_plan_id = free_plan.id
        await db.flush()

        await ledger.grant_credits(
            db, account, free_plan.credits, CreditTransactionType.RENEWAL, 'Free plan credits', now
        )
        return await self._record(db, subscription, previous, 'free_plan_activated', EventSource.INTERNAL, now)

    async def start_trial(self, account_id: str, plan_id: str, email: Optional[str] = None) -> TransitionResult:
        """
        Start a trial of a paid plan.

        Raises:
            ValidationError: Unknown or free plan
            AlreadySubscribedError: The account already has a subscription
        """
        plan = self._catalog.get_plan(plan_id)
        if plan.is_free:
            raise ValidationError(f"Plan '{plan.id}' has no trial", code="TRIAL_NOT_AVAILABLE", details={'plan_id': plan.id})

        async def apply(db: AsyncSession, now: datetime) -> TransitionResult:
            account = await repository.get_or_create_account(db, account_id, email)
            if await repository.get_subscription(db, account_id) is not None:
                raise AlreadySubscribedError(account_id)

            trial_end = now + self._trial_period
            subscription = Subscription(
                account_id=account_id,
                plan_id=plan.id,
                status=SubscriptionStatus.TRIAL,
                current_period_start=now,
                current_period_end=trial_end,
                trial_end=trial_end,
            )
            db.add(subscription)
            account.active_plan_id = plan.id
            await db.flush()

            await ledger.grant_credits(
                db, account, plan.credits, CreditTransactionType.TRIAL_GRANT, f'{plan.display_name} trial credits', now
            )
            return await self._record(
                db, subscription, None, 'trial_started', EventSource.INTERNAL, now,
                metadata={'plan_id': plan.id, 'trial_end': trial_end.isoformat()},
            )

        return await self._run(apply)

    async def cancel(self, account_id: str) -> TransitionResult:
        """
        Schedule cancellation at period end (ACTIVE -> CANCELED).

        Raises:
            NotFoundError: No subscription
            ConflictError: Free plan, or already canceled
            NotCancelableError: Subscription is not ACTIVE
        """
        async def apply(db: AsyncSession, now: datetime) -> TransitionResult:
            subscription = await self._locked_subscription(db, account_id)
            if subscription.plan_id == FREE_PLAN_ID:
                raise ConflictError("Nothing to cancel on the free plan", code="NOTHING_TO_CANCEL", account_id=account_id)
            if subscription.status == SubscriptionStatus.CANCELED:
                raise ConflictError("Cancellation is already pending", code="ALREADY_CANCELED", account_id=account_id)
            if subscription.status != SubscriptionStatus.ACTIVE:
                raise NotCancelableError(account_id, f"Cannot cancel a {subscription.status.value} subscription")

            previous = subscription.status
            subscription.status = SubscriptionStatus.CANCELED
            subscription.cancel_at_period_end = True
            return await self._record(
                db, subscription, previous, 'cancel_requested', EventSource.INTERNAL, now,
                metadata={'effective_at': subscription.current_period_end.isoformat() if subscription.current_period_end else None},
            )

        return await self._run(apply)

    async def resume(self, account_id: str) -> TransitionResult:
        """
        Undo a pending cancellation (CANCELED -> ACTIVE).

        Raises:
            NotFoundError: No subscription
            NotCancelableError: No cancellation is pending, or the period already ended
        """
        async def apply(db: AsyncSession, now: datetime) -> TransitionResult:
            subscription = await self._locked_subscription(db, account_id)
            if subscription.status != SubscriptionStatus.CANCELED or not subscription.cancel_at_period_end:
                raise NotCancelableError(account_id)
            if effective_status(subscription, now) == SubscriptionStatus.EXPIRED:
                raise NotCancelableError(account_id, "Subscription period has already ended")

            previous = subscription.status
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.cancel_at_period_end = False
            return await self._record(db, subscription, previous, 'resume_requested', EventSource.INTERNAL, now)

        return await self._run(apply)

    async def expire_lapsed(self) -> List[TransitionResult]:
        """Move trials past trial_end and cancellations past period end to EXPIRED."""
        async with self._session_factory() as db:
            account_ids = await repository.list_lapsed_subscriptions(db, self._clock())

        results = []
        for account_id in account_ids:
            results.append(await self._expire(account_id))
        if account_ids:
            logger.info(f"[RECONCILER] Expired {sum(1 for r in results if r.applied)} lapsed subscriptions")
        return results

    async def _expire(self, account_id: str) -> TransitionResult:
        async def apply(db: AsyncSession, now: datetime) -> TransitionResult:
            account = await repository.lock_account(db, account_id)
            subscription = await repository.get_subscription(db, account_id, for_update=True)
            if account is None or subscription is None:
                return _ignored('no_subscription', account_id)
            if subscription.status not in (SubscriptionStatus.TRIAL, SubscriptionStatus.CANCELED):
                return _ignored('not_lapsable', account_id)
            if effective_status(subscription, now) != SubscriptionStatus.EXPIRED:
                return _ignored('not_lapsed', account_id)

            previous = subscription.status
            reason = 'trial_expired' if previous == SubscriptionStatus.TRIAL else 'period_ended'
            subscription.status = SubscriptionStatus.EXPIRED
            subscription.cancel_at_period_end = False
            account.active_plan_id = FREE_PLAN_ID
            return await self._record(db, subscription, previous, reason, EventSource.INTERNAL, now)

        return await self._run(apply)

    async def _locked_subscription(self, db: AsyncSession, account_id: str) -> Subscription:
        account = await repository.lock_account(db, account_id)
        subscription = await repository.get_subscription(db, account_id, for_update=True) if account else None
        if subscription is None:
            raise NotFoundError("No subscription found", account_id=account_id)
        return subscription

    # =========================================================================
    # CREDIT COMMANDS
    # =========================================================================

    async def record_usage(self, account_id: str, amount: int, description: str = 'Usage') -> CreditTransaction:
        """
        Consume credits.

        An account that was never provisioned is put on the FREE plan in the
        same transaction, so usage sees the allotment its default snapshot
        advertises.

        Raises:
            ValidationError: amount is not a positive integer (checked before any I/O)
            InsufficientCreditsError: Not enough remaining credits, nothing written
        """
        ledger.validate_usage_amount(amount)
        try:
            row = await self._record_usage(account_id, amount, description)
        except PersistenceError as e:
            # A concurrent first use created the account; it exists now
            if not isinstance(e.__cause__, IntegrityError):
                raise
            row = await self._record_usage(account_id, amount, description)
        await self._cache.invalidate(account_id)
        logger.info(f"[RECONCILER] Recorded usage of {amount} credits for {account_id}, {row.resulting_credits} remaining")
        return row

    async def _record_usage(self, account_id: str, amount: int, description: str) -> CreditTransaction:
        now = self._clock()
        async with transaction(self._session_factory) as db:
            account = await repository.lock_account(db, account_id)
            if account is None:
                account = await repository.get_or_create_account(db, account_id)
                await self._grant_free_plan(db, account, None, now)
                logger.info(f"[RECONCILER] Provisioned free plan for {account_id} on first usage")
            return await ledger.record_usage(db, account, amount, description, now)

    async def add_credits(self, account_id: str, amount: int, reason: str = 'Manual adjustment') -> CreditTransaction:
        """
        Manual allowance adjustment.

        Raises:
            NotFoundError: Unknown account
            ValidationError: Zero amount, or total would drop below used
        """
        now = self._clock()
        async with transaction(self._session_factory) as db:
            account = await repository.lock_account(db, account_id)
            if account is None:
                raise NotFoundError("Account not found", account_id=account_id)
            row = await ledger.adjust_credits(db, account, amount, reason, now)
        await self._cache.invalidate(account_id)
        logger.info(f"[RECONCILER] Adjusted credits for {account_id} by {amount:+d}")
        return row

    # =========================================================================
    # PROVIDER EVENTS
    # =========================================================================

    async def apply(self, event: DomainEvent) -> TransitionResult:
        """Dispatch a verified provider event to its transition."""
        if isinstance(event, IgnoredEvent):
            logger.info(f"[RECONCILER] Ignoring event {event.event_id} of type {event.event_type}")
            return _ignored(f'unhandled:{event.event_type}')
        handler = self._handlers.get(type(event))
        if handler is None:
            raise TypeError(f"Unsupported event: {type(event).__name__}")
        return await handler(event)

    async def checkout_completed(self, event: CheckoutCompleted) -> TransitionResult:
        """
        Authoritative activation of a paid plan (any -> ACTIVE).

        Grants the plan allotment and resets usage, once per checkout session.
        """
        plan = self._catalog.get_plan(event.plan_id)
        if plan.is_free:
            raise ValidationError("Checkout cannot activate the free plan", details={'plan_id': plan.id})

        async def apply(db: AsyncSession, now: datetime) -> TransitionResult:
            account = await repository.get_or_create_account(db, event.account_id)
            subscription = await repository.get_subscription(db, event.account_id, for_update=True)
            previous = subscription.status if subscription else None
            if subscription is None:
                subscription = Subscription(account_id=event.account_id, plan_id=plan.id)
                db.add(subscription)

            period_start = event.period_start or now
            subscription.plan_id = plan.id
            subscription.status = SubscriptionStatus.ACTIVE
            subscription.current_period_start = period_start
            subscription.current_period_end = event.period_end or period_start + timedelta(days=DAYS_PER_MONTH * event.duration)
            subscription.cancel_at_period_end = False
            subscription.trial_end = None
            subscription.canceled_at = None
            subscription.billing_duration = event.duration
            subscription.external_customer_id = event.customer_id or subscription.external_customer_id
            subscription.external_subscription_id = event.subscription_id or subscription.external_subscription_id
            subscription.external_price_id = event.price_id or subscription.external_price_id
            self._touch_external(subscription, 'checkout.session.completed', 'complete', event.created)
            account.active_plan_id = plan.id
            await db.flush()

            await ledger.grant_credits(
                db, account, plan.credits, CreditTransactionType.RENEWAL, f'{plan.display_name} plan credits', now
            )
            return await self._record(
                db, subscription, previous, 'checkout_completed', EventSource.EXTERNAL, now,
                idempotency_key=event.idempotency_key,
                metadata={
                    'event_id': event.event_id,
                    'session_id': event.session_id,
                    'plan_id': plan.id,
                    'duration': event.duration,
                },
            )

        return await self._run(apply, event.idempotency_key)

    async def subscription_updated(self, event: SubscriptionUpdated) -> TransitionResult:
        """
        Mirror the provider's subscription state. No credit side effects.

        Also used for reconciliation pulls, which carry no event id and are
        always applied.
        """
        async def apply(db: AsyncSession, now: datetime) -> TransitionResult:
            account_id = await self._resolve_account(db, event.account_id, event.subscription_id, event.customer_id)
            account = await repository.lock_account(db, account_id) if account_id else None
            subscription = await repository.get_subscription(db, account_id, for_update=True) if account else None
            if subscription is None:
                logger.warning(f"[RECONCILER] No local subscription for {event.subscription_id}")
                return _ignored('unknown_subscription', account_id)
            stale = self._is_stale(subscription, event.subscription_id, event.created)
            if stale:
                logger.info(f"[RECONCILER] Ignoring {stale} update {event.event_id} for {account_id}")
                return _ignored(stale, account_id)

            new_status = map_external_status(event.status, event.cancel_at_period_end)
            if new_status is None:
                logger.warning(f"[RECONCILER] Unknown provider status '{event.status}' for {account_id}")
                return _ignored(f'unknown_status:{event.status}', account_id)

            previous = subscription.status
            subscription.status = new_status
            subscription.cancel_at_period_end = event.cancel_at_period_end
            subscription.external_subscription_id = event.subscription_id
            subscription.external_customer_id = event.customer_id or subscription.external_customer_id
            if event.period_start:
                subscription.current_period_start = event.period_start
            if event.period_end:
                subscription.current_period_end = event.period_end
            if event.trial_end:
                subscription.trial_end = event.trial_end
            if event.price_id:
                subscription.external_price_id = event.price_id
                match = self._catalog.get_plan_by_price_id(event.price_id)
                if match:
                    subscription.plan_id, subscription.billing_duration = match[0].id, match[1]
            if new_status == SubscriptionStatus.INACTIVE:
                subscription.canceled_at = subscription.canceled_at or now
            self._touch_external(subscription, 'customer.subscription.updated', event.status, event.created)
            account.active_plan_id = subscription.plan_id if new_status in USABLE_STATUSES else FREE_PLAN_ID

            return await self._record(
                db, subscription, previous, f'external_status:{event.status}', EventSource.EXTERNAL, now,
                idempotency_key=event.idempotency_key,
                metadata={'event_id': event.event_id, 'subscription_id': event.subscription_id},
            )

        return await self._run(apply, event.idempotency_key)

    async def subscription_deleted(self, event: SubscriptionDeleted) -> TransitionResult:
        """The provider ended the subscription (any -> INACTIVE). Balance is kept."""
        async def apply(db: AsyncSession, now: datetime) -> TransitionResult:
            account_id = await self._resolve_account(db, event.account_id, event.subscription_id, event.customer_id)
            account = await repository.lock_account(db, account_id) if account_id else None
            subscription = await repository.get_subscription(db, account_id, for_update=True) if account else None
            if subscription is None:
                logger.warning(f"[RECONCILER] No local subscription for deleted {event.subscription_id}")
                return _ignored('unknown_subscription', account_id)
            stale = self._is_stale(subscription, event.subscription_id, event.created)
            if stale:
                logger.info(f"[RECONCILER] Ignoring {stale} deletion {event.event_id} for {account_id}")
                return _ignored(stale, account_id)

            previous = subscription.status
            subscription.status = SubscriptionStatus.INACTIVE
            subscription.cancel_at_period_end = False
            subscription.canceled_at = now
            self._touch_external(subscription, 'customer.subscription.deleted', 'canceled', event.created)
            account.active_plan_id = FREE_PLAN_ID

            return await self._record(
                db, subscription, previous, 'subscription_deleted', EventSource.EXTERNAL, now,
                idempotency_key=event.idempotency_key,
                metadata={'event_id': event.event_id, 'subscription_id': event.subscription_id},
            )

        return await self._run(apply, event.idempotency_key)

    async def invoice_paid(self, event: InvoicePaid) -> TransitionResult:
        """
        Invoice payment succeeded (ACTIVE|PAST_DUE|TRIAL -> ACTIVE).

        Only renewal-cycle invoices grant credits. The initial invoice of a
        subscription is covered by checkout_completed. Invoices for a
        subscription in any other state are ignored.
        """
        async def apply(db: AsyncSession, now: datetime) -> TransitionResult:
            account_id = await self._resolve_account(db, None, event.subscription_id, event.customer_id)
            account = await repository.lock_account(db, account_id) if account_id else None
            subscription = await repository.get_subscription(db, account_id, for_update=True) if account else None
            if subscription is None:
                logger.warning(f"[RECONCILER] No local subscription for invoice {event.invoice_id}")
                return _ignored('unknown_subscription', account_id)
            stale = self._is_stale(subscription, event.subscription_id, event.created)
            if stale:
                logger.info(f"[RECONCILER] Ignoring {stale} paid invoice {event.invoice_id} for {account_id}")
                return _ignored(stale, account_id)
            if subscription.status not in PAYABLE_STATUSES:
                logger.info(f"[RECONCILER] Paid invoice for {account_id} in {subscription.status.value}, no transition")
                return _ignored(f'not_payable:{subscription.status.value}', account_id)

            previous = subscription.status
            subscription.status = SubscriptionStatus.ACTIVE
            if event.period_start:
                subscription.current_period_start = event.period_start
            if event.period_end:
                subscription.current_period_end = event.period_end
            self._touch_external(subscription, 'invoice.payment_succeeded', None, event.created)

            renewal = event.billing_reason in RENEWAL_BILLING_REASONS
            if renewal:
                match = self._catalog.get_plan_by_price_id(event.price_id)
                plan = match[0] if match else self._catalog.get_plan(subscription.plan_id)
                subscription.plan_id = plan.id
                account.active_plan_id = plan.id
                await db.flush()
                await ledger.grant_credits(
                    db, account, plan.credits, CreditTransactionType.RENEWAL, f'{plan.display_name} renewal credits', now
                )
            else:
                logger.info(f"[RECONCILER] Invoice {event.invoice_id} ({event.billing_reason}) grants no credits")

            return await self._record(
                db, subscription, previous, 'renewal_paid' if renewal else 'invoice_paid', EventSource.EXTERNAL, now,
                idempotency_key=event.idempotency_key,
                metadata={
                    'event_id': event.event_id,
                    'invoice_id': event.invoice_id,
                    'billing_reason': event.billing_reason,
                    'credits_granted': renewal,
                },
            )

        return await self._run(apply, event.idempotency_key)

    async def invoice_failed(self, event: InvoiceFailed) -> TransitionResult:
        """Invoice payment failed (ACTIVE -> PAST_DUE). No credit effect."""
        async def apply(db: AsyncSession, now: datetime) -> TransitionResult:
            account_id = await self._resolve_account(db, None, event.subscription_id, event.customer_id)
            account = await repository.lock_account(db, account_id) if account_id else None
            subscription = await repository.get_subscription(db, account_id, for_update=True) if account else None
            if subscription is None:
                logger.warning(f"[RECONCILER] No local subscription for failed invoice {event.invoice_id}")
                return _ignored('unknown_subscription', account_id)
            stale = self._is_stale(subscription, event.subscription_id, event.created)
            if stale:
                logger.info(f"[RECONCILER] Ignoring {stale} failed invoice {event.invoice_id} for {account_id}")
                return _ignored(stale, account_id)
            if subscription.status != SubscriptionStatus.ACTIVE:
                logger.info(f"[RECONCILER] Failed invoice for {account_id} in {subscription.status.value}, no transition")
                return _ignored(f'not_active:{subscription.status.value}', account_id)

            previous = subscription.status
            subscription.status = SubscriptionStatus.PAST_DUE
            self._touch_external(subscription, 'invoice.payment_failed', 'past_due', event.created)
            return await self._record(
                db, subscription, previous, 'payment_failed', EventSource.EXTERNAL, now,
                idempotency_key=event.idempotency_key,
                metadata={'event_id': event.event_id, 'invoice_id': event.invoice_id, 'attempt_count': event.attempt_count},
            )

        return await self._run(apply, event.idempotency_key)
