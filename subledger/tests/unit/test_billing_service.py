"""Unit tests for the billing facade (gateway mocked, real ledger store)."""

from unittest.mock import AsyncMock

import pytest

from subledger.billing.domain.events import IgnoredEvent, SubscriptionUpdated
from subledger.billing.domain.models import Account, SubscriptionStatus
from subledger.billing.shared.exceptions import (
    ConflictError,
    ExternalGatewayError,
    InsufficientCreditsError,
    NotFoundError,
    PlanNotFoundError,
    ValidationError,
)
from subledger.billing.subscriptions import CheckoutRedirect
from subledger.billing.subscriptions.service import BillingService
from subledger.database.db import transaction
from subledger.tests.factories import checkout_completed, subscription_deleted


class TestGetStatus:
    """Tests for snapshot reads."""

    @pytest.mark.asyncio
    async def test_unknown_account_reads_as_free(self, service, ledger_rows):
        snapshot = await service.get_status('acct_new')

        assert snapshot.to_dict() == {
            'account_id': 'acct_new',
            'plan_id': 'FREE',
            'status': 'ACTIVE',
            'credits': 50,
            'used_credits': 0,
            'remaining_credits': 50,
            'cancel_at_period_end': False,
            'current_period_start': None,
            'current_period_end': None,
            'trial_end': None,
            'is_subscribed': False,
        }
        assert await ledger_rows.account('acct_new') is None

    @pytest.mark.asyncio
    async def test_reads_within_ttl_are_identical(self, service, reconciler, session_factory):
        """A write that bypasses invalidation is not visible until refresh."""
        await reconciler.activate_free('acct_1')
        first = await service.get_status('acct_1')

        # Change the store underneath the cache
        async with transaction(session_factory) as db:
            account = await db.get(Account, 'acct_1')
            account.used_credits = 10

        second = await service.get_status('acct_1')
        refreshed = await service.refresh('acct_1')

        assert second == first
        assert second.to_dict() == first.to_dict()
        assert refreshed.used_credits == 10

    @pytest.mark.asyncio
    async def test_writes_invalidate_snapshot(self, service, reconciler):
        await reconciler.activate_free('acct_1')
        await service.get_status('acct_1')

        await service.record_usage('acct_1', 5)

        assert (await service.get_status('acct_1')).used_credits == 5
        assert await service.get_usage('acct_1') == {'used': 5, 'total': 50, 'remaining': 45}


class TestSubscribe:
    """Tests for subscribe."""

    @pytest.mark.asyncio
    async def test_free_plan_activates_synchronously(self, service, fake_gateway):
        snapshot = await service.subscribe('acct_1', 'free')

        assert (snapshot.plan_id, snapshot.status, snapshot.credits, snapshot.used_credits) == ('FREE', 'ACTIVE', 50, 0)
        fake_gateway.create_checkout_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_paid_plan_returns_checkout(self, service, fake_gateway, ledger_rows):
        result = await service.subscribe('acct_1', 'BASIC', 6, email='a@example.com')

        assert isinstance(result, CheckoutRedirect)
        assert result.to_dict() == {
            'checkout_url': 'https://checkout.stripe.test/c/pay/cs_test_1',
            'plan_id': 'BASIC',
            'duration': 6,
        }
        fake_gateway.create_customer.assert_awaited_once_with('acct_1', 'a@example.com')
        fake_gateway.create_checkout_session.assert_awaited_once_with('acct_1', 'BASIC', 6, 'cus_new')
        # Nothing is written until the checkout completes
        assert await ledger_rows.account('acct_1') is None

    @pytest.mark.asyncio
    async def test_stored_customer_is_reused(self, service, reconciler, fake_gateway):
        await reconciler.apply(checkout_completed('acct_1', customer_id='cus_existing'))
        await reconciler.apply(subscription_deleted())

        await service.subscribe('acct_1', 'PREMIUM', 1)

        fake_gateway.create_customer.assert_not_called()
        fake_gateway.create_checkout_session.assert_awaited_once_with('acct_1', 'PREMIUM', 1, 'cus_existing')

    @pytest.mark.asyncio
    async def test_bad_duration_rejected_before_gateway(self, service, fake_gateway):
        with pytest.raises(ValidationError):
            await service.subscribe('acct_1', 'BASIC', 3)
        fake_gateway.create_customer.assert_not_called()

    @pytest.mark.asyncio
    async def test_unknown_plan(self, service):
        with pytest.raises(PlanNotFoundError):
            await service.subscribe('acct_1', 'GOLD')

    @pytest.mark.asyncio
    async def test_free_plan_while_paid_plan_live(self, service, reconciler):
        await reconciler.apply(checkout_completed('acct_1'))

        with pytest.raises(ConflictError) as exc_info:
            await service.subscribe('acct_1', 'FREE')

        assert exc_info.value.code == 'PAID_PLAN_ACTIVE'

    @pytest.mark.asyncio
    async def test_paid_plan_while_provider_subscription_live(self, service, reconciler, fake_gateway):
        await reconciler.apply(checkout_completed('acct_1'))

        with pytest.raises(ConflictError) as exc_info:
            await service.subscribe('acct_1', 'PREMIUM', 1)

        assert exc_info.value.code == 'SUBSCRIPTION_ACTIVE'
        fake_gateway.create_customer.assert_not_called()
        fake_gateway.create_checkout_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_paid_plan_while_cancel_pending(self, service, reconciler, fake_gateway):
        await reconciler.apply(checkout_completed('acct_1'))
        await service.cancel('acct_1')

        with pytest.raises(ConflictError):
            await service.subscribe('acct_1', 'BASIC', 1)

        fake_gateway.create_checkout_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_trial_can_upgrade_to_checkout(self, service, fake_gateway):
        await service.start_trial('acct_1', 'BASIC')

        result = await service.subscribe('acct_1', 'BASIC', 1)

        assert isinstance(result, CheckoutRedirect)
        fake_gateway.create_checkout_session.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_gateway_failure_leaves_no_state(self, service, fake_gateway, ledger_rows):
        fake_gateway.create_checkout_session.side_effect = ExternalGatewayError("Payment provider call failed")

        with pytest.raises(ExternalGatewayError):
            await service.subscribe('acct_1', 'BASIC', 1)

        assert await ledger_rows.account('acct_1') is None

    @pytest.mark.asyncio
    async def test_start_trial(self, service):
        snapshot = await service.start_trial('acct_1', 'ULTIMATE')
        assert (snapshot.plan_id, snapshot.status, snapshot.credits) == ('ULTIMATE', 'TRIAL', 600)
        assert snapshot.is_subscribed


class TestCancelResume:
    """Tests for cancel and resume through the facade."""

    @pytest.mark.asyncio
    async def test_cancel_calls_provider_first(self, service, reconciler, fake_gateway):
        await reconciler.apply(checkout_completed('acct_1'))

        snapshot = await service.cancel('acct_1')

        fake_gateway.cancel_at_period_end.assert_awaited_once_with('sub_1')
        assert snapshot.status == 'CANCELED'
        assert snapshot.cancel_at_period_end

    @pytest.mark.asyncio
    async def test_provider_failure_commits_nothing(self, service, reconciler, fake_gateway, ledger_rows):
        await reconciler.apply(checkout_completed('acct_1'))
        fake_gateway.cancel_at_period_end.side_effect = ExternalGatewayError()

        with pytest.raises(ExternalGatewayError):
            await service.cancel('acct_1')

        assert (await ledger_rows.subscription('acct_1')).status == SubscriptionStatus.ACTIVE
        assert await ledger_rows.events('acct_1') == 1

    @pytest.mark.asyncio
    async def test_resume_reactivates_at_provider(self, service, reconciler, fake_gateway):
        await reconciler.apply(checkout_completed('acct_1'))
        await service.cancel('acct_1')

        snapshot = await service.resume('acct_1')

        fake_gateway.reactivate.assert_awaited_once_with('sub_1')
        assert snapshot.status == 'ACTIVE'
        assert not snapshot.cancel_at_period_end

    @pytest.mark.asyncio
    async def test_internal_trial_cancel_skips_provider(self, service, fake_gateway):
        await service.start_trial('acct_1', 'BASIC')
        with pytest.raises(ConflictError):
            await service.cancel('acct_1')
        fake_gateway.cancel_at_period_end.assert_not_called()

    @pytest.mark.asyncio
    async def test_cancel_unknown_account(self, service, fake_gateway):
        with pytest.raises(NotFoundError):
            await service.cancel('acct_missing')
        with pytest.raises(NotFoundError):
            await service.resume('acct_missing')
        fake_gateway.cancel_at_period_end.assert_not_called()


class TestUsage:
    """Tests for credit commands."""

    @pytest.mark.asyncio
    async def test_record_usage(self, service, reconciler):
        await reconciler.activate_free('acct_1')
        assert await service.record_usage('acct_1', 20) == {'recorded': 20, 'remaining': 30}

    @pytest.mark.asyncio
    async def test_unknown_account_spends_advertised_credits(self, service):
        snapshot = await service.get_status('acct_new')
        assert snapshot.remaining_credits == 50

        assert await service.record_usage('acct_new', 1) == {'recorded': 1, 'remaining': 49}
        assert (await service.get_status('acct_new')).remaining_credits == 49

    @pytest.mark.asyncio
    async def test_overdraw_leaves_balance(self, service, reconciler):
        await reconciler.activate_free('acct_1')

        with pytest.raises(InsufficientCreditsError):
            await service.record_usage('acct_1', 60)

        assert (await service.get_status('acct_1')).used_credits == 0

    @pytest.mark.asyncio
    async def test_add_credits(self, service, reconciler):
        await reconciler.activate_free('acct_1')
        assert await service.add_credits('acct_1', 25, 'Goodwill') == {'adjusted': 25, 'remaining': 75}

    @pytest.mark.asyncio
    async def test_billing_history_newest_first(self, service, reconciler):
        await reconciler.activate_free('acct_1')
        await service.record_usage('acct_1', 3, 'Report')

        history = await service.get_billing_history('acct_1')

        assert [(row['type'], row['amount'], row['resulting_credits']) for row in history] == [
            ('USAGE', -3, 47),
            ('RENEWAL', 50, 50),
        ]
        assert history[0]['description'] == 'Report'


class TestReconciliation:
    """Tests for provider pulls."""

    @pytest.mark.asyncio
    async def test_forced_refresh_applies_provider_state(self, service, reconciler, fake_gateway):
        await reconciler.apply(checkout_completed('acct_1'))
        fake_gateway.retrieve_subscription.return_value = SubscriptionUpdated(
            event_id=None, subscription_id='sub_1', status='past_due', customer_id='cus_1',
        )

        snapshot = await service.refresh('acct_1', force=True)

        fake_gateway.retrieve_subscription.assert_awaited_once_with('sub_1')
        assert snapshot.status == 'PAST_DUE'

    @pytest.mark.asyncio
    async def test_plain_refresh_does_not_pull(self, service, reconciler, fake_gateway):
        await reconciler.apply(checkout_completed('acct_1'))
        await service.refresh('acct_1')
        fake_gateway.retrieve_subscription.assert_not_called()

    @pytest.mark.asyncio
    async def test_forced_refresh_without_external_subscription(self, service, reconciler, fake_gateway):
        await reconciler.activate_free('acct_1')
        snapshot = await service.refresh('acct_1', force=True)
        fake_gateway.retrieve_subscription.assert_not_called()
        assert snapshot.plan_id == 'FREE'

    @pytest.mark.asyncio
    async def test_verify_checkout_then_webhook_is_duplicate(self, service, reconciler, fake_gateway, ledger_rows):
        event = checkout_completed('acct_1', event_id='cs_test_1')
        fake_gateway.retrieve_checkout_session.return_value = event

        snapshot = await service.verify_checkout('acct_1', 'cs_test_1')
        webhook = await reconciler.apply(checkout_completed('acct_1', event_id='evt_checkout_9'))

        assert (snapshot.plan_id, snapshot.credits) == ('BASIC', 60)
        assert webhook.outcome.value == 'duplicate'
        assert await ledger_rows.transactions('acct_1') == 1

    @pytest.mark.asyncio
    async def test_verify_incomplete_checkout(self, service, fake_gateway):
        fake_gateway.retrieve_checkout_session.return_value = IgnoredEvent('cs_test_1', 'checkout.session.completed')
        with pytest.raises(ConflictError) as exc_info:
            await service.verify_checkout('acct_1', 'cs_test_1')
        assert exc_info.value.code == 'CHECKOUT_INCOMPLETE'

    @pytest.mark.asyncio
    async def test_verify_other_accounts_checkout(self, service, fake_gateway, ledger_rows):
        fake_gateway.retrieve_checkout_session.return_value = checkout_completed('acct_other')
        with pytest.raises(NotFoundError):
            await service.verify_checkout('acct_1', 'cs_test_1')
        assert await ledger_rows.account('acct_other') is None

    @pytest.mark.asyncio
    async def test_verify_requires_session_id(self, service, fake_gateway):
        with pytest.raises(ValidationError):
            await service.verify_checkout('acct_1', '')
        fake_gateway.retrieve_checkout_session.assert_not_called()

    @pytest.mark.asyncio
    async def test_facade_delegates_expiry(self, session_factory, catalog, cache, test_settings, fake_gateway):
        reconciler = AsyncMock()
        reconciler.expire_lapsed.return_value = []
        service = BillingService(session_factory, reconciler, fake_gateway, catalog, cache, test_settings)

        assert await service.expire_lapsed() == []
        reconciler.expire_lapsed.assert_awaited_once()