"""Integration tests for POST /webhooks/payment (real signatures, real ledger store)."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from subledger.billing.shared.exceptions import PersistenceError
from subledger.tests.factories import checkout_session, encode, sign_payload, stripe_event

WEBHOOK_PATH = '/webhooks/payment'


async def deliver(client, event, secret=None):
    payload = encode(event)
    header = sign_payload(payload) if secret is None else sign_payload(payload, secret=secret)
    return await client.post(
        WEBHOOK_PATH,
        content=payload,
        headers={'Stripe-Signature': header, 'Content-Type': 'application/json'},
    )


def subscription_object(status='active', cancel_at_period_end=False):
    return {
        'id': 'sub_1',
        'object': 'subscription',
        'status': status,
        'customer': 'cus_1',
        'cancel_at_period_end': cancel_at_period_end,
        'metadata': {'account_id': 'acct_1'},
    }


def invoice_object(billing_reason='subscription_cycle', invoice_id='in_1', status='paid'):
    return {
        'id': invoice_id,
        'object': 'invoice',
        'status': status,
        'billing_reason': billing_reason,
        'customer': 'cus_1',
        'subscription': 'sub_1',
        'lines': {'data': [{'price': {'id': 'price_basic_monthly'}}]},
    }


@pytest.fixture
def app(app_factory):
    return app_factory()


class TestWebhookDelivery:
    """Tests for verified deliveries."""

    @pytest.mark.asyncio
    async def test_checkout_processed_then_duplicate(self, app, client_for, ledger_rows):
        client = await client_for(app)
        event = stripe_event('checkout.session.completed', checkout_session('acct_1'), 'evt_checkout')

        first = await deliver(client, event)
        second = await deliver(client, event)

        assert first.status_code == 200
        assert first.json()['status'] == 'processed'
        assert first.json()['subscription_status'] == 'ACTIVE'
        assert second.status_code == 200
        assert second.json()['status'] == 'duplicate'
        assert await ledger_rows.transactions('acct_1') == 1
        assert await ledger_rows.events('acct_1') == 1
        assert (await ledger_rows.account('acct_1')).total_credits == 60

    @pytest.mark.asyncio
    async def test_payment_lifecycle(self, app, client_for, ledger_rows):
        client = await client_for(app)
        await deliver(client, stripe_event('checkout.session.completed', checkout_session('acct_1'), 'evt_1'))
        await app.state.reconciler.record_usage('acct_1', 30)

        failed = await deliver(client, stripe_event('invoice.payment_failed', invoice_object(status='open'), 'evt_2'))
        assert failed.json()['subscription_status'] == 'PAST_DUE'

        paid = await deliver(client, stripe_event('invoice.paid', invoice_object(), 'evt_3'))
        assert paid.json()['subscription_status'] == 'ACTIVE'
        same_invoice = await deliver(client, stripe_event('invoice.payment_succeeded', invoice_object(), 'evt_4'))
        assert same_invoice.json()['status'] == 'duplicate'

        account = await ledger_rows.account('acct_1')
        assert (account.total_credits, account.used_credits) == (60, 0)
        assert await ledger_rows.events('acct_1') == 3

    @pytest.mark.asyncio
    async def test_subscription_updated_and_deleted(self, app, client_for, ledger_rows):
        client = await client_for(app)
        await deliver(client, stripe_event('checkout.session.completed', checkout_session('acct_1'), 'evt_1'))

        updated = await deliver(client, stripe_event(
            'customer.subscription.updated', subscription_object(cancel_at_period_end=True), 'evt_2'
        ))
        deleted = await deliver(client, stripe_event(
            'customer.subscription.deleted', subscription_object(status='canceled'), 'evt_3'
        ))

        assert updated.json()['subscription_status'] == 'CANCELED'
        assert deleted.json()['subscription_status'] == 'INACTIVE'
        assert deleted.json()['previous_status'] == 'CANCELED'

    @pytest.mark.asyncio
    async def test_unhandled_type_is_ignored(self, app, client_for):
        client = await client_for(app)
        response = await deliver(client, stripe_event('customer.created', {'id': 'cus_1'}, 'evt_x'))

        assert response.status_code == 200
        assert response.json()['status'] == 'ignored'
        assert response.json()['reason'] == 'unhandled:customer.created'

    @pytest.mark.asyncio
    async def test_unknown_plan_is_ignored(self, app, client_for, ledger_rows):
        client = await client_for(app)
        response = await deliver(client, stripe_event(
            'checkout.session.completed', checkout_session('acct_1', plan_id='GOLD'), 'evt_gold'
        ))

        assert response.status_code == 200
        assert response.json() == {'status': 'ignored', 'reason': 'PLAN_NOT_FOUND'}
        assert await ledger_rows.account('acct_1') is None

    @pytest.mark.asyncio
    async def test_event_for_unknown_subscription(self, app, client_for):
        client = await client_for(app)
        response = await deliver(client, stripe_event('invoice.payment_failed', invoice_object(), 'evt_orphan'))
        assert response.status_code == 200
        assert response.json()['reason'] == 'unknown_subscription'


class TestWebhookRejection:
    """Tests for rejected deliveries."""

    @pytest.mark.asyncio
    async def test_bad_signature_is_400(self, app, client_for, ledger_rows):
        client = await client_for(app)
        event = stripe_event('checkout.session.completed', checkout_session('acct_1'), 'evt_forged')

        response = await deliver(client, event, secret='whsec_attacker')

        assert response.status_code == 400
        assert response.json()['error'] == 'INVALID_SIGNATURE'
        assert await ledger_rows.account('acct_1') is None

    @pytest.mark.asyncio
    async def test_missing_signature_is_400(self, app, client_for):
        client = await client_for(app)
        response = await client.post(WEBHOOK_PATH, content=b'{}')
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_persistence_failure_is_500(self, app, client_for):
        app.state.reconciler = MagicMock(apply=AsyncMock(side_effect=PersistenceError()))
        client = await client_for(app)

        response = await deliver(client, stripe_event('checkout.session.completed', checkout_session('acct_1'), 'evt_1'))

        assert response.status_code == 500
        assert response.json()['error'] == 'PERSISTENCE_ERROR'
