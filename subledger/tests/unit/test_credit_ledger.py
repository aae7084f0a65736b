"""Unit tests for credit ledger writes and replay."""

from datetime import timedelta

import pytest

from subledger.billing.credits import ledger
from subledger.billing.domain.models import Account, CreditTransaction, CreditTransactionType
from subledger.billing.shared.exceptions import InsufficientCreditsError, ValidationError
from subledger.database.db import transaction


async def _account(session_factory, account_id='acct_1', total=0, used=0):
    async with transaction(session_factory) as db:
        db.add(Account(id=account_id, total_credits=total, used_credits=used))


class TestGrantCredits:
    """Tests for allowance grants."""

    @pytest.mark.asyncio
    async def test_grant_resets_usage(self, session_factory, ledger_rows, clock):
        await _account(session_factory, total=50, used=20)

        async with transaction(session_factory) as db:
            account = await db.get(Account, 'acct_1')
            row = await ledger.grant_credits(db, account, 60, CreditTransactionType.RENEWAL, 'Basic', clock())

        assert row.amount == 10
        assert row.resulting_credits == 60
        account = await ledger_rows.account('acct_1')
        assert (account.total_credits, account.used_credits) == (60, 0)

    @pytest.mark.asyncio
    async def test_usage_type_is_not_a_grant(self, session_factory, clock):
        await _account(session_factory)
        with pytest.raises(ValueError):
            async with transaction(session_factory) as db:
                account = await db.get(Account, 'acct_1')
                await ledger.grant_credits(db, account, 10, CreditTransactionType.USAGE, 'x', clock())


class TestRecordUsage:
    """Tests for credit consumption."""

    @pytest.mark.asyncio
    async def test_usage_increments_used(self, session_factory, ledger_rows, clock):
        await _account(session_factory, total=50)

        async with transaction(session_factory) as db:
            account = await db.get(Account, 'acct_1')
            row = await ledger.record_usage(db, account, 5, 'Usage', clock())

        assert row.amount == -5
        assert row.resulting_credits == 45
        assert (await ledger_rows.account('acct_1')).used_credits == 5

    @pytest.mark.asyncio
    async def test_insufficient_credits_writes_nothing(self, session_factory, ledger_rows, clock):
        await _account(session_factory, total=50, used=0)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            async with transaction(session_factory) as db:
                account = await db.get(Account, 'acct_1')
                await ledger.record_usage(db, account, 60, 'Usage', clock())

        assert exc_info.value.required == 60
        assert exc_info.value.available == 50
        assert exc_info.value.details['shortfall'] == 10
        assert (await ledger_rows.account('acct_1')).used_credits == 0
        assert await ledger_rows.transactions('acct_1') == 0

    @pytest.mark.parametrize('amount', [0, -5, 1.5, True, '3'])
    def test_invalid_amounts_rejected(self, amount):
        with pytest.raises(ValidationError) as exc_info:
            ledger.validate_usage_amount(amount)
        assert exc_info.value.code == 'INVALID_AMOUNT'


class TestAdjustCredits:
    """Tests for manual adjustments."""

    @pytest.mark.asyncio
    async def test_adjust_keeps_usage(self, session_factory, ledger_rows, clock):
        await _account(session_factory, total=50, used=10)

        async with transaction(session_factory) as db:
            account = await db.get(Account, 'acct_1')
            row = await ledger.adjust_credits(db, account, 25, 'Goodwill', clock())

        assert row.type == CreditTransactionType.MANUAL_ADJUST
        assert row.resulting_credits == 65
        account = await ledger_rows.account('acct_1')
        assert (account.total_credits, account.used_credits) == (75, 10)

    @pytest.mark.asyncio
    async def test_adjust_below_used_rejected(self, session_factory, clock):
        await _account(session_factory, total=50, used=40)

        with pytest.raises(ValidationError):
            async with transaction(session_factory) as db:
                account = await db.get(Account, 'acct_1')
                await ledger.adjust_credits(db, account, -20, 'Clawback', clock())

    @pytest.mark.asyncio
    async def test_zero_adjustment_rejected(self, session_factory, clock):
        await _account(session_factory, total=50)

        with pytest.raises(ValidationError):
            async with transaction(session_factory) as db:
                account = await db.get(Account, 'acct_1')
                await ledger.adjust_credits(db, account, 0, 'Noop', clock())


class TestLedgerOrdering:
    """Tests for history order and replay."""

    @pytest.mark.asyncio
    async def test_rows_in_same_instant_keep_commit_order(self, session_factory, ledger_rows, clock):
        await _account(session_factory)
        now = clock()

        async with transaction(session_factory) as db:
            account = await db.get(Account, 'acct_1')
            await ledger.grant_credits(db, account, 50, CreditTransactionType.RENEWAL, 'Free', now)
            await ledger.record_usage(db, account, 5, 'first', now)
            await ledger.record_usage(db, account, 7, 'second', now)

        rows = await ledger_rows.ledger_rows('acct_1')
        assert [row.description for row in rows] == ['Free', 'first', 'second']
        assert rows[0].created_at < rows[1].created_at < rows[2].created_at

        async with session_factory() as db:
            newest_first = await ledger.list_transactions(db, 'acct_1', limit=2)
        assert [row.description for row in newest_first] == ['second', 'first']

    @pytest.mark.asyncio
    async def test_replay_matches_balance(self, session_factory, ledger_rows, clock):
        await _account(session_factory)

        async with transaction(session_factory) as db:
            account = await db.get(Account, 'acct_1')
            await ledger.grant_credits(db, account, 50, CreditTransactionType.RENEWAL, 'Free', clock())
            await ledger.record_usage(db, account, 30, 'Usage', clock())
            await ledger.grant_credits(db, account, 60, CreditTransactionType.RENEWAL, 'Basic', clock())
            await ledger.record_usage(db, account, 12, 'Usage', clock())
            await ledger.adjust_credits(db, account, 5, 'Goodwill', clock())

        account = await ledger_rows.account('acct_1')
        rows = await ledger_rows.ledger_rows('acct_1')
        assert ledger.replay_ledger(rows) == (account.total_credits, account.used_credits) == (65, 12)

    def test_replay_orders_by_created_at(self, clock):
        now = clock()
        rows = [
            CreditTransaction(
                account_id='acct_1', amount=-5, resulting_credits=45,
                type=CreditTransactionType.USAGE, created_at=now + timedelta(seconds=1),
            ),
            CreditTransaction(
                account_id='acct_1', amount=50, resulting_credits=50,
                type=CreditTransactionType.RENEWAL, created_at=now,
            ),
        ]
        assert ledger.replay_ledger(rows) == (50, 5)
