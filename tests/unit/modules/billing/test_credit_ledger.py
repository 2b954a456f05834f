"""Credit ledger tests: pools, caps, idempotency, clawbacks and concurrency."""

import asyncio
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from src.api.core.exceptions.base import UpscalerException
from src.api.core.messages import MessageCode
from src.database.models import (
    Account,
    CreditPool,
    CreditTransaction,
    LedgerManagedFieldError,
    TransactionType,
)
from src.modules.billing.credits.ledger import (
    AUTO_POOL,
    CreditLedgerService,
    InsufficientCreditsError,
    NoCreditsFoundError,
)
from tests.utils.assertions import assert_upscaler_exception


async def _transactions(db_session, account_id) -> list[CreditTransaction]:
    result = await db_session.execute(
        select(CreditTransaction)
        .where(CreditTransaction.account_id == account_id)
        .order_by(CreditTransaction.created_at)
    )
    return list(result.scalars().all())


class TestGrantToPool:
    @pytest.fixture
    def ledger(self, db_session):
        return CreditLedgerService(db_session)

    @pytest.mark.asyncio
    async def test_grant_adds_to_pool_and_logs_row(self, ledger, db_session, account_factory):
        account = await account_factory.create_async(db_session)

        result = await ledger.grant_to_pool(
            account.id, 200, CreditPool.SUBSCRIPTION, reference_id="invoice_in_1"
        )

        assert result.applied == 200
        assert result.new_balance == 200
        balance = await ledger.get_balance(account.id)
        assert (balance.subscription, balance.purchased) == (200, 0)

        rows = await _transactions(db_session, account.id)
        assert len(rows) == 1
        assert rows[0].amount == 200
        assert rows[0].transaction_type == TransactionType.SUBSCRIPTION
        assert rows[0].credit_pool == CreditPool.SUBSCRIPTION
        assert rows[0].reference_id == "invoice_in_1"

    @pytest.mark.asyncio
    async def test_purchased_pool_grant_defaults_to_purchase_type(
        self, ledger, db_session, account_factory
    ):
        account = await account_factory.create_async(db_session)

        await ledger.grant_to_pool(account.id, 50, CreditPool.PURCHASED, reference_id="pi_1")

        rows = await _transactions(db_session, account.id)
        assert rows[0].transaction_type == TransactionType.PURCHASE
        assert (await ledger.get_balance(account.id)).purchased == 50

    @pytest.mark.asyncio
    async def test_grant_is_capped_at_max_rollover(self, ledger, db_session, account_factory):
        account = await account_factory.create_async(
            db_session, subscription_credits_balance=1100
        )

        result = await ledger.grant_to_pool(
            account.id,
            200,
            CreditPool.SUBSCRIPTION,
            reference_id="invoice_in_cap",
            max_rollover=1200,
        )

        assert result.requested == 200
        assert result.applied == 100
        assert (await ledger.get_balance(account.id)).subscription == 1200
        rows = await _transactions(db_session, account.id)
        assert [row.amount for row in rows] == [100]

    @pytest.mark.asyncio
    async def test_grant_at_cap_writes_nothing(self, ledger, db_session, account_factory):
        account = await account_factory.create_async(
            db_session, subscription_credits_balance=1200, purchased_credits_balance=30
        )

        result = await ledger.grant_to_pool(
            account.id,
            200,
            CreditPool.SUBSCRIPTION,
            reference_id="invoice_in_full",
            max_rollover=1200,
        )

        assert result.applied == 0
        assert await _transactions(db_session, account.id) == []
        balance = await ledger.get_balance(account.id)
        assert (balance.subscription, balance.purchased) == (1200, 30)

    @pytest.mark.asyncio
    async def test_rollover_cap_ignores_purchased_pool(self, ledger, db_session, account_factory):
        account = await account_factory.create_async(
            db_session, subscription_credits_balance=0, purchased_credits_balance=5000
        )

        result = await ledger.grant_to_pool(
            account.id, 200, CreditPool.SUBSCRIPTION, reference_id="invoice_x", max_rollover=1200
        )

        assert result.applied == 200

    @pytest.mark.asyncio
    async def test_idempotent_grant_applies_once(self, ledger, db_session, account_factory):
        account = await account_factory.create_async(db_session)

        first = await ledger.grant_to_pool(
            account.id, 200, CreditPool.SUBSCRIPTION, reference_id="invoice_dup", idempotent=True
        )
        second = await ledger.grant_to_pool(
            account.id, 200, CreditPool.SUBSCRIPTION, reference_id="invoice_dup", idempotent=True
        )

        assert first.duplicate is False
        assert second.duplicate is True
        assert second.applied == 0
        assert (await ledger.get_balance(account.id)).subscription == 200
        assert len(await _transactions(db_session, account.id)) == 1

    @pytest.mark.asyncio
    async def test_non_positive_amount_is_rejected(self, ledger, db_session, account_factory):
        account = await account_factory.create_async(db_session)

        for amount in (0, -5):
            with pytest.raises(UpscalerException) as exc_info:
                await ledger.grant_to_pool(
                    account.id, amount, CreditPool.SUBSCRIPTION, reference_id="bad"
                )
            assert_upscaler_exception(exc_info.value, MessageCode.INVALID_CREDIT_AMOUNT, 400)

    @pytest.mark.asyncio
    async def test_mixed_pool_is_not_a_grant_target(self, ledger, db_session, account_factory):
        account = await account_factory.create_async(db_session)

        with pytest.raises(UpscalerException):
            await ledger.grant_to_pool(account.id, 10, CreditPool.MIXED, reference_id="bad")

    @pytest.mark.asyncio
    async def test_unknown_account(self, ledger):
        with pytest.raises(UpscalerException) as exc_info:
            await ledger.grant_to_pool(uuid4(), 10, CreditPool.SUBSCRIPTION, reference_id="x")

        assert_upscaler_exception(exc_info.value, MessageCode.ACCOUNT_NOT_FOUND, 404)


class TestConsume:
    @pytest.fixture
    def ledger(self, db_session):
        return CreditLedgerService(db_session)

    @pytest.mark.asyncio
    async def test_consumes_subscription_pool_first(self, ledger, db_session, account_factory):
        account = await account_factory.create_async(
            db_session, subscription_credits_balance=30, purchased_credits_balance=50
        )

        result = await ledger.consume(account.id, 40, reference_id="job_1")

        assert result.subscription_used == 30
        assert result.purchased_used == 10
        assert result.credit_pool == CreditPool.MIXED
        balance = await ledger.get_balance(account.id)
        assert (balance.subscription, balance.purchased) == (0, 40)

        rows = await _transactions(db_session, account.id)
        assert rows[0].amount == -40
        assert rows[0].transaction_type == TransactionType.USAGE

    @pytest.mark.asyncio
    async def test_consume_from_single_pool_reports_that_pool(
        self, ledger, db_session, account_factory
    ):
        account = await account_factory.create_async(
            db_session, subscription_credits_balance=0, purchased_credits_balance=50
        )

        result = await ledger.consume(account.id, 5, reference_id="job_2")

        assert result.credit_pool == CreditPool.PURCHASED

    @pytest.mark.asyncio
    async def test_insufficient_credits_changes_nothing(
        self, ledger, db_session, account_factory
    ):
        account = await account_factory.create_async(
            db_session, subscription_credits_balance=5, purchased_credits_balance=3
        )

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.consume(account.id, 9, reference_id="job_3")

        assert exc_info.value.required == 9
        assert exc_info.value.available == 8
        assert_upscaler_exception(exc_info.value, MessageCode.INSUFFICIENT_CREDITS, 402)
        balance = await ledger.get_balance(account.id)
        assert (balance.subscription, balance.purchased) == (5, 3)
        assert await _transactions(db_session, account.id) == []

    @pytest.mark.asyncio
    async def test_refund_returns_credits_to_pool(self, ledger, db_session, account_factory):
        account = await account_factory.create_async(
            db_session, subscription_credits_balance=10
        )
        await ledger.consume(account.id, 10, reference_id="job_4")

        result = await ledger.refund_to_pool(
            account.id, 10, CreditPool.SUBSCRIPTION, reference_id="job_4"
        )

        assert result.applied == 10
        rows = await _transactions(db_session, account.id)
        assert [row.transaction_type for row in rows] == [
            TransactionType.USAGE,
            TransactionType.REFUND,
        ]
        assert (await ledger.get_balance(account.id)).subscription == 10

    @pytest.mark.asyncio
    @pytest.mark.parametrize("starting_balance", [7, 10])
    async def test_concurrent_consumers_cannot_overspend(
        self, session_factory, db_session, account_factory, starting_balance
    ):
        account = await account_factory.create_async(
            db_session, subscription_credits_balance=starting_balance
        )

        async def consume_seven(job: str):
            async with session_factory() as session:
                return await CreditLedgerService(session).consume(
                    account.id, 7, reference_id=job
                )

        results = await asyncio.gather(
            consume_seven("job_a"), consume_seven("job_b"), return_exceptions=True
        )

        succeeded = [r for r in results if not isinstance(r, BaseException)]
        failed = [r for r in results if isinstance(r, BaseException)]
        assert len(succeeded) == 1
        assert len(failed) == 1
        assert isinstance(failed[0], InsufficientCreditsError)

        async with session_factory() as session:
            balance = await CreditLedgerService(session).get_balance(account.id)
            assert balance.total == starting_balance - 7
            usage_total = await session.scalar(
                select(func.sum(CreditTransaction.amount)).where(
                    CreditTransaction.account_id == account.id
                )
            )
            assert usage_total == -7


class TestClawback:
    @pytest.fixture
    def ledger(self, db_session):
        return CreditLedgerService(db_session)

    @pytest.mark.asyncio
    async def test_auto_clawback_never_goes_negative(self, ledger, db_session, account_factory):
        account = await account_factory.create_async(
            db_session, subscription_credits_balance=20, purchased_credits_balance=30
        )

        result = await ledger.clawback(
            account.id, 80, AUTO_POOL, reference_id="dispute_dp_1", reason="Dispute hold"
        )

        assert result.subscription_clawed == 20
        assert result.purchased_clawed == 30
        assert result.total_clawed == 50
        assert result.shortfall == 30
        balance = await ledger.get_balance(account.id)
        assert (balance.subscription, balance.purchased) == (0, 0)

        rows = await _transactions(db_session, account.id)
        assert rows[0].amount == -50
        assert rows[0].transaction_type == TransactionType.CLAWBACK
        assert rows[0].credit_pool == CreditPool.MIXED

    @pytest.mark.asyncio
    async def test_clawback_of_empty_account_writes_nothing(
        self, ledger, db_session, account_factory
    ):
        account = await account_factory.create_async(db_session)

        result = await ledger.clawback(account.id, 10, AUTO_POOL, reference_id="dispute_dp_2")

        assert result.total_clawed == 0
        assert result.credit_pool is None
        assert await _transactions(db_session, account.id) == []

    @pytest.mark.asyncio
    async def test_clawback_targets_single_pool(self, ledger, db_session, account_factory):
        account = await account_factory.create_async(
            db_session, subscription_credits_balance=20, purchased_credits_balance=30
        )

        result = await ledger.clawback(
            account.id, 25, CreditPool.PURCHASED, reference_id="manual"
        )

        assert result.purchased_clawed == 25
        assert result.subscription_clawed == 0
        balance = await ledger.get_balance(account.id)
        assert (balance.subscription, balance.purchased) == (20, 5)

    @pytest.mark.asyncio
    async def test_clawback_by_reference_reverses_the_grant(
        self, ledger, db_session, account_factory
    ):
        account = await account_factory.create_async(
            db_session, subscription_credits_balance=100
        )
        await ledger.grant_to_pool(account.id, 50, CreditPool.PURCHASED, reference_id="pi_abc")

        result = await ledger.clawback_by_reference(account.id, "pi_abc", reason="Refund")

        assert result.requested == 50
        assert result.purchased_clawed == 50
        assert result.subscription_clawed == 0
        balance = await ledger.get_balance(account.id)
        assert (balance.subscription, balance.purchased) == (100, 0)

        clawbacks = [
            row
            for row in await _transactions(db_session, account.id)
            if row.transaction_type == TransactionType.CLAWBACK
        ]
        assert len(clawbacks) == 1
        assert clawbacks[0].reference_id == "pi_abc"

    @pytest.mark.asyncio
    async def test_clawback_by_reference_is_applied_once(
        self, ledger, db_session, account_factory
    ):
        account = await account_factory.create_async(db_session)
        await ledger.grant_to_pool(
            account.id, 200, CreditPool.SUBSCRIPTION, reference_id="invoice_in_r"
        )

        await ledger.clawback_by_reference(account.id, "invoice_in_r")
        second = await ledger.clawback_by_reference(account.id, "invoice_in_r")

        assert second.total_clawed == 0
        assert (await ledger.get_balance(account.id)).subscription == 0
        assert len(await _transactions(db_session, account.id)) == 2

    @pytest.mark.asyncio
    async def test_clawback_by_reference_limited_by_spent_credits(
        self, ledger, db_session, account_factory
    ):
        account = await account_factory.create_async(db_session)
        await ledger.grant_to_pool(account.id, 50, CreditPool.PURCHASED, reference_id="pi_spent")
        await ledger.consume(account.id, 40, reference_id="job_spent")

        result = await ledger.clawback_by_reference(account.id, "pi_spent")

        assert result.total_clawed == 10
        assert result.shortfall == 40
        assert (await ledger.get_balance(account.id)).total == 0

    @pytest.mark.asyncio
    async def test_unknown_reference_raises(self, ledger, db_session, account_factory):
        account = await account_factory.create_async(db_session)

        with pytest.raises(NoCreditsFoundError) as exc_info:
            await ledger.clawback_by_reference(account.id, "invoice_missing")

        assert exc_info.value.reference_id == "invoice_missing"
        assert_upscaler_exception(exc_info.value, MessageCode.NO_CREDITS_FOUND, 404)


class TestBalanceGuard:
    @pytest.mark.asyncio
    async def test_balances_cannot_be_assigned_outside_the_ledger(
        self, db_session, account_factory
    ):
        account = await account_factory.create_async(db_session)

        with pytest.raises(LedgerManagedFieldError):
            account.subscription_credits_balance = 1000
        with pytest.raises(LedgerManagedFieldError):
            account.purchased_credits_balance = 1000

    @pytest.mark.asyncio
    async def test_other_columns_remain_writable(self, db_session, account_factory):
        account = await account_factory.create_async(db_session)

        account.subscription_tier = "pro"
        await db_session.commit()

        refreshed = await db_session.get(Account, account.id, populate_existing=True)
        assert refreshed.subscription_tier == "pro"

    @pytest.mark.asyncio
    async def test_balance_follows_the_transaction_log(self, db_session, account_factory):
        account = await account_factory.create_async(db_session)
        ledger = CreditLedgerService(db_session)

        await ledger.grant_to_pool(account.id, 200, CreditPool.SUBSCRIPTION, reference_id="i1")
        await ledger.grant_to_pool(account.id, 50, CreditPool.PURCHASED, reference_id="p1")
        await ledger.consume(account.id, 220, reference_id="job")
        await ledger.refund_to_pool(account.id, 20, CreditPool.PURCHASED, reference_id="job")
        await ledger.clawback_by_reference(account.id, "p1")

        logged = await db_session.scalar(
            select(func.sum(CreditTransaction.amount)).where(
                CreditTransaction.account_id == account.id
            )
        )
        balance = await ledger.get_balance(account.id)
        assert balance.total == logged
        assert account.total_credits == balance.total
