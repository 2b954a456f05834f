"""Credit ledger: the only writer of account credit balances.

Every mutation runs as one atomic unit against the account row:

1. read both balances with ``SELECT ... FOR UPDATE`` (a row lock on PostgreSQL),
2. compute the new balances and the ledger row,
3. ``UPDATE`` the account guarded on the balances read in step 1,
4. insert the ``CreditTransaction`` and commit.

The guarded update makes the read-modify-write safe on stores without row
locks as well: a concurrent writer turns it into a zero-row update, the
attempt is rolled back and re-run against fresh balances.

Callers must commit their own pending work before calling into the ledger,
since a retried attempt rolls the session back.
"""

import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable
from uuid import UUID

from fastapi import status
from sqlalchemy import func, select, update
from sqlalchemy.exc import OperationalError

from src.api.core.exceptions.base import UpscalerException
from src.api.core.messages import MessageCode
from src.core.base import BaseService
from src.database.models import (
    GRANT_TRANSACTION_TYPES,
    Account,
    CreditPool,
    CreditTransaction,
    TransactionType,
)

MAX_LEDGER_ATTEMPTS = 5
AUTO_POOL = "auto"


class InsufficientCreditsError(UpscalerException):
    def __init__(self, required: int, available: int):
        super().__init__(
            MessageCode.INSUFFICIENT_CREDITS,
            status.HTTP_402_PAYMENT_REQUIRED,
            details={"required": required, "available": available},
        )
        self.required = required
        self.available = available


class NoCreditsFoundError(UpscalerException):
    def __init__(self, reference_id: str):
        super().__init__(
            MessageCode.NO_CREDITS_FOUND,
            status.HTTP_404_NOT_FOUND,
            details={"reference_id": reference_id},
        )
        self.reference_id = reference_id


class LedgerContentionError(UpscalerException):
    def __init__(self, account_id: UUID):
        super().__init__(
            MessageCode.INTERNAL_ERROR,
            status.HTTP_503_SERVICE_UNAVAILABLE,
            details={"description": f"Ledger contention on account {account_id}"},
        )


@dataclass(frozen=True)
class CreditBalance:
    subscription: int
    purchased: int

    @property
    def total(self) -> int:
        return self.subscription + self.purchased

    def of(self, pool: CreditPool) -> int:
        if pool == CreditPool.SUBSCRIPTION:
            return self.subscription
        return self.purchased

    def with_pool(self, pool: CreditPool, value: int) -> "CreditBalance":
        if pool == CreditPool.SUBSCRIPTION:
            return CreditBalance(subscription=value, purchased=self.purchased)
        return CreditBalance(subscription=self.subscription, purchased=value)


@dataclass(frozen=True)
class GrantResult:
    pool: CreditPool
    requested: int
    applied: int
    balance: CreditBalance
    duplicate: bool = False

    @property
    def new_balance(self) -> int:
        return self.balance.of(self.pool)


@dataclass(frozen=True)
class ConsumeResult:
    subscription_used: int
    purchased_used: int
    credit_pool: CreditPool
    balance: CreditBalance


@dataclass(frozen=True)
class ClawbackResult:
    requested: int
    subscription_clawed: int
    purchased_clawed: int
    balance: CreditBalance
    credit_pool: CreditPool | None = None

    @property
    def total_clawed(self) -> int:
        return self.subscription_clawed + self.purchased_clawed

    @property
    def shortfall(self) -> int:
        return self.requested - self.total_clawed


@dataclass
class _LedgerChange:
    """Outcome of one computation against locked balances."""

    new_balance: CreditBalance
    transaction: CreditTransaction | None
    result: object


def _pool_for(subscription_part: int, purchased_part: int) -> CreditPool:
    if subscription_part and purchased_part:
        return CreditPool.MIXED
    if purchased_part:
        return CreditPool.PURCHASED
    return CreditPool.SUBSCRIPTION


def _split_subscription_first(balance: CreditBalance, amount: int) -> tuple[int, int]:
    from_subscription = min(balance.subscription, amount)
    from_purchased = min(balance.purchased, amount - from_subscription)
    return from_subscription, from_purchased


def _validate_amount(amount: int) -> None:
    if not isinstance(amount, int) or isinstance(amount, bool) or amount <= 0:
        raise UpscalerException(
            MessageCode.INVALID_CREDIT_AMOUNT,
            status.HTTP_400_BAD_REQUEST,
            details={"amount": amount},
        )


def _validate_pool(pool: CreditPool) -> CreditPool:
    pool = CreditPool(pool)
    if pool == CreditPool.MIXED:
        raise UpscalerException(
            MessageCode.INVALID_INPUT,
            status.HTTP_400_BAD_REQUEST,
            details={"description": "Grants and refunds target a single pool"},
        )
    return pool


class CreditLedgerService(BaseService):
    """Atomic dual-pool balance mutations with an append-only transaction log."""

    async def get_balance(self, account_id: UUID) -> CreditBalance:
        stmt = select(
            Account.subscription_credits_balance, Account.purchased_credits_balance
        ).where(Account.id == account_id)
        row = (await self.db.execute(stmt)).one_or_none()
        if row is None:
            raise UpscalerException(MessageCode.ACCOUNT_NOT_FOUND, status.HTTP_404_NOT_FOUND)
        return CreditBalance(subscription=row[0], purchased=row[1])

    async def get_transactions(
        self, account_id: UUID, limit: int = 50, offset: int = 0
    ) -> tuple[list[CreditTransaction], int]:
        """Newest-first page of ledger rows plus the total row count."""
        rows = await self.db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.account_id == account_id)
            .order_by(CreditTransaction.created_at.desc(), CreditTransaction.id)
            .limit(limit)
            .offset(offset)
        )
        total = await self.db.scalar(
            select(func.count())
            .select_from(CreditTransaction)
            .where(CreditTransaction.account_id == account_id)
        )
        return list(rows.scalars().all()), total or 0

    async def grant_to_pool(
        self,
        account_id: UUID,
        amount: int,
        pool: CreditPool,
        reference_id: str | None,
        description: str | None = None,
        max_rollover: int | None = None,
        transaction_type: TransactionType | None = None,
        idempotent: bool = False,
    ) -> GrantResult:
        """Add credits to one pool, capped at ``max_rollover`` when given.

        With ``idempotent=True`` a grant whose ``reference_id`` already has a
        grant row for this account is skipped and reported as ``duplicate``.
        """
        _validate_amount(amount)
        pool = _validate_pool(pool)
        if transaction_type is None:
            transaction_type = (
                TransactionType.SUBSCRIPTION
                if pool == CreditPool.SUBSCRIPTION
                else TransactionType.PURCHASE
            )

        async def compute(balance: CreditBalance) -> _LedgerChange:
            if idempotent and reference_id:
                if await self._find_grant(account_id, reference_id) is not None:
                    return _LedgerChange(
                        new_balance=balance,
                        transaction=None,
                        result=GrantResult(pool, amount, 0, balance, duplicate=True),
                    )

            current = balance.of(pool)
            applied = amount
            if max_rollover is not None:
                applied = max(0, min(amount, max_rollover - current))

            new_balance = balance.with_pool(pool, current + applied)
            transaction = None
            if applied > 0:
                transaction = CreditTransaction(
                    account_id=account_id,
                    amount=applied,
                    transaction_type=transaction_type,
                    credit_pool=pool,
                    reference_id=reference_id,
                    description=description,
                )
            return _LedgerChange(
                new_balance=new_balance,
                transaction=transaction,
                result=GrantResult(pool, amount, applied, new_balance),
            )

        result: GrantResult = await self._run_atomic(account_id, compute)
        if result.duplicate:
            self.logger.info(
                "Skipped duplicate grant",
                account_id=str(account_id),
                reference_id=reference_id,
            )
        elif result.applied < amount:
            self.logger.info(
                "Grant capped by rollover limit",
                account_id=str(account_id),
                requested=amount,
                applied=result.applied,
                max_rollover=max_rollover,
            )
        return result

    async def top_up_pool(
        self,
        account_id: UUID,
        target_balance: int,
        pool: CreditPool,
        reference_id: str | None,
        description: str | None = None,
        transaction_type: TransactionType | None = None,
    ) -> GrantResult:
        """Raise one pool to ``target_balance``, never above it and never down.

        The difference is computed under the row lock, and the grant is
        idempotent on ``reference_id``.
        """
        _validate_amount(target_balance)
        pool = _validate_pool(pool)
        transaction_type = transaction_type or (
            TransactionType.SUBSCRIPTION
            if pool == CreditPool.SUBSCRIPTION
            else TransactionType.PURCHASE
        )

        async def compute(balance: CreditBalance) -> _LedgerChange:
            if reference_id and await self._find_grant(account_id, reference_id) is not None:
                return _LedgerChange(
                    new_balance=balance,
                    transaction=None,
                    result=GrantResult(pool, 0, 0, balance, duplicate=True),
                )

            current = balance.of(pool)
            applied = max(0, target_balance - current)
            new_balance = balance.with_pool(pool, current + applied)
            transaction = None
            if applied > 0:
                transaction = CreditTransaction(
                    account_id=account_id,
                    amount=applied,
                    transaction_type=transaction_type,
                    credit_pool=pool,
                    reference_id=reference_id,
                    description=description,
                )
            return _LedgerChange(
                new_balance=new_balance,
                transaction=transaction,
                result=GrantResult(pool, applied, applied, new_balance),
            )

        result: GrantResult = await self._run_atomic(account_id, compute)
        self.logger.info(
            "Pool topped up",
            account_id=str(account_id),
            target_balance=target_balance,
            applied=result.applied,
            duplicate=result.duplicate,
            reference_id=reference_id,
        )
        return result

    async def consume(
        self,
        account_id: UUID,
        amount: int,
        reference_id: str | None,
        description: str | None = None,
    ) -> ConsumeResult:
        """Spend credits, subscription pool first. All or nothing."""
        _validate_amount(amount)

        async def compute(balance: CreditBalance) -> _LedgerChange:
            if balance.total < amount:
                raise InsufficientCreditsError(required=amount, available=balance.total)

            from_subscription, from_purchased = _split_subscription_first(balance, amount)
            credit_pool = _pool_for(from_subscription, from_purchased)
            new_balance = CreditBalance(
                subscription=balance.subscription - from_subscription,
                purchased=balance.purchased - from_purchased,
            )
            return _LedgerChange(
                new_balance=new_balance,
                transaction=CreditTransaction(
                    account_id=account_id,
                    amount=-amount,
                    transaction_type=TransactionType.USAGE,
                    credit_pool=credit_pool,
                    reference_id=reference_id,
                    description=description,
                ),
                result=ConsumeResult(
                    subscription_used=from_subscription,
                    purchased_used=from_purchased,
                    credit_pool=credit_pool,
                    balance=new_balance,
                ),
            )

        return await self._run_atomic(account_id, compute)

    async def refund_to_pool(
        self,
        account_id: UUID,
        amount: int,
        pool: CreditPool,
        reference_id: str | None,
        description: str | None = None,
    ) -> GrantResult:
        """Return credits to a pool. Refunds ignore rollover caps."""
        _validate_amount(amount)
        pool = _validate_pool(pool)

        async def compute(balance: CreditBalance) -> _LedgerChange:
            new_balance = balance.with_pool(pool, balance.of(pool) + amount)
            return _LedgerChange(
                new_balance=new_balance,
                transaction=CreditTransaction(
                    account_id=account_id,
                    amount=amount,
                    transaction_type=TransactionType.REFUND,
                    credit_pool=pool,
                    reference_id=reference_id,
                    description=description,
                ),
                result=GrantResult(pool, amount, amount, new_balance),
            )

        return await self._run_atomic(account_id, compute)

    async def clawback(
        self,
        account_id: UUID,
        amount: int,
        pool: CreditPool | str,
        reference_id: str | None,
        reason: str | None = None,
    ) -> ClawbackResult:
        """Remove granted credits without ever driving a balance negative.

        ``pool="auto"`` draws from the subscription pool first, then purchased.
        The applied amounts on the result report any shortfall.
        """
        _validate_amount(amount)
        auto = pool == AUTO_POOL
        target_pool = None if auto else _validate_pool(pool)

        async def compute(balance: CreditBalance) -> _LedgerChange:
            return self._clawback_change(
                account_id, balance, amount, target_pool, reference_id, reason
            )

        result: ClawbackResult = await self._run_atomic(account_id, compute)
        if result.shortfall:
            self.logger.warning(
                "Clawback exceeded available credits",
                account_id=str(account_id),
                requested=amount,
                clawed=result.total_clawed,
                reference_id=reference_id,
            )
        return result

    async def clawback_by_reference(
        self, account_id: UUID, original_reference_id: str, reason: str | None = None
    ) -> ClawbackResult:
        """Claw back exactly what a previous grant added, from the pool it went to."""

        async def compute(balance: CreditBalance) -> _LedgerChange:
            grant = await self._find_grant(account_id, original_reference_id)
            if grant is None:
                raise NoCreditsFoundError(original_reference_id)

            if await self._has_clawback(account_id, original_reference_id):
                return _LedgerChange(
                    new_balance=balance,
                    transaction=None,
                    result=ClawbackResult(grant.amount, 0, 0, balance),
                )

            return self._clawback_change(
                account_id,
                balance,
                grant.amount,
                CreditPool(grant.credit_pool),
                original_reference_id,
                reason,
            )

        return await self._run_atomic(account_id, compute)

    def _clawback_change(
        self,
        account_id: UUID,
        balance: CreditBalance,
        amount: int,
        pool: CreditPool | None,
        reference_id: str | None,
        reason: str | None,
    ) -> _LedgerChange:
        if pool is None:
            from_subscription, from_purchased = _split_subscription_first(balance, amount)
        elif pool == CreditPool.SUBSCRIPTION:
            from_subscription, from_purchased = min(balance.subscription, amount), 0
        else:
            from_subscription, from_purchased = 0, min(balance.purchased, amount)

        new_balance = CreditBalance(
            subscription=balance.subscription - from_subscription,
            purchased=balance.purchased - from_purchased,
        )
        clawed = from_subscription + from_purchased
        credit_pool = _pool_for(from_subscription, from_purchased) if clawed else None

        transaction = None
        if clawed:
            transaction = CreditTransaction(
                account_id=account_id,
                amount=-clawed,
                transaction_type=TransactionType.CLAWBACK,
                credit_pool=credit_pool,
                reference_id=reference_id,
                description=reason,
            )
        return _LedgerChange(
            new_balance=new_balance,
            transaction=transaction,
            result=ClawbackResult(
                requested=amount,
                subscription_clawed=from_subscription,
                purchased_clawed=from_purchased,
                balance=new_balance,
                credit_pool=credit_pool,
            ),
        )

    async def _find_grant(
        self, account_id: UUID, reference_id: str
    ) -> CreditTransaction | None:
        stmt = (
            select(CreditTransaction)
            .where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.reference_id == reference_id,
                CreditTransaction.transaction_type.in_(
                    [t.value for t in GRANT_TRANSACTION_TYPES]
                ),
                CreditTransaction.amount > 0,
            )
            .order_by(CreditTransaction.created_at)
            .limit(1)
        )
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def _has_clawback(self, account_id: UUID, reference_id: str) -> bool:
        stmt = select(CreditTransaction.id).where(
            CreditTransaction.account_id == account_id,
            CreditTransaction.reference_id == reference_id,
            CreditTransaction.transaction_type == TransactionType.CLAWBACK.value,
        )
        return (await self.db.execute(stmt.limit(1))).first() is not None

    async def _lock_balance(self, account_id: UUID) -> CreditBalance:
        stmt = (
            select(
                Account.subscription_credits_balance, Account.purchased_credits_balance
            )
            .where(Account.id == account_id)
            .with_for_update()
        )
        row = (await self.db.execute(stmt)).one_or_none()
        if row is None:
            raise UpscalerException(
                MessageCode.ACCOUNT_NOT_FOUND,
                status.HTTP_404_NOT_FOUND,
                details={"account_id": str(account_id)},
            )
        return CreditBalance(subscription=row[0], purchased=row[1])

    async def _compare_and_swap(
        self, account_id: UUID, expected: CreditBalance, new: CreditBalance
    ) -> bool:
        stmt = (
            update(Account)
            .where(
                Account.id == account_id,
                Account.subscription_credits_balance == expected.subscription,
                Account.purchased_credits_balance == expected.purchased,
            )
            .values(
                subscription_credits_balance=new.subscription,
                purchased_credits_balance=new.purchased,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        return result.rowcount == 1

    async def _run_atomic(
        self,
        account_id: UUID,
        compute: Callable[[CreditBalance], Awaitable[_LedgerChange]],
    ):
        for attempt in range(1, MAX_LEDGER_ATTEMPTS + 1):
            try:
                balance = await self._lock_balance(account_id)
                change = await compute(balance)

                if change.transaction is None and change.new_balance == balance:
                    await self.db.commit()
                    return change.result

                if await self._compare_and_swap(account_id, balance, change.new_balance):
                    self.db.add(change.transaction)
                    await self.db.commit()
                    await self.db.get(Account, account_id, populate_existing=True)
                    return change.result
            except OperationalError as e:
                # Lock timeouts and deadlocks are retried like a lost swap
                self.logger.warning(
                    "Ledger attempt hit a database lock",
                    account_id=str(account_id),
                    attempt=attempt,
                    error=str(e),
                )
            except Exception:
                await self.db.rollback()
                raise

            await self.db.rollback()
            await asyncio.sleep(0.01 * attempt)

        self.logger.error("Ledger retries exhausted", account_id=str(account_id))
        raise LedgerContentionError(account_id)
