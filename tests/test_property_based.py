"""
Property-based tests with hypothesis for the two ledgers.

Random operation sequences are replayed against the services and a simple
in-memory model; after every sequence the stored totals must reconcile with
the transaction log and never go negative.
"""
import itertools
from datetime import timedelta
from decimal import Decimal

import pytest
from hypothesis import given, settings as h_settings, HealthCheck
from hypothesis.strategies import (
    booleans,
    decimals,
    integers,
    lists,
    sampled_from,
    tuples,
)

from app.core.exceptions import (
    InsufficientAvailableBalanceError,
    InsufficientFundsError,
    ValidationException,
)
from app.db.database import utcnow
from app.db.models.budget_transaction import BudgetTransactionType
from app.domain.services.budget_service import BudgetService
from app.domain.services.points_service import PointsService
from app.domain.services.settlement_service import calculate_reward

# Unique refs per example; the db_session fixture is shared across examples
_prop_counter = itertools.count(1)


# ============================================================================
# Strategies
# ============================================================================

AMOUNTS = decimals(
    min_value=Decimal("0.01"),
    max_value=Decimal("500.00"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)

RATES = decimals(
    min_value=Decimal("0"),
    max_value=Decimal("100"),
    places=2,
    allow_nan=False,
    allow_infinity=False,
)

BUDGET_OPS = lists(
    tuples(sampled_from(["load", "debit", "refund"]), AMOUNTS),
    min_size=1,
    max_size=12,
)

POINTS_OPS = lists(
    tuples(sampled_from(["earn", "verify", "redeem"]), AMOUNTS, booleans()),
    min_size=1,
    max_size=12,
)

HYPOTHESIS_SETTINGS = dict(
    max_examples=30,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
    deadline=None,
)


# ============================================================================
# Reward calculation
# ============================================================================


class TestRewardProperties:

    @pytest.mark.unit
    @given(base=AMOUNTS, rate=RATES)
    def test_reward_is_rounded_exact_share(self, base: Decimal, rate: Decimal):
        reward = calculate_reward(base, rate)
        exact = base * rate / Decimal("100")

        assert reward == reward.quantize(Decimal("0.01"))
        assert abs(reward - exact) <= Decimal("0.005")
        assert Decimal("0") <= reward <= base

    @pytest.mark.unit
    @given(base=AMOUNTS, rate=RATES, extra=integers(min_value=1, max_value=100))
    def test_reward_monotonic_in_base(self, base: Decimal, rate: Decimal, extra: int):
        larger = base + Decimal(extra)

        assert calculate_reward(larger, rate) >= calculate_reward(base, rate)


# ============================================================================
# Budget ledger
# ============================================================================


class TestBudgetLedgerProperties:

    @pytest.mark.unit
    @given(ops=BUDGET_OPS)
    @h_settings(**HYPOTHESIS_SETTINGS)
    async def test_balance_never_negative_and_reconciles(self, ops, db_session):
        """
        Whatever mix of loads, debits and refunds is attempted, rejected
        operations leave no trace and the account always reconciles.
        """
        merchant_ref = f"prop-merchant-{next(_prop_counter)}"
        service = BudgetService(db_session)
        await service.load_funds(merchant_ref, "10.00")
        balance, spent = Decimal("10.00"), Decimal("0")

        for op, amount in ops:
            if op == "load":
                await service.load_funds(merchant_ref, amount)
                balance += amount
            elif op == "debit":
                if amount > balance:
                    with pytest.raises(InsufficientFundsError):
                        await service.debit(merchant_ref, amount)
                else:
                    await service.debit(merchant_ref, amount)
                    balance -= amount
                    spent += amount
            else:
                if amount > spent:
                    with pytest.raises(ValidationException):
                        await service.credit(merchant_ref, amount, kind=BudgetTransactionType.REFUND)
                else:
                    await service.credit(merchant_ref, amount, kind=BudgetTransactionType.REFUND)
                    balance += amount
                    spent -= amount

        report = await service.check_invariants(merchant_ref)
        assert report["consistent"] is True
        assert report["current_balance"] == balance
        assert report["total_spent"] == spent
        assert report["current_balance"] >= 0


# ============================================================================
# Points wallet
# ============================================================================


class TestPointsWalletProperties:

    @pytest.mark.unit
    @given(ops=POINTS_OPS)
    @h_settings(**HYPOTHESIS_SETTINGS)
    async def test_buckets_match_transaction_log(self, ops, db_session):
        """
        Earning into either bucket, verifying and redeeming keep both buckets
        equal to the sums of the user's transactions.
        """
        run = next(_prop_counter)
        user_ref = f"prop-user-{run}"
        service = PointsService(db_session)
        expires_at = utcnow() + timedelta(days=365)
        available, pending = Decimal("0"), Decimal("0")
        unverified: list[tuple[str, Decimal]] = []

        for step, (op, amount, flag) in enumerate(ops):
            if op == "earn":
                external_ref = f"prop-{run}-{step}"
                await service.earn(user_ref, amount, external_ref, flag, expires_at)
                if flag:
                    pending += amount
                    unverified.append((external_ref, amount))
                else:
                    available += amount
            elif op == "verify":
                if not unverified:
                    continue
                external_ref, earned = unverified.pop(0)
                assert await service.verify(external_ref) == 1
                assert await service.verify(external_ref) == 0
                pending -= earned
                available += earned
            else:
                if amount > available:
                    with pytest.raises(InsufficientAvailableBalanceError):
                        await service.redeem(user_ref, amount)
                else:
                    await service.redeem(user_ref, amount)
                    available -= amount

        report = await service.check_invariants(user_ref)
        assert report["consistent"] is True
        assert report["available_balance"] == available
        assert report["pending_balance"] == pending
        assert available >= 0
