"""Unit tests for the USDC lending pool."""
from __future__ import annotations

import pytest

from crucible_engine.core.lending import LendingPool
from crucible_engine.errors import InsufficientBalance, InsufficientLiquidity, InvalidAmount

USDC = 10**6


@pytest.fixture()
def pool() -> LendingPool:
    pool = LendingPool(borrow_rate=0.10)
    pool.supply("lender", 1_000 * USDC)
    return pool


class TestSupplyWithdraw:
    def test_first_supply_mints_one_to_one(self) -> None:
        pool = LendingPool()
        assert pool.supply("lender", 500 * USDC) == 500 * USDC
        assert pool.balance_of("lender") == 500 * USDC

    def test_withdraw(self, pool: LendingPool) -> None:
        burned = pool.withdraw("lender", 400 * USDC)
        assert burned == 400 * USDC
        assert pool.balance_of("lender") == 600 * USDC
        assert pool.state.total_liquidity == 600 * USDC

    def test_withdraw_more_than_balance(self, pool: LendingPool) -> None:
        with pytest.raises(InsufficientBalance):
            pool.withdraw("lender", 1_001 * USDC)
        with pytest.raises(InsufficientBalance):
            pool.withdraw("stranger", 1)

    def test_withdraw_lent_out_liquidity(self, pool: LendingPool) -> None:
        pool.borrow(800 * USDC)
        with pytest.raises(InsufficientLiquidity):
            pool.withdraw("lender", 300 * USDC)

    def test_interest_accrues_to_lenders(self, pool: LendingPool) -> None:
        pool.borrow(500 * USDC)
        pool.repay(500 * USDC, 50 * USDC)
        assert pool.balance_of("lender") == 1_045 * USDC
        # a later supplier buys shares at the higher price
        shares = pool.supply("late", 1_045 * USDC)
        assert shares == 1_000 * USDC


class TestBorrowRepay:
    def test_borrow_limited_by_liquidity(self, pool: LendingPool) -> None:
        with pytest.raises(InsufficientLiquidity):
            pool.borrow(1_001 * USDC)

    def test_minimum_reserve(self) -> None:
        pool = LendingPool(minimum_reserve=100 * USDC)
        pool.supply("lender", 1_000 * USDC)
        assert pool.available_liquidity() == 900 * USDC
        with pytest.raises(InsufficientLiquidity):
            pool.borrow(901 * USDC)

    def test_repay_skims_yield_fee(self, pool: LendingPool) -> None:
        pool.borrow(500 * USDC)
        fee = pool.repay(500 * USDC, 50 * USDC)
        assert fee.fee == 5 * USDC
        state = pool.state
        assert state.total_borrowed == 0
        assert state.total_liquidity == 1_045 * USDC
        assert state.protocol_fees == 5 * USDC

    def test_repay_more_than_outstanding(self, pool: LendingPool) -> None:
        pool.borrow(100 * USDC)
        with pytest.raises(InvalidAmount):
            pool.repay(101 * USDC)

    def test_write_off(self, pool: LendingPool) -> None:
        pool.borrow(500 * USDC)
        pool.write_off(200 * USDC)
        state = pool.state
        assert state.total_borrowed == 300 * USDC
        assert state.total_liquidity == 800 * USDC
        assert state.bad_debt == 200 * USDC

    def test_borrowed_never_exceeds_liquidity_minus_reserve(self, pool: LendingPool) -> None:
        pool.borrow(1_000 * USDC)
        state = pool.state
        assert state.total_borrowed <= state.total_liquidity - state.minimum_reserve
        assert pool.available_liquidity() == 0


class TestRates:
    def test_utilization_and_supply_apy(self, pool: LendingPool) -> None:
        pool.borrow(500 * USDC)
        assert pool.utilization() == pytest.approx(0.5)
        assert pool.supply_apy() == pytest.approx(0.10 * 0.5 * 0.9)

    def test_empty_pool(self) -> None:
        assert LendingPool().utilization() == 0.0


class TestPersistence:
    def test_round_trip(self, pool: LendingPool) -> None:
        pool.borrow(250 * USDC)
        restored = LendingPool()
        restored.load_record(pool.to_record())
        assert restored.state == pool.state
        assert restored.balance_of("lender") == 1_000 * USDC
