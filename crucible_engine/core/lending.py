"""USDC lending pool that leveraged positions borrow from.

Lenders hold shares of ``total_liquidity``; repaid interest (net of the
lending yield fee) grows liquidity and therefore the value of every share.
All reads and writes go through one lock so ``borrow`` and ``repay`` never
interleave.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Any

from ..errors import InsufficientBalance, InsufficientLiquidity, InvalidAmount
from ..models import LendingPoolState
from .fees import BORROW_RATE, LENDING_YIELD_FEE_RATE, FeeResult, lending_yield_fee
from .units import validate_amount

logger = logging.getLogger(__name__)


class LendingPool:
    """Share-based USDC pool (amounts in USDC micro-units)."""

    def __init__(
        self,
        borrow_rate: float = BORROW_RATE,
        minimum_reserve: int = 0,
    ) -> None:
        self._lock = threading.Lock()
        self._state = LendingPoolState(
            total_liquidity=0,
            total_borrowed=0,
            borrow_rate=borrow_rate,
            minimum_reserve=minimum_reserve,
        )
        self._shares: dict[str, int] = {}

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def state(self) -> LendingPoolState:
        with self._lock:
            return self._state

    def available_liquidity(self) -> int:
        return self.state.available_liquidity

    def utilization(self) -> float:
        state = self.state
        if state.total_liquidity <= 0:
            return 0.0
        return state.total_borrowed / state.total_liquidity

    def supply_apy(self) -> float:
        """Lender APY: borrow rate scaled by utilization, net of the yield fee."""
        return self.state.borrow_rate * self.utilization() * (1 - LENDING_YIELD_FEE_RATE)

    def shares_of(self, owner: str) -> int:
        with self._lock:
            return self._shares.get(owner, 0)

    def balance_of(self, owner: str) -> int:
        with self._lock:
            return self._shares_value(self._shares.get(owner, 0))

    def _shares_value(self, shares: int) -> int:
        if self._state.total_shares == 0:
            return 0
        return shares * self._state.total_liquidity // self._state.total_shares

    # ------------------------------------------------------------------
    # Lenders
    # ------------------------------------------------------------------

    def supply(self, owner: str, amount: int) -> int:
        """Deposit ``amount`` USDC; returns the shares minted."""
        validate_amount(amount)
        with self._lock:
            state = self._state
            if state.total_shares == 0 or state.total_liquidity == 0:
                shares = amount
            else:
                shares = amount * state.total_shares // state.total_liquidity
            if shares == 0:
                raise InvalidAmount("Supply too small to mint a share", amount=amount)
            self._shares[owner] = self._shares.get(owner, 0) + shares
            self._state = replace(
                state,
                total_liquidity=state.total_liquidity + amount,
                total_shares=state.total_shares + shares,
            )
        logger.info("Supplied %d USDC units for %s (%d shares)", amount, owner, shares)
        return shares

    def withdraw(self, owner: str, amount: int) -> int:
        """Withdraw ``amount`` USDC; returns the shares burned."""
        validate_amount(amount)
        with self._lock:
            state = self._state
            owned = self._shares.get(owner, 0)
            balance = self._shares_value(owned)
            if amount > balance:
                raise InsufficientBalance(
                    "Withdrawal exceeds supplied balance", required=amount, available=balance
                )
            if amount > state.available_liquidity:
                raise InsufficientLiquidity(
                    "Pool liquidity is lent out",
                    required=amount,
                    available=state.available_liquidity,
                )
            shares = min(-(-amount * state.total_shares // state.total_liquidity), owned)
            remaining = owned - shares
            if remaining:
                self._shares[owner] = remaining
            else:
                del self._shares[owner]
            self._state = replace(
                state,
                total_liquidity=state.total_liquidity - amount,
                total_shares=state.total_shares - shares,
            )
        logger.info("Withdrew %d USDC units for %s (%d shares)", amount, owner, shares)
        return shares

    # ------------------------------------------------------------------
    # Borrowers
    # ------------------------------------------------------------------

    def borrow(self, amount: int) -> None:
        validate_amount(amount)
        with self._lock:
            state = self._state
            if amount > state.available_liquidity:
                raise InsufficientLiquidity(
                    "Not enough liquidity to borrow",
                    required=amount,
                    available=state.available_liquidity,
                )
            self._state = replace(state, total_borrowed=state.total_borrowed + amount)
        logger.debug("Borrowed %d USDC units", amount)

    def repay(self, principal: int, interest: int = 0) -> FeeResult:
        """Return ``principal`` and pay ``interest``; the fee is skimmed first."""
        if principal < 0 or interest < 0:
            raise InvalidAmount("Repayment cannot be negative", principal=principal, interest=interest)
        fee = lending_yield_fee(interest)
        with self._lock:
            state = self._state
            if principal > state.total_borrowed:
                raise InvalidAmount(
                    "Repayment exceeds outstanding borrow",
                    principal=principal,
                    outstanding=state.total_borrowed,
                )
            self._state = replace(
                state,
                total_borrowed=state.total_borrowed - principal,
                total_liquidity=state.total_liquidity + fee.net,
                protocol_fees=state.protocol_fees + fee.fee,
            )
        logger.debug("Repaid %d principal, %d interest (fee %d)", principal, interest, fee.fee)
        return fee

    def write_off(self, amount: int) -> None:
        """Drop unrecoverable principal; lenders absorb the loss."""
        if amount <= 0:
            return
        with self._lock:
            state = self._state
            amount = min(amount, state.total_borrowed)
            self._state = replace(
                state,
                total_borrowed=state.total_borrowed - amount,
                total_liquidity=state.total_liquidity - amount,
                bad_debt=state.bad_debt + amount,
            )
        logger.warning("Wrote off %d USDC units of bad debt", amount)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_record(self) -> dict[str, Any]:
        with self._lock:
            state = self._state
            return {
                "totalLiquidity": state.total_liquidity,
                "totalBorrowed": state.total_borrowed,
                "borrowRate": state.borrow_rate,
                "minimumReserve": state.minimum_reserve,
                "totalShares": state.total_shares,
                "protocolFees": state.protocol_fees,
                "badDebt": state.bad_debt,
                "shares": dict(self._shares),
            }

    def load_record(self, raw: dict[str, Any]) -> None:
        with self._lock:
            self._state = LendingPoolState(
                total_liquidity=int(raw.get("totalLiquidity", 0)),
                total_borrowed=int(raw.get("totalBorrowed", 0)),
                borrow_rate=float(raw.get("borrowRate", self._state.borrow_rate)),
                minimum_reserve=int(raw.get("minimumReserve", self._state.minimum_reserve)),
                total_shares=int(raw.get("totalShares", 0)),
                protocol_fees=int(raw.get("protocolFees", 0)),
                bad_debt=int(raw.get("badDebt", 0)),
            )
            self._shares = {k: int(v) for k, v in raw.get("shares", {}).items()}
