"""Leverage risk — borrow sizing, effective APY, health factor, liquidation.

Pure functions plus a small calculator object that carries the configurable
thresholds. Nothing here touches the lending pool or ledger; callers pass in
prices, rates and available liquidity.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum

from ..errors import (
    HealthFactorTooLow,
    InsufficientLiquidity,
    InvalidLeverage,
    NotLiquidatable,
    PriceUnavailable,
)
from ..models import LeveragedPosition
from .exchange_rate import redeem_amount
from .fees import BORROW_RATE, FeeResult, borrow_interest, liquidation_fee, lp_open_fee
from .units import AMOUNT_DECIMALS, usdc_to_base, validate_amount, value_in_usdc

MAX_LEVERAGE = 2.0
ALLOWED_LEVERAGE_FACTORS = (1.0, 1.5, 2.0)

HEALTH_SENTINEL = 999.0
LIQUIDATION_THRESHOLD = 1.0
WARNING_THRESHOLD = 1.5
DEFAULT_MIN_OPEN_HEALTH = 1.2


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    LIQUIDATABLE = "liquidatable"
    NO_DEBT = "no_debt"


def leverage_pct(leverage: float) -> int:
    """2.0 -> 200"""
    return int(round(leverage * 100))


def borrowed_usdc(
    collateral: int, leverage: float, price: float, decimals: int = AMOUNT_DECIMALS
) -> int:
    """USDC to borrow: collateral * price * (leverage - 1)."""
    collateral_value = value_in_usdc(collateral, price, decimals)
    return collateral_value * (leverage_pct(leverage) - 100) // 100


def effective_apy(base_apy: float, leverage: float, borrow_rate: float = BORROW_RATE) -> float:
    """Net APY of a leveraged position.

    Leverage multiplies the base yield but every unit above 1.0x is borrowed
    and pays ``borrow_rate``. At 1.0x there is no borrow cost.
    """
    return base_apy * leverage - borrow_rate * (leverage - 1)


def health_factor(collateral_value: float, borrowed_value: float) -> float:
    """collateral / borrowed; positions with no debt report HEALTH_SENTINEL."""
    if borrowed_value <= 0:
        return HEALTH_SENTINEL
    return collateral_value / borrowed_value


@dataclass(frozen=True)
class OpenQuote:
    collateral_value: int
    borrowed_usdc: int
    health_factor: float


@dataclass(frozen=True)
class PositionHealth:
    position_id: str
    collateral_value: int
    usdc_leg: int
    borrowed_usdc: int
    accrued_interest: int
    health_factor: float
    status: HealthStatus

    @property
    def debt(self) -> int:
        return self.borrowed_usdc + self.accrued_interest


@dataclass(frozen=True)
class Repayment:
    """How a leveraged position's debt is paid back to the pool.

    The borrowed USDC leg goes back first; whatever it does not cover
    (accrued interest) is bought with collateral at the current price.
    """

    collateral_base: int
    debt_usdc: int
    usdc_from_leg: int
    debt_base: int
    principal_repaid: int
    interest_repaid: int
    bad_debt: int

    @property
    def remaining_base(self) -> int:
        return self.collateral_base - self.debt_base


@dataclass(frozen=True)
class LiquidationPlan:
    repayment: Repayment
    fee: FeeResult

    @property
    def returned_base(self) -> int:
        return self.fee.net


class LeverageRiskCalculator:
    """Thresholds and sizing rules for leveraged positions."""

    def __init__(
        self,
        min_open_health: float = DEFAULT_MIN_OPEN_HEALTH,
        max_leverage: float = MAX_LEVERAGE,
        warning_threshold: float = WARNING_THRESHOLD,
        liquidation_threshold: float = LIQUIDATION_THRESHOLD,
        borrow_rate: float = BORROW_RATE,
        decimals: int = AMOUNT_DECIMALS,
    ) -> None:
        self.min_open_health = min_open_health
        self.max_leverage = max_leverage
        self.warning_threshold = warning_threshold
        self.liquidation_threshold = liquidation_threshold
        self.borrow_rate = borrow_rate
        self.decimals = decimals

    # ------------------------------------------------------------------
    # Open
    # ------------------------------------------------------------------

    def validate_leverage(self, leverage: float) -> None:
        if not math.isfinite(leverage):
            raise InvalidLeverage(f"Invalid leverage {leverage!r}")
        allowed = {leverage_pct(f) for f in ALLOWED_LEVERAGE_FACTORS}
        if leverage_pct(leverage) not in allowed or leverage > self.max_leverage:
            raise InvalidLeverage(
                f"Leverage must be one of {ALLOWED_LEVERAGE_FACTORS} and at most "
                f"{self.max_leverage}",
                leverage=leverage,
            )

    def quote_open(
        self, collateral: int, leverage: float, price: float, available_liquidity: int
    ) -> OpenQuote:
        """Validate a new leveraged position and size its borrow.

        Raises before anything is mutated: InvalidAmount, InvalidLeverage,
        InsufficientLiquidity or HealthFactorTooLow.
        """
        validate_amount(collateral, "collateral")
        self.validate_leverage(leverage)
        collateral_value = value_in_usdc(collateral, price, self.decimals)
        borrowed = borrowed_usdc(collateral, leverage, price, self.decimals)
        if borrowed > available_liquidity:
            raise InsufficientLiquidity(
                "Lending pool cannot cover the borrow",
                required=borrowed,
                available=available_liquidity,
            )
        # Same basis as position_health: net collateral plus the USDC leg.
        net_value = value_in_usdc(lp_open_fee(collateral).net, price, self.decimals)
        hf = health_factor(net_value + borrowed, borrowed)
        if borrowed > 0 and hf < self.min_open_health:
            raise HealthFactorTooLow(
                "Resulting health factor is below the opening floor",
                health_factor=round(hf, 4),
                minimum=self.min_open_health,
            )
        return OpenQuote(collateral_value=collateral_value, borrowed_usdc=borrowed, health_factor=hf)

    def effective_apy(self, base_apy: float, leverage: float) -> float:
        return effective_apy(base_apy, leverage, self.borrow_rate)

    # ------------------------------------------------------------------
    # Health
    # ------------------------------------------------------------------

    def classify(self, hf: float, has_debt: bool = True) -> HealthStatus:
        if not has_debt:
            return HealthStatus.NO_DEBT
        if hf < self.liquidation_threshold:
            return HealthStatus.LIQUIDATABLE
        if hf < self.warning_threshold:
            return HealthStatus.WARNING
        return HealthStatus.HEALTHY

    def accrued_interest(self, position: LeveragedPosition, now: float) -> int:
        return borrow_interest(
            position.borrowed_usdc, now - position.opened_at, self.borrow_rate
        )

    def position_health(
        self,
        position: LeveragedPosition,
        price: float,
        current_rate: int,
        now: float,
        usdc_leg: int | None = None,
    ) -> PositionHealth:
        """Health over everything ``plan_repayment`` could pay the pool with.

        That is the receipt tokens the position holds, valued at the current
        rate and price, plus the borrowed USDC still held as the leg.
        """
        collateral_base = redeem_amount(position.receipt_held, current_rate)
        collateral_value = value_in_usdc(collateral_base, price, self.decimals)
        leg = position.borrowed_usdc if usdc_leg is None else usdc_leg
        interest = self.accrued_interest(position, now)
        debt = position.borrowed_usdc + interest
        hf = health_factor(collateral_value + leg, debt)
        return PositionHealth(
            position_id=position.id,
            collateral_value=collateral_value,
            usdc_leg=leg,
            borrowed_usdc=position.borrowed_usdc,
            accrued_interest=interest,
            health_factor=hf,
            status=self.classify(hf, has_debt=debt > 0),
        )

    # ------------------------------------------------------------------
    # Liquidation
    # ------------------------------------------------------------------

    def plan_repayment(
        self,
        position: LeveragedPosition,
        price: float | None,
        current_rate: int,
        now: float,
        usdc_leg: int | None = None,
    ) -> Repayment:
        """Pay the pool back out of the USDC leg, then out of collateral.

        ``price`` may be None only when the leg covers the whole debt.
        """
        collateral_base = redeem_amount(position.receipt_held, current_rate)
        leg = position.borrowed_usdc if usdc_leg is None else usdc_leg
        interest = self.accrued_interest(position, now)
        debt_usdc = position.borrowed_usdc + interest
        from_leg = min(leg, debt_usdc)
        shortfall = debt_usdc - from_leg

        debt_base = 0
        covered = 0
        if shortfall > 0:
            if price is None:
                raise PriceUnavailable("A price is required to repay debt from collateral")
            needed = usdc_to_base(shortfall, price, self.decimals)
            if needed <= collateral_base:
                debt_base, covered = needed, shortfall
            else:
                debt_base = collateral_base
                covered = min(value_in_usdc(collateral_base, price, self.decimals), shortfall)

        repaid = from_leg + covered
        principal_repaid = min(repaid, position.borrowed_usdc)
        return Repayment(
            collateral_base=collateral_base,
            debt_usdc=debt_usdc,
            usdc_from_leg=from_leg,
            debt_base=debt_base,
            principal_repaid=principal_repaid,
            interest_repaid=repaid - principal_repaid,
            bad_debt=position.borrowed_usdc - principal_repaid,
        )

    def plan_liquidation(
        self,
        position: LeveragedPosition,
        price: float,
        current_rate: int,
        now: float,
        usdc_leg: int | None = None,
    ) -> LiquidationPlan:
        """Unwind an unhealthy position: pool first, fee on what is left.

        With the leg counted towards health, the default threshold of 1.0
        is only crossed once collateral no longer covers the interest, so
        nothing is left to charge a fee on. The fee bites when the
        threshold is configured above 1.0.
        """
        health = self.position_health(position, price, current_rate, now, usdc_leg)
        if health.status != HealthStatus.LIQUIDATABLE:
            raise NotLiquidatable(
                f"Position {position.id} is not liquidatable",
                health_factor=round(health.health_factor, 4),
                threshold=self.liquidation_threshold,
            )
        repayment = self.plan_repayment(position, price, current_rate, now, usdc_leg)
        return LiquidationPlan(
            repayment=repayment, fee=liquidation_fee(repayment.remaining_base)
        )
