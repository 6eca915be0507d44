"""LP token mint/burn math."""
from __future__ import annotations

import math
from dataclasses import dataclass

from ..errors import InvalidLegAmount, ToleranceExceeded
from .units import AMOUNT_DECIMALS, RATE_SCALE, USDC_DECIMALS, rescale, value_in_usdc

EQUAL_VALUE_TOLERANCE = 0.01


@dataclass(frozen=True)
class LPRedemption:
    base_amount: int
    usdc_amount: int


class LPMintBurnEngine:
    """Constant-product LP stake: ``lp = sqrt(receipt_equivalent * usdc)``.

    The LP amount only quantifies a position for accounting; it is not a
    transferable share of a pool. The USDC leg is rescaled to the base amount
    scale before the product so ``lp(100, 100)`` at rate 1.0 is exactly 100.
    """

    def __init__(
        self,
        base_decimals: int = AMOUNT_DECIMALS,
        usdc_decimals: int = USDC_DECIMALS,
        tolerance: float = EQUAL_VALUE_TOLERANCE,
    ) -> None:
        self.base_decimals = base_decimals
        self.usdc_decimals = usdc_decimals
        self.tolerance = tolerance

    @staticmethod
    def _check_legs(base_amount: int, usdc_amount: int) -> None:
        for name, leg in (("base_amount", base_amount), ("usdc_amount", usdc_amount)):
            if isinstance(leg, bool) or not isinstance(leg, int) or leg <= 0:
                raise InvalidLegAmount(f"{name} must be a positive integer", **{name: leg})

    def receipt_equivalent(self, base_amount: int, rate: int) -> int:
        return base_amount * rate // RATE_SCALE

    def mint(self, base_amount: int, usdc_amount: int, rate: int) -> int:
        """LP tokens for a base leg and a USDC leg at exchange rate ``rate``."""
        self._check_legs(base_amount, usdc_amount)
        receipt_leg = self.receipt_equivalent(base_amount, rate)
        usdc_leg = rescale(usdc_amount, self.usdc_decimals, self.base_decimals)
        return math.isqrt(receipt_leg * usdc_leg)

    def redeem(
        self, lp_tokens: int, lp_total: int, base_amount: int, usdc_amount: int
    ) -> LPRedemption:
        """Proportional legs for ``lp_tokens`` out of a position's ``lp_total``."""
        if lp_total <= 0:
            raise InvalidLegAmount("Position has no LP tokens", lp_total=lp_total)
        if lp_tokens <= 0 or lp_tokens > lp_total:
            raise InvalidLegAmount(
                "LP amount out of range", lp_tokens=lp_tokens, lp_total=lp_total
            )
        return LPRedemption(
            base_amount=base_amount * lp_tokens // lp_total,
            usdc_amount=usdc_amount * lp_tokens // lp_total,
        )

    def check_equal_value(
        self, base_amount: int, usdc_amount: int, price: float, tolerance: float | None = None
    ) -> float:
        """Reject legs whose values differ by more than ``tolerance``.

        Returns the relative deviation.
        """
        self._check_legs(base_amount, usdc_amount)
        tolerance = self.tolerance if tolerance is None else tolerance
        base_value = value_in_usdc(base_amount, price, self.base_decimals)
        usdc_value = rescale(usdc_amount, self.usdc_decimals, USDC_DECIMALS)
        if base_value == 0:
            raise ToleranceExceeded("Base leg has no value at the current price", price=price)
        deviation = abs(base_value - usdc_value) / base_value
        if deviation > tolerance:
            raise ToleranceExceeded(
                "LP legs are not of equal value",
                base_value=base_value,
                usdc_value=usdc_value,
                deviation=round(deviation, 6),
                tolerance=tolerance,
            )
        return deviation
