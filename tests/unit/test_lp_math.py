"""Unit tests for LP token mint/burn and the equal-value check."""
from __future__ import annotations

import pytest

from crucible_engine.core.lp_math import LPMintBurnEngine
from crucible_engine.errors import InvalidLegAmount, ToleranceExceeded

SOL = 10**9
USDC = 10**6
RATE_ONE = 1_000_000


@pytest.fixture()
def lp_engine() -> LPMintBurnEngine:
    return LPMintBurnEngine()


class TestMint:
    def test_equal_legs_at_unit_rate(self, lp_engine: LPMintBurnEngine) -> None:
        assert lp_engine.mint(100 * SOL, 100 * USDC, RATE_ONE) == 100 * SOL

    def test_geometric_mean(self, lp_engine: LPMintBurnEngine) -> None:
        assert lp_engine.mint(400 * SOL, 100 * USDC, RATE_ONE) == 200 * SOL

    @pytest.mark.parametrize("base,usdc", [(0, 100), (100, 0), (-1, 100), (100, -5)])
    def test_non_positive_legs_rejected(
        self, lp_engine: LPMintBurnEngine, base: int, usdc: int
    ) -> None:
        with pytest.raises(InvalidLegAmount):
            lp_engine.mint(base, usdc, RATE_ONE)


class TestRedeem:
    def test_proportional(self, lp_engine: LPMintBurnEngine) -> None:
        redemption = lp_engine.redeem(25, 100, 400 * SOL, 80 * USDC)
        assert redemption.base_amount == 100 * SOL
        assert redemption.usdc_amount == 20 * USDC

    def test_out_of_range(self, lp_engine: LPMintBurnEngine) -> None:
        with pytest.raises(InvalidLegAmount):
            lp_engine.redeem(101, 100, SOL, USDC)
        with pytest.raises(InvalidLegAmount):
            lp_engine.redeem(1, 0, SOL, USDC)


class TestEqualValue:
    def test_within_tolerance(self, lp_engine: LPMintBurnEngine) -> None:
        deviation = lp_engine.check_equal_value(10 * SOL, 2_010 * USDC, 200.0)
        assert deviation == pytest.approx(0.005)

    def test_outside_tolerance(self, lp_engine: LPMintBurnEngine) -> None:
        with pytest.raises(ToleranceExceeded):
            lp_engine.check_equal_value(10 * SOL, 2_100 * USDC, 200.0)

    def test_custom_tolerance(self, lp_engine: LPMintBurnEngine) -> None:
        assert lp_engine.check_equal_value(10 * SOL, 2_100 * USDC, 200.0, tolerance=0.10) > 0
