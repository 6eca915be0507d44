"""Fee schedule — constant table and pure fee functions.

Every fee function takes an integer gross amount and returns a FeeResult
where ``net + fee == gross`` exactly. Fees are floored on basis points and
the net is obtained by subtraction, so no dust is created or lost.
"""
from __future__ import annotations

from dataclasses import dataclass

from ..errors import InvalidAmount
from .units import BPS_DENOMINATOR, rate_to_bps

WRAP_FEE_RATE = 0.005
UNWRAP_FEE_RATE = 0.0075
UNWRAP_COOLDOWN_FEE_RATE = 0.003
UNWRAP_COOLDOWN_SECONDS = 5 * 24 * 60 * 60

INFERNO_OPEN_FEE_RATE = 0.01
INFERNO_CLOSE_FEE_RATE = 0.02
INFERNO_YIELD_FEE_RATE = 0.10

LIQUIDATION_FEE_RATE = 0.10
LENDING_YIELD_FEE_RATE = 0.10
BORROW_RATE = 0.10

# Share of a base-token fee that stays in the vault; the rest is treasury.
VAULT_FEE_SHARE_RATE = 0.80

SECONDS_PER_YEAR = 365 * 24 * 60 * 60


@dataclass(frozen=True)
class FeeResult:
    gross: int
    net: int
    fee: int

    def __post_init__(self) -> None:
        if self.net + self.fee != self.gross:
            raise ValueError(
                f"Fee split does not sum: net {self.net} + fee {self.fee} != gross {self.gross}"
            )


@dataclass(frozen=True)
class CloseFeeResult:
    """Compound close fee: principal and yield taxed independently."""

    principal: FeeResult
    yield_: FeeResult

    @property
    def gross(self) -> int:
        return self.principal.gross + self.yield_.gross

    @property
    def net(self) -> int:
        return self.principal.net + self.yield_.net

    @property
    def fee(self) -> int:
        return self.principal.fee + self.yield_.fee


def apply_fee(gross: int, rate: float) -> FeeResult:
    """Apply a fractional fee rate to an integer gross amount."""
    if gross < 0:
        raise InvalidAmount("Gross amount cannot be negative", gross=gross)
    fee = gross * rate_to_bps(rate) // BPS_DENOMINATOR
    return FeeResult(gross=gross, net=gross - fee, fee=fee)


def wrap_fee(gross: int) -> FeeResult:
    return apply_fee(gross, WRAP_FEE_RATE)


def unwrap_fee_rate(deposit_ts: float | None, now: float) -> float:
    """0.75% unwrap fee, reduced to 0.3% once the cooldown has elapsed."""
    if deposit_ts is not None and now - deposit_ts >= UNWRAP_COOLDOWN_SECONDS:
        return UNWRAP_COOLDOWN_FEE_RATE
    return UNWRAP_FEE_RATE


def unwrap_fee(gross: int, deposit_ts: float | None = None, now: float = 0.0) -> FeeResult:
    return apply_fee(gross, unwrap_fee_rate(deposit_ts, now))


def lp_open_fee(gross: int) -> FeeResult:
    return apply_fee(gross, INFERNO_OPEN_FEE_RATE)


def lp_close_fee(principal: int, yield_amount: int) -> CloseFeeResult:
    """2% on principal plus 10% on the yield component only."""
    return CloseFeeResult(
        principal=apply_fee(principal, INFERNO_CLOSE_FEE_RATE),
        yield_=yield_skim(yield_amount),
    )


def yield_skim(gross_yield: int) -> FeeResult:
    return apply_fee(gross_yield, INFERNO_YIELD_FEE_RATE)


def liquidation_fee(gross: int) -> FeeResult:
    return apply_fee(gross, LIQUIDATION_FEE_RATE)


def lending_yield_fee(gross_interest: int) -> FeeResult:
    return apply_fee(gross_interest, LENDING_YIELD_FEE_RATE)


def split_fee(fee: int) -> tuple[int, int]:
    """Split a fee into (vault_share, protocol_share); the parts sum to ``fee``."""
    vault_share = fee * rate_to_bps(VAULT_FEE_SHARE_RATE) // BPS_DENOMINATOR
    return vault_share, fee - vault_share


def borrow_interest(principal: int, elapsed_seconds: float, rate: float = BORROW_RATE) -> int:
    """Simple annualised interest, rounded up in the lending pool's favour."""
    if principal <= 0 or elapsed_seconds <= 0:
        return 0
    numerator = principal * rate_to_bps(rate) * int(elapsed_seconds)
    denominator = BPS_DENOMINATOR * SECONDS_PER_YEAR
    return -(-numerator // denominator)
