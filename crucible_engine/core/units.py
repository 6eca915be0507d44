"""Fixed-point unit helpers — pure functions, no I/O.

Amounts inside the engine are integers:
    base / receipt tokens  -> scale 1e9 (AMOUNT_DECIMALS)
    USDC                   -> scale 1e6 (USDC_DECIMALS)
    exchange rate          -> scale 1e6 (RATE_SCALE), 1.0 == 1_000_000
    price                  -> scale 1e6 (PRICE_SCALE)
"""
from __future__ import annotations

import math
from decimal import ROUND_DOWN, Decimal, InvalidOperation

from ..errors import InvalidAmount

AMOUNT_DECIMALS = 9
AMOUNT_SCALE = 10**AMOUNT_DECIMALS

USDC_DECIMALS = 6
USDC_SCALE = 10**USDC_DECIMALS

RATE_SCALE = 1_000_000
PRICE_SCALE = 1_000_000
BPS_DENOMINATOR = 10_000

# Default sanity threshold for display amounts (see normalize_amount).
DEFAULT_SANITY_THRESHOLD = 1_000_000.0


def to_units(amount: float | int | str | Decimal, decimals: int = AMOUNT_DECIMALS) -> int:
    """Convert a display amount to integer base units (truncating).

    Examples:
        to_units("1.5", 9) -> 1_500_000_000
        to_units(100, 6)   -> 100_000_000
    """
    try:
        value = Decimal(str(amount))
    except InvalidOperation as e:
        raise InvalidAmount(f"Not a number: {amount!r}") from e
    if not value.is_finite():
        raise InvalidAmount(f"Non-finite amount: {amount!r}")
    scaled = (value * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_DOWN)
    return int(scaled)


def from_units(units: int, decimals: int = AMOUNT_DECIMALS) -> float:
    """Convert integer base units back to a display float."""
    return units / (10**decimals)


def rescale(units: int, from_decimals: int, to_decimals: int) -> int:
    """Move an integer amount between decimal scales (rounds down when shrinking)."""
    if to_decimals >= from_decimals:
        return units * 10 ** (to_decimals - from_decimals)
    return units // 10 ** (from_decimals - to_decimals)


def rate_to_fixed(rate: float) -> int:
    """1.045 -> 1_045_000"""
    return int(round(rate * RATE_SCALE))


def rate_from_fixed(rate: int) -> float:
    return rate / RATE_SCALE


def price_to_fixed(price: float) -> int:
    """Convert a float quote price to PRICE_SCALE fixed point."""
    if not math.isfinite(price) or price < 0:
        raise InvalidAmount(f"Invalid price: {price!r}", price=price)
    return int(round(price * PRICE_SCALE))


def rate_to_bps(rate: float) -> int:
    """Fee fraction -> basis points (0.005 -> 50)."""
    return int(round(rate * BPS_DENOMINATOR))


def validate_amount(amount: int, name: str = "amount") -> int:
    """Reject non-integer, non-positive amounts."""
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount(f"{name} must be an integer number of base units, got {amount!r}")
    if amount <= 0:
        raise InvalidAmount(f"{name} must be positive", **{name: amount})
    return amount


def value_in_usdc(amount: int, price: float, decimals: int = AMOUNT_DECIMALS) -> int:
    """USDC micro-units for ``amount`` base units priced at ``price`` USD.

    value = amount / 10^decimals * price, expressed at USDC_SCALE.
    """
    price_fp = price_to_fixed(price)
    return amount * price_fp * USDC_SCALE // (10**decimals * PRICE_SCALE)


def usdc_to_base(usdc: int, price: float, decimals: int = AMOUNT_DECIMALS) -> int:
    """Base units purchasable with ``usdc`` micro-units at ``price`` (rounded up)."""
    price_fp = price_to_fixed(price)
    if price_fp == 0:
        raise InvalidAmount("Cannot convert at zero price", price=price)
    numerator = usdc * 10**decimals * PRICE_SCALE
    denominator = price_fp * USDC_SCALE
    return -(-numerator // denominator)


def normalize_amount(
    amount: float,
    decimals: int,
    threshold: float = DEFAULT_SANITY_THRESHOLD,
) -> float:
    """Normalize an amount that may have been recorded in sub-units.

    Upstream callers occasionally pass raw sub-unit integers (lamports,
    micro-USDC) instead of display units. Anything above the token's sanity
    threshold is treated as sub-units and rescaled by its decimals.
    """
    if amount > threshold:
        return amount / (10**decimals)
    return amount
