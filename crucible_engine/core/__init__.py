"""Accounting and risk core — synchronous, no I/O."""
from .analytics import AnalyticsAggregator, TransactionLog
from .exchange_rate import INITIAL_EXCHANGE_RATE, ExchangeRateLedger
from .lending import LendingPool
from .lp_math import LPMintBurnEngine
from .registry import MAX_POSITIONS_PER_OWNER, PositionRegistry
from .risk import MAX_LEVERAGE, LeverageRiskCalculator

__all__ = [
    "AnalyticsAggregator",
    "ExchangeRateLedger",
    "INITIAL_EXCHANGE_RATE",
    "LPMintBurnEngine",
    "LendingPool",
    "LeverageRiskCalculator",
    "MAX_LEVERAGE",
    "MAX_POSITIONS_PER_OWNER",
    "PositionRegistry",
    "TransactionLog",
]
