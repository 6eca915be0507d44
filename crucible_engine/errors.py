"""Domain errors raised by the accounting and risk engine.

Every error carries a ``kind`` (stable string identifier surfaced to callers)
and a ``context`` dict with the numeric values involved, e.g. required vs.
available amounts.
"""
from __future__ import annotations

from typing import Any


class EngineError(Exception):
    """Base class for all engine errors."""

    kind = "EngineError"

    def __init__(self, message: str = "", **context: Any) -> None:
        self.context: dict[str, Any] = context
        if not message:
            message = self.kind
        if context:
            details = ", ".join(f"{k}={v}" for k, v in sorted(context.items()))
            message = f"{message} ({details})"
        super().__init__(message)


class InsufficientBalance(EngineError):
    kind = "InsufficientBalance"


class InsufficientLiquidity(EngineError):
    kind = "InsufficientLiquidity"


class InvalidAmount(EngineError):
    kind = "InvalidAmount"


class InvalidLegAmount(InvalidAmount):
    kind = "InvalidLegAmount"


class InvalidLeverage(InvalidAmount):
    kind = "InvalidLeverage"


class PositionNotFound(EngineError):
    kind = "PositionNotFound"


class AlreadyClosed(EngineError):
    kind = "AlreadyClosed"


class NotOwner(EngineError):
    kind = "NotOwner"


class NoFreeSlot(EngineError):
    kind = "NoFreeSlot"


class PriceUnavailable(EngineError):
    kind = "PriceUnavailable"


class ToleranceExceeded(EngineError):
    kind = "ToleranceExceeded"


class HealthFactorTooLow(EngineError):
    kind = "HealthFactorTooLow"


class NotLiquidatable(EngineError):
    kind = "NotLiquidatable"


class UnknownCrucible(EngineError):
    kind = "UnknownCrucible"


class SettlementFailed(EngineError):
    """Wraps an opaque error returned by the external settlement layer."""

    kind = "SettlementFailed"

    def __init__(
        self, message: str = "", cause: BaseException | None = None, **context: Any
    ) -> None:
        self.cause = cause
        if cause is not None and not message:
            message = f"Settlement failed: {cause}"
        super().__init__(message, **context)
