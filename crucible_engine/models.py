"""Data models — all frozen (immutable)."""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


@dataclass(frozen=True)
class Identity:
    """Canonical signer identity, built once at the boundary."""

    owner: str

    def __post_init__(self) -> None:
        if not isinstance(self.owner, str) or not self.owner.strip():
            raise ValueError("Identity owner must be a non-empty string")

    @classmethod
    def parse(cls, raw: Any) -> Identity:
        """Normalize a string, an Identity, or a key-like object.

        Key-like objects expose ``address``, ``public_key`` or ``to_base58()``;
        the first one found is used.
        """
        if isinstance(raw, Identity):
            return raw
        if isinstance(raw, str):
            return cls(raw.strip())
        for attr in ("address", "public_key"):
            value = getattr(raw, attr, None)
            if value is not None:
                return cls.parse(value)
        to_base58 = getattr(raw, "to_base58", None)
        if callable(to_base58):
            return cls(str(to_base58()))
        raise ValueError(f"Cannot derive identity from {type(raw).__name__}")

    def __str__(self) -> str:
        return self.owner


class PositionKind(str, Enum):
    LP = "lp"
    LEVERAGED = "leveraged"


@dataclass(frozen=True)
class PositionKey:
    owner: str
    crucible_id: str
    nonce: int

    @property
    def id(self) -> str:
        return f"{self.owner}:{self.crucible_id}:{self.nonce}"


@dataclass(frozen=True)
class Crucible:
    """Yield vault state for one base asset."""

    id: str
    base_token: str
    receipt_symbol: str
    exchange_rate: int
    total_receipt_supply: int = 0
    base_apy: float = 0.0
    total_fees_accrued: int = 0
    protocol_fees: int = 0
    total_base_deposited: int = 0


@dataclass(frozen=True)
class WrapHolding:
    owner: str
    crucible_id: str
    receipt_balance: int
    last_deposit_ts: float | None = None
    provisional: bool = False

    def to_record(self) -> dict[str, Any]:
        return {
            "owner": self.owner,
            "crucibleId": self.crucible_id,
            "receiptBalance": self.receipt_balance,
            "lastDepositTs": self.last_deposit_ts,
        }

    @classmethod
    def from_record(cls, raw: dict[str, Any]) -> WrapHolding:
        return cls(
            owner=raw["owner"],
            crucible_id=raw["crucibleId"],
            receipt_balance=int(raw["receiptBalance"]),
            last_deposit_ts=raw.get("lastDepositTs"),
        )


@dataclass(frozen=True)
class LPPosition:
    """Receipt-token / USDC liquidity position."""

    owner: str
    crucible_id: str
    nonce: int
    base_token: str
    base_amount: int
    usdc_amount: int
    entry_price: float
    entry_exchange_rate: int
    lp_token_amount: int
    receipt_held: int
    is_open: bool = True
    opened_at: float = 0.0
    provisional: bool = False

    kind = PositionKind.LP

    @property
    def key(self) -> PositionKey:
        return PositionKey(self.owner, self.crucible_id, self.nonce)

    @property
    def id(self) -> str:
        return f"lp:{self.key.id}"

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "crucibleId": self.crucible_id,
            "baseToken": self.base_token,
            "baseAmount": self.base_amount,
            "usdcAmount": self.usdc_amount,
            "entryPrice": self.entry_price,
            "entryExchangeRate": self.entry_exchange_rate,
            "lpTokenAmount": self.lp_token_amount,
            "receiptHeld": self.receipt_held,
            "isOpen": self.is_open,
            "nonce": self.nonce,
            "openedAt": self.opened_at,
        }

    @classmethod
    def from_record(cls, raw: dict[str, Any]) -> LPPosition:
        return cls(
            owner=raw["owner"],
            crucible_id=raw["crucibleId"],
            nonce=int(raw["nonce"]),
            base_token=raw["baseToken"],
            base_amount=int(raw["baseAmount"]),
            usdc_amount=int(raw["usdcAmount"]),
            entry_price=float(raw.get("entryPrice", 0.0)),
            entry_exchange_rate=int(raw["entryExchangeRate"]),
            lp_token_amount=int(raw.get("lpTokenAmount", 0)),
            receipt_held=int(raw.get("receiptHeld", 0)),
            is_open=bool(raw["isOpen"]),
            opened_at=float(raw.get("openedAt", 0.0)),
        )


@dataclass(frozen=True)
class LeveragedPosition:
    """Leveraged (Inferno) position — collateral plus borrowed USDC."""

    owner: str
    crucible_id: str
    nonce: int
    base_token: str
    collateral: int
    leverage_factor: float
    borrowed_usdc: int
    entry_price: float
    entry_exchange_rate: int
    receipt_held: int
    is_open: bool = True
    opened_at: float = 0.0
    provisional: bool = False

    kind = PositionKind.LEVERAGED

    @property
    def key(self) -> PositionKey:
        return PositionKey(self.owner, self.crucible_id, self.nonce)

    @property
    def id(self) -> str:
        return f"leveraged:{self.key.id}"

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner": self.owner,
            "crucibleId": self.crucible_id,
            "baseToken": self.base_token,
            "baseAmount": self.collateral,
            "usdcAmount": self.borrowed_usdc,
            "entryPrice": self.entry_price,
            "entryExchangeRate": self.entry_exchange_rate,
            "receiptHeld": self.receipt_held,
            "isOpen": self.is_open,
            "nonce": self.nonce,
            "leverageFactor": self.leverage_factor,
            "borrowedUSDC": self.borrowed_usdc,
            "openedAt": self.opened_at,
        }

    @classmethod
    def from_record(cls, raw: dict[str, Any]) -> LeveragedPosition:
        return cls(
            owner=raw["owner"],
            crucible_id=raw["crucibleId"],
            nonce=int(raw["nonce"]),
            base_token=raw["baseToken"],
            collateral=int(raw["baseAmount"]),
            leverage_factor=float(raw.get("leverageFactor", 1.0)),
            borrowed_usdc=int(raw.get("borrowedUSDC", 0)),
            entry_price=float(raw.get("entryPrice", 0.0)),
            entry_exchange_rate=int(raw["entryExchangeRate"]),
            receipt_held=int(raw.get("receiptHeld", 0)),
            is_open=bool(raw["isOpen"]),
            opened_at=float(raw.get("openedAt", 0.0)),
        )


@dataclass(frozen=True)
class CloseResult:
    """Outcome of closing (or liquidating) a position."""

    base_amount_returned: int
    yield_component: int
    fees_charged: int
    usdc_returned: int = 0
    usdc_repaid: int = 0
    interest_paid: int = 0


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAW = "withdraw"
    WRAP = "wrap"
    UNWRAP = "unwrap"

    @property
    def is_inflow(self) -> bool:
        return self in (TransactionType.DEPOSIT, TransactionType.WRAP)


@dataclass(frozen=True)
class Transaction:
    """Immutable transaction log record. Amounts are display units."""

    type: TransactionType
    amount: float
    token: str
    crucible_id: str
    timestamp: float
    id: str = ""
    owner: str = ""
    dist_token: str | None = None
    borrowed_amount: float | None = None
    leverage: float | None = None
    usdc_deposited: float | None = None
    fee: float | None = None
    usd_value: float | None = None
    yield_amount: float | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "amount": self.amount,
            "token": self.token,
            "crucibleId": self.crucible_id,
            "timestamp": self.timestamp,
            "owner": self.owner,
            "distToken": self.dist_token,
            "borrowedAmount": self.borrowed_amount,
            "leverage": self.leverage,
            "usdcDeposited": self.usdc_deposited,
            "fee": self.fee,
            "usdValue": self.usd_value,
            "yieldAmount": self.yield_amount,
        }

    @classmethod
    def from_record(cls, raw: dict[str, Any]) -> Transaction:
        return cls(
            type=TransactionType(raw["type"]),
            amount=float(raw["amount"]),
            token=raw["token"],
            crucible_id=raw.get("crucibleId", ""),
            timestamp=float(raw["timestamp"]),
            id=raw.get("id", ""),
            owner=raw.get("owner", ""),
            dist_token=raw.get("distToken"),
            borrowed_amount=raw.get("borrowedAmount"),
            leverage=raw.get("leverage"),
            usdc_deposited=raw.get("usdcDeposited"),
            fee=raw.get("fee"),
            usd_value=raw.get("usdValue"),
            yield_amount=raw.get("yieldAmount"),
        )


@dataclass(frozen=True)
class LendingPoolState:
    total_liquidity: int
    total_borrowed: int
    borrow_rate: float
    minimum_reserve: int = 0
    total_shares: int = 0
    protocol_fees: int = 0
    bad_debt: int = 0

    @property
    def available_liquidity(self) -> int:
        return max(self.total_liquidity - self.total_borrowed - self.minimum_reserve, 0)


@dataclass(frozen=True)
class SettlementOperation:
    """Opaque settlement-layer action; ``op_id`` is the idempotency key."""

    op_id: str
    action: str
    owner: str
    crucible_id: str
    nonce: int | None = None
    params: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class SettlementReceipt:
    op_id: str
    success: bool
    signature: str = ""
    balances: dict[str, Any] = field(default_factory=dict)
    error: str = ""


@dataclass(frozen=True)
class ExternalState:
    """Authoritative state for one owner as reported by the settlement layer."""

    owner: str
    crucibles: tuple[dict[str, Any], ...] = ()
    wrap_holdings: tuple[dict[str, Any], ...] = ()
    lp_positions: tuple[dict[str, Any], ...] = ()
    leveraged_positions: tuple[dict[str, Any], ...] = ()
    as_of: float = 0.0
