"""Position registry — wrap holdings, LP and leveraged positions.

Positions are keyed by id (``<kind>:<owner>:<crucible>:<nonce>``) rather than
kept in arrays, so lookups never scan. Nonce space is append-only: a closed
record keeps its slot for as long as the registry holds it.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Any, Iterable, Union

from ..errors import (
    AlreadyClosed,
    InsufficientBalance,
    NoFreeSlot,
    NotOwner,
    PositionNotFound,
)
from ..models import LeveragedPosition, LPPosition, PositionKey, PositionKind, WrapHolding
from .fees import CloseFeeResult, lp_close_fee
from .units import validate_amount

logger = logging.getLogger(__name__)

MAX_POSITIONS_PER_OWNER = 50

Position = Union[LPPosition, LeveragedPosition]

_RECORD_TYPES: dict[PositionKind, Any] = {
    PositionKind.LP: LPPosition,
    PositionKind.LEVERAGED: LeveragedPosition,
}


def position_id(kind: PositionKind, key: PositionKey) -> str:
    return f"{kind.value}:{key.id}"


def parse_position_id(raw: str) -> tuple[PositionKind, PositionKey]:
    """Inverse of ``position_id``."""
    parts = raw.split(":")
    if len(parts) != 4:
        raise PositionNotFound(f"Malformed position id '{raw}'")
    kind, owner, crucible_id, nonce = parts
    try:
        return PositionKind(kind), PositionKey(owner, crucible_id, int(nonce))
    except ValueError:
        raise PositionNotFound(f"Malformed position id '{raw}'") from None


# ---------------------------------------------------------------------------
# Close arithmetic
# ---------------------------------------------------------------------------


def receipt_yield(held_base: int, entry_rate: int, current_rate: int) -> int:
    """Yield share of ``held_base`` accumulated since ``entry_rate``."""
    if current_rate <= entry_rate:
        return 0
    return held_base * (current_rate - entry_rate) // current_rate


@dataclass(frozen=True)
class LegSettlement:
    """Split of a receipt-denominated leg into principal and yield, after fees."""

    gross: int
    principal: int
    yield_component: int
    fees: CloseFeeResult

    @property
    def net(self) -> int:
        return self.fees.net


def settle_receipt_leg(held_base: int, entry_rate: int, current_rate: int) -> LegSettlement:
    """Tax principal and yield of a receipt leg independently."""
    yield_part = receipt_yield(held_base, entry_rate, current_rate)
    principal = held_base - yield_part
    return LegSettlement(
        gross=held_base,
        principal=principal,
        yield_component=yield_part,
        fees=lp_close_fee(principal, yield_part),
    )


def settle_usdc_leg(usdc_amount: int) -> CloseFeeResult:
    """The stable leg is principal-only."""
    return lp_close_fee(usdc_amount, 0)


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class PositionRegistry:
    """In-memory owner of every holding and position."""

    def __init__(self, max_positions: int = MAX_POSITIONS_PER_OWNER) -> None:
        self.max_positions = max_positions
        self._positions: dict[str, Position] = {}
        self._holdings: dict[tuple[str, str], WrapHolding] = {}

    # ------------------------------------------------------------------
    # Nonce allocation
    # ------------------------------------------------------------------

    def next_nonce(self, kind: PositionKind, owner: str, crucible_id: str) -> int:
        """First nonce in ``0..max_positions-1`` with no record, open or closed."""
        for nonce in range(self.max_positions):
            pid = position_id(kind, PositionKey(owner, crucible_id, nonce))
            if pid not in self._positions:
                return nonce
        raise NoFreeSlot(
            f"No free {kind.value} slot for {owner} in {crucible_id}",
            max_positions=self.max_positions,
        )

    # ------------------------------------------------------------------
    # Positions
    # ------------------------------------------------------------------

    def add(self, position: Position) -> Position:
        if position.id in self._positions:
            raise NoFreeSlot(f"Nonce already allocated: {position.id}", nonce=position.nonce)
        self._positions[position.id] = position
        logger.debug("Registered position %s", position.id)
        return position

    def put(self, position: Position) -> None:
        """Overwrite a record unconditionally (rollback / reconciliation)."""
        self._positions[position.id] = position

    def remove(self, pid: str) -> Position | None:
        return self._positions.pop(pid, None)

    def get(self, pid: str) -> Position:
        try:
            return self._positions[pid]
        except KeyError:
            raise PositionNotFound(f"Position {pid} not found") from None

    def find(self, pid: str) -> Position | None:
        return self._positions.get(pid)

    def require_open(self, pid: str, owner: str) -> Position:
        """Lookup a position for a mutating call by ``owner``."""
        position = self.get(pid)
        if position.owner != owner:
            raise NotOwner(f"Position {pid} is not owned by {owner}")
        if not position.is_open:
            raise AlreadyClosed(f"Position {pid} is already closed")
        return position

    def close(self, pid: str, owner: str, provisional: bool = False) -> Position:
        position = self.require_open(pid, owner)
        closed = replace(position, is_open=False, provisional=provisional)
        self._positions[pid] = closed
        logger.debug("Closed position %s", pid)
        return closed

    def confirm(self, pid: str) -> None:
        position = self._positions.get(pid)
        if position is not None and position.provisional:
            self._positions[pid] = replace(position, provisional=False)

    def positions(
        self,
        kind: PositionKind | None = None,
        owner: str | None = None,
        crucible_id: str | None = None,
        open_only: bool = False,
    ) -> list[Position]:
        return [
            p
            for p in self._positions.values()
            if (kind is None or p.kind == kind)
            and (owner is None or p.owner == owner)
            and (crucible_id is None or p.crucible_id == crucible_id)
            and (not open_only or p.is_open)
        ]

    # ------------------------------------------------------------------
    # Wrap holdings
    # ------------------------------------------------------------------

    def holding(self, owner: str, crucible_id: str) -> WrapHolding | None:
        return self._holdings.get((owner, crucible_id))

    def balance(self, owner: str, crucible_id: str) -> int:
        holding = self.holding(owner, crucible_id)
        return holding.receipt_balance if holding else 0

    def holdings(self, owner: str | None = None) -> list[WrapHolding]:
        return [h for h in self._holdings.values() if owner is None or h.owner == owner]

    def credit(
        self,
        owner: str,
        crucible_id: str,
        receipt: int,
        timestamp: float | None = None,
        provisional: bool = False,
    ) -> WrapHolding:
        validate_amount(receipt, "receipt")
        current = self.holding(owner, crucible_id)
        balance = current.receipt_balance if current else 0
        holding = WrapHolding(
            owner=owner,
            crucible_id=crucible_id,
            receipt_balance=balance + receipt,
            last_deposit_ts=timestamp if timestamp is not None else (
                current.last_deposit_ts if current else None
            ),
            provisional=provisional,
        )
        self._holdings[(owner, crucible_id)] = holding
        return holding

    def debit(
        self, owner: str, crucible_id: str, receipt: int, provisional: bool = False
    ) -> WrapHolding | None:
        """Reduce a holding; the holding is removed when it reaches zero."""
        validate_amount(receipt, "receipt")
        balance = self.balance(owner, crucible_id)
        if receipt > balance:
            raise InsufficientBalance(
                "Not enough receipt tokens", required=receipt, available=balance
            )
        current = self._holdings[(owner, crucible_id)]
        if receipt == balance:
            del self._holdings[(owner, crucible_id)]
            return None
        holding = replace(current, receipt_balance=balance - receipt, provisional=provisional)
        self._holdings[(owner, crucible_id)] = holding
        return holding

    def set_holding(self, owner: str, crucible_id: str, holding: WrapHolding | None) -> None:
        """Overwrite (or drop, when ``holding`` is None) a holding."""
        if holding is None:
            self._holdings.pop((owner, crucible_id), None)
        else:
            self._holdings[(owner, crucible_id)] = holding

    def confirm_holding(self, owner: str, crucible_id: str) -> None:
        holding = self.holding(owner, crucible_id)
        if holding is not None and holding.provisional:
            self._holdings[(owner, crucible_id)] = replace(holding, provisional=False)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_records(self, kind: PositionKind) -> list[dict[str, Any]]:
        return [p.to_record() for p in self.positions(kind) if not p.provisional]

    def load_records(self, kind: PositionKind, records: Iterable[dict[str, Any]]) -> int:
        record_type = _RECORD_TYPES[kind]
        loaded = 0
        for raw in records:
            try:
                position = record_type.from_record(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed %s record: %s", kind.value, e)
                continue
            self._positions[position.id] = position
            loaded += 1
        return loaded

    def holding_records(self) -> list[dict[str, Any]]:
        return [h.to_record() for h in self._holdings.values() if not h.provisional]

    def load_holding_records(self, records: Iterable[dict[str, Any]]) -> int:
        loaded = 0
        for raw in records:
            try:
                holding = WrapHolding.from_record(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed holding record: %s", e)
                continue
            if holding.receipt_balance > 0:
                self._holdings[(holding.owner, holding.crucible_id)] = holding
                loaded += 1
        return loaded

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile_positions(
        self,
        kind: PositionKind,
        owner: str,
        records: Iterable[dict[str, Any]],
        skip: frozenset[str] | set[str] = frozenset(),
    ) -> int:
        """Overwrite ``owner``'s positions of ``kind`` with external records.

        Provisional local records the settlement layer does not know about are
        dropped. Ids in ``skip`` have a submission in flight and are left alone.
        Returns the number of records changed.
        """
        record_type = _RECORD_TYPES[kind]
        external: dict[str, Position] = {}
        for raw in records:
            try:
                position = record_type.from_record(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Ignoring malformed external %s record: %s", kind.value, e)
                continue
            if position.owner == owner:
                external[position.id] = position

        changed = 0
        for pid, position in external.items():
            if pid in skip:
                continue
            if self._positions.get(pid) != position:
                self._positions[pid] = position
                changed += 1

        for local in self.positions(kind, owner=owner):
            if local.id in skip or local.id in external:
                continue
            if local.provisional:
                del self._positions[local.id]
                changed += 1
                logger.info("Dropped unconfirmed position %s", local.id)
        return changed

    def reconcile_holdings(
        self,
        owner: str,
        records: Iterable[dict[str, Any]],
        skip: frozenset[str] | set[str] = frozenset(),
    ) -> int:
        """Same policy as ``reconcile_positions``; ``skip`` holds crucible ids."""
        external: dict[str, WrapHolding] = {}
        for raw in records:
            try:
                holding = WrapHolding.from_record(raw)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Ignoring malformed external holding: %s", e)
                continue
            if holding.owner == owner:
                external[holding.crucible_id] = holding

        changed = 0
        for crucible_id, holding in external.items():
            if crucible_id in skip:
                continue
            target = holding if holding.receipt_balance > 0 else None
            if self.holding(owner, crucible_id) != target:
                self.set_holding(owner, crucible_id, target)
                changed += 1

        for local in self.holdings(owner):
            if local.crucible_id in skip or local.crucible_id in external:
                continue
            if local.provisional:
                self.set_holding(owner, local.crucible_id, None)
                changed += 1
        return changed
