"""Reconciliation loop — pulls authoritative state and overwrites local state."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Iterable

from ..errors import EngineError
from ..events import BALANCE_CHANGED, InMemoryEventBus
from ..interfaces.settlement import SettlementClient
from ..models import ExternalState, PositionKind
from .engine import CrucibleEngine

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 30
DEFAULT_MAX_READ_RETRIES = 3


class Reconciler:
    """Keeps the engine's view in line with the settlement layer.

    External truth wins. Records with a submission in flight are skipped so
    an optimistic update is not clobbered before its own settlement returns.
    """

    def __init__(
        self,
        engine: CrucibleEngine,
        settlement: SettlementClient,
        owners: Iterable[str] = (),
        interval_seconds: float = DEFAULT_INTERVAL_SECONDS,
        max_read_retries: int = DEFAULT_MAX_READ_RETRIES,
        retry_delay_seconds: float = 1.0,
    ) -> None:
        self._engine = engine
        self._settlement = settlement
        self.owners: set[str] = set(owners)
        self.interval_seconds = interval_seconds
        self.max_read_retries = max_read_retries
        self.retry_delay_seconds = retry_delay_seconds
        self._unsubscribe = None

    def track(self, owner: str) -> None:
        self.owners.add(owner)

    def known_owners(self) -> set[str]:
        owners = set(self.owners)
        owners.update(h.owner for h in self._engine.registry.holdings())
        owners.update(p.owner for p in self._engine.registry.positions())
        return owners

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def attach(self, bus: InMemoryEventBus) -> None:
        """Reconcile an owner when another component reports a balance change."""
        self._unsubscribe = bus.subscribe(BALANCE_CHANGED, self._on_balance_changed)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def _on_balance_changed(self, name: str, payload: dict[str, Any]) -> None:
        if payload.get("source") == "engine":
            return
        owner = payload.get("owner")
        if not owner:
            return
        logger.info("External %s for %s, reconciling", name, owner)
        await self.reconcile_owner(owner)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def _fetch(self, owner: str) -> ExternalState | None:
        for attempt in range(1, self.max_read_retries + 1):
            try:
                return await self._settlement.fetch_state(owner)
            except Exception as e:
                logger.warning(
                    "State read for %s failed (attempt %d/%d): %s",
                    owner, attempt, self.max_read_retries, e,
                )
                if attempt < self.max_read_retries:
                    await asyncio.sleep(self.retry_delay_seconds)
        logger.error("Giving up on state read for %s this cycle", owner)
        return None

    def _apply_crucibles(self, records: Iterable[dict[str, Any]]) -> int:
        engine = self._engine
        changed = 0
        for raw in records:
            crucible_id = raw.get("id")
            if crucible_id not in engine.ledger:
                logger.warning("External state mentions unknown crucible %s", crucible_id)
                continue
            try:
                before = engine.ledger.get(crucible_id)
                after = engine.ledger.reconcile(
                    crucible_id,
                    int(raw["exchangeRate"]),
                    int(raw["totalReceiptSupply"]),
                )
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Ignoring malformed crucible record %s: %s", crucible_id, e)
                continue
            engine.mark_reconciled(crucible_id)
            if after != before:
                changed += 1
        return changed

    def apply(self, state: ExternalState) -> int:
        """Overwrite local state for ``state.owner``; returns records changed."""
        engine = self._engine
        owner = state.owner
        in_flight = engine.in_flight_positions()
        changed = self._apply_crucibles(state.crucibles)
        changed += engine.registry.reconcile_holdings(
            owner, state.wrap_holdings, skip=engine.in_flight_holdings(owner)
        )
        changed += engine.registry.reconcile_positions(
            PositionKind.LP, owner, state.lp_positions, skip=in_flight
        )
        changed += engine.registry.reconcile_positions(
            PositionKind.LEVERAGED, owner, state.leveraged_positions, skip=in_flight
        )
        if changed:
            logger.info("Reconciled %d records for %s", changed, owner)
        return changed

    async def reconcile_owner(self, owner: str) -> int:
        state = await self._fetch(owner)
        if state is None:
            return 0
        return self.apply(state)

    async def reconcile_all(self) -> int:
        changed = 0
        for owner in sorted(self.known_owners()):
            changed += await self.reconcile_owner(owner)
        dirty = self._engine.dirty_crucibles
        if dirty:
            logger.warning("Crucibles still awaiting reconciliation: %s", ", ".join(sorted(dirty)))
        if changed:
            try:
                await self._engine.save()
            except (OSError, EngineError) as e:
                logger.error("Failed to persist reconciled state: %s", e)
        return changed

    async def run_continuous(self, interval_seconds: float | None = None) -> None:
        """Run the reconciliation loop forever."""
        interval = interval_seconds or self.interval_seconds
        logger.info("Starting reconciliation (every %s seconds)", interval)

        while True:
            try:
                await self.reconcile_all()
            except Exception as e:
                logger.error("Error in reconciliation loop: %s", e)
            await asyncio.sleep(interval)
