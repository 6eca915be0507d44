"""Integration tests for reconciliation against the settlement layer's view."""
from __future__ import annotations

import asyncio
from dataclasses import replace
from unittest.mock import AsyncMock

import pytest

from crucible_engine.core.exchange_rate import INITIAL_RATE
from crucible_engine.errors import SettlementFailed
from crucible_engine.events import BALANCE_CHANGED, InMemoryEventBus
from crucible_engine.models import (
    ExternalState,
    Identity,
    LeveragedPosition,
    PositionKind,
    SettlementOperation,
    SettlementReceipt,
)
from crucible_engine.services.engine import CrucibleEngine
from crucible_engine.services.reconciler import Reconciler
from crucible_engine.storage import MemoryStore

SOL = 10**9


def _settlement(states: dict[str, ExternalState] | None = None) -> AsyncMock:
    states = states or {}
    settlement = AsyncMock()
    settlement.fetch_state = AsyncMock(
        side_effect=lambda owner: states.get(owner, ExternalState(owner=owner))
    )
    return settlement


@pytest.fixture()
def reconciler(engine: CrucibleEngine) -> Reconciler:
    return Reconciler(engine, _settlement(), retry_delay_seconds=0)


class TestApply:
    def test_overwrites_crucible_state(self, engine: CrucibleEngine, reconciler: Reconciler) -> None:
        state = ExternalState(
            owner="alice",
            crucibles=({"id": "sol", "exchangeRate": 1_100_000, "totalReceiptSupply": 5 * SOL},),
        )

        changed = reconciler.apply(state)

        assert changed == 1
        crucible = engine.ledger.get("sol")
        assert crucible.exchange_rate == 1_100_000
        assert crucible.total_receipt_supply == 5 * SOL

    def test_unknown_and_malformed_crucibles_skipped(
        self, engine: CrucibleEngine, reconciler: Reconciler
    ) -> None:
        state = ExternalState(
            owner="alice",
            crucibles=(
                {"id": "eth", "exchangeRate": 1, "totalReceiptSupply": 1},
                {"id": "sol", "exchangeRate": "not-a-number", "totalReceiptSupply": 1},
            ),
        )

        assert reconciler.apply(state) == 0
        assert engine.ledger.get("sol").exchange_rate == INITIAL_RATE

    def test_overwrites_holdings(self, engine: CrucibleEngine, reconciler: Reconciler) -> None:
        state = ExternalState(
            owner="alice",
            wrap_holdings=(
                {"owner": "alice", "crucibleId": "sol", "receiptBalance": 42, "lastDepositTs": 1.0},
            ),
        )

        assert reconciler.apply(state) == 1
        assert engine.registry.balance("alice", "sol") == 42

    def test_zero_external_balance_drops_holding(
        self, engine: CrucibleEngine, reconciler: Reconciler
    ) -> None:
        engine.registry.credit("alice", "sol", 100)
        state = ExternalState(
            owner="alice",
            wrap_holdings=({"owner": "alice", "crucibleId": "sol", "receiptBalance": 0},),
        )

        reconciler.apply(state)

        assert engine.registry.holding("alice", "sol") is None

    def test_adopts_external_positions(
        self,
        engine: CrucibleEngine,
        reconciler: Reconciler,
        sample_leveraged_position: LeveragedPosition,
    ) -> None:
        state = ExternalState(
            owner="alice",
            leveraged_positions=(sample_leveraged_position.to_record(),),
        )

        assert reconciler.apply(state) == 1
        assert engine.registry.get(sample_leveraged_position.id) == sample_leveraged_position
        assert reconciler.apply(state) == 0

    def test_drops_unconfirmed_local_positions(
        self,
        engine: CrucibleEngine,
        reconciler: Reconciler,
        sample_leveraged_position: LeveragedPosition,
    ) -> None:
        engine.registry.add(replace(sample_leveraged_position, provisional=True))

        assert reconciler.apply(ExternalState(owner="alice")) == 1
        assert engine.registry.positions(PositionKind.LEVERAGED) == []

    def test_other_owners_untouched(
        self,
        engine: CrucibleEngine,
        reconciler: Reconciler,
        sample_leveraged_position: LeveragedPosition,
    ) -> None:
        engine.registry.add(replace(sample_leveraged_position, provisional=True))

        assert reconciler.apply(ExternalState(owner="bob")) == 0
        assert len(engine.registry.positions()) == 1

    def test_clears_dirty_flag(self, engine: CrucibleEngine, reconciler: Reconciler) -> None:
        engine._dirty_crucibles.add("sol")
        reconciler.apply(
            ExternalState(
                owner="alice",
                crucibles=({"id": "sol", "exchangeRate": INITIAL_RATE, "totalReceiptSupply": 0},),
            )
        )
        assert engine.dirty_crucibles == frozenset()


class _GatedSettlement:
    def __init__(self) -> None:
        self.gate = asyncio.Event()

    async def submit(self, operation: SettlementOperation) -> SettlementReceipt:
        await self.gate.wait()
        return SettlementReceipt(op_id=operation.op_id, success=True)

    async def fetch_state(self, owner: str) -> ExternalState:
        return ExternalState(owner=owner)


class TestInFlight:
    @pytest.mark.asyncio
    async def test_in_flight_position_not_clobbered(
        self, engine: CrucibleEngine, alice: Identity
    ) -> None:
        settlement = _GatedSettlement()
        engine._settlement = settlement
        reconciler = Reconciler(engine, settlement)

        task = asyncio.create_task(engine.open_leveraged_position(alice, "sol", SOL, 1.0))
        while not engine.in_flight_positions():
            await asyncio.sleep(0)

        assert reconciler.apply(ExternalState(owner="alice")) == 0
        assert len(engine.registry.positions()) == 1

        settlement.gate.set()
        position = await task
        assert engine.registry.get(position.id).provisional is False

    @pytest.mark.asyncio
    async def test_in_flight_holding_not_clobbered(
        self, engine: CrucibleEngine, alice: Identity
    ) -> None:
        settlement = _GatedSettlement()
        engine._settlement = settlement
        reconciler = Reconciler(engine, settlement)

        task = asyncio.create_task(engine.wrap(alice, "sol", SOL))
        while not engine.in_flight_holdings("alice"):
            await asyncio.sleep(0)

        state = ExternalState(
            owner="alice",
            wrap_holdings=({"owner": "alice", "crucibleId": "sol", "receiptBalance": 1},),
        )
        assert reconciler.apply(state) == 0

        settlement.gate.set()
        result = await task
        assert engine.registry.balance("alice", "sol") == result.minted


class TestReconcileLoop:
    @pytest.mark.asyncio
    async def test_read_failure_retries_then_gives_up(self, engine: CrucibleEngine) -> None:
        settlement = AsyncMock()
        settlement.fetch_state = AsyncMock(side_effect=SettlementFailed("down"))
        reconciler = Reconciler(engine, settlement, max_read_retries=3, retry_delay_seconds=0)

        assert await reconciler.reconcile_owner("alice") == 0
        assert settlement.fetch_state.await_count == 3

    @pytest.mark.asyncio
    async def test_reconcile_all_covers_known_owners_and_saves(
        self, engine: CrucibleEngine, store: MemoryStore
    ) -> None:
        engine.registry.credit("bob", "sol", 10)
        states = {
            "alice": ExternalState(
                owner="alice",
                crucibles=({"id": "sol", "exchangeRate": 1_050_000, "totalReceiptSupply": 10},),
            ),
        }
        settlement = _settlement(states)
        reconciler = Reconciler(engine, settlement, owners=["alice"], retry_delay_seconds=0)

        assert reconciler.known_owners() == {"alice", "bob"}
        changed = await reconciler.reconcile_all()

        assert changed == 1
        fetched = sorted(call.args[0] for call in settlement.fetch_state.await_args_list)
        assert fetched == ["alice", "bob"]
        saved = await store.load("crucibles")
        assert saved[0]["exchangeRate"] == 1_050_000

    @pytest.mark.asyncio
    async def test_external_balance_change_triggers_reconcile(
        self, engine: CrucibleEngine, event_bus: InMemoryEventBus
    ) -> None:
        settlement = _settlement()
        reconciler = Reconciler(engine, settlement, retry_delay_seconds=0)
        reconciler.attach(event_bus)

        event_bus.emit(BALANCE_CHANGED, {"owner": "carol", "source": "wallet"})
        event_bus.emit(BALANCE_CHANGED, {"owner": "dave", "source": "engine"})
        await event_bus.drain()

        settlement.fetch_state.assert_awaited_once_with("carol")

        reconciler.detach()
        event_bus.emit(BALANCE_CHANGED, {"owner": "carol", "source": "wallet"})
        await event_bus.drain()
        assert settlement.fetch_state.await_count == 1

    @pytest.mark.asyncio
    async def test_track_adds_owner(self, reconciler: Reconciler) -> None:
        reconciler.track("erin")
        assert "erin" in reconciler.known_owners()
