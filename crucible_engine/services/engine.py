"""Command layer — validates, applies optimistic state, settles, confirms or rolls back."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Callable, Mapping

from ..config import EngineConfig
from ..core.analytics import (
    DEFAULT_TOKEN_UNITS,
    AnalyticsAggregator,
    PortfolioTotals,
    TokenUnits,
    TransactionLog,
)
from ..core.exchange_rate import ExchangeRateLedger, UnwrapResult, WrapResult, redeem_amount
from ..core.fees import lp_open_fee
from ..core.lending import LendingPool
from ..core.lp_math import LPMintBurnEngine
from ..core.registry import (
    PositionRegistry,
    parse_position_id,
    settle_receipt_leg,
    settle_usdc_leg,
)
from ..core.risk import HealthStatus, LeverageRiskCalculator, PositionHealth
from ..core.units import (
    AMOUNT_DECIMALS,
    USDC_DECIMALS,
    from_units,
    rate_to_fixed,
    to_units,
    validate_amount,
    value_in_usdc,
)
from ..errors import (
    AlreadyClosed,
    EngineError,
    InsufficientBalance,
    InsufficientLiquidity,
    PositionNotFound,
    PriceUnavailable,
    SettlementFailed,
)
from ..events import BALANCE_CHANGED, POSITION_CLOSED, POSITION_OPENED
from ..interfaces.event_bus import EventBus
from ..interfaces.settlement import SettlementClient
from ..interfaces.store import PersistentStore
from ..models import (
    CloseResult,
    Crucible,
    Identity,
    LeveragedPosition,
    LPPosition,
    PositionKind,
    SettlementOperation,
    SettlementReceipt,
    Transaction,
    TransactionType,
)

logger = logging.getLogger(__name__)

PriceOf = Callable[[str], float]


@dataclass(frozen=True)
class LendingResult:
    owner: str
    amount: int
    shares: int


class CrucibleEngine:
    """Single entry point for every state-changing user action.

    Each action follows the same sequence: validate (raising before any
    mutation), apply the change locally tagged as provisional, submit to the
    settlement layer, then confirm or roll back. The transaction log only
    receives confirmed actions. Arithmetic is synchronous; the awaits are
    settlement, persistence and nothing else.
    """

    def __init__(
        self,
        ledger: ExchangeRateLedger,
        price_of: PriceOf,
        registry: PositionRegistry | None = None,
        risk: LeverageRiskCalculator | None = None,
        pool: LendingPool | None = None,
        lp_engine: LPMintBurnEngine | None = None,
        transactions: TransactionLog | None = None,
        settlement: SettlementClient | None = None,
        store: PersistentStore | None = None,
        events: EventBus | None = None,
        token_units: Mapping[str, TokenUnits] | None = None,
        settlement_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.ledger = ledger
        self.registry = registry or PositionRegistry()
        self.risk = risk or LeverageRiskCalculator()
        self.pool = pool or LendingPool()
        self.lp_engine = lp_engine or LPMintBurnEngine()
        self.transactions = transactions or TransactionLog()
        self.token_units = dict(DEFAULT_TOKEN_UNITS if token_units is None else token_units)
        self.analytics = AnalyticsAggregator(price_of, self.token_units)
        self.treasury_usdc = 0
        self._price_of = price_of
        self._settlement = settlement
        self._store = store
        self._events = events
        self._settlement_timeout = settlement_timeout
        self._clock = clock

        self._locks: dict[tuple[Any, ...], asyncio.Lock] = {}
        self._in_flight_positions: set[str] = set()
        self._in_flight_holdings: set[tuple[str, str]] = set()
        self._dirty_crucibles: set[str] = set()

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        price_of: PriceOf,
        settlement: SettlementClient | None = None,
        store: PersistentStore | None = None,
        events: EventBus | None = None,
        clock: Callable[[], float] = time.time,
    ) -> CrucibleEngine:
        ledger = ExchangeRateLedger(
            Crucible(
                id=c.id,
                base_token=c.base_token,
                receipt_symbol=c.receipt_symbol,
                exchange_rate=rate_to_fixed(c.initial_exchange_rate),
                base_apy=c.base_apy,
            )
            for c in config.crucibles
        )
        token_units = {
            symbol: TokenUnits(decimals=t.decimals, sanity_threshold=t.sanity_threshold)
            for symbol, t in config.tokens.items()
        }
        risk = LeverageRiskCalculator(
            min_open_health=config.risk.min_open_health,
            max_leverage=config.risk.max_leverage,
            warning_threshold=config.risk.warning_threshold,
            liquidation_threshold=config.risk.liquidation_threshold,
            borrow_rate=config.lending.borrow_rate,
        )
        pool = LendingPool(
            borrow_rate=config.lending.borrow_rate,
            minimum_reserve=to_units(config.lending.minimum_reserve, USDC_DECIMALS),
        )
        return cls(
            ledger=ledger,
            price_of=price_of,
            registry=PositionRegistry(config.risk.max_positions_per_owner),
            risk=risk,
            pool=pool,
            settlement=settlement,
            store=store,
            events=events,
            token_units=token_units,
            settlement_timeout=config.settlement.submit_timeout_seconds,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _lock(self, *key: Any) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    def _decimals(self, token: str) -> int:
        units = self.token_units.get(token)
        return units.decimals if units else AMOUNT_DECIMALS

    def _display(self, amount: int, token: str) -> float:
        return from_units(amount, self._decimals(token))

    def _usd(self, amount: int, token: str, price: float | None = None) -> float | None:
        if price is None:
            try:
                price = self._price_of(token)
            except PriceUnavailable:
                return None
        return self._display(amount, token) * price

    def in_flight_positions(self) -> frozenset[str]:
        return frozenset(self._in_flight_positions)

    def in_flight_holdings(self, owner: str) -> frozenset[str]:
        return frozenset(c for o, c in self._in_flight_holdings if o == owner)

    @property
    def dirty_crucibles(self) -> frozenset[str]:
        return frozenset(self._dirty_crucibles)

    def mark_reconciled(self, crucible_id: str) -> None:
        self._dirty_crucibles.discard(crucible_id)

    def _restore_ledger(self, snapshot: Crucible, post_version: int) -> None:
        if not self.ledger.restore(snapshot, post_version):
            self._dirty_crucibles.add(snapshot.id)
            logger.warning("Crucible %s flagged for reconciliation", snapshot.id)

    async def _submit(
        self,
        action: str,
        owner: str,
        crucible_id: str,
        nonce: int | None = None,
        **params: Any,
    ) -> SettlementReceipt:
        """Submit to settlement with a timeout; every failure becomes SettlementFailed."""
        op_id = (
            f"{action}:{owner}:{crucible_id}:{nonce}"
            if nonce is not None
            else f"{action}:{owner}:{crucible_id}:{uuid.uuid4().hex}"
        )
        operation = SettlementOperation(
            op_id=op_id,
            action=action,
            owner=owner,
            crucible_id=crucible_id,
            nonce=nonce,
            params=params,
        )
        if self._settlement is None:
            return SettlementReceipt(op_id=op_id, success=True)
        try:
            return await asyncio.wait_for(
                self._settlement.submit(operation), timeout=self._settlement_timeout
            )
        except SettlementFailed:
            raise
        except asyncio.TimeoutError as e:
            raise SettlementFailed(
                f"Settlement timed out after {self._settlement_timeout}s", cause=e, op_id=op_id
            ) from e
        except Exception as e:
            raise SettlementFailed(cause=e, op_id=op_id) from e

    def _emit(self, name: str, owner: str, crucible_id: str, **data: Any) -> None:
        if self._events is None:
            return
        payload = {
            "owner": owner,
            "crucible_id": crucible_id,
            "base_token_symbol": self.ledger.get(crucible_id).base_token,
            "source": "engine",
            **data,
        }
        try:
            self._events.emit(name, payload)
        except Exception as e:
            logger.error("Failed to emit %s: %s", name, e)

    def _record(self, tx: Transaction) -> None:
        self.transactions.append(replace(tx, id=tx.id or uuid.uuid4().hex, timestamp=self._clock()))

    async def _after_commit(self) -> None:
        if self._store is None:
            return
        try:
            await self.save()
        except Exception as e:
            logger.error("Failed to persist engine state: %s", e)

    # ------------------------------------------------------------------
    # Wrap / unwrap
    # ------------------------------------------------------------------

    async def wrap(self, identity: Identity, crucible_id: str, amount: int) -> WrapResult:
        """Deposit ``amount`` base units and credit receipt tokens."""
        owner = identity.owner
        validate_amount(amount)
        crucible = self.ledger.get(crucible_id)

        async with self._lock(owner, crucible_id):
            snapshot = self.ledger.get(crucible_id)
            previous = self.registry.holding(owner, crucible_id)
            result = self.ledger.wrap(crucible_id, amount)
            post_version = self.ledger.version(crucible_id)
            self.registry.credit(
                owner, crucible_id, result.minted, timestamp=self._clock(), provisional=True
            )
            self._in_flight_holdings.add((owner, crucible_id))
            try:
                await self._submit("wrap", owner, crucible_id, amount=amount, minted=result.minted)
            except SettlementFailed:
                self.registry.set_holding(owner, crucible_id, previous)
                self._restore_ledger(snapshot, post_version)
                raise
            finally:
                self._in_flight_holdings.discard((owner, crucible_id))
            self.registry.confirm_holding(owner, crucible_id)

        token = crucible.base_token
        self._record(
            Transaction(
                type=TransactionType.WRAP,
                amount=self._display(amount, token),
                token=token,
                crucible_id=crucible_id,
                timestamp=0.0,
                owner=owner,
                dist_token=crucible.receipt_symbol,
                fee=self._display(result.fee.fee, token),
                usd_value=self._usd(amount, token),
            )
        )
        self._emit(BALANCE_CHANGED, owner, crucible_id, receipt_balance=self.registry.balance(owner, crucible_id))
        await self._after_commit()
        return result

    async def unwrap(self, identity: Identity, crucible_id: str, receipt: int) -> UnwrapResult:
        """Burn ``receipt`` tokens and pay out base net of the unwrap fee."""
        owner = identity.owner
        validate_amount(receipt, "receipt")
        crucible = self.ledger.get(crucible_id)

        async with self._lock(owner, crucible_id):
            previous = self.registry.holding(owner, crucible_id)
            balance = previous.receipt_balance if previous else 0
            if receipt > balance:
                raise InsufficientBalance(
                    "Not enough receipt tokens", required=receipt, available=balance
                )
            snapshot = self.ledger.get(crucible_id)
            entry_rate = snapshot.exchange_rate
            result = self.ledger.unwrap(
                crucible_id,
                receipt,
                balance,
                deposit_ts=previous.last_deposit_ts if previous else None,
                now=self._clock(),
            )
            post_version = self.ledger.version(crucible_id)
            self.registry.debit(owner, crucible_id, receipt, provisional=True)
            self._in_flight_holdings.add((owner, crucible_id))
            try:
                await self._submit(
                    "unwrap", owner, crucible_id, receipt=receipt, returned=result.base_returned
                )
            except SettlementFailed:
                self.registry.set_holding(owner, crucible_id, previous)
                self._restore_ledger(snapshot, post_version)
                raise
            finally:
                self._in_flight_holdings.discard((owner, crucible_id))
            self.registry.confirm_holding(owner, crucible_id)

        token = crucible.base_token
        gross = redeem_amount(receipt, entry_rate)
        self._record(
            Transaction(
                type=TransactionType.UNWRAP,
                amount=self._display(result.base_returned, token),
                token=token,
                crucible_id=crucible_id,
                timestamp=0.0,
                owner=owner,
                dist_token=crucible.receipt_symbol,
                fee=self._display(result.fee.fee, token),
                usd_value=self._usd(result.base_returned, token),
                yield_amount=self._display(max(gross - receipt, 0), token),
            )
        )
        self._emit(BALANCE_CHANGED, owner, crucible_id, receipt_balance=self.registry.balance(owner, crucible_id))
        await self._after_commit()
        return result

    # ------------------------------------------------------------------
    # LP positions
    # ------------------------------------------------------------------

    async def open_lp_position(
        self, identity: Identity, crucible_id: str, base_amount: int, usdc_amount: int
    ) -> LPPosition:
        """Pair base (wrapped into the crucible) with USDC of equal value."""
        owner = identity.owner
        crucible = self.ledger.get(crucible_id)
        price = self._price_of(crucible.base_token)
        self.lp_engine.check_equal_value(base_amount, usdc_amount, price)
        usdc_fee = lp_open_fee(usdc_amount)

        async with self._lock(owner, crucible_id):
            nonce = self.registry.next_nonce(PositionKind.LP, owner, crucible_id)
            snapshot = self.ledger.get(crucible_id)
            rate = self.ledger.deposit_rate(crucible_id)
            base_fee = lp_open_fee(base_amount)
            lp_tokens = self.lp_engine.mint(base_fee.net, usdc_fee.net, rate)
            wrapped = self.ledger.wrap(crucible_id, base_amount, fee_fn=lp_open_fee)
            post_version = self.ledger.version(crucible_id)
            position = self.registry.add(
                LPPosition(
                    owner=owner,
                    crucible_id=crucible_id,
                    nonce=nonce,
                    base_token=crucible.base_token,
                    base_amount=base_fee.net,
                    usdc_amount=usdc_fee.net,
                    entry_price=price,
                    entry_exchange_rate=wrapped.rate,
                    lp_token_amount=lp_tokens,
                    receipt_held=wrapped.minted,
                    opened_at=self._clock(),
                    provisional=True,
                )
            )
            self.treasury_usdc += usdc_fee.fee
            self._in_flight_positions.add(position.id)
            try:
                await self._submit(
                    "open_lp",
                    owner,
                    crucible_id,
                    nonce,
                    base_amount=base_amount,
                    usdc_amount=usdc_amount,
                    lp_tokens=lp_tokens,
                )
            except SettlementFailed:
                self.registry.remove(position.id)
                self.treasury_usdc -= usdc_fee.fee
                self._restore_ledger(snapshot, post_version)
                raise
            finally:
                self._in_flight_positions.discard(position.id)
            self.registry.confirm(position.id)

        self._record(
            Transaction(
                type=TransactionType.DEPOSIT,
                amount=self._display(base_amount, crucible.base_token),
                token=crucible.base_token,
                crucible_id=crucible_id,
                timestamp=0.0,
                owner=owner,
                dist_token=f"{crucible.receipt_symbol}/USDC LP",
                usdc_deposited=self._display(usdc_amount, "USDC"),
                fee=self._display(base_fee.fee, crucible.base_token),
                usd_value=self._display(value_in_usdc(base_amount, price, self._decimals(crucible.base_token)), "USDC")
                + self._display(usdc_amount, "USDC"),
            )
        )
        self._emit(POSITION_OPENED, owner, crucible_id, position_id=position.id, kind="lp")
        await self._after_commit()
        return self.registry.get(position.id)

    async def close_lp_position(self, identity: Identity, position_id: str) -> CloseResult:
        """Close an LP position: receipt leg taxed on principal and yield separately."""
        owner = identity.owner
        kind, key = parse_position_id(position_id)
        if kind != PositionKind.LP:
            raise PositionNotFound(f"{position_id} is not an LP position")

        async with self._lock(key.owner, key.crucible_id, key.nonce):
            position = self.registry.require_open(position_id, owner)
            if not isinstance(position, LPPosition):
                raise PositionNotFound(f"{position_id} is not an LP position")
            snapshot = self.ledger.get(position.crucible_id)
            rate = snapshot.exchange_rate
            held_base = redeem_amount(position.receipt_held, rate)
            leg = settle_receipt_leg(held_base, position.entry_exchange_rate, rate)
            usdc = settle_usdc_leg(position.usdc_amount)

            if position.receipt_held > 0:
                self.ledger.burn(position.crucible_id, position.receipt_held)
            self.ledger.collect_fee(position.crucible_id, leg.fees.fee)
            post_version = self.ledger.version(position.crucible_id)
            self.registry.close(position_id, owner, provisional=True)
            self.treasury_usdc += usdc.fee
            self._in_flight_positions.add(position_id)
            try:
                await self._submit(
                    "close_lp", owner, position.crucible_id, position.nonce,
                    base_returned=leg.net, usdc_returned=usdc.net,
                )
            except SettlementFailed:
                self.registry.put(position)
                self.treasury_usdc -= usdc.fee
                self._restore_ledger(snapshot, post_version)
                raise
            finally:
                self._in_flight_positions.discard(position_id)
            self.registry.confirm(position_id)

        result = CloseResult(
            base_amount_returned=leg.net,
            yield_component=leg.yield_component,
            fees_charged=leg.fees.fee,
            usdc_returned=usdc.net,
        )
        token = position.base_token
        self._record(
            Transaction(
                type=TransactionType.WITHDRAW,
                amount=self._display(leg.net, token),
                token=token,
                crucible_id=position.crucible_id,
                timestamp=0.0,
                owner=owner,
                dist_token=f"{snapshot.receipt_symbol}/USDC LP",
                usdc_deposited=self._display(usdc.net, "USDC"),
                fee=self._display(leg.fees.fee, token),
                yield_amount=self._display(leg.yield_component, token),
            )
        )
        self._emit(POSITION_CLOSED, owner, position.crucible_id, position_id=position_id, kind="lp")
        await self._after_commit()
        return result

    # ------------------------------------------------------------------
    # Leveraged positions
    # ------------------------------------------------------------------

    async def open_leveraged_position(
        self, identity: Identity, crucible_id: str, collateral: int, leverage: float
    ) -> LeveragedPosition:
        """Wrap collateral and borrow ``collateral * price * (leverage - 1)`` USDC."""
        owner = identity.owner
        crucible = self.ledger.get(crucible_id)
        price = self._price_of(crucible.base_token)
        self.risk.quote_open(collateral, leverage, price, self.pool.available_liquidity())

        async with self._lock(owner, crucible_id):
            # Liquidity may have moved while waiting for the lock.
            quote = self.risk.quote_open(collateral, leverage, price, self.pool.available_liquidity())
            nonce = self.registry.next_nonce(PositionKind.LEVERAGED, owner, crucible_id)
            snapshot = self.ledger.get(crucible_id)
            if quote.borrowed_usdc > 0:
                self.pool.borrow(quote.borrowed_usdc)
            try:
                wrapped = self.ledger.wrap(crucible_id, collateral, fee_fn=lp_open_fee)
            except EngineError:
                if quote.borrowed_usdc > 0:
                    self.pool.repay(quote.borrowed_usdc)
                raise
            post_version = self.ledger.version(crucible_id)
            position = self.registry.add(
                LeveragedPosition(
                    owner=owner,
                    crucible_id=crucible_id,
                    nonce=nonce,
                    base_token=crucible.base_token,
                    collateral=collateral,
                    leverage_factor=leverage,
                    borrowed_usdc=quote.borrowed_usdc,
                    entry_price=price,
                    entry_exchange_rate=wrapped.rate,
                    receipt_held=wrapped.minted,
                    opened_at=self._clock(),
                    provisional=True,
                )
            )
            self._in_flight_positions.add(position.id)
            try:
                await self._submit(
                    "open_leveraged",
                    owner,
                    crucible_id,
                    nonce,
                    collateral=collateral,
                    leverage=leverage,
                    borrowed_usdc=quote.borrowed_usdc,
                )
            except SettlementFailed:
                self.registry.remove(position.id)
                if quote.borrowed_usdc > 0:
                    self.pool.repay(quote.borrowed_usdc)
                self._restore_ledger(snapshot, post_version)
                raise
            finally:
                self._in_flight_positions.discard(position.id)
            self.registry.confirm(position.id)

        token = crucible.base_token
        self._record(
            Transaction(
                type=TransactionType.DEPOSIT,
                amount=self._display(collateral, token),
                token=token,
                crucible_id=crucible_id,
                timestamp=0.0,
                owner=owner,
                dist_token=crucible.receipt_symbol,
                borrowed_amount=self._display(quote.borrowed_usdc, "USDC"),
                leverage=leverage,
                fee=self._display(wrapped.fee.fee, token),
                usd_value=self._display(quote.collateral_value, "USDC"),
            )
        )
        self._emit(POSITION_OPENED, owner, crucible_id, position_id=position.id, kind="leveraged")
        await self._after_commit()
        return self.registry.get(position.id)

    async def close_leveraged_position(self, identity: Identity, position_id: str) -> CloseResult:
        """Repay the pool (USDC leg first, then collateral) and settle the rest."""
        owner = identity.owner
        kind, key = parse_position_id(position_id)
        if kind != PositionKind.LEVERAGED:
            raise PositionNotFound(f"{position_id} is not a leveraged position")

        async with self._lock(key.owner, key.crucible_id, key.nonce):
            position = self.registry.require_open(position_id, owner)
            if not isinstance(position, LeveragedPosition):
                raise PositionNotFound(f"{position_id} is not a leveraged position")
            now = self._clock()
            price = None
            if self.risk.accrued_interest(position, now) > 0:
                price = self._price_of(position.base_token)
            snapshot = self.ledger.get(position.crucible_id)
            rate = snapshot.exchange_rate
            repayment = self.risk.plan_repayment(position, price, rate, now)
            leg = settle_receipt_leg(
                repayment.remaining_base, position.entry_exchange_rate, rate
            )

            if position.receipt_held > 0:
                self.ledger.burn(position.crucible_id, position.receipt_held)
            self.ledger.collect_fee(position.crucible_id, leg.fees.fee)
            post_version = self.ledger.version(position.crucible_id)
            self.registry.close(position_id, owner, provisional=True)
            self._in_flight_positions.add(position_id)
            try:
                await self._submit(
                    "close_leveraged", owner, position.crucible_id, position.nonce,
                    base_returned=leg.net,
                    usdc_repaid=repayment.principal_repaid + repayment.interest_repaid,
                )
            except SettlementFailed:
                self.registry.put(position)
                self._restore_ledger(snapshot, post_version)
                raise
            finally:
                self._in_flight_positions.discard(position_id)
            self.registry.confirm(position_id)
            self._settle_debt(repayment.principal_repaid, repayment.interest_repaid, repayment.bad_debt)

        result = CloseResult(
            base_amount_returned=leg.net,
            yield_component=leg.yield_component,
            fees_charged=leg.fees.fee,
            usdc_repaid=repayment.principal_repaid + repayment.interest_repaid,
            interest_paid=repayment.interest_repaid,
        )
        token = position.base_token
        self._record(
            Transaction(
                type=TransactionType.WITHDRAW,
                amount=self._display(leg.net, token),
                token=token,
                crucible_id=position.crucible_id,
                timestamp=0.0,
                owner=owner,
                dist_token=snapshot.receipt_symbol,
                borrowed_amount=self._display(position.borrowed_usdc, "USDC"),
                leverage=position.leverage_factor,
                fee=self._display(leg.fees.fee, token),
                yield_amount=self._display(leg.yield_component, token),
            )
        )
        self._emit(POSITION_CLOSED, owner, position.crucible_id, position_id=position_id, kind="leveraged")
        await self._after_commit()
        return result

    async def liquidate(self, position_id: str, liquidator: Identity | None = None) -> CloseResult:
        """Liquidate a leveraged position whose health factor fell below 1.0."""
        kind, key = parse_position_id(position_id)
        if kind != PositionKind.LEVERAGED:
            raise PositionNotFound(f"{position_id} is not a leveraged position")

        async with self._lock(key.owner, key.crucible_id, key.nonce):
            position = self.registry.get(position_id)
            if not position.is_open:
                raise AlreadyClosed(f"Position {position_id} is already closed")
            if not isinstance(position, LeveragedPosition):
                raise PositionNotFound(f"{position_id} is not a leveraged position")
            price = self._price_of(position.base_token)
            now = self._clock()
            snapshot = self.ledger.get(position.crucible_id)
            plan = self.risk.plan_liquidation(position, price, snapshot.exchange_rate, now)
            repayment = plan.repayment

            if position.receipt_held > 0:
                self.ledger.burn(position.crucible_id, position.receipt_held)
            self.ledger.collect_fee(position.crucible_id, plan.fee.fee)
            post_version = self.ledger.version(position.crucible_id)
            self.registry.close(position_id, position.owner, provisional=True)
            self._in_flight_positions.add(position_id)
            try:
                await self._submit(
                    "liquidate", position.owner, position.crucible_id, position.nonce,
                    liquidator=liquidator.owner if liquidator else "",
                    base_returned=plan.returned_base,
                    bad_debt=repayment.bad_debt,
                )
            except SettlementFailed:
                self.registry.put(position)
                self._restore_ledger(snapshot, post_version)
                raise
            finally:
                self._in_flight_positions.discard(position_id)
            self.registry.confirm(position_id)
            self._settle_debt(repayment.principal_repaid, repayment.interest_repaid, repayment.bad_debt)

        logger.warning(
            "Liquidated %s: repaid %d USDC units, bad debt %d, fee %d",
            position_id,
            repayment.principal_repaid + repayment.interest_repaid,
            repayment.bad_debt,
            plan.fee.fee,
        )
        token = position.base_token
        self._record(
            Transaction(
                type=TransactionType.WITHDRAW,
                amount=self._display(plan.returned_base, token),
                token=token,
                crucible_id=position.crucible_id,
                timestamp=0.0,
                owner=position.owner,
                dist_token=snapshot.receipt_symbol,
                borrowed_amount=self._display(position.borrowed_usdc, "USDC"),
                leverage=position.leverage_factor,
                fee=self._display(plan.fee.fee, token),
            )
        )
        self._emit(
            POSITION_CLOSED, position.owner, position.crucible_id,
            position_id=position_id, kind="leveraged", liquidated=True,
        )
        await self._after_commit()
        return CloseResult(
            base_amount_returned=plan.returned_base,
            yield_component=0,
            fees_charged=plan.fee.fee,
            usdc_repaid=repayment.principal_repaid + repayment.interest_repaid,
            interest_paid=repayment.interest_repaid,
        )

    def _settle_debt(self, principal: int, interest: int, bad_debt: int) -> None:
        if principal or interest:
            self.pool.repay(principal, interest)
        if bad_debt:
            self.pool.write_off(bad_debt)

    # ------------------------------------------------------------------
    # Lending
    # ------------------------------------------------------------------

    async def supply_usdc(self, identity: Identity, amount: int) -> LendingResult:
        """Supply USDC to the lending pool."""
        owner = identity.owner
        validate_amount(amount)
        async with self._lock(owner, "lending"):
            await self._submit("lend_supply", owner, "lending", amount=amount)
            shares = self.pool.supply(owner, amount)

        self._record(
            Transaction(
                type=TransactionType.DEPOSIT,
                amount=self._display(amount, "USDC"),
                token="USDC",
                crucible_id="lending",
                timestamp=0.0,
                owner=owner,
                usd_value=self._display(amount, "USDC"),
            )
        )
        await self._after_commit()
        return LendingResult(owner=owner, amount=amount, shares=shares)

    async def withdraw_usdc(self, identity: Identity, amount: int) -> LendingResult:
        """Withdraw supplied USDC, limited by balance and unborrowed liquidity."""
        owner = identity.owner
        validate_amount(amount)
        async with self._lock(owner, "lending"):
            balance = self.pool.balance_of(owner)
            if amount > balance:
                raise InsufficientBalance(
                    "Withdrawal exceeds supplied balance", required=amount, available=balance
                )
            available = self.pool.available_liquidity()
            if amount > available:
                raise InsufficientLiquidity(
                    "Pool liquidity is lent out", required=amount, available=available
                )
            await self._submit("lend_withdraw", owner, "lending", amount=amount)
            shares = self.pool.withdraw(owner, amount)

        self._record(
            Transaction(
                type=TransactionType.WITHDRAW,
                amount=self._display(amount, "USDC"),
                token="USDC",
                crucible_id="lending",
                timestamp=0.0,
                owner=owner,
                usd_value=self._display(amount, "USDC"),
            )
        )
        await self._after_commit()
        return LendingResult(owner=owner, amount=amount, shares=shares)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def receipt_value(self, owner: str, crucible_id: str) -> int:
        """Base units the owner's receipt balance redeems for (before fees)."""
        return self.ledger.preview_redeem(crucible_id, self.registry.balance(owner, crucible_id))

    def effective_apy(self, crucible_id: str, leverage: float) -> float:
        return self.risk.effective_apy(self.ledger.get(crucible_id).base_apy, leverage)

    def position_health(self, position_id: str) -> PositionHealth:
        position = self.registry.get(position_id)
        if not isinstance(position, LeveragedPosition):
            raise PositionNotFound(f"{position_id} is not a leveraged position")
        price = self._price_of(position.base_token)
        rate = self.ledger.rate(position.crucible_id)
        return self.risk.position_health(position, price, rate, self._clock())

    def health_report(self) -> list[PositionHealth]:
        """Health of every open leveraged position; unpriced ones are skipped."""
        report: list[PositionHealth] = []
        for position in self.registry.positions(PositionKind.LEVERAGED, open_only=True):
            try:
                report.append(self.position_health(position.id))
            except PriceUnavailable as e:
                logger.warning("Skipping health check for %s: %s", position.id, e)
        return report

    def liquidatable(self) -> list[PositionHealth]:
        return [h for h in self.health_report() if h.status == HealthStatus.LIQUIDATABLE]

    def portfolio(self, owner: str | None = None) -> PortfolioTotals:
        txs = [tx for tx in self.transactions if owner is None or tx.owner == owner]
        return self.analytics.totals(txs)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _crucible_records(self) -> list[dict[str, Any]]:
        return [
            {
                "id": c.id,
                "baseToken": c.base_token,
                "receiptSymbol": c.receipt_symbol,
                "exchangeRate": c.exchange_rate,
                "totalReceiptSupply": c.total_receipt_supply,
                "baseAPY": c.base_apy,
                "totalFeesAccrued": c.total_fees_accrued,
                "protocolFees": c.protocol_fees,
                "totalBaseDeposited": c.total_base_deposited,
            }
            for c in self.ledger.crucibles()
        ]

    async def save(self) -> None:
        if self._store is None:
            return
        pool_record = self.pool.to_record()
        pool_record["treasuryUSDC"] = self.treasury_usdc
        await self._store.save("crucibles", self._crucible_records())
        await self._store.save("wrap_holdings", self.registry.holding_records())
        await self._store.save("lp_positions", self.registry.to_records(PositionKind.LP))
        await self._store.save(
            "leveraged_positions", self.registry.to_records(PositionKind.LEVERAGED)
        )
        await self._store.save("transactions", self.transactions.to_records())
        await self._store.save("lending_pool", [pool_record])

    async def load(self) -> None:
        """Restore cached state; configured crucibles unknown to the cache keep genesis state."""
        if self._store is None:
            return
        for raw in await self._store.load("crucibles"):
            crucible_id = raw.get("id")
            if crucible_id not in self.ledger:
                logger.warning("Ignoring cached state for unconfigured crucible %s", crucible_id)
                continue
            self.ledger.reconcile(
                crucible_id,
                int(raw["exchangeRate"]),
                int(raw["totalReceiptSupply"]),
                total_fees_accrued=int(raw.get("totalFeesAccrued", 0)),
                protocol_fees=int(raw.get("protocolFees", 0)),
                total_base_deposited=int(raw.get("totalBaseDeposited", 0)),
            )
        self.registry.load_holding_records(await self._store.load("wrap_holdings"))
        self.registry.load_records(PositionKind.LP, await self._store.load("lp_positions"))
        self.registry.load_records(
            PositionKind.LEVERAGED, await self._store.load("leveraged_positions")
        )
        self.transactions.load_records(await self._store.load("transactions"))
        pool_records = await self._store.load("lending_pool")
        if pool_records:
            self.pool.load_record(pool_records[0])
            self.treasury_usdc = int(pool_records[0].get("treasuryUSDC", 0))
        logger.info(
            "Loaded %d positions and %d transactions from store",
            len(self.registry.positions()),
            len(self.transactions),
        )
