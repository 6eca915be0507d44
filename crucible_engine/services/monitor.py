"""Keeper — watches leveraged positions, alerts on risk, optionally liquidates."""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path

from ..config import EngineConfig, MonitorConfig
from ..core.risk import HealthStatus, PositionHealth
from ..core.units import USDC_DECIMALS, from_units
from ..errors import EngineError
from ..events import InMemoryEventBus
from ..interfaces.notifier import Notifier
from ..models import PositionKind
from ..notifications import TelegramNotifier
from ..oracles import PriceFeed, PythOracle
from ..settlement import JsonRpcSettlementClient
from ..storage import JsonFileStore, MemoryStore
from .engine import CrucibleEngine
from .reconciler import Reconciler

logger = logging.getLogger(__name__)


class HealthMonitor:
    """Periodic health checks over every open leveraged position."""

    def __init__(
        self,
        engine: CrucibleEngine,
        price_feed: PriceFeed | None = None,
        notifiers: list[Notifier] | None = None,
        reconciler: Reconciler | None = None,
        config: MonitorConfig | None = None,
    ) -> None:
        self._engine = engine
        self._price_feed = price_feed
        self._notifiers: list[Notifier] = list(notifiers or [])
        self._reconciler = reconciler
        self._config = config or MonitorConfig()
        # Positions already alerted at a given status; cleared when the status improves.
        self._alerted: dict[str, HealthStatus] = {}

    @classmethod
    def from_config(cls, config: EngineConfig) -> HealthMonitor:
        """Wire the full runtime: oracle, store, settlement, engine, reconciler."""
        oracle = PythOracle(config.price_oracle.pyth)
        price_feed = PriceFeed(
            oracle,
            symbols=[c.base_token for c in config.crucibles],
            max_staleness_seconds=config.price_oracle.max_staleness_seconds,
            min_price=config.price_oracle.min_price,
            max_price=config.price_oracle.max_price,
            fixed={"USDC": 1.0},
        )
        if config.storage.backend == "memory":
            store = MemoryStore()
        else:
            store = JsonFileStore(Path(config.storage.path))
        settlement = (
            JsonRpcSettlementClient(config.settlement)
            if config.settlement.rpc_endpoints
            else None
        )
        events = InMemoryEventBus()
        engine = CrucibleEngine.from_config(
            config, price_feed.price_of, settlement=settlement, store=store, events=events
        )

        reconciler = None
        if settlement is not None:
            reconciler = Reconciler(
                engine,
                settlement,
                owners=config.monitor.owners,
                interval_seconds=config.monitor.reconcile_interval_seconds,
                max_read_retries=config.monitor.max_read_retries,
            )
            reconciler.attach(events)

        notifiers: list[Notifier] = []
        if config.notifications.telegram.enabled:
            notifiers.append(TelegramNotifier(config.notifications.telegram))

        return cls(engine, price_feed, notifiers, reconciler, config.monitor)

    @property
    def engine(self) -> CrucibleEngine:
        return self._engine

    # ------------------------------------------------------------------
    # Formatting helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _format_owner(owner: str) -> str:
        if len(owner) > 16:
            return f"{owner[:10]}...{owner[-6:]}"
        return owner

    @staticmethod
    def _status_label(status: HealthStatus) -> str:
        if status == HealthStatus.LIQUIDATABLE:
            return "🚨 LIQUIDATABLE"
        if status == HealthStatus.WARNING:
            return "⚠️ WARNING"
        if status == HealthStatus.NO_DEBT:
            return "✅ No debt"
        return "✅ Healthy"

    @staticmethod
    def _now_str() -> str:
        return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")

    @staticmethod
    def _usdc(amount: int) -> float:
        return from_units(amount, USDC_DECIMALS)

    def _build_position_line(self, health: PositionHealth) -> str:
        position = self._engine.registry.get(health.position_id)
        return (
            f"{position.crucible_id} #{position.nonce} · {self._status_label(health.status)}\n"
            f"  Owner: {self._format_owner(position.owner)}\n"
            f"  Collateral: ${self._usdc(health.collateral_value):,.2f}\n"
            f"  Debt: ${self._usdc(health.debt):,.2f}\n"
            f"  HF: {health.health_factor:.2f}"
        )

    def _build_alert(self, health: PositionHealth) -> str:
        position = self._engine.registry.get(health.position_id)
        if health.status == HealthStatus.LIQUIDATABLE:
            headline = f"🚨 LIQUIDATABLE — HF {health.health_factor:.2f}"
            advice = "Position is eligible for liquidation."
        else:
            headline = f"⚠️ WARNING — HF {health.health_factor:.2f}"
            advice = "Consider adding collateral or closing the position."
        return (
            f"{headline}\n"
            f"\n"
            f"{position.crucible_id} · {position.leverage_factor}x · nonce {position.nonce}\n"
            f"\n"
            f"Collateral: ${self._usdc(health.collateral_value):,.2f}\n"
            f"USDC leg: ${self._usdc(health.usdc_leg):,.2f}\n"
            f"Borrowed: ${self._usdc(health.borrowed_usdc):,.2f}\n"
            f"Interest: ${self._usdc(health.accrued_interest):,.2f}\n"
            f"\n"
            f"{advice}\n"
            f"\n"
            f"Owner: {self._format_owner(position.owner)}\n"
            f"{self._now_str()} UTC"
        )

    # ------------------------------------------------------------------
    # Notification dispatch
    # ------------------------------------------------------------------

    async def _send_log(self, message: str, silent: bool = False) -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_log(message, silent=silent)
            except Exception as e:
                logger.error("Notifier send_log failed: %s", e)

    async def _send_alert(self, message: str, subject: str = "") -> None:
        for notifier in self._notifiers:
            try:
                await notifier.send_alert(message, subject=subject)
            except Exception as e:
                logger.error("Notifier send_alert failed: %s", e)

    # ------------------------------------------------------------------
    # Core workflows
    # ------------------------------------------------------------------

    async def _refresh_prices(self) -> None:
        if self._price_feed is None:
            return
        try:
            await self._price_feed.refresh()
        except Exception as e:
            logger.error("Price refresh failed: %s", e)

    async def check_and_alert(self) -> list[PositionHealth]:
        """Evaluate every open leveraged position and alert on status changes."""
        await self._refresh_prices()
        report = self._engine.health_report()

        seen: set[str] = set()
        for health in report:
            seen.add(health.position_id)
            logger.info(
                "Position %s — collateral %d debt %d HF %.4f (%s)",
                health.position_id,
                health.collateral_value,
                health.debt,
                health.health_factor,
                health.status.value,
            )
            if health.status not in (HealthStatus.WARNING, HealthStatus.LIQUIDATABLE):
                self._alerted.pop(health.position_id, None)
                continue

            if self._alerted.get(health.position_id) != health.status:
                self._alerted[health.position_id] = health.status
                if health.status == HealthStatus.LIQUIDATABLE:
                    subject = "🚨 LIQUIDATABLE: Position below threshold"
                else:
                    subject = "⚠️ WARNING: Low health factor"
                await self._send_alert(self._build_alert(health), subject=subject)

            if health.status == HealthStatus.LIQUIDATABLE and self._config.auto_liquidate:
                await self._liquidate(health)

        for position_id in list(self._alerted):
            if position_id not in seen:
                del self._alerted[position_id]
        return report

    async def _liquidate(self, health: PositionHealth) -> None:
        try:
            result = await self._engine.liquidate(health.position_id)
        except EngineError as e:
            logger.error("Liquidation of %s failed: %s", health.position_id, e)
            await self._send_log(f"Liquidation of {health.position_id} failed: {e}")
            return
        self._alerted.pop(health.position_id, None)
        await self._send_log(
            f"🔥 Liquidated {health.position_id}\n"
            f"Repaid: ${self._usdc(result.usdc_repaid):,.2f}\n"
            f"Returned: {result.base_amount_returned} base units\n"
            f"{self._now_str()} UTC"
        )

    async def generate_report(self) -> str:
        """Build and send a report of positions and portfolio analytics."""
        await self._refresh_prices()
        engine = self._engine
        sections: list[str] = []

        health_lines = [self._build_position_line(h) for h in engine.health_report()]
        if health_lines:
            sections.append("━━ Leveraged ━━\n\n" + "\n\n".join(health_lines))

        lp_open = engine.registry.positions(PositionKind.LP, open_only=True)
        if lp_open:
            sections.append(f"━━ LP ━━\n\n{len(lp_open)} open LP positions")

        for crucible in engine.ledger.crucibles():
            leveraged_apy = engine.effective_apy(crucible.id, engine.risk.max_leverage)
            sections.append(
                f"━━ {crucible.id} ━━\n"
                f"  Rate: {crucible.exchange_rate / 1_000_000:.6f}\n"
                f"  Supply: {crucible.total_receipt_supply} {crucible.receipt_symbol}\n"
                f"  APY: {crucible.base_apy * 100:.2f}%"
                f" · {engine.risk.max_leverage}x: {leveraged_apy * 100:.2f}%"
            )

        totals = engine.portfolio()
        pool = engine.pool.state
        sections.append(
            f"━━ Portfolio ━━\n"
            f"  Deposits: ${totals.total_deposits:,.2f}\n"
            f"  Withdrawals: ${totals.total_withdrawals:,.2f}\n"
            f"  Net volume: ${totals.net_volume:,.2f}\n"
            f"  Yield: ${totals.total_yield:,.2f}\n"
            f"  Pool utilization: {engine.pool.utilization() * 100:.2f}%\n"
            f"  Pool bad debt: ${self._usdc(pool.bad_debt):,.2f}"
        )

        report = (
            f"📋 Crucible Engine Report\n"
            f"\n"
            + "\n\n".join(sections)
            + f"\n\n{self._now_str()} UTC"
        )
        await self._send_alert(report)
        logger.info("Report sent")
        return report

    async def run_continuous(self, check_interval_seconds: int | None = None) -> None:
        """Run the keeper loop (and the reconciler, when configured)."""
        interval = check_interval_seconds or self._config.check_interval_seconds
        logger.info("Starting keeper (checking every %d seconds)", interval)

        reconcile_task = None
        if self._reconciler is not None:
            reconcile_task = asyncio.create_task(self._reconciler.run_continuous())

        try:
            while True:
                try:
                    await self.check_and_alert()
                    await asyncio.sleep(interval)
                except Exception as e:
                    logger.error("Error in keeper loop: %s", e)
                    await asyncio.sleep(interval)
        finally:
            if reconcile_task is not None:
                reconcile_task.cancel()
