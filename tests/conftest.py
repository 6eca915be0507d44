"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from crucible_engine.config import (
    CrucibleConfig,
    EngineConfig,
    LendingConfig,
    MonitorConfig,
    NotificationsConfig,
    PriceOracleConfig,
    PythConfig,
    RiskConfig,
    SettlementConfig,
    StorageConfig,
    TelegramConfig,
    TokenConfig,
)
from crucible_engine.core.exchange_rate import INITIAL_RATE, ExchangeRateLedger
from crucible_engine.events import InMemoryEventBus
from crucible_engine.models import Crucible, Identity, LeveragedPosition
from crucible_engine.oracles.price_feed import PriceFeed
from crucible_engine.services.engine import CrucibleEngine
from crucible_engine.storage import MemoryStore

T0 = 1_700_000_000.0
ONE_YEAR = 365 * 24 * 60 * 60

SOL = 10**9
USDC = 10**6


class FakeClock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def __call__(self) -> float:
        return self.now


# ---------------------------------------------------------------------------
# Core fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def sol_crucible() -> Crucible:
    return Crucible(
        id="sol",
        base_token="SOL",
        receipt_symbol="cSOL",
        exchange_rate=INITIAL_RATE,
        base_apy=0.08,
    )


@pytest.fixture()
def ledger(sol_crucible: Crucible) -> ExchangeRateLedger:
    return ExchangeRateLedger([sol_crucible])


@pytest.fixture()
def price_feed(clock: FakeClock) -> PriceFeed:
    feed = PriceFeed(clock=clock, fixed={"USDC": 1.0})
    feed.set_price("SOL", 200.0)
    return feed


@pytest.fixture()
def alice() -> Identity:
    return Identity("alice")


@pytest.fixture()
def bob() -> Identity:
    return Identity("bob")


@pytest.fixture()
def store() -> MemoryStore:
    return MemoryStore()


@pytest.fixture()
def event_bus() -> InMemoryEventBus:
    return InMemoryEventBus()


@pytest.fixture()
def engine(
    ledger: ExchangeRateLedger,
    price_feed: PriceFeed,
    store: MemoryStore,
    event_bus: InMemoryEventBus,
    clock: FakeClock,
) -> CrucibleEngine:
    return CrucibleEngine(
        ledger=ledger,
        price_of=price_feed.price_of,
        store=store,
        events=event_bus,
        clock=clock,
    )


@pytest.fixture()
def sample_leveraged_position() -> LeveragedPosition:
    return LeveragedPosition(
        owner="alice",
        crucible_id="sol",
        nonce=0,
        base_token="SOL",
        collateral=10 * SOL,
        leverage_factor=2.0,
        borrowed_usdc=2000 * USDC,
        entry_price=200.0,
        entry_exchange_rate=INITIAL_RATE,
        receipt_held=9_473_684_210,
        opened_at=T0,
    )


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_engine_config() -> EngineConfig:
    return EngineConfig(
        crucibles=(
            CrucibleConfig(id="sol", base_token="SOL", receipt_symbol="cSOL", base_apy=0.08),
        ),
        tokens={
            "SOL": TokenConfig(decimals=9, sanity_threshold=1_000_000),
            "USDC": TokenConfig(decimals=6, sanity_threshold=10_000_000),
        },
        lending=LendingConfig(borrow_rate=0.10),
        risk=RiskConfig(),
        monitor=MonitorConfig(check_interval_seconds=5),
        settlement=SettlementConfig(),
        storage=StorageConfig(backend="memory"),
        price_oracle=PriceOracleConfig(
            provider="pyth",
            pyth=PythConfig(hermes_url="https://hermes.example.com", feeds={"SOL": "aaa"}),
        ),
        notifications=NotificationsConfig(
            telegram=TelegramConfig(
                enabled=True,
                alert_bot_token="fake-alert-token",
                log_bot_token="fake-log-token",
                chat_id="12345",
            ),
        ),
    )


SAMPLE_YAML = textwrap.dedent("""\
    tokens:
      SOL: {decimals: 9, sanity_threshold: 1000000}
      USDC: {decimals: 6, sanity_threshold: 10000000}
    crucibles:
      - id: sol
        base_token: SOL
        receipt_symbol: cSOL
        base_apy: 0.08
    lending:
      borrow_rate: 0.10
    risk:
      min_open_health: 1.2
      warning_threshold: 1.5
      liquidation_threshold: 1.0
      max_leverage: 2.0
    monitor:
      check_interval_seconds: 15
      owners: [alice]
    settlement:
      rpc_endpoints: ["https://rpc.example.com"]
      submit_timeout_seconds: 10
    storage:
      backend: memory
    price_oracle:
      provider: pyth
      pyth:
        hermes_url: "https://hermes.example.com"
        feeds: {SOL: "aaa"}
    notifications:
      telegram:
        enabled: true
        alert_bot_token: "tok1"
        log_bot_token: "tok2"
        chat_id: "999"
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file


@pytest.fixture()
def sample_prices() -> dict[str, float]:
    return {"SOL": 200.0, "FOGO": 0.5, "USDC": 1.0}
