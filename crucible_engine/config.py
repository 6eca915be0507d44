"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from .core.exchange_rate import INITIAL_EXCHANGE_RATE
from .core.registry import MAX_POSITIONS_PER_OWNER
from .core.risk import (
    DEFAULT_MIN_OPEN_HEALTH,
    LIQUIDATION_THRESHOLD,
    MAX_LEVERAGE,
    WARNING_THRESHOLD,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenConfig:
    decimals: int = 9
    sanity_threshold: float = 1_000_000.0


@dataclass(frozen=True)
class CrucibleConfig:
    id: str = ""
    base_token: str = ""
    receipt_symbol: str = ""
    base_apy: float = 0.0
    initial_exchange_rate: float = INITIAL_EXCHANGE_RATE


@dataclass(frozen=True)
class LendingConfig:
    borrow_rate: float = 0.10
    minimum_reserve: float = 0.0


@dataclass(frozen=True)
class RiskConfig:
    min_open_health: float = DEFAULT_MIN_OPEN_HEALTH
    warning_threshold: float = WARNING_THRESHOLD
    liquidation_threshold: float = LIQUIDATION_THRESHOLD
    max_leverage: float = MAX_LEVERAGE
    max_positions_per_owner: int = MAX_POSITIONS_PER_OWNER


@dataclass(frozen=True)
class MonitorConfig:
    check_interval_seconds: int = 30
    reconcile_interval_seconds: int = 30
    max_read_retries: int = 3
    auto_liquidate: bool = False
    owners: tuple[str, ...] = ()


@dataclass(frozen=True)
class SettlementConfig:
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30
    submit_timeout_seconds: float = 30.0


@dataclass(frozen=True)
class StorageConfig:
    backend: str = "json"
    path: str = "data"


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PriceOracleConfig:
    provider: str = "pyth"
    pyth: PythConfig = field(default_factory=PythConfig)
    max_staleness_seconds: float = 300.0
    min_price: float = 1e-6
    max_price: float = 1e6


@dataclass(frozen=True)
class TelegramConfig:
    enabled: bool = False
    alert_bot_token: str = ""
    log_bot_token: str = ""
    chat_id: str = ""


@dataclass(frozen=True)
class NotificationsConfig:
    telegram: TelegramConfig = field(default_factory=TelegramConfig)


@dataclass(frozen=True)
class EngineConfig:
    crucibles: tuple[CrucibleConfig, ...] = ()
    tokens: dict[str, TokenConfig] = field(default_factory=dict)
    lending: LendingConfig = field(default_factory=LendingConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    settlement: SettlementConfig = field(default_factory=SettlementConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    price_oracle: PriceOracleConfig = field(default_factory=PriceOracleConfig)
    notifications: NotificationsConfig = field(default_factory=NotificationsConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_tokens(raw: dict[str, Any]) -> dict[str, TokenConfig]:
    tokens: dict[str, TokenConfig] = {}
    for symbol, cfg in raw.items():
        cfg = cfg or {}
        tokens[symbol] = TokenConfig(
            decimals=int(cfg.get("decimals", 9)),
            sanity_threshold=float(cfg.get("sanity_threshold", 1_000_000.0)),
        )
    return tokens


def _build_crucibles(raw: list[dict[str, Any]]) -> tuple[CrucibleConfig, ...]:
    crucibles: list[CrucibleConfig] = []
    for c in raw:
        base_token = c.get("base_token", "")
        crucibles.append(
            CrucibleConfig(
                id=c.get("id", ""),
                base_token=base_token,
                receipt_symbol=c.get("receipt_symbol", f"c{base_token}"),
                base_apy=float(c.get("base_apy", 0.0)),
                initial_exchange_rate=float(
                    c.get("initial_exchange_rate", INITIAL_EXCHANGE_RATE)
                ),
            )
        )
    return tuple(crucibles)


def _build_lending(raw: dict[str, Any]) -> LendingConfig:
    return LendingConfig(
        borrow_rate=float(raw.get("borrow_rate", 0.10)),
        minimum_reserve=float(raw.get("minimum_reserve", 0.0)),
    )


def _build_risk(raw: dict[str, Any]) -> RiskConfig:
    return RiskConfig(
        min_open_health=float(raw.get("min_open_health", DEFAULT_MIN_OPEN_HEALTH)),
        warning_threshold=float(raw.get("warning_threshold", WARNING_THRESHOLD)),
        liquidation_threshold=float(raw.get("liquidation_threshold", LIQUIDATION_THRESHOLD)),
        max_leverage=float(raw.get("max_leverage", MAX_LEVERAGE)),
        max_positions_per_owner=int(
            raw.get("max_positions_per_owner", MAX_POSITIONS_PER_OWNER)
        ),
    )


def _build_monitor(raw: dict[str, Any]) -> MonitorConfig:
    return MonitorConfig(
        check_interval_seconds=int(raw.get("check_interval_seconds", 30)),
        reconcile_interval_seconds=int(raw.get("reconcile_interval_seconds", 30)),
        max_read_retries=int(raw.get("max_read_retries", 3)),
        auto_liquidate=bool(raw.get("auto_liquidate", False)),
        owners=tuple(raw.get("owners", [])),
    )


def _build_settlement(raw: dict[str, Any]) -> SettlementConfig:
    return SettlementConfig(
        rpc_endpoints=tuple(raw.get("rpc_endpoints", [])),
        rpc_timeout=int(raw.get("rpc_timeout", 30)),
        submit_timeout_seconds=float(raw.get("submit_timeout_seconds", 30.0)),
    )


def _build_storage(raw: dict[str, Any]) -> StorageConfig:
    return StorageConfig(
        backend=raw.get("backend", "json"),
        path=raw.get("path", "data"),
    )


def _build_price_oracle(raw: dict[str, Any]) -> PriceOracleConfig:
    pyth_raw = raw.get("pyth", {})
    return PriceOracleConfig(
        provider=raw.get("provider", "pyth"),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
        ),
        max_staleness_seconds=float(raw.get("max_staleness_seconds", 300.0)),
        min_price=float(raw.get("min_price", 1e-6)),
        max_price=float(raw.get("max_price", 1e6)),
    )


def _build_notifications(raw: dict[str, Any]) -> NotificationsConfig:
    tg = raw.get("telegram", {})
    return NotificationsConfig(
        telegram=TelegramConfig(
            enabled=bool(tg.get("enabled", False)),
            alert_bot_token=tg.get("alert_bot_token", ""),
            log_bot_token=tg.get("log_bot_token", ""),
            chat_id=str(tg.get("chat_id", "")),
        ),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> EngineConfig:
    """Load and validate engine configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (two levels up from this file).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = EngineConfig(
        crucibles=_build_crucibles(raw.get("crucibles", [])),
        tokens=_build_tokens(raw.get("tokens", {})),
        lending=_build_lending(raw.get("lending", {})),
        risk=_build_risk(raw.get("risk", {})),
        monitor=_build_monitor(raw.get("monitor", {})),
        settlement=_build_settlement(raw.get("settlement", {})),
        storage=_build_storage(raw.get("storage", {})),
        price_oracle=_build_price_oracle(raw.get("price_oracle", {})),
        notifications=_build_notifications(raw.get("notifications", {})),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: EngineConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.crucibles:
        raise ValueError("At least one crucible must be configured")

    seen: set[str] = set()
    for crucible in cfg.crucibles:
        if not crucible.id:
            raise ValueError(f"Crucible for '{crucible.base_token}' has no id")
        if crucible.id in seen:
            raise ValueError(f"Duplicate crucible id '{crucible.id}'")
        seen.add(crucible.id)
        if crucible.base_token not in cfg.tokens:
            raise ValueError(
                f"Crucible '{crucible.id}' references unknown token '{crucible.base_token}'"
            )
        if crucible.initial_exchange_rate <= 0:
            raise ValueError(f"Crucible '{crucible.id}' needs a positive exchange rate")

    if "USDC" not in cfg.tokens:
        raise ValueError("Token 'USDC' must be configured")

    if cfg.monitor.check_interval_seconds <= 0 or cfg.monitor.reconcile_interval_seconds <= 0:
        raise ValueError("Monitor intervals must be positive")
    if cfg.settlement.submit_timeout_seconds <= 0:
        raise ValueError("Settlement submit timeout must be positive")

    risk = cfg.risk
    if risk.min_open_health < risk.liquidation_threshold:
        raise ValueError(
            f"min_open_health {risk.min_open_health} is below the liquidation "
            f"threshold {risk.liquidation_threshold}"
        )
    if risk.warning_threshold < risk.liquidation_threshold:
        raise ValueError("warning_threshold must not be below liquidation_threshold")
    if not 1.0 <= risk.max_leverage <= MAX_LEVERAGE:
        raise ValueError(f"max_leverage must be between 1.0 and {MAX_LEVERAGE}")
    if risk.max_positions_per_owner <= 0:
        raise ValueError("max_positions_per_owner must be positive")

    if cfg.storage.backend not in ("json", "memory"):
        raise ValueError(f"Unknown storage backend '{cfg.storage.backend}'")
