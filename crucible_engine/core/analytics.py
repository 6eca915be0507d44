"""Transaction log and the analytics fold over it."""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterable, Iterator, Mapping

from ..errors import EngineError
from ..models import Transaction
from .units import DEFAULT_SANITY_THRESHOLD, normalize_amount

logger = logging.getLogger(__name__)

MAX_TRANSACTIONS = 100


@dataclass(frozen=True)
class TokenUnits:
    """Decimal exponent and the display amount above which a value is sub-units."""

    decimals: int
    sanity_threshold: float = DEFAULT_SANITY_THRESHOLD


DEFAULT_TOKEN_UNITS: dict[str, TokenUnits] = {
    "SOL": TokenUnits(decimals=9, sanity_threshold=1_000_000),
    "USDC": TokenUnits(decimals=6, sanity_threshold=10_000_000),
}


class TransactionLog:
    """Append-only, newest-first, bounded to the most recent ``max_size`` records."""

    def __init__(self, max_size: int = MAX_TRANSACTIONS) -> None:
        self._items: deque[Transaction] = deque(maxlen=max_size)

    def append(self, tx: Transaction) -> None:
        self._items.appendleft(tx)

    def recent(self, limit: int | None = None) -> list[Transaction]:
        items = list(self._items)
        return items if limit is None else items[:limit]

    def __iter__(self) -> Iterator[Transaction]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)

    def to_records(self) -> list[dict[str, Any]]:
        return [tx.to_record() for tx in self._items]

    def load_records(self, records: Iterable[dict[str, Any]]) -> int:
        """Replace the log with persisted records (newest first)."""
        loaded: list[Transaction] = []
        for raw in records:
            try:
                loaded.append(Transaction.from_record(raw))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning("Skipping malformed transaction record: %s", e)
        self._items.clear()
        self._items.extend(loaded[: self._items.maxlen])
        return len(self._items)


@dataclass(frozen=True)
class PortfolioTotals:
    total_deposits: float = 0.0
    total_withdrawals: float = 0.0
    average_deposit: float = 0.0
    average_withdrawal: float = 0.0
    net_volume: float = 0.0
    total_yield: float = 0.0
    withdrawn_yield: float = 0.0
    transaction_count: int = 0
    daily_volume: dict[str, float] = field(default_factory=dict)
    token_distribution: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class DailyStat:
    date: str
    volume: float
    day: str


@dataclass(frozen=True)
class TokenStat:
    token: str
    amount: float
    percentage: float


def _utc_date(timestamp: float) -> date:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).date()


class AnalyticsAggregator:
    """Folds a transaction log into portfolio totals.

    Amounts are normalized before any valuation: a value above the token's
    sanity threshold is assumed to be in sub-units and divided by
    ``10 ** decimals``. Explicit positive ``usd_value`` fields win over
    ``amount * price``. A failed price lookup values the record at zero.
    """

    def __init__(
        self,
        price_of: Callable[[str], float],
        token_units: Mapping[str, TokenUnits] | None = None,
    ) -> None:
        self._price_of = price_of
        self._units = dict(DEFAULT_TOKEN_UNITS if token_units is None else token_units)

    def normalize(self, amount: float, token: str) -> float:
        units = self._units.get(token)
        if units is None:
            return amount
        return normalize_amount(amount, units.decimals, units.sanity_threshold)

    def _price(self, token: str) -> float:
        try:
            return self._price_of(token)
        except EngineError as e:
            logger.warning("No price for %s, valuing at 0: %s", token, e)
            return 0.0

    def usd_value(self, tx: Transaction) -> float:
        if tx.usd_value is not None and tx.usd_value > 0:
            return tx.usd_value
        return self.normalize(tx.amount, tx.token) * self._price(tx.token)

    def yield_usd(self, tx: Transaction) -> float:
        if not tx.yield_amount or tx.yield_amount <= 0:
            return 0.0
        return self.normalize(tx.yield_amount, tx.token) * self._price(tx.token)

    # ------------------------------------------------------------------
    # Folds
    # ------------------------------------------------------------------

    def totals(self, transactions: Iterable[Transaction]) -> PortfolioTotals:
        txs = list(transactions)
        inflows = [self.usd_value(tx) for tx in txs if tx.type.is_inflow]
        outflows = [self.usd_value(tx) for tx in txs if not tx.type.is_inflow]
        total_deposits = sum(inflows)
        total_withdrawals = sum(outflows)

        daily: dict[str, float] = {}
        tokens: dict[str, float] = {}
        total_yield = 0.0
        withdrawn_yield = 0.0
        for tx in txs:
            sign = 1.0 if tx.type.is_inflow else -1.0
            day = _utc_date(tx.timestamp).isoformat()
            daily[day] = daily.get(day, 0.0) + sign * self.usd_value(tx)

            key = tx.dist_token or tx.token
            tokens[key] = tokens.get(key, 0.0) + sign * self.normalize(tx.amount, tx.token)

            earned = self.yield_usd(tx)
            total_yield += earned
            if not tx.type.is_inflow:
                withdrawn_yield += earned

        return PortfolioTotals(
            total_deposits=total_deposits,
            total_withdrawals=total_withdrawals,
            average_deposit=total_deposits / len(inflows) if inflows else 0.0,
            average_withdrawal=total_withdrawals / len(outflows) if outflows else 0.0,
            net_volume=total_deposits - total_withdrawals,
            total_yield=total_yield,
            withdrawn_yield=withdrawn_yield,
            transaction_count=len(txs),
            daily_volume=daily,
            token_distribution=tokens,
        )

    def daily_stats(
        self,
        transactions: Iterable[Transaction],
        days: int = 7,
        today: date | None = None,
    ) -> list[DailyStat]:
        """Signed volume for each of the last ``days`` UTC days, oldest first."""
        daily = self.totals(transactions).daily_volume
        today = today or datetime.now(timezone.utc).date()
        stats: list[DailyStat] = []
        for offset in range(days - 1, -1, -1):
            day = today - timedelta(days=offset)
            key = day.isoformat()
            stats.append(DailyStat(date=key, volume=daily.get(key, 0.0), day=day.strftime("%a")))
        return stats

    def token_stats(self, transactions: Iterable[Transaction]) -> list[TokenStat]:
        """Per-token absolute net flow and its share of the total."""
        distribution = self.totals(transactions).token_distribution
        total = sum(abs(v) for v in distribution.values())
        return [
            TokenStat(
                token=token,
                amount=abs(amount),
                percentage=abs(amount) / total * 100 if total > 0 else 0.0,
            )
            for token, amount in distribution.items()
        ]

    def recent_transactions(
        self, transactions: Iterable[Transaction], limit: int = 10
    ) -> list[Transaction]:
        """Most recent records with ``usd_value`` filled in."""
        recent = list(transactions)[:limit]
        return [replace(tx, usd_value=self.usd_value(tx)) for tx in recent]

    def realised_yield_usd(self, transactions: Iterable[Transaction]) -> float:
        """Yield realised by withdrawals and unwraps."""
        return self.totals(transactions).withdrawn_yield
