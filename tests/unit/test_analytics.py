"""Unit tests for the transaction log and analytics fold."""
from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from crucible_engine.core.analytics import AnalyticsAggregator, TransactionLog
from crucible_engine.errors import PriceUnavailable
from crucible_engine.models import Transaction, TransactionType

DAY = 24 * 60 * 60
NOW = datetime(2024, 3, 10, 12, 0, tzinfo=timezone.utc).timestamp()


def _tx(
    type_: TransactionType,
    amount: float,
    token: str = "SOL",
    timestamp: float = NOW,
    **extra,
) -> Transaction:
    return Transaction(
        type=type_, amount=amount, token=token, crucible_id="sol", timestamp=timestamp, **extra
    )


def _prices(symbol: str) -> float:
    prices = {"SOL": 200.0, "USDC": 1.0}
    if symbol not in prices:
        raise PriceUnavailable(f"No price for {symbol}")
    return prices[symbol]


@pytest.fixture()
def aggregator() -> AnalyticsAggregator:
    return AnalyticsAggregator(_prices)


class TestTransactionLog:
    def test_newest_first(self) -> None:
        log = TransactionLog()
        log.append(_tx(TransactionType.WRAP, 1.0, id="a"))
        log.append(_tx(TransactionType.WRAP, 2.0, id="b"))
        assert [tx.id for tx in log] == ["b", "a"]
        assert [tx.id for tx in log.recent(1)] == ["b"]

    def test_bounded(self) -> None:
        log = TransactionLog(max_size=3)
        for i in range(5):
            log.append(_tx(TransactionType.WRAP, float(i), id=str(i)))
        assert len(log) == 3
        assert [tx.id for tx in log] == ["4", "3", "2"]

    def test_records_round_trip(self) -> None:
        log = TransactionLog()
        log.append(_tx(TransactionType.DEPOSIT, 1.0, id="a", leverage=2.0))
        log.append(_tx(TransactionType.WITHDRAW, 0.5, id="b"))
        restored = TransactionLog()
        assert restored.load_records(log.to_records() + [{"type": "bogus"}]) == 2
        assert list(restored) == list(log)


class TestTotals:
    def test_deposits_and_withdrawals(self, aggregator: AnalyticsAggregator) -> None:
        txs = [
            _tx(TransactionType.WRAP, 10.0),
            _tx(TransactionType.DEPOSIT, 5.0),
            _tx(TransactionType.UNWRAP, 3.0),
        ]
        totals = aggregator.totals(txs)
        assert totals.total_deposits == pytest.approx(3_000.0)
        assert totals.total_withdrawals == pytest.approx(600.0)
        assert totals.average_deposit == pytest.approx(1_500.0)
        assert totals.net_volume == pytest.approx(2_400.0)
        assert totals.transaction_count == 3

    def test_sub_unit_amounts_normalized(self, aggregator: AnalyticsAggregator) -> None:
        totals = aggregator.totals([_tx(TransactionType.WRAP, 5_000_000_000)])
        assert totals.total_deposits == pytest.approx(1_000.0)

    def test_explicit_usd_value_wins(self, aggregator: AnalyticsAggregator) -> None:
        totals = aggregator.totals([_tx(TransactionType.WRAP, 10.0, usd_value=1_234.0)])
        assert totals.total_deposits == pytest.approx(1_234.0)

    def test_missing_price_values_at_zero(self, aggregator: AnalyticsAggregator) -> None:
        totals = aggregator.totals([_tx(TransactionType.WRAP, 10.0, token="BONK")])
        assert totals.total_deposits == 0.0
        assert totals.transaction_count == 1

    def test_yield(self, aggregator: AnalyticsAggregator) -> None:
        txs = [
            _tx(TransactionType.UNWRAP, 10.0, yield_amount=0.5),
            _tx(TransactionType.WRAP, 10.0),
        ]
        totals = aggregator.totals(txs)
        assert totals.total_yield == pytest.approx(100.0)
        assert aggregator.realised_yield_usd(txs) == pytest.approx(100.0)

    def test_token_distribution_keyed_by_dist_token(self, aggregator: AnalyticsAggregator) -> None:
        txs = [
            _tx(TransactionType.WRAP, 10.0, dist_token="cSOL"),
            _tx(TransactionType.UNWRAP, 4.0, dist_token="cSOL"),
            _tx(TransactionType.DEPOSIT, 100.0, token="USDC"),
        ]
        distribution = aggregator.totals(txs).token_distribution
        assert distribution == {"cSOL": pytest.approx(6.0), "USDC": pytest.approx(100.0)}

    def test_empty(self, aggregator: AnalyticsAggregator) -> None:
        totals = aggregator.totals([])
        assert totals.total_deposits == 0.0
        assert totals.average_withdrawal == 0.0


class TestStats:
    def test_daily_stats(self, aggregator: AnalyticsAggregator) -> None:
        txs = [
            _tx(TransactionType.WRAP, 1.0),
            _tx(TransactionType.WRAP, 2.0, timestamp=NOW - DAY),
            _tx(TransactionType.WRAP, 3.0, timestamp=NOW - 30 * DAY),
        ]
        stats = aggregator.daily_stats(txs, days=7, today=date(2024, 3, 10))
        assert len(stats) == 7
        assert stats[0].date == "2024-03-04"
        assert stats[-1].date == "2024-03-10"
        assert stats[-1].day == "Sun"
        assert stats[-1].volume == pytest.approx(200.0)
        assert stats[-2].volume == pytest.approx(400.0)
        assert sum(s.volume for s in stats) == pytest.approx(600.0)

    def test_token_stats_percentages(self, aggregator: AnalyticsAggregator) -> None:
        txs = [
            _tx(TransactionType.WRAP, 30.0),
            _tx(TransactionType.DEPOSIT, 10.0, token="USDC"),
        ]
        stats = {s.token: s for s in aggregator.token_stats(txs)}
        assert stats["SOL"].percentage == pytest.approx(75.0)
        assert stats["USDC"].percentage == pytest.approx(25.0)

    def test_recent_transactions_fill_usd_value(self, aggregator: AnalyticsAggregator) -> None:
        txs = [_tx(TransactionType.WRAP, 2.0), _tx(TransactionType.WRAP, 1.0)]
        recent = aggregator.recent_transactions(txs, limit=1)
        assert len(recent) == 1
        assert recent[0].usd_value == pytest.approx(400.0)
