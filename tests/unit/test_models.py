"""Unit tests for data models."""
from __future__ import annotations

import pytest

from crucible_engine.models import (
    Identity,
    LeveragedPosition,
    LPPosition,
    PositionKind,
    TransactionType,
    WrapHolding,
)


class _Keypair:
    def __init__(self, key: str) -> None:
        self._key = key

    def to_base58(self) -> str:
        return self._key


class _Wallet:
    address = "wallet-address"


class TestIdentity:
    def test_from_string(self) -> None:
        assert Identity.parse("  alice ") == Identity("alice")

    def test_passthrough(self) -> None:
        identity = Identity("alice")
        assert Identity.parse(identity) is identity

    def test_from_address_attribute(self) -> None:
        assert Identity.parse(_Wallet()).owner == "wallet-address"

    def test_from_base58_key(self) -> None:
        assert Identity.parse(_Keypair("9xQe")).owner == "9xQe"

    def test_unresolvable(self) -> None:
        with pytest.raises(ValueError):
            Identity.parse(42)

    def test_empty_rejected(self) -> None:
        with pytest.raises(ValueError):
            Identity("   ")

    def test_str(self) -> None:
        assert str(Identity("alice")) == "alice"


class TestPositions:
    def test_ids(self, sample_leveraged_position: LeveragedPosition) -> None:
        assert sample_leveraged_position.id == "leveraged:alice:sol:0"
        assert sample_leveraged_position.kind == PositionKind.LEVERAGED

    def test_frozen(self, sample_leveraged_position: LeveragedPosition) -> None:
        with pytest.raises(AttributeError):
            sample_leveraged_position.is_open = False  # type: ignore[misc]

    def test_leveraged_record_shape(self, sample_leveraged_position: LeveragedPosition) -> None:
        record = sample_leveraged_position.to_record()
        assert record["baseAmount"] == sample_leveraged_position.collateral
        assert record["borrowedUSDC"] == sample_leveraged_position.borrowed_usdc
        assert record["leverageFactor"] == 2.0
        assert record["isOpen"] is True
        assert LeveragedPosition.from_record(record) == sample_leveraged_position

    def test_lp_record_round_trip(self) -> None:
        position = LPPosition(
            owner="alice",
            crucible_id="sol",
            nonce=3,
            base_token="SOL",
            base_amount=9_900_000_000,
            usdc_amount=1_980_000_000,
            entry_price=200.0,
            entry_exchange_rate=1_045_000,
            lp_token_amount=12_345,
            receipt_held=9_473_684_210,
        )
        assert position.id == "lp:alice:sol:3"
        assert LPPosition.from_record(position.to_record()) == position

    def test_holding_record_round_trip(self) -> None:
        holding = WrapHolding("alice", "sol", 1_000, last_deposit_ts=5.0)
        assert WrapHolding.from_record(holding.to_record()) == holding


class TestTransactionType:
    def test_inflows(self) -> None:
        assert TransactionType.DEPOSIT.is_inflow
        assert TransactionType.WRAP.is_inflow
        assert not TransactionType.WITHDRAW.is_inflow
        assert not TransactionType.UNWRAP.is_inflow
