"""Exchange-rate ledger — crucible state, receipt mint/burn and fee accrual."""
from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Callable, Iterable

from ..errors import InsufficientBalance, InvalidAmount, UnknownCrucible
from ..models import Crucible
from .fees import FeeResult, split_fee, unwrap_fee, wrap_fee
from .units import RATE_SCALE, rate_to_fixed, validate_amount

logger = logging.getLogger(__name__)

INITIAL_EXCHANGE_RATE = 1.045
INITIAL_RATE = rate_to_fixed(INITIAL_EXCHANGE_RATE)


@dataclass(frozen=True)
class WrapResult:
    minted: int
    fee: FeeResult
    vault_fee: int
    protocol_fee: int
    rate: int


@dataclass(frozen=True)
class UnwrapResult:
    burned: int
    base_returned: int
    fee: FeeResult
    vault_fee: int
    protocol_fee: int
    rate: int


def mint_amount(net_base: int, rate: int) -> int:
    return net_base * RATE_SCALE // rate


def redeem_amount(receipt: int, rate: int) -> int:
    return receipt * rate // RATE_SCALE


class ExchangeRateLedger:
    """Per-crucible exchange rate and receipt supply.

    While receipt tokens are outstanding the rate only moves up, through
    ``accrue``. Once the supply is fully burned the next deposit starts
    again at the crucible's genesis rate. Every mutation bumps the
    crucible's ``version`` so callers holding a snapshot can tell whether
    someone else touched the crucible in the meantime.
    """

    def __init__(self, crucibles: Iterable[Crucible] = ()) -> None:
        self._crucibles: dict[str, Crucible] = {}
        self._versions: dict[str, int] = {}
        self._genesis_rates: dict[str, int] = {}
        for crucible in crucibles:
            self.register(crucible)

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def register(self, crucible: Crucible) -> None:
        if crucible.exchange_rate <= 0:
            raise InvalidAmount(
                f"Crucible '{crucible.id}' has a non-positive exchange rate",
                exchange_rate=crucible.exchange_rate,
            )
        self._crucibles[crucible.id] = crucible
        self._versions.setdefault(crucible.id, 0)
        # A crucible registered mid-life has no genesis rate of its own.
        self._genesis_rates[crucible.id] = (
            crucible.exchange_rate if crucible.total_receipt_supply == 0 else INITIAL_RATE
        )

    def get(self, crucible_id: str) -> Crucible:
        try:
            return self._crucibles[crucible_id]
        except KeyError:
            raise UnknownCrucible(f"Unknown crucible '{crucible_id}'") from None

    def crucibles(self) -> list[Crucible]:
        return list(self._crucibles.values())

    def __contains__(self, crucible_id: object) -> bool:
        return crucible_id in self._crucibles

    def rate(self, crucible_id: str) -> int:
        return self.get(crucible_id).exchange_rate

    def version(self, crucible_id: str) -> int:
        self.get(crucible_id)
        return self._versions[crucible_id]

    def deposit_rate(self, crucible_id: str) -> int:
        """Rate a deposit mints at: the genesis rate while the supply is empty."""
        crucible = self.get(crucible_id)
        if crucible.total_receipt_supply == 0:
            return self._genesis_rates[crucible_id]
        return crucible.exchange_rate

    def preview_mint(self, crucible_id: str, net_base: int) -> int:
        return mint_amount(net_base, self.deposit_rate(crucible_id))

    def preview_redeem(self, crucible_id: str, receipt: int) -> int:
        return redeem_amount(receipt, self.rate(crucible_id))

    # ------------------------------------------------------------------
    # Primitive mutations
    # ------------------------------------------------------------------

    def _set(self, crucible: Crucible) -> None:
        self._crucibles[crucible.id] = crucible
        self._versions[crucible.id] += 1

    def accrue(self, crucible_id: str, fee_base_units: int) -> int:
        """Distribute ``fee_base_units`` to current receipt holders.

        Returns the new rate. With no receipt supply there is nobody to
        distribute to and the call is a no-op.
        """
        if fee_base_units < 0:
            raise InvalidAmount("Cannot accrue a negative fee", fee=fee_base_units)
        crucible = self.get(crucible_id)
        if fee_base_units == 0 or crucible.total_receipt_supply == 0:
            return crucible.exchange_rate
        increment = fee_base_units * RATE_SCALE // crucible.total_receipt_supply
        new_rate = crucible.exchange_rate + increment
        self._set(replace(crucible, exchange_rate=new_rate))
        logger.debug(
            "Accrued %d base units to %s: rate %d -> %d",
            fee_base_units, crucible_id, crucible.exchange_rate, new_rate,
        )
        return new_rate

    def mint(self, crucible_id: str, net_base: int) -> int:
        """Mint receipt tokens for ``net_base`` at the deposit rate."""
        validate_amount(net_base, "net_base")
        crucible = self.get(crucible_id)
        rate = self.deposit_rate(crucible_id)
        minted = mint_amount(net_base, rate)
        if minted == 0:
            raise InvalidAmount("Deposit too small to mint any receipt tokens", net_base=net_base)
        self._set(
            replace(
                crucible,
                exchange_rate=rate,
                total_receipt_supply=crucible.total_receipt_supply + minted,
                total_base_deposited=crucible.total_base_deposited + net_base,
            )
        )
        return minted

    def burn(self, crucible_id: str, receipt: int, balance: int | None = None) -> int:
        """Burn ``receipt`` tokens and return the gross base amount they redeem."""
        validate_amount(receipt, "receipt")
        crucible = self.get(crucible_id)
        available = crucible.total_receipt_supply if balance is None else balance
        if receipt > available:
            raise InsufficientBalance(
                "Not enough receipt tokens", required=receipt, available=available
            )
        base = redeem_amount(receipt, crucible.exchange_rate)
        self._set(
            replace(
                crucible,
                total_receipt_supply=crucible.total_receipt_supply - receipt,
                total_base_deposited=max(crucible.total_base_deposited - base, 0),
            )
        )
        return base

    def collect_fee(self, crucible_id: str, fee: int) -> tuple[int, int]:
        """Book a base-token fee: vault share accrues, the rest goes to treasury."""
        vault_share, protocol_share = split_fee(fee)
        self.accrue(crucible_id, vault_share)
        crucible = self.get(crucible_id)
        self._set(
            replace(
                crucible,
                total_fees_accrued=crucible.total_fees_accrued + fee,
                protocol_fees=crucible.protocol_fees + protocol_share,
            )
        )
        return vault_share, protocol_share

    # ------------------------------------------------------------------
    # Composite actions
    # ------------------------------------------------------------------

    def wrap(
        self,
        crucible_id: str,
        gross: int,
        fee_fn: Callable[[int], FeeResult] = wrap_fee,
    ) -> WrapResult:
        """Wrap ``gross`` base units into receipt tokens.

        The fee is taken first and the net amount minted at the deposit
        rate. The minted tokens join the supply before the vault share of the
        fee accrues, so the accrual is spread over every token backed by the
        vault afterwards, the new ones included.
        """
        validate_amount(gross, "amount")
        self.get(crucible_id)
        fee = fee_fn(gross)
        rate = self.deposit_rate(crucible_id)
        if mint_amount(fee.net, rate) == 0:
            raise InvalidAmount("Deposit too small to mint any receipt tokens", amount=gross)

        minted = self.mint(crucible_id, fee.net)
        vault_fee, protocol_fee = self.collect_fee(crucible_id, fee.fee)
        crucible = self.get(crucible_id)
        logger.info(
            "Wrapped %d base units into %d %s (fee %d) at rate %d",
            gross, minted, crucible.receipt_symbol, fee.fee, rate,
        )
        return WrapResult(
            minted=minted, fee=fee, vault_fee=vault_fee, protocol_fee=protocol_fee, rate=rate
        )

    def unwrap(
        self,
        crucible_id: str,
        receipt: int,
        balance: int,
        deposit_ts: float | None = None,
        now: float = 0.0,
    ) -> UnwrapResult:
        """Burn ``receipt`` tokens and return base net of the unwrap fee."""
        rate = self.rate(crucible_id)
        gross = self.burn(crucible_id, receipt, balance)
        fee = unwrap_fee(gross, deposit_ts, now)
        vault_fee, protocol_fee = self.collect_fee(crucible_id, fee.fee)
        logger.info(
            "Unwrapped %d receipt tokens from %s into %d base units (fee %d)",
            receipt, crucible_id, fee.net, fee.fee,
        )
        return UnwrapResult(
            burned=receipt,
            base_returned=fee.net,
            fee=fee,
            vault_fee=vault_fee,
            protocol_fee=protocol_fee,
            rate=rate,
        )

    # ------------------------------------------------------------------
    # Rollback / reconciliation
    # ------------------------------------------------------------------

    def snapshot(self, crucible_id: str) -> tuple[Crucible, int]:
        """Return the crucible and its version, for a later ``restore``."""
        return self.get(crucible_id), self.version(crucible_id)

    def restore(self, crucible: Crucible, expected_version: int) -> bool:
        """Restore a snapshot if no mutation happened after ``expected_version``.

        Returns False (and leaves state untouched) when the crucible moved on.
        """
        if self.version(crucible.id) != expected_version:
            logger.warning(
                "Crucible %s changed since snapshot (version %d != %d); not restoring",
                crucible.id, self._versions[crucible.id], expected_version,
            )
            return False
        self._set(crucible)
        return True

    def reconcile(
        self,
        crucible_id: str,
        exchange_rate: int,
        total_receipt_supply: int,
        **fields: int,
    ) -> Crucible:
        """Overwrite local state with the settlement layer's view."""
        crucible = self.get(crucible_id)
        if exchange_rate < crucible.exchange_rate:
            logger.warning(
                "External rate for %s is below local rate (%d < %d)",
                crucible_id, exchange_rate, crucible.exchange_rate,
            )
        updated = replace(
            crucible,
            exchange_rate=exchange_rate,
            total_receipt_supply=total_receipt_supply,
            **fields,
        )
        if updated != crucible:
            self._set(updated)
        return updated
