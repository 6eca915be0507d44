"""Price oracle protocol — async feed acquisition."""
from typing import Protocol


class PriceOracle(Protocol):
    """Fetches quote prices from an external feed."""

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, float]: ...

