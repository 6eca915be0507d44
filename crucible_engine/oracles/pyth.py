"""Pyth Network (Hermes) price oracle."""
from __future__ import annotations

import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ..config import PythConfig

logger = logging.getLogger(__name__)


def parse_hermes_prices(
    data: dict[str, Any], feeds: dict[str, str]
) -> tuple[dict[str, float], dict[str, float]]:
    """Map a Hermes ``latest`` response to ``({symbol: price}, {symbol: publish_time})``.

    Several symbols may share a feed id (e.g. a token and its wrapped form).
    """
    id_to_symbols: dict[str, list[str]] = {}
    for symbol, feed_id in feeds.items():
        id_to_symbols.setdefault(feed_id.lower().removeprefix("0x"), []).append(symbol)

    prices: dict[str, float] = {}
    publish_times: dict[str, float] = {}
    for item in data.get("parsed", []):
        feed_id = str(item.get("id", "")).lower().removeprefix("0x")
        symbols = id_to_symbols.get(feed_id)
        if not symbols:
            continue
        price_data = item.get("price", {})
        price = int(price_data.get("price", 0)) * (10 ** int(price_data.get("expo", 0)))
        publish_time = float(price_data.get("publish_time", 0))
        for symbol in symbols:
            prices[symbol] = price
            publish_times[symbol] = publish_time
    return prices, publish_times


class PythOracle:
    """Fetch prices from the Pyth Hermes API."""

    def __init__(self, config: PythConfig) -> None:
        self.hermes_url = config.hermes_url
        self.price_feeds = dict(config.feeds)
        self.publish_times: dict[str, float] = {}

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, float]:
        """Fetch current prices; returns an empty dict on any failure.

        Args:
            symbols: Optional list of symbols to fetch. If None, fetches all
                     configured feeds.
        """
        feeds = self.price_feeds
        if symbols is not None:
            feeds = {k: v for k, v in self.price_feeds.items() if k in symbols}

        feed_ids = sorted(set(feeds.values()))
        if not feed_ids:
            return {}

        query_params = "&".join(f"ids[]={fid}" for fid in feed_ids)
        url = f"{self.hermes_url}?{query_params}"

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(url) as response:
                    if response.status != 200:
                        logger.error("Error fetching prices from Pyth: HTTP %s", response.status)
                        return {}
                    data = await response.json()
        except Exception as e:
            logger.error("Error fetching prices from Pyth: %s", e)
            return {}

        prices, publish_times = parse_hermes_prices(data, feeds)
        self.publish_times.update(publish_times)
        for symbol, price in sorted(prices.items()):
            logger.debug("Pyth price %s: $%.4f", symbol, price)
        return prices
