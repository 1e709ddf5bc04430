"""Pyth Network price oracle service."""
from __future__ import annotations

import logging
import ssl
from typing import Any

import aiohttp
import certifi

from ..config import PriceOracleConfig

logger = logging.getLogger(__name__)


def parse_price_update(
    data: dict[str, Any], feeds: dict[str, str]
) -> dict[str, float]:
    """Map a Hermes ``parsed`` payload back onto configured symbols."""
    id_to_symbols: dict[str, list[str]] = {}
    for symbol, feed_id in feeds.items():
        id_to_symbols.setdefault(feed_id.lower().removeprefix("0x"), []).append(symbol)

    prices: dict[str, float] = {}
    for item in data.get("parsed", []):
        feed_id = str(item.get("id", "")).lower().removeprefix("0x")
        price_data = item.get("price", {})
        price_raw = int(price_data.get("price", 0))
        expo = int(price_data.get("expo", 0))

        for symbol in id_to_symbols.get(feed_id, []):
            prices[symbol] = price_raw * (10**expo)
    return prices


class PythOracle:
    """Fetch USD prices from Pyth Network, falling back to static prices.

    Static prices (typically stablecoin pegs) fill any symbol the oracle
    did not return, so a Hermes outage degrades to partial valuations
    rather than none.
    """

    def __init__(self, config: PriceOracleConfig) -> None:
        self.hermes_url = config.pyth.hermes_url
        self.price_feeds = {k.upper(): v for k, v in config.pyth.feeds.items()}
        self.timeout = config.pyth.timeout
        self.static_prices = dict(config.static_prices)

    async def fetch_prices(self, symbols: list[str] | None = None) -> dict[str, float]:
        """Fetch current prices.

        Args:
            symbols: Optional list of symbols to fetch. If None, fetches all
                     configured feeds.
        """
        wanted = None if symbols is None else {s.upper() for s in symbols}

        feeds = self.price_feeds
        if wanted is not None:
            feeds = {k: v for k, v in self.price_feeds.items() if k in wanted}

        prices = await self._fetch_feeds(feeds) if feeds else {}

        for symbol, price in self.static_prices.items():
            if (wanted is None or symbol in wanted) and symbol not in prices:
                prices[symbol] = price

        return prices

    async def _fetch_feeds(self, feeds: dict[str, str]) -> dict[str, float]:
        feed_ids = sorted(set(feeds.values()))
        query_params = "&".join(f"ids[]={fid}" for fid in feed_ids)
        url = f"{self.hermes_url}?{query_params}"

        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(
                    url, timeout=aiohttp.ClientTimeout(total=self.timeout)
                ) as response:
                    if response.status != 200:
                        logger.error(
                            "Error fetching prices from Pyth: HTTP %s", response.status
                        )
                        return {}

                    data = await response.json()
        except Exception as e:
            logger.error("Error fetching prices from Pyth: %s", e)
            return {}

        prices = parse_price_update(data, feeds)
        logger.info("Fetched %d prices from Pyth Network", len(prices))
        for symbol, price in sorted(prices.items()):
            logger.debug("  %s: $%.4f", symbol, price)
        return prices
