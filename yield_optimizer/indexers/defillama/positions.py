"""DefiLlama-priced positions — receipt-token balances read on chain."""
from __future__ import annotations

import asyncio
import logging
import ssl

import aiohttp
import certifi

from ...chains.evm.abi import scale_amount
from ...config import PositionSourceConfig
from ...interfaces.chain import ChainReader
from ...models import Asset
from . import parser

logger = logging.getLogger(__name__)


class DefiLlamaPositionIndexer:
    """Discover lending and staking positions from receipt-token balances.

    Each configured receipt token (an aToken, a cToken, stETH...) is read
    with ``balanceOf`` through the chain readers. Held positions take their
    APY from the DefiLlama pool they are mapped to; when the pools endpoint
    is down the positions are still reported, without APY.
    """

    def __init__(
        self,
        config: PositionSourceConfig,
        readers: dict[str, ChainReader],
        timeout: float = 20.0,
    ) -> None:
        self._config = config
        self._readers = readers
        self._timeout = timeout

    @property
    def name(self) -> str:
        return self._config.name or "defillama"

    async def fetch_positions(self, address: str, chains: list[str]) -> list[Asset]:
        wanted = set(chains)
        receipts = [
            r for r in self._config.receipts
            if r.chain in wanted and r.chain in self._readers
        ]
        if not receipts:
            return []

        balances = await asyncio.gather(
            *(self._readers[r.chain].get_token_balance(r.address, address) for r in receipts)
        )
        held = [(r, raw) for r, raw in zip(receipts, balances) if raw > 0]
        if not held:
            return []

        apys = await self._fetch_apys()
        positions = [
            Asset(
                symbol=receipt.symbol,
                chain=receipt.chain,
                quantity=scale_amount(raw, receipt.decimals),
                value_usd=0.0,
                protocol=receipt.protocol,
                apy=apys.get(receipt.pool_id),
            )
            for receipt, raw in held
        ]
        logger.info("%s: %d positions for %s", self.name, len(positions), address)
        return positions

    async def _fetch_apys(self) -> dict[str, float]:
        if not self._config.url:
            return {}
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)
        try:
            async with aiohttp.ClientSession(connector=connector) as session:
                async with session.get(
                    self._config.url,
                    timeout=aiohttp.ClientTimeout(total=self._timeout),
                ) as response:
                    if response.status != 200:
                        raise RuntimeError(f"DefiLlama returned HTTP {response.status}")
                    data = await response.json()
        except Exception as e:
            logger.warning("%s: pool APYs unavailable: %s", self.name, e)
            return {}
        return parser.pool_apys(data)
