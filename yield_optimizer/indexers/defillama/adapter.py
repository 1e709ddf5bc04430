"""DefiLlama yields indexer — fetches pools over HTTP."""
from __future__ import annotations

import logging
import ssl

import aiohttp
import certifi

from ...cache import Clock, utc_now
from ...config import IndexerConfig
from ...models import YieldOpportunity
from . import parser

logger = logging.getLogger(__name__)


class DefiLlamaIndexer:
    """List yield opportunities from the DefiLlama ``/pools`` endpoint."""

    def __init__(
        self,
        config: IndexerConfig,
        chain_names: dict[str, str],
        clock: Clock = utc_now,
        timeout: float = 20.0,
    ) -> None:
        self._config = config
        self._chain_map = parser.build_chain_map(chain_names)
        self._clock = clock
        self._timeout = timeout

    @property
    def name(self) -> str:
        return self._config.name or "defillama"

    async def fetch_opportunities(self, chains: list[str]) -> list[YieldOpportunity]:
        """Fetch pools and keep those on the requested chains."""
        ssl_context = ssl.create_default_context(cafile=certifi.where())
        connector = aiohttp.TCPConnector(ssl=ssl_context)

        async with aiohttp.ClientSession(connector=connector) as session:
            async with session.get(
                self._config.url,
                timeout=aiohttp.ClientTimeout(total=self._timeout),
            ) as response:
                if response.status != 200:
                    raise RuntimeError(
                        f"DefiLlama returned HTTP {response.status}"
                    )
                data = await response.json()

        opportunities = parser.parse_pools(
            data,
            self._chain_map,
            self._clock(),
            min_tvl_usd=self._config.min_tvl_usd,
            projects=self._config.projects,
            verified_projects=self._config.verified_projects,
            staking_projects=self._config.staking_projects,
        )
        wanted = set(chains)
        opportunities = [o for o in opportunities if o.chain in wanted]
        logger.info("%s: parsed %d opportunities", self.name, len(opportunities))
        return opportunities
