"""Holdings scanner — fans out balance reads across every registered chain."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import replace
from typing import Any

from ..cache import Clock, TTLCache, utc_now
from ..chains.evm.abi import scale_amount
from ..chains.registry import ChainRegistry
from ..config import ChainConfig
from ..constants import DEFAULT_CHAIN_TIMEOUT, PORTFOLIO_KEY_PREFIX
from ..interfaces.chain import ChainReader
from ..interfaces.positions import PositionIndexer
from ..interfaces.price_oracle import PriceOracle
from ..models import Asset, HoldingsSnapshot

logger = logging.getLogger(__name__)


class HoldingsScanner:
    """Aggregate a holder's wallet balances and deployed positions.

    Each chain, each position indexer and the price lookup run concurrently,
    each bounded by ``chain_timeout``. A chain that errors or times out
    contributes nothing and is reported in ``HoldingsSnapshot.failed_chains``;
    a failing position indexer is reported in ``failed_position_sources``.
    Neither fails the scan. Without prices, holdings are valued at $0.

    Positions are reconciled primary-first: the first indexer's record for a
    ``(chain, protocol, asset)`` wins and later indexers only fill gaps.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        readers: dict[str, ChainReader],
        oracle: PriceOracle,
        cache: TTLCache | None = None,
        clock: Clock = utc_now,
        chain_timeout: float = DEFAULT_CHAIN_TIMEOUT,
        position_indexers: Sequence[PositionIndexer] = (),
    ) -> None:
        self._registry = registry
        self._readers = readers
        self._oracle = oracle
        self._cache = cache
        self._clock = clock
        self._chain_timeout = chain_timeout
        self._position_indexers = tuple(position_indexers)

    async def scan(
        self,
        address: str,
        cancel: asyncio.Event | None = None,
        force_refresh: bool = False,
    ) -> HoldingsSnapshot:
        """Return the holder's assets on every chain.

        Args:
            address: Holder address.
            cancel: Optional event; once set, lookups still in flight are
                abandoned and the snapshot is marked ``cancelled``.
            force_refresh: Bypass the cached snapshot and repopulate it.
        """
        key = f"{PORTFOLIO_KEY_PREFIX}{address.lower()}"
        if self._cache is not None and not force_refresh:
            cached = await self._cache.get(key)
            if cached is not None:
                logger.debug("Using cached holdings for %s", address)
                return cached

        snapshot = await self._scan(address, cancel)

        # Cancelled scans are incomplete by choice; don't serve them later.
        if self._cache is not None and not snapshot.cancelled:
            await self._cache.set(key, snapshot)
        return snapshot

    async def _scan(
        self, address: str, cancel: asyncio.Event | None
    ) -> HoldingsSnapshot:
        if cancel is not None and cancel.is_set():
            logger.warning("Scan for %s cancelled before it started", address)
            return HoldingsSnapshot(
                address=address, assets=(), scanned_at=self._clock(), cancelled=True
            )
        logger.info("Scanning holdings for %s on %d chains", address, len(self._registry))
        price_task = asyncio.create_task(self._bounded(self._fetch_prices()))

        failed: list[str] = []
        chain_tasks: dict[asyncio.Task[Any], str] = {}
        for chain in self._registry:
            if chain.key not in self._readers:
                logger.warning("No chain reader configured for %s", chain.key)
                failed.append(chain.key)
                continue
            task = asyncio.create_task(self._bounded(self._read_chain(chain, address)))
            chain_tasks[task] = chain.key

        chain_keys = self._registry.keys()
        position_tasks = [
            asyncio.create_task(
                self._bounded(indexer.fetch_positions(address, chain_keys))
            )
            for indexer in self._position_indexers
        ]

        tasks = {price_task, *chain_tasks, *position_tasks}
        pending = await self._wait(tasks, cancel)
        for task in pending:
            task.cancel()
        if pending:
            abandoned = sorted(chain_tasks[t] for t in pending if t in chain_tasks)
            logger.warning(
                "Scan cancelled; abandoned chains: %s", ", ".join(abandoned) or "none"
            )

        prices = self._prices(price_task, pending)

        assets: list[Asset] = []
        for task, chain_key in chain_tasks.items():
            if task in pending:
                continue
            try:
                assets.extend(task.result())
            except Exception as e:
                logger.warning(
                    "Holdings scan failed on %s: %s", chain_key, str(e) or type(e).__name__
                )
                failed.append(chain_key)

        positions, failed_sources = self._reconcile(position_tasks, pending)
        assets.extend(positions)

        snapshot = HoldingsSnapshot(
            address=address,
            assets=tuple(_valued(a, prices) for a in assets),
            scanned_at=self._clock(),
            failed_chains=tuple(sorted(failed)),
            cancelled=bool(pending),
            failed_position_sources=failed_sources,
        )
        logger.info(
            "Found %d assets worth $%.2f (%d chain(s) failed)",
            len(snapshot.assets),
            snapshot.total_value,
            len(snapshot.failed_chains),
        )
        return snapshot

    async def _bounded(self, coro: Any) -> Any:
        return await asyncio.wait_for(coro, timeout=self._chain_timeout)

    @staticmethod
    async def _wait(
        tasks: set[asyncio.Task[Any]], cancel: asyncio.Event | None
    ) -> set[asyncio.Task[Any]]:
        """Wait for every task or until ``cancel`` fires; return the unfinished."""
        if not tasks:
            return set()
        if cancel is None:
            await asyncio.wait(tasks)
            return set()

        pending = set(tasks)
        cancel_waiter = asyncio.create_task(cancel.wait())
        try:
            while pending and not cancel.is_set():
                done, _ = await asyncio.wait(
                    pending | {cancel_waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                pending -= done
        finally:
            cancel_waiter.cancel()
        return pending

    async def _fetch_prices(self) -> dict[str, float]:
        return await self._oracle.fetch_prices(self._registry.tracked_symbols())

    @staticmethod
    def _prices(
        task: asyncio.Task[Any], pending: set[asyncio.Task[Any]]
    ) -> dict[str, float]:
        if task in pending:
            return {}
        try:
            return task.result()
        except Exception as e:
            logger.warning(
                "Price lookup failed, valuing holdings at $0: %s", str(e) or type(e).__name__
            )
            return {}

    def _reconcile(
        self,
        tasks: list[asyncio.Task[Any]],
        pending: set[asyncio.Task[Any]],
    ) -> tuple[list[Asset], tuple[str, ...]]:
        """Merge indexer results primary-first; return positions and failed sources."""
        merged: dict[tuple[str, str, str], Asset] = {}
        failed: list[str] = []
        for indexer, task in zip(self._position_indexers, tasks):
            if task in pending:
                continue
            try:
                positions = task.result()
            except Exception as e:
                logger.warning(
                    "Position indexer %s failed: %s", indexer.name, str(e) or type(e).__name__
                )
                failed.append(indexer.name)
                continue
            for position in positions:
                protocol = (position.protocol or "").lower()
                merged.setdefault((position.chain, protocol, position.symbol.upper()), position)
        return list(merged.values()), tuple(failed)

    async def _read_chain(self, chain: ChainConfig, address: str) -> list[Asset]:
        reader = self._readers[chain.key]
        assets: list[Asset] = []

        raw_native = await reader.get_native_balance(address)
        if raw_native > 0:
            assets.append(
                Asset(
                    symbol=chain.native_symbol,
                    chain=chain.key,
                    quantity=scale_amount(raw_native, chain.native_decimals),
                    value_usd=0.0,
                    is_native=True,
                )
            )

        for token in chain.tokens:
            raw = await reader.get_token_balance(token.address, address)
            if raw > 0:
                assets.append(
                    Asset(
                        symbol=token.symbol,
                        chain=chain.key,
                        quantity=scale_amount(raw, token.decimals),
                        value_usd=0.0,
                    )
                )

        logger.debug("%s: %d non-zero balances", chain.key, len(assets))
        return assets


def _valued(asset: Asset, prices: dict[str, float]) -> Asset:
    """Price ``asset`` at the oracle rate; an unpriced asset keeps its own value."""
    price = prices.get(asset.symbol.upper(), 0.0)
    if price > 0:
        return replace(asset, value_usd=asset.quantity * price)
    if asset.value_usd == 0.0:
        logger.debug("No price for %s; valuing at $0", asset.symbol)
    return asset
