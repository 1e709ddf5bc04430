"""Opportunity catalog — reconciles indexer backends into one record set."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import timedelta

from ..cache import Clock, TTLCache, utc_now
from ..chains.registry import ChainRegistry
from ..constants import (
    ALL_OPPORTUNITIES_KEY,
    DEFAULT_FRESHNESS_HOURS,
    DEFAULT_INDEXER_TIMEOUT,
)
from ..interfaces.indexer import OpportunityIndexer
from ..models import ApyObservation, YieldOpportunity

logger = logging.getLogger(__name__)

OpportunityKey = tuple[str, str, str, str]


class OpportunityCatalog:
    """Known yield opportunities, refreshed from one or more indexers.

    The first indexer is the primary. On overlap its record always wins;
    secondary indexers only fill keys the primary has never reported.
    Records are never removed: anything not updated within the freshness
    window is excluded from active results but kept for APY history.
    """

    def __init__(
        self,
        indexers: list[OpportunityIndexer],
        registry: ChainRegistry,
        cache: TTLCache | None = None,
        clock: Clock = utc_now,
        freshness_hours: float = DEFAULT_FRESHNESS_HOURS,
        indexer_timeout: float = DEFAULT_INDEXER_TIMEOUT,
    ) -> None:
        if not indexers:
            raise ValueError("At least one opportunity indexer is required")
        self._indexers = list(indexers)
        self._registry = registry
        self._clock = clock
        self._cache = cache if cache is not None else TTLCache(clock=clock)
        self._freshness = timedelta(hours=freshness_hours)
        self._indexer_timeout = indexer_timeout

        self._records: dict[OpportunityKey, YieldOpportunity] = {}
        self._from_primary: set[OpportunityKey] = set()
        self._history: dict[OpportunityKey, list[ApyObservation]] = {}
        self._ids: dict[str, OpportunityKey] = {}
        self._lock = asyncio.Lock()
        self.failed_indexers: tuple[str, ...] = ()

    @property
    def primary(self) -> str:
        return self._indexers[0].name

    # ------------------------------------------------------------------
    # Refresh
    # ------------------------------------------------------------------

    async def refresh(self) -> tuple[YieldOpportunity, ...]:
        """Query every indexer concurrently and merge the results."""
        chains = self._registry.keys()
        results = await asyncio.gather(
            *(self._fetch(indexer, chains) for indexer in self._indexers)
        )

        self.failed_indexers = tuple(
            ix.name for ix, batch in zip(self._indexers, results) if batch is None
        )

        async with self._lock:
            seen: set[OpportunityKey] = set()
            for position, batch in enumerate(results):
                for opportunity in batch or []:
                    if opportunity.key in seen:
                        continue
                    seen.add(opportunity.key)
                    self._upsert(opportunity, is_primary=position == 0)

        active = self._active()
        logger.info(
            "Catalog refreshed: %d active of %d known opportunities",
            len(active),
            len(self._records),
        )
        return active

    async def _fetch(
        self, indexer: OpportunityIndexer, chains: list[str]
    ) -> list[YieldOpportunity] | None:
        """Fetch from one indexer. Returns None when the indexer failed."""
        try:
            batch = await asyncio.wait_for(
                indexer.fetch_opportunities(chains), timeout=self._indexer_timeout
            )
        except Exception as e:
            logger.warning(
                "Indexer %s failed: %s", indexer.name, str(e) or type(e).__name__
            )
            return None
        return [replace(o, source=indexer.name) for o in batch]

    def _upsert(self, incoming: YieldOpportunity, is_primary: bool) -> None:
        key = incoming.key
        existing = self._records.get(key)

        if existing is not None:
            if key in self._from_primary and not is_primary:
                return
            if (
                existing.source == incoming.source
                and existing.updated_at > incoming.updated_at
            ):
                return
            incoming = replace(incoming, created_at=existing.created_at)
            if existing.id != incoming.id:
                self._ids.pop(existing.id, None)

        self._records[key] = incoming
        self._ids[incoming.id] = key
        if is_primary:
            self._from_primary.add(key)

        history = self._history.setdefault(key, [])
        if not history or history[-1].observed_at != incoming.updated_at:
            history.append(ApyObservation(incoming.updated_at, incoming.apy))

    def _active(self) -> tuple[YieldOpportunity, ...]:
        now = self._clock()
        return tuple(
            o for o in self._records.values() if not o.is_stale(now, self._freshness)
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_all_opportunities(
        self, force_refresh: bool = False
    ) -> tuple[YieldOpportunity, ...]:
        """Active opportunities, served from cache for the cache TTL."""
        opportunities = await self._cache.get_or_load(
            ALL_OPPORTUNITIES_KEY, self.refresh, force_refresh=force_refresh
        )
        now = self._clock()
        return tuple(o for o in opportunities if not o.is_stale(now, self._freshness))

    async def get_opportunities_by_chain(
        self, chain: str, force_refresh: bool = False
    ) -> tuple[YieldOpportunity, ...]:
        opportunities = await self.get_all_opportunities(force_refresh)
        return tuple(o for o in opportunities if o.chain == chain)

    def get_opportunity(self, opportunity_id: str) -> YieldOpportunity | None:
        """Look up any known record, stale or not."""
        key = self._ids.get(opportunity_id)
        return self._records.get(key) if key else None

    def get_apy_history(self, opportunity_id: str) -> tuple[ApyObservation, ...]:
        key = self._ids.get(opportunity_id)
        if key is None:
            return ()
        return tuple(self._history.get(key, ()))
