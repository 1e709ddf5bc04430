"""Opportunity indexer protocol — pluggable yield data source."""
from typing import Protocol

from ..models import YieldOpportunity


class OpportunityIndexer(Protocol):
    """Abstract interface for a backend that lists yield opportunities."""

    @property
    def name(self) -> str: ...

    async def fetch_opportunities(
        self, chains: list[str]
    ) -> list[YieldOpportunity]: ...
