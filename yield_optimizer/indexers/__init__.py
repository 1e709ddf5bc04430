"""Opportunity and position indexer backends."""
from .defillama import DefiLlamaIndexer, DefiLlamaPositionIndexer
from .static import StaticIndexer, StaticPositionIndexer

__all__ = [
    "DefiLlamaIndexer",
    "DefiLlamaPositionIndexer",
    "StaticIndexer",
    "StaticPositionIndexer",
]
