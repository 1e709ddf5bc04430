"""Position indexer protocol — discovers a holder's deployed positions."""
from typing import Protocol

from ..models import Asset


class PositionIndexer(Protocol):
    """Abstract interface for a backend that lists protocol positions.

    Returned assets carry ``protocol`` and, where known, ``apy`` and
    ``risk_score``. ``value_usd`` may be zero; the scanner values positions
    with oracle prices.
    """

    @property
    def name(self) -> str: ...

    async def fetch_positions(self, address: str, chains: list[str]) -> list[Asset]: ...
