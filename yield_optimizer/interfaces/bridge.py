"""Bridge router protocol — destination-side view of a bridge transfer."""
from typing import Protocol

from ..models import BridgeOption, Confirmation, Operation


class BridgeRouter(Protocol):
    """Tracks a bridge transfer until funds arrive on the destination chain."""

    async def await_arrival(
        self, bridge: BridgeOption, operation: Operation, source_tx_hash: str
    ) -> Confirmation: ...
