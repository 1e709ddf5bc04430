"""Transaction signer protocol — the holder's signing authority."""
from typing import Protocol

from ..models import Confirmation, Operation


class TransactionSigner(Protocol):
    """Submits operations on the holder's behalf and reports confirmations."""

    async def submit(self, operation: Operation) -> str:
        """Sign and broadcast ``operation``; return its transaction hash."""
        ...

    async def wait_for_confirmation(self, chain: str, tx_hash: str) -> Confirmation: ...
