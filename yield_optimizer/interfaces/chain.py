"""Chain reader protocol — read-only balance access for one network."""
from typing import Protocol


class ChainReader(Protocol):
    """Abstract interface for reading raw balances from a chain."""

    async def get_native_balance(self, address: str) -> int: ...

    async def get_token_balance(self, token_address: str, address: str) -> int: ...
