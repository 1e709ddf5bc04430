"""Static table of supported networks."""
from __future__ import annotations

from collections.abc import Iterable, Iterator

from ..config import ChainConfig, TokenConfig


class ChainRegistry:
    """Read-only lookup of configured chains, keyed by chain key."""

    def __init__(self, chains: Iterable[ChainConfig]) -> None:
        self._chains: dict[str, ChainConfig] = {c.key: c for c in chains}

    @classmethod
    def from_config(cls, chains: dict[str, ChainConfig]) -> ChainRegistry:
        return cls(chains.values())

    def __iter__(self) -> Iterator[ChainConfig]:
        return iter(self._chains.values())

    def __len__(self) -> int:
        return len(self._chains)

    def __contains__(self, key: object) -> bool:
        return key in self._chains

    def keys(self) -> list[str]:
        return list(self._chains)

    def get(self, key: str) -> ChainConfig:
        try:
            return self._chains[key]
        except KeyError:
            raise KeyError(f"Unknown chain '{key}'") from None

    def display_name(self, key: str) -> str:
        chain = self._chains.get(key)
        return chain.name if chain else key

    def native_symbols(self) -> set[str]:
        return {c.native_symbol for c in self._chains.values()}

    def is_native(self, key: str, symbol: str) -> bool:
        chain = self._chains.get(key)
        return chain is not None and chain.native_symbol == symbol.upper()

    def token(self, key: str, symbol: str) -> TokenConfig | None:
        for token in self.get(key).tokens:
            if token.symbol == symbol.upper():
                return token
        return None

    def tracked_symbols(self) -> list[str]:
        """Every native and token symbol across all chains, sorted."""
        symbols: set[str] = set()
        for chain in self._chains.values():
            symbols.add(chain.native_symbol)
            symbols.update(t.symbol for t in chain.tokens)
        return sorted(symbols)

    def explorer_tx_url(self, key: str, tx_hash: str) -> str:
        chain = self._chains.get(key)
        if not chain or not chain.explorer_url:
            return ""
        return f"{chain.explorer_url}/tx/{tx_hash}"
