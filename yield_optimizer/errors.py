"""Exceptions raised by the optimizer."""
from __future__ import annotations


class CriteriaValidationError(ValueError):
    """Optimization criteria were rejected before any network call."""


class NoRouteError(LookupError):
    """No bridge supports the requested chain pair and asset."""

    def __init__(self, from_chain: str, to_chain: str, asset: str) -> None:
        super().__init__(
            f"No bridge route from {from_chain} to {to_chain} for {asset}"
        )
        self.from_chain = from_chain
        self.to_chain = to_chain
        self.asset = asset
