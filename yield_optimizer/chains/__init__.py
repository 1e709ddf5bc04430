"""Chain registry and chain readers."""
from .registry import ChainRegistry

__all__ = ["ChainRegistry"]
