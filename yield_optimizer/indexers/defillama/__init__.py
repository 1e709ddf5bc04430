from .adapter import DefiLlamaIndexer
from .positions import DefiLlamaPositionIndexer

__all__ = ["DefiLlamaIndexer", "DefiLlamaPositionIndexer"]
