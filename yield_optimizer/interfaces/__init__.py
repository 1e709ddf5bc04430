"""Protocol interfaces for the yield optimizer."""
from .bridge import BridgeRouter
from .chain import ChainReader
from .indexer import OpportunityIndexer
from .positions import PositionIndexer
from .price_oracle import PriceOracle
from .signer import TransactionSigner

__all__ = [
    "BridgeRouter",
    "ChainReader",
    "OpportunityIndexer",
    "PositionIndexer",
    "PriceOracle",
    "TransactionSigner",
]
