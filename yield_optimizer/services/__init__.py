"""Service modules"""
from .catalog import OpportunityCatalog
from .execution import ExecutionOrchestrator
from .holdings import HoldingsScanner
from .pipeline import YieldPipeline
from .rebalance import RebalancePlanner
from .recommendation import RecommendationEngine
from .risk import RiskModel

__all__ = [
    "ExecutionOrchestrator",
    "HoldingsScanner",
    "OpportunityCatalog",
    "RebalancePlanner",
    "RecommendationEngine",
    "RiskModel",
    "YieldPipeline",
]
