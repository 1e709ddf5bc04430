"""Data models — all frozen (immutable)."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from .constants import RISK_LEVEL_RANK


class RiskLevel(str, Enum):
    """Ordinal risk label carried by an opportunity or a risk tolerance."""

    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"

    @property
    def rank(self) -> int:
        return RISK_LEVEL_RANK[self.value]

    @classmethod
    def parse(cls, value: str | RiskLevel) -> RiskLevel:
        """Case-insensitive lookup; raises ValueError on unknown labels."""
        if isinstance(value, RiskLevel):
            return value
        for level in cls:
            if level.value.lower() == str(value).strip().lower():
                return level
        raise ValueError(f"Unknown risk level '{value}'")


class RiskCategory(str, Enum):
    VERY_LOW = "Very Low"
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    VERY_HIGH = "Very High"


class StrategyType(str, Enum):
    LENDING = "lending"
    STAKING = "staking"
    LIQUIDITY = "liquidity"
    FARMING = "farming"


class RiskChange(str, Enum):
    INCREASED = "increased"
    DECREASED = "decreased"
    UNCHANGED = "unchanged"


class ActionStatus(str, Enum):
    """Per-action and per-receipt state. Transitions only move forward."""

    PENDING = "PENDING"
    CONFIRMING = "CONFIRMING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (ActionStatus.COMPLETED, ActionStatus.FAILED)


class OperationKind(str, Enum):
    APPROVE = "approve"
    WITHDRAW = "withdraw"
    SWAP = "swap"
    BRIDGE_OUT = "bridge_out"
    BRIDGE_IN = "bridge_in"
    DEPOSIT = "deposit"


# ---------------------------------------------------------------------------
# Holdings and opportunities
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Asset:
    """A single holding. ``protocol`` is None for an idle wallet balance."""

    symbol: str
    chain: str
    quantity: float
    value_usd: float
    protocol: str | None = None
    apy: float | None = None
    risk_score: float | None = None
    is_native: bool = False

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.chain, self.protocol or "", self.symbol)

    @property
    def in_wallet(self) -> bool:
        return self.protocol is None

    @property
    def unit_price(self) -> float:
        if self.quantity <= 0:
            return 0.0
        return self.value_usd / self.quantity

    @property
    def location(self) -> str:
        return f"{self.protocol or 'wallet'} on {self.chain}"


@dataclass(frozen=True)
class HoldingsSnapshot:
    """Result of one scan.

    ``failed_chains`` and ``failed_position_sources`` mark partial data.
    """

    address: str
    assets: tuple[Asset, ...]
    scanned_at: datetime
    failed_chains: tuple[str, ...] = ()
    cancelled: bool = False
    failed_position_sources: tuple[str, ...] = ()

    @property
    def total_value(self) -> float:
        return sum(a.value_usd for a in self.assets)

    @property
    def is_partial(self) -> bool:
        return bool(self.failed_chains or self.failed_position_sources) or self.cancelled


@dataclass(frozen=True)
class YieldOpportunity:
    """A catalogued place to deploy an asset for yield."""

    id: str
    name: str
    chain: str
    protocol: str
    asset_symbol: str
    apy: float
    tvl_usd: float
    risk_level: RiskLevel
    strategy_type: StrategyType
    verified: bool
    created_at: datetime
    updated_at: datetime
    min_deposit: float = 0.0
    max_deposit: float | None = None
    source: str = ""

    @property
    def key(self) -> tuple[str, str, str, str]:
        return (
            self.chain,
            self.protocol.lower(),
            self.asset_symbol.upper(),
            self.strategy_type.value,
        )

    def is_stale(self, now: datetime, max_age: timedelta) -> bool:
        return now - self.updated_at > max_age


# ---------------------------------------------------------------------------
# Risk
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RiskFactors:
    """Eight risk factors, each in [0, 10]."""

    protocol_risk: float
    audit_status: float
    impermanent_loss_risk: float
    liquidity_depth: float
    volatility_risk: float
    composability_risk: float
    regulatory_risk: float
    counterparty_risk: float


@dataclass(frozen=True)
class StressTestResults:
    """Estimated loss percentages under each scenario."""

    market_crash: float
    protocol_hack: float
    liquidity_crisis: float


@dataclass(frozen=True)
class ImpermanentLossEstimate:
    price_ratio: float
    loss_pct: float
    initial_value: float
    hold_value: float
    lp_value: float


@dataclass(frozen=True)
class RiskAssessment:
    opportunity: YieldOpportunity
    investment_amount: float
    factors: RiskFactors
    overall_risk_score: float
    risk_category: RiskCategory
    value_at_risk: float
    maximum_drawdown: float
    stress_tests: StressTestResults
    recommendation: str
    impermanent_loss: tuple[ImpermanentLossEstimate, ...] = ()


@dataclass(frozen=True)
class PortfolioRiskSummary:
    overall_risk_score: float
    risk_category: RiskCategory
    diversification_score: float
    concentration_risk: float
    correlation_risk: float
    value_at_risk: float


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OptimizationCriteria:
    risk_tolerance: RiskLevel = RiskLevel.MEDIUM
    prioritize_highest_yield: bool = True
    preferred_chains: tuple[str, ...] = ()
    preferred_assets: tuple[str, ...] = ()
    preferred_protocols: tuple[str, ...] = ()
    min_liquidity: float = 1_000_000.0
    max_slippage: float = 1.0
    min_apy: float = 0.0
    max_apy: float | None = None
    excluded_protocols: tuple[str, ...] = ()
    excluded_assets: tuple[str, ...] = ()


@dataclass(frozen=True)
class Recommendation:
    opportunity: YieldOpportunity
    score: float
    reasons: tuple[str, ...]
    estimated_annual_return: float
    estimated_annual_reward_usd: float
    optimizations: tuple[str, ...] = ()
    cross_chain: bool = False


@dataclass(frozen=True)
class RecommendationRiskSummary:
    average_risk: float
    diversification_score: float
    protocol_risk_score: float
    impermanent_loss_risk: float


@dataclass(frozen=True)
class OptimizationReport:
    address: str
    recommendations: tuple[Recommendation, ...]
    total_potential_yield: float
    total_current_yield: float
    potential_additional_yield: float
    risk_assessment: RecommendationRiskSummary
    holdings: tuple[Asset, ...] = ()
    failed_chains: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Rebalancing
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RebalancingAction:
    """Move ``value_to_move`` USD from one position to another."""

    from_asset: Asset
    to_asset: Asset
    amount_to_move: float
    value_to_move: float
    reason: str
    expected_apy_delta: float
    risk_change: RiskChange
    new_position: bool = False

    @property
    def cross_chain(self) -> bool:
        return self.from_asset.chain != self.to_asset.chain

    @property
    def label(self) -> str:
        return (
            f"{self.from_asset.symbol} ({self.from_asset.location}) -> "
            f"{self.to_asset.symbol} ({self.to_asset.location})"
        )


@dataclass(frozen=True)
class PortfolioSummary:
    assets: tuple[Asset, ...]
    total_value: float
    weighted_apy: float
    weighted_risk: float
    diversification_score: float


@dataclass(frozen=True)
class PortfolioRebalanceReport:
    current_portfolio: PortfolioSummary
    recommended_portfolio: PortfolioSummary
    actions: tuple[RebalancingAction, ...]
    potential_apy_increase: float
    potential_risk_change: float
    estimated_annual_yield_difference: float
    new_assets: tuple[Asset, ...] = ()


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BridgeOption:
    id: str
    name: str
    supported_chains: tuple[str, ...]
    supported_assets: tuple[str, ...]
    estimated_minutes: int
    fee_usd: float

    def supports(self, from_chain: str, to_chain: str, asset: str) -> bool:
        return (
            from_chain in self.supported_chains
            and to_chain in self.supported_chains
            and asset.upper() in self.supported_assets
        )


@dataclass(frozen=True)
class Operation:
    """One on-chain step of an action, handed to the signer."""

    kind: OperationKind
    chain: str
    asset: str
    amount: float
    sender: str
    counterparty: str
    bridge: BridgeOption | None = None
    destination_chain: str | None = None
    target_asset: str | None = None
    # Percent; set on swaps only.
    max_slippage: float | None = None


@dataclass(frozen=True)
class Confirmation:
    tx_hash: str
    success: bool
    confirmations: int = 1
    fee_usd: float = 0.0
    error: str = ""


@dataclass(frozen=True)
class ExecutionReceipt:
    tx_hash: str
    from_address: str
    to_address: str
    status: ActionStatus
    confirmations: int
    chain: str
    asset: str
    amount: float
    kind: OperationKind
    fee_usd: float
    explorer_url: str = ""


@dataclass(frozen=True)
class FailedAction:
    action: RebalancingAction
    reason: str
    requires_reconciliation: bool = False


@dataclass(frozen=True)
class CostEstimate:
    total_usd: float
    per_action: tuple[float, ...] = ()


@dataclass(frozen=True)
class RebalancingResult:
    transactions: tuple[ExecutionReceipt, ...]
    completed_actions: tuple[RebalancingAction, ...]
    failed_actions: tuple[FailedAction, ...]
    total_gas_fees: float
    time_elapsed: float
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return not self.failed_actions and not self.cancelled


@dataclass(frozen=True)
class ApyObservation:
    observed_at: datetime
    apy: float


@dataclass(frozen=True)
class RebalancePlan:
    """An optimization report together with the plan that realises it."""

    optimization: OptimizationReport
    rebalance: PortfolioRebalanceReport
    costs: CostEstimate
