"""Scoring, weighting and fee constants.

Every tunable number used by the risk model, the recommendation engine,
the rebalance planner and the execution cost estimator lives here.
"""
from __future__ import annotations

# ---------------------------------------------------------------------------
# Caching / freshness
# ---------------------------------------------------------------------------

CACHE_TTL_SECONDS = 300
ALL_OPPORTUNITIES_KEY = "all_opportunities"
PORTFOLIO_KEY_PREFIX = "portfolio_"
DEFAULT_FRESHNESS_HOURS = 24
DEFAULT_CHAIN_TIMEOUT = 15.0
DEFAULT_INDEXER_TIMEOUT = 20.0

# ---------------------------------------------------------------------------
# Risk model
# ---------------------------------------------------------------------------

# Weights sum to 1. Audit status and liquidity depth are inverted before
# weighting (higher raw value = lower risk).
RISK_WEIGHTS: dict[str, float] = {
    "protocol_risk": 0.20,
    "audit_status": 0.15,
    "impermanent_loss_risk": 0.15,
    "liquidity_depth": 0.10,
    "volatility_risk": 0.15,
    "composability_risk": 0.10,
    "regulatory_risk": 0.05,
    "counterparty_risk": 0.10,
}
INVERTED_FACTORS = frozenset({"audit_status", "liquidity_depth"})

# Upper bounds (exclusive) of each risk category; anything above is Very High.
RISK_CATEGORY_THRESHOLDS: tuple[tuple[float, str], ...] = (
    (2.0, "Very Low"),
    (4.0, "Low"),
    (6.0, "Medium"),
    (8.0, "High"),
)

DEFAULT_AUDIT_SCORE = 5.0
DEFAULT_PROTOCOL_TVL = 1_000_000.0
DEFAULT_LIQUIDITY_TVL = 100_000.0

IMPERMANENT_LOSS_RISK = {"liquidity": 7.0, "farming": 4.0}
COMPOSABILITY_RISK = {"farming": 6.0, "liquidity": 5.0}
DEFAULT_COMPOSABILITY_RISK = 3.0
COUNTERPARTY_RISK = {"lending": 6.0}
DEFAULT_COUNTERPARTY_RISK = 4.0

STABLE_VOLATILITY = 2.0
LIQUIDITY_VOLATILITY = 8.0
NATIVE_VOLATILITY = 6.0
DEFAULT_VOLATILITY = 5.0
STABLE_MARKERS = ("USD", "DAI")

REGULATORY_BASE = 5.0
REGULATORY_ADJUSTMENTS = {"lending": 1.0, "staking": -1.0}
REGULATORY_LOW_CHAIN_ADJUSTMENT = -1.0
REGULATORY_STABLE_ADJUSTMENT = 2.0

# Value-at-risk heuristic: amount * (score / 20 * multiplier) * z.
# Not a calibrated model; z is the 95% one-tailed normal quantile.
VAR_CONFIDENCE_MULTIPLIER = 1.65
VAR_SCORE_DIVISOR = 20.0
VAR_STRATEGY_MULTIPLIER = {"liquidity": 1.5, "farming": 1.3}

DRAWDOWN_PER_POINT = 3.0
DRAWDOWN_STRATEGY_MULTIPLIER = {"liquidity": 1.5, "lending": 0.8}
MAX_DRAWDOWN_CAP = 90.0

MARKET_CRASH_LOSS = {"liquidity": 70.0, "farming": 60.0, "lending": 40.0}
DEFAULT_MARKET_CRASH_LOSS = 50.0
PROTOCOL_HACK_BASE = 30.0
PROTOCOL_HACK_PER_POINT = 7.0
LIQUIDITY_CRISIS_BASE = 20.0
LIQUIDITY_CRISIS_PER_POINT = 8.0

IMPERMANENT_LOSS_PRICE_RATIOS = (0.5, 0.75, 1.25, 1.5, 2.0, 3.0)

# Protocol positions with no known score.
DEFAULT_ASSET_RISK = 5.0
# Idle wallet balances carry no protocol, liquidity or counterparty exposure;
# only the asset itself (volatility) and its regulatory profile count.
WALLET_AUDIT_STATUS = 10.0
WALLET_LIQUIDITY_DEPTH = 10.0
DEFAULT_INVESTMENT_AMOUNT = 10_000.0

# Portfolio diversification: points per distinct chain/protocol/asset.
DIVERSIFICATION_POINTS = {"chains": 15.0, "protocols": 10.0, "assets": 5.0}
DIVERSIFICATION_CAP = 100.0
CORRELATION_BASE = 5.0
CORRELATION_MAX_REDUCTION = 4.0

# Recommended-set summary
RECOMMENDATION_DIVERSITY_WEIGHTS = {"chains": 0.4, "protocols": 0.4, "strategies": 0.2}
RECOMMENDATION_DIVERSITY_TARGETS = {"chains": 3, "protocols": 4, "strategies": 3}
UNVERIFIED_PROTOCOL_RISK = 2.0
PROTOCOL_RISK_SCALE = 50.0

# ---------------------------------------------------------------------------
# Recommendation engine
# ---------------------------------------------------------------------------

RISK_LEVEL_RANK = {"Low": 1, "Medium": 2, "High": 3}

SCORE_HELD_SAME_CHAIN = 100.0
SCORE_HELD_OTHER_CHAIN = 20.0
SCORE_NOT_HELD = 5.0
SCORE_APY_MULTIPLIER = 5.0
SCORE_RISK_MATCH = 50.0
SCORE_RISK_GAP_PENALTY = 20.0
SCORE_RISK_EXCESS_PENALTY = 50.0
SCORE_PREFERRED_CHAIN = 30.0
SCORE_PREFERRED_PROTOCOL = 20.0
SCORE_PREFERRED_ASSET = 15.0
SCORE_VERIFIED = 25.0
SCORE_LOW_LIQUIDITY_PENALTY = 40.0

HIGH_APY_REASON_THRESHOLD = 15.0
GOOD_RISK_REWARD_APY = 10.0
TOP_RECOMMENDATIONS = 5
POTENTIAL_YIELD_SAMPLE = 3

DEFAULT_MIN_LIQUIDITY = 1_000_000.0
DEFAULT_MAX_SLIPPAGE = 1.0

# Share of portfolio value given to the first, second, ... recommendation.
TARGET_ALLOCATION_WEIGHTS = (0.40, 0.30, 0.20, 0.10)

# ---------------------------------------------------------------------------
# Rebalance planner
# ---------------------------------------------------------------------------

RISK_CHANGE_DEAD_ZONE = 0.5
MIN_REBALANCE_VALUE = 0.01
PORTFOLIO_DIVERSITY_WEIGHTS = {
    "assets": (5, 0.30),
    "chains": (3, 0.25),
    "protocols": (4, 0.25),
}
PORTFOLIO_CONCENTRATION_WEIGHT = 0.20

# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

DEFAULT_BASE_FEE = 0.1
SWAP_FEE_MULTIPLIER = 1.5
PROTOCOL_CHANGE_FEE_MULTIPLIER = 1.0
DEFAULT_BRIDGE_FEE = 1.0
WITHDRAW_SURCHARGE = 0.3
DEPOSIT_SURCHARGE = 0.3
DEFAULT_CONFIRMATION_TIMEOUT = 120.0
# Spender named on approvals that precede a swap.
SWAP_ROUTER = "DEX Router"
