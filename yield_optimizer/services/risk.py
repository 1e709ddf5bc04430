"""Risk model — multi-factor opportunity scoring and portfolio aggregates.

Every formula here is deterministic. The value-at-risk and drawdown
figures are heuristics driven by the weighted risk score; they are not
calibrated against historical returns.
"""
from __future__ import annotations

import logging
import math
from collections.abc import Iterable, Sequence

from .. import constants as c
from ..models import (
    Asset,
    ImpermanentLossEstimate,
    PortfolioRiskSummary,
    Recommendation,
    RecommendationRiskSummary,
    RiskAssessment,
    RiskCategory,
    RiskFactors,
    StrategyType,
    StressTestResults,
    YieldOpportunity,
)

logger = logging.getLogger(__name__)


def _clamp(value: float, low: float = 0.0, high: float = 10.0) -> float:
    return max(low, min(high, value))


def is_stable(symbol: str) -> bool:
    upper = symbol.upper()
    return any(marker in upper for marker in c.STABLE_MARKERS)


def overall_risk_score(factors: RiskFactors) -> float:
    """Weighted sum of the eight factors, rounded to one decimal."""
    total = 0.0
    for name, weight in c.RISK_WEIGHTS.items():
        value = getattr(factors, name)
        if name in c.INVERTED_FACTORS:
            value = 10.0 - value
        total += weight * value
    return round(total, 1)


def risk_category(score: float) -> RiskCategory:
    for upper_bound, label in c.RISK_CATEGORY_THRESHOLDS:
        if score < upper_bound:
            return RiskCategory(label)
    return RiskCategory.VERY_HIGH


def impermanent_loss(price_ratio: float) -> float:
    """Fractional loss of a 50/50 LP position versus holding.

    IL = 2 * sqrt(r) / (1 + r) - 1, always <= 0.
    """
    return 2 * math.sqrt(price_ratio) / (1 + price_ratio) - 1


class RiskModel:
    """Score opportunities and portfolios.

    Args:
        audit_scores: Protocol name (lower-case) → audit score in [0, 10].
        low_regulatory_chains: Chains that get a regulatory-risk discount.
        native_symbols: Chain-native asset symbols, treated as volatile.
    """

    def __init__(
        self,
        audit_scores: dict[str, float] | None = None,
        low_regulatory_chains: Iterable[str] = (),
        native_symbols: Iterable[str] = (),
    ) -> None:
        self._audit_scores = {k.lower(): v for k, v in (audit_scores or {}).items()}
        self._low_regulatory_chains = set(low_regulatory_chains)
        self._native_symbols = {s.upper() for s in native_symbols}

    # ------------------------------------------------------------------
    # Factors
    # ------------------------------------------------------------------

    def factors(self, opportunity: YieldOpportunity) -> RiskFactors:
        strategy = opportunity.strategy_type.value
        return RiskFactors(
            protocol_risk=_clamp(
                10 - min(10.0, math.log10(opportunity.tvl_usd or c.DEFAULT_PROTOCOL_TVL) / 2)
            ),
            audit_status=_clamp(self.audit_score(opportunity.protocol)),
            impermanent_loss_risk=c.IMPERMANENT_LOSS_RISK.get(strategy, 0.0),
            liquidity_depth=_clamp(
                math.log10(opportunity.tvl_usd or c.DEFAULT_LIQUIDITY_TVL) / 2
            ),
            volatility_risk=self._volatility_risk(opportunity),
            composability_risk=c.COMPOSABILITY_RISK.get(
                strategy, c.DEFAULT_COMPOSABILITY_RISK
            ),
            regulatory_risk=self._regulatory_risk(opportunity),
            counterparty_risk=c.COUNTERPARTY_RISK.get(
                strategy, c.DEFAULT_COUNTERPARTY_RISK
            ),
        )

    def audit_score(self, protocol: str) -> float:
        return self._audit_scores.get(protocol.lower(), c.DEFAULT_AUDIT_SCORE)

    def wallet_factors(self, asset: Asset) -> RiskFactors:
        """Factors for an idle wallet balance: asset and regulatory risk only."""
        return RiskFactors(
            protocol_risk=0.0,
            audit_status=c.WALLET_AUDIT_STATUS,
            impermanent_loss_risk=0.0,
            liquidity_depth=c.WALLET_LIQUIDITY_DEPTH,
            volatility_risk=self._symbol_volatility(asset.symbol, asset.is_native),
            composability_risk=0.0,
            regulatory_risk=self._regulatory_base(asset.chain, asset.symbol),
            counterparty_risk=0.0,
        )

    def _volatility_risk(self, opportunity: YieldOpportunity) -> float:
        if (
            opportunity.strategy_type is StrategyType.LIQUIDITY
            and not is_stable(opportunity.asset_symbol)
        ):
            return c.LIQUIDITY_VOLATILITY
        return self._symbol_volatility(opportunity.asset_symbol)

    def _symbol_volatility(self, symbol: str, is_native: bool = False) -> float:
        if is_stable(symbol):
            return c.STABLE_VOLATILITY
        if is_native or symbol.upper() in self._native_symbols:
            return c.NATIVE_VOLATILITY
        return c.DEFAULT_VOLATILITY

    def _regulatory_risk(self, opportunity: YieldOpportunity) -> float:
        risk = self._regulatory_base(opportunity.chain, opportunity.asset_symbol)
        risk += c.REGULATORY_ADJUSTMENTS.get(opportunity.strategy_type.value, 0.0)
        return _clamp(risk, 1.0, 10.0)

    def _regulatory_base(self, chain: str, symbol: str) -> float:
        risk = c.REGULATORY_BASE
        if chain in self._low_regulatory_chains:
            risk += c.REGULATORY_LOW_CHAIN_ADJUSTMENT
        if is_stable(symbol):
            risk += c.REGULATORY_STABLE_ADJUSTMENT
        return _clamp(risk, 1.0, 10.0)

    # ------------------------------------------------------------------
    # Opportunity assessment
    # ------------------------------------------------------------------

    def assess(
        self,
        opportunity: YieldOpportunity,
        investment_amount: float = c.DEFAULT_INVESTMENT_AMOUNT,
    ) -> RiskAssessment:
        """Full risk assessment for one opportunity at a given position size."""
        factors = self.factors(opportunity)
        score = overall_risk_score(factors)
        category = risk_category(score)
        strategy = opportunity.strategy_type.value

        volatility_proxy = (score / c.VAR_SCORE_DIVISOR) * c.VAR_STRATEGY_MULTIPLIER.get(
            strategy, 1.0
        )
        value_at_risk = round(
            investment_amount * volatility_proxy * c.VAR_CONFIDENCE_MULTIPLIER
        )

        drawdown = score * c.DRAWDOWN_PER_POINT * c.DRAWDOWN_STRATEGY_MULTIPLIER.get(
            strategy, 1.0
        )

        il_estimates: tuple[ImpermanentLossEstimate, ...] = ()
        if opportunity.strategy_type is StrategyType.LIQUIDITY:
            il_estimates = self.impermanent_loss_estimates(investment_amount)

        return RiskAssessment(
            opportunity=opportunity,
            investment_amount=investment_amount,
            factors=factors,
            overall_risk_score=score,
            risk_category=category,
            value_at_risk=value_at_risk,
            maximum_drawdown=min(c.MAX_DRAWDOWN_CAP, round(drawdown)),
            stress_tests=self._stress_tests(opportunity, factors),
            recommendation=self._recommendation_text(opportunity, score, category),
            impermanent_loss=il_estimates,
        )

    @staticmethod
    def _stress_tests(
        opportunity: YieldOpportunity, factors: RiskFactors
    ) -> StressTestResults:
        market_crash = c.MARKET_CRASH_LOSS.get(
            opportunity.strategy_type.value, c.DEFAULT_MARKET_CRASH_LOSS
        )
        protocol_hack = c.PROTOCOL_HACK_BASE + (
            10 - factors.audit_status
        ) * c.PROTOCOL_HACK_PER_POINT
        liquidity_crisis = c.LIQUIDITY_CRISIS_BASE + (
            10 - factors.liquidity_depth
        ) * c.LIQUIDITY_CRISIS_PER_POINT
        return StressTestResults(
            market_crash=min(100.0, market_crash),
            protocol_hack=round(min(100.0, protocol_hack), 1),
            liquidity_crisis=round(min(100.0, liquidity_crisis), 1),
        )

    @staticmethod
    def impermanent_loss_estimates(
        initial_value: float,
    ) -> tuple[ImpermanentLossEstimate, ...]:
        estimates: list[ImpermanentLossEstimate] = []
        for ratio in c.IMPERMANENT_LOSS_PRICE_RATIOS:
            loss = impermanent_loss(ratio)
            hold_value = initial_value * (1 + ratio) / 2
            estimates.append(
                ImpermanentLossEstimate(
                    price_ratio=ratio,
                    loss_pct=round(loss * 100, 2),
                    initial_value=initial_value,
                    hold_value=round(hold_value, 2),
                    lp_value=round(hold_value * (1 + loss), 2),
                )
            )
        return tuple(estimates)

    @staticmethod
    def _recommendation_text(
        opportunity: YieldOpportunity, score: float, category: RiskCategory
    ) -> str:
        strategy = opportunity.strategy_type.value
        if category in (RiskCategory.VERY_LOW, RiskCategory.LOW):
            return (
                f"This {strategy} opportunity has a {category.value.lower()} risk "
                f"profile ({score}/10) and could suit conservative investors. "
                f"Consider allocating up to 20% of your portfolio."
            )
        if category is RiskCategory.MEDIUM:
            return (
                f"This {strategy} opportunity has a medium risk profile "
                f"({score}/10). Consider limiting exposure to 10-15% of your portfolio."
            )
        if category is RiskCategory.HIGH:
            return (
                f"This {strategy} opportunity has a high risk profile ({score}/10). "
                f"Consider limiting exposure to 5-10% of your portfolio and monitor closely."
            )
        return (
            f"This {strategy} opportunity has a very high risk profile ({score}/10). "
            f"Consider limiting exposure to less than 5% of your portfolio."
        )

    # ------------------------------------------------------------------
    # Portfolio assessment
    # ------------------------------------------------------------------

    def asset_risk(self, asset: Asset) -> float:
        """Known score, else wallet factors for idle balances, else the default."""
        if asset.risk_score is not None:
            return asset.risk_score
        if asset.in_wallet:
            return overall_risk_score(self.wallet_factors(asset))
        return c.DEFAULT_ASSET_RISK

    def assess_portfolio(self, assets: Sequence[Asset]) -> PortfolioRiskSummary:
        """Aggregate risk for a set of holdings. Empty input scores zero."""
        if not assets:
            return PortfolioRiskSummary(
                overall_risk_score=0.0,
                risk_category=RiskCategory.VERY_LOW,
                diversification_score=0.0,
                concentration_risk=0.0,
                correlation_risk=0.0,
                value_at_risk=0.0,
            )

        shares = _value_shares(assets)
        total_value = sum(a.value_usd for a in assets)
        weighted_risk = sum(
            self.asset_risk(a) * share for a, share in zip(assets, shares)
        )

        chains = len({a.chain for a in assets})
        protocols = len({a.protocol or "" for a in assets})
        symbols = len({a.symbol for a in assets})

        points = c.DIVERSIFICATION_POINTS
        diversification = min(
            c.DIVERSIFICATION_CAP,
            chains * points["chains"]
            + protocols * points["protocols"]
            + symbols * points["assets"],
        )
        concentration = sum(share * share for share in shares) * 10
        correlation = c.CORRELATION_BASE - min(
            c.CORRELATION_MAX_REDUCTION, chains + protocols / 4
        )

        return PortfolioRiskSummary(
            overall_risk_score=round(weighted_risk, 1),
            risk_category=risk_category(weighted_risk),
            diversification_score=float(round(diversification)),
            concentration_risk=round(concentration, 1),
            correlation_risk=round(correlation, 1),
            value_at_risk=float(round(total_value * weighted_risk / 100)),
        )

    @staticmethod
    def assess_recommendations(
        recommendations: Sequence[Recommendation],
    ) -> RecommendationRiskSummary:
        """Risk profile of a recommended set (not the whole catalog)."""
        if not recommendations:
            return RecommendationRiskSummary(0.0, 0.0, 0.0, 0.0)

        n = len(recommendations)
        opportunities = [r.opportunity for r in recommendations]
        average_risk = sum(o.risk_level.rank for o in opportunities) / n

        weights = c.RECOMMENDATION_DIVERSITY_WEIGHTS
        targets = c.RECOMMENDATION_DIVERSITY_TARGETS
        distinct = {
            "chains": len({o.chain for o in opportunities}),
            "protocols": len({o.protocol for o in opportunities}),
            "strategies": len({o.strategy_type for o in opportunities}),
        }
        diversification = sum(
            distinct[name] / min(n, targets[name]) * weights[name] for name in weights
        ) * 100

        protocol_risk = (
            sum(0.0 if o.verified else c.UNVERIFIED_PROTOCOL_RISK for o in opportunities)
            / n
            * c.PROTOCOL_RISK_SCALE
        )
        il_exposed = sum(
            1
            for o in opportunities
            if o.strategy_type in (StrategyType.LIQUIDITY, StrategyType.FARMING)
        )

        return RecommendationRiskSummary(
            average_risk=round(average_risk, 2),
            diversification_score=round(min(100.0, diversification), 1),
            protocol_risk_score=round(protocol_risk, 1),
            impermanent_loss_risk=round(il_exposed / n * 100, 1),
        )


def _value_shares(assets: Sequence[Asset]) -> list[float]:
    """Value share of each asset; equal shares when nothing has a value."""
    total = sum(a.value_usd for a in assets)
    if total <= 0:
        return [1 / len(assets)] * len(assets)
    return [a.value_usd / total for a in assets]
