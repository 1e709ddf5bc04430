"""Recommendation engine — scores opportunities against holdings and preferences."""
from __future__ import annotations

import asyncio
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, replace

from .. import constants as c
from ..chains.registry import ChainRegistry
from ..errors import CriteriaValidationError
from ..models import (
    Asset,
    OptimizationCriteria,
    OptimizationReport,
    Recommendation,
    RiskLevel,
    StrategyType,
    YieldOpportunity,
)
from .catalog import OpportunityCatalog
from .holdings import HoldingsScanner
from .risk import RiskModel

logger = logging.getLogger(__name__)


def validate_criteria(criteria: OptimizationCriteria) -> OptimizationCriteria:
    """Reject malformed criteria. Returns criteria with a parsed risk tolerance."""
    try:
        tolerance = RiskLevel.parse(criteria.risk_tolerance)
    except ValueError as e:
        raise CriteriaValidationError(str(e)) from None

    numbers = {
        "min_liquidity": criteria.min_liquidity,
        "max_slippage": criteria.max_slippage,
        "min_apy": criteria.min_apy,
    }
    if criteria.max_apy is not None:
        numbers["max_apy"] = criteria.max_apy
    for name, value in numbers.items():
        if not isinstance(value, (int, float)) or math.isnan(value):
            raise CriteriaValidationError(f"{name} must be a number, got {value!r}")
        if value < 0:
            raise CriteriaValidationError(f"{name} must not be negative, got {value}")

    if criteria.max_slippage > 100:
        raise CriteriaValidationError(
            f"max_slippage is a percentage in [0, 100], got {criteria.max_slippage}"
        )
    if criteria.max_apy is not None and criteria.max_apy < criteria.min_apy:
        raise CriteriaValidationError(
            f"max_apy {criteria.max_apy} is below min_apy {criteria.min_apy}"
        )

    if tolerance is criteria.risk_tolerance:
        return criteria
    return replace(criteria, risk_tolerance=tolerance)


@dataclass(frozen=True)
class ScoreBreakdown:
    value: float
    reasons: tuple[str, ...]


class RecommendationEngine:
    """Rank catalog opportunities for a holder.

    Zero-score opportunities are dropped before ranking; the highest
    ``top_n`` of the rest become recommendations.
    """

    def __init__(
        self,
        scanner: HoldingsScanner,
        catalog: OpportunityCatalog,
        risk_model: RiskModel,
        registry: ChainRegistry,
        default_criteria: OptimizationCriteria | None = None,
        top_n: int = c.TOP_RECOMMENDATIONS,
    ) -> None:
        self._scanner = scanner
        self._catalog = catalog
        self._risk_model = risk_model
        self._registry = registry
        self._default_criteria = default_criteria or OptimizationCriteria()
        self._top_n = top_n

    async def optimize(
        self,
        address: str,
        criteria: OptimizationCriteria | None = None,
        force_refresh: bool = False,
    ) -> OptimizationReport:
        """Build an optimization report for ``address``.

        Raises:
            CriteriaValidationError: before any network call, when criteria
                are malformed.
        """
        criteria = validate_criteria(criteria or self._default_criteria)

        snapshot, opportunities = await asyncio.gather(
            self._scanner.scan(address, force_refresh=force_refresh),
            self._catalog.get_all_opportunities(force_refresh=force_refresh),
        )
        holdings = snapshot.assets

        recommendations = self.rank(opportunities, holdings, criteria)
        total_potential = self.total_potential_yield(recommendations)
        total_current = self.current_yield(holdings)

        logger.info(
            "%d recommendations for %s (potential %.2f%% vs current %.2f%%)",
            len(recommendations),
            address,
            total_potential,
            total_current,
        )
        return OptimizationReport(
            address=address,
            recommendations=recommendations,
            total_potential_yield=total_potential,
            total_current_yield=total_current,
            potential_additional_yield=round(total_potential - total_current, 4),
            risk_assessment=self._risk_model.assess_recommendations(recommendations),
            holdings=holdings,
            failed_chains=snapshot.failed_chains,
        )

    # ------------------------------------------------------------------
    # Ranking
    # ------------------------------------------------------------------

    def rank(
        self,
        opportunities: Sequence[YieldOpportunity],
        holdings: Sequence[Asset],
        criteria: OptimizationCriteria,
    ) -> tuple[Recommendation, ...]:
        candidates = [o for o in opportunities if self._passes_filters(o, criteria)]
        scored = [self.recommend(o, holdings, criteria) for o in candidates]
        scored = [r for r in scored if r.score > 0]
        scored.sort(key=lambda r: (-r.score, -r.opportunity.apy, r.opportunity.id))
        return tuple(scored[: self._top_n])

    @staticmethod
    def _passes_filters(
        opportunity: YieldOpportunity, criteria: OptimizationCriteria
    ) -> bool:
        excluded_protocols = {p.lower() for p in criteria.excluded_protocols}
        excluded_assets = {a.upper() for a in criteria.excluded_assets}
        if opportunity.protocol.lower() in excluded_protocols:
            return False
        if opportunity.asset_symbol.upper() in excluded_assets:
            return False
        if criteria.max_apy is not None and opportunity.apy > criteria.max_apy:
            return False
        return opportunity.apy >= criteria.min_apy

    def recommend(
        self,
        opportunity: YieldOpportunity,
        holdings: Sequence[Asset],
        criteria: OptimizationCriteria,
    ) -> Recommendation:
        symbol = opportunity.asset_symbol.upper()
        same_chain = [
            a for a in holdings
            if a.symbol.upper() == symbol and a.chain == opportunity.chain
        ]
        other_chains = [
            a for a in holdings
            if a.symbol.upper() == symbol and a.chain != opportunity.chain
        ]

        score = self.score(opportunity, holdings, criteria)
        reward = sum(a.value_usd for a in same_chain) * opportunity.apy / 100

        return Recommendation(
            opportunity=opportunity,
            score=score.value,
            reasons=score.reasons,
            estimated_annual_return=opportunity.apy,
            estimated_annual_reward_usd=round(reward, 2),
            optimizations=self._optimizations(opportunity, other_chains),
            cross_chain=not same_chain and bool(other_chains),
        )

    def score(
        self,
        opportunity: YieldOpportunity,
        holdings: Sequence[Asset],
        criteria: OptimizationCriteria,
    ) -> ScoreBreakdown:
        """Score one opportunity. The result is never negative."""
        reasons: list[str] = []
        score = 0.0
        symbol = opportunity.asset_symbol.upper()
        chain_name = self._registry.display_name(opportunity.chain)

        same_chain_value = sum(
            a.value_usd for a in holdings
            if a.symbol.upper() == symbol and a.chain == opportunity.chain
        )
        held_elsewhere = any(
            a.symbol.upper() == symbol and a.chain != opportunity.chain
            for a in holdings
        )
        held_here = any(
            a.symbol.upper() == symbol and a.chain == opportunity.chain
            for a in holdings
        )

        if held_here:
            score += c.SCORE_HELD_SAME_CHAIN
            reasons.append(
                f"You have ${same_chain_value:,.2f} USD in {symbol} on {chain_name}"
            )
        elif held_elsewhere:
            score += c.SCORE_HELD_OTHER_CHAIN
            reasons.append(
                f"Cross-chain opportunity: you have {symbol} on another chain "
                f"that could be transferred to {chain_name}"
            )
        else:
            score += c.SCORE_NOT_HELD
            reasons.append(f"You don't currently hold {symbol}")

        if criteria.prioritize_highest_yield:
            score += opportunity.apy * c.SCORE_APY_MULTIPLIER
            if opportunity.apy > c.HIGH_APY_REASON_THRESHOLD:
                reasons.append(f"High APY of {opportunity.apy:.2f}%")

        tolerance = RiskLevel.parse(criteria.risk_tolerance).rank
        risk = opportunity.risk_level.rank
        if risk <= tolerance:
            score += c.SCORE_RISK_MATCH - c.SCORE_RISK_GAP_PENALTY * (tolerance - risk)
            reasons.append(
                f"Risk level ({opportunity.risk_level.value}) matches your risk tolerance"
            )
        else:
            score -= c.SCORE_RISK_EXCESS_PENALTY * (risk - tolerance)
            reasons.append(
                f"Risk level ({opportunity.risk_level.value}) is higher than your "
                f"risk tolerance"
            )

        if opportunity.chain.lower() in {p.lower() for p in criteria.preferred_chains}:
            score += c.SCORE_PREFERRED_CHAIN
            reasons.append(f"{chain_name} is among your preferred chains")

        preferred_protocols = {p.lower() for p in criteria.preferred_protocols}
        if opportunity.protocol.lower() in preferred_protocols:
            score += c.SCORE_PREFERRED_PROTOCOL
            reasons.append(f"{opportunity.protocol} is among your preferred protocols")

        if symbol in {a.upper() for a in criteria.preferred_assets}:
            score += c.SCORE_PREFERRED_ASSET
            reasons.append(f"{symbol} is among your preferred assets")

        if opportunity.tvl_usd < criteria.min_liquidity:
            score -= c.SCORE_LOW_LIQUIDITY_PENALTY
            reasons.append(f"Low liquidity (${opportunity.tvl_usd:,.0f} USD TVL)")

        if opportunity.verified:
            score += c.SCORE_VERIFIED
            reasons.append("Verified protocol with security audits")

        return ScoreBreakdown(value=max(0.0, round(score, 2)), reasons=tuple(reasons))

    def _optimizations(
        self, opportunity: YieldOpportunity, other_chains: Sequence[Asset]
    ) -> tuple[str, ...]:
        optimizations: list[str] = []
        target = self._registry.display_name(opportunity.chain)
        for chain in sorted({a.chain for a in other_chains}):
            optimizations.append(
                f"Transfer {opportunity.asset_symbol} from "
                f"{self._registry.display_name(chain)} to {target} for higher yield"
            )

        if opportunity.strategy_type in (StrategyType.LIQUIDITY, StrategyType.FARMING):
            optimizations.append("Consider impermanent loss risks with this strategy")

        if (
            opportunity.risk_level is RiskLevel.LOW
            and opportunity.apy > c.GOOD_RISK_REWARD_APY
        ):
            optimizations.append("Good risk-to-reward ratio compared to alternatives")
        return tuple(optimizations)

    # ------------------------------------------------------------------
    # Yield aggregates
    # ------------------------------------------------------------------

    @staticmethod
    def total_potential_yield(recommendations: Sequence[Recommendation]) -> float:
        """Equal-weighted mean APY of the top three recommendations.

        A deliberate simplification: it ignores position sizes and is not
        the result of an allocation optimisation.
        """
        top = recommendations[: c.POTENTIAL_YIELD_SAMPLE]
        if not top:
            return 0.0
        return round(sum(r.opportunity.apy for r in top) / len(top), 4)

    @staticmethod
    def current_yield(holdings: Sequence[Asset]) -> float:
        """Value-weighted APY of current holdings; idle balances earn 0%."""
        total = sum(a.value_usd for a in holdings)
        if total <= 0:
            return 0.0
        earning = sum(a.value_usd * (a.apy or 0.0) for a in holdings)
        return round(earning / total, 4)

    # ------------------------------------------------------------------
    # Target allocation
    # ------------------------------------------------------------------

    def build_target_allocation(
        self,
        holdings: Sequence[Asset],
        recommendations: Sequence[Recommendation],
        prices: dict[str, float] | None = None,
    ) -> tuple[Asset, ...]:
        """Spread the portfolio value over the top recommendations.

        Weights come from ``TARGET_ALLOCATION_WEIGHTS`` (40/30/20/10) and are
        renormalised when fewer recommendations are available. With no
        recommendations or no value, the current holdings are the target.

        Deposit bounds are token quantities and apply only where a unit
        price is known: a pick whose share falls below its ``min_deposit``
        is dropped and the rest renormalised once; a share above
        ``max_deposit`` is capped and the excess stays unallocated.
        """
        total = sum(a.value_usd for a in holdings)
        picks = list(recommendations[: len(c.TARGET_ALLOCATION_WEIGHTS)])
        if total <= 0 or not picks:
            return tuple(holdings)

        unit_prices = _unit_prices(holdings, prices or {})
        weighted = list(zip(picks, c.TARGET_ALLOCATION_WEIGHTS))
        shares = _shares(total, weighted)
        kept = [
            (rec, weight) for (rec, weight), value in zip(weighted, shares)
            if not _below_min_deposit(rec.opportunity, value, unit_prices)
        ]
        if not kept:
            logger.info("Every recommendation is below its minimum deposit; keeping holdings")
            return tuple(holdings)
        if len(kept) < len(weighted):
            shares = _shares(total, kept)

        target: list[Asset] = []
        for (rec, _), value in zip(kept, shares):
            opportunity = rec.opportunity
            price = unit_prices.get(opportunity.asset_symbol.upper(), 0.0)
            if price > 0 and opportunity.max_deposit is not None:
                value = min(value, opportunity.max_deposit * price)
            assessment = self._risk_model.assess(opportunity, value)
            target.append(
                Asset(
                    symbol=opportunity.asset_symbol.upper(),
                    chain=opportunity.chain,
                    quantity=value / price if price > 0 else 0.0,
                    value_usd=value,
                    protocol=opportunity.protocol,
                    apy=opportunity.apy,
                    risk_score=assessment.overall_risk_score,
                    is_native=self._registry.is_native(
                        opportunity.chain, opportunity.asset_symbol
                    ),
                )
            )
        return tuple(target)


def _shares(total: float, weighted: Sequence[tuple[Recommendation, float]]) -> list[float]:
    weight_sum = sum(weight for _, weight in weighted)
    return [total * weight / weight_sum for _, weight in weighted]


def _below_min_deposit(
    opportunity: YieldOpportunity, value: float, unit_prices: dict[str, float]
) -> bool:
    price = unit_prices.get(opportunity.asset_symbol.upper(), 0.0)
    return price > 0 and value / price < opportunity.min_deposit


def _unit_prices(holdings: Sequence[Asset], prices: dict[str, float]) -> dict[str, float]:
    unit_prices = {k.upper(): v for k, v in prices.items()}
    for asset in holdings:
        if asset.unit_price > 0:
            unit_prices.setdefault(asset.symbol.upper(), asset.unit_price)
    return unit_prices
