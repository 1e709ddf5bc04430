"""Rebalance planner — diffs a current portfolio against a target allocation."""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, replace

from .. import constants as c
from ..models import (
    Asset,
    PortfolioRebalanceReport,
    PortfolioSummary,
    RebalancingAction,
    RiskChange,
)
from .risk import RiskModel

logger = logging.getLogger(__name__)

AssetKey = tuple[str, str, str]


@dataclass
class _Delta:
    """Remaining value to take from (or give to) one position."""

    asset: Asset
    remaining: float


def aggregate(assets: Sequence[Asset]) -> dict[AssetKey, Asset]:
    """Merge assets sharing an identity key, preserving first-seen order."""
    merged: dict[AssetKey, Asset] = {}
    for asset in assets:
        existing = merged.get(asset.key)
        if existing is None:
            merged[asset.key] = asset
            continue
        merged[asset.key] = replace(
            existing,
            quantity=existing.quantity + asset.quantity,
            value_usd=existing.value_usd + asset.value_usd,
        )
    return merged


def diversification_score(assets: Sequence[Asset]) -> float:
    """0-100 score from asset/chain/protocol variety and allocation balance."""
    if not assets:
        return 0.0

    distinct = {
        "assets": len({a.symbol for a in assets}),
        "chains": len({a.chain for a in assets}),
        "protocols": len({a.protocol or "" for a in assets}),
    }
    score = 0.0
    for name, (saturation, weight) in c.PORTFOLIO_DIVERSITY_WEIGHTS.items():
        score += min(distinct[name] / saturation, 1.0) * weight

    total = sum(a.value_usd for a in assets)
    if total > 0:
        hhi = sum((a.value_usd / total) ** 2 for a in assets)
        score += (1 - hhi) * c.PORTFOLIO_CONCENTRATION_WEIGHT
    return float(round(score * 100))


class RebalancePlanner:
    """Turn a (current, target) pair into an ordered list of move actions.

    Reductions are paired with increases greedily: first same asset on the
    same chain, then same asset across chains, then anything. Leftover
    reductions are withdrawn to the wallet on their own chain. An increase
    still open after matching has no funds behind it and is left unplanned.
    """

    def __init__(
        self,
        risk_model: RiskModel,
        dead_zone: float = c.RISK_CHANGE_DEAD_ZONE,
        min_value: float = c.MIN_REBALANCE_VALUE,
    ) -> None:
        self._risk_model = risk_model
        self._dead_zone = dead_zone
        self._min_value = min_value

    def plan(
        self, current: Sequence[Asset], target: Sequence[Asset]
    ) -> PortfolioRebalanceReport:
        current_by_key = aggregate(current)
        target_by_key = aggregate(target)

        reductions: list[_Delta] = []
        increases: list[_Delta] = []
        for key in dict.fromkeys([*current_by_key, *target_by_key]):
            have = current_by_key.get(key)
            want = target_by_key.get(key)
            delta = (want.value_usd if want else 0.0) - (have.value_usd if have else 0.0)
            if delta <= -self._min_value and have is not None:
                reductions.append(_Delta(have, -delta))
            elif delta >= self._min_value and want is not None:
                increases.append(_Delta(want, delta))

        actions: list[RebalancingAction] = []
        matchers: tuple[Callable[[Asset, Asset], bool], ...] = (
            lambda a, b: a.symbol == b.symbol and a.chain == b.chain,
            lambda a, b: a.symbol == b.symbol,
            lambda a, b: True,
        )
        for matches in matchers:
            for source in reductions:
                for dest in increases:
                    if source.remaining < self._min_value:
                        break
                    if dest.remaining < self._min_value or not matches(
                        source.asset, dest.asset
                    ):
                        continue
                    value = min(source.remaining, dest.remaining)
                    actions.append(
                        self._action(source.asset, dest.asset, value, current_by_key)
                    )
                    source.remaining -= value
                    dest.remaining -= value

        actions.extend(self._residual_actions(reductions, increases, current_by_key))

        current_summary = self.summarize(list(current_by_key.values()))
        target_summary = self.summarize(list(target_by_key.values()))
        new_assets = tuple(
            a for k, a in target_by_key.items() if k not in current_by_key
        )

        logger.info(
            "Rebalance plan: %d actions, %d new positions", len(actions), len(new_assets)
        )
        return PortfolioRebalanceReport(
            current_portfolio=current_summary,
            recommended_portfolio=target_summary,
            actions=tuple(actions),
            potential_apy_increase=round(
                target_summary.weighted_apy - current_summary.weighted_apy, 4
            ),
            potential_risk_change=round(
                target_summary.weighted_risk - current_summary.weighted_risk, 4
            ),
            estimated_annual_yield_difference=round(
                target_summary.weighted_apy / 100 * target_summary.total_value
                - current_summary.weighted_apy / 100 * current_summary.total_value,
                2,
            ),
            new_assets=new_assets,
        )

    def _residual_actions(
        self,
        reductions: list[_Delta],
        increases: list[_Delta],
        current_by_key: dict[AssetKey, Asset],
    ) -> list[RebalancingAction]:
        actions: list[RebalancingAction] = []
        for source in reductions:
            if source.remaining < self._min_value:
                continue
            if source.asset.in_wallet:
                logger.debug("Leaving $%.2f idle in wallet", source.remaining)
                continue
            actions.append(
                self._action(
                    source.asset, _empty_wallet(source.asset), source.remaining,
                    current_by_key,
                )
            )

        # Every reduction, idle wallet balances included, has been matched by
        # now, so whatever increase remains has no funds behind it.
        for dest in increases:
            if dest.remaining >= self._min_value:
                logger.warning(
                    "Target exceeds available funds: $%.2f of %s %s left unfunded",
                    dest.remaining,
                    dest.asset.symbol,
                    dest.asset.location,
                )
        return actions

    def _action(
        self,
        source: Asset,
        dest: Asset,
        value: float,
        current_by_key: dict[AssetKey, Asset],
    ) -> RebalancingAction:
        unit_price = source.unit_price or dest.unit_price
        amount = value / unit_price if unit_price > 0 else 0.0
        apy_delta = (dest.apy or 0.0) - (source.apy or 0.0)
        return RebalancingAction(
            from_asset=source,
            to_asset=dest,
            amount_to_move=amount,
            value_to_move=round(value, 2),
            reason=self._reason(source, dest, apy_delta),
            expected_apy_delta=round(apy_delta, 4),
            risk_change=self.risk_change(source, dest),
            new_position=dest.key not in current_by_key,
        )

    def risk_change(self, source: Asset, dest: Asset) -> RiskChange:
        diff = self._risk_model.asset_risk(dest) - self._risk_model.asset_risk(source)
        if diff > self._dead_zone:
            return RiskChange.INCREASED
        if diff < -self._dead_zone:
            return RiskChange.DECREASED
        return RiskChange.UNCHANGED

    @staticmethod
    def _reason(source: Asset, dest: Asset, apy_delta: float) -> str:
        if dest.in_wallet and source.symbol == dest.symbol:
            return f"Withdraw {source.symbol} from {source.protocol} to the wallet"
        if source.in_wallet and source.symbol == dest.symbol and source.chain == dest.chain:
            return f"Deposit idle {source.symbol} into {dest.protocol} ({apy_delta:+.2f}% APY)"
        if source.symbol == dest.symbol:
            return (
                f"Move {source.symbol} to {dest.protocol or 'wallet'} on {dest.chain}: "
                f"{apy_delta:+.2f}% APY"
            )
        return (
            f"Swap {source.symbol} into {dest.symbol} on {dest.protocol or 'wallet'} "
            f"({dest.chain}): {apy_delta:+.2f}% APY"
        )

    def summarize(self, assets: Sequence[Asset]) -> PortfolioSummary:
        total = sum(a.value_usd for a in assets)
        if total > 0:
            weighted_apy = sum(a.value_usd * (a.apy or 0.0) for a in assets) / total
            weighted_risk = (
                sum(a.value_usd * self._risk_model.asset_risk(a) for a in assets) / total
            )
        else:
            weighted_apy = weighted_risk = 0.0
        return PortfolioSummary(
            assets=tuple(assets),
            total_value=round(total, 2),
            weighted_apy=round(weighted_apy, 4),
            weighted_risk=round(weighted_risk, 4),
            diversification_score=diversification_score(assets),
        )


def _empty_wallet(asset: Asset) -> Asset:
    """The idle wallet balance of ``asset``'s symbol on its chain, valued at zero."""
    return replace(
        asset, protocol=None, quantity=0.0, value_usd=0.0, apy=None, risk_score=None
    )
