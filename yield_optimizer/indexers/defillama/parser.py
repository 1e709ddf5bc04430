"""Pure parsing functions for DefiLlama yield pools — no I/O."""
from __future__ import annotations

from datetime import datetime
from typing import Any

from ...models import RiskLevel, StrategyType, YieldOpportunity


def build_chain_map(chains: dict[str, str]) -> dict[str, str]:
    """Map lower-cased DefiLlama chain names to registry keys.

    Args:
        chains: registry key → display name.
    """
    mapping: dict[str, str] = {}
    for key, name in chains.items():
        mapping[key.lower()] = key
        mapping[name.lower()] = key
    return mapping


def format_protocol(project: str) -> str:
    """Turn a DefiLlama project slug into a display name.

    Examples:
        "aave-v3" → "Aave V3"
        "compound-v3" → "Compound V3"
    """
    return " ".join(part.capitalize() for part in project.split("-") if part)


def classify_strategy(
    pool: dict[str, Any], staking_projects: tuple[str, ...] = ()
) -> StrategyType:
    """Derive the strategy category from pool exposure and rewards."""
    if pool.get("exposure") == "multi":
        if float(pool.get("apyReward") or 0.0) > 0:
            return StrategyType.FARMING
        return StrategyType.LIQUIDITY
    if pool.get("project", "") in staking_projects:
        return StrategyType.STAKING
    return StrategyType.LENDING


def classify_risk(pool: dict[str, Any], strategy: StrategyType) -> RiskLevel:
    if pool.get("ilRisk") == "yes":
        return RiskLevel.HIGH
    if pool.get("stablecoin") and strategy in (StrategyType.LENDING, StrategyType.STAKING):
        return RiskLevel.LOW
    return RiskLevel.MEDIUM


def parse_pool(
    pool: dict[str, Any],
    chain_map: dict[str, str],
    now: datetime,
    verified_projects: tuple[str, ...] = (),
    staking_projects: tuple[str, ...] = (),
) -> YieldOpportunity | None:
    """Parse one pool record. Returns None for unsupported or incomplete pools."""
    chain = chain_map.get(str(pool.get("chain", "")).lower())
    if chain is None:
        return None

    apy = pool.get("apy")
    pool_id = pool.get("pool")
    symbol = pool.get("symbol")
    if apy is None or not pool_id or not symbol:
        return None

    project = str(pool.get("project", ""))
    protocol = format_protocol(project)
    strategy = classify_strategy(pool, staking_projects)
    asset_symbol = str(symbol).upper()

    return YieldOpportunity(
        id=f"defillama-{pool_id}",
        name=f"{protocol} {asset_symbol} {strategy.value.capitalize()}",
        chain=chain,
        protocol=protocol,
        asset_symbol=asset_symbol,
        apy=round(float(apy), 4),
        tvl_usd=float(pool.get("tvlUsd") or 0.0),
        risk_level=classify_risk(pool, strategy),
        strategy_type=strategy,
        verified=project in verified_projects,
        created_at=now,
        updated_at=now,
        source="defillama",
    )


def parse_pools(
    data: dict[str, Any],
    chain_map: dict[str, str],
    now: datetime,
    min_tvl_usd: float = 0.0,
    projects: tuple[str, ...] = (),
    verified_projects: tuple[str, ...] = (),
    staking_projects: tuple[str, ...] = (),
) -> list[YieldOpportunity]:
    """Parse the ``/pools`` response, applying TVL and project filters."""
    opportunities: list[YieldOpportunity] = []
    for pool in data.get("data", []):
        if projects and pool.get("project") not in projects:
            continue
        if float(pool.get("tvlUsd") or 0.0) < min_tvl_usd:
            continue
        opportunity = parse_pool(
            pool, chain_map, now, verified_projects, staking_projects
        )
        if opportunity is not None:
            opportunities.append(opportunity)
    return opportunities


def pool_apys(data: dict[str, Any]) -> dict[str, float]:
    """Map pool id → current APY for every pool that reports one."""
    apys: dict[str, float] = {}
    for pool in data.get("data", []):
        pool_id, apy = pool.get("pool"), pool.get("apy")
        if pool_id and apy is not None:
            apys[str(pool_id)] = round(float(apy), 4)
    return apys
