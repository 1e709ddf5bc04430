"""Configuration loader — reads config.yaml, interpolates env vars, validates."""
from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv

from . import constants
from .models import BridgeOption, OptimizationCriteria, RiskLevel

logger = logging.getLogger(__name__)

INDEXER_KINDS = ("defillama", "static")
POSITION_SOURCE_KINDS = ("defillama", "static")

# ---------------------------------------------------------------------------
# Frozen config dataclasses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TokenConfig:
    symbol: str = ""
    address: str = ""
    decimals: int = 18


@dataclass(frozen=True)
class ChainConfig:
    """One entry of the chain registry."""

    key: str = ""
    chain_id: int = 0
    name: str = ""
    rpc_endpoints: tuple[str, ...] = ()
    rpc_timeout: int = 30
    explorer_url: str = ""
    native_symbol: str = "ETH"
    native_decimals: int = 18
    tokens: tuple[TokenConfig, ...] = ()


@dataclass(frozen=True)
class PythConfig:
    hermes_url: str = "https://hermes.pyth.network/v2/updates/price/latest"
    feeds: dict[str, str] = field(default_factory=dict)
    timeout: int = 10


@dataclass(frozen=True)
class PriceOracleConfig:
    provider: str = "pyth"
    pyth: PythConfig = field(default_factory=PythConfig)
    static_prices: dict[str, float] = field(default_factory=dict)


@dataclass(frozen=True)
class ScannerConfig:
    chain_timeout: float = constants.DEFAULT_CHAIN_TIMEOUT


@dataclass(frozen=True)
class IndexerConfig:
    """An opportunity source. The first configured indexer is the primary."""

    kind: str = ""
    name: str = ""
    url: str = ""
    min_tvl_usd: float = 0.0
    projects: tuple[str, ...] = ()
    verified_projects: tuple[str, ...] = ()
    staking_projects: tuple[str, ...] = ()
    opportunities: tuple[dict[str, Any], ...] = ()


@dataclass(frozen=True)
class CatalogConfig:
    cache_ttl_seconds: int = constants.CACHE_TTL_SECONDS
    freshness_hours: float = constants.DEFAULT_FRESHNESS_HOURS
    indexer_timeout: float = constants.DEFAULT_INDEXER_TIMEOUT
    indexers: tuple[IndexerConfig, ...] = ()


@dataclass(frozen=True)
class ReceiptTokenConfig:
    """An interest-bearing token whose balance is a protocol position.

    ``symbol`` is the underlying asset; ``pool_id`` is the DefiLlama pool
    the position earns in.
    """

    chain: str = ""
    protocol: str = ""
    symbol: str = ""
    address: str = ""
    decimals: int = 18
    pool_id: str = ""


@dataclass(frozen=True)
class PositionSourceConfig:
    """A deployed-position source. The first configured source is the primary."""

    kind: str = ""
    name: str = ""
    url: str = ""
    receipts: tuple[ReceiptTokenConfig, ...] = ()
    # Lower-cased holder address → position entries.
    holdings: dict[str, tuple[dict[str, Any], ...]] = field(default_factory=dict)


@dataclass(frozen=True)
class PositionsConfig:
    sources: tuple[PositionSourceConfig, ...] = ()


@dataclass(frozen=True)
class OptimizerConfig:
    top_n: int = constants.TOP_RECOMMENDATIONS
    default_criteria: OptimizationCriteria = field(
        default_factory=OptimizationCriteria
    )


@dataclass(frozen=True)
class RiskConfig:
    audit_scores: dict[str, float] = field(default_factory=dict)
    low_regulatory_chains: tuple[str, ...] = ()
    rebalance_dead_zone: float = constants.RISK_CHANGE_DEAD_ZONE


@dataclass(frozen=True)
class ExecutionConfig:
    confirmation_timeout: float = constants.DEFAULT_CONFIRMATION_TIMEOUT
    default_base_fee: float = constants.DEFAULT_BASE_FEE
    base_fees: dict[str, float] = field(default_factory=dict)
    default_bridge_fee: float = constants.DEFAULT_BRIDGE_FEE
    bridge_fees: dict[tuple[str, str], float] = field(default_factory=dict)
    bridges: tuple[BridgeOption, ...] = ()


@dataclass(frozen=True)
class AppConfig:
    chains: dict[str, ChainConfig] = field(default_factory=dict)
    price_oracle: PriceOracleConfig = field(default_factory=PriceOracleConfig)
    scanner: ScannerConfig = field(default_factory=ScannerConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)
    positions: PositionsConfig = field(default_factory=PositionsConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)


# ---------------------------------------------------------------------------
# Env interpolation
# ---------------------------------------------------------------------------

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)}")


def _interpolate_env(value: Any) -> Any:
    """Recursively replace ${VAR} references with environment variable values."""
    if isinstance(value, str):
        return _ENV_VAR_RE.sub(lambda m: os.environ.get(m.group(1), ""), value)
    if isinstance(value, dict):
        return {k: _interpolate_env(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    return value


# ---------------------------------------------------------------------------
# YAML → dataclass builders
# ---------------------------------------------------------------------------


def _build_tokens(raw: dict[str, Any]) -> tuple[TokenConfig, ...]:
    tokens: list[TokenConfig] = []
    for symbol, cfg in raw.items():
        tokens.append(
            TokenConfig(
                symbol=str(symbol).upper(),
                address=cfg.get("address", ""),
                decimals=int(cfg.get("decimals", 18)),
            )
        )
    return tuple(tokens)


def _build_chains(raw: dict[str, Any]) -> dict[str, ChainConfig]:
    chains: dict[str, ChainConfig] = {}
    for key, cfg in raw.items():
        chains[key] = ChainConfig(
            key=key,
            chain_id=int(cfg.get("chain_id", 0)),
            name=cfg.get("name", key.title()),
            rpc_endpoints=tuple(e for e in cfg.get("rpc_endpoints", []) if e),
            rpc_timeout=int(cfg.get("rpc_timeout", 30)),
            explorer_url=cfg.get("explorer_url", "").rstrip("/"),
            native_symbol=str(cfg.get("native_symbol", "ETH")).upper(),
            native_decimals=int(cfg.get("native_decimals", 18)),
            tokens=_build_tokens(cfg.get("tokens", {}) or {}),
        )
    return chains


def _build_price_oracle(raw: dict[str, Any]) -> PriceOracleConfig:
    pyth_raw = raw.get("pyth", {})
    return PriceOracleConfig(
        provider=raw.get("provider", "pyth"),
        pyth=PythConfig(
            hermes_url=pyth_raw.get("hermes_url", PythConfig.hermes_url),
            feeds=dict(pyth_raw.get("feeds", {})),
            timeout=int(pyth_raw.get("timeout", 10)),
        ),
        static_prices={
            str(k).upper(): float(v)
            for k, v in (raw.get("static_prices", {}) or {}).items()
        },
    )


def _build_scanner(raw: dict[str, Any]) -> ScannerConfig:
    return ScannerConfig(
        chain_timeout=float(raw.get("chain_timeout", constants.DEFAULT_CHAIN_TIMEOUT))
    )


def _build_indexers(raw: list[dict[str, Any]]) -> tuple[IndexerConfig, ...]:
    indexers: list[IndexerConfig] = []
    for entry in raw:
        kind = entry.get("kind", "")
        indexers.append(
            IndexerConfig(
                kind=kind,
                name=entry.get("name", kind),
                url=entry.get("url", ""),
                min_tvl_usd=float(entry.get("min_tvl_usd", 0.0)),
                projects=tuple(entry.get("projects", [])),
                verified_projects=tuple(entry.get("verified_projects", [])),
                staking_projects=tuple(entry.get("staking_projects", [])),
                opportunities=tuple(entry.get("opportunities", [])),
            )
        )
    return tuple(indexers)


def _build_catalog(raw: dict[str, Any]) -> CatalogConfig:
    return CatalogConfig(
        cache_ttl_seconds=int(
            raw.get("cache_ttl_seconds", constants.CACHE_TTL_SECONDS)
        ),
        freshness_hours=float(
            raw.get("freshness_hours", constants.DEFAULT_FRESHNESS_HOURS)
        ),
        indexer_timeout=float(
            raw.get("indexer_timeout", constants.DEFAULT_INDEXER_TIMEOUT)
        ),
        indexers=_build_indexers(raw.get("indexers", [])),
    )


def _build_receipts(raw: list[dict[str, Any]]) -> tuple[ReceiptTokenConfig, ...]:
    return tuple(
        ReceiptTokenConfig(
            chain=entry.get("chain", ""),
            protocol=entry.get("protocol", ""),
            symbol=str(entry.get("asset", "")).upper(),
            address=entry.get("address", ""),
            decimals=int(entry.get("decimals", 18)),
            pool_id=str(entry.get("pool", "")),
        )
        for entry in raw
    )


def _build_positions(raw: dict[str, Any]) -> PositionsConfig:
    sources: list[PositionSourceConfig] = []
    for entry in raw.get("sources", []) or []:
        kind = entry.get("kind", "")
        sources.append(
            PositionSourceConfig(
                kind=kind,
                name=entry.get("name", kind),
                url=entry.get("url", ""),
                receipts=_build_receipts(entry.get("receipts", []) or []),
                holdings={
                    str(address).lower(): tuple(positions or [])
                    for address, positions in (entry.get("holdings", {}) or {}).items()
                },
            )
        )
    return PositionsConfig(sources=tuple(sources))


def _build_criteria(raw: dict[str, Any]) -> OptimizationCriteria:
    return OptimizationCriteria(
        risk_tolerance=RiskLevel.parse(raw.get("risk_tolerance", "Medium")),
        prioritize_highest_yield=bool(raw.get("prioritize_highest_yield", True)),
        preferred_chains=tuple(raw.get("preferred_chains", [])),
        preferred_assets=tuple(raw.get("preferred_assets", [])),
        preferred_protocols=tuple(raw.get("preferred_protocols", [])),
        min_liquidity=float(
            raw.get("min_liquidity", constants.DEFAULT_MIN_LIQUIDITY)
        ),
        max_slippage=float(raw.get("max_slippage", constants.DEFAULT_MAX_SLIPPAGE)),
        min_apy=float(raw.get("min_apy", 0.0)),
        max_apy=float(raw["max_apy"]) if raw.get("max_apy") is not None else None,
        excluded_protocols=tuple(raw.get("excluded_protocols", [])),
        excluded_assets=tuple(raw.get("excluded_assets", [])),
    )


def _build_optimizer(raw: dict[str, Any]) -> OptimizerConfig:
    return OptimizerConfig(
        top_n=int(raw.get("top_n", constants.TOP_RECOMMENDATIONS)),
        default_criteria=_build_criteria(raw.get("default_criteria", {})),
    )


def _build_risk(raw: dict[str, Any]) -> RiskConfig:
    return RiskConfig(
        audit_scores={
            str(k).lower(): float(v)
            for k, v in (raw.get("audit_scores", {}) or {}).items()
        },
        low_regulatory_chains=tuple(raw.get("low_regulatory_chains", [])),
        rebalance_dead_zone=float(
            raw.get("rebalance_dead_zone", constants.RISK_CHANGE_DEAD_ZONE)
        ),
    )


def _parse_chain_pair(pair: str) -> tuple[str, str]:
    """Parse a ``"from->to"`` bridge fee key."""
    if "->" not in pair:
        raise ValueError(f"Bridge fee key '{pair}' must look like 'from->to'")
    from_chain, to_chain = (part.strip() for part in pair.split("->", 1))
    return from_chain, to_chain


def _build_bridges(raw: list[dict[str, Any]]) -> tuple[BridgeOption, ...]:
    bridges: list[BridgeOption] = []
    for b in raw:
        bridges.append(
            BridgeOption(
                id=b.get("id", ""),
                name=b.get("name", b.get("id", "")),
                supported_chains=tuple(b.get("supported_chains", [])),
                supported_assets=tuple(
                    str(s).upper() for s in b.get("supported_assets", [])
                ),
                estimated_minutes=int(b.get("estimated_minutes", 15)),
                fee_usd=float(b.get("fee_usd", constants.DEFAULT_BRIDGE_FEE)),
            )
        )
    return tuple(bridges)


def _build_execution(raw: dict[str, Any]) -> ExecutionConfig:
    return ExecutionConfig(
        confirmation_timeout=float(
            raw.get("confirmation_timeout", constants.DEFAULT_CONFIRMATION_TIMEOUT)
        ),
        default_base_fee=float(
            raw.get("default_base_fee", constants.DEFAULT_BASE_FEE)
        ),
        base_fees={k: float(v) for k, v in (raw.get("base_fees", {}) or {}).items()},
        default_bridge_fee=float(
            raw.get("default_bridge_fee", constants.DEFAULT_BRIDGE_FEE)
        ),
        bridge_fees={
            _parse_chain_pair(k): float(v)
            for k, v in (raw.get("bridge_fees", {}) or {}).items()
        },
        bridges=_build_bridges(raw.get("bridges", [])),
    )


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(config_path: str | Path | None = None) -> AppConfig:
    """Load and validate application configuration from YAML + .env.

    Args:
        config_path: Path to config.yaml. Defaults to ``config.yaml`` in the
            project root (one level up from this package).
    """
    load_dotenv()

    if config_path is None:
        config_path = Path(__file__).resolve().parent.parent / "config.yaml"
    config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f) or {}

    raw = _interpolate_env(raw)

    cfg = AppConfig(
        chains=_build_chains(raw.get("chains", {})),
        price_oracle=_build_price_oracle(raw.get("price_oracle", {})),
        scanner=_build_scanner(raw.get("scanner", {})),
        catalog=_build_catalog(raw.get("catalog", {})),
        positions=_build_positions(raw.get("positions", {}) or {}),
        optimizer=_build_optimizer(raw.get("optimizer", {})),
        risk=_build_risk(raw.get("risk", {})),
        execution=_build_execution(raw.get("execution", {})),
    )

    _validate(cfg)
    logger.info("Configuration loaded from %s", config_path)
    return cfg


def _validate(cfg: AppConfig) -> None:
    """Raise on invalid configuration."""
    if not cfg.chains:
        raise ValueError("At least one chain must be configured")

    for key, chain in cfg.chains.items():
        if not chain.rpc_endpoints:
            raise ValueError(f"Chain '{key}' has no RPC endpoints")
        if chain.chain_id <= 0:
            raise ValueError(f"Chain '{key}' has no valid chain_id")

    if cfg.catalog.cache_ttl_seconds <= 0:
        raise ValueError("catalog.cache_ttl_seconds must be positive")

    if not cfg.catalog.indexers:
        raise ValueError("At least one catalog indexer must be configured")

    for indexer in cfg.catalog.indexers:
        if indexer.kind not in INDEXER_KINDS:
            raise ValueError(
                f"Indexer '{indexer.name}' has unknown kind '{indexer.kind}'"
            )
        if indexer.kind == "defillama" and not indexer.url:
            raise ValueError(f"Indexer '{indexer.name}' has no url")

    for source in cfg.positions.sources:
        if source.kind not in POSITION_SOURCE_KINDS:
            raise ValueError(
                f"Position source '{source.name}' has unknown kind '{source.kind}'"
            )
        for receipt in source.receipts:
            if receipt.chain not in cfg.chains:
                raise ValueError(
                    f"Position source '{source.name}' references unknown chain "
                    f"'{receipt.chain}'"
                )

    if cfg.optimizer.top_n <= 0:
        raise ValueError("optimizer.top_n must be positive")

    for bridge in cfg.execution.bridges:
        for chain in bridge.supported_chains:
            if chain not in cfg.chains:
                raise ValueError(
                    f"Bridge '{bridge.id}' references unknown chain '{chain}'"
                )

    for from_chain, to_chain in cfg.execution.bridge_fees:
        for chain in (from_chain, to_chain):
            if chain not in cfg.chains:
                raise ValueError(f"Bridge fee references unknown chain '{chain}'")
