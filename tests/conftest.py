"""Shared test fixtures and sample data."""
from __future__ import annotations

import textwrap
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable
from unittest.mock import AsyncMock

import pytest

from yield_optimizer.chains.registry import ChainRegistry
from yield_optimizer.config import (
    AppConfig,
    CatalogConfig,
    ChainConfig,
    ExecutionConfig,
    IndexerConfig,
    PriceOracleConfig,
    PythConfig,
    RiskConfig,
    TokenConfig,
)
from yield_optimizer.indexers import StaticIndexer
from yield_optimizer.models import (
    Asset,
    BridgeOption,
    RiskLevel,
    StrategyType,
    YieldOpportunity,
)
from yield_optimizer.services import YieldPipeline
from yield_optimizer.services.risk import RiskModel

FIXED_NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)

HOLDER = "0x1111111111111111111111111111111111111111"

ETH_USDC = "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48"
ARB_USDC = "0xaf88d065e77c8cC2239327C5EDb3A432268e5831"
POLYGON_USDC = "0x3c499c542cEF5E3811e1192ce70d8cC03d5c3359"


class FakeClock:
    """Settable wall clock for cache and staleness tests."""

    def __init__(self, now: datetime = FIXED_NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


# ---------------------------------------------------------------------------
# Config fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def sample_chains() -> dict[str, ChainConfig]:
    return {
        "ethereum": ChainConfig(
            key="ethereum",
            chain_id=1,
            name="Ethereum",
            rpc_endpoints=("https://eth.example.com",),
            explorer_url="https://etherscan.io",
            native_symbol="ETH",
            tokens=(TokenConfig(symbol="USDC", address=ETH_USDC, decimals=6),),
        ),
        "arbitrum": ChainConfig(
            key="arbitrum",
            chain_id=42161,
            name="Arbitrum",
            rpc_endpoints=("https://arb.example.com",),
            explorer_url="https://arbiscan.io",
            native_symbol="ETH",
            tokens=(TokenConfig(symbol="USDC", address=ARB_USDC, decimals=6),),
        ),
        "polygon": ChainConfig(
            key="polygon",
            chain_id=137,
            name="Polygon",
            rpc_endpoints=("https://polygon.example.com",),
            explorer_url="https://polygonscan.com",
            native_symbol="POL",
            tokens=(TokenConfig(symbol="USDC", address=POLYGON_USDC, decimals=6),),
        ),
    }


@pytest.fixture()
def registry(sample_chains: dict[str, ChainConfig]) -> ChainRegistry:
    return ChainRegistry.from_config(sample_chains)


@pytest.fixture()
def sample_bridges() -> tuple[BridgeOption, ...]:
    return (
        BridgeOption(
            id="stargate",
            name="Stargate",
            supported_chains=("ethereum", "arbitrum", "polygon"),
            supported_assets=("USDC", "ETH"),
            estimated_minutes=10,
            fee_usd=1.5,
        ),
        BridgeOption(
            id="layerzero",
            name="LayerZero",
            supported_chains=("ethereum", "arbitrum"),
            supported_assets=("USDC",),
            estimated_minutes=5,
            fee_usd=1.5,
        ),
        BridgeOption(
            id="axelar",
            name="Axelar",
            supported_chains=("ethereum", "arbitrum"),
            supported_assets=("USDC",),
            estimated_minutes=20,
            fee_usd=3.0,
        ),
    )


@pytest.fixture()
def sample_app_config(
    sample_chains: dict[str, ChainConfig],
    sample_bridges: tuple[BridgeOption, ...],
) -> AppConfig:
    return AppConfig(
        chains=sample_chains,
        price_oracle=PriceOracleConfig(
            provider="pyth",
            pyth=PythConfig(hermes_url="https://hermes.example.com", feeds={}),
            static_prices={"USDC": 1.0},
        ),
        catalog=CatalogConfig(
            indexers=(IndexerConfig(kind="static", name="curated"),),
        ),
        risk=RiskConfig(audit_scores={"aave v3": 9.0}),
        execution=ExecutionConfig(bridges=sample_bridges),
    )


# ---------------------------------------------------------------------------
# Model fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_opportunity() -> Callable[..., YieldOpportunity]:
    """Factory for opportunities with sensible defaults."""

    def _make(**overrides: Any) -> YieldOpportunity:
        fields: dict[str, Any] = {
            "id": "ethereum-aave-usdc",
            "name": "Aave V3 USDC Lending",
            "chain": "ethereum",
            "protocol": "Aave V3",
            "asset_symbol": "USDC",
            "apy": 5.0,
            "tvl_usd": 50_000_000.0,
            "risk_level": RiskLevel.LOW,
            "strategy_type": StrategyType.LENDING,
            "verified": True,
            "created_at": FIXED_NOW,
            "updated_at": FIXED_NOW,
        }
        fields.update(overrides)
        return YieldOpportunity(**fields)

    return _make


@pytest.fixture()
def risk_model(registry: ChainRegistry) -> RiskModel:
    return RiskModel(
        audit_scores={"aave v3": 9.0, "uniswap v3": 8.0},
        low_regulatory_chains=("arbitrum",),
        native_symbols=registry.native_symbols(),
    )


@pytest.fixture()
def usdc_on_ethereum() -> Asset:
    return Asset(symbol="USDC", chain="ethereum", quantity=1000.0, value_usd=1000.0)


@pytest.fixture()
def sample_prices() -> dict[str, float]:
    return {"ETH": 2000.0, "USDC": 1.0, "POL": 0.5}


# ---------------------------------------------------------------------------
# Config YAML fixture
# ---------------------------------------------------------------------------

SAMPLE_YAML = textwrap.dedent("""\
    chains:
      ethereum:
        chain_id: 1
        name: Ethereum
        rpc_endpoints: ["https://eth.example.com", "https://eth2.example.com"]
        rpc_timeout: 10
        explorer_url: "https://etherscan.io/"
        native_symbol: eth
        tokens:
          usdc: {address: "0xA0b86991c6218b36c1d19D4a2e9Eb0cE3606eB48", decimals: 6}
      arbitrum:
        chain_id: 42161
        rpc_endpoints: ["https://arb.example.com"]
    price_oracle:
      provider: pyth
      pyth:
        hermes_url: "https://hermes.example.com"
        feeds: {ETH: "aaa"}
      static_prices: {usdc: 1}
    scanner:
      chain_timeout: 5
    catalog:
      cache_ttl_seconds: 120
      freshness_hours: 12
      indexers:
        - kind: defillama
          name: llama
          url: "https://yields.example.com/pools"
          min_tvl_usd: 100000
          verified_projects: [aave-v3]
        - kind: static
          name: curated
          opportunities:
            - {chain: arbitrum, protocol: Aave V3, asset: USDC, apy: 4.2}
    positions:
      sources:
        - kind: defillama
          name: llama
          url: "https://yields.example.com/pools"
          receipts:
            - chain: ethereum
              protocol: Aave V3
              asset: usdc
              address: "0x98C23E9d8f34FEFb1B7BD6a91B7FF122F4e16F5c"
              decimals: 6
              pool: aa70268e-4b52-42bf-a116-608b370f9501
        - kind: static
          name: manual
          holdings:
            "0x1111111111111111111111111111111111111111":
              - {chain: arbitrum, protocol: Lido, asset: eth, quantity: 0.5, apy: 3.2}
    optimizer:
      top_n: 3
      default_criteria:
        risk_tolerance: high
        preferred_chains: [arbitrum]
        min_apy: 1.5
        max_apy: 60
    risk:
      audit_scores: {Aave V3: 9}
      low_regulatory_chains: [arbitrum]
    execution:
      confirmation_timeout: 60
      base_fees: {ethereum: 3.0}
      bridge_fees: {"ethereum->arbitrum": 4.0}
      bridges:
        - id: stargate
          name: Stargate
          supported_chains: [ethereum, arbitrum]
          supported_assets: [usdc]
          estimated_minutes: 10
          fee_usd: 1.5
""")


@pytest.fixture()
def sample_yaml_path(tmp_path: Path) -> Path:
    cfg_file = tmp_path / "config.yaml"
    cfg_file.write_text(SAMPLE_YAML)
    return cfg_file


# ---------------------------------------------------------------------------
# Pipeline fixtures
# ---------------------------------------------------------------------------

CURATED_OPPORTUNITIES = (
    {"id": "eth-aave-usdc", "chain": "ethereum", "protocol": "Aave V3", "asset": "USDC",
     "apy": 5.0, "tvl_usd": 50_000_000, "risk_level": "Low", "verified": True},
    {"id": "arb-aave-usdc", "chain": "arbitrum", "protocol": "Aave V3", "asset": "USDC",
     "apy": 6.5, "tvl_usd": 80_000_000, "risk_level": "Low", "verified": True},
    {"id": "poly-quick-eth", "chain": "polygon", "protocol": "Quickswap", "asset": "ETH",
     "apy": 25.0, "tvl_usd": 2_000_000, "risk_level": "High",
     "strategy_type": "liquidity"},
)


def _balance_reader(native: int, token: int) -> AsyncMock:
    reader = AsyncMock()
    reader.get_native_balance = AsyncMock(return_value=native)
    reader.get_token_balance = AsyncMock(return_value=token)
    return reader


@pytest.fixture()
def holder_readers() -> dict[str, AsyncMock]:
    """1 ETH + 1000 USDC on Ethereum, 500 USDC on Arbitrum, nothing on Polygon."""
    return {
        "ethereum": _balance_reader(10**18, 1_000_000_000),
        "arbitrum": _balance_reader(0, 500_000_000),
        "polygon": _balance_reader(0, 0),
    }


@pytest.fixture()
def price_oracle(sample_prices: dict[str, float]) -> AsyncMock:
    oracle = AsyncMock()
    oracle.fetch_prices = AsyncMock(return_value=sample_prices)
    return oracle


@pytest.fixture()
def pipeline(
    sample_app_config: AppConfig,
    holder_readers: dict[str, AsyncMock],
    price_oracle: AsyncMock,
    clock: FakeClock,
) -> YieldPipeline:
    return YieldPipeline(
        sample_app_config,
        clock=clock,
        readers=holder_readers,
        oracle=price_oracle,
        indexers=[StaticIndexer("curated", CURATED_OPPORTUNITIES, clock=clock)],
    )
