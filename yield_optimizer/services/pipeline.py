"""Pipeline — wires every component from AppConfig and runs the workflows."""
from __future__ import annotations

import dataclasses
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from ..cache import Clock, TTLCache, utc_now
from ..chains.evm import EvmClient
from ..chains.registry import ChainRegistry
from ..config import AppConfig, IndexerConfig, PositionSourceConfig
from ..indexers import (
    DefiLlamaIndexer,
    DefiLlamaPositionIndexer,
    StaticIndexer,
    StaticPositionIndexer,
)
from ..interfaces.chain import ChainReader
from ..interfaces.indexer import OpportunityIndexer
from ..interfaces.positions import PositionIndexer
from ..interfaces.price_oracle import PriceOracle
from ..models import (
    HoldingsSnapshot,
    OptimizationCriteria,
    OptimizationReport,
    RebalancePlan,
    RebalancingResult,
    YieldOpportunity,
)
from ..oracles import PythOracle
from ..simulation import SimulatedBridgeRouter, SimulatedSigner
from .catalog import OpportunityCatalog
from .execution import ExecutionOrchestrator, ProgressCallback
from .holdings import HoldingsScanner
from .rebalance import RebalancePlanner
from .recommendation import RecommendationEngine
from .risk import RiskModel

logger = logging.getLogger(__name__)

IndexerFactory = Callable[[IndexerConfig, "YieldPipeline"], OpportunityIndexer]

# Registry of indexer factories keyed by the ``kind`` field in config.
_INDEXER_FACTORIES: dict[str, IndexerFactory] = {
    "defillama": lambda cfg, p: DefiLlamaIndexer(
        cfg,
        {chain.key: chain.name for chain in p.registry},
        clock=p.clock,
        timeout=p.config.catalog.indexer_timeout,
    ),
    "static": lambda cfg, p: StaticIndexer(cfg.name, cfg.opportunities, clock=p.clock),
}

PositionFactory = Callable[[PositionSourceConfig, "YieldPipeline"], PositionIndexer]

_POSITION_FACTORIES: dict[str, PositionFactory] = {
    "defillama": lambda cfg, p: DefiLlamaPositionIndexer(
        cfg, p.readers, timeout=p.config.catalog.indexer_timeout
    ),
    "static": lambda cfg, p: StaticPositionIndexer(cfg.name, cfg.holdings),
}


class YieldPipeline:
    """Builds the optimizer's components and exposes its workflows.

    Collaborators that talk to the outside world (chain readers, price
    oracle, opportunity and position indexers) are built from config unless
    passed in explicitly.
    """

    def __init__(
        self,
        config: AppConfig,
        clock: Clock = utc_now,
        readers: dict[str, ChainReader] | None = None,
        oracle: PriceOracle | None = None,
        indexers: list[OpportunityIndexer] | None = None,
        position_indexers: list[PositionIndexer] | None = None,
    ) -> None:
        self.config = config
        self.clock = clock
        self.registry = ChainRegistry.from_config(config.chains)

        self.readers: dict[str, ChainReader] = (
            readers if readers is not None
            else {chain.key: EvmClient(chain) for chain in self.registry}
        )
        self.oracle: PriceOracle = oracle or PythOracle(config.price_oracle)
        self.indexers = indexers if indexers is not None else self._build_indexers()
        self.position_indexers = (
            position_indexers if position_indexers is not None
            else self._build_position_indexers()
        )

        ttl = config.catalog.cache_ttl_seconds
        self.scanner = HoldingsScanner(
            self.registry,
            self.readers,
            self.oracle,
            cache=TTLCache(ttl, clock=clock),
            clock=clock,
            chain_timeout=config.scanner.chain_timeout,
            position_indexers=self.position_indexers,
        )
        self.catalog = OpportunityCatalog(
            self.indexers,
            self.registry,
            cache=TTLCache(ttl, clock=clock),
            clock=clock,
            freshness_hours=config.catalog.freshness_hours,
            indexer_timeout=config.catalog.indexer_timeout,
        )
        self.risk_model = RiskModel(
            config.risk.audit_scores,
            config.risk.low_regulatory_chains,
            self.registry.native_symbols(),
        )
        self.engine = RecommendationEngine(
            self.scanner,
            self.catalog,
            self.risk_model,
            self.registry,
            default_criteria=config.optimizer.default_criteria,
            top_n=config.optimizer.top_n,
        )
        self.planner = RebalancePlanner(
            self.risk_model, dead_zone=config.risk.rebalance_dead_zone
        )
        execution = config.execution
        self.orchestrator = ExecutionOrchestrator(
            self.registry,
            bridges=execution.bridges,
            base_fees=execution.base_fees,
            default_base_fee=execution.default_base_fee,
            bridge_fees=execution.bridge_fees,
            default_bridge_fee=execution.default_bridge_fee,
            confirmation_timeout=execution.confirmation_timeout,
        )

    def _build_indexers(self) -> list[OpportunityIndexer]:
        indexers: list[OpportunityIndexer] = []
        for indexer_cfg in self.config.catalog.indexers:
            factory = _INDEXER_FACTORIES.get(indexer_cfg.kind)
            if factory:
                indexers.append(factory(indexer_cfg, self))
            else:
                logger.warning("No indexer factory for kind '%s'", indexer_cfg.kind)
        return indexers

    def _build_position_indexers(self) -> list[PositionIndexer]:
        indexers: list[PositionIndexer] = []
        for source in self.config.positions.sources:
            factory = _POSITION_FACTORIES.get(source.kind)
            if factory:
                indexers.append(factory(source, self))
            else:
                logger.warning("No position indexer factory for kind '%s'", source.kind)
        return indexers

    # ------------------------------------------------------------------
    # Workflows
    # ------------------------------------------------------------------

    async def scan(self, address: str, force_refresh: bool = False) -> HoldingsSnapshot:
        return await self.scanner.scan(address, force_refresh=force_refresh)

    async def list_opportunities(
        self, chain: str | None = None, force_refresh: bool = False
    ) -> tuple[YieldOpportunity, ...]:
        """Active opportunities, highest APY first."""
        if chain is not None:
            self.registry.get(chain)
            found = await self.catalog.get_opportunities_by_chain(chain, force_refresh)
        else:
            found = await self.catalog.get_all_opportunities(force_refresh)
        return tuple(sorted(found, key=lambda o: (-o.apy, o.id)))

    async def optimize(
        self,
        address: str,
        criteria: OptimizationCriteria | None = None,
        force_refresh: bool = False,
    ) -> OptimizationReport:
        return await self.engine.optimize(address, criteria, force_refresh=force_refresh)

    async def plan_rebalance(
        self,
        address: str,
        criteria: OptimizationCriteria | None = None,
        force_refresh: bool = False,
    ) -> RebalancePlan:
        """Optimize, derive a target allocation and diff it against holdings."""
        report = await self.optimize(address, criteria, force_refresh)
        target = self.engine.build_target_allocation(
            report.holdings, report.recommendations
        )
        rebalance = self.planner.plan(report.holdings, target)
        costs = self.orchestrator.estimate_costs(rebalance.actions)
        return RebalancePlan(optimization=report, rebalance=rebalance, costs=costs)

    async def simulate_rebalance(
        self,
        address: str,
        criteria: OptimizationCriteria | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> tuple[RebalancePlan, RebalancingResult]:
        """Plan a rebalance and dry-run it against the simulated signer."""
        criteria = criteria or self.config.optimizer.default_criteria
        plan = await self.plan_rebalance(address, criteria)
        result = await self.orchestrator.execute_plan(
            plan.rebalance.actions,
            address,
            SimulatedSigner(),
            SimulatedBridgeRouter(),
            on_progress=on_progress,
            max_slippage=criteria.max_slippage,
        )
        return plan, result

    # ------------------------------------------------------------------
    # Formatting helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _format_wallet(address: str) -> str:
        if len(address) > 16:
            return f"{address[:10]}...{address[-6:]}"
        return address

    def format_snapshot(self, snapshot: HoldingsSnapshot) -> str:
        lines = [
            f"📊 Holdings · {self._format_wallet(snapshot.address)}",
            "",
        ]
        if not snapshot.assets:
            lines.append("No assets found.")
        for asset in snapshot.assets:
            lines.append(
                f"{asset.symbol:<6} {self.registry.display_name(asset.chain):<10} "
                f"{asset.protocol or 'wallet':<16} "
                f"{asset.quantity:>16,.4f}  ${asset.value_usd:>12,.2f}"
            )
        lines += ["", f"Total: ${snapshot.total_value:,.2f}"]
        if snapshot.failed_chains:
            lines.append(
                f"⚠️ Partial data, unavailable chains: {', '.join(snapshot.failed_chains)}"
            )
        if snapshot.failed_position_sources:
            lines.append(
                "⚠️ Positions may be missing, unavailable sources: "
                f"{', '.join(snapshot.failed_position_sources)}"
            )
        if snapshot.cancelled:
            lines.append("⚠️ Scan cancelled before every chain answered")
        return "\n".join(lines)

    def format_opportunities(self, opportunities: tuple[YieldOpportunity, ...]) -> str:
        if not opportunities:
            return "No active opportunities."
        lines = []
        for o in opportunities:
            verified = "✅" if o.verified else "  "
            lines.append(
                f"{verified} {o.apy:>7.2f}%  {o.asset_symbol:<6} "
                f"{o.protocol:<16} {self.registry.display_name(o.chain):<10} "
                f"{o.strategy_type.value:<9} {o.risk_level.value:<6} "
                f"TVL ${o.tvl_usd:,.0f}"
            )
        return "\n".join(lines)

    def format_optimization(self, report: OptimizationReport) -> str:
        lines = [f"🔎 Optimization · {self._format_wallet(report.address)}", ""]
        if not report.recommendations:
            lines.append("No opportunities match the current criteria.")
        for rank, rec in enumerate(report.recommendations, 1):
            o = rec.opportunity
            lines.append(
                f"{rank}. {o.name} on {self.registry.display_name(o.chain)}: "
                f"{o.apy:.2f}% APY (score {rec.score:.0f})"
            )
            for reason in rec.reasons:
                lines.append(f"   - {reason}")
            for tip in rec.optimizations:
                lines.append(f"   > {tip}")
        risk = report.risk_assessment
        lines += [
            "",
            f"Current yield: {report.total_current_yield:.2f}%",
            f"Potential yield: {report.total_potential_yield:.2f}% "
            f"({report.potential_additional_yield:+.2f}%)",
            f"Average risk: {risk.average_risk:.1f} · "
            f"Diversification: {risk.diversification_score:.0f}",
        ]
        if report.failed_chains:
            lines.append(
                f"⚠️ Partial holdings, unavailable chains: {', '.join(report.failed_chains)}"
            )
        return "\n".join(lines)

    def format_rebalance(self, plan: RebalancePlan) -> str:
        rebalance = plan.rebalance
        lines = [
            f"⚖️ Rebalance plan · {self._format_wallet(plan.optimization.address)}",
            "",
        ]
        if not rebalance.actions:
            lines.append("Portfolio already matches the target allocation.")
        for index, (action, cost) in enumerate(
            zip(rebalance.actions, plan.costs.per_action), 1
        ):
            new = " [new]" if action.new_position else ""
            lines.append(
                f"{index}. ${action.value_to_move:,.2f} {action.label}{new}"
            )
            lines.append(
                f"   {action.reason} · risk {action.risk_change.value} · "
                f"est. fee ${cost:.2f}"
            )
        current = rebalance.current_portfolio
        target = rebalance.recommended_portfolio
        lines += [
            "",
            f"APY: {current.weighted_apy:.2f}% → {target.weighted_apy:.2f}% "
            f"({rebalance.potential_apy_increase:+.2f}%)",
            f"Risk: {current.weighted_risk:.2f} → {target.weighted_risk:.2f}",
            f"Annual yield difference: ${rebalance.estimated_annual_yield_difference:,.2f}",
            f"Estimated fees: ${plan.costs.total_usd:,.2f}",
        ]
        return "\n".join(lines)

    @staticmethod
    def format_result(result: RebalancingResult) -> str:
        status = "✅ Completed" if result.success else "⚠️ Completed with failures"
        if result.cancelled:
            status = "⚠️ Cancelled"
        lines = [
            status,
            f"Actions: {len(result.completed_actions)} completed, "
            f"{len(result.failed_actions)} failed",
            f"Transactions: {len(result.transactions)} · "
            f"fees ${result.total_gas_fees:,.2f} · {result.time_elapsed:.1f}s",
        ]
        for failure in result.failed_actions:
            marker = " [needs reconciliation]" if failure.requires_reconciliation else ""
            lines.append(f"  ✗ {failure.action.label}: {failure.reason}{marker}")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# JSON output
# ---------------------------------------------------------------------------


def _json_default(value: Any) -> Any:
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def to_json(value: Any) -> str:
    """Serialise result dataclasses (or structures of them) to JSON."""
    return json.dumps(value, default=_json_default, indent=2)
