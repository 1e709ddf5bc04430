"""Command-line interface for the cross-chain yield optimizer."""
from __future__ import annotations

import argparse
import asyncio
import dataclasses
import logging
import sys

from .config import load_config
from .errors import CriteriaValidationError
from .logging_setup import configure_logging
from .models import OptimizationCriteria, RiskLevel
from .services import YieldPipeline
from .services.pipeline import to_json

logger = logging.getLogger(__name__)


def _add_criteria_arguments(parser: argparse.ArgumentParser) -> None:
    group = parser.add_argument_group("optimization criteria")
    group.add_argument(
        "--risk",
        dest="risk_tolerance",
        choices=[level.value for level in RiskLevel],
        default=None,
        help="Risk tolerance (default: from config)",
    )
    group.add_argument(
        "--prefer-chain", dest="preferred_chains", action="append", default=None
    )
    group.add_argument(
        "--prefer-asset", dest="preferred_assets", action="append", default=None
    )
    group.add_argument(
        "--prefer-protocol", dest="preferred_protocols", action="append", default=None
    )
    group.add_argument(
        "--exclude-protocol", dest="excluded_protocols", action="append", default=None
    )
    group.add_argument(
        "--exclude-asset", dest="excluded_assets", action="append", default=None
    )
    group.add_argument("--min-liquidity", type=float, default=None, help="Minimum TVL in USD")
    group.add_argument("--max-slippage", type=float, default=None, help="Percent, 0-100")
    group.add_argument("--min-apy", type=float, default=None)
    group.add_argument("--max-apy", type=float, default=None, help="Skip opportunities above this APY")
    group.add_argument(
        "--no-yield-priority",
        dest="prioritize_highest_yield",
        action="store_false",
        default=None,
        help="Do not weight the score by APY",
    )
    group.add_argument(
        "--refresh",
        action="store_true",
        help="Bypass cached holdings and opportunities",
    )


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse CLI parser."""
    parser = argparse.ArgumentParser(
        prog="yield-optimizer",
        description="Cross-chain crypto yield optimizer",
    )
    parser.add_argument(
        "--config",
        default=None,
        help="Path to config.yaml (default: config.yaml in project root)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--json", action="store_true", help="Print machine-readable JSON"
    )

    sub = parser.add_subparsers(dest="command")

    scan_parser = sub.add_parser("scan", help="Aggregate holdings across chains")
    scan_parser.add_argument("address")
    scan_parser.add_argument("--refresh", action="store_true")

    opp_parser = sub.add_parser("opportunities", help="List active yield opportunities")
    opp_parser.add_argument("--chain", default=None, help="Only this chain key")
    opp_parser.add_argument("--refresh", action="store_true")

    optimize_parser = sub.add_parser("optimize", help="Recommend opportunities")
    optimize_parser.add_argument("address")
    _add_criteria_arguments(optimize_parser)

    rebalance_parser = sub.add_parser("rebalance", help="Plan a portfolio rebalance")
    rebalance_parser.add_argument("address")
    _add_criteria_arguments(rebalance_parser)
    rebalance_parser.add_argument(
        "--simulate",
        action="store_true",
        help="Dry-run the plan against a simulated signer",
    )

    return parser


def criteria_from_args(
    args: argparse.Namespace, defaults: OptimizationCriteria
) -> OptimizationCriteria:
    """Overlay the criteria flags that were given on top of ``defaults``."""
    overrides = {}
    for field in dataclasses.fields(OptimizationCriteria):
        value = getattr(args, field.name, None)
        if value is None:
            continue
        if isinstance(value, list):
            value = tuple(value)
        elif field.name == "risk_tolerance":
            value = RiskLevel.parse(value)
        overrides[field.name] = value
    return dataclasses.replace(defaults, **overrides)


async def _run(args: argparse.Namespace) -> int:
    """Execute the selected command. Returns the process exit code."""
    configure_logging(args.log_level)
    config = load_config(args.config)
    pipeline = YieldPipeline(config)

    try:
        if args.command == "scan":
            snapshot = await pipeline.scan(args.address, force_refresh=args.refresh)
            print(to_json(snapshot) if args.json else pipeline.format_snapshot(snapshot))

        elif args.command == "opportunities":
            if args.chain is not None and args.chain not in pipeline.registry:
                logger.error(
                    "Unknown chain '%s' (known: %s)",
                    args.chain,
                    ", ".join(pipeline.registry.keys()),
                )
                return 2
            found = await pipeline.list_opportunities(args.chain, force_refresh=args.refresh)
            print(to_json(list(found)) if args.json else pipeline.format_opportunities(found))

        elif args.command == "optimize":
            criteria = criteria_from_args(args, config.optimizer.default_criteria)
            report = await pipeline.optimize(args.address, criteria, force_refresh=args.refresh)
            print(to_json(report) if args.json else pipeline.format_optimization(report))

        elif args.command == "rebalance":
            criteria = criteria_from_args(args, config.optimizer.default_criteria)
            if args.simulate:
                plan, result = await pipeline.simulate_rebalance(args.address, criteria)
                if args.json:
                    print(to_json({
                        "plan": dataclasses.asdict(plan),
                        "result": {**dataclasses.asdict(result), "success": result.success},
                    }))
                else:
                    print(pipeline.format_rebalance(plan))
                    print()
                    print(pipeline.format_result(result))
                return 0 if result.success else 1
            plan = await pipeline.plan_rebalance(args.address, criteria, force_refresh=args.refresh)
            print(to_json(plan) if args.json else pipeline.format_rebalance(plan))

        else:
            build_parser().print_help()
            return 1
    except CriteriaValidationError as e:
        logger.error("Invalid criteria: %s", e)
        return 2

    return 0


def main() -> None:
    """Entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(1)

    sys.exit(asyncio.run(_run(args)))
