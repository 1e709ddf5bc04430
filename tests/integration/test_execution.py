"""Integration tests for plan execution against simulated and mocked signers."""
from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from yield_optimizer.chains.registry import ChainRegistry
from yield_optimizer.errors import NoRouteError
from yield_optimizer.models import (
    ActionStatus,
    Asset,
    OperationKind,
    RebalancingAction,
    RiskChange,
)
from yield_optimizer.services.execution import ExecutionOrchestrator
from yield_optimizer.simulation import SimulatedBridgeRouter, SimulatedSigner

HOLDER = "0x1111111111111111111111111111111111111111"


def _action(source: Asset, dest: Asset, value: float) -> RebalancingAction:
    price = source.unit_price or 1.0
    return RebalancingAction(
        from_asset=source,
        to_asset=dest,
        amount_to_move=value / price,
        value_to_move=value,
        reason="test",
        expected_apy_delta=(dest.apy or 0.0) - (source.apy or 0.0),
        risk_change=RiskChange.UNCHANGED,
    )


def _wallet(symbol: str, chain: str, value: float, price: float = 1.0, **kw) -> Asset:
    return Asset(symbol, chain, value / price, value, **kw)


def _aave(chain: str, value: float, symbol: str = "USDC") -> Asset:
    return Asset(symbol, chain, value, value, protocol="Aave V3", apy=5.0)


@pytest.fixture()
def orchestrator(registry: ChainRegistry, sample_bridges) -> ExecutionOrchestrator:
    return ExecutionOrchestrator(
        registry,
        bridges=sample_bridges,
        base_fees={"ethereum": 3.0},
        bridge_fees={("ethereum", "arbitrum"): 4.0},
    )


@pytest.fixture()
def deposit_on_ethereum() -> RebalancingAction:
    return _action(_wallet("USDC", "ethereum", 1000.0), _aave("ethereum", 1000.0), 1000.0)


@pytest.fixture()
def deposit_on_polygon() -> RebalancingAction:
    return _action(_wallet("USDC", "polygon", 200.0), _aave("polygon", 200.0), 200.0)


@pytest.fixture()
def move_to_arbitrum() -> RebalancingAction:
    return _action(_aave("ethereum", 500.0), _aave("arbitrum", 500.0), 500.0)


class TestCostEstimates:
    def test_same_chain_deposit(self, orchestrator, deposit_on_ethereum) -> None:
        assert orchestrator.estimate_action_cost(deposit_on_ethereum) == 6.0

    def test_same_chain_swap_and_deposit(self, orchestrator) -> None:
        action = _action(
            _wallet("ETH", "ethereum", 1000.0, price=2000.0, is_native=True),
            _aave("ethereum", 1000.0),
            1000.0,
        )
        assert orchestrator.estimate_action_cost(action) == 10.5

    def test_default_base_fee(self, orchestrator, deposit_on_polygon) -> None:
        assert orchestrator.estimate_action_cost(deposit_on_polygon) == 0.2

    def test_cross_chain_with_surcharges(self, orchestrator, move_to_arbitrum) -> None:
        assert orchestrator.estimate_action_cost(move_to_arbitrum) == 4.6

    def test_cross_chain_default_fee(self, orchestrator) -> None:
        action = _action(
            _wallet("USDC", "arbitrum", 100.0), _wallet("USDC", "ethereum", 0.0), 100.0
        )
        assert orchestrator.estimate_action_cost(action) == 1.0

    def test_total(self, orchestrator, deposit_on_ethereum, move_to_arbitrum) -> None:
        estimate = orchestrator.estimate_costs([deposit_on_ethereum, move_to_arbitrum])
        assert estimate.per_action == (6.0, 4.6)
        assert estimate.total_usd == 10.6

    def test_empty_plan(self, orchestrator) -> None:
        assert orchestrator.estimate_costs([]).total_usd == 0.0


class TestBridgeSelection:
    def test_cheapest_then_fastest(self, orchestrator) -> None:
        bridge = orchestrator.select_bridge("ethereum", "arbitrum", "usdc")
        assert bridge is not None
        assert bridge.id == "layerzero"

    def test_only_supporting_bridges(self, orchestrator) -> None:
        options = orchestrator.get_bridge_options("ethereum", "polygon", "USDC")
        assert [b.id for b in options] == ["stargate"]

    def test_no_route(self, orchestrator) -> None:
        assert orchestrator.select_bridge("ethereum", "polygon", "DAI") is None
        assert orchestrator.get_bridge_options("ethereum", "base", "USDC") == []


class TestPlanOperations:
    def test_deposit(self, orchestrator, deposit_on_ethereum) -> None:
        ops = orchestrator.plan_operations(deposit_on_ethereum, HOLDER)
        assert [op.kind for op in ops] == [OperationKind.APPROVE, OperationKind.DEPOSIT]
        assert [op.counterparty for op in ops] == ["Aave V3", "Aave V3"]
        assert ops[1].amount == pytest.approx(1000.0)

    def test_cross_chain_move(self, orchestrator, move_to_arbitrum) -> None:
        ops = orchestrator.plan_operations(move_to_arbitrum, HOLDER)
        assert [op.kind for op in ops] == [
            OperationKind.WITHDRAW,
            OperationKind.APPROVE,
            OperationKind.BRIDGE_OUT,
            OperationKind.BRIDGE_IN,
            OperationKind.APPROVE,
            OperationKind.DEPOSIT,
        ]
        bridge_out, bridge_in = ops[2], ops[3]
        assert bridge_out.chain == "ethereum"
        assert bridge_out.destination_chain == "arbitrum"
        assert bridge_out.bridge.id == "layerzero"
        assert bridge_in.chain == "arbitrum"
        assert bridge_in.sender == "LayerZero"
        assert bridge_in.counterparty == HOLDER
        assert ops[1].counterparty == "LayerZero"
        assert [op.chain for op in ops[4:]] == ["arbitrum", "arbitrum"]
        assert ops[4].counterparty == "Aave V3"

    def test_native_asset_needs_no_approval(self, orchestrator) -> None:
        action = _action(
            _wallet("ETH", "ethereum", 2000.0, price=2000.0, is_native=True),
            _wallet("ETH", "arbitrum", 0.0, is_native=True),
            2000.0,
        )
        ops = orchestrator.plan_operations(action, HOLDER)
        assert [op.kind for op in ops] == [OperationKind.BRIDGE_OUT, OperationKind.BRIDGE_IN]
        assert ops[0].bridge.id == "stargate"
        assert ops[0].amount == pytest.approx(1.0)

    def test_swap_then_deposit(self, orchestrator) -> None:
        action = _action(
            _wallet("ETH", "ethereum", 1000.0, price=2000.0, is_native=True),
            _aave("ethereum", 1000.0),
            1000.0,
        )
        ops = orchestrator.plan_operations(action, HOLDER)
        assert [op.kind for op in ops] == [
            OperationKind.SWAP,
            OperationKind.APPROVE,
            OperationKind.DEPOSIT,
        ]
        assert ops[0].asset == "ETH"
        assert ops[0].amount == pytest.approx(0.5)
        assert ops[0].target_asset == "USDC"
        assert ops[1].asset == ops[2].asset == "USDC"
        assert ops[2].amount == pytest.approx(1000.0)

    def test_bridged_token_approved_before_swap(self, orchestrator) -> None:
        action = _action(
            _wallet("USDC", "ethereum", 1000.0),
            _wallet("ETH", "arbitrum", 0.0, is_native=True),
            1000.0,
        )
        ops = orchestrator.plan_operations(action, HOLDER, max_slippage=0.5)
        assert [op.kind for op in ops] == [
            OperationKind.APPROVE,
            OperationKind.BRIDGE_OUT,
            OperationKind.BRIDGE_IN,
            OperationKind.APPROVE,
            OperationKind.SWAP,
        ]
        approve, swap = ops[3], ops[4]
        assert (approve.chain, approve.asset, approve.counterparty) == (
            "arbitrum", "USDC", "DEX Router"
        )
        assert swap.max_slippage == 0.5
        assert all(op.max_slippage is None for op in ops[:4])

    def test_missing_route_raises(self, orchestrator) -> None:
        action = _action(_wallet("DAI", "ethereum", 50.0), _aave("polygon", 50.0, "DAI"), 50.0)
        with pytest.raises(NoRouteError, match="ethereum to polygon for DAI"):
            orchestrator.plan_operations(action, HOLDER)


class TestExecutePlan:
    @pytest.mark.asyncio
    async def test_all_actions_complete(
        self, orchestrator, deposit_on_ethereum, move_to_arbitrum
    ) -> None:
        signer = SimulatedSigner()
        router = SimulatedBridgeRouter()
        result = await orchestrator.execute_plan(
            [deposit_on_ethereum, move_to_arbitrum], HOLDER, signer, router
        )

        assert result.success
        assert result.completed_actions == (deposit_on_ethereum, move_to_arbitrum)
        assert len(result.transactions) == 8
        assert all(r.status is ActionStatus.COMPLETED for r in result.transactions)
        # three approvals 0.15 + two deposits 0.6 + withdraw 0.3 + bridge_out 1.0
        assert result.total_gas_fees == 2.05
        assert len(router.arrivals) == 1
        assert [op.kind for op in signer.submitted].count(OperationKind.BRIDGE_IN) == 0

        first = result.transactions[0]
        assert first.explorer_url == f"https://etherscan.io/tx/{first.tx_hash}"
        assert first.from_address == HOLDER
        assert first.to_address == "Aave V3"
        assert orchestrator.receipt_log == list(result.transactions)

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_later_actions(
        self, orchestrator, deposit_on_ethereum, deposit_on_polygon
    ) -> None:
        signer = SimulatedSigner(
            fail_when=lambda op: "out of gas" if op.chain == "ethereum" else None
        )
        result = await orchestrator.execute_plan(
            [deposit_on_ethereum, deposit_on_polygon], HOLDER, signer
        )

        assert not result.success
        assert result.completed_actions == (deposit_on_polygon,)
        assert len(result.failed_actions) == 1
        failure = result.failed_actions[0]
        assert failure.action == deposit_on_ethereum
        assert failure.reason == "approve on ethereum failed: out of gas"
        assert not failure.requires_reconciliation
        assert result.transactions[0].status is ActionStatus.FAILED

    @pytest.mark.asyncio
    async def test_middle_failure_in_three_action_plan(
        self, orchestrator, deposit_on_ethereum, deposit_on_polygon
    ) -> None:
        deposit_on_arbitrum = _action(
            _wallet("USDC", "arbitrum", 300.0), _aave("arbitrum", 300.0), 300.0
        )
        signer = SimulatedSigner(
            fail_when=lambda op: "reverted" if op.chain == "polygon" else None
        )
        result = await orchestrator.execute_plan(
            [deposit_on_ethereum, deposit_on_polygon, deposit_on_arbitrum], HOLDER, signer
        )

        assert not result.success
        assert result.completed_actions == (deposit_on_ethereum, deposit_on_arbitrum)
        assert [f.action for f in result.failed_actions] == [deposit_on_polygon]
        assert [op.chain for op in signer.submitted][-2:] == ["arbitrum", "arbitrum"]

    @pytest.mark.asyncio
    async def test_slippage_reaches_signer(self, orchestrator) -> None:
        action = _action(
            _wallet("ETH", "ethereum", 1000.0, price=2000.0, is_native=True),
            _aave("ethereum", 1000.0),
            1000.0,
        )
        signer = SimulatedSigner()
        result = await orchestrator.execute_plan([action], HOLDER, signer, max_slippage=0.3)

        assert result.success
        swaps = [op for op in signer.submitted if op.kind is OperationKind.SWAP]
        assert [op.max_slippage for op in swaps] == [0.3]

    @pytest.mark.asyncio
    async def test_lost_bridge_transfer_needs_reconciliation(
        self, orchestrator, move_to_arbitrum
    ) -> None:
        router = SimulatedBridgeRouter(unreachable_chains=("arbitrum",))
        result = await orchestrator.execute_plan(
            [move_to_arbitrum], HOLDER, SimulatedSigner(), router
        )

        failure = result.failed_actions[0]
        assert failure.requires_reconciliation
        assert failure.reason.startswith(
            "bridge_in on arbitrum failed: LayerZero transfer to arbitrum did not arrive"
        )
        assert "withdraw on ethereum, bridge_out on ethereum already confirmed" in failure.reason
        # withdraw, approve and bridge_out confirmed; no deposit attempted
        kinds = [r.kind for r in result.transactions]
        assert OperationKind.DEPOSIT not in kinds
        assert kinds[:3] == [
            OperationKind.WITHDRAW,
            OperationKind.APPROVE,
            OperationKind.BRIDGE_OUT,
        ]

    @pytest.mark.asyncio
    async def test_missing_bridge_router(self, orchestrator, move_to_arbitrum) -> None:
        result = await orchestrator.execute_plan([move_to_arbitrum], HOLDER, SimulatedSigner())
        failure = result.failed_actions[0]
        assert "no bridge router available" in failure.reason
        assert failure.requires_reconciliation

    @pytest.mark.asyncio
    async def test_first_step_failure_needs_no_reconciliation(
        self, orchestrator, move_to_arbitrum
    ) -> None:
        signer = SimulatedSigner(
            fail_when=lambda op: "paused" if op.kind is OperationKind.WITHDRAW else None
        )
        result = await orchestrator.execute_plan(
            [move_to_arbitrum], HOLDER, signer, SimulatedBridgeRouter()
        )
        failure = result.failed_actions[0]
        assert failure.reason == "withdraw on ethereum failed: paused"
        assert not failure.requires_reconciliation

    @pytest.mark.asyncio
    async def test_no_route_fails_action_without_transactions(self, orchestrator) -> None:
        action = _action(_wallet("DAI", "ethereum", 50.0), _aave("polygon", 50.0, "DAI"), 50.0)
        signer = SimulatedSigner()
        result = await orchestrator.execute_plan([action], HOLDER, signer)

        assert result.failed_actions[0].reason.startswith("No bridge route:")
        assert result.transactions == ()
        assert signer.submitted == []

    @pytest.mark.asyncio
    async def test_confirmation_timeout(self, registry, deposit_on_ethereum) -> None:
        async def _hang(chain: str, tx_hash: str) -> None:
            await asyncio.Event().wait()

        signer = AsyncMock()
        signer.submit = AsyncMock(return_value="0xabc")
        signer.wait_for_confirmation = AsyncMock(side_effect=_hang)
        orchestrator = ExecutionOrchestrator(registry, confirmation_timeout=0.05)

        result = await orchestrator.execute_plan([deposit_on_ethereum], HOLDER, signer)

        failure = result.failed_actions[0]
        assert failure.reason == "approve on ethereum failed: timed out after 0.05s"
        assert result.transactions[0].tx_hash == "0xabc"
        assert result.transactions[0].status is ActionStatus.FAILED

    @pytest.mark.asyncio
    async def test_signer_error(self, orchestrator, deposit_on_ethereum) -> None:
        signer = AsyncMock()
        signer.submit = AsyncMock(side_effect=RuntimeError("nonce too low"))

        result = await orchestrator.execute_plan([deposit_on_ethereum], HOLDER, signer)

        assert result.failed_actions[0].reason == "approve on ethereum failed: nonce too low"
        assert result.transactions == ()
        assert orchestrator.receipt_log == []

    @pytest.mark.asyncio
    async def test_elapsed_time_from_clock(self, registry, deposit_on_ethereum) -> None:
        clock = MagicMock(side_effect=[100.0, 102.5])
        orchestrator = ExecutionOrchestrator(registry, clock=clock)
        result = await orchestrator.execute_plan([deposit_on_ethereum], HOLDER, SimulatedSigner())
        assert result.time_elapsed == 2.5

    @pytest.mark.asyncio
    async def test_empty_plan(self, orchestrator) -> None:
        result = await orchestrator.execute_plan([], HOLDER, SimulatedSigner())
        assert result.success
        assert result.total_gas_fees == 0.0


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_between_actions(
        self, orchestrator, deposit_on_ethereum, deposit_on_polygon
    ) -> None:
        cancel = asyncio.Event()

        def on_progress(action, status, tx_hash) -> None:
            if status is ActionStatus.COMPLETED:
                cancel.set()

        signer = SimulatedSigner()
        result = await orchestrator.execute_plan(
            [deposit_on_ethereum, deposit_on_polygon], HOLDER, signer,
            on_progress=on_progress, cancel=cancel,
        )

        assert result.cancelled
        assert not result.success
        assert result.completed_actions == (deposit_on_ethereum,)
        assert result.failed_actions[0].action == deposit_on_polygon
        assert result.failed_actions[0].reason == "Cancelled before execution"
        assert len(signer.submitted) == 2

    @pytest.mark.asyncio
    async def test_cancel_before_start(self, orchestrator, deposit_on_ethereum) -> None:
        cancel = asyncio.Event()
        cancel.set()
        result = await orchestrator.execute_plan(
            [deposit_on_ethereum], HOLDER, SimulatedSigner(), cancel=cancel
        )
        assert result.cancelled
        assert result.completed_actions == ()
        assert len(result.failed_actions) == 1


class TestProgressAndReceipts:
    @pytest.mark.asyncio
    async def test_progress_sequence(self, orchestrator, move_to_arbitrum) -> None:
        events: list[tuple[ActionStatus, str | None]] = []

        async def on_progress(action, status, tx_hash) -> None:
            events.append((status, tx_hash))

        result = await orchestrator.execute_plan(
            [move_to_arbitrum], HOLDER, SimulatedSigner(), SimulatedBridgeRouter(),
            on_progress=on_progress,
        )

        assert [s for s, _ in events] == [
            ActionStatus.PENDING,
            ActionStatus.CONFIRMING,
            ActionStatus.COMPLETED,
        ]
        assert events[0][1] is None
        assert events[1][1] == result.transactions[0].tx_hash
        assert events[2][1] == result.transactions[-1].tx_hash

    @pytest.mark.asyncio
    async def test_failed_action_reports_failed(
        self, orchestrator, deposit_on_ethereum
    ) -> None:
        statuses: list[ActionStatus] = []
        signer = SimulatedSigner(fail_when=lambda op: "reverted")
        await orchestrator.execute_plan(
            [deposit_on_ethereum], HOLDER, signer,
            on_progress=lambda a, s, h: statuses.append(s),
        )
        assert statuses == [ActionStatus.PENDING, ActionStatus.CONFIRMING, ActionStatus.FAILED]

    @pytest.mark.asyncio
    async def test_broken_callback_does_not_abort(
        self, orchestrator, deposit_on_ethereum
    ) -> None:
        def on_progress(action, status, tx_hash) -> None:
            raise ValueError("ui gone")

        result = await orchestrator.execute_plan(
            [deposit_on_ethereum], HOLDER, SimulatedSigner(), on_progress=on_progress
        )
        assert result.success

    @pytest.mark.asyncio
    async def test_shared_receipt_log(
        self, registry, deposit_on_ethereum, deposit_on_polygon
    ) -> None:
        log: list = []
        first = ExecutionOrchestrator(registry, receipt_log=log)
        second = ExecutionOrchestrator(registry, receipt_log=log)

        await asyncio.gather(
            first.execute_plan([deposit_on_ethereum], HOLDER, SimulatedSigner()),
            second.execute_plan(
                [deposit_on_polygon], "0x2222222222222222222222222222222222222222",
                SimulatedSigner(),
            ),
        )

        assert len(log) == 4
        assert {r.chain for r in log} == {"ethereum", "polygon"}
