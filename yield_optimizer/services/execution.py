"""Execution orchestrator — runs a rebalancing plan action by action."""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field

from .. import constants as c
from ..chains.registry import ChainRegistry
from ..errors import NoRouteError
from ..interfaces.bridge import BridgeRouter
from ..interfaces.signer import TransactionSigner
from ..models import (
    ActionStatus,
    BridgeOption,
    Confirmation,
    CostEstimate,
    ExecutionReceipt,
    FailedAction,
    Operation,
    OperationKind,
    RebalancingAction,
    RebalancingResult,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[
    [RebalancingAction, ActionStatus, "str | None"], "Awaitable[None] | None"
]

# Operations after which the holder's funds are no longer where they started.
_FUND_MOVING = frozenset(
    {OperationKind.WITHDRAW, OperationKind.SWAP, OperationKind.BRIDGE_OUT, OperationKind.BRIDGE_IN}
)


@dataclass
class _ActionOutcome:
    receipts: list[ExecutionReceipt] = field(default_factory=list)
    error: str | None = None
    requires_reconciliation: bool = False


class ExecutionOrchestrator:
    """Execute rebalancing actions through an external signer.

    Actions of one plan run strictly in order. A failing operation fails
    its action and execution moves on to the next action. Operations that
    already confirmed are not rolled back: when an action fails after funds
    left their source position the failure is flagged
    ``requires_reconciliation`` so the holder can settle it manually.

    ``receipt_log`` is append-only and may be shared by orchestrators
    running plans for different holders concurrently.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        bridges: Sequence[BridgeOption] = (),
        base_fees: dict[str, float] | None = None,
        default_base_fee: float = c.DEFAULT_BASE_FEE,
        bridge_fees: dict[tuple[str, str], float] | None = None,
        default_bridge_fee: float = c.DEFAULT_BRIDGE_FEE,
        confirmation_timeout: float = c.DEFAULT_CONFIRMATION_TIMEOUT,
        clock: Callable[[], float] = time.monotonic,
        receipt_log: list[ExecutionReceipt] | None = None,
    ) -> None:
        self._registry = registry
        self._bridges = tuple(bridges)
        self._base_fees = dict(base_fees or {})
        self._default_base_fee = default_base_fee
        self._bridge_fees = dict(bridge_fees or {})
        self._default_bridge_fee = default_bridge_fee
        self._timeout = confirmation_timeout
        self._clock = clock
        self.receipt_log: list[ExecutionReceipt] = (
            receipt_log if receipt_log is not None else []
        )

    # ------------------------------------------------------------------
    # Pre-flight
    # ------------------------------------------------------------------

    def estimate_action_cost(self, action: RebalancingAction) -> float:
        source, dest = action.from_asset, action.to_asset
        if not action.cross_chain:
            multiplier = 1.0
            if source.symbol != dest.symbol:
                multiplier += c.SWAP_FEE_MULTIPLIER
            if source.protocol != dest.protocol:
                multiplier += c.PROTOCOL_CHANGE_FEE_MULTIPLIER
            base = self._base_fees.get(source.chain, self._default_base_fee)
            return round(base * multiplier, 2)

        cost = self._bridge_fees.get((source.chain, dest.chain), self._default_bridge_fee)
        if not source.in_wallet:
            cost += c.WITHDRAW_SURCHARGE
        if not dest.in_wallet:
            cost += c.DEPOSIT_SURCHARGE
        return round(cost, 2)

    def estimate_costs(self, actions: Sequence[RebalancingAction]) -> CostEstimate:
        """Sum of per-action fee estimates in USD."""
        per_action = tuple(self.estimate_action_cost(a) for a in actions)
        return CostEstimate(total_usd=round(sum(per_action), 2), per_action=per_action)

    def get_bridge_options(
        self, from_chain: str, to_chain: str, asset: str
    ) -> list[BridgeOption]:
        return [b for b in self._bridges if b.supports(from_chain, to_chain, asset)]

    def select_bridge(
        self, from_chain: str, to_chain: str, asset: str
    ) -> BridgeOption | None:
        """Cheapest supporting bridge, then fastest. None when there is no route."""
        options = self.get_bridge_options(from_chain, to_chain, asset)
        if not options:
            return None
        return min(options, key=lambda b: (b.fee_usd, b.estimated_minutes, b.id))

    def plan_operations(
        self,
        action: RebalancingAction,
        holder: str,
        max_slippage: float | None = None,
    ) -> list[Operation]:
        """Expand an action into the ordered on-chain operations it needs.

        Every ERC-20 handed to a bridge, a swap router or a protocol is
        approved first; native assets are sent as value and need no approval.
        ``max_slippage`` (percent) is attached to the swap step.

        Raises:
            NoRouteError: cross-chain action with no supporting bridge.
        """
        source, dest = action.from_asset, action.to_asset
        amount = action.amount_to_move
        dest_amount = (
            action.value_to_move / dest.unit_price if dest.unit_price > 0 else amount
        )
        ops: list[Operation] = []

        if not source.in_wallet:
            ops.append(
                Operation(OperationKind.WITHDRAW, source.chain, source.symbol, amount,
                          holder, source.protocol or "")
            )

        held_native = source.is_native
        if action.cross_chain:
            bridge = self.select_bridge(source.chain, dest.chain, source.symbol)
            if bridge is None:
                raise NoRouteError(source.chain, dest.chain, source.symbol)
            if not held_native:
                ops.append(
                    Operation(OperationKind.APPROVE, source.chain, source.symbol, amount,
                              holder, bridge.name, bridge=bridge)
                )
            ops.append(
                Operation(OperationKind.BRIDGE_OUT, source.chain, source.symbol, amount,
                          holder, bridge.name, bridge=bridge, destination_chain=dest.chain)
            )
            ops.append(
                Operation(OperationKind.BRIDGE_IN, dest.chain, source.symbol, amount,
                          bridge.name, holder, bridge=bridge, destination_chain=dest.chain)
            )
            held_native = self._registry.is_native(dest.chain, source.symbol)

        if source.symbol != dest.symbol:
            if not held_native:
                ops.append(
                    Operation(OperationKind.APPROVE, dest.chain, source.symbol, amount,
                              holder, c.SWAP_ROUTER)
                )
            ops.append(
                Operation(OperationKind.SWAP, dest.chain, source.symbol, amount,
                          holder, dest.symbol, target_asset=dest.symbol,
                          max_slippage=max_slippage)
            )
            held_native = dest.is_native or self._registry.is_native(dest.chain, dest.symbol)

        if not dest.in_wallet:
            protocol = dest.protocol or ""
            if not held_native:
                ops.append(
                    Operation(OperationKind.APPROVE, dest.chain, dest.symbol, dest_amount,
                              holder, protocol)
                )
            ops.append(
                Operation(OperationKind.DEPOSIT, dest.chain, dest.symbol, dest_amount,
                          holder, protocol)
            )
        return ops

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def execute_plan(
        self,
        actions: Sequence[RebalancingAction],
        holder: str,
        signer: TransactionSigner,
        bridge_router: BridgeRouter | None = None,
        on_progress: ProgressCallback | None = None,
        cancel: asyncio.Event | None = None,
        max_slippage: float | None = None,
    ) -> RebalancingResult:
        """Run every action in order. Never raises; failures are reported.

        ``max_slippage`` (percent) bounds every swap the plan performs.
        """
        started = self._clock()
        receipts: list[ExecutionReceipt] = []
        completed: list[RebalancingAction] = []
        failed: list[FailedAction] = []
        cancelled = False

        for index, action in enumerate(actions):
            if cancel is not None and cancel.is_set():
                cancelled = True
                logger.warning(
                    "Execution cancelled; %d action(s) not attempted", len(actions) - index
                )
                failed.extend(
                    FailedAction(a, "Cancelled before execution") for a in actions[index:]
                )
                break

            logger.info("Action %d/%d: %s", index + 1, len(actions), action.label)
            await self._notify(on_progress, action, ActionStatus.PENDING, None)

            try:
                outcome = await self._execute_action(
                    action, holder, signer, bridge_router, on_progress, max_slippage
                )
            except Exception as e:
                logger.exception("Unexpected error executing %s", action.label)
                outcome = _ActionOutcome(error=f"Unexpected error: {e}")

            receipts.extend(outcome.receipts)
            last_hash = outcome.receipts[-1].tx_hash if outcome.receipts else None

            if outcome.error is None:
                completed.append(action)
                await self._notify(on_progress, action, ActionStatus.COMPLETED, last_hash)
            else:
                logger.warning("Action failed: %s: %s", action.label, outcome.error)
                failed.append(
                    FailedAction(action, outcome.error, outcome.requires_reconciliation)
                )
                await self._notify(on_progress, action, ActionStatus.FAILED, last_hash)

        total_fees = round(sum(r.fee_usd for r in receipts), 2)
        elapsed = self._clock() - started
        logger.info(
            "Plan finished: %d completed, %d failed, $%.2f fees, %.1fs",
            len(completed), len(failed), total_fees, elapsed,
        )
        return RebalancingResult(
            transactions=tuple(receipts),
            completed_actions=tuple(completed),
            failed_actions=tuple(failed),
            total_gas_fees=total_fees,
            time_elapsed=elapsed,
            cancelled=cancelled,
        )

    async def _execute_action(
        self,
        action: RebalancingAction,
        holder: str,
        signer: TransactionSigner,
        bridge_router: BridgeRouter | None,
        on_progress: ProgressCallback | None,
        max_slippage: float | None = None,
    ) -> _ActionOutcome:
        try:
            operations = self.plan_operations(action, holder, max_slippage)
        except NoRouteError as e:
            return _ActionOutcome(error=f"No bridge route: {e}")

        outcome = _ActionOutcome()
        moved: list[str] = []
        source_tx_hash = ""
        submitted_first = False

        for op in operations:
            tx_hash: str | None = None
            try:
                if op.kind is OperationKind.BRIDGE_IN:
                    if bridge_router is None:
                        raise RuntimeError("no bridge router available")
                    confirmation = await asyncio.wait_for(
                        bridge_router.await_arrival(op.bridge, op, source_tx_hash),
                        timeout=self._timeout,
                    )
                    tx_hash = confirmation.tx_hash
                else:
                    tx_hash = await asyncio.wait_for(signer.submit(op), timeout=self._timeout)
                    if not submitted_first:
                        submitted_first = True
                        await self._notify(on_progress, action, ActionStatus.CONFIRMING, tx_hash)
                    confirmation = await asyncio.wait_for(
                        signer.wait_for_confirmation(op.chain, tx_hash),
                        timeout=self._timeout,
                    )
            except asyncio.TimeoutError:
                confirmation = Confirmation(
                    tx_hash or "", success=False, confirmations=0,
                    error=f"timed out after {self._timeout:g}s",
                )
            except Exception as e:
                confirmation = Confirmation(
                    tx_hash or "", success=False, confirmations=0, error=str(e)
                )

            if confirmation.tx_hash:
                receipt = self._receipt(op, confirmation)
                outcome.receipts.append(receipt)
                self.receipt_log.append(receipt)

            if not confirmation.success:
                reason = (
                    f"{op.kind.value} on {op.chain} failed: "
                    f"{confirmation.error or 'transaction reverted'}"
                )
                if moved:
                    outcome.requires_reconciliation = True
                    reason += (
                        f" (not rolled back: {', '.join(moved)} already confirmed; "
                        f"funds may be stranded and need manual reconciliation)"
                    )
                outcome.error = reason
                return outcome

            if op.kind is OperationKind.BRIDGE_OUT:
                source_tx_hash = confirmation.tx_hash
            if op.kind in _FUND_MOVING:
                moved.append(f"{op.kind.value} on {op.chain}")

        return outcome

    def _receipt(self, op: Operation, confirmation: Confirmation) -> ExecutionReceipt:
        return ExecutionReceipt(
            tx_hash=confirmation.tx_hash,
            from_address=op.sender,
            to_address=op.counterparty,
            status=ActionStatus.COMPLETED if confirmation.success else ActionStatus.FAILED,
            confirmations=confirmation.confirmations,
            chain=op.chain,
            asset=op.asset,
            amount=op.amount,
            kind=op.kind,
            fee_usd=confirmation.fee_usd,
            explorer_url=self._registry.explorer_tx_url(op.chain, confirmation.tx_hash),
        )

    @staticmethod
    async def _notify(
        callback: ProgressCallback | None,
        action: RebalancingAction,
        status: ActionStatus,
        tx_hash: str | None,
    ) -> None:
        if callback is None:
            return
        try:
            result = callback(action, status, tx_hash)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error("Progress callback failed: %s", e)
