"""Deterministic signer and bridge router for dry-run execution.

Nothing here touches a network. Transaction hashes are derived from the
operation contents and a running counter, so the same plan replayed
against a fresh signer yields the same hashes.
"""
from __future__ import annotations

import hashlib
import itertools
from collections.abc import Callable

from .models import BridgeOption, Confirmation, Operation, OperationKind

# Flat per-step fee estimates in USD.
DEFAULT_OPERATION_FEES: dict[OperationKind, float] = {
    OperationKind.APPROVE: 0.05,
    OperationKind.WITHDRAW: 0.3,
    OperationKind.SWAP: 0.5,
    OperationKind.BRIDGE_OUT: 1.0,
    OperationKind.BRIDGE_IN: 0.0,
    OperationKind.DEPOSIT: 0.3,
}

FailurePolicy = Callable[[Operation], "str | None"]


def _tx_hash(*parts: object) -> str:
    digest = hashlib.sha256(":".join(str(p) for p in parts).encode())
    return "0x" + digest.hexdigest()


class SimulatedSigner:
    """TransactionSigner that confirms everything unless told otherwise.

    ``fail_when`` is called with every submitted operation; a non-None
    return value makes that operation's confirmation fail with the
    returned text as the error.
    """

    def __init__(
        self,
        fail_when: FailurePolicy | None = None,
        fees: dict[OperationKind, float] | None = None,
        confirmations: int = 12,
    ) -> None:
        self._fail_when = fail_when
        self._fees = fees if fees is not None else DEFAULT_OPERATION_FEES
        self._confirmations = confirmations
        self._counter = itertools.count(1)
        self._pending: dict[str, tuple[Operation, str | None]] = {}
        self.submitted: list[Operation] = []

    async def submit(self, operation: Operation) -> str:
        n = next(self._counter)
        tx_hash = _tx_hash(
            n, operation.kind.value, operation.chain, operation.asset,
            operation.amount, operation.sender, operation.counterparty,
        )
        error = self._fail_when(operation) if self._fail_when else None
        self._pending[tx_hash] = (operation, error)
        self.submitted.append(operation)
        return tx_hash

    async def wait_for_confirmation(self, chain: str, tx_hash: str) -> Confirmation:
        if tx_hash not in self._pending:
            return Confirmation(tx_hash, success=False, confirmations=0,
                                error="unknown transaction")
        operation, error = self._pending.pop(tx_hash)
        if error is not None:
            return Confirmation(tx_hash, success=False, confirmations=0, error=error)
        return Confirmation(
            tx_hash,
            success=True,
            confirmations=self._confirmations,
            fee_usd=self._fees.get(operation.kind, 0.0),
        )


class SimulatedBridgeRouter:
    """BridgeRouter that reports instant arrival on the destination chain.

    Transfers into any chain listed in ``unreachable_chains`` never arrive.
    """

    def __init__(self, unreachable_chains: tuple[str, ...] = ()) -> None:
        self._unreachable = set(unreachable_chains)
        self.arrivals: list[str] = []

    async def await_arrival(
        self, bridge: BridgeOption, operation: Operation, source_tx_hash: str
    ) -> Confirmation:
        tx_hash = _tx_hash(bridge.id, operation.chain, source_tx_hash)
        if operation.chain in self._unreachable:
            return Confirmation(
                tx_hash, success=False, confirmations=0,
                error=f"{bridge.name} transfer to {operation.chain} did not arrive",
            )
        self.arrivals.append(tx_hash)
        return Confirmation(tx_hash, success=True, confirmations=1)
