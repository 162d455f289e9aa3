from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple, Union

from loguru import logger

from reclaimer.core.dto import TokenAccountData
from reclaimer.core.enums import AccountKind, OperationKind, ReclaimReason, SkipReason
from reclaimer.core.errors import ConfigError, GraphError
from reclaimer.core.graph import AccountGraph, is_empty_token_account
from reclaimer.core.models import (
    AccountNode,
    AggregateAndClose,
    BatchOperation,
    BelowDustThreshold,
    BurnAndClose,
    CleanupPriority,
    CleanupStrategy,
    EmptyOnly,
    MintFilter,
    RecoveryBreakdown,
    SkippedAccount,
)
from reclaimer.core.rent import rent_exempt_minimum


@dataclass(frozen=True)
class _Selected:
    node: AccountNode
    reason: ReclaimReason
    steps: Tuple[OperationKind, ...]


_Decision = Union[_Selected, SkippedAccount]


class RecoveryPlanner:
    """
    Turns an AccountGraph into an ordered list of recovery operations.

    Pure: the same graph and configuration always yield the same plan, in
    the same order, with the same breakdown.
    """

    def plan(
        self,
        graph: AccountGraph,
        strategy: CleanupStrategy,
        priority: str = CleanupPriority.HIGH_VALUE,
        mint_filter: Optional[MintFilter] = None,
    ) -> Tuple[Tuple[BatchOperation, ...], RecoveryBreakdown]:
        mint_filter = mint_filter or MintFilter()
        if priority not in CleanupPriority.ALL:
            raise ConfigError(f"unknown priority: {priority!r}")
        target = self._aggregation_target(graph, strategy)

        selected: List[_Selected] = []
        skipped: List[SkippedAccount] = []

        for node in graph.nodes.values():
            if node.kind == AccountKind.UNKNOWN:
                detail = node.parse_error or f"owner {node.snapshot.owner}"
                skipped.append(SkippedAccount(node.address, SkipReason.UNKNOWN_CLASSIFICATION, detail))
                continue
            if node.kind != AccountKind.TOKEN_ACCOUNT:
                continue
            if not mint_filter.allows(node.mint):
                skipped.append(SkippedAccount(node.address, SkipReason.FILTERED_OUT, f"mint {node.mint}"))
                continue

            decision = _select(node, strategy, target)
            if isinstance(decision, SkippedAccount):
                skipped.append(decision)
            else:
                selected.append(decision)

        selected.sort(key=lambda s: _priority_key(s, priority))
        operations = tuple(
            _to_operation(i, s, strategy) for i, s in enumerate(selected)
        )
        breakdown = _breakdown(operations, skipped)

        logger.info(
            "Planned {} operation(s) reclaiming {} lamports; {} account(s) skipped",
            len(operations),
            breakdown.total_reclaimable,
            len(skipped),
        )
        return operations, breakdown

    @staticmethod
    def _aggregation_target(graph: AccountGraph, strategy: CleanupStrategy) -> Optional[AccountNode]:
        if not isinstance(strategy, AggregateAndClose):
            return None
        node = graph.get(strategy.target)
        if node is None or node.kind != AccountKind.TOKEN_ACCOUNT:
            raise ConfigError(f"aggregation target {strategy.target} is not a token account in the graph")
        if isinstance(node.parsed, TokenAccountData) and node.parsed.is_frozen:
            raise ConfigError(f"aggregation target {strategy.target} is frozen")
        return node


# -------------------------
# Strategy dispatch
# -------------------------

def _select(node: AccountNode, strategy: CleanupStrategy, target: Optional[AccountNode]) -> _Decision:
    data = node.parsed
    if not isinstance(data, TokenAccountData):
        raise GraphError(f"{node.address} is classified as a token account but has no token data")

    if data.is_frozen:
        return SkippedAccount(node.address, SkipReason.FROZEN, "frozen token accounts cannot be closed")
    if data.delegated_amount > 0:
        return SkippedAccount(node.address, SkipReason.DELEGATED, f"delegated {data.delegated_amount} to {data.delegate}")

    if isinstance(strategy, EmptyOnly):
        if data.amount != 0:
            return SkippedAccount(node.address, SkipReason.NONZERO_BALANCE, f"token balance {data.amount}")
        if not is_empty_token_account(node):
            floor = rent_exempt_minimum(node.snapshot.data_len)
            return SkippedAccount(
                node.address,
                SkipReason.EXCESS_NATIVE_BALANCE,
                f"{node.lamports} lamports above rent-exempt minimum {floor}",
            )
        return _Selected(node, ReclaimReason.EMPTY, (OperationKind.CLOSE,))

    if isinstance(strategy, BelowDustThreshold):
        if data.amount >= strategy.threshold:
            return SkippedAccount(
                node.address,
                SkipReason.ABOVE_DUST_THRESHOLD,
                f"token balance {data.amount} >= {strategy.threshold}",
            )
        reason = ReclaimReason.EMPTY if data.amount == 0 else ReclaimReason.BELOW_DUST_THRESHOLD
        return _Selected(node, reason, _burn_then_close(data))

    if isinstance(strategy, BurnAndClose):
        reason = ReclaimReason.EMPTY if data.amount == 0 else ReclaimReason.FORCED_BURN
        return _Selected(node, reason, _burn_then_close(data))

    if isinstance(strategy, AggregateAndClose):
        if target is None:
            raise ConfigError("aggregate strategy planned without a resolved target")
        if node.address == target.address:
            return SkippedAccount(node.address, SkipReason.AGGREGATION_TARGET, "receives aggregated balances")
        if node.mint != target.mint:
            return SkippedAccount(node.address, SkipReason.MINT_MISMATCH, f"mint {node.mint} != {target.mint}")
        if data.amount == 0:
            return _Selected(node, ReclaimReason.EMPTY, (OperationKind.CLOSE,))
        return _Selected(node, ReclaimReason.FORCED_BURN, (OperationKind.TRANSFER, OperationKind.CLOSE))

    raise ConfigError(f"unknown cleanup strategy: {strategy!r}")


def _burn_then_close(data: TokenAccountData) -> Tuple[OperationKind, ...]:
    # zero balances and wrapped SOL never get a burn step
    if data.amount == 0 or data.is_native:
        return (OperationKind.CLOSE,)
    return (OperationKind.BURN, OperationKind.CLOSE)


# -------------------------
# Priority dispatch
# -------------------------

def _priority_key(s: _Selected, priority: str) -> Tuple:
    node = s.node
    if priority == CleanupPriority.HIGH_VALUE:
        return (-node.lamports, node.address)
    if priority == CleanupPriority.QUICK_WINS:
        return (len(s.steps), node.address)
    if priority == CleanupPriority.BY_MINT:
        return (node.mint or "", node.address)
    if priority == CleanupPriority.OLDEST_FIRST:
        return (node.fetch_index, node.address)
    raise ConfigError(f"unknown priority: {priority!r}")


# -------------------------
# Output
# -------------------------

def _operation_kind(strategy: CleanupStrategy, steps: Tuple[OperationKind, ...]) -> OperationKind:
    if isinstance(strategy, AggregateAndClose):
        return OperationKind.AGGREGATE
    if OperationKind.BURN in steps:
        return OperationKind.BURN
    return OperationKind.CLOSE


def _to_operation(i: int, s: _Selected, strategy: CleanupStrategy) -> BatchOperation:
    node = s.node
    destination = strategy.target if isinstance(strategy, AggregateAndClose) else None
    accounts = (node.address,)
    if destination and OperationKind.TRANSFER in s.steps:
        accounts = (node.address, destination)

    return BatchOperation(
        op_id=f"op-{i:04d}-{node.address}",
        kind=_operation_kind(strategy, s.steps),
        steps=s.steps,
        accounts=accounts,
        mint=node.mint,
        wallet=node.wallet,
        token_amount=node.token_amount or 0,
        reclaim_lamports=node.lamports,
        reason=s.reason,
        destination=destination,
        fetch_index=node.fetch_index,
        token_program=node.snapshot.owner,
    )


def _breakdown(operations: Tuple[BatchOperation, ...], skipped: List[SkippedAccount]) -> RecoveryBreakdown:
    per_mint: Dict[str, int] = {}
    per_wallet: Dict[str, int] = {}
    burned: Dict[str, int] = {}
    total = 0

    # one operation per candidate account, so each lamport is counted once
    for op in operations:
        total += op.reclaim_lamports
        per_mint[op.mint or ""] = per_mint.get(op.mint or "", 0) + op.reclaim_lamports
        per_wallet[op.wallet or ""] = per_wallet.get(op.wallet or "", 0) + op.reclaim_lamports
        if OperationKind.BURN in op.steps:
            burned[op.mint or ""] = burned.get(op.mint or "", 0) + op.token_amount

    return RecoveryBreakdown(
        candidate_count=len(operations),
        operation_count=len(operations),
        total_reclaimable=total,
        per_mint=dict(sorted(per_mint.items())),
        per_wallet=dict(sorted(per_wallet.items())),
        tokens_burned=dict(sorted(burned.items())),
        skipped=tuple(skipped),
    )
