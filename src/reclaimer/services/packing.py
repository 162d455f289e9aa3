from __future__ import annotations

from typing import List, Sequence, Tuple

from loguru import logger

from reclaimer.config import settings
from reclaimer.core.dto import InstructionDescriptor
from reclaimer.core.enums import FailureCause, OperationKind
from reclaimer.core.errors import ConfigError
from reclaimer.core.models import BatchOperation, ExecutionResult, PackedTransaction, TransactionConfig
from reclaimer.ports.instruction_port import InstructionBuilderPort


_SIGNATURE_BYTES = 64
_HEADER_BYTES = 3
_KEY_BYTES = 32
_BLOCKHASH_BYTES = 32


def estimate_size(instructions: Sequence[InstructionDescriptor], num_signers: int = 1) -> int:
    """
    Serialized size of a legacy transaction carrying `instructions`.

    signatures + header + unique account keys + blockhash + instruction count
    + per instruction (program index, account count, account indexes, data length, data).
    """
    keys = set()
    body = 0
    for ix in instructions:
        keys.add(ix.program_id)
        keys.update(a.address for a in ix.accounts)
        body += 1 + 1 + len(ix.accounts) + 2 + len(ix.data)

    return (
        _SIGNATURE_BYTES * num_signers
        + _HEADER_BYTES
        + _KEY_BYTES * len(keys)
        + _BLOCKHASH_BYTES
        + 1
        + body
    )


def estimate_compute(instructions: Sequence[InstructionDescriptor]) -> int:
    return sum(ix.compute_units for ix in instructions)


def _unique_keys(instructions: Sequence[InstructionDescriptor]) -> int:
    keys = set()
    for ix in instructions:
        keys.add(ix.program_id)
        keys.update(a.address for a in ix.accounts)
    return len(keys)


def instructions_for(operation: BatchOperation, builder: InstructionBuilderPort) -> Tuple[InstructionDescriptor, ...]:
    steps = operation.steps or (operation.kind,)
    if OperationKind.AGGREGATE in steps:
        raise ConfigError(f"{operation.op_id}: aggregate must be expanded into transfer + close steps")
    return tuple(builder.build(step, operation) for step in steps)


def fits(instructions: Sequence[InstructionDescriptor], config: TransactionConfig) -> bool:
    return (
        estimate_size(instructions, config.num_signers) <= config.max_tx_bytes
        and estimate_compute(instructions) <= config.max_compute_units
        and _unique_keys(instructions) <= settings.MAX_ACCOUNTS_PER_TX
    )


def seal(index: int, operations: Sequence[BatchOperation], instructions: Sequence[InstructionDescriptor], config: TransactionConfig) -> PackedTransaction:
    return PackedTransaction(
        index=index,
        operations=tuple(operations),
        instructions=tuple(instructions),
        size_bytes=estimate_size(instructions, config.num_signers),
        compute_units=estimate_compute(instructions),
    )


def build_transaction(
    index: int,
    operations: Sequence[BatchOperation],
    builder: InstructionBuilderPort,
    config: TransactionConfig,
) -> PackedTransaction:
    """
    Pack `operations` into one transaction as-is (used for retries and fallback).
    """
    ixs: List[InstructionDescriptor] = []
    for op in operations:
        ixs.extend(instructions_for(op, builder))
    return seal(index, operations, ixs, config)


def pack_operations(
    operations: Sequence[BatchOperation],
    builder: InstructionBuilderPort,
    config: TransactionConfig,
) -> Tuple[List[PackedTransaction], List[ExecutionResult]]:
    """
    Greedy first-fit in plan order.

    Every operation lands in exactly one transaction, or in `rejected` as a
    Failed(CONFIG_ERROR) result when it cannot be built or exceeds a ceiling
    on its own.
    """
    transactions: List[PackedTransaction] = []
    rejected: List[ExecutionResult] = []

    current_ops: List[BatchOperation] = []
    current_ixs: List[InstructionDescriptor] = []

    for op in operations:
        try:
            ixs = instructions_for(op, builder)
        except ConfigError as e:
            logger.warning("Rejecting {}: {}", op.op_id, e)
            rejected.append(ExecutionResult.failed(op.op_id, FailureCause.CONFIG_ERROR, False, str(e)))
            continue

        if not fits(ixs, config):
            size = estimate_size(ixs, config.num_signers)
            msg = (
                f"operation alone exceeds transaction limits "
                f"({size} bytes, {estimate_compute(ixs)} CU)"
            )
            logger.warning("Rejecting {}: {}", op.op_id, msg)
            rejected.append(ExecutionResult.failed(op.op_id, FailureCause.CONFIG_ERROR, False, msg))
            continue

        if current_ops and fits(current_ixs + list(ixs), config):
            current_ops.append(op)
            current_ixs.extend(ixs)
            continue

        if current_ops:
            transactions.append(seal(len(transactions), current_ops, current_ixs, config))
        current_ops = [op]
        current_ixs = list(ixs)

    if current_ops:
        transactions.append(seal(len(transactions), current_ops, current_ixs, config))

    logger.info(
        "Packed {} operation(s) into {} transaction(s); {} rejected",
        len(operations) - len(rejected),
        len(transactions),
        len(rejected),
    )
    return transactions, rejected
