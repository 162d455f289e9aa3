from __future__ import annotations

import asyncio
from typing import Dict, Iterable, List, Optional, Sequence

from loguru import logger

from reclaimer.config import settings
from reclaimer.core.dto import AccountSnapshot, Receipt
from reclaimer.core.enums import ExecutionStatus, LedgerErrorKind, OperationKind, SkipCause, TxStatus
from reclaimer.core.errors import (
    BatchError,
    ConfigError,
    FatalLedgerError,
    LedgerError,
    RetryableLedgerError,
    SubmissionTimeout,
)
from reclaimer.core.models import (
    BatchOperation,
    ExecutionResult,
    ExecutionSummary,
    PackedTransaction,
    TransactionConfig,
)
from reclaimer.ports.instruction_port import InstructionBuilderPort
from reclaimer.ports.ledger_port import LedgerPort
from reclaimer.services.packing import build_transaction, pack_operations
from reclaimer.services.retry import CancelToken, Clock, RetryPolicy, RetryTracker, SystemClock


Results = Dict[str, ExecutionResult]


class _BatchExecutor:
    """
    Shared submission path: pack, submit, confirm, retry, fall back.

    Subclasses decide how packed transactions are dispatched.
    """

    def __init__(
        self,
        ledger: LedgerPort,
        builder: InstructionBuilderPort,
        config: Optional[TransactionConfig] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self.ledger = ledger
        self.builder = builder
        self.config = config or TransactionConfig()
        self.clock = clock or SystemClock()
        self.policy = RetryPolicy.from_config(self.config)

    async def execute(
        self,
        operations: Sequence[BatchOperation],
        cancel: Optional[CancelToken] = None,
    ) -> List[ExecutionResult]:
        ops = list(operations)
        self._validate(ops)
        cancel = cancel or CancelToken()

        txs, rejected = pack_operations(ops, self.builder, self.config)
        results: Results = {r.op_id: r for r in rejected}

        await self._dispatch(txs, results, cancel)

        ordered = [results[op.op_id] for op in ops]
        s = summarize(ordered, ops)
        logger.info(
            "Execution finished: {} succeeded, {} already done, {} failed, {} skipped; {} lamports reclaimed",
            s.succeeded,
            s.already_done,
            s.failed,
            s.skipped,
            s.reclaimed_lamports,
        )
        return ordered

    # -------------------------
    # Hooks
    # -------------------------

    def _validate(self, ops: List[BatchOperation]) -> None:
        seen = set()
        for op in ops:
            if op.op_id in seen:
                raise ConfigError(f"duplicate operation id {op.op_id}")
            seen.add(op.op_id)

    async def _dispatch(self, txs: List[PackedTransaction], results: Results, cancel: CancelToken) -> None:
        raise NotImplementedError

    # -------------------------
    # Submission
    # -------------------------

    async def _run_transaction(self, tx: PackedTransaction, cancel: CancelToken) -> Results:
        try:
            return await self._submit_with_retry(tx, cancel, allow_fallback=True)
        except BatchError as e:
            failed_tx: PackedTransaction = e.transaction
            logger.warning(
                "Transaction {} failed as a batch ({}); resubmitting {} operation(s) individually",
                tx.index,
                e.cause,
                len(failed_tx.operations),
            )
            out: Results = dict(e.settled)
            for op in failed_tx.operations:
                if cancel.cancelled:
                    out[op.op_id] = ExecutionResult.skipped(op.op_id, SkipCause.CANCELLED)
                    continue
                single = build_transaction(tx.index, [op], self.builder, self.config)
                out.update(await self._submit_with_retry(single, cancel, allow_fallback=False, attempts=e.attempts))
            return out

    async def _submit_with_retry(
        self,
        tx: PackedTransaction,
        cancel: CancelToken,
        allow_fallback: bool,
        attempts: int = 0,
    ) -> Results:
        tracker = RetryTracker(self.policy, self.clock)
        settled: Results = {}
        pending = tx

        while True:
            attempts += 1
            try:
                receipt = await self._submit_and_confirm(pending)

            except RetryableLedgerError as e:
                if not tracker.record_failure(e):
                    logger.warning("Transaction {} gave up after {} attempt(s): {}", pending.index, attempts, e)
                    settled.update(_fail_all(pending, e, attempts))
                    return settled

                logger.warning(
                    "Transaction {} attempt {} failed ({}); retrying in {:.2f}s",
                    pending.index,
                    attempts,
                    e,
                    tracker.deadline - self.clock.now(),
                )
                if not await tracker.wait(cancel):
                    settled.update(_fail_all(pending, e, attempts, "cancelled before retry"))
                    return settled

                remaining = await self._idempotency_guard(pending, settled, attempts)
                if not remaining:
                    tracker.finish()
                    return settled
                if len(remaining) != len(pending.operations):
                    pending = build_transaction(pending.index, remaining, self.builder, self.config)
                continue

            except FatalLedgerError as e:
                tracker.finish()
                if allow_fallback and len(pending.operations) > 1 and e.attributable:
                    raise BatchError(
                        f"transaction {pending.index} failed: {e}",
                        e,
                        transaction=pending,
                        settled=settled,
                        attempts=attempts,
                    ) from e
                settled.update(_fail_all(pending, e, attempts))
                return settled

            tracker.finish()
            logger.debug("Transaction {} confirmed as {}", pending.index, receipt.signature)
            for op in pending.operations:
                settled[op.op_id] = ExecutionResult.success(op.op_id, receipt, attempts)
            return settled

    async def _submit_and_confirm(self, tx: PackedTransaction) -> Receipt:
        receipt = await self.ledger.send_transaction(tx, self.config)
        deadline = self.clock.now() + self.config.confirm_timeout

        while True:
            status = await self.ledger.get_status(receipt)
            if status == TxStatus.CONFIRMED:
                return receipt
            if status == TxStatus.FAILED:
                raise FatalLedgerError(
                    LedgerErrorKind.INVALID_INSTRUCTION,
                    f"transaction {receipt.signature} failed on-chain",
                )
            if self.clock.now() >= deadline:
                raise SubmissionTimeout(
                    f"{receipt.signature} not confirmed within {self.config.confirm_timeout}s"
                )
            await self.clock.sleep(self.config.confirm_poll_interval)

    async def _idempotency_guard(
        self,
        tx: PackedTransaction,
        settled: Results,
        attempts: int,
    ) -> List[BatchOperation]:
        """
        Re-read the accounts before resubmitting; operations that already landed
        are settled as SuccessAlready and dropped from the retry.
        """
        ops = list(tx.operations)
        try:
            snaps = await self.ledger.fetch_accounts([op.primary_account for op in ops])
        except RetryableLedgerError as e:
            logger.warning("Could not re-read accounts for transaction {} ({}); resubmitting all", tx.index, e)
            return ops

        remaining: List[BatchOperation] = []
        for op, snap in zip(ops, snaps):
            if _already_applied(op, snap):
                logger.info("{} already applied on-chain; not resubmitting", op.op_id)
                settled[op.op_id] = ExecutionResult.success_already(op.op_id, attempts)
            else:
                remaining.append(op)
        return remaining


class SequentialBatchExecutor(_BatchExecutor):
    """
    One transaction at a time, in plan order.
    """

    async def _dispatch(self, txs: List[PackedTransaction], results: Results, cancel: CancelToken) -> None:
        aborted = False
        for tx in txs:
            if aborted:
                _skip_all(tx, results, SkipCause.ABORTED)
                continue
            if cancel.cancelled:
                _skip_all(tx, results, SkipCause.CANCELLED)
                continue

            out = await self._run_transaction(tx, cancel)
            results.update(out)

            if self.config.abort_on_first_failure and any(not r.ok for r in out.values()):
                logger.warning("Aborting remaining transactions after failure in transaction {}", tx.index)
                aborted = True


class ConcurrentBatchExecutor(_BatchExecutor):
    """
    Transactions that share an account form a lane and run in order; lanes run
    side by side with at most `concurrency_limit` transactions in flight.
    """

    def _validate(self, ops: List[BatchOperation]) -> None:
        super()._validate(ops)
        closers: Dict[str, str] = {}
        for op in ops:
            if OperationKind.CLOSE not in op.steps:
                continue
            other = closers.get(op.primary_account)
            if other is not None:
                raise ConfigError(
                    f"account {op.primary_account} is closed by both {other} and {op.op_id}"
                )
            closers[op.primary_account] = op.op_id

    async def _dispatch(self, txs: List[PackedTransaction], results: Results, cancel: CancelToken) -> None:
        lanes = partition_lanes(txs)
        sem = asyncio.Semaphore(self.config.concurrency_limit)
        state = {"aborted": False}

        logger.info(
            "Dispatching {} transaction(s) over {} lane(s), limit {}",
            len(txs),
            len(lanes),
            self.config.concurrency_limit,
        )

        async def run_lane(lane: List[PackedTransaction]) -> None:
            for tx in lane:
                async with sem:
                    if state["aborted"]:
                        _skip_all(tx, results, SkipCause.ABORTED)
                        continue
                    if cancel.cancelled:
                        _skip_all(tx, results, SkipCause.CANCELLED)
                        continue
                    out = await self._run_transaction(tx, cancel)

                results.update(out)
                if self.config.abort_on_first_failure and any(not r.ok for r in out.values()):
                    logger.warning("Aborting unstarted transactions after failure in transaction {}", tx.index)
                    state["aborted"] = True

        await asyncio.gather(*(run_lane(lane) for lane in lanes))


# -------------------------
# Helpers
# -------------------------

def partition_lanes(txs: Sequence[PackedTransaction]) -> List[List[PackedTransaction]]:
    """
    Union transactions that write a common account (see `write_locks`); each
    lane keeps plan order.
    """
    parent = list(range(len(txs)))

    def find(i: int) -> int:
        while parent[i] != i:
            parent[i] = parent[parent[i]]
            i = parent[i]
        return i

    owner: Dict[str, int] = {}
    for i, tx in enumerate(txs):
        for account in tx.write_locks:
            j = owner.setdefault(account, i)
            ri, rj = find(i), find(j)
            if ri != rj:
                parent[max(ri, rj)] = min(ri, rj)

    lanes: Dict[int, List[PackedTransaction]] = {}
    for i, tx in enumerate(txs):
        lanes.setdefault(find(i), []).append(tx)
    return [lanes[k] for k in sorted(lanes)]


def _already_applied(op: BatchOperation, snap: Optional[AccountSnapshot]) -> bool:
    if OperationKind.CLOSE not in op.steps:
        return False
    if snap is None or snap.lamports == 0:
        return True
    return snap.owner == settings.SYSTEM_PROGRAM_ID and snap.data_len == 0


def _fail_all(tx: PackedTransaction, e: LedgerError, attempts: int, note: str = "") -> Results:
    message = f"{e} ({note})" if note else str(e)
    return {
        op.op_id: ExecutionResult.failed(op.op_id, e.kind, e.retryable, message, attempts)
        for op in tx.operations
    }


def _skip_all(tx: PackedTransaction, results: Results, cause: SkipCause) -> None:
    for op in tx.operations:
        results[op.op_id] = ExecutionResult.skipped(op.op_id, cause)


def summarize(results: Iterable[ExecutionResult], operations: Iterable[BatchOperation] = ()) -> ExecutionSummary:
    lamports = {op.op_id: op.reclaim_lamports for op in operations}
    counts = {status: 0 for status in ExecutionStatus}
    reclaimed = 0

    for r in results:
        counts[r.status] += 1
        if r.ok:
            reclaimed += lamports.get(r.op_id, 0)

    return ExecutionSummary(
        succeeded=counts[ExecutionStatus.SUCCESS],
        already_done=counts[ExecutionStatus.SUCCESS_ALREADY],
        failed=counts[ExecutionStatus.FAILED],
        skipped=counts[ExecutionStatus.SKIPPED],
        reclaimed_lamports=reclaimed,
    )
