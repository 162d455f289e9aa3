import unittest

from reclaimer.adapters.instructions.spl_instruction_adapter import SplInstructionBuilder
from reclaimer.adapters.ledger.static_ledger_adapter import ANY_ACCOUNT, StaticLedgerAdapter
from reclaimer.config import settings
from reclaimer.core.enums import ExecutionStatus, FailureCause, LedgerErrorKind, RetryState, SkipCause
from reclaimer.core.errors import ConfigError, FatalLedgerError, NetworkError, RateLimitError
from reclaimer.core.models import ExecutionResult, TransactionConfig
from reclaimer.core.rent import TOKEN_ACCOUNT_RENT
from reclaimer.services.executor import SequentialBatchExecutor, summarize
from reclaimer.services.retry import CancelToken, RetryPolicy, RetryTracker

from fixtures import FakeClock, close_op, key, token_snapshot


# one close instruction per transaction
ONE_PER_TX = settings.CLOSE_COMPUTE_UNITS


class RetryPolicyTests(unittest.TestCase):
    def test_delay_doubles_up_to_cap(self) -> None:
        p = RetryPolicy(max_retries=5, base=0.5, cap=3.0)
        self.assertEqual([p.delay(i) for i in range(5)], [0.5, 1.0, 2.0, 3.0, 3.0])


class RetryTrackerTests(unittest.IsolatedAsyncioTestCase):
    async def test_states_follow_backoff(self) -> None:
        clock = FakeClock()
        t = RetryTracker(RetryPolicy(max_retries=1, base=0.5, cap=8.0), clock)

        self.assertTrue(t.record_failure(NetworkError("boom")))
        self.assertEqual(t.state, RetryState.WAITING)
        self.assertEqual(t.deadline, 0.5)

        self.assertTrue(await t.wait())
        self.assertEqual(t.state, RetryState.RETRYING)
        self.assertEqual(clock.now(), 0.5)

        self.assertFalse(t.record_failure(RateLimitError("slow down")))
        self.assertEqual(
            t.history,
            [RetryState.PENDING, RetryState.WAITING, RetryState.RETRYING, RetryState.TERMINAL],
        )

    async def test_fatal_error_is_terminal_immediately(self) -> None:
        t = RetryTracker(RetryPolicy(), FakeClock())
        self.assertFalse(t.record_failure(FatalLedgerError(LedgerErrorKind.INSUFFICIENT_FUNDS)))
        self.assertEqual(t.state, RetryState.TERMINAL)

    async def test_cancelled_wait_is_terminal(self) -> None:
        clock = FakeClock()
        t = RetryTracker(RetryPolicy(), clock)
        t.record_failure(NetworkError())
        token = CancelToken()
        token.cancel()

        self.assertFalse(await t.wait(token))
        self.assertEqual(t.state, RetryState.TERMINAL)
        self.assertEqual(clock.sleeps, [])


class SequentialExecutorTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.wallet = key(1)
        self.mint = key(2)
        self.addrs = [key(10 + i) for i in range(4)]
        self.ops = [close_op(i, a, self.wallet, self.mint) for i, a in enumerate(self.addrs)]
        self.ledger = StaticLedgerAdapter(
            accounts=[token_snapshot(a, self.mint, self.wallet) for a in self.addrs],
        )
        self.clock = FakeClock()

    def _executor(self, **cfg) -> SequentialBatchExecutor:
        return SequentialBatchExecutor(
            self.ledger,
            SplInstructionBuilder(),
            TransactionConfig(**cfg),
            clock=self.clock,
        )

    async def test_all_operations_succeed(self) -> None:
        results = await self._executor().execute(self.ops)

        self.assertEqual([r.op_id for r in results], [op.op_id for op in self.ops])
        self.assertTrue(all(r.status == ExecutionStatus.SUCCESS for r in results))
        self.assertEqual(len(self.ledger.submissions), 1)
        self.assertFalse(any(self.ledger.has_account(a) for a in self.addrs))
        self.assertEqual(await self.ledger.get_balance(self.wallet), 4 * TOKEN_ACCOUNT_RENT)

    async def test_retryable_error_is_retried_with_backoff(self) -> None:
        self.ledger.script_failure(self.addrs[0], NetworkError("connection reset"))

        results = await self._executor().execute(self.ops)

        self.assertTrue(all(r.status == ExecutionStatus.SUCCESS for r in results))
        self.assertTrue(all(r.attempts == 2 for r in results))
        self.assertEqual(self.clock.sleeps, [0.5])

    async def test_retries_exhausted(self) -> None:
        for _ in range(3):
            self.ledger.script_failure(self.addrs[0], NetworkError("down"))

        results = await self._executor(max_retries=2).execute(self.ops[:1])

        r = results[0]
        self.assertEqual(r.status, ExecutionStatus.FAILED)
        self.assertEqual(r.cause, FailureCause.NETWORK)
        self.assertTrue(r.retryable)
        self.assertEqual(r.attempts, 3)
        self.assertEqual(self.clock.sleeps, [0.5, 1.0])

    async def test_idempotency_guard_skips_operations_that_landed(self) -> None:
        # the transaction lands but the response is lost
        self.ledger.script_failure(self.addrs[0], NetworkError("reset after send"), applied=True)

        results = await self._executor().execute(self.ops)

        self.assertTrue(all(r.status == ExecutionStatus.SUCCESS_ALREADY for r in results))
        self.assertEqual(len(self.ledger.submissions), 1)

    async def test_timeout_then_success_already(self) -> None:
        ledger = StaticLedgerAdapter(
            accounts=[token_snapshot(self.addrs[0], self.mint, self.wallet)],
            pending_polls=10 ** 6,
        )
        executor = SequentialBatchExecutor(
            ledger,
            SplInstructionBuilder(),
            TransactionConfig(confirm_timeout=2.0, confirm_poll_interval=0.5),
            clock=self.clock,
        )
        results = await executor.execute(self.ops[:1])

        self.assertEqual(results[0].status, ExecutionStatus.SUCCESS_ALREADY)
        self.assertEqual(len(ledger.submissions), 1)

    async def test_timeout_without_retries_fails_retryable(self) -> None:
        ledger = StaticLedgerAdapter(
            accounts=[token_snapshot(self.addrs[0], self.mint, self.wallet)],
            pending_polls=10 ** 6,
        )
        executor = SequentialBatchExecutor(
            ledger,
            SplInstructionBuilder(),
            TransactionConfig(max_retries=0, confirm_timeout=1.0, confirm_poll_interval=0.5),
            clock=self.clock,
        )
        r = (await executor.execute(self.ops[:1]))[0]

        self.assertEqual(r.status, ExecutionStatus.FAILED)
        self.assertEqual(r.cause, FailureCause.TIMEOUT)
        self.assertTrue(r.retryable)

    async def test_attributable_failure_falls_back_to_individual(self) -> None:
        ledger = StaticLedgerAdapter(
            accounts=[token_snapshot(a, self.mint, self.wallet) for a in self.addrs if a != self.addrs[1]],
        )
        executor = SequentialBatchExecutor(ledger, SplInstructionBuilder(), TransactionConfig(), clock=self.clock)

        results = await executor.execute(self.ops)
        by_id = {r.op_id: r for r in results}

        bad = by_id[self.ops[1].op_id]
        self.assertEqual(bad.status, ExecutionStatus.FAILED)
        self.assertEqual(bad.cause, FailureCause.ALREADY_CLOSED)
        self.assertFalse(bad.retryable)
        for op in (self.ops[0], self.ops[2], self.ops[3]):
            self.assertEqual(by_id[op.op_id].status, ExecutionStatus.SUCCESS)
        # one batch attempt, then one transaction per operation
        self.assertEqual(len(ledger.submissions), 1 + len(self.ops))

    async def test_insufficient_funds_fails_every_operation(self) -> None:
        self.ledger.script_failure(ANY_ACCOUNT, FatalLedgerError(LedgerErrorKind.INSUFFICIENT_FUNDS, "fee payer empty"))

        results = await self._executor().execute(self.ops)

        self.assertTrue(all(r.cause == FailureCause.INSUFFICIENT_FUNDS for r in results))
        self.assertTrue(all(not r.retryable for r in results))
        self.assertEqual(len(self.ledger.submissions), 1)

    async def test_abort_on_first_failure_skips_the_rest(self) -> None:
        self.ledger.script_failure(self.addrs[1], FatalLedgerError(LedgerErrorKind.INVALID_INSTRUCTION, "bad"))

        results = await self._executor(max_compute_units=ONE_PER_TX, abort_on_first_failure=True).execute(self.ops)

        self.assertEqual(
            [r.status for r in results],
            [ExecutionStatus.SUCCESS, ExecutionStatus.FAILED, ExecutionStatus.SKIPPED, ExecutionStatus.SKIPPED],
        )
        self.assertEqual(results[2].skip_cause, SkipCause.ABORTED)

    async def test_failures_do_not_block_independent_operations(self) -> None:
        self.ledger.script_failure(self.addrs[1], FatalLedgerError(LedgerErrorKind.INVALID_INSTRUCTION, "bad"))

        results = await self._executor(max_compute_units=ONE_PER_TX).execute(self.ops)

        self.assertEqual([r.ok for r in results], [True, False, True, True])

    async def test_cancelled_before_start_skips_everything(self) -> None:
        token = CancelToken()
        token.cancel()

        results = await self._executor().execute(self.ops, cancel=token)

        self.assertTrue(all(r.skip_cause == SkipCause.CANCELLED for r in results))
        self.assertEqual(self.ledger.submissions, [])

    async def test_cancel_during_backoff_stops_pending_retry(self) -> None:
        self.ledger.script_failure(self.addrs[0], NetworkError("down"))
        token = CancelToken(self.clock, deadline=0.1)

        results = await self._executor(max_compute_units=ONE_PER_TX).execute(self.ops[:2], cancel=token)

        self.assertEqual(results[0].status, ExecutionStatus.FAILED)
        self.assertTrue(results[0].retryable)
        self.assertIn("cancelled", results[0].message)
        self.assertEqual(results[1].status, ExecutionStatus.SKIPPED)
        self.assertEqual(results[1].skip_cause, SkipCause.CANCELLED)

    async def test_duplicate_op_ids_rejected(self) -> None:
        with self.assertRaises(ConfigError):
            await self._executor().execute([self.ops[0], self.ops[0]])

    async def test_packing_rejections_are_reported_in_plan_order(self) -> None:
        results = await self._executor(max_compute_units=ONE_PER_TX - 1).execute(self.ops[:2])

        self.assertEqual([r.op_id for r in results], [op.op_id for op in self.ops[:2]])
        self.assertTrue(all(r.cause == FailureCause.CONFIG_ERROR for r in results))


class SummaryTests(unittest.TestCase):
    def test_counts_and_reclaimed(self) -> None:
        ops = [close_op(i, key(10 + i), key(1), key(2), lamports=100 * (i + 1)) for i in range(4)]
        results = [
            ExecutionResult.success(ops[0].op_id, receipt=None, attempts=1),
            ExecutionResult.success_already(ops[1].op_id, attempts=2),
            ExecutionResult.failed(ops[2].op_id, FailureCause.NETWORK, True),
            ExecutionResult.skipped(ops[3].op_id, SkipCause.CANCELLED),
        ]
        s = summarize(results, ops)

        self.assertEqual((s.succeeded, s.already_done, s.failed, s.skipped), (1, 1, 1, 1))
        self.assertEqual(s.reclaimed_lamports, 300)
        self.assertAlmostEqual(s.success_rate, 200 / 3)


if __name__ == "__main__":
    unittest.main()
