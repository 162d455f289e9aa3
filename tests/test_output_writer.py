import base64
import json
import os
import tempfile
import unittest
from unittest import mock

from reclaimer.cli import main as cli
from reclaimer.config import settings
from reclaimer.core.enums import FailureCause, SkipCause
from reclaimer.core.models import BurnAndClose, ExecutionResult
from reclaimer.io.output_writer import write_plan_json, write_results_json, write_summary_md
from reclaimer.io.schemas import snapshot_from_dict
from reclaimer.services.graph_builder import GraphBuilder
from reclaimer.services.planner import RecoveryPlanner

from fixtures import key, token_account_bytes, token_snapshot


class SnapshotInputTests(unittest.TestCase):
    def test_data_encodings(self) -> None:
        raw = token_account_bytes(key(2), key(1), amount=3)
        b64 = base64.b64encode(raw).decode()
        base = {"address": key(10), "owner": settings.TOKEN_PROGRAM_ID, "lamports": 2_039_280}

        self.assertEqual(snapshot_from_dict({**base, "data": b64}).data, raw)
        self.assertEqual(snapshot_from_dict({**base, "data": [b64, "base64"]}).data_len, 165)

        parsed = {"parsed": {"info": {}}, "program": "spl-token"}
        snap = snapshot_from_dict({**base, "data": parsed, "space": 165})
        self.assertEqual((snap.data, snap.data_len), (parsed, 165))

        empty = snapshot_from_dict({"address": key(1), "owner": settings.SYSTEM_PROGRAM_ID, "lamports": 5})
        self.assertEqual((empty.data, empty.data_len), (None, 0))


class OutputWriterTests(unittest.TestCase):
    def setUp(self) -> None:
        self.wallet, self.mint = key(1), key(2)
        graph = GraphBuilder().build([
            token_snapshot(key(10), self.mint, self.wallet, amount=0),
            token_snapshot(key(11), self.mint, self.wallet, amount=4),
            token_snapshot(key(12), self.mint, self.wallet, amount=1, state=2),
        ])
        self.ops, self.breakdown = RecoveryPlanner().plan(graph, BurnAndClose())
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)

    def test_plan_json(self) -> None:
        path = write_plan_json(self.ops, self.breakdown, self.tmp.name)
        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        self.assertEqual(len(data["operations"]), 2)
        self.assertEqual(data["breakdown"]["total_reclaimable"], 2 * 2_039_280)
        self.assertEqual(data["breakdown"]["tokens_burned"], {self.mint: 4})
        self.assertEqual(data["breakdown"]["skipped"][0]["reason"], "frozen")
        self.assertEqual(data["breakdown"]["skipped"][0]["category"], "strategy-mismatch")

    def test_results_json(self) -> None:
        results = [
            ExecutionResult.failed(self.ops[0].op_id, FailureCause.NETWORK, True, "down", 4),
            ExecutionResult.skipped(self.ops[1].op_id, SkipCause.ABORTED),
        ]
        path = write_results_json(results, self.ops, os.path.join(self.tmp.name, "nested"))
        with open(path, encoding="utf-8") as f:
            data = json.load(f)

        self.assertEqual(data["summary"]["failed"], 1)
        self.assertEqual(data["summary"]["skipped"], 1)
        self.assertEqual(data["results"][0]["cause"], "Network")
        self.assertTrue(data["results"][0]["retryable"])
        self.assertEqual(data["results"][1]["skip_cause"], "Aborted")

    def test_summary_md(self) -> None:
        results = [ExecutionResult.success_already(op.op_id, 1) for op in self.ops]
        path = write_summary_md(self.ops, self.breakdown, self.tmp.name, results=results)
        with open(path, encoding="utf-8") as f:
            text = f.read()

        self.assertTrue(text.startswith("# Rent Recovery Summary"))
        self.assertIn("## Tokens Burned", text)
        self.assertIn("**frozen**: 1", text)
        self.assertIn("- Already done: **2**", text)
        self.assertIn("Burn + Close", text)


class CliTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self.tmp.cleanup)
        wallet, mint = key(1), key(2)
        rows = []
        for i, amount in enumerate((0, 0, 7)):
            raw = token_account_bytes(mint, wallet, amount=amount)
            rows.append({
                "address": key(10 + i),
                "owner": settings.TOKEN_PROGRAM_ID,
                "lamports": 2_039_280,
                "data": base64.b64encode(raw).decode(),
            })
        self.snapshots = os.path.join(self.tmp.name, "snapshots.json")
        with open(self.snapshots, "w", encoding="utf-8") as f:
            json.dump({"accounts": rows}, f)
        self.out = os.path.join(self.tmp.name, "out")

    def _run(self, *argv) -> int:
        with mock.patch("sys.argv", ["reclaimer", *argv]), mock.patch("builtins.print"):
            return cli.main()

    def _load(self, name):
        with open(os.path.join(self.out, name), encoding="utf-8") as f:
            return json.load(f)

    def test_dry_run_writes_plan_and_summary(self) -> None:
        code = self._run("--snapshots", self.snapshots, "--out", self.out, "--log-level", "WARNING")

        self.assertEqual(code, 0)
        self.assertEqual(len(self._load("plan.json")["operations"]), 2)
        self.assertTrue(os.path.exists(os.path.join(self.out, "summary.md")))
        self.assertFalse(os.path.exists(os.path.join(self.out, "results.json")))

    def test_execute_against_static_ledger(self) -> None:
        code = self._run(
            "--snapshots", self.snapshots, "--out", self.out, "--strategy", "burn",
            "--execute", "--use-static", "--concurrency", "2", "--log-level", "WARNING",
        )

        self.assertEqual(code, 0)
        results = self._load("results.json")
        self.assertEqual(results["summary"]["succeeded"], 3)

    def test_aggregate_without_target_is_usage_error(self) -> None:
        self.assertEqual(self._run("--snapshots", self.snapshots, "--strategy", "aggregate", "--out", self.out), 2)

    def test_transfer_check(self) -> None:
        sender = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
        recipient = "GKvqsuNcnwWqPzzuhLmGi4rzzh55FhJtGizkhHaEJqiV"
        base = ["--check-transfer", "--sender", sender, "--decimals", "9", "--balance", "10", "--out", self.out]

        self.assertEqual(self._run(*base, "--recipient", recipient, "--amount", "1.5"), 0)
        self.assertEqual(self._load("safety.json")["risk_level"], "Low")

        self.assertEqual(self._run(*base, "--recipient", sender, "--amount", "1.5"), 1)
        self.assertEqual(self._run(*base, "--recipient", recipient, "--amount", "abc"), 2)


if __name__ == "__main__":
    unittest.main()
