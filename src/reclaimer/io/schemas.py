from __future__ import annotations

import base64
import json
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Sequence

from reclaimer.core.dto import AccountSnapshot
from reclaimer.core.models import (
    BatchOperation,
    ExecutionResult,
    ExecutionSummary,
    RecoveryBreakdown,
    SafetyReport,
)


def _dec_to_str(x: Decimal) -> str:
    # keep as string for JSON precision safety
    return format(x, "f")


# ---- inputs ----

def snapshot_from_dict(d: Dict[str, Any]) -> AccountSnapshot:
    """
    Accepts the snapshot file format: `data` as base64 text, an RPC
    `[b64, "base64"]` pair, or a jsonParsed object.
    """
    raw = d.get("data")
    data: Any = None
    if isinstance(raw, str):
        data = base64.b64decode(raw)
    elif isinstance(raw, list) and raw:
        data = base64.b64decode(raw[0])
    elif isinstance(raw, dict):
        data = raw

    data_len = d.get("data_len", d.get("space"))
    if data_len is None:
        data_len = len(data) if isinstance(data, bytes) else 0

    return AccountSnapshot(
        address=str(d["address"]),
        owner=str(d["owner"]),
        lamports=int(d.get("lamports", 0)),
        data_len=int(data_len),
        data=data,
        executable=bool(d.get("executable", False)),
    )


def snapshots_from_list(rows: Iterable[Dict[str, Any]]) -> List[AccountSnapshot]:
    return [snapshot_from_dict(r) for r in rows]


# ---- outputs ----

def breakdown_to_dict(b: RecoveryBreakdown) -> Dict[str, Any]:
    return {
        "candidate_count": b.candidate_count,
        "operation_count": b.operation_count,
        "total_reclaimable": b.total_reclaimable,
        "total_reclaimable_sol": _dec_to_str(b.total_reclaimable_sol),
        "per_mint": dict(b.per_mint),
        "per_wallet": dict(b.per_wallet),
        "tokens_burned": dict(b.tokens_burned),
        "skipped": [
            {
                "address": s.address,
                "reason": s.reason.value,
                "category": s.reason.category,
                "detail": s.detail,
            }
            for s in b.skipped
        ],
    }


def operations_to_list(ops: Sequence[BatchOperation]) -> List[Dict[str, Any]]:
    return [
        {
            "op_id": op.op_id,
            "kind": op.kind.value,
            "steps": [s.value for s in op.steps],
            "accounts": list(op.accounts),
            "mint": op.mint,
            "wallet": op.wallet,
            "token_amount": op.token_amount,
            "reclaim_lamports": op.reclaim_lamports,
            "reason": op.reason.value,
            "destination": op.destination,
        }
        for op in ops
    ]


def results_to_list(results: Sequence[ExecutionResult]) -> List[Dict[str, Any]]:
    return [
        {
            "op_id": r.op_id,
            "status": r.status.value,
            "signature": r.receipt.signature if r.receipt else None,
            "cause": r.cause.value if r.cause else None,
            "retryable": r.retryable,
            "skip_cause": r.skip_cause.value if r.skip_cause else None,
            "attempts": r.attempts,
            "message": r.message,
        }
        for r in results
    ]


def summary_to_dict(s: ExecutionSummary) -> Dict[str, Any]:
    return {
        "succeeded": s.succeeded,
        "already_done": s.already_done,
        "failed": s.failed,
        "skipped": s.skipped,
        "reclaimed_lamports": s.reclaimed_lamports,
        "success_rate": round(s.success_rate, 2),
    }


def safety_report_to_dict(r: SafetyReport) -> Dict[str, Any]:
    return {
        "approved": r.approved,
        "requires_confirmation": r.requires_confirmation,
        "risk_level": r.risk_level.value,
        "sender": r.sender_display,
        "recipient": r.recipient_display,
        "amount": r.amount_display,
        "warnings": list(r.warnings),
        "blockers": list(r.blockers),
    }


def plan_to_dict(ops: Sequence[BatchOperation], breakdown: RecoveryBreakdown) -> Dict[str, Any]:
    return {
        "operations": operations_to_list(ops),
        "breakdown": breakdown_to_dict(breakdown),
    }


def plan_to_json(ops: Sequence[BatchOperation], breakdown: RecoveryBreakdown) -> str:
    # sorted keys: identical plans serialize to identical text
    return json.dumps(plan_to_dict(ops, breakdown), indent=2, sort_keys=True)
