from __future__ import annotations

import json
from pathlib import Path
from typing import Optional, Sequence

from reclaimer.core.models import BatchOperation, ExecutionResult, RecoveryBreakdown, SafetyReport
from reclaimer.core.rent import lamports_to_sol
from reclaimer.io.schemas import plan_to_json, results_to_list, safety_report_to_dict, summary_to_dict
from reclaimer.services.executor import summarize


def _out_path(out_dir: str, filename: str) -> Path:
    p = Path(out_dir)
    p.mkdir(parents=True, exist_ok=True)
    return p / filename


def write_plan_json(
    ops: Sequence[BatchOperation],
    breakdown: RecoveryBreakdown,
    out_dir: str,
    filename: str = "plan.json",
) -> str:
    out_path = _out_path(out_dir, filename)
    with out_path.open("w", encoding="utf-8") as f:
        f.write(plan_to_json(ops, breakdown))
        f.write("\n")
    return str(out_path)


def write_results_json(
    results: Sequence[ExecutionResult],
    ops: Sequence[BatchOperation],
    out_dir: str,
    filename: str = "results.json",
) -> str:
    out_path = _out_path(out_dir, filename)
    payload = {
        "summary": summary_to_dict(summarize(results, ops)),
        "results": results_to_list(results),
    }
    with out_path.open("w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2)
    return str(out_path)


def write_safety_json(report: SafetyReport, out_dir: str, filename: str = "safety.json") -> str:
    out_path = _out_path(out_dir, filename)
    with out_path.open("w", encoding="utf-8") as f:
        json.dump(safety_report_to_dict(report), f, indent=2)
    return str(out_path)


def write_summary_md(
    ops: Sequence[BatchOperation],
    breakdown: RecoveryBreakdown,
    out_dir: str,
    filename: str = "summary.md",
    results: Optional[Sequence[ExecutionResult]] = None,
) -> str:
    """
    Operator-friendly summary of a plan, and of its execution when results are given.
    """
    out_path = _out_path(out_dir, filename)

    def sol(lamports: int) -> str:
        return f"{lamports_to_sol(lamports):.6f}"

    def short(addr: str) -> str:
        return addr if len(addr) <= 14 else f"{addr[:6]}...{addr[-4:]}"

    lines = []
    lines.append("# Rent Recovery Summary\n")
    lines.append(f"- Operations: **{breakdown.operation_count}**\n")
    lines.append(f"- Reclaimable: **{sol(breakdown.total_reclaimable)} SOL** ({breakdown.total_reclaimable} lamports)\n")
    lines.append(f"- Skipped accounts: **{len(breakdown.skipped)}**\n")
    lines.append("\n")

    lines.append("## Reclaimable by Mint\n\n")
    if not breakdown.per_mint:
        lines.append("_Nothing to reclaim._\n\n")
    else:
        top = sorted(breakdown.per_mint.items(), key=lambda x: (-x[1], x[0]))[:15]
        for mint, lamports in top:
            lines.append(f"- **{sol(lamports)} SOL** | {mint}\n")
        lines.append("\n")

    lines.append("## Reclaimable by Wallet\n\n")
    if not breakdown.per_wallet:
        lines.append("_Nothing to reclaim._\n\n")
    else:
        for wallet, lamports in sorted(breakdown.per_wallet.items(), key=lambda x: (-x[1], x[0])):
            lines.append(f"- **{sol(lamports)} SOL** | {wallet}\n")
        lines.append("\n")

    if breakdown.tokens_burned:
        lines.append("## Tokens Burned\n\n")
        for mint, amount in breakdown.tokens_burned.items():
            lines.append(f"- {amount} raw units | {mint}\n")
        lines.append("\n")

    lines.append("## Skipped\n\n")
    if not breakdown.skipped:
        lines.append("_No accounts skipped._\n\n")
    else:
        counts = {}
        for s in breakdown.skipped:
            counts[s.reason.value] = counts.get(s.reason.value, 0) + 1
        for reason, count in sorted(counts.items()):
            lines.append(f"- **{reason}**: {count}\n")
        lines.append("\n")

    if results is not None:
        s = summarize(results, ops)
        lines.append("## Execution\n\n")
        lines.append(f"- Succeeded: **{s.succeeded}**\n")
        lines.append(f"- Already done: **{s.already_done}**\n")
        lines.append(f"- Failed: **{s.failed}**\n")
        lines.append(f"- Skipped: **{s.skipped}**\n")
        lines.append(f"- Reclaimed: **{sol(s.reclaimed_lamports)} SOL**\n")
        lines.append(f"- Success rate: **{s.success_rate:.1f}%**\n\n")

        failures = [r for r in results if r.cause is not None]
        if failures:
            lines.append("### Failures\n\n")
            for r in failures:
                retry = "retryable" if r.retryable else "fatal"
                lines.append(f"- {short(r.op_id)} | {r.cause.value} ({retry}) | {r.message}\n")
            lines.append("\n")

    lines.append("## Operations\n\n")
    if not ops:
        lines.append("_No operations planned._\n")
    else:
        for op in ops:
            steps = " + ".join(s.value for s in op.steps)
            lines.append(
                f"- `{op.op_id}` | {steps} | {sol(op.reclaim_lamports)} SOL "
                f"| mint {short(op.mint or '-')} | {op.reason.value}\n"
            )

    with out_path.open("w", encoding="utf-8") as f:
        f.writelines(lines)

    return str(out_path)
