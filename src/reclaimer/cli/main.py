from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from loguru import logger

from reclaimer.config import settings
from reclaimer.core.dto import AccountSnapshot
from reclaimer.core.errors import ConfigError, LedgerError, ReclaimerError
from reclaimer.core.models import (
    AggregateAndClose,
    BelowDustThreshold,
    BurnAndClose,
    CleanupPriority,
    CleanupStrategy,
    EmptyOnly,
    MintFilter,
    SafetyConfig,
    TransactionConfig,
)
from reclaimer.io.output_writer import write_plan_json, write_results_json, write_safety_json, write_summary_md
from reclaimer.io.schemas import snapshots_from_list
from reclaimer.ports.ledger_port import LedgerPort
from reclaimer.services.executor import ConcurrentBatchExecutor, SequentialBatchExecutor, summarize
from reclaimer.services.graph_builder import GraphBuilder
from reclaimer.services.planner import RecoveryPlanner
from reclaimer.services.safety import AmountValidator, SafetyProtocol

from reclaimer.adapters.instructions.associated_token import derive_associated_token_address
from reclaimer.adapters.instructions.spl_instruction_adapter import SplInstructionBuilder
from reclaimer.adapters.ledger.rpc_ledger_adapter import RpcLedgerAdapter
from reclaimer.adapters.ledger.static_ledger_adapter import StaticLedgerAdapter


STRATEGIES = ("empty", "dust", "burn", "aggregate")


# -------------------------
# Logging
# -------------------------

class InterceptHandler(logging.Handler):
    """
    Redirects standard logging (urllib3, requests) into loguru.
    """

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno

        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1

        logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        level=level,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <7}</level> | {message}",
    )
    if log_file:
        logger.add(
            log_file,
            rotation="10 MB",
            retention="1 week",
            level="DEBUG",
            format="{time:YYYY-MM-DD at HH:mm:ss} | {level} | {name}:{function}:{line} - {message}",
        )

    logging.basicConfig(handlers=[InterceptHandler()], level=0, force=True)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


# -------------------------
# Arguments
# -------------------------

def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="reclaimer", description="Plan and execute rent recovery from abandoned token accounts")
    p.add_argument("--snapshots", help="JSON file with account snapshots to plan from")
    p.add_argument("--wallet", help="Discover the wallet's token accounts over RPC")
    p.add_argument("--strategy", choices=STRATEGIES, default="empty", help="Cleanup strategy")
    p.add_argument("--dust-threshold", type=int, default=0, help="Raw token amount below which balances are dust (strategy=dust)")
    p.add_argument("--aggregate-target", help="Token account that receives balances (strategy=aggregate)")
    p.add_argument("--priority", choices=CleanupPriority.ALL, default=CleanupPriority.HIGH_VALUE, help="Plan ordering")
    p.add_argument("--include-mint", action="append", default=[], help="Only plan for this mint (repeatable)")
    p.add_argument("--exclude-mint", action="append", default=[], help="Never plan for this mint (repeatable)")
    p.add_argument("--out", default="out", help="Output folder")
    p.add_argument("--execute", action="store_true", help="Submit the plan (default is a dry run)")
    p.add_argument("--concurrency", type=int, default=settings.CONCURRENCY_LIMIT, help="Max in-flight transactions (1 = sequential)")
    p.add_argument("--abort-on-failure", action="store_true", help="Stop submitting after the first failed transaction")
    p.add_argument("--use-static", action="store_true", help="Execute against an in-memory ledger built from the snapshots (dev/testing)")

    p.add_argument("--check-transfer", action="store_true", help="Run the offline transfer safety check instead of planning")
    p.add_argument("--sender", help="Transfer sender address")
    p.add_argument("--recipient", help="Transfer recipient address")
    p.add_argument("--amount", help="Transfer amount in whole tokens, e.g. 1.5")
    p.add_argument("--decimals", type=int, default=9, help="Token decimals")
    p.add_argument("--balance", help="Sender balance in whole tokens")
    p.add_argument("--price", help="Reference USD price per whole token")
    p.add_argument("--known-recipient", action="append", default=[], help="Previously used recipient (typo check, repeatable)")
    p.add_argument("--strict", action="store_true", help="Treat every warning as a blocker")

    p.add_argument("--log-level", default=settings.LOG_LEVEL, help="Console log level")
    return p


def build_strategy(args: argparse.Namespace) -> CleanupStrategy:
    if args.strategy == "empty":
        return EmptyOnly()
    if args.strategy == "dust":
        return BelowDustThreshold(args.dust_threshold)
    if args.strategy == "burn":
        return BurnAndClose()
    if not args.aggregate_target:
        raise ConfigError("strategy=aggregate requires --aggregate-target")
    return AggregateAndClose(args.aggregate_target)


# -------------------------
# Modes
# -------------------------

def run_transfer_check(args: argparse.Namespace) -> int:
    missing = [n for n in ("sender", "recipient", "amount", "balance") if getattr(args, n) is None]
    if missing:
        print(f"Transfer check requires --{' --'.join(missing)}", file=sys.stderr)
        return 2

    try:
        amount = AmountValidator.to_raw(args.amount, args.decimals)
        balance = AmountValidator.to_raw(args.balance, args.decimals)
        price = Decimal(args.price) if args.price else None
    except (ValueError, InvalidOperation) as exc:
        print(f"Invalid amount: {exc}", file=sys.stderr)
        return 2

    cfg = SafetyConfig(
        reference_price=price,
        strict_mode=args.strict,
        known_recipients=frozenset(args.known_recipient),
    )
    report = SafetyProtocol(cfg).validate_offline(args.sender, args.recipient, amount, args.decimals, balance)

    print(report.summary())
    print(f"Wrote: {write_safety_json(report, args.out)}")
    return 0 if report.approved else 1


def load_snapshots(path: str) -> List[AccountSnapshot]:
    with open(path, "r", encoding="utf-8") as f:
        raw = json.load(f)
    rows = raw.get("accounts", []) if isinstance(raw, dict) else raw
    return snapshots_from_list(rows)


async def discover(ledger: LedgerPort, wallet: str) -> List[AccountSnapshot]:
    tokens = await ledger.fetch_wallet_accounts(wallet)

    # pull in the wallet and mints so ownership and mint edges can be drawn
    related = [wallet]
    for snap in tokens:
        if not isinstance(snap.data, dict):
            continue
        mint = ((snap.data.get("parsed") or {}).get("info") or {}).get("mint")
        if mint and mint not in related:
            related.append(mint)
    extra = await ledger.fetch_accounts(related)
    return tokens + [s for s in extra if s is not None]


def main() -> int:
    args = build_arg_parser().parse_args()
    setup_logging(args.log_level, settings.LOG_FILE)

    if args.check_transfer:
        return run_transfer_check(args)

    if not args.snapshots and not args.wallet:
        print("Missing --snapshots or --wallet", file=sys.stderr)
        return 2
    if args.concurrency < 1:
        print("--concurrency must be >= 1", file=sys.stderr)
        return 2

    try:
        strategy = build_strategy(args)
        mint_filter = MintFilter(frozenset(args.include_mint), frozenset(args.exclude_mint))
        tx_config = TransactionConfig(
            concurrency_limit=args.concurrency,
            abort_on_first_failure=args.abort_on_failure,
        )
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    rpc: Optional[RpcLedgerAdapter] = None
    try:
        if args.snapshots:
            snapshots = load_snapshots(args.snapshots)
        else:
            rpc = RpcLedgerAdapter()
            snapshots = asyncio.run(discover(rpc, args.wallet))

        graph = GraphBuilder(ata_resolver=derive_associated_token_address).build(snapshots)
        ops, breakdown = RecoveryPlanner().plan(graph, strategy, args.priority, mint_filter)
    except ConfigError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2
    except (ReclaimerError, OSError, ValueError, KeyError) as exc:
        logger.error("Planning failed: {}: {}", exc.__class__.__name__, exc)
        return 1

    print(f"Planned {breakdown.operation_count} operation(s), {breakdown.total_reclaimable_sol} SOL reclaimable")
    print(f"Wrote: {write_plan_json(ops, breakdown, args.out)}")

    if not args.execute:
        print(f"Wrote: {write_summary_md(ops, breakdown, args.out)}")
        return 0

    if args.use_static:
        ledger: LedgerPort = StaticLedgerAdapter(accounts=snapshots)
    else:
        ledger = rpc or RpcLedgerAdapter()

    executor_cls = ConcurrentBatchExecutor if args.concurrency > 1 else SequentialBatchExecutor
    executor = executor_cls(ledger, SplInstructionBuilder(), tx_config)
    try:
        results = asyncio.run(executor.execute(ops))
    except ConfigError as exc:
        print(f"Invalid plan: {exc}", file=sys.stderr)
        return 2
    except LedgerError as exc:
        logger.error("Execution failed: {}", exc)
        return 1

    s = summarize(results, ops)
    print(
        f"Executed: {s.succeeded} succeeded, {s.already_done} already done, "
        f"{s.failed} failed, {s.skipped} skipped"
    )
    print(f"Wrote: {write_results_json(results, ops, args.out)}")
    print(f"Wrote: {write_summary_md(ops, breakdown, args.out, results=results)}")
    return 0 if s.failed == 0 and s.skipped == 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
