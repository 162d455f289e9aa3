from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, FrozenSet, List, Optional, Tuple, Union

from reclaimer.config import settings
from reclaimer.core.dto import (
    AccountSnapshot,
    InstructionDescriptor,
    MetadataData,
    MintData,
    Receipt,
    TokenAccountData,
)
from reclaimer.core.enums import (
    AccountKind,
    EdgeKind,
    ExecutionStatus,
    FailureCause,
    OperationKind,
    ReclaimReason,
    RiskLevel,
    SkipCause,
    SkipReason,
)
from reclaimer.core.errors import ConfigError



# Graph models

@dataclass(frozen=True)
class AccountNode:

    snapshot: AccountSnapshot
    kind: AccountKind
    fetch_index: int
    parsed: Union[TokenAccountData, MintData, MetadataData, None] = None
    is_associated: bool = False
    parse_error: Optional[str] = None

    @property
    def address(self) -> str:
        return self.snapshot.address

    @property
    def lamports(self) -> int:
        return self.snapshot.lamports

    @property
    def mint(self) -> Optional[str]:
        if isinstance(self.parsed, (TokenAccountData, MetadataData)):
            return self.parsed.mint
        return None

    @property
    def wallet(self) -> Optional[str]:
        if isinstance(self.parsed, TokenAccountData):
            return self.parsed.owner
        return None

    @property
    def token_amount(self) -> Optional[int]:
        if isinstance(self.parsed, TokenAccountData):
            return self.parsed.amount
        return None


@dataclass(frozen=True)
class Edge:

    source: str
    target: str
    kind: EdgeKind



# Planning models

@dataclass(frozen=True)
class CloseCriteria:
    """
    What `AccountGraph.find_closeable` yields.

    Empty token accounts always qualify; dust and funded accounts are opt-in.
    """

    dust_threshold: int = 0           # 0 = no dust candidates
    include_funded: bool = False


@dataclass(frozen=True)
class CleanupCandidate:
    address: str
    lamports: int
    token_amount: Optional[int]
    kind: AccountKind
    reason: ReclaimReason
    mint: Optional[str] = None
    wallet: Optional[str] = None


@dataclass(frozen=True)
class EmptyOnly:
    pass


@dataclass(frozen=True)
class BelowDustThreshold:
    threshold: int

    def __post_init__(self) -> None:
        if self.threshold <= 0:
            raise ConfigError("dust threshold must be > 0")


@dataclass(frozen=True)
class BurnAndClose:
    pass


@dataclass(frozen=True)
class AggregateAndClose:
    target: str


CleanupStrategy = Union[EmptyOnly, BelowDustThreshold, BurnAndClose, AggregateAndClose]


class CleanupPriority:
    HIGH_VALUE = "high-value"
    QUICK_WINS = "quick-wins"
    BY_MINT = "by-mint"
    OLDEST_FIRST = "oldest-first"

    ALL = (HIGH_VALUE, QUICK_WINS, BY_MINT, OLDEST_FIRST)


@dataclass(frozen=True)
class MintFilter:
    include: FrozenSet[str] = frozenset()
    exclude: FrozenSet[str] = frozenset()

    def allows(self, mint: Optional[str]) -> bool:
        # include-set wins over exclude-set when both are given
        if self.include:
            return mint in self.include
        return mint not in self.exclude


@dataclass(frozen=True)
class SkippedAccount:
    address: str
    reason: SkipReason
    detail: str = ""


@dataclass(frozen=True)
class BatchOperation:
    op_id: str
    kind: OperationKind
    steps: Tuple[OperationKind, ...]
    accounts: Tuple[str, ...]          # accounts the operation writes
    mint: Optional[str]
    wallet: Optional[str]
    token_amount: int
    reclaim_lamports: int
    reason: ReclaimReason
    destination: Optional[str] = None  # aggregation target
    fetch_index: int = 0
    token_program: str = settings.TOKEN_PROGRAM_ID

    @property
    def primary_account(self) -> str:
        return self.accounts[0]


@dataclass(frozen=True)
class RecoveryBreakdown:
    candidate_count: int
    operation_count: int
    total_reclaimable: int
    per_mint: Dict[str, int]
    per_wallet: Dict[str, int]
    tokens_burned: Dict[str, int]
    skipped: Tuple[SkippedAccount, ...]

    @property
    def total_reclaimable_sol(self) -> Decimal:
        return Decimal(self.total_reclaimable) / Decimal(settings.LAMPORTS_PER_SOL)



# Execution models

@dataclass(frozen=True)
class TransactionConfig:
    max_tx_bytes: int = settings.MAX_TX_BYTES
    max_compute_units: int = settings.MAX_COMPUTE_UNITS
    max_retries: int = settings.MAX_RETRIES
    backoff_base: float = settings.BACKOFF_BASE_SEC
    backoff_cap: float = settings.BACKOFF_CAP_SEC
    concurrency_limit: int = settings.CONCURRENCY_LIMIT
    abort_on_first_failure: bool = False

    # optional knobs
    num_signers: int = 1
    confirm_timeout: float = settings.CONFIRM_TIMEOUT_SEC
    confirm_poll_interval: float = settings.CONFIRM_POLL_SEC

    def __post_init__(self) -> None:
        if self.max_tx_bytes <= 0 or self.max_compute_units <= 0:
            raise ConfigError("transaction ceilings must be > 0")
        if self.max_retries < 0:
            raise ConfigError("max_retries must be >= 0")
        if self.concurrency_limit < 1:
            raise ConfigError("concurrency_limit must be >= 1")
        if self.backoff_base < 0 or self.backoff_cap < self.backoff_base:
            raise ConfigError("backoff_cap must be >= backoff_base >= 0")
        if self.num_signers < 1:
            raise ConfigError("num_signers must be >= 1")


@dataclass(frozen=True)
class PackedTransaction:
    index: int
    operations: Tuple[BatchOperation, ...]
    instructions: Tuple[InstructionDescriptor, ...]
    size_bytes: int = 0
    compute_units: int = 0

    @property
    def accounts(self) -> FrozenSet[str]:
        out = set()
        for op in self.operations:
            out.update(op.accounts)
        return frozenset(out)

    @property
    def write_locks(self) -> FrozenSet[str]:
        """
        Accounts this transaction writes: operation accounts plus every writable,
        non-signer instruction account (mints written by burns, transfer targets).

        Operation wallets are left out. They sign, pay fees and receive rent in
        every transaction, and lamport credits to them commute.
        """
        wallets = {op.wallet for op in self.operations if op.wallet}
        out = set(self.accounts)
        for ix in self.instructions:
            out.update(
                a.address for a in ix.accounts
                if a.is_writable and not a.is_signer and a.address not in wallets
            )
        return frozenset(out)


@dataclass(frozen=True)
class ExecutionResult:
    op_id: str
    status: ExecutionStatus
    receipt: Optional[Receipt] = None
    cause: Optional[FailureCause] = None
    retryable: bool = False
    skip_cause: Optional[SkipCause] = None
    attempts: int = 0
    message: str = ""

    @classmethod
    def success(cls, op_id: str, receipt: Receipt, attempts: int) -> "ExecutionResult":
        return cls(op_id=op_id, status=ExecutionStatus.SUCCESS, receipt=receipt, attempts=attempts)

    @classmethod
    def success_already(cls, op_id: str, attempts: int) -> "ExecutionResult":
        return cls(op_id=op_id, status=ExecutionStatus.SUCCESS_ALREADY, attempts=attempts)

    @classmethod
    def failed(
        cls,
        op_id: str,
        cause: FailureCause,
        retryable: bool,
        message: str = "",
        attempts: int = 0,
    ) -> "ExecutionResult":
        return cls(
            op_id=op_id,
            status=ExecutionStatus.FAILED,
            cause=cause,
            retryable=retryable,
            message=message,
            attempts=attempts,
        )

    @classmethod
    def skipped(cls, op_id: str, skip_cause: SkipCause) -> "ExecutionResult":
        return cls(op_id=op_id, status=ExecutionStatus.SKIPPED, skip_cause=skip_cause)

    @property
    def ok(self) -> bool:
        return self.status in (ExecutionStatus.SUCCESS, ExecutionStatus.SUCCESS_ALREADY)


@dataclass(frozen=True)
class ExecutionSummary:
    succeeded: int
    already_done: int
    failed: int
    skipped: int
    reclaimed_lamports: int

    @property
    def success_rate(self) -> float:
        attempted = self.succeeded + self.already_done + self.failed
        if attempted == 0:
            return 100.0
        return (self.succeeded + self.already_done) / attempted * 100.0



# Safety models

@dataclass(frozen=True)
class SafetyConfig:
    reference_price: Optional[Decimal] = None       # USD per whole token
    large_amount_threshold: Decimal = settings.LARGE_AMOUNT_THRESHOLD_USD
    strict_mode: bool = False
    allow_self_transfer: bool = False
    blocked_recipients: FrozenSet[str] = frozenset(settings.BLOCKED_RECIPIENTS)
    known_recipients: FrozenSet[str] = frozenset()


@dataclass
class SafetyReport:
    approved: bool = True
    requires_confirmation: bool = False
    warnings: List[str] = field(default_factory=list)
    blockers: List[str] = field(default_factory=list)
    risk_level: RiskLevel = RiskLevel.LOW

    sender_display: str = ""
    recipient_display: str = ""
    amount_display: str = ""

    def summary(self) -> str:
        status = "APPROVED" if self.approved else "BLOCKED"
        lines = [
            f"Safety Report: {status} (Risk: {self.risk_level.value.upper()})",
            f"Transfer: {self.sender_display} -> {self.recipient_display}",
            f"Amount: {self.amount_display}",
        ]
        if self.warnings:
            lines.append(f"Warnings ({len(self.warnings)}):")
            lines.extend(f"  - {w}" for w in self.warnings)
        if self.blockers:
            lines.append(f"Blockers ({len(self.blockers)}):")
            lines.extend(f"  - {b}" for b in self.blockers)
        return "\n".join(lines)
