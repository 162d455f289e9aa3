from __future__ import annotations

from enum import Enum


class AccountKind(str, Enum):
    SYSTEM_ACCOUNT = "SystemAccount"
    TOKEN_ACCOUNT = "TokenAccount"
    MINT = "Mint"
    METADATA_ACCOUNT = "MetadataAccount"
    PROGRAM_ACCOUNT = "ProgramAccount"
    UNKNOWN = "Unknown"


class EdgeKind(str, Enum):
    OWNED_BY = "OwnedBy"
    MINT_OF = "MintOf"
    METADATA_OF = "MetadataOf"
    ASSOCIATED_TOKEN_OF = "AssociatedTokenOf"


class ReclaimReason(str, Enum):
    EMPTY = "Empty"
    BELOW_DUST_THRESHOLD = "BelowDustThreshold"
    FORCED_BURN = "ForcedBurn"


class SkipReason(str, Enum):
    FILTERED_OUT = "filtered out"
    UNKNOWN_CLASSIFICATION = "unknown classification"
    NONZERO_BALANCE = "nonzero balance"
    EXCESS_NATIVE_BALANCE = "excess native balance"
    ABOVE_DUST_THRESHOLD = "above dust threshold"
    FROZEN = "frozen"
    DELEGATED = "delegated"
    MINT_MISMATCH = "mint mismatch"
    AGGREGATION_TARGET = "aggregation target"

    @property
    def category(self) -> str:
        if self is SkipReason.FILTERED_OUT:
            return "filtered-out"
        if self is SkipReason.UNKNOWN_CLASSIFICATION:
            return "unknown-classification"
        return "strategy-mismatch"


class OperationKind(str, Enum):
    CLOSE = "Close"
    BURN = "Burn"
    TRANSFER = "Transfer"
    AGGREGATE = "Aggregate"


class ExecutionStatus(str, Enum):
    SUCCESS = "Success"
    SUCCESS_ALREADY = "SuccessAlready"
    FAILED = "Failed"
    SKIPPED = "Skipped"


class FailureCause(str, Enum):
    NETWORK = "Network"
    RATE_LIMIT = "RateLimit"
    TIMEOUT = "Timeout"
    INSUFFICIENT_FUNDS = "InsufficientFunds"
    ACCOUNT_NOT_FOUND = "AccountNotFound"
    ALREADY_CLOSED = "AlreadyClosed"
    INVALID_INSTRUCTION = "InvalidInstruction"
    CONFIG_ERROR = "ConfigError"


class SkipCause(str, Enum):
    CANCELLED = "Cancelled"
    ABORTED = "Aborted"


# Ledger error kinds line up with failure causes one-to-one
LedgerErrorKind = FailureCause


class TxStatus(str, Enum):
    CONFIRMED = "Confirmed"
    PENDING = "Pending"
    FAILED = "Failed"


class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"
    CRITICAL = "Critical"


class RetryState(str, Enum):
    PENDING = "Pending"
    WAITING = "Waiting"
    RETRYING = "Retrying"
    TERMINAL = "Terminal"
