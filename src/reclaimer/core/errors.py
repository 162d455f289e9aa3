from __future__ import annotations

from typing import Any, Dict, Optional

from reclaimer.core.enums import LedgerErrorKind


class ReclaimerError(Exception):
    pass


class ParseError(ReclaimerError):
    pass


class ConfigError(ReclaimerError):
    pass


class GraphError(ReclaimerError):
    pass


class BatchError(ReclaimerError):
    """
    A packed transaction failed as a unit.

    Carries the ledger error, the transaction that failed and any per-operation
    results already settled before the failure.
    """

    def __init__(
        self,
        message: str,
        cause: "LedgerError",
        transaction: Any = None,
        settled: Optional[Dict[str, Any]] = None,
        attempts: int = 0,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.transaction = transaction
        self.settled = settled or {}
        self.attempts = attempts


class LedgerError(ReclaimerError):
    retryable = False

    def __init__(
        self,
        kind: LedgerErrorKind,
        message: str = "",
        account: Optional[str] = None,
    ) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.account = account

    @property
    def attributable(self) -> bool:
        # errors that point at one instruction's account rather than the payer
        return self.account is not None or self.kind in (
            LedgerErrorKind.ACCOUNT_NOT_FOUND,
            LedgerErrorKind.ALREADY_CLOSED,
            LedgerErrorKind.INVALID_INSTRUCTION,
        )


class RetryableLedgerError(LedgerError):
    retryable = True


class NetworkError(RetryableLedgerError):
    def __init__(self, message: str = "") -> None:
        super().__init__(LedgerErrorKind.NETWORK, message)


class RateLimitError(RetryableLedgerError):
    def __init__(self, message: str = "") -> None:
        super().__init__(LedgerErrorKind.RATE_LIMIT, message)


class SubmissionTimeout(RetryableLedgerError):
    def __init__(self, message: str = "") -> None:
        super().__init__(LedgerErrorKind.TIMEOUT, message)


class FatalLedgerError(LedgerError):
    pass
