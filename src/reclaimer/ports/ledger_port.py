from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

from reclaimer.core.dto import AccountSnapshot, Receipt
from reclaimer.core.enums import TxStatus
from reclaimer.core.models import PackedTransaction, TransactionConfig


class LedgerPort(ABC):
    """
    Abstract async access to the ledger: account reads and transaction submission.

    Submission failures are raised as RetryableLedgerError / FatalLedgerError.
    """

    # --- Account reads ---

    @abstractmethod
    async def fetch_accounts(self, addresses: Sequence[str]) -> List[Optional[AccountSnapshot]]:
        """One entry per address, None where the account does not exist."""
        raise NotImplementedError

    @abstractmethod
    async def fetch_wallet_accounts(self, wallet: str) -> List[AccountSnapshot]:
        raise NotImplementedError

    @abstractmethod
    async def get_balance(self, address: str) -> int:
        raise NotImplementedError

    # --- Submission ---

    @abstractmethod
    async def send_transaction(self, tx: PackedTransaction, config: TransactionConfig) -> Receipt:
        raise NotImplementedError

    @abstractmethod
    async def get_status(self, receipt: Receipt) -> TxStatus:
        raise NotImplementedError
