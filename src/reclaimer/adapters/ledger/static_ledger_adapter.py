from __future__ import annotations

import asyncio
from typing import Dict, List, Optional, Sequence, Set, Tuple

from reclaimer.core.dto import AccountSnapshot, Receipt
from reclaimer.core.enums import LedgerErrorKind, OperationKind, TxStatus
from reclaimer.core.errors import FatalLedgerError, LedgerError
from reclaimer.core.models import PackedTransaction, TransactionConfig
from reclaimer.ports.ledger_port import LedgerPort


ANY_ACCOUNT = "*"


class StaticLedgerAdapter(LedgerPort):
    """
    In-memory ledger for dry runs and tests.

    Successful transactions remove every closed account and credit the rent to
    the operation's wallet. Failures are scripted per account (or ANY_ACCOUNT)
    and consumed in order.
    """

    def __init__(
        self,
        accounts: Optional[Sequence[AccountSnapshot]] = None,
        balances: Optional[Dict[str, int]] = None,
        latency: float = 0.0,
        pending_polls: int = 0,
    ) -> None:
        self._accounts: Dict[str, AccountSnapshot] = {a.address: a for a in (accounts or [])}
        self._balances: Dict[str, int] = dict(balances or {})
        self._latency = latency
        self._pending_polls = pending_polls

        self._failures: Dict[str, List[Tuple[LedgerError, bool]]] = {}
        self._polls: Dict[str, int] = {}
        self._in_flight: Dict[str, frozenset] = {}

        self.submissions: List[PackedTransaction] = []
        self.overlaps: List[Tuple[int, Set[str]]] = []
        self.max_in_flight = 0

    # ---------- scripting ----------

    def script_failure(self, account: str, error: LedgerError, applied: bool = False) -> None:
        """
        Raise `error` the next time a transaction touching `account` is sent.

        `applied=True` lands the transaction first, as when a confirmation is lost.
        """
        self._failures.setdefault(account, []).append((error, applied))

    def has_account(self, address: str) -> bool:
        return address in self._accounts

    # ---------- internal ----------

    def _next_failure(self, tx: PackedTransaction) -> Optional[Tuple[LedgerError, bool]]:
        for key in sorted(tx.accounts) + [ANY_ACCOUNT]:
            queue = self._failures.get(key)
            if queue:
                return queue.pop(0)
        return None

    def _check_live(self, tx: PackedTransaction) -> None:
        for op in tx.operations:
            if OperationKind.CLOSE in op.steps and op.primary_account not in self._accounts:
                raise FatalLedgerError(
                    LedgerErrorKind.ALREADY_CLOSED,
                    f"{op.primary_account} is not a live token account",
                    account=op.primary_account,
                )

    def _apply(self, tx: PackedTransaction) -> None:
        for op in tx.operations:
            if OperationKind.CLOSE in op.steps:
                snap = self._accounts.pop(op.primary_account, None)
                if snap is not None and op.wallet:
                    self._balances[op.wallet] = self._balances.get(op.wallet, 0) + snap.lamports

    # ---------- port methods ----------

    async def fetch_accounts(self, addresses: Sequence[str]) -> List[Optional[AccountSnapshot]]:
        return [self._accounts.get(a) for a in addresses]

    async def fetch_wallet_accounts(self, wallet: str) -> List[AccountSnapshot]:
        out = []
        for snap in self._accounts.values():
            data = snap.data
            if isinstance(data, dict):
                owner = ((data.get("parsed") or {}).get("info") or {}).get("owner")
                if owner == wallet:
                    out.append(snap)
        return out

    async def get_balance(self, address: str) -> int:
        return self._balances.get(address, 0)

    async def send_transaction(self, tx: PackedTransaction, config: TransactionConfig) -> Receipt:
        accounts = tx.write_locks
        busy = set()
        for other in self._in_flight.values():
            busy |= accounts & other
        if busy:
            self.overlaps.append((tx.index, busy))

        signature = f"sig-{len(self.submissions):05d}-tx{tx.index}"
        self.submissions.append(tx)
        self._in_flight[signature] = accounts
        self.max_in_flight = max(self.max_in_flight, len(self._in_flight))

        try:
            if self._latency:
                await asyncio.sleep(self._latency)

            scripted = self._next_failure(tx)
            if scripted is not None:
                error, applied = scripted
                if applied:
                    self._apply(tx)
                raise error

            self._check_live(tx)
            self._apply(tx)
        except LedgerError:
            self._in_flight.pop(signature, None)
            raise

        self._polls[signature] = 0
        return Receipt(signature=signature, slot=len(self.submissions))

    async def get_status(self, receipt: Receipt) -> TxStatus:
        seen = self._polls.get(receipt.signature)
        if seen is None:
            return TxStatus.FAILED
        if seen < self._pending_polls:
            self._polls[receipt.signature] = seen + 1
            if self._latency:
                await asyncio.sleep(self._latency)
            return TxStatus.PENDING
        self._in_flight.pop(receipt.signature, None)
        return TxStatus.CONFIRMED
