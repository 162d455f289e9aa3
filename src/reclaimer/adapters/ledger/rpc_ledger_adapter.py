from __future__ import annotations

import asyncio
import base64
import json
import os
from typing import Any, Dict, List, Optional, Sequence

import requests
from loguru import logger
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from reclaimer.config.settings import (
    KEYPAIR_PATH,
    RPC_COMMITMENT,
    RPC_MAX_ACCOUNTS_PER_CALL,
    RPC_MAX_RETRIES,
    RPC_REQUESTS_PER_SEC,
    RPC_TIMEOUT_SEC,
    RPC_URL,
    TOKEN_2022_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
)
from reclaimer.adapters.ledger.rate_limiter import SimpleRateLimiter, backoff_sleep
from reclaimer.core.dto import AccountSnapshot, InstructionDescriptor, Receipt
from reclaimer.core.enums import LedgerErrorKind, TxStatus
from reclaimer.core.errors import (
    FatalLedgerError,
    LedgerError,
    NetworkError,
    RateLimitError,
)
from reclaimer.core.models import PackedTransaction, TransactionConfig
from reclaimer.ports.ledger_port import LedgerPort


# SPL token error codes that mean the account is no longer a live token account
_TOKEN_ERR_UNINITIALIZED_STATE = 9
_CLOSED_INSTRUCTION_ERRORS = {"UninitializedAccount", "InvalidAccountData", "IncorrectProgramId"}

_CONFIRMED = {"confirmed": ("confirmed", "finalized"), "finalized": ("finalized",)}


class RpcLedgerAdapter(LedgerPort):
    """
    JSON-RPC ledger access over a shared requests.Session.

    Blocking HTTP runs in worker threads so the async executors can overlap lanes.
    """

    def __init__(
        self,
        rpc_url: Optional[str] = None,
        keypair: Optional[Keypair] = None,
        session: Optional[requests.Session] = None,
        max_retries: int = RPC_MAX_RETRIES,
        requests_per_sec: float = RPC_REQUESTS_PER_SEC,
    ) -> None:
        self._url = rpc_url or RPC_URL
        self._timeout = RPC_TIMEOUT_SEC
        self._max_retries = max(1, max_retries)
        self._commitment = RPC_COMMITMENT
        self._keypair = keypair

        self._rl = SimpleRateLimiter(requests_per_sec)
        self._session = session or requests.Session()
        self._ids = 0

    # ---------- internal ----------

    def _call(self, method: str, params: List[Any], tx: Optional[PackedTransaction] = None) -> Any:
        self._ids += 1
        payload = {"jsonrpc": "2.0", "id": self._ids, "method": method, "params": params}

        last_err: LedgerError = NetworkError(f"{method}: no attempt made")

        for attempt in range(self._max_retries):
            try:
                self._rl.wait()
                resp = self._session.post(self._url, json=payload, timeout=self._timeout)
            except requests.RequestException as e:
                last_err = NetworkError(f"{method}: {e}")
                self._backoff(attempt)
                continue

            if resp.status_code == 429:
                last_err = RateLimitError(f"{method}: HTTP 429")
                self._backoff(attempt)
                continue
            if resp.status_code >= 400:
                last_err = NetworkError(f"{method}: HTTP {resp.status_code}")
                self._backoff(attempt)
                continue

            try:
                data = resp.json()
            except ValueError as e:
                last_err = NetworkError(f"{method}: invalid JSON response: {e}")
                self._backoff(attempt)
                continue

            err = data.get("error")
            if err:
                mapped = map_rpc_error(err, tx)
                if isinstance(mapped, RateLimitError):
                    last_err = mapped
                    self._backoff(attempt)
                    continue
                raise mapped

            return data.get("result")

        logger.warning("RPC {} failed after {} attempt(s): {}", method, self._max_retries, last_err)
        raise last_err

    def _backoff(self, attempt: int) -> None:
        if attempt + 1 < self._max_retries:
            backoff_sleep(attempt)

    def _load_keypair(self) -> Keypair:
        if self._keypair is None:
            path = os.path.expanduser(KEYPAIR_PATH)
            with open(path, "r", encoding="utf-8") as f:
                self._keypair = Keypair.from_bytes(bytes(json.load(f)))
        return self._keypair

    # ---------- sync bodies ----------

    def _fetch_accounts_sync(self, addresses: Sequence[str]) -> List[Optional[AccountSnapshot]]:
        out: List[Optional[AccountSnapshot]] = []
        for i in range(0, len(addresses), RPC_MAX_ACCOUNTS_PER_CALL):
            chunk = list(addresses[i:i + RPC_MAX_ACCOUNTS_PER_CALL])
            result = self._call(
                "getMultipleAccounts",
                [chunk, {"encoding": "jsonParsed", "commitment": self._commitment}],
            )
            values = (result or {}).get("value") or []
            for addr, value in zip(chunk, values):
                out.append(snapshot_from_rpc(addr, value) if value else None)
            out.extend([None] * (len(chunk) - len(values)))
        return out

    def _fetch_wallet_accounts_sync(self, wallet: str) -> List[AccountSnapshot]:
        snaps: List[AccountSnapshot] = []
        for program_id in (TOKEN_PROGRAM_ID, TOKEN_2022_PROGRAM_ID):
            result = self._call(
                "getTokenAccountsByOwner",
                [wallet, {"programId": program_id}, {"encoding": "jsonParsed", "commitment": self._commitment}],
            )
            for item in (result or {}).get("value") or []:
                snaps.append(snapshot_from_rpc(item["pubkey"], item["account"]))
        logger.info("Discovered {} token account(s) for {}", len(snaps), wallet)
        return snaps

    def _send_sync(self, tx: PackedTransaction) -> Receipt:
        kp = self._load_keypair()
        payer = str(kp.pubkey())
        for d in tx.instructions:
            for ref in d.accounts:
                if ref.is_signer and ref.address != payer:
                    raise FatalLedgerError(
                        LedgerErrorKind.INVALID_INSTRUCTION,
                        f"instruction needs signer {ref.address}, loaded keypair is {payer}",
                        account=d.accounts[0].address,
                    )

        blockhash = self._call("getLatestBlockhash", [{"commitment": self._commitment}])["value"]["blockhash"]
        msg = MessageV0.try_compile(
            kp.pubkey(),
            [to_solders_instruction(d) for d in tx.instructions],
            [],
            Hash.from_string(blockhash),
        )
        signed = VersionedTransaction(msg, [kp])
        b64 = base64.b64encode(bytes(signed)).decode("ascii")

        sig = self._call(
            "sendTransaction",
            [b64, {"encoding": "base64", "skipPreflight": False, "preflightCommitment": self._commitment}],
            tx=tx,
        )
        logger.debug("Submitted transaction {} as {}", tx.index, sig)
        return Receipt(signature=str(sig))

    def _status_sync(self, receipt: Receipt) -> TxStatus:
        result = self._call("getSignatureStatuses", [[receipt.signature], {"searchTransactionHistory": True}])
        st = ((result or {}).get("value") or [None])[0]
        if not st:
            return TxStatus.PENDING
        if st.get("err") is not None:
            return TxStatus.FAILED
        wanted = _CONFIRMED.get(self._commitment, ("confirmed", "finalized"))
        if st.get("confirmationStatus") in wanted:
            return TxStatus.CONFIRMED
        return TxStatus.PENDING

    # ---------- port methods ----------

    async def fetch_accounts(self, addresses: Sequence[str]) -> List[Optional[AccountSnapshot]]:
        return await asyncio.to_thread(self._fetch_accounts_sync, list(addresses))

    async def fetch_wallet_accounts(self, wallet: str) -> List[AccountSnapshot]:
        return await asyncio.to_thread(self._fetch_wallet_accounts_sync, wallet)

    async def get_balance(self, address: str) -> int:
        result = await asyncio.to_thread(self._call, "getBalance", [address, {"commitment": self._commitment}])
        return int(result["value"])

    async def send_transaction(self, tx: PackedTransaction, config: TransactionConfig) -> Receipt:
        return await asyncio.to_thread(self._send_sync, tx)

    async def get_status(self, receipt: Receipt) -> TxStatus:
        return await asyncio.to_thread(self._status_sync, receipt)


# -------------------------
# Wire helpers
# -------------------------

def snapshot_from_rpc(address: str, value: Dict[str, Any]) -> AccountSnapshot:
    raw = value.get("data")
    data: Any = None
    data_len = int(value.get("space") or 0)

    if isinstance(raw, dict):
        data = raw
        data_len = data_len or int(raw.get("space") or 0)
    elif isinstance(raw, list) and raw and raw[-1] == "base64":
        data = base64.b64decode(raw[0])
        data_len = data_len or len(data)

    return AccountSnapshot(
        address=address,
        owner=str(value.get("owner", "")),
        lamports=int(value.get("lamports", 0)),
        data_len=data_len,
        data=data,
        executable=bool(value.get("executable", False)),
    )


def to_solders_instruction(d: InstructionDescriptor) -> Instruction:
    metas = [
        AccountMeta(Pubkey.from_string(a.address), is_signer=a.is_signer, is_writable=a.is_writable)
        for a in d.accounts
    ]
    return Instruction(Pubkey.from_string(d.program_id), d.data, metas)


def map_rpc_error(err: Dict[str, Any], tx: Optional[PackedTransaction] = None) -> LedgerError:
    """
    Translate a JSON-RPC error object into a LedgerError.

    Preflight failures carry `data.err`; an InstructionError is pinned to the
    first account of the failing instruction so batch fallback can isolate it.
    """
    code = err.get("code")
    message = str(err.get("message", ""))
    lower = message.lower()
    tx_err = (err.get("data") or {}).get("err") if isinstance(err.get("data"), dict) else None

    if code == 429 or "rate limit" in lower or "too many requests" in lower:
        return RateLimitError(message)
    if "blockhash not found" in lower or tx_err == "BlockhashNotFound":
        return NetworkError(message)
    if tx_err in ("InsufficientFundsForFee", "AccountNotFound") or "insufficient funds for fee" in lower:
        return FatalLedgerError(LedgerErrorKind.INSUFFICIENT_FUNDS, message)

    if isinstance(tx_err, dict) and "InstructionError" in tx_err:
        idx, detail = tx_err["InstructionError"]
        account = None
        if tx is not None and 0 <= idx < len(tx.instructions) and tx.instructions[idx].accounts:
            account = tx.instructions[idx].accounts[0].address
        closed = isinstance(detail, str) and detail in _CLOSED_INSTRUCTION_ERRORS
        if closed or detail == {"Custom": _TOKEN_ERR_UNINITIALIZED_STATE}:
            return FatalLedgerError(LedgerErrorKind.ALREADY_CLOSED, message, account=account)
        return FatalLedgerError(LedgerErrorKind.INVALID_INSTRUCTION, f"{message} ({detail})", account=account)

    if "could not find account" in lower or "account not found" in lower:
        return FatalLedgerError(LedgerErrorKind.ACCOUNT_NOT_FOUND, message)
    if code == -32602:
        return FatalLedgerError(LedgerErrorKind.INVALID_INSTRUCTION, message)

    # node-side hiccups (-32005 behind, -32004 slot skipped, ...) are retryable
    return NetworkError(message or f"rpc error {code}")
