from __future__ import annotations

import asyncio
import struct
from typing import List, Optional, Tuple

from solders.pubkey import Pubkey

from reclaimer.config import settings
from reclaimer.core.dto import AccountSnapshot
from reclaimer.core.enums import OperationKind, ReclaimReason
from reclaimer.core.models import BatchOperation
from reclaimer.core.rent import TOKEN_ACCOUNT_RENT
from reclaimer.services.retry import Clock


def key(i: int) -> str:
    return str(Pubkey(bytes([i]) * 32))


def _coption(addr: Optional[str]) -> bytes:
    if addr is None:
        return struct.pack("<I", 0) + bytes(32)
    return struct.pack("<I", 1) + bytes(Pubkey.from_string(addr))


def token_account_bytes(
    mint: str,
    owner: str,
    amount: int = 0,
    state: int = 1,
    delegate: Optional[str] = None,
    delegated_amount: int = 0,
    native: bool = False,
) -> bytes:
    data = (
        bytes(Pubkey.from_string(mint))
        + bytes(Pubkey.from_string(owner))
        + struct.pack("<Q", amount)
        + _coption(delegate)
        + bytes([state])
        + (struct.pack("<IQ", 1, 2_039_280) if native else struct.pack("<IQ", 0, 0))
        + struct.pack("<Q", delegated_amount)
        + _coption(None)
    )
    assert len(data) == settings.TOKEN_ACCOUNT_LEN
    return data


def mint_bytes(supply: int = 1_000_000, decimals: int = 6, authority: Optional[str] = None) -> bytes:
    data = _coption(authority) + struct.pack("<Q", supply) + bytes([decimals, 1]) + _coption(None)
    assert len(data) == settings.MINT_LEN
    return data


def metadata_bytes(mint: str, update_authority: str) -> bytes:
    return (
        bytes([settings.METADATA_KEY_V1])
        + bytes(Pubkey.from_string(update_authority))
        + bytes(Pubkey.from_string(mint))
        + bytes(32)
    )


def token_snapshot(
    address: str,
    mint: str,
    owner: str,
    amount: int = 0,
    lamports: int = TOKEN_ACCOUNT_RENT,
    program: str = settings.TOKEN_PROGRAM_ID,
    **layout,
) -> AccountSnapshot:
    return AccountSnapshot(
        address=address,
        owner=program,
        lamports=lamports,
        data_len=settings.TOKEN_ACCOUNT_LEN,
        data=token_account_bytes(mint, owner, amount, **layout),
    )


def mint_snapshot(address: str, decimals: int = 6) -> AccountSnapshot:
    return AccountSnapshot(
        address=address,
        owner=settings.TOKEN_PROGRAM_ID,
        lamports=1_461_600,
        data_len=settings.MINT_LEN,
        data=mint_bytes(decimals=decimals),
    )


def wallet_snapshot(address: str, lamports: int = 5_000_000) -> AccountSnapshot:
    return AccountSnapshot(address=address, owner=settings.SYSTEM_PROGRAM_ID, lamports=lamports, data_len=0)


def close_op(
    i: int,
    address: str,
    wallet: str,
    mint: str,
    lamports: int = TOKEN_ACCOUNT_RENT,
    steps: Tuple[OperationKind, ...] = (OperationKind.CLOSE,),
    token_amount: int = 0,
) -> BatchOperation:
    kind = OperationKind.BURN if OperationKind.BURN in steps else OperationKind.CLOSE
    return BatchOperation(
        op_id=f"op-{i:04d}-{address}",
        kind=kind,
        steps=steps,
        accounts=(address,),
        mint=mint,
        wallet=wallet,
        token_amount=token_amount,
        reclaim_lamports=lamports,
        reason=ReclaimReason.EMPTY if token_amount == 0 else ReclaimReason.FORCED_BURN,
        fetch_index=i,
    )


class FakeClock(Clock):
    """
    Time only moves when someone sleeps.
    """

    def __init__(self, start: float = 0.0) -> None:
        self.t = start
        self.sleeps: List[float] = []

    def now(self) -> float:
        return self.t

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.t += max(0.0, seconds)
        await asyncio.sleep(0)
