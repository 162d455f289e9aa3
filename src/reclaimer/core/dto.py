from dataclasses import dataclass
from typing import Any, Optional, Tuple


@dataclass(frozen=True)
class AccountSnapshot:
    address: str
    owner: str              # owning program id
    lamports: int
    data_len: int
    data: Any = None        # raw bytes, jsonParsed dict, or None
    executable: bool = False


@dataclass(frozen=True)
class TokenAccountData:
    mint: str
    owner: str              # wallet / authority
    amount: int             # raw units (before decimals)
    delegate: Optional[str] = None
    delegated_amount: int = 0
    state: str = "initialized"
    is_native: bool = False
    close_authority: Optional[str] = None

    @property
    def is_frozen(self) -> bool:
        return self.state == "frozen"


@dataclass(frozen=True)
class MintData:
    supply: int
    decimals: int
    mint_authority: Optional[str] = None


@dataclass(frozen=True)
class MetadataData:
    mint: str


@dataclass(frozen=True)
class AccountRef:
    address: str
    is_signer: bool = False
    is_writable: bool = False


@dataclass(frozen=True)
class InstructionDescriptor:
    program_id: str
    accounts: Tuple[AccountRef, ...]
    data: bytes
    compute_units: int


@dataclass(frozen=True)
class Receipt:
    signature: str
    slot: Optional[int] = None
