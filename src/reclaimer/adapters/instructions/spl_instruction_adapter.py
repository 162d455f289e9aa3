from __future__ import annotations

import struct
from typing import Optional

from reclaimer.config import settings
from reclaimer.core.dto import AccountRef, InstructionDescriptor
from reclaimer.core.enums import OperationKind
from reclaimer.core.errors import ConfigError
from reclaimer.core.models import BatchOperation
from reclaimer.ports.instruction_port import InstructionBuilderPort


# SPL token instruction tags
_TRANSFER = 3
_BURN = 8
_CLOSE_ACCOUNT = 9


class SplInstructionBuilder(InstructionBuilderPort):
    """
    SPL token Close / Burn / Transfer descriptors, signed by the account wallet.

    Rent from closed accounts goes to `rent_destination` when given, else back to the wallet.
    """

    def __init__(self, rent_destination: Optional[str] = None) -> None:
        self._rent_destination = rent_destination

    def build(self, kind: OperationKind, operation: BatchOperation) -> InstructionDescriptor:
        if not operation.wallet:
            raise ConfigError(f"{operation.op_id}: no wallet authority to sign with")

        account = operation.primary_account
        authority = AccountRef(operation.wallet, is_signer=True, is_writable=False)

        if kind == OperationKind.CLOSE:
            dest = self._rent_destination or operation.wallet
            return InstructionDescriptor(
                program_id=operation.token_program,
                accounts=(
                    AccountRef(account, is_writable=True),
                    AccountRef(dest, is_writable=True),
                    authority,
                ),
                data=bytes([_CLOSE_ACCOUNT]),
                compute_units=settings.CLOSE_COMPUTE_UNITS,
            )

        if kind == OperationKind.BURN:
            if not operation.mint:
                raise ConfigError(f"{operation.op_id}: burn without mint")
            return InstructionDescriptor(
                program_id=operation.token_program,
                accounts=(
                    AccountRef(account, is_writable=True),
                    AccountRef(operation.mint, is_writable=True),
                    authority,
                ),
                data=bytes([_BURN]) + struct.pack("<Q", operation.token_amount),
                compute_units=settings.BURN_COMPUTE_UNITS,
            )

        if kind == OperationKind.TRANSFER:
            if not operation.destination:
                raise ConfigError(f"{operation.op_id}: transfer without destination")
            return InstructionDescriptor(
                program_id=operation.token_program,
                accounts=(
                    AccountRef(account, is_writable=True),
                    AccountRef(operation.destination, is_writable=True),
                    authority,
                ),
                data=bytes([_TRANSFER]) + struct.pack("<Q", operation.token_amount),
                compute_units=settings.TRANSFER_COMPUTE_UNITS,
            )

        raise ConfigError(f"no single instruction for {kind.value}; expand it into steps first")
