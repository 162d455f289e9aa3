from __future__ import annotations

from typing import Optional

from solders.pubkey import Pubkey

from reclaimer.config import settings


def derive_associated_token_address(
    wallet: str,
    mint: str,
    token_program: str = settings.TOKEN_PROGRAM_ID,
) -> Optional[str]:
    """
    ATA for (wallet, mint); ValueError from solders on malformed input.
    """
    seeds = [
        bytes(Pubkey.from_string(wallet)),
        bytes(Pubkey.from_string(token_program)),
        bytes(Pubkey.from_string(mint)),
    ]
    ata, _bump = Pubkey.find_program_address(
        seeds, Pubkey.from_string(settings.ASSOCIATED_TOKEN_PROGRAM_ID)
    )
    return str(ata)
