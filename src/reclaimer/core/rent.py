from __future__ import annotations

from decimal import Decimal

from reclaimer.config import settings


def rent_exempt_minimum(data_len: int) -> int:
    """
    Lamports an account of `data_len` bytes must hold to be rent exempt.
    """
    if data_len < 0:
        raise ValueError("data_len must be >= 0")
    return (
        (settings.ACCOUNT_STORAGE_OVERHEAD + data_len)
        * settings.LAMPORTS_PER_BYTE_YEAR
        * settings.EXEMPTION_THRESHOLD_YEARS
    )


def lamports_to_sol(lamports: int) -> Decimal:
    return Decimal(lamports) / Decimal(settings.LAMPORTS_PER_SOL)


TOKEN_ACCOUNT_RENT = rent_exempt_minimum(settings.TOKEN_ACCOUNT_LEN)
