from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import List, Optional, Tuple, Union

from loguru import logger
from solders.pubkey import Pubkey

from reclaimer.core.enums import RiskLevel
from reclaimer.core.models import SafetyConfig, SafetyReport


_BASE58_ALPHABET = set("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")
_MIN_ADDRESS_LEN = 32
_MAX_ADDRESS_LEN = 44

DRAIN_WARNING = "near-full drain"
STRICT_PREFIX = "STRICT: "


# -------------------------
# Addresses
# -------------------------

@dataclass(frozen=True)
class AddressComparison:
    matches: bool
    difference_count: int
    difference_positions: Tuple[int, ...]
    likely_typo: bool


class AddressVerifier:

    @staticmethod
    def verify(address: str) -> str:
        """
        Returns the trimmed address, or raises ValueError naming the first failed check.
        """
        if not address or not address.strip():
            raise ValueError("address cannot be empty")
        address = address.strip()

        if not _MIN_ADDRESS_LEN <= len(address) <= _MAX_ADDRESS_LEN:
            raise ValueError(
                f"invalid length: expected {_MIN_ADDRESS_LEN}-{_MAX_ADDRESS_LEN} characters, got {len(address)}"
            )

        bad = sorted({c for c in address if c not in _BASE58_ALPHABET})
        if bad:
            raise ValueError(f"invalid base58 characters {bad} (base58 excludes 0, O, I and l)")

        try:
            Pubkey.from_string(address)
        except ValueError as e:
            raise ValueError(f"not a 32-byte public key: {e}") from e
        return address

    @staticmethod
    def format_short(address: str) -> str:
        address = (address or "").strip()
        if len(address) <= 8:
            return address
        return f"{address[:4]}...{address[-4:]}"

    @staticmethod
    def compare(a: str, b: str) -> AddressComparison:
        a, b = a.strip(), b.strip()
        if a == b:
            return AddressComparison(True, 0, (), False)

        positions = tuple(
            i for i in range(max(len(a), len(b)))
            if (a[i] if i < len(a) else None) != (b[i] if i < len(b) else None)
        )
        # one or two slipped characters reads as a typo, more as a different address
        return AddressComparison(False, len(positions), positions, 0 < len(positions) <= 2)


# -------------------------
# Amounts
# -------------------------

class AmountValidator:

    def __init__(self, config: SafetyConfig) -> None:
        self.config = config

    @staticmethod
    def to_human(raw: int, decimals: int) -> Decimal:
        return Decimal(raw) / (Decimal(10) ** decimals)

    @staticmethod
    def to_raw(human: Union[Decimal, str, int, float], decimals: int) -> int:
        try:
            value = Decimal(str(human))
        except InvalidOperation as e:
            raise ValueError(f"not a number: {human!r}") from e
        if not value.is_finite():
            raise ValueError("amount must be a finite number")
        if value < 0:
            raise ValueError("amount cannot be negative")
        return int((value * (Decimal(10) ** decimals)).to_integral_value())

    @staticmethod
    def format_amount(raw: int, decimals: int) -> str:
        return f"{AmountValidator.to_human(raw, decimals):.{decimals}f}"

    @staticmethod
    def format_with_symbol(raw: int, decimals: int, symbol: str) -> str:
        text = AmountValidator.format_amount(raw, decimals)
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return f"{text} {symbol}"

    @staticmethod
    def magnitude_warning(raw: int, decimals: int) -> Optional[str]:
        """
        Round numbers that read differently at an adjacent scale. Heuristic only.
        """
        human = AmountValidator.to_human(raw, decimals)
        if human <= 0 or human != human.to_integral_value():
            return None
        whole = int(human)

        if whole >= 1000 and whole % 1000 == 0:
            return (
                f"amount {whole} may be a misread thousands separator "
                f"(did you mean {Decimal(whole) / 1000}?)"
            )
        if decimals >= 2 and whole % (10 ** decimals) == 0:
            return (
                f"amount {whole} is a multiple of 10^{decimals}; "
                f"it may have been scaled by the token decimals twice"
            )
        return None

    def check(self, amount: int, decimals: int, balance: int) -> Tuple[List[str], List[str]]:
        warnings: List[str] = []
        blockers: List[str] = []

        if amount < 0:
            blockers.append("amount cannot be negative")
            return warnings, blockers
        if amount == 0:
            blockers.append("amount is zero")
            return warnings, blockers

        hint = self.magnitude_warning(amount, decimals)
        if hint:
            warnings.append(hint)

        price = self.config.reference_price
        if price is not None:
            usd = self.to_human(amount, decimals) * price
            if usd >= self.config.large_amount_threshold:
                warnings.append(
                    f"large transfer: about ${usd:,.2f} at reference price "
                    f"(confirmation threshold ${self.config.large_amount_threshold:,.2f})"
                )

        if amount > balance:
            blockers.append(
                f"insufficient funds: amount {self.format_amount(amount, decimals)} "
                f"exceeds balance {self.format_amount(balance, decimals)}"
            )
        elif amount * 10 >= balance * 9:
            pct = Decimal(amount) * 100 / Decimal(balance)
            warnings.append(
                f"{DRAIN_WARNING}: sending {pct:.1f}% of balance, "
                f"{self.format_amount(balance - amount, decimals)} would remain"
            )

        return warnings, blockers


# -------------------------
# Protocol
# -------------------------

class SafetyProtocol:
    """
    Offline transfer gate. Never touches the network; every threshold comes from `config`.
    """

    def __init__(self, config: Optional[SafetyConfig] = None) -> None:
        self.config = config or SafetyConfig()
        self.amounts = AmountValidator(self.config)

    def validate_offline(
        self,
        sender: str,
        recipient: str,
        amount: int,
        decimals: int,
        sender_balance: int,
    ) -> SafetyReport:
        report = SafetyReport(
            sender_display=AddressVerifier.format_short(sender),
            recipient_display=AddressVerifier.format_short(recipient),
            amount_display=_amount_display(amount, decimals),
        )

        self._check_addresses(sender, recipient, report)

        warnings, blockers = self.amounts.check(amount, decimals, sender_balance)
        report.warnings.extend(warnings)
        report.blockers.extend(blockers)

        if self.config.strict_mode and report.warnings:
            report.blockers.extend(STRICT_PREFIX + w for w in report.warnings)
            report.warnings = []

        _aggregate(report)
        logger.debug(
            "Transfer {} -> {} checked: risk {}, {} warning(s), {} blocker(s)",
            report.sender_display,
            report.recipient_display,
            report.risk_level.value,
            len(report.warnings),
            len(report.blockers),
        )
        return report

    def _check_addresses(self, sender: str, recipient: str, report: SafetyReport) -> None:
        try:
            sender = AddressVerifier.verify(sender)
        except ValueError as e:
            report.blockers.append(f"invalid sender address: {e}")
            return
        try:
            recipient = AddressVerifier.verify(recipient)
        except ValueError as e:
            report.blockers.append(f"invalid recipient address: {e}")
            return

        if recipient == sender and not self.config.allow_self_transfer:
            report.blockers.append("self-transfer: recipient is the sender")
            return
        if recipient in self.config.blocked_recipients:
            report.blockers.append(f"recipient {recipient} cannot usefully receive funds")
            return

        for known in sorted(self.config.known_recipients):
            cmp = AddressVerifier.compare(recipient, known)
            if cmp.likely_typo:
                report.warnings.append(
                    f"recipient differs from known address {AddressVerifier.format_short(known)} "
                    f"at {cmp.difference_count} position(s); possible typo"
                )
                break


def _amount_display(amount: int, decimals: int) -> str:
    if amount < 0 or decimals < 0:
        return str(amount)
    return AmountValidator.format_amount(amount, decimals)


def _aggregate(report: SafetyReport) -> None:
    drain = any(w.startswith(DRAIN_WARNING) for w in report.warnings)

    if report.blockers:
        report.risk_level = RiskLevel.CRITICAL
    elif len(report.warnings) >= 2 or drain:
        report.risk_level = RiskLevel.HIGH
    elif len(report.warnings) == 1:
        report.risk_level = RiskLevel.MEDIUM
    else:
        report.risk_level = RiskLevel.LOW

    report.approved = not report.blockers
    report.requires_confirmation = report.approved and bool(report.warnings)
