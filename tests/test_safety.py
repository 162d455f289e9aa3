import unittest
from decimal import Decimal

from reclaimer.config import settings
from reclaimer.core.enums import RiskLevel
from reclaimer.core.models import SafetyConfig
from reclaimer.services.safety import AddressVerifier, AmountValidator, SafetyProtocol


SENDER = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
RECIPIENT = "GKvqsuNcnwWqPzzuhLmGi4rzzh55FhJtGizkhHaEJqiV"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class AddressVerifierTests(unittest.TestCase):
    def test_valid_addresses_pass(self) -> None:
        for a in (SENDER, RECIPIENT, USDC_MINT, settings.SYSTEM_PROGRAM_ID):
            self.assertEqual(AddressVerifier.verify(f"  {a} "), a)

    def test_checks_short_circuit_in_order(self) -> None:
        cases = {
            "": "empty",
            "   ": "empty",
            "abc": "length",
            "0" * 40: "base58",
            "z" * 44: "32-byte",
        }
        for address, expected in cases.items():
            with self.assertRaises(ValueError) as ctx:
                AddressVerifier.verify(address)
            self.assertIn(expected, str(ctx.exception), address)

    def test_format_short(self) -> None:
        self.assertEqual(AddressVerifier.format_short(SENDER), "7xKX...gAsU")
        self.assertEqual(AddressVerifier.format_short("abcd"), "abcd")

    def test_compare(self) -> None:
        same = AddressVerifier.compare(SENDER, SENDER)
        self.assertTrue(same.matches)

        typo = AddressVerifier.compare(RECIPIENT, RECIPIENT[:-1] + "W")
        self.assertEqual(typo.difference_positions, (43,))
        self.assertTrue(typo.likely_typo)

        different = AddressVerifier.compare(SENDER, RECIPIENT)
        self.assertFalse(different.likely_typo)
        self.assertGreater(different.difference_count, 2)


class AmountValidatorTests(unittest.TestCase):
    def test_conversions(self) -> None:
        self.assertEqual(AmountValidator.to_raw("1.5", 9), 1_500_000_000)
        self.assertEqual(AmountValidator.to_raw(Decimal("0.000001"), 6), 1)
        self.assertEqual(AmountValidator.to_human(1_500_000_000, 9), Decimal("1.5"))
        self.assertEqual(AmountValidator.format_amount(1_500_000, 6), "1.500000")
        self.assertEqual(AmountValidator.format_with_symbol(1_500_000_000, 9, "SOL"), "1.5 SOL")
        self.assertEqual(AmountValidator.format_with_symbol(2_000_000_000, 9, "SOL"), "2 SOL")

    def test_to_raw_rejects_bad_input(self) -> None:
        for bad in ("-1", "abc", "NaN", float("inf")):
            with self.assertRaises(ValueError):
                AmountValidator.to_raw(bad, 6)

    def test_magnitude_heuristics(self) -> None:
        self.assertIn("thousands", AmountValidator.magnitude_warning(5000, 0))
        self.assertIn("twice", AmountValidator.magnitude_warning(100 * 100, 2))
        self.assertIsNone(AmountValidator.magnitude_warning(1_234_567, 6))
        self.assertIsNone(AmountValidator.magnitude_warning(7, 0))

    def test_drain_boundary(self) -> None:
        v = AmountValidator(SafetyConfig())

        warnings, blockers = v.check(900, 0, 1000)
        self.assertEqual(blockers, [])
        self.assertTrue(any(w.startswith("near-full drain") for w in warnings))

        warnings, _ = v.check(899, 0, 1000)
        self.assertFalse(any(w.startswith("near-full drain") for w in warnings))

        warnings, blockers = v.check(1000, 0, 1000)
        self.assertEqual(blockers, [])
        self.assertTrue(warnings)

        _, blockers = v.check(1001, 0, 1000)
        self.assertTrue(blockers[0].startswith("insufficient funds"))

    def test_zero_amount_blocks(self) -> None:
        _, blockers = AmountValidator(SafetyConfig()).check(0, 6, 1000)
        self.assertEqual(blockers, ["amount is zero"])


class SafetyProtocolTests(unittest.TestCase):
    def _check(self, config=None, sender=SENDER, recipient=RECIPIENT, amount=7, decimals=0, balance=100):
        return SafetyProtocol(config).validate_offline(sender, recipient, amount, decimals, balance)

    def test_clean_transfer_is_low_risk(self) -> None:
        report = self._check()
        self.assertTrue(report.approved)
        self.assertFalse(report.requires_confirmation)
        self.assertEqual(report.risk_level, RiskLevel.LOW)

    def test_self_transfer_blocked_unless_allowed(self) -> None:
        report = self._check(recipient=SENDER)
        self.assertFalse(report.approved)
        self.assertEqual(report.risk_level, RiskLevel.CRITICAL)
        self.assertIn("self-transfer", report.blockers[0])

        allowed = self._check(SafetyConfig(allow_self_transfer=True), recipient=SENDER)
        self.assertTrue(allowed.approved)

    def test_insufficient_funds(self) -> None:
        report = self._check(amount=101)
        self.assertFalse(report.approved)
        self.assertTrue(any(b.startswith("insufficient funds") for b in report.blockers))

    def test_drain_alone_is_high_risk(self) -> None:
        report = self._check(amount=95)
        self.assertTrue(report.approved)
        self.assertTrue(report.requires_confirmation)
        self.assertEqual(report.risk_level, RiskLevel.HIGH)

    def test_invalid_addresses(self) -> None:
        report = self._check(sender="")
        self.assertIn("invalid sender address: address cannot be empty", report.blockers)

        report = self._check(recipient="0" * 40)
        self.assertTrue(report.blockers[0].startswith("invalid recipient address"))

    def test_blocked_recipients(self) -> None:
        for r in (settings.TOKEN_PROGRAM_ID, settings.INCINERATOR_ADDRESS):
            report = self._check(recipient=r)
            self.assertFalse(report.approved, r)
            self.assertIn("cannot usefully receive", report.blockers[0])

    def test_known_recipient_typo_is_a_warning(self) -> None:
        config = SafetyConfig(known_recipients=frozenset({RECIPIENT}))
        report = self._check(config, recipient=RECIPIENT[:-1] + "W")

        self.assertTrue(report.approved)
        self.assertEqual(report.risk_level, RiskLevel.MEDIUM)
        self.assertIn("possible typo", report.warnings[0])

        exact = self._check(config)
        self.assertEqual(exact.warnings, [])

    def test_large_amount_at_reference_price(self) -> None:
        config = SafetyConfig(reference_price=Decimal("2"))
        report = self._check(config, amount=600, balance=10_000)
        self.assertTrue(any(w.startswith("large transfer") for w in report.warnings))

        small = self._check(config, amount=400, balance=10_000)
        self.assertEqual(small.warnings, [])

    def test_two_warnings_are_high_risk(self) -> None:
        config = SafetyConfig(reference_price=Decimal("1"))
        report = self._check(config, amount=5000, balance=100_000)
        self.assertEqual(len(report.warnings), 2)
        self.assertEqual(report.risk_level, RiskLevel.HIGH)

    def test_strict_mode_turns_warnings_into_blockers(self) -> None:
        lenient = self._check(amount=95)
        strict = self._check(SafetyConfig(strict_mode=True), amount=95)

        self.assertTrue(lenient.approved)
        self.assertFalse(strict.approved)
        self.assertEqual(strict.warnings, [])
        self.assertTrue(strict.blockers[0].startswith("STRICT: near-full drain"))
        self.assertEqual(strict.risk_level, RiskLevel.CRITICAL)

    def test_summary_text(self) -> None:
        text = self._check().summary()
        self.assertIn("Safety Report: APPROVED (Risk: LOW)", text)
        self.assertIn("Transfer: 7xKX...gAsU -> GKvq...JqiV", text)
        self.assertIn("Amount: 7", text)

        blocked = self._check(recipient=SENDER).summary()
        self.assertIn("BLOCKED", blocked)
        self.assertIn("Blockers (1):", blocked)


if __name__ == "__main__":
    unittest.main()
