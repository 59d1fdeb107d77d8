"""
Unit tests for the GST validation and rules engine.
"""

import unittest
from datetime import date, timedelta

from invoice_intake.core.document_schema import (
    AadhaarDocument,
    DocumentKind,
    GstCertificateDocument,
    InvoiceDocument,
    LineItem,
    PanCardDocument,
    PartyDetails,
    Severity,
    TaxSummary,
)
from invoice_intake.core.validation_engine import (
    AadhaarValidator,
    DomainValidator,
    GSTINValidator,
    PANValidator,
    STATE_CODES,
)

VENDOR_GSTIN = "27AAPFU0939F1ZV"
CUSTOMER_GSTIN = "27ABCDE1234F1Z0"
OTHER_STATE_GSTIN = "29ABCDE1234F1ZW"


def make_invoice(customer_gstin=CUSTOMER_GSTIN, **taxes):
    summary = dict(subtotal=10000.0, cgst=900.0, sgst=900.0, igst=None, grand_total=11800.0)
    summary.update(taxes)
    return InvoiceDocument(
        invoice_number="INV-1001",
        invoice_date=date.today() - timedelta(days=5),
        vendor=PartyDetails(legal_name="Acme Supplies", gstin=VENDOR_GSTIN, state_code="27"),
        customer=PartyDetails(legal_name="Globex Traders", gstin=customer_gstin),
        line_items=[LineItem(description="Steel bolts", hsn_sac_code="7318", quantity=100, rate=100,
                             amount=10000.0, gst_rate=18)],
        tax_summary=TaxSummary(**summary),
    )


def rules(findings, severity=None):
    return [f.rule for f in findings if severity is None or f.severity == severity]


class TestGSTINValidator(unittest.TestCase):
    """GSTIN format and check character."""

    VALID = [VENDOR_GSTIN, CUSTOMER_GSTIN, OTHER_STATE_GSTIN]

    def test_valid_samples_pass_checksum(self):
        for gstin in self.VALID:
            with self.subTest(gstin=gstin):
                self.assertTrue(GSTINValidator.validate_format(gstin))
                self.assertTrue(GSTINValidator.validate_checksum(gstin))
                self.assertEqual(GSTINValidator.compute_check_character(gstin[:14]), gstin[14])

    def test_any_single_character_substitution_fails_checksum(self):
        for gstin in self.VALID:
            for position in range(15):
                for char in GSTINValidator.CHARSET:
                    if char == gstin[position]:
                        continue
                    mutated = gstin[:position] + char + gstin[position + 1:]
                    self.assertFalse(GSTINValidator.validate_checksum(mutated), mutated)

    def test_format_rejects_malformed_identifiers(self):
        for gstin in ["", "27AAPFU0939F1Z", "27AAPFU0939F1XV", "2AAAPFU0939F1ZV", "27aapfu0939f1zv"]:
            with self.subTest(gstin=gstin):
                self.assertFalse(GSTINValidator.validate_format(gstin))

    def test_check_reports_unknown_state_code(self):
        body = "25AAPFU0939F1Z"
        gstin = body + GSTINValidator.compute_check_character(body)
        self.assertNotIn("25", STATE_CODES)
        self.assertEqual(rules(GSTINValidator.check(gstin, "vendor.gstin")), ["gstin_state"])

    def test_check_reports_checksum_mismatch(self):
        findings = GSTINValidator.check("27AAPFU0939F1ZX", "vendor.gstin")
        self.assertEqual(rules(findings, Severity.ERROR), ["gstin_checksum"])

    def test_embedded_pan(self):
        self.assertEqual(GSTINValidator.embedded_pan(VENDOR_GSTIN), "AAPFU0939F")


class TestIdentityValidators(unittest.TestCase):

    def test_pan_format(self):
        self.assertTrue(PANValidator.validate("ABCDE1234F"))
        self.assertFalse(PANValidator.validate("ABCD1234F"))
        self.assertFalse(PANValidator.validate(None))

    def test_aadhaar_verhoeff(self):
        self.assertTrue(AadhaarValidator.validate("234123412346"))
        self.assertFalse(AadhaarValidator.validate("234123412345"))
        self.assertFalse(AadhaarValidator.validate("134123412346"))
        self.assertFalse(AadhaarValidator.validate("23412341234"))


class TestInvoiceRules(unittest.TestCase):
    """Business rules applied to tax invoices."""

    def setUp(self):
        self.validator = DomainValidator()

    def test_clean_intra_state_invoice_has_no_findings(self):
        report = self.validator.validate(make_invoice())
        self.assertEqual(report.findings, [])
        self.assertTrue(report.is_valid)

    def test_reconciliation_within_tolerance_is_silent(self):
        report = self.validator.validate(make_invoice(grand_total=11801.0))
        self.assertNotIn("reconciliation", rules(report.findings))

    def test_reconciliation_beyond_tolerance_is_a_warning(self):
        report = self.validator.validate(make_invoice(grand_total=11801.5))
        self.assertIn("reconciliation", rules(report.warnings))
        self.assertEqual(report.errors, [])

    def test_split_tax_within_a_paisa_passes(self):
        report = self.validator.validate(make_invoice(sgst=900.01))
        self.assertNotIn("split_symmetry", rules(report.findings))

    def test_split_tax_asymmetry_fails(self):
        report = self.validator.validate(make_invoice(sgst=905.0, grand_total=11805.0))
        self.assertIn("split_symmetry", rules(report.errors))

    def test_igst_with_cgst_is_an_error(self):
        report = self.validator.validate(make_invoice(igst=1800.0, grand_total=13600.0))
        self.assertIn("tax_exclusivity", rules(report.errors))

    def test_inter_state_supply_with_cgst_is_an_error(self):
        report = self.validator.validate(make_invoice(customer_gstin=OTHER_STATE_GSTIN))
        self.assertIn("supply_type", rules(report.errors))

    def test_inter_state_supply_with_igst_is_valid(self):
        invoice = make_invoice(customer_gstin=OTHER_STATE_GSTIN, cgst=None, sgst=None, igst=1800.0)
        self.assertEqual(self.validator.validate(invoice).errors, [])

    def test_missing_vendor_gstin_is_a_warning(self):
        invoice = make_invoice()
        invoice.vendor = PartyDetails(legal_name="Acme Supplies")
        report = self.validator.validate(invoice)
        self.assertIn("gstin_missing", rules(report.warnings))

    def test_pan_and_state_mismatch_warnings(self):
        invoice = make_invoice()
        invoice.vendor.pan = "ZZZZZ9999Z"
        invoice.vendor.state_code = "29"
        report = self.validator.validate(invoice)
        self.assertIn("pan_gstin_mismatch", rules(report.warnings))
        self.assertIn("state_mismatch", rules(report.warnings))

    def test_line_item_checks(self):
        invoice = make_invoice()
        invoice.line_items = [LineItem(description="Bolts", hsn_sac_code="123", quantity=10, rate=100,
                                       amount=1500.0, gst_rate=7)]
        report = self.validator.validate(invoice)
        self.assertIn("line_amount", rules(report.warnings))
        self.assertIn("hsn_format", rules(report.warnings))
        self.assertIn("gst_rate", rules(report.warnings))

    def test_future_date_is_an_error(self):
        invoice = make_invoice()
        invoice.invoice_date = date.today() + timedelta(days=3)
        self.assertIn("future_date", rules(self.validator.validate(invoice).errors))

    def test_stale_and_due_date_warnings(self):
        invoice = make_invoice()
        invoice.invoice_date = date.today() - timedelta(days=400)
        invoice.due_date = invoice.invoice_date - timedelta(days=1)
        warnings = rules(self.validator.validate(invoice).warnings)
        self.assertIn("stale_date", warnings)
        self.assertIn("due_before_issue", warnings)

        invoice.due_date = invoice.invoice_date + timedelta(days=220)
        self.assertIn("long_credit_period", rules(self.validator.validate(invoice).warnings))

    def test_fixed_today_is_respected(self):
        invoice = make_invoice()
        validator = DomainValidator(today=invoice.invoice_date - timedelta(days=1))
        self.assertIn("future_date", rules(validator.validate(invoice).errors))

    def test_b2b_threshold_without_recipient_gstin(self):
        invoice = make_invoice(customer_gstin=None, subtotal=300000.0, cgst=27000.0, sgst=27000.0,
                               grand_total=354000.0)
        invoice.line_items[0].amount = 300000.0
        invoice.line_items[0].rate = 3000.0
        report = self.validator.validate(invoice)
        self.assertIn("b2b_threshold", rules(report.warnings))
        self.assertEqual(report.errors, [])

    def test_credit_note_without_original_reference(self):
        invoice = make_invoice()
        invoice.kind = DocumentKind.TAX_CREDIT_NOTE
        self.assertIn("credit_note_reference", rules(self.validator.validate(invoice).warnings))
        invoice.original_invoice_number = "INV-0999"
        self.assertNotIn("credit_note_reference", rules(self.validator.validate(invoice).findings))

    def test_expected_grand_total_falls_back_to_line_items(self):
        invoice = make_invoice(subtotal=None)
        self.assertEqual(DomainValidator.expected_grand_total(invoice), 11800.0)

    def test_stats_are_accumulated(self):
        self.validator.validate(make_invoice(igst=1800.0, grand_total=13600.0))
        self.assertEqual(self.validator.stats['documents_validated'], 1)
        self.assertGreaterEqual(self.validator.stats['errors'], 1)


class TestKycRules(unittest.TestCase):

    def setUp(self):
        self.validator = DomainValidator()

    def test_pan_card(self):
        report = self.validator.validate(PanCardDocument(pan_number="ABCDE1234F", name="Rahul Sharma"))
        self.assertEqual(report.findings, [])
        report = self.validator.validate(PanCardDocument(pan_number="ABC1234F"))
        self.assertIn("pan_format", rules(report.errors))
        self.assertIn("name_missing", rules(report.warnings))

    def test_aadhaar_card(self):
        report = self.validator.validate(AadhaarDocument(aadhaar_number="234123412346", name="Priya Verma"))
        self.assertTrue(report.is_valid)
        report = self.validator.validate(AadhaarDocument(aadhaar_number="234123412345", name="Priya Verma"))
        self.assertIn("aadhaar_checksum", rules(report.errors))

    def test_future_birth_date(self):
        document = PanCardDocument(pan_number="ABCDE1234F", name="Rahul",
                                   date_of_birth=date.today() + timedelta(days=1))
        self.assertIn("future_date", rules(self.validator.validate(document).errors))

    def test_gst_certificate(self):
        report = self.validator.validate(GstCertificateDocument(gstin=VENDOR_GSTIN, legal_name="Acme"))
        self.assertTrue(report.is_valid)
        report = self.validator.validate(GstCertificateDocument(legal_name="Acme"))
        self.assertIn("gstin_missing", rules(report.errors))

    def test_unsupported_type(self):
        with self.assertRaises(TypeError):
            self.validator.validate(object())


if __name__ == '__main__':
    unittest.main()
