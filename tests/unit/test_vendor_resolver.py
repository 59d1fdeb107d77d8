"""
Unit tests for vendor identity resolution.
"""

import tempfile
import unittest
from datetime import date
from pathlib import Path

from invoice_intake.core.data_persistence import IntakeRepository
from invoice_intake.core.document_schema import (
    DocumentKind,
    ExtractionResult,
    InvoiceDocument,
    LineItem,
    PartyDetails,
    TaxSummary,
)
from invoice_intake.intake.vendor_resolver import (
    VendorResolver,
    edit_similarity,
    keyword_similarity,
    levenshtein_distance,
    normalize_vendor_name,
)

GSTIN = "27AAPFU0939F1ZV"


class TestNameMatching(unittest.TestCase):

    def test_normalize_strips_suffixes_and_punctuation(self):
        self.assertEqual(normalize_vendor_name("Acme Supplies Pvt. Ltd."), "acme supplies")
        self.assertEqual(normalize_vendor_name("  ACME   Supplies Private Limited"), "acme supplies")
        self.assertEqual(normalize_vendor_name("R.K. Traders LLP"), "rk traders")
        self.assertEqual(normalize_vendor_name(None), "")

    def test_edit_distance(self):
        self.assertEqual(levenshtein_distance("kitten", "sitting"), 3)
        self.assertEqual(edit_similarity("", ""), 1.0)
        self.assertAlmostEqual(edit_similarity("acme suplies", "acme supplies"), 1 - 1 / 13)

    def test_keyword_overlap_ignores_order(self):
        self.assertEqual(keyword_similarity("Sharma Steel Traders", "Traders Steel Sharma"), 1.0)
        self.assertEqual(keyword_similarity("Sharma Steel Traders", "Gupta Steel Works"), 0.0)


class TestVendorResolver(unittest.TestCase):
    """Find-or-create priority: GSTIN, PAN, fuzzy name, new."""

    def setUp(self):
        self.temp_dir = tempfile.TemporaryDirectory()
        self.repo = IntakeRepository(str(Path(self.temp_dir.name) / "intake.db"))
        self.resolver = VendorResolver(self.repo)

    def tearDown(self):
        self.temp_dir.cleanup()

    def test_new_vendor_takes_pan_from_gstin(self):
        match = self.resolver.resolve("Acme Supplies Pvt Ltd", gstin=GSTIN.lower(), amount=11800.0)
        self.assertTrue(match.is_new)
        self.assertEqual(match.match_type, 'new')
        self.assertEqual(match.vendor['gstin'], GSTIN)
        self.assertEqual(match.vendor['pan'], "AAPFU0939F")
        self.assertEqual(match.vendor['transaction_count'], 1)
        self.assertEqual(match.vendor['total_amount'], 11800.0)

    def test_gstin_match_wins(self):
        first = self.resolver.resolve("Acme Supplies Pvt Ltd", gstin=GSTIN)
        match = self.resolver.resolve("Completely Different Name", gstin=GSTIN, amount=500.0)
        self.assertEqual((match.vendor_id, match.match_type), (first.vendor_id, 'gstin'))
        self.assertIn("Completely Different Name", match.vendor['alternate_names'])
        self.assertEqual(match.vendor['transaction_count'], 2)

    def test_pan_match(self):
        first = self.resolver.resolve("Acme Supplies", gstin=GSTIN)
        match = self.resolver.resolve("Acme Branch", pan="aapfu0939f")
        self.assertEqual((match.vendor_id, match.match_type), (first.vendor_id, 'pan'))

    def test_fuzzy_name_match_records_alias(self):
        first = self.resolver.resolve("Acme Supplies Pvt Ltd")
        match = self.resolver.resolve("Acme Suplies")
        self.assertEqual((match.vendor_id, match.match_type), (first.vendor_id, 'fuzzy_name'))
        self.assertGreaterEqual(match.similarity, 0.85)
        self.assertEqual(match.vendor['alternate_names'], ["Acme Suplies"])

    def test_same_normalized_name_is_not_a_new_alias(self):
        self.resolver.resolve("Acme Supplies Pvt Ltd")
        match = self.resolver.resolve("ACME SUPPLIES LIMITED")
        self.assertEqual(match.vendor['alternate_names'], [])

    def test_threshold_is_configurable(self):
        strict = VendorResolver.from_config({'vendors': {'similarity_threshold': 0.95}}, self.repo)
        first = strict.resolve("Acme Supplies Pvt Ltd")
        second = strict.resolve("Acme Suplies")
        self.assertNotEqual(first.vendor_id, second.vendor_id)
        self.assertTrue(second.is_new)

    def test_malformed_identifiers_are_ignored(self):
        match = self.resolver.resolve("Globex", gstin="NOT-A-GSTIN", pan="123")
        self.assertIsNone(match.vendor['gstin'])
        self.assertIsNone(match.vendor['pan'])

    def test_merge(self):
        keep = self.resolver.resolve("Acme Supplies", gstin=GSTIN)
        duplicate = self.resolver.resolve("Zenith Industrial Corp")
        merged = self.resolver.merge(keep.vendor_id, duplicate.vendor_id)
        self.assertIn("Zenith Industrial Corp", merged['alternate_names'])
        self.assertEqual(merged['transaction_count'], 2)
        with self.assertRaises(ValueError):
            self.resolver.merge(keep.vendor_id, keep.vendor_id)

    def test_completed_documents_are_linked_once(self):
        client_id = self.repo.get_or_create_client("+919876543210")['id']
        document_id = self.repo.create_document("inv.pdf", 10, "application/pdf", "chat", client_id, "invoice")
        invoice = InvoiceDocument(
            invoice_number="INV-1",
            invoice_date=date(2026, 8, 5),
            vendor=PartyDetails(legal_name="Acme Supplies", gstin=GSTIN),
            line_items=[LineItem(description="Bolts", amount=100.0)],
            tax_summary=TaxSummary(subtotal=100.0, igst=18.0, grand_total=118.0),
        )
        result = ExtractionResult(DocumentKind.INVOICE, invoice, {'vendor.gstin': 0.9}, 0.9, 0.9)
        self.repo.save_extraction(document_id, result, [])
        self.repo.update_document_status(document_id, 'completed')

        self.assertEqual(self.resolver.resolve_completed_documents(),
                         {'checked': 1, 'linked': 1, 'created': 1})
        vendor_id = self.repo.get_document(document_id)['vendor_id']
        self.assertEqual(self.repo.get_vendor(vendor_id)['total_amount'], 118.0)
        self.assertEqual(self.resolver.resolve_completed_documents(),
                         {'checked': 1, 'linked': 0, 'created': 0})


if __name__ == '__main__':
    unittest.main()
