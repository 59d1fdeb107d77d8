"""
Unit tests for the field extraction engine.

The LLM backend is exercised against a mocked OpenAI client.
"""

import json
import unittest
from datetime import date, timedelta
from types import SimpleNamespace
from unittest.mock import Mock

from openai import OpenAIError

from invoice_intake.core.document_schema import DocumentKind, InvoiceDocument
from invoice_intake.core.errors import ExtractionBackendError, SchemaViolationError
from invoice_intake.core.extraction_prompts import get_prompt
from invoice_intake.core.field_extraction import (
    FieldExtractor,
    LLMExtractionBackend,
    TemplateExtractionBackend,
)


def invoice_text(invoice_date=None, extra_tax_lines=()):
    invoice_date = invoice_date or (date.today() - timedelta(days=10))
    lines = [
        "ACME SUPPLIES PVT LTD",
        "GSTIN: 27AAPFU0939F1ZV",
        "TAX INVOICE",
        "Invoice No: INV-1001",
        f"Invoice Date: {invoice_date.isoformat()}",
        "Bill To: Globex Traders",
        "GSTIN: 27ABCDE1234F1Z0",
        "1 Steel Bolts 7318 100 Nos 100.00 18% 10000.00",
        "Sub Total 10000.00",
        "CGST @ 9% 900.00",
        "SGST @ 9% 900.00",
        *extra_tax_lines,
        "Grand Total 11800.00",
    ]
    return "\n".join(lines)


PAN_TEXT = """INCOME TAX DEPARTMENT
GOVT. OF INDIA
Name
RAHUL SHARMA
Father's Name
SURESH SHARMA
Date of Birth
15/08/1990
Permanent Account Number
ABCDE1234F"""

AADHAAR_TEXT = """Government of India
Priya Verma
DOB: 12/03/1988
FEMALE
2341 2341 2346"""

GST_CERTIFICATE_TEXT = """Form GST REG-06
Registration Certificate
Registration Number: 27AAPFU0939F1ZV
Legal Name: Acme Supplies Private Limited
Trade Name: Acme Supplies
Constitution of Business: Private Limited Company
Address of Principal Place of Business: 12 MG Road, Pune
Date of Liability: 01/07/2017"""


def llm_client(content):
    client = Mock()
    client.chat.completions.create.return_value = SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content))])
    return client


class TestTemplateBackend(unittest.TestCase):
    """Deterministic regex templates."""

    def setUp(self):
        self.extractor = FieldExtractor(TemplateExtractionBackend())

    def test_invoice_fields(self):
        result = self.extractor.extract(invoice_text(), DocumentKind.INVOICE, 0.97)
        invoice = result.data
        self.assertIsInstance(invoice, InvoiceDocument)
        self.assertEqual(invoice.invoice_number, "INV-1001")
        self.assertEqual(invoice.invoice_date, date.today() - timedelta(days=10))
        self.assertEqual(invoice.vendor.legal_name, "ACME SUPPLIES PVT LTD")
        self.assertEqual(invoice.vendor.gstin, "27AAPFU0939F1ZV")
        self.assertEqual(invoice.customer.legal_name, "Globex Traders")
        self.assertEqual(invoice.customer.gstin, "27ABCDE1234F1Z0")
        self.assertEqual(len(invoice.line_items), 1)
        item = invoice.line_items[0]
        self.assertEqual((item.hsn_sac_code, item.quantity, item.unit, item.rate, item.gst_rate, item.amount),
                         ("7318", 100.0, "Nos", 100.0, 18.0, 10000.0))
        taxes = invoice.tax_summary
        self.assertEqual((taxes.subtotal, taxes.cgst, taxes.sgst, taxes.igst, taxes.grand_total),
                         (10000.0, 900.0, 900.0, None, 11800.0))

    def test_consistent_invoice_inherits_ocr_confidence(self):
        result = self.extractor.extract(invoice_text(), DocumentKind.INVOICE, 0.97)
        self.assertTrue(all(score == 0.97 for score in result.field_confidence_scores.values()))
        self.assertEqual(result.weighted_confidence, 0.97)
        self.assertEqual(result.backend, "template")
        self.assertEqual(result.schema_version, "1.0")

    def test_unreconciled_total_lowers_confidence(self):
        text = invoice_text().replace("Grand Total 11800.00", "Grand Total 12800.00")
        result = self.extractor.extract(text, DocumentKind.INVOICE, 1.0)
        self.assertEqual(result.field_confidence_scores['tax_summary.grand_total'], 0.8)
        self.assertLess(result.weighted_confidence, 1.0)

    def test_unreadable_line_item_number_lowers_confidence(self):
        text = invoice_text().replace("Sub Total", "2 Washers 7318 10 , 500.00\nSub Total")
        result = self.extractor.extract(text, DocumentKind.INVOICE, 1.0)
        self.assertEqual(len(result.data.line_items), 2)
        self.assertIsNone(result.data.line_items[1].rate)
        self.assertEqual(result.field_confidence_scores['line_items'], 0.8)

    def test_igst_line_is_captured(self):
        result = self.extractor.extract(invoice_text(extra_tax_lines=["IGST @ 18% 1800.00"]),
                                        DocumentKind.INVOICE, 0.97)
        self.assertEqual(result.data.tax_summary.igst, 1800.0)

    def test_credit_note_original_reference(self):
        text = invoice_text().replace("TAX INVOICE", "CREDIT NOTE\nAgainst Invoice No: INV-0999")
        text = text.replace("Invoice No: INV-1001", "Credit Note No: CN-17")
        result = self.extractor.extract(text, DocumentKind.TAX_CREDIT_NOTE, 0.9)
        self.assertEqual(result.data.kind, DocumentKind.TAX_CREDIT_NOTE)
        self.assertEqual(result.data.invoice_number, "CN-17")
        self.assertEqual(result.data.original_invoice_number, "INV-0999")

    def test_pan_card(self):
        result = self.extractor.extract(PAN_TEXT, DocumentKind.PAN_CARD, 0.9)
        pan = result.data
        self.assertEqual(pan.pan_number, "ABCDE1234F")
        self.assertEqual(pan.name, "RAHUL SHARMA")
        self.assertEqual(pan.father_name, "SURESH SHARMA")
        self.assertEqual(pan.date_of_birth, date(1990, 8, 15))
        self.assertEqual(result.weighted_confidence, 0.9)

    def test_aadhaar_card(self):
        result = self.extractor.extract(AADHAAR_TEXT, DocumentKind.AADHAAR_CARD, 0.9)
        aadhaar = result.data
        self.assertEqual(aadhaar.aadhaar_number, "234123412346")
        self.assertEqual(aadhaar.name, "Priya Verma")
        self.assertEqual(aadhaar.date_of_birth, date(1988, 3, 12))
        self.assertEqual(aadhaar.gender, "FEMALE")
        self.assertEqual(result.field_confidence_scores['aadhaar_number'], 0.9)

    def test_aadhaar_failing_checksum_is_discounted(self):
        result = self.extractor.extract(AADHAAR_TEXT.replace("2346", "2345"), DocumentKind.AADHAAR_CARD, 0.9)
        self.assertEqual(result.field_confidence_scores['aadhaar_number'], 0.45)

    def test_gst_certificate(self):
        result = self.extractor.extract(GST_CERTIFICATE_TEXT, DocumentKind.GST_CERTIFICATE, 0.9)
        certificate = result.data
        self.assertEqual(certificate.gstin, "27AAPFU0939F1ZV")
        self.assertEqual(certificate.legal_name, "Acme Supplies Private Limited")
        self.assertEqual(certificate.trade_name, "Acme Supplies")
        self.assertEqual(certificate.registration_date, date(2017, 7, 1))
        self.assertEqual(certificate.address, "12 MG Road, Pune")

    def test_text_without_structure_is_a_schema_violation(self):
        with self.assertRaises(SchemaViolationError) as ctx:
            self.extractor.extract("nothing useful here", DocumentKind.INVOICE, 0.9)
        self.assertIn('line_items', ctx.exception.missing)
        self.assertEqual(self.extractor.stats['schema_violations'], 1)


class TestLLMBackend(unittest.TestCase):
    """Chat-completion backend with a mocked client."""

    def test_reported_confidences_are_used(self):
        content = json.dumps({"data": {"pan_number": "ABCDE1234F", "name": "Rahul Sharma"},
                              "confidence": {"pan_number": 0.99, "name": 0.9}})
        client = llm_client(content)
        extractor = FieldExtractor(LLMExtractionBackend(client=client, model="test-model"))

        result = extractor.extract("PAN text", DocumentKind.PAN_CARD, 0.8)

        self.assertEqual(result.data.pan_number, "ABCDE1234F")
        self.assertEqual(result.field_confidence_scores, {"pan_number": 0.99, "name": 0.9})
        self.assertAlmostEqual(result.weighted_confidence, (0.5 * 0.99 + 0.3 * 0.9) / 0.8, places=3)
        self.assertEqual(result.backend, "llm")

        kwargs = client.chat.completions.create.call_args.kwargs
        self.assertEqual(kwargs['model'], "test-model")
        self.assertEqual(kwargs['temperature'], 0)
        self.assertEqual(kwargs['response_format'], {"type": "json_object"})
        self.assertIn("PAN text", kwargs['messages'][1]['content'])

    def test_missing_confidences_inherit_ocr_confidence(self):
        client = llm_client(json.dumps({"pan_number": "ABCDE1234F", "name": "Rahul Sharma"}))
        result = FieldExtractor(LLMExtractionBackend(client=client)).extract("x", DocumentKind.PAN_CARD, 0.8)
        self.assertEqual(result.field_confidence_scores, {"pan_number": 0.8, "name": 0.8})

    def test_absent_required_invoice_fields_score_zero(self):
        content = json.dumps({
            "invoice_number": "INV-1001",
            "vendor": {"legal_name": "Acme Supplies", "gstin": "27AAPFU0939F1ZV"},
            "line_items": [{"description": "Steel bolts", "quantity": 100, "rate": 100, "amount": 10000}],
            "tax_summary": {"subtotal": 10000, "cgst": 900, "sgst": 900},
        })
        extractor = FieldExtractor(LLMExtractionBackend(client=llm_client(content)))

        result = extractor.extract("invoice text", DocumentKind.INVOICE, 0.97)

        scores = result.field_confidence_scores
        self.assertEqual(scores['invoice_date'], 0.0)
        self.assertEqual(scores['tax_summary.grand_total'], 0.0)
        self.assertEqual(scores['tax_summary.tax_components'], 0.97)
        self.assertEqual(scores['vendor.gstin'], 0.97)
        self.assertNotIn('customer.gstin', scores)
        self.assertLess(result.weighted_confidence, 0.85)

    def test_reported_confidences_omitting_a_required_field(self):
        content = json.dumps({"data": {"pan_number": "ABCDE1234F"}, "confidence": {"pan_number": 0.99}})
        extractor = FieldExtractor(LLMExtractionBackend(client=llm_client(content)))

        result = extractor.extract("PAN text", DocumentKind.PAN_CARD, 0.9)

        self.assertEqual(result.field_confidence_scores, {"pan_number": 0.99, "name": 0.0})
        self.assertAlmostEqual(result.weighted_confidence, 0.5 * 0.99 / 0.8, places=3)

    def test_invalid_json_is_a_schema_violation(self):
        backend = LLMExtractionBackend(client=llm_client("not json"))
        with self.assertRaises(SchemaViolationError):
            FieldExtractor(backend).extract("x", DocumentKind.PAN_CARD, 0.8)

    def test_provider_failure_is_a_backend_error(self):
        client = Mock()
        client.chat.completions.create.side_effect = OpenAIError("service unavailable")
        with self.assertRaises(ExtractionBackendError):
            FieldExtractor(LLMExtractionBackend(client=client)).extract("x", DocumentKind.PAN_CARD, 0.8)

    def test_from_config_selects_backend(self):
        self.assertIsInstance(FieldExtractor.from_config({}).backend, TemplateExtractionBackend)


class TestPrompts(unittest.TestCase):

    def test_every_kind_has_a_versioned_prompt(self):
        for kind in DocumentKind:
            prompt = get_prompt(kind)
            self.assertEqual(prompt.kind, kind)
            self.assertEqual(prompt.version, "1.0")
            self.assertIn("OCR SAMPLE", prompt.render("OCR SAMPLE"))


if __name__ == '__main__':
    unittest.main()
