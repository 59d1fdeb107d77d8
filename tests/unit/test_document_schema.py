"""
Unit tests for document schemas and boundary parsing.
"""

import dataclasses
import unittest
from datetime import date

from invoice_intake.core.document_schema import (
    DocumentKind,
    ExtractionResult,
    InvoiceDocument,
    PanCardDocument,
    Severity,
    ValidationFinding,
    classify_transaction,
    document_from_dict,
    document_to_dict,
    parse_document,
    to_date,
    to_number,
)
from invoice_intake.core.errors import SchemaViolationError

INVOICE_PAYLOAD = {
    'identification': {'invoice_number': 'INV-1001', 'invoice_date': '05/08/2026'},
    'vendor': {'legal_name': 'Acme Supplies', 'gstin': '27aapfu0939f1zv ', 'state_code': 27},
    'customer': {'name': 'Globex Traders', 'gstin': '27ABCDE1234F1Z0'},
    'line_items': [{'description': 'Steel bolts', 'hsn_code': '73 18', 'quantity': '100', 'rate': '₹100',
                    'taxable_value': '10,000.00', 'gst_rate': '18%'}],
    'tax_summary': {'subtotal': '10,000', 'tax_components': {'cgst': '900', 'sgst': 900, 'igst': None},
                    'grand_total': 'Rs. 11,800.00'},
}


class TestCoercion(unittest.TestCase):

    def test_to_number(self):
        self.assertEqual(to_number('1,18,000.00'), 118000.0)
        self.assertEqual(to_number('₹ 900'), 900.0)
        self.assertEqual(to_number('INR 45.5'), 45.5)
        self.assertEqual(to_number('(50.00)'), -50.0)
        self.assertEqual(to_number('18%'), 18.0)
        self.assertEqual(to_number(7), 7.0)
        self.assertIsNone(to_number('abc'))
        self.assertIsNone(to_number(True))
        self.assertIsNone(to_number(None))

    def test_to_date_is_day_first(self):
        self.assertEqual(to_date('05/08/2026'), date(2026, 8, 5))
        self.assertEqual(to_date('2026-01-05'), date(2026, 1, 5))
        self.assertEqual(to_date('12 Mar 2025'), date(2025, 3, 12))
        self.assertIsNone(to_date('not a date'))
        self.assertIsNone(to_date(''))


class TestParseDocument(unittest.TestCase):

    def test_invoice_payload_is_normalized(self):
        invoice = parse_document('invoice', INVOICE_PAYLOAD)
        self.assertIsInstance(invoice, InvoiceDocument)
        self.assertEqual(invoice.invoice_date, date(2026, 8, 5))
        self.assertEqual(invoice.vendor.gstin, '27AAPFU0939F1ZV')
        self.assertEqual(invoice.vendor.state_code, '27')
        self.assertEqual(invoice.customer.legal_name, 'Globex Traders')
        item = invoice.line_items[0]
        self.assertEqual(item.hsn_sac_code, '7318')
        self.assertEqual(item.amount, 10000.0)
        self.assertEqual(item.gst_rate, 18.0)
        self.assertEqual(invoice.tax_summary.cgst, 900.0)
        self.assertIsNone(invoice.tax_summary.igst)
        self.assertEqual(invoice.tax_summary.grand_total, 11800.0)
        self.assertEqual(invoice.tax_summary.total_tax, 1800.0)
        self.assertEqual(invoice.transaction_type, 'purchase')

    def test_missing_sections_raise(self):
        with self.assertRaises(SchemaViolationError) as ctx:
            parse_document(DocumentKind.INVOICE, {'identification': {'invoice_number': 'X'}})
        self.assertEqual(set(ctx.exception.missing), {'vendor', 'tax_summary', 'line_items'})
        self.assertEqual(ctx.exception.stage, 'extraction')

    def test_wrong_shapes_raise(self):
        with self.assertRaises(SchemaViolationError):
            parse_document(DocumentKind.INVOICE, [])
        with self.assertRaises(SchemaViolationError):
            parse_document(DocumentKind.INVOICE, {**INVOICE_PAYLOAD, 'vendor': 'Acme'})
        with self.assertRaises(SchemaViolationError):
            parse_document(DocumentKind.INVOICE, {**INVOICE_PAYLOAD, 'line_items': {'a': 1}})

    def test_kyc_documents_need_one_required_field(self):
        pan = parse_document(DocumentKind.PAN_CARD, {'pan_number': 'abcde 1234f'})
        self.assertEqual(pan.pan_number, 'ABCDE1234F')
        aadhaar = parse_document(DocumentKind.AADHAAR_CARD, {'aadhaar_number': '2341 2341 2346'})
        self.assertEqual(aadhaar.aadhaar_number, '234123412346')
        with self.assertRaises(SchemaViolationError):
            parse_document(DocumentKind.GST_CERTIFICATE, {'trade_name': 'Acme'})

    def test_document_dict_round_trip(self):
        invoice = parse_document(DocumentKind.TAX_CREDIT_NOTE,
                                 {**INVOICE_PAYLOAD, 'original_invoice_number': 'INV-0999'})
        data = document_to_dict(invoice)
        self.assertEqual(data['kind'], 'tax_credit_note')
        self.assertEqual(data['invoice_date'], '2026-08-05')
        self.assertEqual(document_from_dict(data), invoice)

    def test_classify_transaction(self):
        invoice = parse_document(DocumentKind.INVOICE, INVOICE_PAYLOAD)
        self.assertEqual(classify_transaction(invoice), {
            'supply_type': 'intra_state', 'business_type': 'B2B',
            'reverse_charge': False, 'is_credit_note': False,
        })
        invoice.customer.gstin = None
        invoice.customer.state_code = None
        self.assertEqual(classify_transaction(invoice)['business_type'], 'B2C')
        self.assertEqual(classify_transaction(invoice)['supply_type'], 'intra_state')


class TestExtractionResult(unittest.TestCase):

    def test_json_shape(self):
        result = ExtractionResult(
            document_kind=DocumentKind.PAN_CARD,
            data=PanCardDocument(pan_number='ABCDE1234F', name='Rahul'),
            field_confidence_scores={'pan_number': 0.9},
            overall_confidence=0.9,
            weighted_confidence=0.9,
        )
        findings = [ValidationFinding('name', Severity.WARNING, 'short name', 'name_missing')]
        payload = result.to_json_dict(findings)
        self.assertEqual(payload['schema_version'], '1.0')
        self.assertEqual(payload['confidence_scores']['fields'], {'pan_number': 0.9})
        self.assertEqual(payload['validation_flags']['warnings'][0]['rule'], 'name_missing')
        self.assertEqual(payload['validation_flags']['errors'], [])
        self.assertNotIn('transaction_classification', payload)

    def test_result_is_immutable(self):
        result = ExtractionResult(DocumentKind.PAN_CARD, PanCardDocument(pan_number='ABCDE1234F'),
                                  {'pan_number': 0.9}, 0.9, 0.9)
        with self.assertRaises(dataclasses.FrozenInstanceError):
            result.weighted_confidence = 0.99


if __name__ == '__main__':
    unittest.main()
