"""
GST Validation and Rules Engine

Deterministic business rules for Indian GST invoices and KYC documents.
Every rule yields ValidationFinding values; nothing here raises on bad data.

Errors block automatic approval. Warnings are attached to the result and
only influence review priority.
"""

import re
import logging
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, List, Optional

from dateutil.relativedelta import relativedelta

from .document_schema import (
    AadhaarDocument,
    DocumentKind,
    ExtractedDocument,
    GstCertificateDocument,
    InvoiceDocument,
    PanCardDocument,
    PartyDetails,
    Severity,
    ValidationFinding,
)

logger = logging.getLogger(__name__)

STATE_CODES: Dict[str, str] = {
    '01': 'Jammu and Kashmir', '02': 'Himachal Pradesh', '03': 'Punjab', '04': 'Chandigarh',
    '05': 'Uttarakhand', '06': 'Haryana', '07': 'Delhi', '08': 'Rajasthan', '09': 'Uttar Pradesh',
    '10': 'Bihar', '11': 'Sikkim', '12': 'Arunachal Pradesh', '13': 'Nagaland', '14': 'Manipur',
    '15': 'Mizoram', '16': 'Tripura', '17': 'Meghalaya', '18': 'Assam', '19': 'West Bengal',
    '20': 'Jharkhand', '21': 'Odisha', '22': 'Chhattisgarh', '23': 'Madhya Pradesh', '24': 'Gujarat',
    '26': 'Dadra and Nagar Haveli and Daman and Diu', '27': 'Maharashtra', '29': 'Karnataka',
    '30': 'Goa', '31': 'Lakshadweep', '32': 'Kerala', '33': 'Tamil Nadu', '34': 'Puducherry',
    '35': 'Andaman and Nicobar Islands', '36': 'Telangana', '37': 'Andhra Pradesh', '38': 'Ladakh',
    '97': 'Other Territory', '99': 'Centre Jurisdiction',
}

VALID_GST_RATES = (0, 0.25, 3, 5, 12, 18, 28)

RECONCILIATION_TOLERANCE = 1.0
SPLIT_TAX_TOLERANCE = 0.01
LINE_AMOUNT_TOLERANCE = 1.0
B2B_THRESHOLD = 250000


class GSTINValidator:
    """GSTIN format, jurisdiction and modulo-36 check character."""

    PATTERN = re.compile(r'^[0-9]{2}[A-Z]{5}[0-9]{4}[A-Z][1-9A-Z]Z[0-9A-Z]$')
    CHARSET = '0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ'

    @classmethod
    def compute_check_character(cls, first_fourteen: str) -> str:
        """Weighted modulo-36 check character over the first 14 characters."""
        if len(first_fourteen) != 14:
            raise ValueError("GSTIN body must be 14 characters")
        total = 0
        for position, char in enumerate(first_fourteen.upper()):
            value = cls.CHARSET.index(char)
            product = value * (1 if position % 2 == 0 else 2)
            total += product // 36 + product % 36
        return cls.CHARSET[(36 - total % 36) % 36]

    @classmethod
    def validate_format(cls, gstin: str) -> bool:
        return bool(gstin) and bool(cls.PATTERN.match(gstin))

    @classmethod
    def validate_checksum(cls, gstin: str) -> bool:
        if not gstin or len(gstin) != 15 or any(c not in cls.CHARSET for c in gstin.upper()):
            return False
        return cls.compute_check_character(gstin[:14]) == gstin[14].upper()

    @staticmethod
    def state_code(gstin: str) -> Optional[str]:
        return gstin[:2] if gstin and len(gstin) >= 2 else None

    @staticmethod
    def embedded_pan(gstin: str) -> Optional[str]:
        return gstin[2:12] if gstin and len(gstin) >= 12 else None

    @classmethod
    def check(cls, gstin: str, field_path: str) -> List[ValidationFinding]:
        """All GSTIN findings for one identifier."""
        if not cls.validate_format(gstin):
            return [ValidationFinding(field_path, Severity.ERROR,
                                      f"Invalid GSTIN format: {gstin}", 'gstin_format')]
        findings = []
        if cls.state_code(gstin) not in STATE_CODES:
            findings.append(ValidationFinding(field_path, Severity.ERROR,
                                              f"Unknown GST state code {cls.state_code(gstin)}", 'gstin_state'))
        if not cls.validate_checksum(gstin):
            findings.append(ValidationFinding(
                field_path, Severity.ERROR,
                f"GSTIN check character mismatch (expected {cls.compute_check_character(gstin[:14])})",
                'gstin_checksum'))
        return findings


class PANValidator:
    PATTERN = re.compile(r'^[A-Z]{5}[0-9]{4}[A-Z]$')

    @classmethod
    def validate(cls, pan: str) -> bool:
        return bool(pan) and bool(cls.PATTERN.match(pan))


class AadhaarValidator:
    """Aadhaar number: 12 digits, not starting with 0 or 1, Verhoeff check digit."""

    _D = (
        (0, 1, 2, 3, 4, 5, 6, 7, 8, 9), (1, 2, 3, 4, 0, 6, 7, 8, 9, 5),
        (2, 3, 4, 0, 1, 7, 8, 9, 5, 6), (3, 4, 0, 1, 2, 8, 9, 5, 6, 7),
        (4, 0, 1, 2, 3, 9, 5, 6, 7, 8), (5, 9, 8, 7, 6, 0, 4, 3, 2, 1),
        (6, 5, 9, 8, 7, 1, 0, 4, 3, 2), (7, 6, 5, 9, 8, 2, 1, 0, 4, 3),
        (8, 7, 6, 5, 9, 3, 2, 1, 0, 4), (9, 8, 7, 6, 5, 4, 3, 2, 1, 0),
    )
    _P = (
        (0, 1, 2, 3, 4, 5, 6, 7, 8, 9), (1, 5, 7, 6, 2, 8, 3, 0, 9, 4),
        (5, 8, 0, 3, 7, 9, 6, 1, 4, 2), (8, 9, 1, 6, 0, 4, 3, 5, 2, 7),
        (9, 4, 5, 3, 1, 2, 6, 8, 7, 0), (4, 2, 8, 6, 5, 7, 3, 9, 0, 1),
        (2, 7, 9, 3, 8, 0, 6, 4, 1, 5), (7, 0, 4, 6, 9, 1, 3, 2, 5, 8),
    )

    @classmethod
    def verhoeff(cls, number: str) -> bool:
        checksum = 0
        for position, digit in enumerate(reversed(number)):
            checksum = cls._D[checksum][cls._P[position % 8][int(digit)]]
        return checksum == 0

    @classmethod
    def validate(cls, number: str) -> bool:
        if not number or not re.fullmatch(r'[2-9][0-9]{11}', number):
            return False
        return cls.verhoeff(number)


@dataclass
class ValidationReport:
    findings: List[ValidationFinding] = field(default_factory=list)

    @property
    def errors(self) -> List[ValidationFinding]:
        return [f for f in self.findings if f.severity == Severity.ERROR]

    @property
    def warnings(self) -> List[ValidationFinding]:
        return [f for f in self.findings if f.severity == Severity.WARNING]

    @property
    def is_valid(self) -> bool:
        return not self.errors


def _money(value: Optional[float]) -> float:
    return float(value or 0.0)


class DomainValidator:
    """Applies GST and KYC rules to an extracted document."""

    def __init__(self, today: Optional[date] = None):
        # None means the current date at validation time
        self._today = today
        self.stats = {'documents_validated': 0, 'errors': 0, 'warnings': 0}

    @property
    def today(self) -> date:
        return self._today or date.today()

    def validate(self, document: ExtractedDocument) -> ValidationReport:
        if isinstance(document, InvoiceDocument):
            findings = self.validate_invoice(document)
        elif isinstance(document, PanCardDocument):
            findings = self._validate_pan_card(document)
        elif isinstance(document, AadhaarDocument):
            findings = self._validate_aadhaar(document)
        elif isinstance(document, GstCertificateDocument):
            findings = self._validate_gst_certificate(document)
        else:
            raise TypeError(f"Unsupported document type: {type(document).__name__}")

        report = ValidationReport(findings)
        self.stats['documents_validated'] += 1
        self.stats['errors'] += len(report.errors)
        self.stats['warnings'] += len(report.warnings)
        logger.info(f"✅ Validation: {len(report.errors)} error(s), {len(report.warnings)} warning(s)")
        for finding in findings:
            logger.debug(f"  [{finding.severity.value}] {finding.field_path}: {finding.message}")
        return report

    # Invoices

    def validate_invoice(self, invoice: InvoiceDocument) -> List[ValidationFinding]:
        findings: List[ValidationFinding] = []
        findings += self._validate_party(invoice.vendor, 'vendor', required=True)
        findings += self._validate_party(invoice.customer, 'customer', required=False)
        findings += self.check_tax_exclusivity(invoice)
        findings += self.check_split_symmetry(invoice)
        findings += self._check_supply_consistency(invoice)
        findings += self.check_reconciliation(invoice)
        findings += self._check_line_items(invoice)
        findings += self.check_dates(invoice)
        findings += self._check_business_rules(invoice)
        return findings

    def _validate_party(self, party: PartyDetails, prefix: str, required: bool) -> List[ValidationFinding]:
        findings = []
        if not party.gstin:
            if required:
                findings.append(ValidationFinding(f"{prefix}.gstin", Severity.WARNING,
                                                  f"{prefix.title()} GSTIN not found", 'gstin_missing'))
            return findings

        findings += GSTINValidator.check(party.gstin, f"{prefix}.gstin")
        if not GSTINValidator.validate_format(party.gstin):
            return findings

        if party.pan and party.pan != GSTINValidator.embedded_pan(party.gstin):
            findings.append(ValidationFinding(
                f"{prefix}.pan", Severity.WARNING,
                f"PAN {party.pan} does not match PAN embedded in GSTIN", 'pan_gstin_mismatch'))
        if party.state_code and party.state_code != GSTINValidator.state_code(party.gstin):
            findings.append(ValidationFinding(
                f"{prefix}.state_code", Severity.WARNING,
                f"State code {party.state_code} does not match GSTIN prefix {party.gstin[:2]}", 'state_mismatch'))
        return findings

    @staticmethod
    def check_tax_exclusivity(invoice: InvoiceDocument) -> List[ValidationFinding]:
        taxes = invoice.tax_summary
        if _money(taxes.igst) > 0 and (_money(taxes.cgst) > 0 or _money(taxes.sgst) > 0):
            return [ValidationFinding(
                'tax_summary.igst', Severity.ERROR,
                "IGST cannot be charged together with CGST/SGST", 'tax_exclusivity')]
        return []

    @staticmethod
    def check_split_symmetry(invoice: InvoiceDocument) -> List[ValidationFinding]:
        taxes = invoice.tax_summary
        if taxes.cgst is None and taxes.sgst is None:
            return []
        difference = abs(_money(taxes.cgst) - _money(taxes.sgst))
        if difference > SPLIT_TAX_TOLERANCE:
            return [ValidationFinding(
                'tax_summary.sgst', Severity.ERROR,
                f"CGST ({_money(taxes.cgst):.2f}) and SGST ({_money(taxes.sgst):.2f}) must be equal",
                'split_symmetry')]
        return []

    @staticmethod
    def _check_supply_consistency(invoice: InvoiceDocument) -> List[ValidationFinding]:
        vendor_state = GSTINValidator.state_code(invoice.vendor.gstin) or invoice.vendor.state_code
        customer_state = GSTINValidator.state_code(invoice.customer.gstin) or invoice.customer.state_code
        if not vendor_state or not customer_state:
            return []

        taxes = invoice.tax_summary
        if vendor_state == customer_state and _money(taxes.igst) > 0:
            return [ValidationFinding('tax_summary.igst', Severity.ERROR,
                                      "Intra-state supply must not carry IGST", 'supply_type')]
        if vendor_state != customer_state and (_money(taxes.cgst) > 0 or _money(taxes.sgst) > 0):
            return [ValidationFinding('tax_summary.cgst', Severity.ERROR,
                                      "Inter-state supply must not carry CGST/SGST", 'supply_type')]
        return []

    @staticmethod
    def expected_grand_total(invoice: InvoiceDocument) -> Optional[float]:
        taxes = invoice.tax_summary
        subtotal = taxes.subtotal
        if subtotal is None:
            amounts = [item.amount for item in invoice.line_items if item.amount is not None]
            if not amounts:
                return None
            subtotal = sum(amounts)
        return round(subtotal + taxes.total_tax + _money(taxes.round_off), 2)

    def check_reconciliation(self, invoice: InvoiceDocument) -> List[ValidationFinding]:
        taxes = invoice.tax_summary
        if taxes.grand_total is None:
            return [ValidationFinding('tax_summary.grand_total', Severity.WARNING,
                                      "Grand total not found", 'grand_total_missing')]

        findings = []
        expected = self.expected_grand_total(invoice)
        if expected is not None and abs(expected - taxes.grand_total) > RECONCILIATION_TOLERANCE:
            findings.append(ValidationFinding(
                'tax_summary.grand_total', Severity.WARNING,
                f"Grand total {taxes.grand_total:.2f} differs from subtotal + taxes + round off "
                f"({expected:.2f})", 'reconciliation'))

        line_amounts = [item.amount for item in invoice.line_items if item.amount is not None]
        if taxes.subtotal is not None and line_amounts and len(line_amounts) == len(invoice.line_items):
            line_total = round(sum(line_amounts), 2)
            if abs(line_total - taxes.subtotal) > RECONCILIATION_TOLERANCE:
                findings.append(ValidationFinding(
                    'tax_summary.subtotal', Severity.WARNING,
                    f"Subtotal {taxes.subtotal:.2f} differs from line item total {line_total:.2f}",
                    'subtotal_reconciliation'))
        return findings

    @staticmethod
    def _check_line_items(invoice: InvoiceDocument) -> List[ValidationFinding]:
        findings = []
        for index, item in enumerate(invoice.line_items):
            path = f"line_items[{index}]"
            if item.quantity is not None and item.rate is not None and item.amount is not None:
                expected = round(item.quantity * item.rate, 2)
                if abs(expected - item.amount) > LINE_AMOUNT_TOLERANCE:
                    findings.append(ValidationFinding(
                        f"{path}.amount", Severity.WARNING,
                        f"Amount {item.amount:.2f} differs from quantity x rate ({expected:.2f})",
                        'line_amount'))
            if item.hsn_sac_code and not re.fullmatch(r'\d{4}|\d{6}|\d{8}', item.hsn_sac_code):
                findings.append(ValidationFinding(
                    f"{path}.hsn_sac_code", Severity.WARNING,
                    f"HSN/SAC code '{item.hsn_sac_code}' must be 4, 6 or 8 digits", 'hsn_format'))
            if item.gst_rate is not None and item.gst_rate not in VALID_GST_RATES:
                findings.append(ValidationFinding(
                    f"{path}.gst_rate", Severity.WARNING,
                    f"GST rate {item.gst_rate}% is not a standard slab", 'gst_rate'))
        return findings

    def check_dates(self, invoice: InvoiceDocument) -> List[ValidationFinding]:
        if invoice.invoice_date is None:
            return [ValidationFinding('invoice_date', Severity.WARNING,
                                      "Invoice date not found", 'date_missing')]

        findings = []
        if invoice.invoice_date > self.today:
            findings.append(ValidationFinding(
                'invoice_date', Severity.ERROR,
                f"Invoice date {invoice.invoice_date.isoformat()} is in the future", 'future_date'))
        elif invoice.invoice_date < self.today - timedelta(days=365):
            findings.append(ValidationFinding(
                'invoice_date', Severity.WARNING, "Invoice is more than one year old", 'stale_date'))

        if invoice.due_date is not None:
            if invoice.due_date < invoice.invoice_date:
                findings.append(ValidationFinding(
                    'due_date', Severity.WARNING, "Due date is before the invoice date", 'due_before_issue'))
            elif invoice.due_date > invoice.invoice_date + relativedelta(months=6):
                findings.append(ValidationFinding(
                    'due_date', Severity.WARNING,
                    "Due date is more than six months after the invoice date", 'long_credit_period'))
        return findings

    @staticmethod
    def _check_business_rules(invoice: InvoiceDocument) -> List[ValidationFinding]:
        findings = []
        if _money(invoice.tax_summary.grand_total) > B2B_THRESHOLD and not invoice.customer.gstin:
            findings.append(ValidationFinding(
                'customer.gstin', Severity.WARNING,
                "Invoice above 2,50,000 without a recipient GSTIN", 'b2b_threshold'))
        if invoice.kind == DocumentKind.TAX_CREDIT_NOTE and not invoice.original_invoice_number:
            findings.append(ValidationFinding(
                'original_invoice_number', Severity.WARNING,
                "Credit note does not reference the original invoice", 'credit_note_reference'))
        return findings

    # KYC documents

    def _not_future(self, value: Optional[date], field_path: str) -> List[ValidationFinding]:
        if value is not None and value > self.today:
            return [ValidationFinding(field_path, Severity.ERROR, f"{field_path} is in the future", 'future_date')]
        return []

    def _validate_pan_card(self, document: PanCardDocument) -> List[ValidationFinding]:
        findings = []
        if not PANValidator.validate(document.pan_number):
            findings.append(ValidationFinding('pan_number', Severity.ERROR,
                                              f"Invalid PAN format: {document.pan_number}", 'pan_format'))
        if not document.name:
            findings.append(ValidationFinding('name', Severity.WARNING, "Name not found", 'name_missing'))
        return findings + self._not_future(document.date_of_birth, 'date_of_birth')

    def _validate_aadhaar(self, document: AadhaarDocument) -> List[ValidationFinding]:
        findings = []
        if not AadhaarValidator.validate(document.aadhaar_number):
            findings.append(ValidationFinding('aadhaar_number', Severity.ERROR,
                                              "Invalid Aadhaar number", 'aadhaar_checksum'))
        if not document.name:
            findings.append(ValidationFinding('name', Severity.WARNING, "Name not found", 'name_missing'))
        return findings + self._not_future(document.date_of_birth, 'date_of_birth')

    def _validate_gst_certificate(self, document: GstCertificateDocument) -> List[ValidationFinding]:
        if not document.gstin:
            findings = [ValidationFinding('gstin', Severity.ERROR, "GSTIN not found", 'gstin_missing')]
        else:
            findings = GSTINValidator.check(document.gstin, 'gstin')
        if not document.legal_name:
            findings.append(ValidationFinding('legal_name', Severity.WARNING,
                                              "Legal name not found", 'name_missing'))
        return findings + self._not_future(document.registration_date, 'registration_date')
