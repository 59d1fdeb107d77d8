"""
Document Schemas

Tagged dataclass schemas for every supported document kind, plus the boundary
parser that turns an untyped extraction payload into one of them.

Features:
- One dataclass per document kind (invoices and credit notes share a shape)
- Numeric and date coercion at the boundary (Indian number/date formats)
- Absent or unparseable leaves become None, never guessed values
- SchemaViolationError when required structure is missing
"""

import logging
import re
from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from dateutil import parser as date_parser
from dateutil.parser import ParserError

from .errors import SchemaViolationError

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.0"


class DocumentKind(Enum):
    """Supported document kinds."""
    INVOICE = "invoice"
    TAX_CREDIT_NOTE = "tax_credit_note"
    PAN_CARD = "pan_card"
    AADHAAR_CARD = "aadhaar_card"
    GST_CERTIFICATE = "gst_certificate"

    @property
    def is_kyc(self) -> bool:
        return self in (DocumentKind.PAN_CARD, DocumentKind.AADHAAR_CARD, DocumentKind.GST_CERTIFICATE)

    @property
    def label(self) -> str:
        return self.value.replace('_', ' ').title()


class Severity(Enum):
    """Validation finding severity."""
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class ValidationFinding:
    """A single validator outcome attached to a field path."""
    field_path: str
    severity: Severity
    message: str
    rule: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            'field_path': self.field_path,
            'severity': self.severity.value,
            'message': self.message,
            'rule': self.rule,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ValidationFinding':
        return cls(
            field_path=data['field_path'],
            severity=Severity(data['severity']),
            message=data['message'],
            rule=data.get('rule', ''),
        )


@dataclass
class PartyDetails:
    """Issuer or recipient of an invoice."""
    legal_name: Optional[str] = None
    gstin: Optional[str] = None
    pan: Optional[str] = None
    address: Optional[str] = None
    state: Optional[str] = None
    state_code: Optional[str] = None

    def is_empty(self) -> bool:
        return not any(asdict(self).values())


@dataclass
class LineItem:
    description: Optional[str] = None
    hsn_sac_code: Optional[str] = None
    quantity: Optional[float] = None
    unit: Optional[str] = None
    rate: Optional[float] = None
    amount: Optional[float] = None
    gst_rate: Optional[float] = None
    cgst_amount: Optional[float] = None
    sgst_amount: Optional[float] = None
    igst_amount: Optional[float] = None
    cess_amount: Optional[float] = None
    total_amount: Optional[float] = None


@dataclass
class TaxSummary:
    subtotal: Optional[float] = None
    cgst: Optional[float] = None
    sgst: Optional[float] = None
    igst: Optional[float] = None
    cess: Optional[float] = None
    tcs: Optional[float] = None
    round_off: Optional[float] = None
    grand_total: Optional[float] = None

    @property
    def tax_components(self) -> Dict[str, float]:
        """Tax components with missing values treated as zero."""
        return {
            'cgst': self.cgst or 0.0,
            'sgst': self.sgst or 0.0,
            'igst': self.igst or 0.0,
            'cess': self.cess or 0.0,
            'tcs': self.tcs or 0.0,
        }

    @property
    def total_tax(self) -> float:
        return round(sum(self.tax_components.values()), 2)

    def is_empty(self) -> bool:
        return not any(v is not None for v in asdict(self).values())


@dataclass
class InvoiceDocument:
    """Tax invoice or tax credit note."""
    kind: DocumentKind = DocumentKind.INVOICE
    invoice_number: Optional[str] = None
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    vendor: PartyDetails = field(default_factory=PartyDetails)
    customer: PartyDetails = field(default_factory=PartyDetails)
    line_items: List[LineItem] = field(default_factory=list)
    tax_summary: TaxSummary = field(default_factory=TaxSummary)
    place_of_supply: Optional[str] = None
    reverse_charge: bool = False
    original_invoice_number: Optional[str] = None
    # purchase when the client is the customer, sales when the client issued it
    transaction_type: str = "purchase"


@dataclass
class PanCardDocument:
    kind: DocumentKind = DocumentKind.PAN_CARD
    pan_number: Optional[str] = None
    name: Optional[str] = None
    father_name: Optional[str] = None
    date_of_birth: Optional[date] = None


@dataclass
class AadhaarDocument:
    kind: DocumentKind = DocumentKind.AADHAAR_CARD
    aadhaar_number: Optional[str] = None
    name: Optional[str] = None
    date_of_birth: Optional[date] = None
    gender: Optional[str] = None
    address: Optional[str] = None


@dataclass
class GstCertificateDocument:
    kind: DocumentKind = DocumentKind.GST_CERTIFICATE
    gstin: Optional[str] = None
    legal_name: Optional[str] = None
    trade_name: Optional[str] = None
    registration_date: Optional[date] = None
    address: Optional[str] = None
    constitution: Optional[str] = None


ExtractedDocument = Union[InvoiceDocument, PanCardDocument, AadhaarDocument, GstCertificateDocument]


@dataclass(frozen=True)
class ExtractionResult:
    """Immutable output of one OCR + extraction cycle."""
    document_kind: DocumentKind
    data: ExtractedDocument
    field_confidence_scores: Dict[str, float]
    overall_confidence: float
    weighted_confidence: float
    schema_version: str = SCHEMA_VERSION
    backend: str = "template"
    ocr_confidence: float = 0.0
    raw_text: str = ""

    def to_json_dict(self, findings: Optional[List[ValidationFinding]] = None) -> Dict[str, Any]:
        """Persistable JSON shape with confidence_scores and validation_flags sub-objects."""
        payload = document_to_dict(self.data)
        payload['schema_version'] = self.schema_version
        payload['confidence_scores'] = {
            'fields': dict(self.field_confidence_scores),
            'overall': self.overall_confidence,
            'weighted': self.weighted_confidence,
            'ocr': self.ocr_confidence,
        }
        findings = findings or []
        payload['validation_flags'] = {
            'errors': [f.to_dict() for f in findings if f.severity == Severity.ERROR],
            'warnings': [f.to_dict() for f in findings if f.severity == Severity.WARNING],
            'info': [f.to_dict() for f in findings if f.severity == Severity.INFO],
        }
        if isinstance(self.data, InvoiceDocument):
            payload['transaction_classification'] = classify_transaction(self.data)
        return payload


# Required top-level groups per kind; a group counts as present when any leaf is set.
REQUIRED_GROUPS = {
    DocumentKind.INVOICE: ('identification', 'vendor', 'tax_summary'),
    DocumentKind.TAX_CREDIT_NOTE: ('identification', 'vendor', 'tax_summary'),
    DocumentKind.PAN_CARD: ('pan_number', 'name'),
    DocumentKind.AADHAAR_CARD: ('aadhaar_number', 'name'),
    DocumentKind.GST_CERTIFICATE: ('gstin', 'legal_name'),
}

_NUMBER_CLEAN = re.compile(r'[₹,\s]|rs\.?|inr', re.IGNORECASE)


def to_number(value: Any) -> Optional[float]:
    """Coerce '1,18,000.00', '₹ 900' or 900 to a float; None when not numeric."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = _NUMBER_CLEAN.sub('', str(value))
    if text.endswith('%'):
        text = text[:-1]
    if text.startswith('(') and text.endswith(')'):
        text = '-' + text[1:-1]
    try:
        return float(text)
    except ValueError:
        logger.debug(f"Discarding non-numeric value: {value!r}")
        return None


def to_date(value: Any) -> Optional[date]:
    """Parse a date leaf; day-first as printed on Indian documents."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    try:
        if re.match(r'^\d{4}-\d{2}-\d{2}', text):
            return date.fromisoformat(text[:10])
        return date_parser.parse(text, dayfirst=True).date()
    except (ParserError, ValueError, OverflowError):
        logger.debug(f"Discarding unparseable date: {value!r}")
        return None


def to_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _to_identifier(value: Any) -> Optional[str]:
    text = to_text(value)
    return re.sub(r'\s+', '', text).upper() if text else None


def _first(data: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def _section(payload: Dict[str, Any], key: str) -> Dict[str, Any]:
    value = payload.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise SchemaViolationError(f"'{key}' must be an object, got {type(value).__name__}", missing=[key])
    return value


def _parse_party(data: Dict[str, Any]) -> PartyDetails:
    state_code = to_text(data.get('state_code'))
    if state_code and state_code.isdigit():
        state_code = state_code.zfill(2)
    return PartyDetails(
        legal_name=to_text(data.get('legal_name') or data.get('name')),
        gstin=_to_identifier(data.get('gstin')),
        pan=_to_identifier(data.get('pan')),
        address=to_text(data.get('address')),
        state=to_text(data.get('state')),
        state_code=state_code,
    )


def _parse_line_item(data: Any, index: int) -> LineItem:
    if not isinstance(data, dict):
        raise SchemaViolationError(f"line_items[{index}] must be an object", missing=['line_items'])
    code = to_text(data.get('hsn_sac_code') or data.get('hsn_code') or data.get('sac_code'))
    return LineItem(
        description=to_text(data.get('description')),
        hsn_sac_code=code.replace(' ', '') if code else None,
        quantity=to_number(data.get('quantity')),
        unit=to_text(data.get('unit')),
        rate=to_number(data.get('rate')),
        amount=to_number(_first(data, 'amount', 'taxable_amount', 'taxable_value')),
        gst_rate=to_number(data.get('gst_rate')),
        cgst_amount=to_number(data.get('cgst_amount')),
        sgst_amount=to_number(data.get('sgst_amount')),
        igst_amount=to_number(data.get('igst_amount')),
        cess_amount=to_number(data.get('cess_amount')),
        total_amount=to_number(data.get('total_amount')),
    )


def _parse_tax_summary(data: Dict[str, Any]) -> TaxSummary:
    components = data.get('tax_components') if isinstance(data.get('tax_components'), dict) else data
    return TaxSummary(
        subtotal=to_number(data.get('subtotal')),
        cgst=to_number(_first(components, 'cgst', 'total_cgst')),
        sgst=to_number(_first(components, 'sgst', 'total_sgst')),
        igst=to_number(_first(components, 'igst', 'total_igst')),
        cess=to_number(_first(components, 'cess', 'total_cess')),
        tcs=to_number(components.get('tcs')),
        round_off=to_number(data.get('round_off')),
        grand_total=to_number(data.get('grand_total')),
    )


def _parse_invoice(kind: DocumentKind, payload: Dict[str, Any]) -> InvoiceDocument:
    identification = _section(payload, 'identification') or payload
    raw_items = payload.get('line_items') or []
    if not isinstance(raw_items, list):
        raise SchemaViolationError("'line_items' must be a list", missing=['line_items'])

    document = InvoiceDocument(
        kind=kind,
        invoice_number=to_text(identification.get('invoice_number') or identification.get('document_number')),
        invoice_date=to_date(identification.get('invoice_date') or identification.get('document_date')),
        due_date=to_date(identification.get('due_date')),
        vendor=_parse_party(_section(payload, 'vendor')),
        customer=_parse_party(_section(payload, 'customer')),
        line_items=[_parse_line_item(item, i) for i, item in enumerate(raw_items)],
        tax_summary=_parse_tax_summary(_section(payload, 'tax_summary')),
        place_of_supply=to_text(payload.get('place_of_supply')),
        reverse_charge=bool(payload.get('reverse_charge', False)),
        original_invoice_number=to_text(identification.get('original_invoice_number')
                                        or payload.get('original_invoice_number')),
        transaction_type=to_text(_first(payload, 'transaction_type', 'document_type')) or 'purchase',
    )

    missing = []
    if document.invoice_number is None and document.invoice_date is None:
        missing.append('identification')
    if document.vendor.is_empty():
        missing.append('vendor')
    if document.tax_summary.is_empty():
        missing.append('tax_summary')
    if not document.line_items:
        missing.append('line_items')
    if missing:
        raise SchemaViolationError(
            f"{kind.label} is missing required sections: {', '.join(missing)}", missing=missing)
    return document


def _require(kind: DocumentKind, document: Any) -> Any:
    missing = [name for name in REQUIRED_GROUPS[kind] if getattr(document, name) is None]
    if len(missing) == len(REQUIRED_GROUPS[kind]):
        raise SchemaViolationError(f"{kind.label} has none of: {', '.join(missing)}", missing=missing)
    return document


def parse_document(kind: Union[DocumentKind, str], payload: Dict[str, Any]) -> ExtractedDocument:
    """Validate an untyped payload and return the tagged schema for ``kind``."""
    kind = DocumentKind(kind)
    if not isinstance(payload, dict):
        raise SchemaViolationError(f"Extraction payload must be an object, got {type(payload).__name__}")

    if kind in (DocumentKind.INVOICE, DocumentKind.TAX_CREDIT_NOTE):
        return _parse_invoice(kind, payload)
    if kind == DocumentKind.PAN_CARD:
        return _require(kind, PanCardDocument(
            pan_number=_to_identifier(payload.get('pan_number')),
            name=to_text(payload.get('name')),
            father_name=to_text(payload.get('father_name')),
            date_of_birth=to_date(payload.get('date_of_birth')),
        ))
    if kind == DocumentKind.AADHAAR_CARD:
        number = to_text(payload.get('aadhaar_number'))
        return _require(kind, AadhaarDocument(
            aadhaar_number=re.sub(r'\D', '', number) if number else None,
            name=to_text(payload.get('name')),
            date_of_birth=to_date(payload.get('date_of_birth')),
            gender=to_text(payload.get('gender')),
            address=to_text(payload.get('address')),
        ))
    return _require(kind, GstCertificateDocument(
        gstin=_to_identifier(payload.get('gstin')),
        legal_name=to_text(payload.get('legal_name')),
        trade_name=to_text(payload.get('trade_name')),
        registration_date=to_date(payload.get('registration_date')),
        address=to_text(payload.get('address')),
        constitution=to_text(payload.get('constitution')),
    ))


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_jsonable(v) for v in value]
    return value


def document_to_dict(document: ExtractedDocument) -> Dict[str, Any]:
    """Plain JSON-ready dict of a schema instance."""
    return _jsonable(asdict(document))


def document_from_dict(data: Dict[str, Any]) -> ExtractedDocument:
    """Rebuild a schema instance from ``document_to_dict`` output."""
    kind = DocumentKind(data['kind'])
    if kind in (DocumentKind.INVOICE, DocumentKind.TAX_CREDIT_NOTE):
        payload = dict(data)
        payload['identification'] = {
            'invoice_number': data.get('invoice_number'),
            'invoice_date': data.get('invoice_date'),
            'due_date': data.get('due_date'),
            'original_invoice_number': data.get('original_invoice_number'),
        }
        return _parse_invoice(kind, payload)
    return parse_document(kind, data)


def classify_transaction(document: InvoiceDocument) -> Dict[str, Any]:
    """Intra/inter-state and B2B/B2C classification for the persisted record."""
    vendor_state = document.vendor.gstin[:2] if document.vendor.gstin else document.vendor.state_code
    customer_state = document.customer.gstin[:2] if document.customer.gstin else document.customer.state_code
    if vendor_state and customer_state:
        supply = 'intra_state' if vendor_state == customer_state else 'inter_state'
    elif (document.tax_summary.igst or 0) > 0:
        supply = 'inter_state'
    elif (document.tax_summary.cgst or 0) > 0 or (document.tax_summary.sgst or 0) > 0:
        supply = 'intra_state'
    else:
        supply = 'unknown'
    return {
        'supply_type': supply,
        'business_type': 'B2B' if document.customer.gstin else 'B2C',
        'reverse_charge': document.reverse_charge,
        'is_credit_note': document.kind == DocumentKind.TAX_CREDIT_NOTE,
    }
