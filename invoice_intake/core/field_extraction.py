"""
Field Extraction Engine

Maps recognized text to the typed schema of the declared document kind.

Features:
- Deterministic regex templates per document kind (default backend)
- Versioned-prompt LLM backend returning JSON (optional)
- Boundary validation into tagged dataclasses
- Per-field confidence, weighted and overall document confidence
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from openai import OpenAI, OpenAIError

from .confidence_scoring import FIELD_WEIGHTS, REQUIRED_FIELDS, overall_confidence, weighted_confidence
from .document_schema import (
    DocumentKind,
    ExtractionResult,
    InvoiceDocument,
    SCHEMA_VERSION,
    parse_document,
    to_number,
)
from .errors import ExtractionBackendError, SchemaViolationError
from .extraction_prompts import get_prompt
from .validation_engine import GSTINValidator, AadhaarValidator

logger = logging.getLogger(__name__)

GSTIN_RE = re.compile(r'\b\d{2}[A-Z]{5}\d{4}[A-Z][1-9A-Z]Z[0-9A-Z]\b')
PAN_RE = re.compile(r'\b[A-Z]{5}\d{4}[A-Z]\b')
AADHAAR_RE = re.compile(r'\b[2-9]\d{3}\s?\d{4}\s?\d{4}\b')
DATE_PATTERN = (r'(\d{4}-\d{2}-\d{2}|\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}'
                r'|\d{1,2}[\s\-][A-Za-z]{3,9}[\s\-,]+\d{4})')
DATE_RE = re.compile(DATE_PATTERN)
AMOUNT_RE = re.compile(r'-?\(?\d[\d,]*(?:\.\d+)?\)?')
PERCENT_RE = re.compile(r'\d+(?:\.\d+)?\s*%')

INVOICE_NUMBER_RE = re.compile(
    r'(?:invoice|inv|bill|credit\s*note|note)\s*(?:no\.?|number|#)\s*[:\-]?\s*([A-Za-z0-9][A-Za-z0-9/\-]*)',
    re.IGNORECASE)
ORIGINAL_INVOICE_RE = re.compile(
    r'(?:original|against|ref(?:erence)?)\s*(?:invoice|inv)\s*(?:no\.?|number|#)?\s*[:\-]?\s*([A-Za-z0-9][A-Za-z0-9/\-]*)',
    re.IGNORECASE)
RECIPIENT_LABEL_RE = re.compile(r'\b(bill(?:ed)?\s*to|buyer|customer|consignee|ship(?:ped)?\s*to|recipient)\b',
                                re.IGNORECASE)
TITLE_RE = re.compile(r'tax\s*invoice|invoice|credit\s*note|original|duplicate|gstin|page\b', re.IGNORECASE)

LINE_ITEM_RE = re.compile(
    r'^(?:\d{1,3}[.)]?\s+)?(?P<description>.+?)\s+(?P<hsn>\d{4,8})\s+'
    r'(?P<quantity>\d+(?:\.\d+)?)\s*(?P<unit>[A-Za-z]{1,6})?\s+(?P<rate>[\d,]+(?:\.\d+)?)\s+'
    r'(?:(?P<gst_rate>\d{1,2}(?:\.\d+)?)\s*%\s+)?(?P<amount>[\d,]+(?:\.\d+)?)$')

# Checked in order, first match per line wins
AMOUNT_LABELS = [
    ('round_off', re.compile(r'round(?:ed)?\s*-?\s*off', re.IGNORECASE)),
    ('subtotal', re.compile(r'sub\s*-?\s*total|taxable\s*(?:value|amount)|total\s*before\s*tax', re.IGNORECASE)),
    ('grand_total', re.compile(r'grand\s*total|total\s*amount|amount\s*payable|net\s*payable|invoice\s*total'
                               r'|^total\b', re.IGNORECASE)),
    ('cgst', re.compile(r'\bcgst\b', re.IGNORECASE)),
    ('sgst', re.compile(r'\b(?:sgst|utgst)\b', re.IGNORECASE)),
    ('igst', re.compile(r'\bigst\b', re.IGNORECASE)),
    ('cess', re.compile(r'\bcess\b', re.IGNORECASE)),
    ('tcs', re.compile(r'\btcs\b', re.IGNORECASE)),
]


@dataclass
class RawExtraction:
    """Untyped backend output before boundary validation."""
    payload: Dict[str, Any]
    confidence: Dict[str, float] = field(default_factory=dict)


class ExtractionBackend:
    name = "backend"

    def extract(self, text: str, kind: DocumentKind, ocr_confidence: float) -> RawExtraction:
        raise NotImplementedError


def _labelled_value(lines: List[str], label: re.Pattern) -> Optional[str]:
    """Text after a label on the same line, or the next line when the label stands alone."""
    for index, line in enumerate(lines):
        match = label.search(line)
        if not match:
            continue
        rest = line[match.end():].strip(' :-\t')
        if rest:
            return rest
        if index + 1 < len(lines):
            return lines[index + 1].strip() or None
    return None


def _line_consistent(item: Dict[str, Any]) -> bool:
    """quantity x rate matches the amount; unreadable numbers never match."""
    quantity, rate, amount = (to_number(item[key]) for key in ('quantity', 'rate', 'amount'))
    if quantity is None or rate is None or amount is None:
        return False
    return abs(quantity * rate - amount) <= 1.0


def _last_amount(line: str) -> Optional[float]:
    cleaned = PERCENT_RE.sub(' ', line.replace('₹', ' '))
    amounts = AMOUNT_RE.findall(cleaned)
    return to_number(amounts[-1]) if amounts else None


class TemplateExtractionBackend(ExtractionBackend):
    """Regex templates; confidence follows OCR confidence, discounted where cross-checks fail."""

    name = "template"

    def extract(self, text: str, kind: DocumentKind, ocr_confidence: float) -> RawExtraction:
        lines = [line.strip() for line in text.splitlines() if line.strip() and not line.startswith('--- Page')]
        if kind in (DocumentKind.INVOICE, DocumentKind.TAX_CREDIT_NOTE):
            return self._extract_invoice(lines, kind, ocr_confidence)
        if kind == DocumentKind.PAN_CARD:
            return self._extract_pan(lines, ocr_confidence)
        if kind == DocumentKind.AADHAAR_CARD:
            return self._extract_aadhaar(lines, ocr_confidence)
        return self._extract_gst_certificate(lines, ocr_confidence)

    def _extract_invoice(self, lines: List[str], kind: DocumentKind, base: float) -> RawExtraction:
        split = next((i for i, line in enumerate(lines) if RECIPIENT_LABEL_RE.search(line)), None)
        issuer_lines = lines if split is None else lines[:split]
        recipient_lines = [] if split is None else lines[split:]

        issuer_gstins = [g for line in issuer_lines for g in GSTIN_RE.findall(line)]
        recipient_gstins = [g for line in recipient_lines for g in GSTIN_RE.findall(line)]
        if split is None and len(issuer_gstins) > 1:
            recipient_gstins = issuer_gstins[1:]
        vendor_gstin = issuer_gstins[0] if issuer_gstins else None
        customer_gstin = recipient_gstins[0] if recipient_gstins else None

        vendor_name = next((line for line in issuer_lines
                            if not TITLE_RE.search(line) and re.search(r'[A-Za-z]{3}', line)), None)
        customer_name = _labelled_value(recipient_lines, RECIPIENT_LABEL_RE) if recipient_lines else None

        invoice_number = None
        invoice_date = None
        due_date = None
        original_number = None
        for line in lines:
            if invoice_number is None and not ORIGINAL_INVOICE_RE.search(line):
                match = INVOICE_NUMBER_RE.search(line)
                if match:
                    invoice_number = match.group(1)
            if original_number is None:
                match = ORIGINAL_INVOICE_RE.search(line)
                if match:
                    original_number = match.group(1)
            date_match = DATE_RE.search(line)
            if date_match and re.search(r'date|dated|dt\b', line, re.IGNORECASE):
                if re.search(r'\bdue\b', line, re.IGNORECASE):
                    due_date = due_date or date_match.group(1)
                elif invoice_date is None:
                    invoice_date = date_match.group(1)

        amounts: Dict[str, float] = {}
        line_items = []
        for line in lines:
            item = LINE_ITEM_RE.match(line.replace('₹', ''))
            if item and not any(label.search(line) for _, label in AMOUNT_LABELS):
                line_items.append({
                    'description': item.group('description').strip(),
                    'hsn_sac_code': item.group('hsn'),
                    'quantity': item.group('quantity'),
                    'unit': item.group('unit'),
                    'rate': item.group('rate'),
                    'gst_rate': item.group('gst_rate'),
                    'amount': item.group('amount'),
                })
                continue
            for key, label in AMOUNT_LABELS:
                if label.search(line):
                    value = _last_amount(line[label.search(line).end():])
                    if value is not None and key not in amounts:
                        amounts[key] = value
                    break

        payload = {
            'identification': {
                'invoice_number': invoice_number,
                'invoice_date': invoice_date,
                'due_date': due_date,
                'original_invoice_number': original_number if kind == DocumentKind.TAX_CREDIT_NOTE else None,
            },
            'vendor': {'legal_name': vendor_name, 'gstin': vendor_gstin,
                       'state_code': vendor_gstin[:2] if vendor_gstin else None},
            'customer': {'legal_name': customer_name, 'gstin': customer_gstin,
                         'state_code': customer_gstin[:2] if customer_gstin else None},
            'line_items': line_items,
            'tax_summary': {
                'subtotal': amounts.get('subtotal'),
                'tax_components': {k: amounts.get(k) for k in ('cgst', 'sgst', 'igst', 'cess', 'tcs')},
                'round_off': amounts.get('round_off'),
                'grand_total': amounts.get('grand_total'),
            },
        }
        return RawExtraction(payload, self._invoice_confidence(payload, base))

    @staticmethod
    def _invoice_confidence(payload: Dict[str, Any], base: float) -> Dict[str, float]:
        scores: Dict[str, float] = {}
        identification = payload['identification']
        for key in ('invoice_number', 'invoice_date'):
            scores[key] = base if identification[key] else 0.0

        for party, required in (('vendor', True), ('customer', False)):
            gstin = payload[party]['gstin']
            if gstin:
                scores[f'{party}.gstin'] = base if GSTINValidator.validate_checksum(gstin) else round(base * 0.5, 4)
            elif required:
                scores[f'{party}.gstin'] = 0.0
            if payload[party]['legal_name']:
                scores[f'{party}.legal_name'] = base

        items = payload['line_items']
        if items:
            consistent = all(_line_consistent(i) for i in items)
            scores['line_items'] = base if consistent else round(base * 0.8, 4)
            if all(i['hsn_sac_code'] for i in items):
                scores['line_items.hsn_sac_code'] = base

        taxes = payload['tax_summary']
        if any(v is not None for v in taxes['tax_components'].values()):
            scores['tax_summary.tax_components'] = base
        if taxes['grand_total'] is None:
            scores['tax_summary.grand_total'] = 0.0
        else:
            components = sum(v or 0.0 for v in taxes['tax_components'].values())
            subtotal = taxes['subtotal'] if taxes['subtotal'] is not None else \
                sum(to_number(i['amount']) or 0.0 for i in items)
            expected = subtotal + components + (taxes['round_off'] or 0.0)
            reconciles = abs(expected - taxes['grand_total']) <= 1.0
            scores['tax_summary.grand_total'] = base if reconciles else round(base * 0.8, 4)
        return scores

    @staticmethod
    def _found(payload: Dict[str, Any], base: float) -> Dict[str, float]:
        return {key: base for key, value in payload.items() if value}

    def _extract_pan(self, lines: List[str], base: float) -> RawExtraction:
        pan_match = next((PAN_RE.search(line) for line in lines if PAN_RE.search(line)), None)
        dob = next((DATE_RE.search(line).group(1) for line in lines if DATE_RE.search(line)), None)
        payload = {
            'pan_number': pan_match.group(0) if pan_match else None,
            'name': _labelled_value(lines, re.compile(r'^(?:/\s*)?name\b', re.IGNORECASE)),
            'father_name': _labelled_value(lines, re.compile(r"father'?s\s*name", re.IGNORECASE)),
            'date_of_birth': dob,
        }
        return RawExtraction(payload, self._found(payload, base))

    def _extract_aadhaar(self, lines: List[str], base: float) -> RawExtraction:
        number = None
        for line in lines:
            match = AADHAAR_RE.search(line)
            if match:
                number = re.sub(r'\s', '', match.group(0))
                break

        dob = None
        name = None
        for index, line in enumerate(lines):
            match = re.search(r'(?:DOB|Date of Birth|Year of Birth)\s*[:\-]?\s*' + DATE_PATTERN, line, re.IGNORECASE)
            if match:
                dob = match.group(1)
                if index > 0 and re.fullmatch(r"[A-Za-z .']{3,}", lines[index - 1]):
                    name = lines[index - 1]
                break
        gender = next((m.group(1).upper() for m in
                       (re.search(r'\b(MALE|FEMALE|TRANSGENDER)\b', line, re.IGNORECASE) for line in lines) if m), None)

        payload = {
            'aadhaar_number': number,
            'name': name,
            'date_of_birth': dob,
            'gender': gender,
            'address': _labelled_value(lines, re.compile(r'^address\b', re.IGNORECASE)),
        }
        scores = self._found(payload, base)
        if number and not AadhaarValidator.validate(number):
            scores['aadhaar_number'] = round(base * 0.5, 4)
        return RawExtraction(payload, scores)

    def _extract_gst_certificate(self, lines: List[str], base: float) -> RawExtraction:
        gstin = _labelled_value(lines, re.compile(r'registration\s*number', re.IGNORECASE))
        if not gstin or not GSTIN_RE.search(gstin):
            gstin = next((GSTIN_RE.search(line).group(0) for line in lines if GSTIN_RE.search(line)), None)
        else:
            gstin = GSTIN_RE.search(gstin).group(0)

        registration = _labelled_value(
            lines, re.compile(r'date\s*of\s*(?:liability|registration|validity\s*from)', re.IGNORECASE))
        registration_match = DATE_RE.search(registration) if registration else None
        payload = {
            'gstin': gstin,
            'legal_name': _labelled_value(lines, re.compile(r'legal\s*name(?:\s*of\s*business)?', re.IGNORECASE)),
            'trade_name': _labelled_value(lines, re.compile(r'trade\s*name(?:,?\s*if\s*any)?', re.IGNORECASE)),
            'registration_date': registration_match.group(1) if registration_match else None,
            'address': _labelled_value(lines, re.compile(r'address\s*of\s*principal\s*place\s*of\s*business',
                                                         re.IGNORECASE)),
            'constitution': _labelled_value(lines, re.compile(r'constitution\s*of\s*business', re.IGNORECASE)),
        }
        scores = self._found(payload, base)
        if gstin and not GSTINValidator.validate_checksum(gstin):
            scores['gstin'] = round(base * 0.5, 4)
        return RawExtraction(payload, scores)


class LLMExtractionBackend(ExtractionBackend):
    """Chat-completion backend driven by the versioned prompt for each kind."""

    name = "llm"

    def __init__(self, api_key: Optional[str] = None, model: str = "gpt-4o-mini",
                 client: Optional[OpenAI] = None, timeout: float = 60.0):
        self.model = model
        self.client = client or OpenAI(api_key=api_key, timeout=timeout)

    def extract(self, text: str, kind: DocumentKind, ocr_confidence: float) -> RawExtraction:
        prompt = get_prompt(kind)
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                temperature=0,
                response_format={"type": "json_object"},
                messages=[
                    {"role": "system", "content": prompt.system},
                    {"role": "user", "content": prompt.render(text)},
                ],
            )
        except OpenAIError as e:
            raise ExtractionBackendError(f"LLM extraction failed: {e}") from e

        content = response.choices[0].message.content or ''
        try:
            body = json.loads(content)
        except json.JSONDecodeError as e:
            raise SchemaViolationError(f"LLM returned invalid JSON: {e}") from e
        if not isinstance(body, dict):
            raise SchemaViolationError("LLM response is not a JSON object")

        payload = body.get('data', body)
        raw_scores = body.get('confidence') or {}
        scores = {
            key: float(value) for key, value in raw_scores.items()
            if isinstance(value, (int, float)) and not isinstance(value, bool)
        }
        return RawExtraction(payload, scores)


def field_value(document: Any, key: str) -> Any:
    """Value behind a confidence key on a typed document, None when absent."""
    if key == 'tax_summary.tax_components':
        taxes = document.tax_summary
        present = [v for v in (taxes.cgst, taxes.sgst, taxes.igst, taxes.cess, taxes.tcs) if v is not None]
        return present or None
    if key == 'line_items.hsn_sac_code':
        codes = [item.hsn_sac_code for item in document.line_items if item.hsn_sac_code]
        return codes or None
    value = document
    for part in key.split('.'):
        value = getattr(value, part, None)
    if value is None or value == '' or value == []:
        return None
    return value


class FieldExtractor:
    """
    Main field extraction engine.

    Runs the configured backend, validates its output into the document
    kind's schema and scores it.
    """

    def __init__(self, backend: Optional[ExtractionBackend] = None, schema_version: str = SCHEMA_VERSION):
        self.backend = backend or TemplateExtractionBackend()
        self.schema_version = schema_version
        self.stats = {
            "documents_processed": 0,
            "schema_violations": 0,
            "processing_time": 0.0,
        }
        logger.info(f"Field extractor initialized with '{self.backend.name}' backend")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'FieldExtractor':
        extraction = config.get('extraction', {})
        if extraction.get('backend') == 'llm':
            backend = LLMExtractionBackend(extraction.get('openai_api_key'), extraction.get('llm_model', 'gpt-4o-mini'))
        else:
            backend = TemplateExtractionBackend()
        return cls(backend, extraction.get('schema_version', SCHEMA_VERSION))

    def extract(self, text: str, kind: DocumentKind, ocr_confidence: float = 1.0) -> ExtractionResult:
        """
        Extract a typed document from recognized text.

        Raises:
            SchemaViolationError: required structure is missing
            ExtractionBackendError: the backend itself failed
        """
        start_time = time.time()
        raw = self.backend.extract(text, kind, ocr_confidence)
        try:
            document = parse_document(kind, raw.payload)
        except SchemaViolationError:
            self.stats["schema_violations"] += 1
            raise

        scores = {key: round(min(max(value, 0.0), 1.0), 4) for key, value in raw.confidence.items()}
        if not scores:
            # Nothing self-reported: every weighted field that has a value inherits OCR confidence
            scores = {key: round(min(max(ocr_confidence, 0.0), 1.0), 4)
                      for key in FIELD_WEIGHTS[kind] if field_value(document, key) is not None}
        for key in REQUIRED_FIELDS[kind]:
            if field_value(document, key) is None:
                scores[key] = 0.0

        result = ExtractionResult(
            document_kind=kind,
            data=document,
            field_confidence_scores=scores,
            overall_confidence=overall_confidence(scores),
            weighted_confidence=weighted_confidence(scores, kind),
            schema_version=self.schema_version,
            backend=self.backend.name,
            ocr_confidence=ocr_confidence,
            raw_text=text,
        )

        elapsed = time.time() - start_time
        self.stats["documents_processed"] += 1
        self.stats["processing_time"] += elapsed
        items = len(document.line_items) if isinstance(document, InvoiceDocument) else 0
        logger.info(f"📋 Extracted {kind.value}: {len(scores)} scored field(s), {items} line item(s), "
                    f"weighted confidence {result.weighted_confidence:.2f}")
        return result
