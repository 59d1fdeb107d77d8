"""
Versioned extraction prompts, one per document kind.

Each template fixes the JSON shape the LLM backend must return. The
``{text}`` placeholder receives the post-processed OCR text.
"""

from dataclasses import dataclass
from typing import Dict

from .document_schema import DocumentKind, SCHEMA_VERSION


@dataclass(frozen=True)
class PromptTemplate:
    kind: DocumentKind
    version: str
    system: str
    user: str

    def render(self, text: str) -> str:
        return self.user.replace('{text}', text)


SYSTEM_PROMPT = (
    "You extract data from Indian financial and KYC documents. "
    "Copy values exactly as printed; never calculate, infer or invent a value. "
    "Use null for anything that is absent or unreadable. "
    "Return a single JSON object and nothing else."
)

_CONFIDENCE_RULES = """
Return a "confidence" object mapping each dotted field path you filled
(for example "vendor.gstin", "line_items", "tax_summary.grand_total") to a
score between 0 and 1: 1.0 clearly printed, 0.95 minor artifacts,
0.85 some ambiguity, below 0.7 barely legible.
"""

_INVOICE_PROMPT = """Extract this {kind_label} into JSON with exactly these keys:

{{
  "data": {{
    "identification": {{
      "invoice_number": "string",
      "invoice_date": "YYYY-MM-DD",
      "due_date": "YYYY-MM-DD or null",
      "original_invoice_number": "string or null (credit notes only)"
    }},
    "transaction_type": "purchase or sales",
    "place_of_supply": "string or null",
    "reverse_charge": false,
    "vendor": {{"legal_name": "", "gstin": "", "pan": null, "address": "", "state": "", "state_code": "27"}},
    "customer": {{"legal_name": "", "gstin": null, "pan": null, "address": "", "state": "", "state_code": ""}},
    "line_items": [
      {{"description": "", "hsn_sac_code": "", "quantity": 0, "unit": "", "rate": 0, "amount": 0,
        "gst_rate": 18, "cgst_amount": 0, "sgst_amount": 0, "igst_amount": 0, "cess_amount": 0,
        "total_amount": 0}}
    ],
    "tax_summary": {{
      "subtotal": 0,
      "tax_components": {{"cgst": 0, "sgst": 0, "igst": 0, "cess": 0, "tcs": 0}},
      "round_off": 0,
      "grand_total": 0
    }}
  }},
  "confidence": {{}}
}}

Rules:
- GSTIN is 15 characters: 2-digit state code, 10-character PAN, entity digit, 'Z', check character.
- HSN/SAC codes are 4, 6 or 8 digits.
- Intra-state supplies carry CGST and SGST; inter-state supplies carry IGST only.
- Amounts are plain numbers without currency symbols or thousands separators.
{confidence_rules}
Document text:
---
{{text}}
---
"""

_PAN_PROMPT = """Extract this PAN card into JSON:

{{
  "data": {{"pan_number": "ABCDE1234F", "name": "", "father_name": "", "date_of_birth": "YYYY-MM-DD"}},
  "confidence": {{}}
}}
{confidence_rules}
Document text:
---
{{text}}
---
"""

_AADHAAR_PROMPT = """Extract this Aadhaar card into JSON:

{{
  "data": {{"aadhaar_number": "12 digits", "name": "", "date_of_birth": "YYYY-MM-DD",
            "gender": "MALE/FEMALE/TRANSGENDER", "address": ""}},
  "confidence": {{}}
}}
{confidence_rules}
Document text:
---
{{text}}
---
"""

_GST_CERTIFICATE_PROMPT = """Extract this GST registration certificate (Form GST REG-06) into JSON:

{{
  "data": {{"gstin": "", "legal_name": "", "trade_name": "", "registration_date": "YYYY-MM-DD",
            "address": "", "constitution": ""}},
  "confidence": {{}}
}}
{confidence_rules}
Document text:
---
{{text}}
---
"""


def _build(kind: DocumentKind, body: str) -> PromptTemplate:
    return PromptTemplate(
        kind=kind,
        version=SCHEMA_VERSION,
        system=SYSTEM_PROMPT,
        user=body.format(kind_label=kind.label.lower(), confidence_rules=_CONFIDENCE_RULES),
    )


PROMPTS: Dict[DocumentKind, PromptTemplate] = {
    DocumentKind.INVOICE: _build(DocumentKind.INVOICE, _INVOICE_PROMPT),
    DocumentKind.TAX_CREDIT_NOTE: _build(DocumentKind.TAX_CREDIT_NOTE, _INVOICE_PROMPT),
    DocumentKind.PAN_CARD: _build(DocumentKind.PAN_CARD, _PAN_PROMPT),
    DocumentKind.AADHAAR_CARD: _build(DocumentKind.AADHAAR_CARD, _AADHAAR_PROMPT),
    DocumentKind.GST_CERTIFICATE: _build(DocumentKind.GST_CERTIFICATE, _GST_CERTIFICATE_PROMPT),
}


def get_prompt(kind: DocumentKind) -> PromptTemplate:
    return PROMPTS[kind]
