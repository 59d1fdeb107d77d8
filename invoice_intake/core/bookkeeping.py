"""
Bookkeeping Handoff

Turns a finalized extraction into a debit/credit-ready record for the
external ledger, stores it in the outbox table and optionally writes it to
disk as JSON.
"""

import json
import logging
import re
from dataclasses import dataclass, field, asdict
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .data_persistence import IntakeRepository
from .document_schema import (
    AadhaarDocument,
    DocumentKind,
    ExtractedDocument,
    GstCertificateDocument,
    InvoiceDocument,
    PanCardDocument,
)

logger = logging.getLogger(__name__)

ACCOUNTS = {
    'purchases': ('5100', 'Purchases'),
    'sales': ('4100', 'Sales'),
    'creditors': ('2100', 'Sundry Creditors'),
    'debtors': ('1200', 'Sundry Debtors'),
    'round_off': ('5900', 'Round Off'),
    'input_cgst': ('1410', 'Input CGST'),
    'input_sgst': ('1420', 'Input SGST'),
    'input_igst': ('1430', 'Input IGST'),
    'input_cess': ('1440', 'Input Cess'),
    'input_tcs': ('1450', 'TCS Receivable'),
    'output_cgst': ('2410', 'Output CGST'),
    'output_sgst': ('2420', 'Output SGST'),
    'output_igst': ('2430', 'Output IGST'),
    'output_cess': ('2440', 'Output Cess'),
    'output_tcs': ('2450', 'TCS Payable'),
}


@dataclass
class JournalLine:
    account_code: str
    account_name: str
    debit_amount: float = 0.0
    credit_amount: float = 0.0
    party: Optional[str] = None


@dataclass
class JournalRecord:
    document_id: int
    entry_date: Optional[str]
    entry_type: str
    reference: Optional[str]
    narration: str
    lines: List[JournalLine] = field(default_factory=list)

    @property
    def total_debits(self) -> float:
        return round(sum(line.debit_amount for line in self.lines), 2)

    @property
    def total_credits(self) -> float:
        return round(sum(line.credit_amount for line in self.lines), 2)

    @property
    def is_balanced(self) -> bool:
        return abs(self.total_debits - self.total_credits) < 0.005


def _line(key: str, debit: float = 0.0, credit: float = 0.0, party: Optional[str] = None) -> JournalLine:
    code, name = ACCOUNTS[key]
    return JournalLine(code, name, round(debit, 2), round(credit, 2), party)


def build_journal(document_id: int, invoice: InvoiceDocument) -> JournalRecord:
    """
    Balanced journal for a purchase or sales invoice; credit notes reverse it.

    Any residual difference between debits and credits is absorbed by the
    Round Off account.
    """
    taxes = invoice.tax_summary
    components = taxes.tax_components
    subtotal = taxes.subtotal if taxes.subtotal is not None else \
        sum(item.amount or 0.0 for item in invoice.line_items)
    grand_total = taxes.grand_total if taxes.grand_total is not None else \
        subtotal + taxes.total_tax + (taxes.round_off or 0.0)
    sales = invoice.transaction_type == 'sales'

    lines: List[JournalLine] = []
    if sales:
        party = invoice.customer.legal_name or 'Customer'
        lines.append(_line('debtors', debit=grand_total, party=party))
        lines.append(_line('sales', credit=subtotal))
        for tax in ('cgst', 'sgst', 'igst', 'cess', 'tcs'):
            if components[tax]:
                lines.append(_line(f'output_{tax}', credit=components[tax]))
    else:
        party = invoice.vendor.legal_name or 'Vendor'
        lines.append(_line('purchases', debit=subtotal))
        for tax in ('cgst', 'sgst', 'igst', 'cess', 'tcs'):
            if components[tax]:
                lines.append(_line(f'input_{tax}', debit=components[tax]))
        lines.append(_line('creditors', credit=grand_total, party=party))

    difference = round(sum(l.debit_amount for l in lines) - sum(l.credit_amount for l in lines), 2)
    if difference:
        lines.append(_line('round_off', debit=-difference if difference < 0 else 0.0,
                           credit=difference if difference > 0 else 0.0))

    entry_type = 'sales' if sales else 'purchase'
    if invoice.kind == DocumentKind.TAX_CREDIT_NOTE:
        entry_type = f'{entry_type}_return'
        lines = [JournalLine(l.account_code, l.account_name, l.credit_amount, l.debit_amount, l.party)
                 for l in lines]

    return JournalRecord(
        document_id=document_id,
        entry_date=invoice.invoice_date.isoformat() if invoice.invoice_date else None,
        entry_type=entry_type,
        reference=invoice.invoice_number,
        narration=f"{invoice.kind.label} {invoice.invoice_number or ''} - {party}".strip(),
        lines=lines,
    )


def build_profile_update(document: ExtractedDocument) -> Dict[str, Any]:
    """Client profile fields carried by a KYC document."""
    if isinstance(document, PanCardDocument):
        return {'pan': document.pan_number, 'name': document.name}
    if isinstance(document, GstCertificateDocument):
        pan = document.gstin[2:12] if document.gstin else None
        return {'gstin': document.gstin, 'pan': pan, 'name': document.legal_name}
    if isinstance(document, AadhaarDocument):
        return {'name': document.name, 'aadhaar_last4': (document.aadhaar_number or '')[-4:] or None}
    raise TypeError(f"No profile fields for {type(document).__name__}")


class BookkeepingHandoff:
    """Publishes finalized documents to the ledger outbox."""

    def __init__(self, repository: IntakeRepository, config: Optional[Dict[str, Any]] = None):
        self.repository = repository
        output = (config or {}).get('output', {})
        self.save_enabled = output.get('save_handoffs', False)
        self.handoff_dir = Path(output.get('handoff_directory', 'handoffs'))
        if self.save_enabled:
            self.handoff_dir.mkdir(parents=True, exist_ok=True)

    def publish(self, document_id: int, document: ExtractedDocument,
                review_item_id: Optional[int] = None, client_id: Optional[int] = None) -> int:
        if isinstance(document, InvoiceDocument):
            journal = build_journal(document_id, document)
            if not journal.is_balanced:
                raise ValueError(f"Journal for document {document_id} is not balanced")
            handoff_type = 'journal_entry'
            payload = asdict(journal)
            payload['total_debits'] = journal.total_debits
            payload['total_credits'] = journal.total_credits
        else:
            handoff_type = 'client_profile_update'
            payload = {'client_id': client_id, 'kind': document.kind.value,
                       'fields': build_profile_update(document)}
            if client_id is not None:
                self.repository.update_client_profile(
                    client_id, **{k: v for k, v in payload['fields'].items() if k in ('name', 'pan', 'gstin')})

        handoff_id = self.repository.save_handoff(document_id, handoff_type, payload, review_item_id)
        logger.info(f"📤 Handoff #{handoff_id} ({handoff_type}) for document {document_id}")

        if self.save_enabled:
            self._write_file(handoff_id, document_id, handoff_type, payload)
        return handoff_id

    def _write_file(self, handoff_id: int, document_id: int, handoff_type: str, payload: Dict[str, Any]) -> str:
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S')
        safe_type = re.sub(r'[^a-z_]', '', handoff_type)
        filepath = self.handoff_dir / f"{timestamp}_doc{document_id}_{safe_type}_{handoff_id}.json"
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(payload, f, indent=2, ensure_ascii=False, default=str)
        logger.debug(f"Handoff written to {filepath}")
        return str(filepath)
