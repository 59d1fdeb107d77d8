"""
Anomaly Detection

Recomputed on demand over a set of persisted invoices.

Features:
- Amount outliers by leave-one-out z-score (per vendor when enough history, else global)
- Document-number sequence gaps per counterparty
- Date anomalies (future-dated, due before issue, aged unpaid)
- Tax reconciliation mismatches and mixed IGST + CGST/SGST
- Repeated identical amounts
- Composite 0-100 risk score
"""

import logging
import re
from collections import Counter, defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence

import numpy as np

from ..core.document_schema import InvoiceDocument, document_from_dict
from ..core.errors import SchemaViolationError
from ..core.validation_engine import DomainValidator, RECONCILIATION_TOLERANCE

logger = logging.getLogger(__name__)

CHECK_TYPES = ('amount_spike', 'missing_sequence', 'date_anomaly', 'tax_mismatch', 'frequency_anomaly')

_NUMBER_RE = re.compile(r'\d+')


class AnomalySeverity(Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def weight(self) -> int:
        return {'low': 10, 'medium': 25, 'high': 50, 'critical': 100}[self.value]

    @property
    def rank(self) -> int:
        return {'low': 1, 'medium': 2, 'high': 3, 'critical': 4}[self.value]


@dataclass
class Anomaly:
    anomaly_id: str
    type: str
    severity: AnomalySeverity
    title: str
    description: str
    affected_documents: List[int]
    suggested_action: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    detected_at: str = field(default_factory=lambda: datetime.now().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.anomaly_id,
            'type': self.type,
            'severity': self.severity.value,
            'title': self.title,
            'description': self.description,
            'affected_documents': list(self.affected_documents),
            'suggested_action': self.suggested_action,
            'metadata': self.metadata,
            'detected_at': self.detected_at,
        }


@dataclass
class AnomalyReport:
    anomalies: List[Anomaly]
    total_checked: int
    risk_score: int

    @property
    def anomalies_found(self) -> int:
        return len(self.anomalies)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'anomalies': [a.to_dict() for a in self.anomalies],
            'total_checked': self.total_checked,
            'anomalies_found': self.anomalies_found,
            'risk_score': self.risk_score,
        }


@dataclass
class InvoiceRecord:
    """A persisted invoice as seen by the detector."""
    document_id: int
    invoice: InvoiceDocument
    counterparty: str
    payment_status: str = 'unpaid'

    @property
    def amount(self) -> Optional[float]:
        if self.invoice.tax_summary.grand_total is not None:
            return self.invoice.tax_summary.grand_total
        return DomainValidator.expected_grand_total(self.invoice)

    @property
    def label(self) -> str:
        return self.invoice.invoice_number or f"document {self.document_id}"


def records_from_extractions(rows: Iterable[Dict[str, Any]]) -> List[InvoiceRecord]:
    """Build detector records from ``IntakeRepository.list_completed_extractions`` rows."""
    records = []
    for row in rows:
        try:
            invoice = document_from_dict(row['data'])
        except (SchemaViolationError, KeyError, ValueError) as e:
            logger.warning(f"⚠️ Skipping document {row.get('document_id')} in anomaly scan: {e}")
            continue
        if not isinstance(invoice, InvoiceDocument):
            continue
        party = invoice.customer if invoice.transaction_type == 'sales' else invoice.vendor
        if row.get('vendor_id'):
            counterparty = f"vendor:{row['vendor_id']}"
        else:
            counterparty = party.gstin or (party.legal_name or 'unknown').strip().lower()
        records.append(InvoiceRecord(row['document_id'], invoice, counterparty,
                                     (row.get('data') or {}).get('payment_status') or 'unpaid'))
    return records


def calculate_risk_score(anomalies: Sequence[Anomaly]) -> int:
    """Mean severity weight of the anomalies, on a 0-100 scale."""
    if not anomalies:
        return 0
    total = sum(a.severity.weight for a in anomalies)
    return min(100, round(total / (len(anomalies) * 100) * 100))


def summarize(report: AnomalyReport) -> Dict[str, Any]:
    by_type = {check: 0 for check in CHECK_TYPES}
    by_severity = {severity.value: 0 for severity in AnomalySeverity}
    for anomaly in report.anomalies:
        by_type[anomaly.type] = by_type.get(anomaly.type, 0) + 1
        by_severity[anomaly.severity.value] += 1
    return {
        'total_checked': report.total_checked,
        'total_anomalies': report.anomalies_found,
        'by_type': by_type,
        'by_severity': by_severity,
        'risk_score': report.risk_score,
    }


def leave_one_out_z_scores(amounts: Sequence[float]) -> np.ndarray:
    """
    z-score of each value against the distribution of all the other values.

    A value differing from a constant remainder gets an infinite score; a
    value equal to it gets zero.
    """
    values = np.asarray(amounts, dtype=float)
    scores = np.zeros(len(values))
    for index in range(len(values)):
        others = np.delete(values, index)
        mean = others.mean()
        std = others.std()
        if std == 0:
            scores[index] = 0.0 if values[index] == mean else np.copysign(np.inf, values[index] - mean)
        else:
            scores[index] = (values[index] - mean) / std
    return scores


class AnomalyDetector:
    """Runs every anomaly check over a document set."""

    def __init__(self, today: Optional[date] = None, min_outlier_documents: int = 10,
                 z_threshold: float = 3.0, high_z_threshold: float = 4.0,
                 min_sequence_documents: int = 5, max_reported_gap: int = 5,
                 repeat_threshold: int = 5, large_drift: float = 100.0, aged_days: int = 365):
        self.today = today
        self.min_outlier_documents = min_outlier_documents
        self.z_threshold = z_threshold
        self.high_z_threshold = high_z_threshold
        self.min_sequence_documents = min_sequence_documents
        self.max_reported_gap = max_reported_gap
        self.repeat_threshold = repeat_threshold
        self.large_drift = large_drift
        self.aged_days = aged_days

    def detect(self, records: Sequence[InvoiceRecord],
               check_types: Optional[Iterable[str]] = None) -> AnomalyReport:
        checks = set(check_types or CHECK_TYPES)
        unknown = checks - set(CHECK_TYPES)
        if unknown:
            raise ValueError(f"Unknown anomaly checks: {sorted(unknown)}")

        logger.info(f"🔍 Running anomaly detection over {len(records)} document(s)")
        anomalies: List[Anomaly] = []
        if 'amount_spike' in checks:
            anomalies.extend(self.detect_amount_spikes(records))
        if 'missing_sequence' in checks:
            anomalies.extend(self.detect_missing_sequences(records))
        if 'date_anomaly' in checks:
            anomalies.extend(self.detect_date_anomalies(records))
        if 'tax_mismatch' in checks:
            anomalies.extend(self.detect_tax_mismatches(records))
        if 'frequency_anomaly' in checks:
            anomalies.extend(self.detect_frequency_anomalies(records))

        anomalies.sort(key=lambda a: a.severity.rank, reverse=True)
        report = AnomalyReport(anomalies, len(records), calculate_risk_score(anomalies))
        logger.info(f"✅ Anomaly detection complete: {report.anomalies_found} found (risk {report.risk_score}/100)")
        return report

    def detect_for_repository(self, repository, client_id: Optional[int] = None,
                              check_types: Optional[Iterable[str]] = None) -> AnomalyReport:
        rows = repository.list_completed_extractions(client_id=client_id)
        return self.detect(records_from_extractions(rows), check_types)

    def detect_amount_spikes(self, records: Sequence[InvoiceRecord]) -> List[Anomaly]:
        priced = [r for r in records if r.amount is not None]
        by_party: Dict[str, List[InvoiceRecord]] = defaultdict(list)
        for record in priced:
            by_party[record.counterparty].append(record)

        groups = []
        global_pool = []
        for party, party_records in by_party.items():
            if len(party_records) >= self.min_outlier_documents:
                groups.append((party, party_records))
            else:
                global_pool.extend(party_records)
        if len(global_pool) >= self.min_outlier_documents:
            groups.append((None, global_pool))
        elif global_pool and len(priced) >= self.min_outlier_documents:
            # Too few leftovers on their own: score them against everything
            groups.append((None, priced))

        anomalies = []
        seen = set()
        for party, group in groups:
            amounts = [r.amount for r in group]
            scores = leave_one_out_z_scores(amounts)
            for record, z_score in zip(group, scores):
                if abs(z_score) <= self.z_threshold or record.document_id in seen:
                    continue
                if party is None and len(by_party[record.counterparty]) >= self.min_outlier_documents:
                    continue
                seen.add(record.document_id)
                others = np.delete(np.asarray(amounts, dtype=float), amounts.index(record.amount))
                severity = AnomalySeverity.HIGH if abs(z_score) > self.high_z_threshold else AnomalySeverity.MEDIUM
                z_text = "∞" if np.isinf(z_score) else f"{abs(z_score):.1f}"
                anomalies.append(Anomaly(
                    anomaly_id=f"spike_{record.document_id}",
                    type='amount_spike',
                    severity=severity,
                    title='Unusual Amount Detected',
                    description=(f"Invoice {record.label} has an amount (₹{record.amount:,.2f}) that is "
                                 f"{z_text}σ from the mean (₹{others.mean():,.2f})"),
                    affected_documents=[record.document_id],
                    suggested_action='Verify this is a legitimate large transaction and not a data entry error',
                    metadata={'amount': record.amount, 'mean': float(others.mean()), 'std_dev': float(others.std()),
                              'z_score': float(z_score), 'distribution': 'vendor' if party else 'global'},
                ))
        return anomalies

    def detect_missing_sequences(self, records: Sequence[InvoiceRecord]) -> List[Anomaly]:
        by_party: Dict[str, Dict[int, int]] = defaultdict(dict)
        for record in records:
            numbers = _NUMBER_RE.findall(record.invoice.invoice_number or '')
            if numbers:
                by_party[record.counterparty].setdefault(int(numbers[-1]), record.document_id)

        anomalies = []
        for party, numbered in by_party.items():
            if len(numbered) < self.min_sequence_documents:
                continue
            ordered = sorted(numbered)
            for previous, current in zip(ordered, ordered[1:]):
                missing = list(range(previous + 1, current))
                if not missing or len(missing) > self.max_reported_gap:
                    continue
                anomalies.append(Anomaly(
                    anomaly_id=f"sequence_{party}_{previous}",
                    type='missing_sequence',
                    severity=AnomalySeverity.MEDIUM,
                    title='Missing Invoice Sequence',
                    description=f"Invoices from {party} are missing sequence numbers: "
                                f"{', '.join(str(n) for n in missing)}",
                    affected_documents=[numbered[previous], numbered[current]],
                    suggested_action='Check if these invoices were never received or were deleted',
                    metadata={'counterparty': party, 'missing_numbers': missing, 'gap_size': len(missing)},
                ))
        return anomalies

    def detect_date_anomalies(self, records: Sequence[InvoiceRecord]) -> List[Anomaly]:
        today = self.today or date.today()
        anomalies = []
        for record in records:
            invoice = record.invoice
            issued, due = invoice.invoice_date, invoice.due_date
            if issued and issued > today:
                anomalies.append(Anomaly(
                    f"future_date_{record.document_id}", 'date_anomaly', AnomalySeverity.HIGH,
                    'Future-Dated Invoice', f"Invoice {record.label} has a date in the future: {issued.isoformat()}",
                    [record.document_id], 'Verify the invoice date is correct',
                    {'invoice_date': issued.isoformat(), 'today': today.isoformat()}))
            if issued and due and due < issued:
                anomalies.append(Anomaly(
                    f"due_before_invoice_{record.document_id}", 'date_anomaly', AnomalySeverity.MEDIUM,
                    'Due Date Before Invoice Date',
                    f"Invoice {record.label} has due date ({due.isoformat()}) before invoice date "
                    f"({issued.isoformat()})",
                    [record.document_id], 'Correct the due date',
                    {'invoice_date': issued.isoformat(), 'due_date': due.isoformat()}))
            if issued and record.payment_status == 'unpaid' and (today - issued).days > self.aged_days:
                age = (today - issued).days
                anomalies.append(Anomaly(
                    f"old_unpaid_{record.document_id}", 'date_anomaly', AnomalySeverity.MEDIUM,
                    'Old Unpaid Invoice', f"Invoice {record.label} is {age} days old and still unpaid",
                    [record.document_id], 'Consider writing off as bad debt or following up for payment',
                    {'age_days': age, 'amount': record.amount}))
        return anomalies

    def detect_tax_mismatches(self, records: Sequence[InvoiceRecord]) -> List[Anomaly]:
        anomalies = []
        for record in records:
            taxes = record.invoice.tax_summary
            components = taxes.tax_components
            expected = DomainValidator.expected_grand_total(record.invoice)
            if expected is not None and taxes.grand_total is not None:
                difference = round(abs(taxes.grand_total - expected), 2)
                if difference > RECONCILIATION_TOLERANCE:
                    anomalies.append(Anomaly(
                        f"tax_mismatch_{record.document_id}", 'tax_mismatch',
                        AnomalySeverity.HIGH if difference > self.large_drift else AnomalySeverity.MEDIUM,
                        'Tax Calculation Mismatch',
                        f"Invoice {record.label}: total (₹{taxes.grand_total:,.2f}) ≠ subtotal + taxes "
                        f"(₹{expected:,.2f}). Difference: ₹{difference:,.2f}",
                        [record.document_id], 'Recalculate taxes or verify invoice data',
                        {**components, 'calculated_total': expected, 'actual_total': taxes.grand_total,
                         'difference': difference}))
            if components['igst'] > 0 and (components['cgst'] > 0 or components['sgst'] > 0):
                anomalies.append(Anomaly(
                    f"tax_logic_{record.document_id}", 'tax_mismatch', AnomalySeverity.HIGH,
                    'Invalid GST Tax Combination',
                    f"Invoice {record.label}: has both IGST (₹{components['igst']:,.2f}) and CGST/SGST "
                    f"(₹{components['cgst'] + components['sgst']:,.2f})",
                    [record.document_id], 'Use either IGST (inter-state) or CGST+SGST (intra-state), not both',
                    {k: components[k] for k in ('cgst', 'sgst', 'igst')}))
        return anomalies

    def detect_frequency_anomalies(self, records: Sequence[InvoiceRecord]) -> List[Anomaly]:
        by_party: Dict[str, List[InvoiceRecord]] = defaultdict(list)
        for record in records:
            if record.amount is not None:
                by_party[record.counterparty].append(record)

        anomalies = []
        for party, party_records in by_party.items():
            counts = Counter(round(r.amount, 2) for r in party_records)
            for amount, count in counts.items():
                if count < self.repeat_threshold:
                    continue
                anomalies.append(Anomaly(
                    f"freq_{party}_{amount}", 'frequency_anomaly', AnomalySeverity.LOW,
                    'Repetitive Invoice Amount',
                    f"{party} has {count} invoices with the exact same amount: ₹{amount:,.2f}",
                    [r.document_id for r in party_records if round(r.amount, 2) == amount],
                    'Verify these are legitimate separate transactions (e.g., subscription payments)',
                    {'counterparty': party, 'amount': amount, 'occurrence_count': count}))
        return anomalies
