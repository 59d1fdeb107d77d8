"""
Confidence Scoring and Routing

Weighted confidence over per-field extraction scores, and the routing
decision between automatic finalization and human review.

Both functions are pure: the same scores, findings and thresholds always
produce the same decision.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, Mapping, Optional, Tuple

from .document_schema import DocumentKind, Severity, ValidationFinding

logger = logging.getLogger(__name__)

AUTO_APPROVE_THRESHOLD = 0.95
REVIEW_THRESHOLD = 0.85

# Fields missing from a table still count, at this weight
DEFAULT_FIELD_WEIGHT = 0.02

_INVOICE_WEIGHTS = {
    'vendor.gstin': 0.25,
    'customer.gstin': 0.10,
    'line_items': 0.20,
    'line_items.hsn_sac_code': 0.05,
    'tax_summary.tax_components': 0.15,
    'tax_summary.grand_total': 0.10,
    'invoice_number': 0.08,
    'invoice_date': 0.07,
}

FIELD_WEIGHTS: Dict[DocumentKind, Dict[str, float]] = {
    DocumentKind.INVOICE: _INVOICE_WEIGHTS,
    DocumentKind.TAX_CREDIT_NOTE: _INVOICE_WEIGHTS,
    DocumentKind.PAN_CARD: {
        'pan_number': 0.50, 'name': 0.30, 'date_of_birth': 0.10, 'father_name': 0.10,
    },
    DocumentKind.AADHAAR_CARD: {
        'aadhaar_number': 0.50, 'name': 0.30, 'date_of_birth': 0.10, 'gender': 0.05, 'address': 0.05,
    },
    DocumentKind.GST_CERTIFICATE: {
        'gstin': 0.50, 'legal_name': 0.25, 'registration_date': 0.10, 'address': 0.10, 'trade_name': 0.05,
    },
}

# Scored 0.0 when absent instead of being dropped from the weighting
_INVOICE_REQUIRED = ('invoice_number', 'invoice_date', 'vendor.gstin', 'tax_summary.grand_total')

REQUIRED_FIELDS: Dict[DocumentKind, Tuple[str, ...]] = {
    DocumentKind.INVOICE: _INVOICE_REQUIRED,
    DocumentKind.TAX_CREDIT_NOTE: _INVOICE_REQUIRED,
    DocumentKind.PAN_CARD: ('pan_number', 'name'),
    DocumentKind.AADHAAR_CARD: ('aadhaar_number', 'name'),
    DocumentKind.GST_CERTIFICATE: ('gstin', 'legal_name'),
}


class RoutingAction(Enum):
    AUTO_FINALIZE = "auto_finalize"
    REVIEW = "review"


class ReviewPriority(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {'high': 0, 'medium': 1, 'low': 2}[self.value]


@dataclass(frozen=True)
class RoutingDecision:
    action: RoutingAction
    priority: Optional[ReviewPriority]
    reason: str
    weighted_confidence: float
    error_count: int
    warning_count: int

    @property
    def auto_finalize(self) -> bool:
        return self.action == RoutingAction.AUTO_FINALIZE


def weighted_confidence(field_scores: Mapping[str, float], kind: DocumentKind,
                        weights: Optional[Mapping[str, float]] = None) -> float:
    """
    Weighted average of the field scores that are present.

    Weights of absent fields are dropped and the rest renormalized, so a B2C
    invoice without a customer GSTIN is not penalized for it.
    """
    table = weights if weights is not None else FIELD_WEIGHTS[kind]
    weighted_sum = 0.0
    weight_total = 0.0
    for field_name in sorted(field_scores):
        score = min(max(float(field_scores[field_name]), 0.0), 1.0)
        weight = table.get(field_name, DEFAULT_FIELD_WEIGHT)
        weighted_sum += weight * score
        weight_total += weight
    if weight_total == 0:
        return 0.0
    return round(weighted_sum / weight_total, 4)


def overall_confidence(field_scores: Mapping[str, float]) -> float:
    """Plain mean of the field scores."""
    if not field_scores:
        return 0.0
    return round(sum(field_scores.values()) / len(field_scores), 4)


def route(confidence: float, findings: Iterable[ValidationFinding],
          auto_approve_threshold: float = AUTO_APPROVE_THRESHOLD,
          review_threshold: float = REVIEW_THRESHOLD) -> RoutingDecision:
    """Decide between automatic finalization and review, with a review priority."""
    findings = list(findings)
    errors = sum(1 for f in findings if f.severity == Severity.ERROR)
    warnings = sum(1 for f in findings if f.severity == Severity.WARNING)

    if confidence >= auto_approve_threshold and errors == 0:
        return RoutingDecision(RoutingAction.AUTO_FINALIZE, None,
                               f"confidence {confidence:.2f} with no validation errors",
                               confidence, errors, warnings)

    if errors:
        priority, reason = ReviewPriority.HIGH, f"{errors} validation error(s)"
    elif confidence < review_threshold:
        priority, reason = ReviewPriority.HIGH, f"low confidence {confidence:.2f}"
    elif warnings and confidence < auto_approve_threshold:
        priority, reason = ReviewPriority.MEDIUM, f"confidence {confidence:.2f} with {warnings} warning(s)"
    else:
        priority, reason = ReviewPriority.LOW, f"confidence {confidence:.2f} below auto-approval"

    return RoutingDecision(RoutingAction.REVIEW, priority, reason, confidence, errors, warnings)


class ConfidenceRouter:
    """Applies configured thresholds and logs each decision."""

    def __init__(self, auto_approve_threshold: float = AUTO_APPROVE_THRESHOLD,
                 review_threshold: float = REVIEW_THRESHOLD):
        self.auto_approve_threshold = auto_approve_threshold
        self.review_threshold = review_threshold

    @classmethod
    def from_config(cls, config: Dict) -> 'ConfidenceRouter':
        routing = config.get('routing', {})
        return cls(routing.get('auto_approve_threshold', AUTO_APPROVE_THRESHOLD),
                   routing.get('review_threshold', REVIEW_THRESHOLD))

    def decide(self, confidence: float, findings: Iterable[ValidationFinding]) -> RoutingDecision:
        decision = route(confidence, findings, self.auto_approve_threshold, self.review_threshold)
        if decision.auto_finalize:
            logger.info(f"✅ Auto-finalize: {decision.reason}")
        else:
            logger.info(f"👤 Review ({decision.priority.value}): {decision.reason}")
        return decision
