"""
Review Queue State Machine

Human review of extractions that were not auto-finalized.

Features:
- Explicit transition table: pending -> in_review -> approved | rejected | escalated
- Exclusive assignment through a compare-and-set on the item's assignee
- Rejection requires reviewer notes, escalation requires a reason
- Correction capture and bookkeeping handoff on approval
- Listing by status and priority, queue summary
"""

import logging
import sqlite3
from typing import Any, Dict, List, Optional, Iterable

from ..core.bookkeeping import BookkeepingHandoff
from ..core.confidence_scoring import ReviewPriority
from ..core.data_persistence import IntakeRepository, ACTIVE_REVIEW_STATUSES, utcnow
from ..core.document_schema import ValidationFinding, document_from_dict
from ..core.errors import (
    AssignmentConflict,
    InvalidReviewTransition,
    ReviewItemNotFound,
    ReviewQueueError,
    SchemaViolationError,
)
from .corrections import CorrectionTracker

logger = logging.getLogger(__name__)

TRANSITIONS = {
    ('pending', 'assign'): 'in_review',
    ('escalated', 'assign'): 'in_review',
    ('in_review', 'release'): 'pending',
    ('in_review', 'approve'): 'approved',
    ('in_review', 'reject'): 'rejected',
    ('in_review', 'escalate'): 'escalated',
}

TERMINAL_STATUSES = ('approved', 'rejected')


def next_status(status: str, action: str) -> str:
    """Target status for ``action`` or InvalidReviewTransition."""
    try:
        return TRANSITIONS[(status, action)]
    except KeyError:
        raise InvalidReviewTransition(f"Cannot {action} a review item that is {status}") from None


class ReviewQueueManager:
    """Reviewer-facing operations over the persisted review queue."""

    def __init__(self, repository: IntakeRepository, handoff: Optional[BookkeepingHandoff] = None):
        self.repository = repository
        self.handoff = handoff or BookkeepingHandoff(repository)
        self.corrections = CorrectionTracker(repository)

    def enqueue(self, document_id: int, extraction_id: Optional[int], extracted_data: Dict[str, Any],
                findings: Iterable[ValidationFinding], priority: ReviewPriority) -> int:
        try:
            item_id = self.repository.create_review_item(
                document_id, extraction_id, extracted_data, findings, priority.value)
        except sqlite3.IntegrityError as e:
            raise ReviewQueueError(f"Document {document_id} already has an active review item") from e
        logger.info(f"📋 Queued document {document_id} for review as item {item_id} ({priority.value})")
        return item_id

    def get_item(self, item_id: int) -> Dict[str, Any]:
        item = self.repository.get_review_item(item_id)
        if item is None:
            raise ReviewItemNotFound(f"Review item {item_id} not found")
        return item

    def list_items(self, status: Optional[str] = None, priority: Optional[str] = None,
                   limit: int = 100) -> List[Dict[str, Any]]:
        statuses = [status] if status else None
        return self.repository.list_review_items(statuses, priority, limit)

    def queue_summary(self) -> Dict[str, Any]:
        counts = self.repository.review_counts()
        counts['active'] = sum(counts['by_status'].get(s, 0) for s in ACTIVE_REVIEW_STATUSES)
        return counts

    def assign(self, item_id: int, reviewer: str) -> Dict[str, Any]:
        """
        Take exclusive ownership of an item.

        Assigning an item the reviewer already holds is a no-op. An escalated
        item must go to a different reviewer than the one who escalated it.
        """
        if not reviewer:
            raise InvalidReviewTransition("A reviewer is required for assignment")
        item = self.get_item(item_id)
        if item['status'] == 'in_review':
            if item['assigned_to'] == reviewer:
                return item
            raise AssignmentConflict(item_id, reviewer, item['assigned_to'])
        next_status(item['status'], 'assign')
        if item['status'] == 'escalated' and item['assigned_to'] == reviewer:
            raise InvalidReviewTransition(f"Escalated item {item_id} must be re-assigned to another reviewer")

        if not self.repository.compare_and_set_assignment(item_id, reviewer, item['status'], item['assigned_to']):
            current = self.repository.get_review_item(item_id)
            raise AssignmentConflict(item_id, reviewer, current['assigned_to'] if current else None)
        logger.info(f"👤 Review item {item_id} assigned to {reviewer}")
        return self.get_item(item_id)

    def release(self, item_id: int, reviewer: str) -> Dict[str, Any]:
        item = self._held_item(item_id, reviewer, 'release')
        self._set_status(item, 'release', assigned_to=None, assigned_at=None)
        logger.info(f"↪️ Review item {item_id} released by {reviewer}")
        return self.get_item(item_id)

    def approve(self, item_id: int, reviewer: str, corrected_data: Optional[Dict[str, Any]] = None,
                notes: Optional[str] = None) -> Dict[str, Any]:
        """
        Approve an item, optionally with a corrected payload.

        Items carrying validation errors can only be approved with a corrected
        payload. Corrections are recorded and the final document is handed off.
        """
        item = self._held_item(item_id, reviewer, 'approve')
        has_errors = any(f.get('severity') == 'error' for f in item['findings'])
        if has_errors and corrected_data is None:
            raise InvalidReviewTransition(
                f"Review item {item_id} has validation errors; approval requires a corrected payload")

        final_data = item['extracted_data']
        if corrected_data is not None:
            final_data = {'kind': item['extracted_data'].get('kind'), **corrected_data}
        try:
            document = document_from_dict(final_data)
        except (SchemaViolationError, KeyError, ValueError) as e:
            raise InvalidReviewTransition(f"Corrected payload for item {item_id} is invalid: {e}") from e

        self._set_status(item, 'approve', corrected_data=corrected_data, reviewer_notes=notes,
                         completed_at=utcnow().isoformat())

        if corrected_data is not None:
            self.corrections.record(item, final_data)
        client_id = (self.repository.get_document(item['document_id']) or {}).get('client_id')
        self.handoff.publish(item['document_id'], document, review_item_id=item_id, client_id=client_id)
        logger.info(f"✅ Review item {item_id} approved by {reviewer}")
        return self.get_item(item_id)

    def reject(self, item_id: int, reviewer: str, notes: str) -> Dict[str, Any]:
        if not notes or not notes.strip():
            raise InvalidReviewTransition("Rejection requires reviewer notes")
        item = self._held_item(item_id, reviewer, 'reject')
        self._set_status(item, 'reject', reviewer_notes=notes.strip(), completed_at=utcnow().isoformat())
        logger.info(f"❌ Review item {item_id} rejected by {reviewer}")
        return self.get_item(item_id)

    def escalate(self, item_id: int, reviewer: str, reason: str) -> Dict[str, Any]:
        if not reason or not reason.strip():
            raise InvalidReviewTransition("Escalation requires a reason")
        item = self._held_item(item_id, reviewer, 'escalate')
        self._set_status(item, 'escalate', escalation_reason=reason.strip())
        logger.warning(f"⚠️ Review item {item_id} escalated by {reviewer}: {reason.strip()}")
        return self.get_item(item_id)

    def _held_item(self, item_id: int, reviewer: str, action: str) -> Dict[str, Any]:
        item = self.get_item(item_id)
        next_status(item['status'], action)
        if item['assigned_to'] != reviewer:
            raise AssignmentConflict(item_id, reviewer, item['assigned_to'])
        return item

    def _set_status(self, item: Dict[str, Any], action: str, **fields: Any):
        new_status = next_status(item['status'], action)
        if not self.repository.compare_and_set_status(item['id'], item['status'], item['assigned_to'],
                                                      new_status, **fields):
            raise AssignmentConflict(item['id'], item['assigned_to'] or '', None)
