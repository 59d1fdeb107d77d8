"""
Correction Capture

Diffs the extracted payload against a reviewer's corrected payload and
classifies each changed field. Corrections are append-only and feed the
per-field correction analytics.
"""

import logging
import re
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from ..core.data_persistence import IntakeRepository
from ..core.document_schema import to_number

logger = logging.getLogger(__name__)

CORRECTION_TYPES = ('missing', 'format', 'value', 'extra')

_INDEX_RE = re.compile(r'\[\d+\]')
_SURFACE_RE = re.compile(r'[\s,.\-/₹]')


def flatten(data: Any, prefix: str = '') -> Dict[str, Any]:
    """Flatten nested dicts and lists to dotted paths (``line_items[0].amount``)."""
    flat: Dict[str, Any] = {}
    if isinstance(data, dict):
        for key, value in data.items():
            path = f"{prefix}.{key}" if prefix else str(key)
            if isinstance(value, (dict, list)) and value:
                flat.update(flatten(value, path))
            else:
                flat[path] = value
    elif isinstance(data, list):
        for index, value in enumerate(data):
            path = f"{prefix}[{index}]"
            if isinstance(value, (dict, list)) and value:
                flat.update(flatten(value, path))
            else:
                flat[path] = value
    else:
        flat[prefix] = data
    return flat


def generic_path(field_name: str) -> str:
    """``line_items[3].amount`` -> ``line_items[].amount``"""
    return _INDEX_RE.sub('[]', field_name)


def _is_empty(value: Any) -> bool:
    return value is None or value == '' or value == [] or value == {}


def _normalized(value: Any) -> Any:
    number = to_number(value) if not isinstance(value, bool) else None
    if number is not None:
        return round(number, 2)
    return _SURFACE_RE.sub('', str(value)).upper()


def classify_correction(original: Any, corrected: Any) -> str:
    if _is_empty(original):
        return 'missing'
    if _is_empty(corrected):
        return 'extra'
    if _normalized(original) == _normalized(corrected):
        return 'format'
    return 'value'


def diff_corrections(original: Dict[str, Any], corrected: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Field-level differences between the extracted and the corrected payload."""
    before = flatten(original)
    after = flatten(corrected)
    changes = []
    for path in sorted(set(before) | set(after)):
        if path == 'kind':
            continue
        old, new = before.get(path), after.get(path)
        if old == new or (_is_empty(old) and _is_empty(new)):
            continue
        changes.append({
            'field_name': path,
            'original_value': old,
            'corrected_value': new,
            'correction_type': classify_correction(old, new),
        })
    return changes


class CorrectionTracker:
    """Records corrections and answers questions about them."""

    def __init__(self, repository: IntakeRepository):
        self.repository = repository

    def record(self, review_item: Dict[str, Any], corrected_data: Dict[str, Any],
               document_kind: Optional[str] = None) -> List[Dict[str, Any]]:
        changes = diff_corrections(review_item['extracted_data'], corrected_data)
        for change in changes:
            change['review_item_id'] = review_item['id']
            change['document_id'] = review_item['document_id']
            change['document_kind'] = document_kind or review_item['extracted_data'].get('kind')
        count = self.repository.add_corrections(changes)
        if count:
            logger.info(f"📝 Recorded {count} correction(s) for review item {review_item['id']}")
        return changes

    def correction_patterns(self, field_name: str, limit: int = 10) -> List[Tuple[Any, Any, int]]:
        """Most frequent original -> corrected pairs for a field (indexes ignored)."""
        pattern = generic_path(field_name)
        counter: Counter = Counter()
        for record in self.repository.list_corrections():
            if generic_path(record['field_name']) != pattern:
                continue
            counter[(repr(record['original_value']), repr(record['corrected_value']))] += 1
        return [(original, corrected, count) for (original, corrected), count in counter.most_common(limit)]

    def field_correction_rates(self) -> Dict[str, Dict[str, Any]]:
        """Per field: number of corrections, affected documents and rate over reviewed documents."""
        reviewed = self.repository.count_reviewed_documents()
        fields: Dict[str, Dict[str, Any]] = {}
        for record in self.repository.list_corrections():
            name = generic_path(record['field_name'])
            entry = fields.setdefault(name, {'corrections': 0, 'documents': set(), 'types': Counter()})
            entry['corrections'] += 1
            entry['documents'].add(record['document_id'])
            entry['types'][record['correction_type']] += 1

        return {
            name: {
                'corrections': entry['corrections'],
                'documents': len(entry['documents']),
                'rate': round(len(entry['documents']) / reviewed, 4) if reviewed else 0.0,
                'by_type': dict(entry['types']),
            }
            for name, entry in sorted(fields.items())
        }
