"""
Vendor Identity Resolver

Maps the vendor named on a document to a single vendor identity.

Matching priority, first hit wins:
1. exact GSTIN
2. exact PAN
3. fuzzy name match (edit-distance similarity or keyword overlap)
4. create a new identity
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from ..core.data_persistence import IntakeRepository
from ..core.validation_engine import GSTINValidator, PANValidator

logger = logging.getLogger(__name__)

DEFAULT_SIMILARITY_THRESHOLD = 0.85
KEYWORD_MIN_SIMILARITY = 0.7

_SUFFIX_RE = re.compile(
    r'\s+(pvt\.?\s+ltd\.?|private\s+limited|pvt\.?|limited|ltd\.?|llp|llc|inc\.?|corporation|corp\.?)$',
    re.IGNORECASE)
_PUNCTUATION_RE = re.compile(r'[^\w\s]')
_SPACES_RE = re.compile(r'\s+')
STOP_WORDS = {'the', 'and', 'of', 'for', 'in', 'on', 'at', 'to', 'a', 'an'}


def normalize_vendor_name(name: Optional[str]) -> str:
    """Lowercase, strip legal-entity suffixes and punctuation."""
    if not name:
        return ''
    normalized = _SPACES_RE.sub(' ', name.lower().strip())
    previous = None
    while previous != normalized:
        previous = normalized
        normalized = _SUFFIX_RE.sub('', normalized).strip()
    normalized = _PUNCTUATION_RE.sub('', normalized)
    return _SPACES_RE.sub(' ', normalized).strip()


def levenshtein_distance(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    previous = list(range(len(b) + 1))
    for i, char_a in enumerate(a, 1):
        current = [i]
        for j, char_b in enumerate(b, 1):
            cost = 0 if char_a == char_b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def edit_similarity(a: str, b: str) -> float:
    longest = max(len(a), len(b))
    if longest == 0:
        return 1.0
    return 1.0 - levenshtein_distance(a.lower(), b.lower()) / longest


def extract_keywords(name: str) -> List[str]:
    return [w for w in normalize_vendor_name(name).split(' ') if len(w) > 2 and w not in STOP_WORDS]


def keyword_similarity(a: str, b: str) -> float:
    """Share of matching keywords; only counts above the keyword floor."""
    first, second = extract_keywords(a), extract_keywords(b)
    if not first or not second:
        return 0.0
    matching = sum(1 for word in first if word in second)
    score = matching / max(len(first), len(second))
    return score if score > KEYWORD_MIN_SIMILARITY else 0.0


def name_similarity(name: str, candidate: str) -> float:
    return max(edit_similarity(normalize_vendor_name(name), normalize_vendor_name(candidate)),
               keyword_similarity(name, candidate))


@dataclass
class VendorMatch:
    vendor: Dict[str, Any]
    match_type: str
    similarity: float = 1.0
    is_new: bool = False

    @property
    def vendor_id(self) -> int:
        return self.vendor['id']


class VendorResolver:
    """Find-or-create vendor identities with alias tracking and merging."""

    def __init__(self, repository: IntakeRepository, similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD):
        self.repository = repository
        self.similarity_threshold = similarity_threshold

    @classmethod
    def from_config(cls, config: Dict[str, Any], repository: IntakeRepository) -> 'VendorResolver':
        vendors = config.get('vendors', {})
        return cls(repository, vendors.get('similarity_threshold', DEFAULT_SIMILARITY_THRESHOLD))

    def match_by_name(self, name: str, client_id: Optional[int] = None) -> Optional[VendorMatch]:
        if not name or not name.strip():
            return None
        best_id, best_score = None, 0.0
        for entry in self.repository.list_vendor_names(client_id):
            score = name_similarity(name, entry['alias'])
            if score > best_score:
                best_id, best_score = entry['vendor_id'], score
        if best_id is not None and best_score >= self.similarity_threshold:
            return VendorMatch(self.repository.get_vendor(best_id), 'fuzzy_name', round(best_score, 4))
        return None

    def resolve(self, name: Optional[str], gstin: Optional[str] = None, pan: Optional[str] = None,
                client_id: Optional[int] = None, amount: Optional[float] = None) -> VendorMatch:
        """Resolve a vendor sighting and record the transaction against it."""
        gstin = gstin.strip().upper() if gstin else None
        pan = pan.strip().upper() if pan else None
        if gstin and not GSTINValidator.validate_format(gstin):
            gstin = None
        if pan and not PANValidator.validate(pan):
            pan = None
        if pan is None and gstin:
            pan = GSTINValidator.embedded_pan(gstin)

        match = None
        if gstin:
            vendor = self.repository.find_vendor('gstin', gstin, client_id)
            if vendor:
                match = VendorMatch(vendor, 'gstin')
        if match is None and pan:
            vendor = self.repository.find_vendor('pan', pan, client_id)
            if vendor:
                match = VendorMatch(vendor, 'pan')
        if match is None and name:
            match = self.match_by_name(name, client_id)

        if match is None:
            display_name = (name or gstin or pan or 'Unknown vendor').strip()
            vendor_id = self.repository.create_vendor(
                display_name, normalize_vendor_name(display_name), gstin, pan, client_id)
            logger.info(f"✨ Created vendor #{vendor_id}: {display_name}")
            match = VendorMatch(self.repository.get_vendor(vendor_id), 'new', is_new=True)
        else:
            logger.info(f"🔍 Matched vendor '{name}' to #{match.vendor_id} "
                        f"'{match.vendor['primary_name']}' by {match.match_type} ({match.similarity:.0%})")
            if name:
                self._remember_alias(match.vendor, name)

        self.repository.record_vendor_transaction(match.vendor_id, amount or 0.0, gstin, pan)
        match.vendor = self.repository.get_vendor(match.vendor_id)
        return match

    def _remember_alias(self, vendor: Dict[str, Any], name: str) -> bool:
        normalized = normalize_vendor_name(name)
        known = [normalize_vendor_name(vendor['primary_name'])]
        known += [normalize_vendor_name(alias) for alias in vendor.get('alternate_names', [])]
        if not normalized or normalized in known:
            return False
        added = self.repository.add_vendor_alias(vendor['id'], name.strip(), normalized)
        if added:
            logger.debug(f"Added alias '{name}' to vendor #{vendor['id']}")
        return added

    def merge(self, keep_id: int, duplicate_id: int) -> Dict[str, Any]:
        """Fold ``duplicate_id`` into ``keep_id``; the duplicate is deactivated, not deleted."""
        if keep_id == duplicate_id:
            raise ValueError("Cannot merge a vendor into itself")
        self.repository.merge_vendors(keep_id, duplicate_id)
        logger.info(f"🔗 Merged vendor #{duplicate_id} into #{keep_id}")
        return self.repository.get_vendor(keep_id)

    def resolve_completed_documents(self, client_id: Optional[int] = None) -> Dict[str, int]:
        """Link completed invoices that have no vendor yet."""
        summary = {'checked': 0, 'linked': 0, 'created': 0}
        for record in self.repository.list_completed_extractions(client_id=client_id):
            summary['checked'] += 1
            if record.get('vendor_id'):
                continue
            data = record['data']
            vendor = data.get('vendor') or {}
            if data.get('transaction_type') == 'sales':
                vendor = data.get('customer') or {}
            if not (vendor.get('legal_name') or vendor.get('gstin') or vendor.get('pan')):
                continue
            amount = (data.get('tax_summary') or {}).get('grand_total')
            match = self.resolve(vendor.get('legal_name'), vendor.get('gstin'), vendor.get('pan'),
                                 record.get('client_id'), amount)
            self.repository.link_document_vendor(record['document_id'], match.vendor_id)
            summary['linked'] += 1
            if match.is_new:
                summary['created'] += 1
        logger.info(f"📊 Vendor resolution: {summary}")
        return summary
