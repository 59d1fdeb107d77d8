"""
Data Persistence Layer

SQLite storage for clients, documents, extraction results, the review queue,
corrections, vendor identities, conversational sessions, submissions and
bookkeeping handoffs.

Extraction results and corrections are insert-only. Review assignment and
status changes are conditional UPDATEs so concurrent writers cannot both win.
"""

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .document_schema import ExtractionResult, ValidationFinding

logger = logging.getLogger(__name__)

DOCUMENT_STATUSES = ('uploaded', 'processing', 'completed', 'failed')
ACTIVE_REVIEW_STATUSES = ('pending', 'in_review', 'escalated')

SCHEMA = """
CREATE TABLE IF NOT EXISTS clients (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    phone TEXT UNIQUE NOT NULL,
    name TEXT,
    pan TEXT,
    gstin TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id INTEGER REFERENCES clients(id),
    filename TEXT NOT NULL,
    mime_type TEXT,
    size_bytes INTEGER NOT NULL,
    source_channel TEXT NOT NULL,
    document_kind TEXT,
    status TEXT NOT NULL DEFAULT 'uploaded',
    routing TEXT,
    error_message TEXT,
    vendor_id INTEGER REFERENCES vendors(id),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS extraction_results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id INTEGER NOT NULL REFERENCES documents(id),
    document_kind TEXT NOT NULL,
    schema_version TEXT NOT NULL,
    backend TEXT,
    data_json TEXT NOT NULL,
    field_confidence_json TEXT NOT NULL,
    overall_confidence REAL,
    weighted_confidence REAL,
    ocr_confidence REAL,
    findings_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS review_queue (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id INTEGER NOT NULL REFERENCES documents(id),
    extraction_id INTEGER REFERENCES extraction_results(id),
    extracted_data_json TEXT NOT NULL,
    findings_json TEXT NOT NULL,
    priority TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    assigned_to TEXT,
    assigned_at TEXT,
    corrected_data_json TEXT,
    reviewer_notes TEXT,
    escalation_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_review_one_active
    ON review_queue(document_id) WHERE status IN ('pending', 'in_review', 'escalated');

CREATE TABLE IF NOT EXISTS corrections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    review_item_id INTEGER NOT NULL REFERENCES review_queue(id),
    document_id INTEGER NOT NULL REFERENCES documents(id),
    document_kind TEXT,
    field_name TEXT NOT NULL,
    original_value_json TEXT,
    corrected_value_json TEXT,
    correction_type TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vendors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id INTEGER REFERENCES clients(id),
    primary_name TEXT NOT NULL,
    normalized_name TEXT NOT NULL,
    gstin TEXT,
    pan TEXT,
    transaction_count INTEGER NOT NULL DEFAULT 0,
    total_amount REAL NOT NULL DEFAULT 0,
    is_active INTEGER NOT NULL DEFAULT 1,
    merged_into INTEGER REFERENCES vendors(id),
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS vendor_aliases (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    vendor_id INTEGER NOT NULL REFERENCES vendors(id),
    alias TEXT NOT NULL,
    normalized_alias TEXT NOT NULL,
    created_at TEXT NOT NULL,
    UNIQUE(vendor_id, normalized_alias)
);

CREATE TABLE IF NOT EXISTS sessions (
    channel_identity TEXT PRIMARY KEY,
    state TEXT NOT NULL,
    document_type TEXT,
    pending_document_id INTEGER,
    context_json TEXT NOT NULL DEFAULT '{}',
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS submissions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id INTEGER NOT NULL REFERENCES clients(id),
    filename TEXT NOT NULL,
    size_bytes INTEGER NOT NULL,
    document_id INTEGER REFERENCES documents(id),
    submitted_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_submissions_lookup
    ON submissions(client_id, filename, size_bytes, submitted_at);

CREATE TABLE IF NOT EXISTS handoffs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    document_id INTEGER NOT NULL REFERENCES documents(id),
    review_item_id INTEGER REFERENCES review_queue(id),
    handoff_type TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _ts(value: Optional[datetime] = None) -> str:
    # Fixed width so stored timestamps compare correctly as strings
    return (value or utcnow()).isoformat(timespec='microseconds')


def parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _dumps(value: Any) -> str:
    return json.dumps(value, default=str, ensure_ascii=False)


def _row(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
    return dict(row) if row is not None else None


class IntakeRepository:
    """Thread-safe SQLite repository shared by every component."""

    def __init__(self, db_path: Optional[str] = None):
        """
        Args:
            db_path: Path to the database file. If None, uses data/intake.db.
        """
        self.db_path = Path(db_path or "data/intake.db")
        self._lock = threading.Lock()
        self._create_schema()
        logger.info(f"Intake database ready: {self.db_path}")

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'IntakeRepository':
        return cls(config.get('database', {}).get('path'))

    def _create_schema(self):
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    @contextmanager
    def _connect(self):
        """One locked connection per unit of work; commits on success, rolls back on error."""
        with self._lock:
            conn = sqlite3.connect(str(self.db_path))
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            try:
                yield conn
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                conn.close()

    # Clients

    def get_or_create_client(self, phone: str, name: Optional[str] = None) -> Dict[str, Any]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM clients WHERE phone = ?", (phone,)).fetchone()
            if row is not None:
                return dict(row)
            now = _ts()
            cursor = conn.execute(
                "INSERT INTO clients (phone, name, created_at, updated_at) VALUES (?, ?, ?, ?)",
                (phone, name, now, now))
            logger.info(f"👤 New client registered for {phone}")
            return dict(conn.execute("SELECT * FROM clients WHERE id = ?", (cursor.lastrowid,)).fetchone())

    def get_client(self, client_id: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            return _row(conn.execute("SELECT * FROM clients WHERE id = ?", (client_id,)).fetchone())

    def update_client_profile(self, client_id: int, **fields: Any) -> None:
        allowed = {k: v for k, v in fields.items() if k in ('name', 'pan', 'gstin') and v}
        if not allowed:
            return
        assignments = ', '.join(f"{key} = ?" for key in allowed)
        with self._connect() as conn:
            conn.execute(f"UPDATE clients SET {assignments}, updated_at = ? WHERE id = ?",
                         (*allowed.values(), _ts(), client_id))

    # Documents

    def create_document(self, filename: str, size_bytes: int, mime_type: Optional[str],
                        source_channel: str, client_id: Optional[int] = None,
                        document_kind: Optional[str] = None) -> int:
        now = _ts()
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO documents (client_id, filename, mime_type, size_bytes, source_channel,
                                          document_kind, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, 'uploaded', ?, ?)""",
                (client_id, filename, mime_type, size_bytes, source_channel, document_kind, now, now))
            return cursor.lastrowid

    def get_document(self, document_id: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            return _row(conn.execute("SELECT * FROM documents WHERE id = ?", (document_id,)).fetchone())

    def update_document_status(self, document_id: int, status: str, error_message: Optional[str] = None,
                               routing: Optional[str] = None) -> None:
        """Move a document along uploaded -> processing -> completed|failed; completed is final."""
        if status not in DOCUMENT_STATUSES:
            raise ValueError(f"Unknown document status: {status}")
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE documents SET status = ?, error_message = ?, routing = COALESCE(?, routing),
                          updated_at = ?
                   WHERE id = ? AND status != 'completed'""",
                (status, error_message, routing, _ts(), document_id))
            if cursor.rowcount == 0:
                raise ValueError(f"Document {document_id} does not exist or is already completed")

    def link_document_vendor(self, document_id: int, vendor_id: int) -> None:
        with self._connect() as conn:
            conn.execute("UPDATE documents SET vendor_id = ?, updated_at = ? WHERE id = ?",
                         (vendor_id, _ts(), document_id))

    def list_documents(self, status: Optional[str] = None, client_id: Optional[int] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM documents WHERE 1 = 1"
        params: List[Any] = []
        if status:
            query += " AND status = ?"
            params.append(status)
        if client_id is not None:
            query += " AND client_id = ?"
            params.append(client_id)
        with self._connect() as conn:
            return [dict(r) for r in conn.execute(query + " ORDER BY id", params).fetchall()]

    # Extraction results

    def save_extraction(self, document_id: int, result: ExtractionResult,
                        findings: Iterable[ValidationFinding]) -> int:
        findings = list(findings)
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO extraction_results
                       (document_id, document_kind, schema_version, backend, data_json, field_confidence_json,
                        overall_confidence, weighted_confidence, ocr_confidence, findings_json, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (document_id, result.document_kind.value, result.schema_version, result.backend,
                 _dumps(result.to_json_dict(findings)), _dumps(result.field_confidence_scores),
                 result.overall_confidence, result.weighted_confidence, result.ocr_confidence,
                 _dumps([f.to_dict() for f in findings]), _ts()))
            return cursor.lastrowid

    def latest_extraction(self, document_id: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM extraction_results WHERE document_id = ? ORDER BY id DESC LIMIT 1",
                (document_id,)).fetchone()
        return self._decode_extraction(row)

    def list_completed_extractions(self, kinds: Iterable[str] = ('invoice', 'tax_credit_note'),
                                   client_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """Latest extraction of every completed document of the given kinds."""
        kinds = list(kinds)
        placeholders = ', '.join('?' for _ in kinds)
        query = f"""
            SELECT e.*, d.vendor_id, d.client_id, d.filename
            FROM extraction_results e
            JOIN documents d ON d.id = e.document_id
            WHERE d.status = 'completed' AND e.document_kind IN ({placeholders})
              AND e.id = (SELECT MAX(id) FROM extraction_results WHERE document_id = e.document_id)
        """
        params: List[Any] = list(kinds)
        if client_id is not None:
            query += " AND d.client_id = ?"
            params.append(client_id)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY e.document_id", params).fetchall()
        return [self._decode_extraction(r) for r in rows]

    @staticmethod
    def _decode_extraction(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        record = dict(row)
        record['data'] = json.loads(record.pop('data_json'))
        record['field_confidence_scores'] = json.loads(record.pop('field_confidence_json'))
        record['findings'] = json.loads(record.pop('findings_json'))
        return record

    # Review queue

    def create_review_item(self, document_id: int, extraction_id: Optional[int], extracted_data: Dict[str, Any],
                           findings: Iterable[ValidationFinding], priority: str) -> int:
        now = _ts()
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO review_queue (document_id, extraction_id, extracted_data_json, findings_json,
                                             priority, status, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, 'pending', ?, ?)""",
                (document_id, extraction_id, _dumps(extracted_data),
                 _dumps([f.to_dict() for f in findings]), priority, now, now))
            return cursor.lastrowid

    def get_review_item(self, item_id: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM review_queue WHERE id = ?", (item_id,)).fetchone()
        return self._decode_review(row)

    def active_review_item_for_document(self, document_id: int) -> Optional[Dict[str, Any]]:
        placeholders = ', '.join('?' for _ in ACTIVE_REVIEW_STATUSES)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM review_queue WHERE document_id = ? AND status IN ({placeholders})",
                (document_id, *ACTIVE_REVIEW_STATUSES)).fetchone()
        return self._decode_review(row)

    def list_review_items(self, statuses: Optional[Iterable[str]] = None, priority: Optional[str] = None,
                          limit: int = 100) -> List[Dict[str, Any]]:
        query = "SELECT * FROM review_queue WHERE 1 = 1"
        params: List[Any] = []
        if statuses:
            statuses = list(statuses)
            query += f" AND status IN ({', '.join('?' for _ in statuses)})"
            params.extend(statuses)
        if priority:
            query += " AND priority = ?"
            params.append(priority)
        query += """ ORDER BY CASE priority WHEN 'high' THEN 0 WHEN 'medium' THEN 1 ELSE 2 END,
                              created_at, id LIMIT ?"""
        params.append(limit)
        with self._connect() as conn:
            return [self._decode_review(r) for r in conn.execute(query, params).fetchall()]

    def review_counts(self) -> Dict[str, Dict[str, int]]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT status, priority, COUNT(*) AS n FROM review_queue GROUP BY status, priority").fetchall()
        counts: Dict[str, Dict[str, int]] = {'by_status': {}, 'by_priority': {}}
        for row in rows:
            counts['by_status'][row['status']] = counts['by_status'].get(row['status'], 0) + row['n']
            if row['status'] in ACTIVE_REVIEW_STATUSES:
                counts['by_priority'][row['priority']] = counts['by_priority'].get(row['priority'], 0) + row['n']
        return counts

    def compare_and_set_assignment(self, item_id: int, reviewer: str, expected_status: str,
                                   expected_assignee: Optional[str]) -> bool:
        """Assign only if status and assignee are still what the caller saw."""
        now = _ts()
        with self._connect() as conn:
            cursor = conn.execute(
                """UPDATE review_queue
                   SET status = 'in_review', assigned_to = ?, assigned_at = ?, updated_at = ?
                   WHERE id = ? AND status = ? AND assigned_to IS ?""",
                (reviewer, now, now, item_id, expected_status, expected_assignee))
            return cursor.rowcount == 1

    def compare_and_set_status(self, item_id: int, expected_status: str, expected_assignee: Optional[str],
                               new_status: str, **fields: Any) -> bool:
        """Conditional status change; extra columns (notes, corrected data, ...) are written in the same UPDATE."""
        allowed = ('assigned_to', 'assigned_at', 'corrected_data', 'reviewer_notes', 'escalation_reason',
                   'completed_at')
        columns = {}
        for key, value in fields.items():
            if key not in allowed:
                raise ValueError(f"Unknown review column: {key}")
            columns['corrected_data_json' if key == 'corrected_data' else key] = \
                _dumps(value) if key == 'corrected_data' and value is not None else value
        assignments = ''.join(f", {column} = ?" for column in columns)
        with self._connect() as conn:
            cursor = conn.execute(
                f"""UPDATE review_queue SET status = ?, updated_at = ?{assignments}
                    WHERE id = ? AND status = ? AND assigned_to IS ?""",
                (new_status, _ts(), *columns.values(), item_id, expected_status, expected_assignee))
            return cursor.rowcount == 1

    @staticmethod
    def _decode_review(row: Optional[sqlite3.Row]) -> Optional[Dict[str, Any]]:
        if row is None:
            return None
        record = dict(row)
        record['extracted_data'] = json.loads(record.pop('extracted_data_json'))
        record['findings'] = json.loads(record.pop('findings_json'))
        corrected = record.pop('corrected_data_json')
        record['corrected_data'] = json.loads(corrected) if corrected else None
        return record

    # Corrections

    def add_corrections(self, corrections: Iterable[Dict[str, Any]]) -> int:
        now = _ts()
        rows = [
            (c['review_item_id'], c['document_id'], c.get('document_kind'), c['field_name'],
             _dumps(c['original_value']), _dumps(c['corrected_value']), c['correction_type'], now)
            for c in corrections
        ]
        if not rows:
            return 0
        with self._connect() as conn:
            conn.executemany(
                """INSERT INTO corrections (review_item_id, document_id, document_kind, field_name,
                                            original_value_json, corrected_value_json, correction_type, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""", rows)
        return len(rows)

    def list_corrections(self, field_name: Optional[str] = None,
                         review_item_id: Optional[int] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM corrections WHERE 1 = 1"
        params: List[Any] = []
        if field_name:
            query += " AND field_name = ?"
            params.append(field_name)
        if review_item_id is not None:
            query += " AND review_item_id = ?"
            params.append(review_item_id)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        records = []
        for row in rows:
            record = dict(row)
            record['original_value'] = json.loads(record.pop('original_value_json'))
            record['corrected_value'] = json.loads(record.pop('corrected_value_json'))
            records.append(record)
        return records

    def count_reviewed_documents(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM review_queue WHERE status = 'approved'").fetchone()[0]

    # Vendors

    def create_vendor(self, primary_name: str, normalized_name: str, gstin: Optional[str] = None,
                      pan: Optional[str] = None, client_id: Optional[int] = None) -> int:
        now = _ts()
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO vendors (client_id, primary_name, normalized_name, gstin, pan, created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (client_id, primary_name, normalized_name, gstin, pan, now, now))
            vendor_id = cursor.lastrowid
            conn.execute(
                "INSERT INTO vendor_aliases (vendor_id, alias, normalized_alias, created_at) VALUES (?, ?, ?, ?)",
                (vendor_id, primary_name, normalized_name, now))
            return vendor_id

    def get_vendor(self, vendor_id: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM vendors WHERE id = ?", (vendor_id,)).fetchone()
            if row is None:
                return None
            vendor = dict(row)
            vendor['alternate_names'] = [
                r['alias'] for r in conn.execute(
                    "SELECT alias FROM vendor_aliases WHERE vendor_id = ? ORDER BY id", (vendor_id,)).fetchall()
                if r['alias'] != vendor['primary_name']
            ]
            return vendor

    def find_vendor(self, column: str, value: str, client_id: Optional[int] = None) -> Optional[Dict[str, Any]]:
        if column not in ('gstin', 'pan'):
            raise ValueError(f"Vendors cannot be looked up by {column}")
        query = f"SELECT id FROM vendors WHERE {column} = ? AND is_active = 1"
        params: List[Any] = [value]
        if client_id is not None:
            query += " AND client_id IS ?"
            params.append(client_id)
        with self._connect() as conn:
            row = conn.execute(query + " ORDER BY id LIMIT 1", params).fetchone()
        return self.get_vendor(row['id']) if row else None

    def list_vendor_names(self, client_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """(vendor_id, alias, normalized_alias) for every active vendor."""
        query = """SELECT a.vendor_id, a.alias, a.normalized_alias
                   FROM vendor_aliases a JOIN vendors v ON v.id = a.vendor_id
                   WHERE v.is_active = 1"""
        params: List[Any] = []
        if client_id is not None:
            query += " AND v.client_id IS ?"
            params.append(client_id)
        with self._connect() as conn:
            return [dict(r) for r in conn.execute(query + " ORDER BY a.vendor_id, a.id", params).fetchall()]

    def list_vendors(self, include_inactive: bool = False) -> List[Dict[str, Any]]:
        query = "SELECT id FROM vendors" + ("" if include_inactive else " WHERE is_active = 1") + " ORDER BY id"
        with self._connect() as conn:
            ids = [r['id'] for r in conn.execute(query).fetchall()]
        return [self.get_vendor(vendor_id) for vendor_id in ids]

    def add_vendor_alias(self, vendor_id: int, alias: str, normalized_alias: str) -> bool:
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT OR IGNORE INTO vendor_aliases (vendor_id, alias, normalized_alias, created_at)
                   VALUES (?, ?, ?, ?)""", (vendor_id, alias, normalized_alias, _ts()))
            return cursor.rowcount == 1

    def record_vendor_transaction(self, vendor_id: int, amount: float,
                                  gstin: Optional[str] = None, pan: Optional[str] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """UPDATE vendors
                   SET transaction_count = transaction_count + 1, total_amount = total_amount + ?,
                       gstin = COALESCE(gstin, ?), pan = COALESCE(pan, ?), updated_at = ?
                   WHERE id = ?""", (amount or 0.0, gstin, pan, _ts(), vendor_id))

    def merge_vendors(self, keep_id: int, duplicate_id: int) -> None:
        """Union aliases, sum aggregates, repoint documents, deactivate the duplicate. One transaction."""
        now = _ts()
        with self._connect() as conn:
            duplicate = conn.execute("SELECT * FROM vendors WHERE id = ?", (duplicate_id,)).fetchone()
            keep = conn.execute("SELECT * FROM vendors WHERE id = ?", (keep_id,)).fetchone()
            if duplicate is None or keep is None:
                raise ValueError(f"Cannot merge vendors {keep_id} and {duplicate_id}: not found")
            if not duplicate['is_active'] or not keep['is_active']:
                raise ValueError("Only active vendors can be merged")

            conn.execute(
                """INSERT OR IGNORE INTO vendor_aliases (vendor_id, alias, normalized_alias, created_at)
                   SELECT ?, alias, normalized_alias, ? FROM vendor_aliases WHERE vendor_id = ?""",
                (keep_id, now, duplicate_id))
            conn.execute(
                """UPDATE vendors
                   SET transaction_count = transaction_count + ?, total_amount = total_amount + ?,
                       gstin = COALESCE(gstin, ?), pan = COALESCE(pan, ?), updated_at = ?
                   WHERE id = ?""",
                (duplicate['transaction_count'], duplicate['total_amount'], duplicate['gstin'],
                 duplicate['pan'], now, keep_id))
            conn.execute("UPDATE documents SET vendor_id = ?, updated_at = ? WHERE vendor_id = ?",
                         (keep_id, now, duplicate_id))
            conn.execute("UPDATE vendors SET is_active = 0, merged_into = ?, updated_at = ? WHERE id = ?",
                         (keep_id, now, duplicate_id))

    # Sessions

    def load_session(self, channel_identity: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM sessions WHERE channel_identity = ?", (channel_identity,)).fetchone()
        if row is None:
            return None
        record = dict(row)
        record['context'] = json.loads(record.pop('context_json'))
        return record

    def save_session(self, channel_identity: str, state: str, document_type: Optional[str],
                     pending_document_id: Optional[int], context: Dict[str, Any],
                     updated_at: Optional[datetime] = None) -> None:
        with self._connect() as conn:
            conn.execute(
                """INSERT INTO sessions (channel_identity, state, document_type, pending_document_id,
                                         context_json, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(channel_identity) DO UPDATE SET
                       state = excluded.state, document_type = excluded.document_type,
                       pending_document_id = excluded.pending_document_id,
                       context_json = excluded.context_json, updated_at = excluded.updated_at""",
                (channel_identity, state, document_type, pending_document_id, _dumps(context), _ts(updated_at)))

    def delete_session(self, channel_identity: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE channel_identity = ?", (channel_identity,))

    def find_session_by_document(self, document_id: int) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT channel_identity FROM sessions WHERE pending_document_id = ?",
                               (document_id,)).fetchone()
        return self.load_session(row['channel_identity']) if row else None

    # Submissions

    def find_recent_submission(self, client_id: int, filename: str, size_bytes: int,
                               since: datetime) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute(
                """SELECT * FROM submissions
                   WHERE client_id = ? AND filename = ? AND size_bytes = ? AND submitted_at >= ?
                   ORDER BY submitted_at DESC LIMIT 1""",
                (client_id, filename, size_bytes, _ts(since))).fetchone()
        return _row(row)

    def record_submission(self, client_id: int, filename: str, size_bytes: int,
                          document_id: Optional[int] = None, submitted_at: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO submissions (client_id, filename, size_bytes, document_id, submitted_at)
                   VALUES (?, ?, ?, ?, ?)""", (client_id, filename, size_bytes, document_id, _ts(submitted_at)))
            return cursor.lastrowid

    # Handoffs

    def save_handoff(self, document_id: int, handoff_type: str, payload: Dict[str, Any],
                     review_item_id: Optional[int] = None) -> int:
        with self._connect() as conn:
            cursor = conn.execute(
                """INSERT INTO handoffs (document_id, review_item_id, handoff_type, payload_json, created_at)
                   VALUES (?, ?, ?, ?, ?)""", (document_id, review_item_id, handoff_type, _dumps(payload), _ts()))
            return cursor.lastrowid

    def list_handoffs(self, document_id: Optional[int] = None) -> List[Dict[str, Any]]:
        query = "SELECT * FROM handoffs"
        params: List[Any] = []
        if document_id is not None:
            query += " WHERE document_id = ?"
            params.append(document_id)
        with self._connect() as conn:
            rows = conn.execute(query + " ORDER BY id", params).fetchall()
        records = []
        for row in rows:
            record = dict(row)
            record['payload'] = json.loads(record.pop('payload_json'))
            records.append(record)
        return records
