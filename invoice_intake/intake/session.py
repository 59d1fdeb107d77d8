"""
Conversational Intake State Machine

Per-sender sessions that walk a client from the document-type menu to a
processed document.

Features:
- Explicit transition table; events outside it are rejected, never absorbed
- Reset to idle from any state
- Duplicate-submission guard (same client, filename and size within a rolling window)
- Session expiry after a period of inactivity
- Per-identity lock around every session read-modify-write
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..core.data_persistence import IntakeRepository, parse_ts, utcnow
from ..core.document_schema import DocumentKind, InvoiceDocument
from ..core.errors import IllegalTransition, NormalizationError, PipelineError
from .channel import EventType, InboundEvent
from .messages import (
    LoggingMessageSender,
    MessageSender,
    OutboundMessage,
    RESET_ACTION,
    SELECT_PREFIX,
    menu_message,
    text_message,
)

logger = logging.getLogger(__name__)

RESET_WORDS = {'reset', 'cancel', 'restart', 'menu'}


class SessionState(Enum):
    IDLE = "idle"
    DOCUMENT_TYPE_SELECTION = "document_type_selection"
    AWAITING_DOCUMENT = "awaiting_document"
    PROCESSING = "processing"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    FINALIZED = "finalized"


class SessionEvent(Enum):
    START = "start"
    SELECT_TYPE = "select_type"
    DOCUMENT = "document"
    OTHER_INPUT = "other_input"
    DUPLICATE = "duplicate"
    FAILED = "failed"
    AUTO_FINALIZED = "auto_finalized"
    ROUTED_TO_REVIEW = "routed_to_review"
    REVIEW_APPROVED = "review_approved"
    REVIEW_REJECTED = "review_rejected"
    CLEAR = "clear"
    RESET = "reset"


S, E = SessionState, SessionEvent

TRANSITIONS: Dict[Tuple[SessionState, SessionEvent], SessionState] = {
    (S.IDLE, E.START): S.DOCUMENT_TYPE_SELECTION,
    (S.DOCUMENT_TYPE_SELECTION, E.SELECT_TYPE): S.AWAITING_DOCUMENT,
    (S.AWAITING_DOCUMENT, E.DOCUMENT): S.PROCESSING,
    (S.AWAITING_DOCUMENT, E.OTHER_INPUT): S.IDLE,
    (S.AWAITING_DOCUMENT, E.DUPLICATE): S.IDLE,
    (S.AWAITING_DOCUMENT, E.FAILED): S.IDLE,
    (S.PROCESSING, E.AUTO_FINALIZED): S.FINALIZED,
    (S.PROCESSING, E.ROUTED_TO_REVIEW): S.AWAITING_CONFIRMATION,
    (S.PROCESSING, E.FAILED): S.IDLE,
    (S.AWAITING_CONFIRMATION, E.REVIEW_APPROVED): S.FINALIZED,
    (S.AWAITING_CONFIRMATION, E.REVIEW_REJECTED): S.IDLE,
    (S.FINALIZED, E.CLEAR): S.IDLE,
}


def transition(state: SessionState, event: SessionEvent) -> SessionState:
    """Next state for ``event``; reset is legal everywhere, anything else must be in the table."""
    if event == SessionEvent.RESET:
        return SessionState.IDLE
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise IllegalTransition(state.value, event.value) from None


def selected_kind(event: InboundEvent) -> Optional[DocumentKind]:
    """Document kind chosen by a menu button, a menu number or the kind's name."""
    kinds = list(DocumentKind)
    if event.type == EventType.BUTTON_CLICK and (event.action_id or '').startswith(SELECT_PREFIX):
        try:
            return DocumentKind(event.action_id[len(SELECT_PREFIX):])
        except ValueError:
            return None
    text = event.text.lower()
    if text.isdigit() and 1 <= int(text) <= len(kinds):
        return kinds[int(text) - 1]
    for kind in kinds:
        if text in (kind.value, kind.label.lower()):
            return kind
    return None


def classify_event(state: SessionState, event: InboundEvent) -> SessionEvent:
    """Translate a channel event into a session event for the current state."""
    if event.action_id == RESET_ACTION or event.text.lower() in RESET_WORDS:
        return SessionEvent.RESET
    if event.type.is_document:
        return SessionEvent.DOCUMENT
    if state == SessionState.DOCUMENT_TYPE_SELECTION and selected_kind(event):
        return SessionEvent.SELECT_TYPE
    if state == SessionState.IDLE:
        return SessionEvent.START
    return SessionEvent.OTHER_INPUT


@dataclass
class Session:
    channel_identity: str
    state: SessionState = SessionState.IDLE
    document_type: Optional[str] = None
    pending_document_id: Optional[int] = None
    context: Dict[str, Any] = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def apply(self, event: SessionEvent) -> SessionState:
        self.state = transition(self.state, event)
        if self.state == SessionState.IDLE:
            self.document_type = None
            self.pending_document_id = None
        return self.state


@dataclass(frozen=True)
class DuplicateCheck:
    is_duplicate: bool
    previous_document_id: Optional[int] = None
    previous_submitted_at: Optional[datetime] = None


class SessionManager:
    """Runs inbound events through the session state machine and the document pipeline."""

    def __init__(self, repository: IntakeRepository, pipeline, sender: Optional[MessageSender] = None,
                 fetcher=None, duplicate_window_hours: float = 24, session_ttl_hours: float = 24,
                 clock: Callable[[], datetime] = utcnow):
        self.repository = repository
        self.pipeline = pipeline
        self.sender = sender or LoggingMessageSender()
        self.fetcher = fetcher
        self.duplicate_window = timedelta(hours=duplicate_window_hours)
        self.session_ttl = timedelta(hours=session_ttl_hours)
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self.stats = {'events': 0, 'documents': 0, 'duplicates': 0, 'rejected_events': 0, 'failures': 0}

    @classmethod
    def from_config(cls, config: Dict[str, Any], repository: IntakeRepository, pipeline,
                    sender: Optional[MessageSender] = None, fetcher=None) -> 'SessionManager':
        intake = config.get('intake', {})
        return cls(repository, pipeline, sender, fetcher,
                   duplicate_window_hours=intake.get('duplicate_window_hours', 24),
                   session_ttl_hours=intake.get('session_ttl_hours', 24))

    def lock_for(self, identity: str) -> asyncio.Lock:
        return self._locks.setdefault(identity, asyncio.Lock())

    def load(self, identity: str) -> Session:
        record = self.repository.load_session(identity)
        if record is None:
            return Session(identity)
        updated_at = parse_ts(record['updated_at'])
        if updated_at and self.clock() - updated_at > self.session_ttl:
            logger.info(f"⏱️ Session for {identity} expired, starting fresh")
            return Session(identity, context={'client_id': record['context'].get('client_id')})
        return Session(identity, SessionState(record['state']), record['document_type'],
                       record['pending_document_id'], record['context'], updated_at)

    def save(self, session: Session):
        session.updated_at = self.clock()
        self.repository.save_session(session.channel_identity, session.state.value, session.document_type,
                                     session.pending_document_id, session.context, session.updated_at)

    def check_duplicate(self, client_id: int, filename: str, size_bytes: int,
                        now: Optional[datetime] = None) -> DuplicateCheck:
        since = (now or self.clock()) - self.duplicate_window
        previous = self.repository.find_recent_submission(client_id, filename, size_bytes, since)
        if previous is None:
            return DuplicateCheck(False)
        return DuplicateCheck(True, previous['document_id'], parse_ts(previous['submitted_at']))

    async def handle_event(self, event: InboundEvent) -> List[OutboundMessage]:
        """Process one inbound event for its sender; events of one sender never interleave."""
        self.stats['events'] += 1
        async with self.lock_for(event.sender_identity):
            session = self.load(event.sender_identity)
            client = self.repository.get_or_create_client(event.sender_identity)
            session.context['client_id'] = client['id']
            replies = await self._dispatch(session, event, client['id'])
            self.save(session)
        for reply in replies:
            await self.sender.send(reply)
        return replies

    async def review_completed(self, document_id: int, approved: bool,
                               notes: Optional[str] = None) -> List[OutboundMessage]:
        """Resume the session waiting on a reviewed document."""
        record = self.repository.find_session_by_document(document_id)
        if record is None:
            return []
        identity = record['channel_identity']
        async with self.lock_for(identity):
            session = self.load(identity)
            if session.state != SessionState.AWAITING_CONFIRMATION or session.pending_document_id != document_id:
                return []
            if approved:
                session.apply(SessionEvent.REVIEW_APPROVED)
                session.apply(SessionEvent.CLEAR)
                replies = [text_message(identity, "✅ Your document has been verified and recorded. Thank you!")]
            else:
                session.apply(SessionEvent.REVIEW_REJECTED)
                reason = f" Reason: {notes}" if notes else ""
                replies = [text_message(identity, f"❌ We could not accept your document.{reason} "
                                                  "Send any message to start again.")]
            self.save(session)
        for reply in replies:
            await self.sender.send(reply)
        return replies

    async def _dispatch(self, session: Session, event: InboundEvent, client_id: int) -> List[OutboundMessage]:
        identity = session.channel_identity
        kind = classify_event(session.state, event)
        logger.debug(f"Session {identity}: {session.state.value} + {kind.value}")

        if kind == SessionEvent.RESET:
            session.apply(SessionEvent.RESET)
            session.apply(SessionEvent.START)
            return [menu_message(identity, "Your session has been reset.")]

        try:
            if kind == SessionEvent.DOCUMENT:
                transition(session.state, kind)
                return await self._receive_document(session, event, client_id)
            session.apply(kind)
        except IllegalTransition as e:
            self.stats['rejected_events'] += 1
            logger.warning(f"⚠️ Session {identity}: {e}")
            return self._reprompt(session)

        if kind == SessionEvent.START:
            return [menu_message(identity)]
        if kind == SessionEvent.SELECT_TYPE:
            chosen = selected_kind(event)
            session.document_type = chosen.value
            return [text_message(identity, f"📄 Please send your {chosen.label} as a photo or PDF.")]
        # awaiting_document received something that is not a document
        session.apply(SessionEvent.START)
        return [menu_message(identity, "That doesn't look like a document.")]

    def _reprompt(self, session: Session) -> List[OutboundMessage]:
        identity = session.channel_identity
        if session.state == SessionState.IDLE:
            session.apply(SessionEvent.START)
            return [menu_message(identity, "Please choose a document type first.")]
        if session.state == SessionState.DOCUMENT_TYPE_SELECTION:
            return [menu_message(identity, "Please pick one of the options below.")]
        if session.state == SessionState.PROCESSING:
            return [text_message(identity, "⏳ Your document is still being processed.")]
        return [text_message(identity, "👤 Your document is with our review team. We'll message you once it "
                                        "has been checked. Send 'reset' to start over.")]

    async def _media_for(self, event: InboundEvent) -> Tuple[bytes, str, str]:
        payload = event.payload
        filename = payload.get('filename') or 'document'
        if payload.get('data') is not None:
            return payload['data'], payload.get('mime_type') or 'application/octet-stream', filename
        if self.fetcher is None:
            raise NormalizationError("No media fetcher configured")
        media = await self.fetcher.fetch(payload['media_id'], filename)
        return media.data, payload.get('mime_type') or media.mime_type, filename

    async def _receive_document(self, session: Session, event: InboundEvent,
                                client_id: int) -> List[OutboundMessage]:
        identity = session.channel_identity
        kind = DocumentKind(session.document_type)

        try:
            data, mime_type, filename = await self._media_for(event)
        except PipelineError as e:
            self.stats['failures'] += 1
            logger.error(f"❌ Could not fetch media from {identity}: {e}")
            session.apply(SessionEvent.FAILED)
            return [text_message(identity, f"❌ {e.user_message}")]

        duplicate = self.check_duplicate(client_id, filename, len(data))
        if duplicate.is_duplicate:
            self.stats['duplicates'] += 1
            logger.info(f"↪️ Duplicate submission of {filename} from {identity} "
                        f"(document {duplicate.previous_document_id})")
            session.apply(SessionEvent.DUPLICATE)
            return [text_message(identity, f"📋 You already sent {filename} in the last "
                                            f"{int(self.duplicate_window.total_seconds() // 3600)} hours. "
                                            "Send any message to submit something else.")]

        session.apply(SessionEvent.DOCUMENT)
        document_id = self.repository.create_document(filename, len(data), mime_type, 'whatsapp',
                                                      client_id, kind.value)
        self.repository.record_submission(client_id, filename, len(data), document_id, self.clock())
        session.pending_document_id = document_id
        session.context['last_document_id'] = document_id
        self.save(session)
        self.stats['documents'] += 1

        try:
            outcome = await self.pipeline.process(document_id, data, mime_type, kind, client_id)
        except PipelineError as e:
            self.stats['failures'] += 1
            session.apply(SessionEvent.FAILED)
            session.apply(SessionEvent.START)
            return [text_message(identity, f"❌ {e.user_message}"), menu_message(identity)]

        if outcome.auto_finalized:
            session.apply(SessionEvent.AUTO_FINALIZED)
            session.apply(SessionEvent.CLEAR)
            return [text_message(identity, self._summary(kind, outcome.extraction.data))]

        session.apply(SessionEvent.ROUTED_TO_REVIEW)
        session.pending_document_id = document_id
        return [text_message(identity, f"👤 Your {kind.label} has been received and is being checked by our team. "
                                        "We'll message you once it is verified.")]

    @staticmethod
    def _summary(kind: DocumentKind, document) -> str:
        if isinstance(document, InvoiceDocument):
            total = document.tax_summary.grand_total
            amount = f" for ₹{total:,.2f}" if total is not None else ""
            return f"✅ {kind.label} {document.invoice_number or ''}{amount} has been processed and recorded."
        return f"✅ Your {kind.label} has been verified and recorded."
