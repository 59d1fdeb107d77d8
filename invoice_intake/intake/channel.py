"""
Inbound Channel Adapter

Parses WhatsApp Cloud API webhook payloads into channel-neutral inbound
events and answers the subscription verification handshake.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

import phonenumbers
from phonenumbers import NumberParseException

logger = logging.getLogger(__name__)


class EventType(Enum):
    TEXT = "text"
    IMAGE = "image"
    DOCUMENT = "document"
    BUTTON_CLICK = "button_click"

    @property
    def is_document(self) -> bool:
        return self in (EventType.IMAGE, EventType.DOCUMENT)


@dataclass(frozen=True)
class InboundEvent:
    sender_identity: str
    type: EventType
    payload: Dict[str, Any] = field(default_factory=dict)
    message_id: Optional[str] = None
    timestamp: Optional[str] = None

    @property
    def text(self) -> str:
        return (self.payload.get('text') or '').strip()

    @property
    def action_id(self) -> Optional[str]:
        return self.payload.get('action_id')


def normalize_identity(raw: str, region: str = "IN") -> str:
    """E.164 form of a sender number; Meta sends numbers without the leading '+'."""
    text = (raw or '').strip()
    candidates = [text] if text.startswith('+') else [text, f"+{text}"]
    for candidate in candidates:
        try:
            number = phonenumbers.parse(candidate, region)
        except NumberParseException:
            continue
        if phonenumbers.is_valid_number(number):
            return phonenumbers.format_number(number, phonenumbers.PhoneNumberFormat.E164)
    raise ValueError(f"Not a valid phone number: {raw!r}")


def verify_subscription(mode: Optional[str], token: Optional[str], challenge: Optional[str],
                        expected_token: Optional[str]) -> Optional[str]:
    """The challenge to echo back, or None when verification fails."""
    if mode != 'subscribe' or not token or not challenge:
        return None
    if not expected_token or token != expected_token:
        logger.warning("⚠️ Webhook verification failed: verify token mismatch")
        return None
    return challenge


def _parse_message(message: Dict[str, Any], region: str) -> Optional[InboundEvent]:
    sender = normalize_identity(str(message.get('from', '')), region)
    kind = message.get('type')
    common = {'message_id': message.get('id'), 'timestamp': message.get('timestamp')}

    if kind == 'text':
        return InboundEvent(sender, EventType.TEXT, {'text': message.get('text', {}).get('body', '')}, **common)

    if kind in ('image', 'document'):
        media = message.get(kind) or {}
        if not media.get('id'):
            logger.warning(f"⚠️ {kind} message {message.get('id')} without media id")
            return None
        payload = {
            'media_id': media['id'],
            'mime_type': media.get('mime_type'),
            'filename': media.get('filename') or f"{media['id']}.{(media.get('mime_type') or '/bin').split('/')[-1]}",
            'caption': media.get('caption'),
        }
        return InboundEvent(sender, EventType(kind), payload, **common)

    if kind == 'interactive':
        interactive = message.get('interactive') or {}
        reply = interactive.get('button_reply') or interactive.get('list_reply') or {}
        if reply.get('id'):
            return InboundEvent(sender, EventType.BUTTON_CLICK,
                                {'action_id': reply['id'], 'title': reply.get('title')}, **common)

    if kind == 'button':
        button = message.get('button') or {}
        action = button.get('payload') or button.get('text')
        if action:
            return InboundEvent(sender, EventType.BUTTON_CLICK, {'action_id': action, 'title': button.get('text')},
                                **common)

    logger.debug(f"Ignoring unsupported message type: {kind}")
    return None


def parse_webhook(payload: Dict[str, Any], region: str = "IN") -> List[InboundEvent]:
    """All inbound events in a webhook delivery; status callbacks and unknown types are skipped."""
    events = []
    for entry in payload.get('entry') or []:
        for change in entry.get('changes') or []:
            value = change.get('value') or {}
            for message in value.get('messages') or []:
                try:
                    event = _parse_message(message, region)
                except ValueError as e:
                    logger.warning(f"⚠️ Skipping message {message.get('id')}: {e}")
                    continue
                if event is not None:
                    events.append(event)
    logger.debug(f"Parsed {len(events)} inbound event(s)")
    return events
