"""
Outbound replies for the conversational intake channel.
"""

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, List, Tuple

from ..core.document_schema import DocumentKind

logger = logging.getLogger(__name__)

SELECT_PREFIX = "doc:"
RESET_ACTION = "reset"

MENU_TEXT = "Welcome! Which document would you like to send?"


@dataclass
class OutboundMessage:
    recipient: str
    text: str
    buttons: List[Tuple[str, str]] = field(default_factory=list)  # (action id, title)


def menu_message(recipient: str, prefix: str = "") -> OutboundMessage:
    """Document type menu; each button carries a ``doc:<kind>`` action id."""
    lines = [prefix, MENU_TEXT] if prefix else [MENU_TEXT]
    for number, kind in enumerate(DocumentKind, 1):
        lines.append(f"{number}. {kind.label}")
    buttons = [(f"{SELECT_PREFIX}{kind.value}", kind.label) for kind in DocumentKind]
    return OutboundMessage(recipient, "\n".join(lines), buttons)


def text_message(recipient: str, text: str) -> OutboundMessage:
    return OutboundMessage(recipient, text)


class MessageSender:
    """Delivers outbound messages to the channel."""

    async def send(self, message: OutboundMessage) -> bool:
        raise NotImplementedError


class LoggingMessageSender(MessageSender):
    """Logs outbound messages instead of delivering them; the most recent ones are kept in ``sent``."""

    def __init__(self, history: int = 100):
        self.sent: Deque[OutboundMessage] = deque(maxlen=history)

    async def send(self, message: OutboundMessage) -> bool:
        self.sent.append(message)
        logger.info(f"📤 To {message.recipient}: {message.text[:120]!r}"
                    + (f" [{len(message.buttons)} button(s)]" if message.buttons else ""))
        return True
