"""
Conversational intake modules.

This package contains:
- WhatsApp webhook parsing and verification
- Session state machine with duplicate guard
- Sharded event dispatcher
- Vendor identity resolution
"""

from .channel import EventType, InboundEvent, parse_webhook
from .dispatcher import EventDispatcher
from .session import SessionManager, SessionState
from .vendor_resolver import VendorResolver

__all__ = [
    'EventType',
    'InboundEvent',
    'parse_webhook',
    'EventDispatcher',
    'SessionManager',
    'SessionState',
    'VendorResolver'
]
