"""
Human-in-the-loop (HITL) review modules.

This package contains:
- Review queue state machine with exclusive assignment
- Correction capture and per-field correction analytics
"""

from .review_queue import ReviewQueueManager
from .corrections import CorrectionTracker

__all__ = [
    'ReviewQueueManager',
    'CorrectionTracker'
]
