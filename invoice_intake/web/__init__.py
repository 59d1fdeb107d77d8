"""
Web application for the invoice intake service.

This module provides the FastAPI web application for:
- WhatsApp webhook verification and inbound messages
- Review queue operations for reviewers
- Correction analytics, anomaly reports and vendor maintenance
"""

from .app import create_app

__all__ = ['create_app']
