"""
Integration tests for system components.

This package contains integration tests for:
- The document pipeline from recognized text to review or handoff
- The FastAPI webhook, review and analytics endpoints
"""
