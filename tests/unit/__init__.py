"""
Unit tests for individual components.

This package contains unit tests for:
- Media normalization and the recognition engine chain
- Field extraction and confidence scoring
- Domain validation rules
- Vendor resolution and anomaly detection
- Bookkeeping entries and the review queue
- Persistence and the conversational session
- Configuration loading and channel payload parsing
"""
