"""
Invoice Intake Package

Financial document intake: OCR, structured extraction, GST validation,
confidence-based routing and human review.
"""

__version__ = "1.0.0"
__author__ = "Invoice Intake Team"
