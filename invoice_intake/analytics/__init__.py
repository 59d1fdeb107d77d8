"""
Analytics modules: anomaly detection over persisted invoices.
"""

from .anomaly_detection import AnomalyDetector, AnomalyReport, summarize

__all__ = [
    'AnomalyDetector',
    'AnomalyReport',
    'summarize'
]
