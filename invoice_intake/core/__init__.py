"""
Core processing modules for financial document intake.

This package contains the core functionality for:
- Media normalization (PDF rasterization, image cleanup)
- OCR with pooled recognition engines and fallback
- Field extraction into typed document schemas
- GST and KYC domain validation
- Confidence scoring and routing
- Persistence and bookkeeping handoff
"""

from .config_manager import ConfigurationManager
from .media_normalizer import MediaNormalizer
from .ocr_orchestrator import OCROrchestrator
from .field_extraction import FieldExtractor
from .validation_engine import DomainValidator
from .confidence_scoring import ConfidenceRouter
from .data_persistence import IntakeRepository
from .pipeline_manager import DocumentPipeline

__all__ = [
    'ConfigurationManager',
    'MediaNormalizer',
    'OCROrchestrator',
    'FieldExtractor',
    'DomainValidator',
    'ConfidenceRouter',
    'IntakeRepository',
    'DocumentPipeline'
]
