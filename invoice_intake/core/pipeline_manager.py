"""
Document Processing Pipeline Manager

Orchestrates normalization, recognition, extraction, validation and
routing for one document, with stage tracking and failure handling.
"""

import asyncio
import logging
import mimetypes
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from .bookkeeping import BookkeepingHandoff
from .confidence_scoring import ConfidenceRouter, RoutingDecision
from .data_persistence import IntakeRepository
from .document_schema import DocumentKind, ExtractionResult, document_to_dict
from .errors import PipelineError, RecognitionExhaustedError, StageFailure
from .field_extraction import FieldExtractor
from .media_normalizer import MediaNormalizer, NormalizerConfig
from .ocr_orchestrator import OCROrchestrator, OCRResult
from .validation_engine import DomainValidator, ValidationReport

logger = logging.getLogger(__name__)


@dataclass
class PipelineOutcome:
    document_id: int
    extraction: ExtractionResult
    report: ValidationReport
    decision: RoutingDecision
    extraction_id: int
    review_item_id: Optional[int] = None
    handoff_id: Optional[int] = None
    ocr: Optional[OCRResult] = None
    stages: Dict[str, float] = field(default_factory=dict)

    @property
    def auto_finalized(self) -> bool:
        return self.decision.auto_finalize


class DocumentPipeline:
    """Main document processing pipeline with all processing stages."""

    def __init__(
        self,
        repository: IntakeRepository,
        normalizer: MediaNormalizer,
        orchestrator: OCROrchestrator,
        extractor: FieldExtractor,
        validator: DomainValidator,
        router: ConfidenceRouter,
        review_queue,
        handoff: BookkeepingHandoff,
    ):
        self.repository = repository
        self.normalizer = normalizer
        self.orchestrator = orchestrator
        self.extractor = extractor
        self.validator = validator
        self.router = router
        self.review_queue = review_queue
        self.handoff = handoff
        self.stats = {'processed': 0, 'auto_finalized': 0, 'reviewed': 0, 'failed': 0}

    @classmethod
    def from_config(cls, config: Dict[str, Any], repository: Optional[IntakeRepository] = None) -> 'DocumentPipeline':
        """Build every component from the loaded configuration."""
        from ..hitl.review_queue import ReviewQueueManager

        repository = repository or IntakeRepository.from_config(config)
        handoff = BookkeepingHandoff(repository, config)
        return cls(
            repository=repository,
            normalizer=MediaNormalizer(NormalizerConfig.from_config(config)),
            orchestrator=OCROrchestrator.from_config(config),
            extractor=FieldExtractor.from_config(config),
            validator=DomainValidator(),
            router=ConfidenceRouter.from_config(config),
            review_queue=ReviewQueueManager(repository, handoff),
            handoff=handoff,
        )

    async def process(self, document_id: int, data: bytes, mime_type: str, kind: DocumentKind,
                      client_id: Optional[int] = None) -> PipelineOutcome:
        """
        Run one document through every stage.

        Fatal errors mark the document failed and are re-raised to the caller.
        Unexpected exceptions are re-raised as StageFailure naming the stage.
        """
        logger.info(f"🚀 Processing document {document_id} as {kind.value}")
        self.repository.update_document_status(document_id, 'processing')
        stages: Dict[str, float] = {}
        stage = 'normalization'

        try:
            started = time.time()
            media = await self.normalizer.normalize_async(data, mime_type)
            stages['normalization'] = time.time() - started

            stage = 'recognition'
            started = time.time()
            ocr = await self.orchestrator.recognize_document(media.pages)
            if not ocr.text.strip():
                raise RecognitionExhaustedError("Recognition produced no text")
            stages['recognition'] = time.time() - started

            stage = 'extraction'
            started = time.time()
            extraction = await asyncio.to_thread(self.extractor.extract, ocr.text, kind, ocr.confidence)
            stages['extraction'] = time.time() - started

            stage = 'validation'
            report = self.validator.validate(extraction.data)
            decision = self.router.decide(extraction.weighted_confidence, report.findings)

            stage = 'routing'
            extraction_id = self.repository.save_extraction(document_id, extraction, report.findings)
            outcome = PipelineOutcome(document_id, extraction, report, decision, extraction_id,
                                      ocr=ocr, stages=stages)
            if decision.auto_finalize:
                outcome.handoff_id = self.handoff.publish(document_id, extraction.data, client_id=client_id)
                routing = 'auto_finalized'
            else:
                outcome.review_item_id = self.review_queue.enqueue(
                    document_id, extraction_id, document_to_dict(extraction.data), report.findings,
                    decision.priority)
                routing = 'review'
        except PipelineError as e:
            self._mark_failed(document_id, e)
            raise
        except Exception as e:
            failure = StageFailure(stage, f"{type(e).__name__}: {e}")
            logger.exception(f"💥 Unexpected error in {stage} for document {document_id}")
            self._mark_failed(document_id, failure)
            raise failure from e

        self.stats['auto_finalized' if routing == 'auto_finalized' else 'reviewed'] += 1
        self.repository.update_document_status(document_id, 'completed', routing=routing)
        self.stats['processed'] += 1
        logger.info(f"✅ Document {document_id} completed ({routing}) in {sum(stages.values()):.2f}s")
        return outcome

    def _mark_failed(self, document_id: int, error: PipelineError):
        self.stats['failed'] += 1
        logger.error(f"❌ Document {document_id} failed during {error.stage}: {error}")
        self.repository.update_document_status(document_id, 'failed', error_message=f"{error.stage}: {error}")

    async def process_file(self, path: str, kind: DocumentKind, client_id: Optional[int] = None,
                           source_channel: str = 'upload') -> PipelineOutcome:
        """Register a local file as a document and process it."""
        file_path = Path(path)
        data = file_path.read_bytes()
        mime_type = mimetypes.guess_type(file_path.name)[0] or 'application/octet-stream'
        document_id = self.repository.create_document(
            file_path.name, len(data), mime_type, source_channel, client_id, kind.value)
        return await self.process(document_id, data, mime_type, kind, client_id)

    def close(self):
        self.orchestrator.close()
