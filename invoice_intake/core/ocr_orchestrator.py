"""
OCR Orchestrator

Runs the recognition engine chain over normalized pages and repairs
common recognition mistakes in the resulting text.

Features:
- Primary on-device engine tried across several page segmentation modes
- Highest-confidence result kept per page
- Cloud fallback on failure, timeout, empty or low-confidence output
- Blank pages kept as empty text; only a page no engine answered is fatal
- Deterministic post-processing (digit/letter confusions, currency, whitespace)
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import numpy as np

from .errors import EngineError, RecognitionExhaustedError
from .ocr_engines import AzureReadEngine, EnginePool, EngineResult, TesseractEngine

logger = logging.getLogger(__name__)

PAGE_SEPARATOR = "\n\n--- Page {number} ---\n\n"


@dataclass
class OCRResult:
    """Recognized text for a whole document."""
    text: str
    confidence: float
    processing_time_ms: float
    page_count: int
    engine_by_page: List[str] = field(default_factory=list)
    page_confidences: List[float] = field(default_factory=list)


class TextPostProcessor:
    """Deterministic repairs for text coming out of recognition engines."""

    # (pattern, replacement) applied in order
    DIGIT_CONFUSIONS = [
        (re.compile(r'(?<=\d)[Oo](?=\d)'), '0'),
        (re.compile(r'(?<=\d)[lI](?=\d)'), '1'),
        (re.compile(r'(?<=\d)S(?=\d)'), '5'),
        (re.compile(r'(?<=\d)Z(?=\d)'), '2'),
        (re.compile(r'\bO(?=\d)'), '0'),
        (re.compile(r'(?<=\d)O\b'), '0'),
    ]
    CURRENCY = [
        (re.compile(r'\bRs\.?\s*(?=\d)', re.IGNORECASE), '₹'),
        (re.compile(r'\bINR\s*(?=\d)'), '₹'),
        (re.compile(r'₹\s+'), '₹'),
    ]
    HORIZONTAL_SPACE = re.compile(r'[ \t]+')

    @classmethod
    def clean(cls, text: str) -> str:
        if not text:
            return ''
        for pattern, replacement in cls.DIGIT_CONFUSIONS + cls.CURRENCY:
            text = pattern.sub(replacement, text)
        lines = (cls.HORIZONTAL_SPACE.sub(' ', line).strip() for line in text.splitlines())
        return '\n'.join(line for line in lines if line)


class OCROrchestrator:
    """Engine fallback chain with per-page ranking."""

    def __init__(
        self,
        pools: List[EnginePool],
        engine_timeout: float = 10.0,
        min_confidence: float = 0.5,
        post_processor: Optional[TextPostProcessor] = None,
    ):
        """
        Args:
            pools: Engine pools in fallback order (primary first)
            engine_timeout: Budget in seconds for a single engine call
            min_confidence: Below this a page also consults the next engine
        """
        if not pools:
            raise ValueError("At least one engine pool is required")
        self.pools = pools
        self.engine_timeout = engine_timeout
        self.min_confidence = min_confidence
        self.post_processor = post_processor or TextPostProcessor()
        self.stats = {'pages': 0, 'fallbacks': 0, 'timeouts': 0, 'engine_errors': 0}

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'OCROrchestrator':
        ocr_config = config.get('ocr', {})
        azure_config = config.get('azure_document_intelligence', {})
        pool_size = ocr_config.get('pool_size', 2)
        max_uses = ocr_config.get('handle_max_uses', 50)

        pools = []
        if ocr_config.get('tesseract_enabled', True):
            lang = ocr_config.get('tesseract_lang', 'eng')
            psm_modes = ocr_config.get('psm_modes', [1, 6, 4])
            pools.append(EnginePool(
                TesseractEngine.name,
                lambda: TesseractEngine(lang=lang, psm_modes=psm_modes),
                size=pool_size, max_uses=max_uses,
            ))
        if azure_config.get('enabled'):
            pools.append(EnginePool(
                AzureReadEngine.name,
                lambda: AzureReadEngine(azure_config['endpoint'], azure_config['api_key'],
                                        azure_config.get('model_id', 'prebuilt-read')),
                size=pool_size, max_uses=max_uses,
            ))
        return cls(
            pools,
            engine_timeout=ocr_config.get('engine_timeout', 10.0),
            min_confidence=ocr_config.get('min_confidence', 0.5),
        )

    async def recognize_document(self, pages: List[np.ndarray]) -> OCRResult:
        """Recognize every page and join them with page separators."""
        start_time = time.time()
        page_results = []
        for number, page in enumerate(pages, start=1):
            page_results.append(await self.recognize_page(page, number))

        parts = []
        for number, result in enumerate(page_results, start=1):
            if number > 1:
                parts.append(PAGE_SEPARATOR.format(number=number))
            parts.append(self.post_processor.clean(result.text))

        confidences = [r.confidence for r in page_results]
        elapsed_ms = (time.time() - start_time) * 1000
        result = OCRResult(
            text=''.join(parts),
            confidence=round(sum(confidences) / len(confidences), 4) if confidences else 0.0,
            processing_time_ms=elapsed_ms,
            page_count=len(page_results),
            engine_by_page=[r.engine for r in page_results],
            page_confidences=confidences,
        )
        logger.info(f"🔍 OCR finished: {result.page_count} page(s), confidence {result.confidence:.2f}, "
                    f"engines {result.engine_by_page}, {elapsed_ms:.0f}ms")
        return result

    async def recognize_page(self, image: np.ndarray, page_number: int = 1) -> EngineResult:
        """Best result for one page across the engine chain."""
        self.stats['pages'] += 1
        candidates: List[EngineResult] = []

        for position, pool in enumerate(self.pools):
            if position > 0:
                self.stats['fallbacks'] += 1
                logger.info(f"↪️ Page {page_number}: falling back to {pool.name}")
            if not pool.is_available():
                logger.warning(f"⚠️ Page {page_number}: engine {pool.name} unavailable")
                continue

            result = await self._run_engine(pool, image, page_number)
            if result is None:
                continue
            candidates.append(result)
            if result.text.strip() and result.confidence >= self.min_confidence:
                break

        if not candidates:
            raise RecognitionExhaustedError(
                f"All recognition engines failed for page {page_number}")

        # A blank page is a valid result; text wins over blank at any confidence
        best = max(candidates, key=lambda r: (bool(r.text.strip()), r.confidence))
        logger.debug(f"Page {page_number}: kept {best.engine} (psm={best.psm}) at {best.confidence:.2f}")
        return best

    async def _run_engine(self, pool: EnginePool, image: np.ndarray, page_number: int) -> Optional[EngineResult]:
        """Try every segmentation mode of one engine; None when the engine produced nothing."""
        best: Optional[EngineResult] = None
        try:
            async with pool.acquire() as engine:
                for psm in engine.segmentation_modes:
                    try:
                        result = await asyncio.wait_for(
                            asyncio.to_thread(engine.recognize, image, psm),
                            timeout=self.engine_timeout,
                        )
                    except EngineError as e:
                        self.stats['engine_errors'] += 1
                        logger.warning(f"⚠️ Page {page_number}: {e}")
                        if not e.retryable:
                            break
                        continue
                    if best is None or result.confidence > best.confidence:
                        best = result
        except asyncio.TimeoutError:
            self.stats['timeouts'] += 1
            logger.warning(f"⏱️ Page {page_number}: {pool.name} exceeded {self.engine_timeout}s")
        except EngineError as e:
            self.stats['engine_errors'] += 1
            logger.warning(f"⚠️ Page {page_number}: {e}")
        return best

    def close(self):
        for pool in self.pools:
            pool.close()
