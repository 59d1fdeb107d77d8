"""
Recognition Engines

On-device (Tesseract) and cloud (Azure AI Document Intelligence "Read")
text recognition behind one interface, plus a bounded handle pool.

Every provider failure is mapped to EngineError so the orchestrator can
fall back without knowing provider-specific error shapes.
"""

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

import cv2
import numpy as np
import pytesseract
from azure.ai.documentintelligence import DocumentIntelligenceClient
from azure.ai.documentintelligence.models import AnalyzeDocumentRequest
from azure.core.credentials import AzureKeyCredential
from azure.core.exceptions import AzureError, HttpResponseError

from .errors import EngineError

logger = logging.getLogger(__name__)


@dataclass
class EngineResult:
    """Text and confidence (0-1) from one engine call."""
    text: str
    confidence: float
    engine: str
    psm: Optional[int] = None
    processing_time_ms: float = 0.0


class RecognitionEngine:
    """Interface implemented by every recognition engine."""

    name = "engine"
    # Page segmentation modes to try; [None] means the engine has no such notion
    segmentation_modes: List[Optional[int]] = [None]

    def is_available(self) -> bool:
        raise NotImplementedError

    def recognize(self, image: np.ndarray, psm: Optional[int] = None) -> EngineResult:
        raise NotImplementedError

    def close(self):
        """Release provider resources."""


class TesseractEngine(RecognitionEngine):
    """Local Tesseract engine driven through pytesseract."""

    name = "tesseract"

    def __init__(self, lang: str = "eng", psm_modes: Optional[List[int]] = None, oem: int = 3):
        self.lang = lang
        self.segmentation_modes = list(psm_modes or [1, 6, 4])
        self.oem = oem
        self._available: Optional[bool] = None

    def is_available(self) -> bool:
        if self._available is None:
            try:
                version = pytesseract.get_tesseract_version()
                logger.debug(f"Tesseract {version} detected")
                self._available = True
            except (pytesseract.TesseractNotFoundError, OSError) as e:
                logger.warning(f"⚠️ Tesseract not available: {e}")
                self._available = False
        return self._available

    def recognize(self, image: np.ndarray, psm: Optional[int] = None) -> EngineResult:
        psm = psm or self.segmentation_modes[0]
        start_time = time.time()
        try:
            data = pytesseract.image_to_data(
                image,
                lang=self.lang,
                config=f"--oem {self.oem} --psm {psm}",
                output_type=pytesseract.Output.DICT,
            )
        except pytesseract.TesseractNotFoundError as e:
            self._available = False
            raise EngineError(self.name, f"binary not found: {e}", retryable=False) from e
        except (pytesseract.TesseractError, RuntimeError) as e:
            raise EngineError(self.name, f"psm {psm} failed: {e}") from e

        text, confidence = self._assemble(data)
        return EngineResult(
            text=text,
            confidence=confidence,
            engine=self.name,
            psm=psm,
            processing_time_ms=(time.time() - start_time) * 1000,
        )

    @staticmethod
    def _assemble(data: Dict[str, list]):
        """Rebuild line-ordered text and the mean word confidence from image_to_data output."""
        lines: Dict[tuple, List[str]] = {}
        confidences = []
        for i, word in enumerate(data.get('text', [])):
            word = (word or '').strip()
            conf = float(data['conf'][i])
            if not word or conf < 0:
                continue
            key = (data['block_num'][i], data['par_num'][i], data['line_num'][i])
            lines.setdefault(key, []).append(word)
            confidences.append(conf)

        text = '\n'.join(' '.join(words) for _, words in sorted(lines.items()))
        confidence = (sum(confidences) / len(confidences) / 100.0) if confidences else 0.0
        return text, round(min(max(confidence, 0.0), 1.0), 4)


class AzureReadEngine(RecognitionEngine):
    """Cloud fallback using the Document Intelligence prebuilt-read model."""

    name = "azure_read"

    def __init__(self, endpoint: str, api_key: str, model_id: str = "prebuilt-read"):
        self.endpoint = endpoint
        self.model_id = model_id
        self.client = DocumentIntelligenceClient(endpoint=endpoint, credential=AzureKeyCredential(api_key))

    def is_available(self) -> bool:
        return bool(self.endpoint)

    def recognize(self, image: np.ndarray, psm: Optional[int] = None) -> EngineResult:
        start_time = time.time()
        ok, encoded = cv2.imencode('.png', image)
        if not ok:
            raise EngineError(self.name, "could not encode page as PNG", retryable=False)

        try:
            poller = self.client.begin_analyze_document(
                self.model_id, AnalyzeDocumentRequest(bytes_source=encoded.tobytes()))
            result = poller.result()
        except HttpResponseError as e:
            retryable = e.status_code is None or e.status_code >= 500 or e.status_code == 429
            raise EngineError(self.name, f"HTTP {e.status_code}: {e.message}", retryable=retryable) from e
        except AzureError as e:
            raise EngineError(self.name, str(e)) from e

        word_confidences = [
            word.confidence
            for page in (result.pages or [])
            for word in (page.words or [])
            if word.confidence is not None
        ]
        confidence = sum(word_confidences) / len(word_confidences) if word_confidences else 0.0
        return EngineResult(
            text=result.content or '',
            confidence=round(confidence, 4),
            engine=self.name,
            processing_time_ms=(time.time() - start_time) * 1000,
        )

    def close(self):
        self.client.close()


@dataclass
class _Handle:
    engine: RecognitionEngine
    uses: int = 0


class EnginePool:
    """
    Bounded pool of engine handles.

    ``acquire()`` lends a handle for one call and returns it afterwards.
    A handle is closed and replaced after ``max_uses`` calls, or straight
    away when a call on it timed out.
    """

    def __init__(self, name: str, factory: Callable[[], RecognitionEngine], size: int = 2, max_uses: int = 50):
        self.name = name
        self.factory = factory
        self.size = size
        self.max_uses = max_uses
        self._idle: asyncio.Queue = asyncio.Queue()
        self._created = 0
        self._retired = 0
        self._available: Optional[bool] = None
        self._closed = False

    def is_available(self) -> bool:
        if self._available is None:
            try:
                handle = self._create_handle()
            except (EngineError, ValueError, AzureError) as e:
                logger.warning(f"⚠️ Engine pool '{self.name}' cannot create a handle: {e}")
                self._available = False
            else:
                self._available = handle.engine.is_available()
                self._idle.put_nowait(handle)
        return self._available

    def _create_handle(self) -> _Handle:
        handle = _Handle(engine=self.factory())
        self._created += 1
        logger.debug(f"Engine pool '{self.name}': created handle #{self._created}")
        return handle

    @property
    def live_handles(self) -> int:
        return self._created - self._retired

    @asynccontextmanager
    async def acquire(self):
        if self._closed:
            raise EngineError(self.name, "engine pool is closed", retryable=False)

        if not self._idle.empty():
            handle = self._idle.get_nowait()
        elif self.live_handles < self.size:
            handle = self._create_handle()
        else:
            handle = await self._idle.get()

        timed_out = False
        try:
            yield handle.engine
        except asyncio.TimeoutError:
            timed_out = True
            raise
        finally:
            handle.uses += 1
            if self._closed:
                self._retire(handle)
            elif timed_out or handle.uses >= self.max_uses:
                # A timed-out call may still be running on the handle in its worker thread
                self._retire(handle)
                self._idle.put_nowait(self._create_handle())
            else:
                self._idle.put_nowait(handle)

    def _retire(self, handle: _Handle):
        self._retired += 1
        logger.debug(f"Engine pool '{self.name}': retiring handle after {handle.uses} uses")
        handle.engine.close()

    def close(self):
        self._closed = True
        while not self._idle.empty():
            self._retire(self._idle.get_nowait())
