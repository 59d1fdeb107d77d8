"""
Media Normalization Module

Turns raw attachment bytes into page images that recognition engines can
read reliably.

Features:
- Attachment download from the messaging Graph API
- PDF rasterization at a fixed high scale with a page cap
- Percentile contrast stretch on the luminance histogram
- 3x3 median denoise
- Long-edge resizing into the recognition sweet spot
"""

import asyncio
import io
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import cv2
import httpx
import numpy as np
from pdf2image import convert_from_bytes, pdfinfo_from_bytes
from pdf2image.exceptions import (
    PDFInfoNotInstalledError,
    PDFPageCountError,
    PDFPopplerTimeoutError,
    PDFSyntaxError,
)
from PIL import Image, UnidentifiedImageError
from skimage import exposure

from .errors import NormalizationError

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
IMAGE_MIMES = {"image/jpeg", "image/jpg", "image/png", "image/tiff", "image/bmp", "image/webp"}

# ITU-R BT.601 luminance weights (R, G, B)
LUMINANCE_WEIGHTS = (0.299, 0.587, 0.114)


@dataclass
class NormalizedMedia:
    """Normalized grayscale page images ready for recognition."""
    pages: List[np.ndarray]
    source_mime: str
    page_count: int
    truncated: bool = False
    processing_time_ms: float = 0.0


@dataclass
class NormalizerConfig:
    max_pdf_pages: int = 5
    pdf_scale: float = 3.0
    min_long_edge: int = 1000
    max_long_edge: int = 3500
    max_upscale: float = 3.5
    pdf_timeout: int = 30
    contrast_min_range: float = 20.0

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> 'NormalizerConfig':
        section = config.get('normalizer', {})
        return cls(**{k: v for k, v in section.items() if k in cls.__dataclass_fields__})


class MediaNormalizer:
    """Rasterizes and enhances submitted documents for OCR."""

    def __init__(self, config: Optional[NormalizerConfig] = None):
        self.config = config or NormalizerConfig()
        self.stats = {'documents_normalized': 0, 'pages_produced': 0, 'failures': 0}

    def normalize(self, data: bytes, mime_type: str) -> NormalizedMedia:
        """
        Normalize raw bytes into page images.

        Args:
            data: Raw file content
            mime_type: Declared content type

        Returns:
            NormalizedMedia with one grayscale image per page

        Raises:
            NormalizationError: unsupported type or undecodable content
        """
        start_time = time.time()
        mime_type = (mime_type or "").split(';')[0].strip().lower()

        if not data:
            self.stats['failures'] += 1
            raise NormalizationError("Empty attachment")

        try:
            if mime_type == PDF_MIME:
                raw_pages, truncated = self._rasterize_pdf(data)
            elif mime_type in IMAGE_MIMES:
                raw_pages, truncated = [self._decode_image(data)], False
            else:
                raise NormalizationError(
                    f"Unsupported media type: {mime_type or 'unknown'}",
                    user_message="Please send the document as a PDF or an image (JPG/PNG).")

            pages = [self.normalize_image(page, page_num=i + 1) for i, page in enumerate(raw_pages)]
        except NormalizationError:
            self.stats['failures'] += 1
            raise

        elapsed_ms = (time.time() - start_time) * 1000
        self.stats['documents_normalized'] += 1
        self.stats['pages_produced'] += len(pages)
        logger.info(f"📄 Normalized {mime_type} into {len(pages)} page(s) in {elapsed_ms:.0f}ms"
                    + (" (truncated)" if truncated else ""))
        return NormalizedMedia(
            pages=pages,
            source_mime=mime_type,
            page_count=len(pages),
            truncated=truncated,
            processing_time_ms=elapsed_ms,
        )

    async def normalize_async(self, data: bytes, mime_type: str) -> NormalizedMedia:
        """Run ``normalize`` off the event loop, bounded by the PDF timeout."""
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.normalize, data, mime_type),
                timeout=self.config.pdf_timeout + 5,
            )
        except asyncio.TimeoutError as e:
            self.stats['failures'] += 1
            raise NormalizationError(f"Normalization timed out after {self.config.pdf_timeout}s") from e

    def _rasterize_pdf(self, data: bytes):
        """Render up to ``max_pdf_pages`` pages at ``pdf_scale`` x 72 DPI."""
        dpi = int(72 * self.config.pdf_scale)
        try:
            info = pdfinfo_from_bytes(data, timeout=self.config.pdf_timeout)
            total_pages = int(info.get('Pages', 0))
            pil_pages = convert_from_bytes(
                data,
                dpi=dpi,
                first_page=1,
                last_page=self.config.max_pdf_pages,
                timeout=self.config.pdf_timeout,
            )
        except PDFInfoNotInstalledError as e:
            raise NormalizationError(
                "poppler-utils is required for PDF processing",
                user_message="PDF processing is temporarily unavailable.") from e
        except PDFPopplerTimeoutError as e:
            raise NormalizationError(f"PDF rasterization timed out after {self.config.pdf_timeout}s") from e
        except (PDFPageCountError, PDFSyntaxError) as e:
            raise NormalizationError(f"Malformed PDF: {e}") from e

        if not pil_pages:
            raise NormalizationError("PDF contains no renderable pages")

        truncated = total_pages > self.config.max_pdf_pages
        if truncated:
            logger.warning(f"⚠️ PDF has {total_pages} pages, only the first "
                           f"{self.config.max_pdf_pages} will be processed")
        logger.debug(f"Rasterized {len(pil_pages)} PDF page(s) at {dpi} DPI")
        return [np.array(page.convert('RGB'))[:, :, ::-1] for page in pil_pages], truncated

    def _decode_image(self, data: bytes) -> np.ndarray:
        """Decode image bytes to a BGR array, falling back to Pillow for formats OpenCV rejects."""
        image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
        if image is not None:
            return image
        try:
            with Image.open(io.BytesIO(data)) as pil_image:
                return np.array(pil_image.convert('RGB'))[:, :, ::-1]
        except (UnidentifiedImageError, OSError) as e:
            raise NormalizationError(f"Cannot decode image: {e}") from e

    def normalize_image(self, image: np.ndarray, page_num: int = 1) -> np.ndarray:
        """Luminance conversion, contrast stretch, median denoise and resize."""
        if image is None or image.size == 0:
            raise NormalizationError(f"Page {page_num} has no pixels")

        gray = self.to_luminance(image)
        gray = self.stretch_contrast(gray)
        gray = cv2.medianBlur(gray, 3)
        resized = self.resize_to_band(gray)
        logger.debug(f"Page {page_num}: {image.shape[:2]} -> {resized.shape[:2]}")
        return resized

    @staticmethod
    def to_luminance(image: np.ndarray) -> np.ndarray:
        """Grayscale from BGR using the standard luminance weighting."""
        if image.ndim == 2:
            return image.astype(np.uint8)
        if image.shape[2] == 4:
            image = image[:, :, :3]
        r_weight, g_weight, b_weight = LUMINANCE_WEIGHTS
        blue, green, red = image[:, :, 0], image[:, :, 1], image[:, :, 2]
        gray = r_weight * red.astype(np.float32) + g_weight * green + b_weight * blue
        return np.clip(np.rint(gray), 0, 255).astype(np.uint8)

    def stretch_contrast(self, gray: np.ndarray) -> np.ndarray:
        """Stretch the 1st-99th percentile range to full scale, ignoring flat images."""
        low, high = np.percentile(gray, (1, 99))
        if high - low <= self.config.contrast_min_range:
            return gray
        stretched = exposure.rescale_intensity(gray, in_range=(low, high), out_range=(0, 255))
        return stretched.astype(np.uint8)

    def resize_to_band(self, gray: np.ndarray) -> np.ndarray:
        """Resize so the long edge sits between ``min_long_edge`` and ``max_long_edge``."""
        height, width = gray.shape[:2]
        long_edge = max(height, width)

        if long_edge < self.config.min_long_edge:
            scale = min(self.config.max_long_edge / long_edge, self.config.max_upscale)
            interpolation = cv2.INTER_CUBIC
        elif long_edge > self.config.max_long_edge:
            scale = self.config.max_long_edge / long_edge
            interpolation = cv2.INTER_AREA
        else:
            return gray

        new_size = (max(1, int(round(width * scale))), max(1, int(round(height * scale))))
        return cv2.resize(gray, new_size, interpolation=interpolation)


@dataclass
class FetchedMedia:
    data: bytes
    mime_type: str
    filename: Optional[str] = None
    size: int = 0
    metadata: Dict[str, Any] = field(default_factory=dict)


class MediaFetcher:
    """Downloads channel attachments: metadata lookup, then the binary itself."""

    def __init__(self, access_token: str, api_base: str = "https://graph.facebook.com/v19.0",
                 timeout: float = 30.0, client: Optional[httpx.AsyncClient] = None):
        self.access_token = access_token
        self.api_base = api_base.rstrip('/')
        self.timeout = timeout
        self._client = client

    async def fetch(self, media_id: str, filename: Optional[str] = None) -> FetchedMedia:
        headers = {"Authorization": f"Bearer {self.access_token}"}
        client = self._client or httpx.AsyncClient(timeout=self.timeout)
        try:
            meta_response = await client.get(f"{self.api_base}/{media_id}", headers=headers)
            meta_response.raise_for_status()
            metadata = meta_response.json()

            media_response = await client.get(metadata['url'], headers=headers)
            media_response.raise_for_status()
        except (httpx.HTTPError, KeyError, ValueError) as e:
            raise NormalizationError(
                f"Failed to download media {media_id}: {e}",
                user_message="We could not download your file. Please try sending it again.") from e
        finally:
            if self._client is None:
                await client.aclose()

        content = media_response.content
        logger.info(f"📥 Downloaded media {media_id} ({len(content)} bytes)")
        return FetchedMedia(
            data=content,
            mime_type=metadata.get('mime_type') or media_response.headers.get('content-type', ''),
            filename=filename,
            size=len(content),
            metadata=metadata,
        )
