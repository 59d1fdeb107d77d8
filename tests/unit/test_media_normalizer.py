"""
Unit tests for media normalization and attachment download.

Poppler is never invoked: pdf2image calls are patched.
"""

import unittest
from unittest.mock import patch

import cv2
import httpx
import numpy as np
from PIL import Image
from pdf2image.exceptions import PDFPageCountError, PDFPopplerTimeoutError

from invoice_intake.core.errors import NormalizationError
from invoice_intake.core.media_normalizer import (
    MediaFetcher,
    MediaNormalizer,
    NormalizerConfig,
)


def png_bytes(height=50, width=80):
    gradient = np.tile(np.linspace(0, 255, width, dtype=np.uint8), (height, 1))
    image = cv2.merge([gradient, gradient, gradient])
    ok, encoded = cv2.imencode('.png', image)
    assert ok
    return encoded.tobytes()


class TestMediaNormalizer(unittest.TestCase):
    """Image decoding, contrast, denoise and resize."""

    def setUp(self):
        self.normalizer = MediaNormalizer()

    def test_small_image_is_upscaled_into_band(self):
        media = self.normalizer.normalize(png_bytes(50, 80), 'image/png')
        self.assertEqual(media.page_count, 1)
        self.assertEqual(media.source_mime, 'image/png')
        page = media.pages[0]
        self.assertEqual(page.ndim, 2)
        self.assertEqual(page.dtype, np.uint8)
        # Capped by the maximum upscale factor of 3.5
        self.assertEqual(page.shape, (175, 280))

    def test_mime_parameters_are_ignored(self):
        media = self.normalizer.normalize(png_bytes(), 'IMAGE/PNG; charset=binary')
        self.assertEqual(media.source_mime, 'image/png')

    def test_large_image_is_downscaled(self):
        resized = self.normalizer.resize_to_band(np.zeros((4000, 2000), dtype=np.uint8))
        self.assertEqual(resized.shape, (3500, 1750))

    def test_image_inside_band_is_untouched(self):
        gray = np.zeros((1200, 800), dtype=np.uint8)
        self.assertIs(self.normalizer.resize_to_band(gray), gray)

    def test_luminance_weights(self):
        image = np.zeros((1, 2, 3), dtype=np.uint8)
        image[0, 0] = (255, 0, 0)   # blue
        image[0, 1] = (0, 0, 255)   # red
        gray = MediaNormalizer.to_luminance(image)
        self.assertEqual(gray[0, 0], 29)
        self.assertEqual(gray[0, 1], 76)

    def test_contrast_stretch_skips_flat_images(self):
        flat = np.full((10, 10), 120, dtype=np.uint8)
        flat[0, 0] = 130
        np.testing.assert_array_equal(self.normalizer.stretch_contrast(flat), flat)

    def test_contrast_stretch_uses_full_range(self):
        gray = np.tile(np.linspace(50, 200, 256).astype(np.uint8), (10, 1))
        stretched = self.normalizer.stretch_contrast(gray)
        self.assertEqual(stretched.min(), 0)
        self.assertEqual(stretched.max(), 255)

    def test_unsupported_and_empty_inputs(self):
        with self.assertRaises(NormalizationError) as ctx:
            self.normalizer.normalize(b'PK\x03\x04', 'application/zip')
        self.assertIn('PDF', ctx.exception.user_message)
        with self.assertRaises(NormalizationError):
            self.normalizer.normalize(b'', 'image/png')
        self.assertEqual(self.normalizer.stats['failures'], 2)

    def test_undecodable_image(self):
        with self.assertRaises(NormalizationError):
            self.normalizer.normalize(b'definitely not an image', 'image/jpeg')

    @patch('invoice_intake.core.media_normalizer.convert_from_bytes')
    @patch('invoice_intake.core.media_normalizer.pdfinfo_from_bytes')
    def test_pdf_is_rasterized_with_page_cap(self, mock_info, mock_convert):
        mock_info.return_value = {'Pages': 7}
        mock_convert.return_value = [Image.new('RGB', (60, 40), 'white') for _ in range(5)]

        media = self.normalizer.normalize(b'%PDF-1.4', 'application/pdf')

        self.assertEqual(media.page_count, 5)
        self.assertTrue(media.truncated)
        kwargs = mock_convert.call_args.kwargs
        self.assertEqual(kwargs['dpi'], 216)
        self.assertEqual(kwargs['last_page'], 5)
        self.assertEqual(kwargs['timeout'], 30)

    @patch('invoice_intake.core.media_normalizer.convert_from_bytes')
    @patch('invoice_intake.core.media_normalizer.pdfinfo_from_bytes')
    def test_pdf_errors_become_normalization_errors(self, mock_info, mock_convert):
        mock_info.return_value = {'Pages': 1}
        for error in (PDFPageCountError("broken"), PDFPopplerTimeoutError("slow")):
            mock_convert.side_effect = error
            with self.subTest(error=type(error).__name__):
                with self.assertRaises(NormalizationError):
                    self.normalizer.normalize(b'%PDF-1.4', 'application/pdf')

    def test_config_from_mapping(self):
        config = NormalizerConfig.from_config({'normalizer': {'max_pdf_pages': 2, 'unknown': 1}})
        self.assertEqual(config.max_pdf_pages, 2)
        self.assertEqual(config.pdf_scale, 3.0)


class TestAsyncNormalization(unittest.IsolatedAsyncioTestCase):

    async def test_normalize_async(self):
        media = await MediaNormalizer().normalize_async(png_bytes(), 'image/png')
        self.assertEqual(media.page_count, 1)


class TestMediaFetcher(unittest.IsolatedAsyncioTestCase):
    """Two-step Graph API download over a mocked transport."""

    async def test_metadata_then_binary(self):
        seen = []

        def handler(request):
            seen.append((str(request.url), request.headers.get('Authorization')))
            if request.url.host == 'graph.example':
                return httpx.Response(200, json={'url': 'https://cdn.example/blob/1', 'mime_type': 'application/pdf'})
            return httpx.Response(200, content=b'%PDF-1.4 body')

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = MediaFetcher('secret-token', 'https://graph.example/v19.0/', client=client)
            media = await fetcher.fetch('media-1', 'invoice.pdf')

        self.assertEqual(media.data, b'%PDF-1.4 body')
        self.assertEqual(media.mime_type, 'application/pdf')
        self.assertEqual(media.filename, 'invoice.pdf')
        self.assertEqual(media.size, len(b'%PDF-1.4 body'))
        self.assertEqual(seen[0], ('https://graph.example/v19.0/media-1', 'Bearer secret-token'))
        self.assertEqual(seen[1][0], 'https://cdn.example/blob/1')

    async def test_http_failure_is_a_normalization_error(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(404, json={'error': 'gone'}))
        async with httpx.AsyncClient(transport=transport) as client:
            fetcher = MediaFetcher('token', 'https://graph.example/v19.0', client=client)
            with self.assertRaises(NormalizationError) as ctx:
                await fetcher.fetch('missing')
        self.assertIn('download', ctx.exception.user_message)


if __name__ == '__main__':
    unittest.main()
