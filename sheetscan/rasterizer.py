"""
Page Rasterizer
===============
Renders every page of a PDF into a JPEG image using PyMuPDF (fitz).

Pages are upscaled before encoding: the recognition service reads filled
bubbles and handwriting at pixel level, and renders below 2x measurably
increase its error rate. JPEG quality is fixed to bound payload size.
"""

from __future__ import annotations

import asyncio
import logging

import fitz  # PyMuPDF

from .exceptions import RasterizationError

logger = logging.getLogger(__name__)

MIN_RENDER_SCALE = 2.0


class PageRasterizer:
    """
    Turns one PDF document into an ordered list of page images.

    A failure on any page aborts the whole document; callers never see
    partial results.
    """

    def __init__(self, scale: float = 2.0, jpeg_quality: int = 80):
        if scale < MIN_RENDER_SCALE:
            raise ValueError(f"render scale must be >= {MIN_RENDER_SCALE}, got {scale}")
        if not 1 <= jpeg_quality <= 100:
            raise ValueError("jpeg_quality must be within 1..100")
        self.scale = scale
        self.jpeg_quality = jpeg_quality

    async def rasterize(self, document: bytes) -> list[bytes]:
        """Render all pages without blocking the event loop."""
        return await asyncio.to_thread(self.rasterize_sync, document)

    def rasterize_sync(self, document: bytes) -> list[bytes]:
        """
        Render all pages of a PDF.

        Args:
            document: Raw PDF bytes.

        Returns:
            JPEG bytes per page, in page order.

        Raises:
            RasterizationError: If the document is corrupt, empty, or any
                page fails to render.
        """
        matrix = fitz.Matrix(self.scale, self.scale)
        pages: list[bytes] = []

        try:
            doc = fitz.open(stream=document, filetype="pdf")
        except Exception as e:
            raise RasterizationError(f"Cannot open PDF: {e}") from e

        with doc:
            if doc.page_count == 0:
                raise RasterizationError("PDF has no pages")

            for page_idx in range(doc.page_count):
                try:
                    pix = doc[page_idx].get_pixmap(matrix=matrix, alpha=False)
                    pages.append(
                        pix.tobytes(output="jpeg", jpg_quality=self.jpeg_quality)
                    )
                except Exception as e:
                    raise RasterizationError(
                        f"Failed rendering page {page_idx + 1}: {e}"
                    ) from e

        logger.debug(f"Rasterized {len(pages)} pages at {self.scale}x")
        return pages

    def page_count(self, document: bytes) -> int:
        """Get total number of pages in the PDF."""
        try:
            with fitz.open(stream=document, filetype="pdf") as doc:
                return doc.page_count
        except Exception as e:
            raise RasterizationError(f"Cannot open PDF: {e}") from e
