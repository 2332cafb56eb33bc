"""
Work Item Builder
=================
Flattens uploaded files into one ordered queue of work items.

    image file  → 1 work item
    PDF file    → PageRasterizer → GroupingPolicy → 1 work item per page

Order is file order, then page order. Preparation is fail-fast: a single
unreadable file aborts the whole batch before any recognition starts.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence, Union

from .exceptions import FilePreparationError, RasterizationError
from .grouping import assign_document_groups, assign_paired_groups
from .models import FileType, SheetVariant, WorkItem
from .rasterizer import PageRasterizer

logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
PAGE_MIME = "image/jpeg"

_IMAGE_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"GIF8", "image/gif"),
    (b"BM", "image/bmp"),
)


@dataclass(frozen=True)
class InputFile:
    """An uploaded file: name, raw bytes and the declared content type."""

    name: str
    data: bytes = field(repr=False)
    content_type: Optional[str] = None

    @classmethod
    def from_path(cls, path: Union[str, Path]) -> "InputFile":
        path = Path(path)
        return cls(name=path.name, data=path.read_bytes())

    @property
    def is_document(self) -> bool:
        return (
            self.name.lower().endswith(".pdf")
            or self.content_type == PDF_MIME
            or self.data[:5] == b"%PDF-"
        )

    def image_mime_type(self) -> Optional[str]:
        """Best guess of the image MIME type, or None if not an image."""
        if self.content_type and self.content_type.startswith("image/"):
            return self.content_type
        guessed, _ = mimetypes.guess_type(self.name)
        if guessed and guessed.startswith("image/"):
            return guessed
        if self.data[:4] == b"RIFF" and self.data[8:12] == b"WEBP":
            return "image/webp"
        for signature, mime in _IMAGE_SIGNATURES:
            if self.data.startswith(signature):
                return mime
        return None


FileSource = Union[InputFile, str, Path]


@dataclass(frozen=True)
class _PreparedPage:
    data: bytes = field(repr=False)
    mime_type: str
    source_file_name: str
    file_type: FileType
    page_number: Optional[int] = None

    def to_work_item(
        self,
        group_id: Optional[str] = None,
        forced_variant: Optional[SheetVariant] = None,
    ) -> WorkItem:
        return WorkItem(
            image_data=self.data,
            mime_type=self.mime_type,
            source_file_name=self.source_file_name,
            file_type=self.file_type,
            page_number=self.page_number,
            group_id=group_id,
            forced_variant=forced_variant,
        )


# ─── Preparation ──────────────────────────────────────────────────────────────


async def _load(source: FileSource) -> InputFile:
    if isinstance(source, InputFile):
        return source
    return await asyncio.to_thread(InputFile.from_path, source)


async def _prepare_file(
    source: FileSource, rasterizer: PageRasterizer
) -> list[_PreparedPage]:
    file = await _load(source)

    if file.is_document:
        pages = await rasterizer.rasterize(file.data)
        logger.info(f"{file.name}: {len(pages)} pages rasterized")
        return [
            _PreparedPage(
                data=page,
                mime_type=PAGE_MIME,
                source_file_name=file.name,
                file_type=FileType.DOCUMENT_PAGE,
                page_number=idx + 1,
            )
            for idx, page in enumerate(pages)
        ]

    mime_type = file.image_mime_type()
    if mime_type is None:
        raise FilePreparationError(f"Unsupported file type: {file.name}", file.name)
    if not file.data:
        raise FilePreparationError(f"Empty file: {file.name}", file.name)

    return [
        _PreparedPage(
            data=file.data,
            mime_type=mime_type,
            source_file_name=file.name,
            file_type=FileType.IMAGE,
        )
    ]


def _source_name(source: FileSource) -> str:
    if isinstance(source, InputFile):
        return source.name
    return Path(source).name


async def _prepare_all(
    sources: Sequence[FileSource], rasterizer: PageRasterizer
) -> list[list[_PreparedPage]]:
    """Prepare every file in order; the first failure aborts the batch."""
    prepared: list[list[_PreparedPage]] = []
    for source in sources:
        try:
            prepared.append(await _prepare_file(source, rasterizer))
        except (OSError, RasterizationError, FilePreparationError) as e:
            name = _source_name(source)
            logger.error(f"Failed preparing {name}: {e}")
            raise FilePreparationError("failed to read files", file_name=name) from e
    return prepared


# ─── Public API ───────────────────────────────────────────────────────────────


async def build_work_items(
    files: Sequence[FileSource],
    rasterizer: Optional[PageRasterizer] = None,
) -> list[WorkItem]:
    """
    Build the work queue for a single-variant or auto-detect upload.

    Args:
        files: Uploaded files or filesystem paths, in upload order.
        rasterizer: Renderer for PDF inputs.

    Returns:
        Work items in file order, PDF pages in page order. Images carry no
        group id; PDF pages are grouped in sets of three.

    Raises:
        FilePreparationError: If any file cannot be read or rasterized.
    """
    rasterizer = rasterizer or PageRasterizer()
    items: list[WorkItem] = []

    for pages in await _prepare_all(files, rasterizer):
        if pages and pages[0].file_type == FileType.DOCUMENT_PAGE:
            for page, group_id in assign_document_groups(pages):
                items.append(page.to_work_item(group_id=group_id))
        else:
            items.extend(page.to_work_item() for page in pages)

    logger.info(f"Built {len(items)} work items from {len(files)} files")
    return items


async def build_paired_work_items(
    info_files: Sequence[FileSource],
    vibe_files: Sequence[FileSource],
    stats_files: Sequence[FileSource],
    rasterizer: Optional[PageRasterizer] = None,
) -> list[WorkItem]:
    """
    Build the work queue for a paired upload.

    Each bucket forces its variant on its items. Entries at the same
    position across buckets share a group id; PDF pages in a bucket count
    as consecutive entries.
    """
    rasterizer = rasterizer or PageRasterizer()

    buckets: list[list[_PreparedPage]] = []
    for files in (info_files, vibe_files, stats_files):
        prepared = await _prepare_all(files, rasterizer)
        buckets.append([page for pages in prepared for page in pages])

    items = [
        page.to_work_item(group_id=group_id, forced_variant=variant)
        for variant, page, group_id in assign_paired_groups(*buckets)
    ]

    logger.info(
        f"Built {len(items)} paired work items "
        f"(info={len(buckets[0])}, vibe={len(buckets[1])}, stats={len(buckets[2])})"
    )
    return items
