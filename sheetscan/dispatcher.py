"""
Bounded Dispatcher
==================
Runs recognition over a work queue with a fixed ceiling on in-flight
calls, isolates per-item failures and reports progress.

    queue → [semaphore N] → gateway.recognize → assembler → store.insert

A permit is taken before each task is created and released when the task
finishes, so no more than N gateway calls are ever outstanding. Results
come back as one success flag per item in submission order.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional, Sequence

from .assembler import RecordAssembler
from .gateway import RecognitionGateway
from .models import BatchReport, BatchStatus, SheetVariant, WorkItem
from .store import RecordStore

logger = logging.getLogger(__name__)

MIN_CONCURRENCY = 3
DEFAULT_CONCURRENCY = 5
MAX_CONCURRENCY = 5

ALL_FAILED_MESSAGE = (
    "Failed to process images. All uploads failed. Please check your API quota."
)

ProgressCallback = Callable[[int, int], None]


class ProgressTracker:
    """Completed/total counter for the current batch (None between runs)."""

    def __init__(self, callback: Optional[ProgressCallback] = None):
        self._callback = callback
        self.progress: Optional[tuple[int, int]] = None

    def start(self, total: int) -> None:
        self.progress = (0, total)
        self._notify()

    def advance(self) -> None:
        completed, total = self.progress or (0, 0)
        self.progress = (completed + 1, total)
        self._notify()

    def reset(self) -> None:
        self.progress = None

    def _notify(self) -> None:
        # A failing listener must not affect the batch it observes
        if not self._callback:
            return
        try:
            self._callback(*self.progress)
        except Exception as e:
            logger.warning(f"Progress callback failed at {self.progress}: {e}")


class BoundedDispatcher:
    """Dispatches work items to the gateway with bounded concurrency."""

    def __init__(
        self,
        gateway: RecognitionGateway,
        assembler: RecordAssembler,
        store: RecordStore,
        concurrency: int = DEFAULT_CONCURRENCY,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        if not MIN_CONCURRENCY <= concurrency <= MAX_CONCURRENCY:
            raise ValueError(
                f"concurrency must be within {MIN_CONCURRENCY}..{MAX_CONCURRENCY}"
            )
        self.gateway = gateway
        self.assembler = assembler
        self.store = store
        self.concurrency = concurrency
        self.tracker = ProgressTracker(progress_callback)

    async def run(self, items: Sequence[WorkItem], hint: SheetVariant) -> list[bool]:
        """
        Recognize every item.

        Args:
            items: Work queue in submission order.
            hint: Batch variant; an item's forced variant overrides it.

        Returns:
            One success flag per item, in submission order.
        """
        hint = SheetVariant(hint)
        total = len(items)
        self.tracker.reset()
        self.tracker.start(total)

        semaphore = asyncio.Semaphore(self.concurrency)
        tasks: list[asyncio.Task] = []

        for index, item in enumerate(items):
            await semaphore.acquire()
            task = asyncio.create_task(self._process(index, item, hint))
            task.add_done_callback(lambda _t: semaphore.release())
            tasks.append(task)

        flags = list(await asyncio.gather(*tasks))
        logger.info(
            f"Dispatch complete: {sum(flags)}/{total} succeeded "
            f"(concurrency={self.concurrency})"
        )
        return flags

    async def _process(self, index: int, item: WorkItem, hint: SheetVariant) -> bool:
        ok = await self._recognize(index, item, hint)
        self.tracker.advance()
        return ok

    async def _recognize(self, index: int, item: WorkItem, hint: SheetVariant) -> bool:
        variant = item.forced_variant or hint
        try:
            outcome = await self.gateway.recognize(
                item.image_data, variant, mime_type=item.mime_type
            )
            self.store.insert(self.assembler.assemble(outcome, item))
            return True
        except Exception as e:
            page = f" page {item.page_number}" if item.page_number else ""
            logger.error(
                f"Item {index + 1} ({item.source_file_name}{page}) failed: {e}"
            )
            return False


def summarize_batch(flags: Sequence[bool]) -> BatchReport:
    """Classify a dispatch run as success, partial or failed."""
    total = len(flags)
    succeeded = sum(1 for flag in flags if flag)
    failed = total - succeeded

    if total > 0 and succeeded == 0:
        return BatchReport(
            total=total,
            succeeded=0,
            failed=failed,
            status=BatchStatus.FAILED,
            message=ALL_FAILED_MESSAGE,
        )
    if failed:
        logger.warning(f"{failed} of {total} items failed to process")
        return BatchReport(
            total=total,
            succeeded=succeeded,
            failed=failed,
            status=BatchStatus.PARTIAL,
            message=f"{succeeded} of {total} sheets processed.",
        )
    return BatchReport(
        total=total,
        succeeded=succeeded,
        failed=0,
        status=BatchStatus.SUCCESS,
        message=f"{succeeded} sheets processed.",
    )
