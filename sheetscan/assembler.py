"""
Record Assembler
================
Turns a recognition outcome plus its originating work item into an
immutable Record.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Callable

from .models import Record, RecognitionOutcome, SourceImage, WorkItem


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _new_record_id() -> str:
    return str(uuid.uuid4())


class RecordAssembler:
    """Stamps outcomes with an id, a timestamp and their source reference."""

    def __init__(
        self,
        clock: Callable[[], datetime] = _utc_now,
        id_factory: Callable[[], str] = _new_record_id,
    ):
        self._clock = clock
        self._id_factory = id_factory

    def assemble(self, outcome: RecognitionOutcome, item: WorkItem) -> Record:
        return Record(
            id=self._id_factory(),
            variant=outcome.variant,
            fields=outcome.fields,
            confidence=outcome.confidence,
            source_image=SourceImage(
                file_name=item.source_file_name,
                page_number=item.page_number,
                mime_type=item.mime_type,
                data=item.image_data,
            ),
            group_id=item.group_id,
            created_at=self._clock(),
        )
