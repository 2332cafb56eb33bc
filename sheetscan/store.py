"""
Record Store
============
In-memory, most-recent-first collection of recognized records.

The store is the only shared mutable state in the system. The HTTP server
edits it from request threads while a scan inserts from a background
thread, so every operation holds a lock.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Optional, Union

from .models import CONCRETE_VARIANTS, Record, SheetFields, SheetVariant, parse_fields

logger = logging.getLogger(__name__)


class RecordStore:
    """
    Ordered record collection, newest first.

    Records are immutable; ``update_fields`` swaps in a validated copy.
    """

    def __init__(self):
        self._records: list[Record] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def insert(self, record: Record) -> None:
        """Prepend a record. Raises ValueError on a duplicate id."""
        with self._lock:
            if any(r.id == record.id for r in self._records):
                raise ValueError(f"Duplicate record id: {record.id}")
            self._records.insert(0, record)

    def get(self, record_id: str) -> Optional[Record]:
        with self._lock:
            return next((r for r in self._records if r.id == record_id), None)

    def all(self) -> list[Record]:
        with self._lock:
            return list(self._records)

    def delete_by_id(self, record_id: str) -> bool:
        """Remove a record. A missing id is a no-op returning False."""
        with self._lock:
            for idx, record in enumerate(self._records):
                if record.id == record_id:
                    del self._records[idx]
                    logger.debug(f"Deleted record {record_id}")
                    return True
        return False

    def update_fields(
        self,
        record_id: str,
        new_fields: Union[SheetFields, dict[str, Any]],
    ) -> Optional[Record]:
        """
        Replace a record's fields with a full new field set.

        Args:
            record_id: Target record.
            new_fields: Field-set instance or mapping (camelCase or
                snake_case keys) for the record's variant.

        Returns:
            The updated record, or None if the id is unknown.

        Raises:
            pydantic.ValidationError: If the mapping does not fit the variant.
            ValueError: If a field-set instance of another variant is given.
        """
        with self._lock:
            for idx, record in enumerate(self._records):
                if record.id != record_id:
                    continue
                fields = parse_fields(record.variant, new_fields)
                updated = record.model_copy(update={"fields": fields})
                self._records[idx] = updated
                return updated
        return None

    def filter_by_variant(self, variant: SheetVariant) -> list[Record]:
        variant = SheetVariant(variant)
        with self._lock:
            return [r for r in self._records if r.variant == variant]

    def clear_variant(self, variant: SheetVariant) -> int:
        """Drop every record of one variant; returns how many were removed."""
        variant = SheetVariant(variant)
        with self._lock:
            kept = [r for r in self._records if r.variant != variant]
            removed = len(self._records) - len(kept)
            self._records = kept
        logger.info(f"Cleared {removed} {variant.label} records")
        return removed

    def counts(self) -> dict[SheetVariant, int]:
        """Number of records per concrete variant."""
        with self._lock:
            totals = {variant: 0 for variant in CONCRETE_VARIANTS}
            for record in self._records:
                totals[record.variant] += 1
            return totals
