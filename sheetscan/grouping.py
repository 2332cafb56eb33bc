"""
Grouping Policy
===============
Assigns group identifiers linking pages of the same physical sheet-set.

Two cases:
    - Document pages: consecutive pages of one PDF form sets of three
      (info, vibe, stats), so pages 0-2 share an id, 3-5 the next, ...
    - Paired buckets: the n-th upload of each variant bucket belongs to
      the same student, so one id is shared per positional index.

Both functions are pure apart from the id factory, and order-dependent.
"""

from __future__ import annotations

import uuid
from itertools import zip_longest
from typing import Callable, Sequence, TypeVar

from .models import SheetVariant

T = TypeVar("T")

SHEETS_PER_SET = 3

_MISSING = object()


def new_group_id() -> str:
    return uuid.uuid4().hex


def assign_document_groups(
    pages: Sequence[T],
    group_size: int = SHEETS_PER_SET,
    id_factory: Callable[[], str] = new_group_id,
) -> list[tuple[T, str]]:
    """
    Pair each page of one document with its group id.

    A fresh id starts at every index where ``index % group_size == 0``;
    a trailing partial set gets its own id.
    """
    if group_size < 1:
        raise ValueError("group_size must be >= 1")

    assigned: list[tuple[T, str]] = []
    group_id = ""
    for index, page in enumerate(pages):
        if index % group_size == 0:
            group_id = id_factory()
        assigned.append((page, group_id))
    return assigned


def assign_paired_groups(
    info: Sequence[T],
    vibe: Sequence[T],
    stats: Sequence[T],
    id_factory: Callable[[], str] = new_group_id,
) -> list[tuple[SheetVariant, T, str]]:
    """
    Link three variant buckets positionally.

    Returns ``(variant, entry, group_id)`` triples ordered by index, then
    info, vibe, stats. Shorter buckets contribute nothing at missing
    indices; every index up to the longest bucket gets one id.
    """
    assigned: list[tuple[SheetVariant, T, str]] = []
    buckets = (SheetVariant.INFO, SheetVariant.VIBE, SheetVariant.STATS)

    for row in zip_longest(info, vibe, stats, fillvalue=_MISSING):
        group_id = id_factory()
        for variant, entry in zip(buckets, row):
            if entry is not _MISSING:
                assigned.append((variant, entry, group_id))
    return assigned
