"""
Error Taxonomy
==============
Exceptions raised by the scanning pipeline.

    SheetScanError
    ├── FilePreparationError   # aborts the whole batch before dispatch
    ├── RasterizationError     # corrupt or unrenderable PDF
    └── RecognitionError       # one item failed, batch continues
        └── ThrottleError      # rate limited, retried internally
"""

from __future__ import annotations


class SheetScanError(Exception):
    """Base class for all pipeline errors."""


class FilePreparationError(SheetScanError):
    """One of the input files could not be read or rasterized."""

    def __init__(self, message: str = "failed to read files", file_name: str | None = None):
        super().__init__(message)
        self.file_name = file_name


class RasterizationError(SheetScanError):
    """A PDF document is corrupt or one of its pages failed to render."""


class RecognitionError(SheetScanError):
    """The recognition call failed or returned unusable output."""


class ThrottleError(RecognitionError):
    """The recognition service rejected the call with a rate-limit signal."""
