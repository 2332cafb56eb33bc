"""
SheetScan
=========
Batch recognition pipeline for scanned OMR answer sheets.

Architecture:
    - Page Rasterizer: Renders multi-page PDFs into per-page JPEG images
    - Work Item Builder: Flattens images and PDF pages into an ordered queue
    - Grouping Policy: Links pages that belong to the same sheet-set
    - Recognition Gateway: Calls the recognition service with retry/backoff
    - Bounded Dispatcher: Runs recognition under a concurrency ceiling
    - Record Assembler / Store: Builds typed records and keeps them in memory

Version: 1.0.0
"""

__version__ = "1.0.0"
