"""
Scan Engine
===========
Main orchestrator that combines work item building, bounded dispatch and
record assembly into a complete batch recognition pipeline.

Usage:
    engine = ScanEngine(ScanConfig.from_env())
    state = engine.run_scan(["sheet1.jpg", "batch.pdf"], SheetVariant.AUTO)
    records = engine.store.filter_by_variant(SheetVariant.INFO)

Architecture:
    files → WorkItemBuilder (PageRasterizer + GroupingPolicy) → work queue →
    BoundedDispatcher (RecognitionGateway) → RecordAssembler → RecordStore
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .assembler import RecordAssembler
from .builder import FileSource, build_paired_work_items, build_work_items
from .dispatcher import (
    DEFAULT_CONCURRENCY,
    MAX_CONCURRENCY,
    MIN_CONCURRENCY,
    BoundedDispatcher,
    ProgressCallback,
    summarize_batch,
)
from .exceptions import FilePreparationError
from .gateway import RecognitionGateway, RetryPolicy
from .models import BatchStatus, ScanState, ScanStatus, SheetVariant, WorkItem
from .oracle import DEFAULT_MODEL, GeminiOracle
from .rasterizer import MIN_RENDER_SCALE, PageRasterizer
from .store import RecordStore

logger = logging.getLogger(__name__)

PREPARATION_FAILED_MESSAGE = "Failed to read files."
SCAN_FAILED_MESSAGE = "Scan failed unexpectedly. Please try again."

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


@dataclass
class ScanConfig:
    """Configuration for the scan engine."""

    # Recognition service
    api_key: Optional[str] = None
    model: str = DEFAULT_MODEL
    temperature: float = 0.1
    thinking_budget: Optional[int] = 2048

    # Dispatch
    concurrency: int = DEFAULT_CONCURRENCY
    max_retries: int = 3
    backoff_base: float = 2.0
    request_timeout_s: Optional[float] = 120.0

    # Rendering
    render_scale: float = 2.0
    jpeg_quality: int = 80

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        if not MIN_CONCURRENCY <= self.concurrency <= MAX_CONCURRENCY:
            raise ValueError(
                f"concurrency must be within {MIN_CONCURRENCY}..{MAX_CONCURRENCY}"
            )
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.render_scale < MIN_RENDER_SCALE:
            raise ValueError(f"render_scale must be >= {MIN_RENDER_SCALE}")
        if not 1 <= self.jpeg_quality <= 100:
            raise ValueError("jpeg_quality must be within 1..100")
        if self.request_timeout_s is not None and self.request_timeout_s <= 0:
            raise ValueError("request_timeout_s must be positive")

    @classmethod
    def from_env(cls, **overrides) -> "ScanConfig":
        """Build a config from environment variables, then apply overrides."""
        values: dict = {
            "api_key": os.environ.get("GEMINI_API_KEY") or os.environ.get("API_KEY"),
        }
        if os.environ.get("SHEETSCAN_MODEL"):
            values["model"] = os.environ["SHEETSCAN_MODEL"]
        if os.environ.get("SHEETSCAN_CONCURRENCY"):
            values["concurrency"] = int(os.environ["SHEETSCAN_CONCURRENCY"])
        if os.environ.get("SHEETSCAN_LOG_LEVEL"):
            values["log_level"] = os.environ["SHEETSCAN_LOG_LEVEL"]
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class ScanEngine:
    """
    Batch recognition engine and scan controller.

    Owns the record store and the user-visible scan state. One scan runs
    at a time; the store may be read and edited while a scan is running.
    """

    def __init__(
        self,
        config: Optional[ScanConfig] = None,
        gateway: Optional[RecognitionGateway] = None,
        store: Optional[RecordStore] = None,
        rasterizer: Optional[PageRasterizer] = None,
        assembler: Optional[RecordAssembler] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.config = config or ScanConfig()
        self._setup_logging()

        self.store = store or RecordStore()
        self.rasterizer = rasterizer or PageRasterizer(
            scale=self.config.render_scale,
            jpeg_quality=self.config.jpeg_quality,
        )
        self.assembler = assembler or RecordAssembler()
        self._gateway = gateway
        self.progress_callback = progress_callback

        self._state = ScanState()
        self._state_lock = threading.Lock()

    def _setup_logging(self):
        """Configure logging based on config."""
        log_level = getattr(logging, self.config.log_level.upper(), logging.INFO)

        package_logger = logging.getLogger("sheetscan")
        package_logger.setLevel(log_level)

        # Console handler
        if not package_logger.handlers:
            console = logging.StreamHandler()
            console.setLevel(log_level)
            console.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
            package_logger.addHandler(console)

        # File handler
        if self.config.log_file:
            log_dir = Path(self.config.log_file).parent
            log_dir.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(self.config.log_file, encoding="utf-8")
            file_handler.setLevel(log_level)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=LOG_DATE_FORMAT))
            package_logger.addHandler(file_handler)

    # ─── State ────────────────────────────────────────────────────────────────

    @property
    def state(self) -> ScanState:
        with self._state_lock:
            return self._state

    @property
    def is_scanning(self) -> bool:
        return self.state.status == ScanStatus.SCANNING

    def _set_state(self, **changes) -> ScanState:
        with self._state_lock:
            self._state = self._state.model_copy(update=changes)
            return self._state

    def _on_progress(self, completed: int, total: int) -> None:
        self._set_state(progress=(completed, total))
        if self.progress_callback:
            self.progress_callback(completed, total)

    # ─── Collaborators ────────────────────────────────────────────────────────

    @property
    def gateway(self) -> RecognitionGateway:
        """The recognition gateway, built from config on first use."""
        if self._gateway is None:
            oracle = GeminiOracle(
                api_key=self.config.api_key,
                model=self.config.model,
                temperature=self.config.temperature,
                thinking_budget=self.config.thinking_budget,
            )
            self._gateway = RecognitionGateway(
                oracle,
                retry=RetryPolicy(
                    max_retries=self.config.max_retries,
                    backoff_base=self.config.backoff_base,
                ),
                timeout_s=self.config.request_timeout_s,
            )
        return self._gateway

    def _dispatcher(self) -> BoundedDispatcher:
        return BoundedDispatcher(
            self.gateway,
            self.assembler,
            self.store,
            concurrency=self.config.concurrency,
            progress_callback=self._on_progress,
        )

    # ─── Scanning ─────────────────────────────────────────────────────────────

    async def scan(self, files: Sequence[FileSource], variant: SheetVariant) -> ScanState:
        """
        Scan a single-variant or auto-detect upload.

        Args:
            files: Uploaded files or paths, in upload order.
            variant: A concrete variant, or AUTO to detect per page.

        Returns:
            The final scan state.
        """
        variant = SheetVariant(variant)
        if variant == SheetVariant.PAIRED:
            raise ValueError("Paired uploads go through scan_paired()")

        self._begin(f"{len(files)} files as {variant.label}")
        try:
            items = await build_work_items(files, self.rasterizer)
            return await self._dispatch(items, variant)
        except FilePreparationError as e:
            return self._fail_preparation(e)
        except Exception as e:
            self._fail_unexpected(e)
            raise

    async def scan_paired(
        self,
        info_files: Sequence[FileSource],
        vibe_files: Sequence[FileSource],
        stats_files: Sequence[FileSource],
    ) -> ScanState:
        """Scan three variant buckets, linking entries by position."""
        self._begin(
            f"paired upload (info={len(info_files)}, vibe={len(vibe_files)}, "
            f"stats={len(stats_files)})"
        )
        try:
            items = await build_paired_work_items(
                info_files, vibe_files, stats_files, self.rasterizer
            )
            return await self._dispatch(items, SheetVariant.PAIRED)
        except FilePreparationError as e:
            return self._fail_preparation(e)
        except Exception as e:
            self._fail_unexpected(e)
            raise

    def run_scan(self, files: Sequence[FileSource], variant: SheetVariant) -> ScanState:
        """Blocking wrapper around ``scan``."""
        return asyncio.run(self.scan(files, variant))

    def run_paired(
        self,
        info_files: Sequence[FileSource],
        vibe_files: Sequence[FileSource],
        stats_files: Sequence[FileSource],
    ) -> ScanState:
        """Blocking wrapper around ``scan_paired``."""
        return asyncio.run(self.scan_paired(info_files, vibe_files, stats_files))

    def _begin(self, description: str) -> None:
        # a missing API key raises here, before any state change
        self.gateway
        logger.info(f"Starting scan of {description}")
        self._set_state(
            status=ScanStatus.SCANNING,
            error_message=None,
            progress=None,
            report=None,
        )

    def _fail_preparation(self, error: FilePreparationError) -> ScanState:
        logger.error(f"Scan aborted: {error} ({error.file_name})")
        return self._set_state(
            status=ScanStatus.ERROR,
            error_message=PREPARATION_FAILED_MESSAGE,
            progress=None,
        )

    def _fail_unexpected(self, error: Exception) -> None:
        logger.error(f"Scan aborted by unexpected error: {error}", exc_info=True)
        self._set_state(
            status=ScanStatus.ERROR,
            error_message=SCAN_FAILED_MESSAGE,
            progress=None,
        )

    async def _dispatch(self, items: list[WorkItem], hint: SheetVariant) -> ScanState:
        flags = await self._dispatcher().run(items, hint)
        report = summarize_batch(flags)

        if report.status == BatchStatus.FAILED:
            logger.error(f"Scan failed: {report.message}")
            return self._set_state(
                status=ScanStatus.ERROR,
                error_message=report.message,
                progress=None,
                report=report,
            )

        logger.info(
            f"Scan complete: {report.succeeded}/{report.total} sheets recognized"
        )
        return self._set_state(
            status=ScanStatus.SUCCESS,
            error_message=None,
            progress=None,
            report=report,
        )
