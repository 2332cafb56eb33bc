"""
CLI Interface
=============
Command-line interface for the scan engine.

Usage:
    sheetscan scan <files...> --variant auto [options]
    sheetscan paired --info p1.jpg --vibe p2.jpg --stats p3.jpg [options]
    sheetscan info <pdf_path>
    sheetscan serve [options]
"""

from __future__ import annotations

import os
import sys
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TextColumn,
    TimeElapsedColumn,
)
from rich.table import Table

from . import __version__
from .dispatcher import MAX_CONCURRENCY, MIN_CONCURRENCY
from .engine import ScanConfig, ScanEngine
from .exceptions import RasterizationError
from .export import export_filename, generate_csv
from .models import CONCRETE_VARIANTS, BatchStatus, ScanState, ScanStatus, SheetVariant
from .rasterizer import PageRasterizer

console = Console()

SCAN_VARIANTS = [v.value for v in SheetVariant if v != SheetVariant.PAIRED]
LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]


def _common_options(func):
    """Options shared by the scanning commands."""
    options = [
        click.option("--output", "-o", default="output", help="Output directory for CSV exports"),
        click.option(
            "--concurrency", "-j",
            default=None,
            type=click.IntRange(MIN_CONCURRENCY, MAX_CONCURRENCY),
            help="Maximum in-flight recognition calls (3-5, default 5)",
        ),
        click.option("--model", default=None, help="Recognition model name"),
        click.option("--api-key", default=None, envvar="GEMINI_API_KEY", help="Gemini API key"),
        click.option(
            "--log-level",
            default="INFO",
            type=click.Choice(LOG_LEVELS),
            help="Logging level",
        ),
        click.option("--log-file", default=None, help="Path to log file"),
    ]
    for option in reversed(options):
        func = option(func)
    return func


@click.group()
@click.version_option(version=__version__, prog_name="sheetscan")
def cli():
    """SheetScan: batch recognition for scanned OMR answer sheets."""
    pass


@cli.command()
@click.argument("files", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--variant", "-v",
    default=SheetVariant.AUTO.value,
    type=click.Choice(SCAN_VARIANTS),
    help="Sheet variant of every file, or 'auto' to detect per page",
)
@_common_options
def scan(
    files: tuple[str, ...],
    variant: str,
    output: str,
    concurrency: Optional[int],
    model: Optional[str],
    api_key: Optional[str],
    log_level: str,
    log_file: Optional[str],
):
    """Scan images and PDFs, then export one CSV per variant."""
    sheet_variant = SheetVariant(variant)
    engine = _build_engine(concurrency, model, api_key, log_level, log_file)

    _print_banner(f"Scanning {len(files)} files as {sheet_variant.label}")
    state = _run_with_progress(engine, lambda: engine.run_scan(list(files), sheet_variant))
    _finish(engine, state, output)


@cli.command()
@click.option("--info", "info_files", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Page 1 (Info) file; repeat for more students")
@click.option("--vibe", "vibe_files", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Page 2 (VibeMatch) file; repeat for more students")
@click.option("--stats", "stats_files", multiple=True, type=click.Path(exists=True, dir_okay=False),
              help="Page 3 (EduStats) file; repeat for more students")
@_common_options
def paired(
    info_files: tuple[str, ...],
    vibe_files: tuple[str, ...],
    stats_files: tuple[str, ...],
    output: str,
    concurrency: Optional[int],
    model: Optional[str],
    api_key: Optional[str],
    log_level: str,
    log_file: Optional[str],
):
    """Scan per-variant buckets, linking the n-th file of each bucket."""
    if not (info_files or vibe_files or stats_files):
        console.print("[yellow]No files given. Use --info, --vibe and/or --stats.[/]")
        sys.exit(1)

    engine = _build_engine(concurrency, model, api_key, log_level, log_file)

    _print_banner(
        f"Paired upload: {len(info_files)} info, "
        f"{len(vibe_files)} vibe, {len(stats_files)} stats"
    )
    state = _run_with_progress(
        engine,
        lambda: engine.run_paired(list(info_files), list(vibe_files), list(stats_files)),
    )
    _finish(engine, state, output)


@cli.command()
@click.option("--host", default="0.0.0.0", help="Server host")
@click.option("--port", default=5000, type=int, help="Server port")
@click.option("--debug", is_flag=True, default=False, help="Debug mode")
def serve(host: str, port: int, debug: bool):
    """Start the HTTP microservice server."""
    from .server import run_server

    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]SheetScan Microservice[/]\n"
            f"[dim]Starting on {host}:{port}[/]",
            border_style="cyan",
        )
    )
    console.print()

    run_server(host=host, port=port, debug=debug)


@cli.command()
@click.argument("pdf_path", type=click.Path(exists=True, dir_okay=False))
def info(pdf_path: str):
    """Display PDF page count and size before a scan."""
    try:
        pages = PageRasterizer().page_count(Path(pdf_path).read_bytes())
    except RasterizationError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)

    console.print()
    table = Table(title="PDF Information", border_style="cyan")
    table.add_column("Property", style="bold")
    table.add_column("Value")

    table.add_row("File", os.path.basename(pdf_path))
    table.add_row("Pages", str(pages))
    table.add_row("Sheet Sets", str((pages + 2) // 3))
    table.add_row(
        "File Size",
        f"{os.path.getsize(pdf_path) / 1024 / 1024:.2f} MB",
    )

    console.print(table)
    console.print()


# ─── Run Helpers ──────────────────────────────────────────────────────────────


def _build_engine(
    concurrency: Optional[int],
    model: Optional[str],
    api_key: Optional[str],
    log_level: str,
    log_file: Optional[str],
) -> ScanEngine:
    try:
        config = ScanConfig.from_env(
            concurrency=concurrency,
            model=model,
            api_key=api_key,
            log_level=log_level,
            log_file=log_file,
        )
    except ValueError as e:
        console.print(f"[red]Error:[/] {e}")
        sys.exit(1)
    return ScanEngine(config)


def _print_banner(description: str) -> None:
    console.print()
    console.print(
        Panel.fit(
            f"[bold cyan]SheetScan v{__version__}[/]\n[dim]{description}[/]",
            border_style="cyan",
        )
    )
    console.print()


def _run_with_progress(engine: ScanEngine, run) -> ScanState:
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        console=console,
    ) as progress:
        task = progress.add_task("Preparing files...", total=None)

        def on_progress(completed: int, total: int):
            progress.update(
                task,
                description="Recognizing sheets...",
                completed=completed,
                total=total,
            )

        engine.progress_callback = on_progress
        try:
            return run()
        except RuntimeError as e:
            progress.stop()
            console.print(f"[red]Error:[/] {e}")
            sys.exit(1)


def _finish(engine: ScanEngine, state: ScanState, output: str) -> None:
    if state.status == ScanStatus.ERROR:
        console.print(f"[red]Error:[/] {state.error_message}")
        sys.exit(1)

    written = _write_exports(engine, output)
    _display_summary(engine, state, written)


def _write_exports(engine: ScanEngine, output: str) -> dict[SheetVariant, Path]:
    output_dir = Path(output)
    output_dir.mkdir(parents=True, exist_ok=True)

    written: dict[SheetVariant, Path] = {}
    records = engine.store.all()
    for variant in CONCRETE_VARIANTS:
        csv_text = generate_csv(records, variant)
        if csv_text is None:
            continue
        path = output_dir / export_filename(variant)
        path.write_text(csv_text, encoding="utf-8")
        written[variant] = path
    return written


# ─── Display Helpers ──────────────────────────────────────────────────────────


def _display_summary(
    engine: ScanEngine,
    state: ScanState,
    written: dict[SheetVariant, Path],
) -> None:
    """Display per-variant record counts and the exported files."""
    console.print()

    counts = engine.store.counts()
    table = Table(title="Scan Summary", border_style="cyan")
    table.add_column("Variant", style="bold")
    table.add_column("Records", justify="right")
    table.add_column("Export")

    for variant in CONCRETE_VARIANTS:
        path = written.get(variant)
        table.add_row(variant.label, str(counts[variant]), str(path) if path else "[dim]-[/]")

    console.print(table)
    console.print()

    report = state.report
    if report is not None:
        color = "yellow" if report.status == BatchStatus.PARTIAL else "green"
        console.print(
            f"[bold]Total:[/] [{color}]{report.succeeded}/{report.total}[/] sheets "
            f"recognized ({report.success_rate}%), {report.failed} failures"
        )
        console.print()


# ─── Entry point (for python -m sheetscan.cli) ────────────────────────────────


if __name__ == "__main__":
    cli()
