"""
HTTP Microservice
=================
Flask-based HTTP API over the scan engine and its record store.

Scans run in a background thread; clients poll ``/api/status`` while the
records grid stays readable and editable.

Endpoints:
    POST   /api/scan                → Start a scan (multipart upload)
    GET    /api/status              → Current scan state and progress
    GET    /api/records?variant=    → List records, newest first
    PUT    /api/records/<id>        → Replace a record's fields
    GET    /api/records/<id>/image  → Source page image as a data URL
    DELETE /api/records/<id>        → Delete one record
    DELETE /api/records?variant=    → Clear every record of a variant
    GET    /api/summary             → Record counts per variant
    GET    /api/export/<variant>    → CSV download for one variant
    GET    /api/health              → Health check
    GET    /api/info                → Service version info
"""

from __future__ import annotations

import logging
import threading
from typing import Optional

from flask import Blueprint, Flask, Response, current_app, jsonify, request
from flask_cors import CORS
from pydantic import ValidationError

from . import __version__
from .builder import InputFile
from .engine import ScanConfig, ScanEngine
from .export import export_filename, generate_csv
from .models import CONCRETE_VARIANTS, SheetVariant

logger = logging.getLogger(__name__)

api = Blueprint("sheetscan_api", __name__, url_prefix="/api")

ENGINE_KEY = "sheetscan.engine"

SCAN_LOCK_KEY = "sheetscan.scan_lock"


def _engine() -> ScanEngine:
    return current_app.extensions[ENGINE_KEY]


def _variant_arg(value: Optional[str]) -> Optional[SheetVariant]:
    """Parse a variant query/form value; raises ValueError if unknown."""
    if value is None or value == "":
        return None
    return SheetVariant(value)


def _uploads(field: str) -> list[InputFile]:
    return [
        InputFile(name=f.filename, data=f.read(), content_type=f.mimetype)
        for f in request.files.getlist(field)
        if f.filename
    ]


# ─── Health Check ─────────────────────────────────────────────────────────────


@api.route("/health", methods=["GET"])
def health():
    """Health check endpoint."""
    engine = _engine()
    return jsonify({
        "status": "healthy",
        "service": "sheetscan",
        "version": __version__,
        "scanning": engine.is_scanning,
        "total_records": len(engine.store),
    })


@api.route("/info", methods=["GET"])
def info():
    """Service version and capability info."""
    return jsonify({
        "version": __version__,
        "engine": "PyMuPDF",
        "recognizer": _engine().config.model,
        "variants": {v.value: v.label for v in SheetVariant},
        "supported_formats": ["pdf", "jpeg", "png", "webp", "gif", "bmp"],
    })


# ─── Scanning ─────────────────────────────────────────────────────────────────


@api.route("/scan", methods=["POST"])
def start_scan():
    """
    Start a scan in a background thread.

    Multipart form:
        - ``variant`` = info | vibe | stats | auto, with files under ``files``
        - ``variant`` = paired, with files under ``info``, ``vibe``, ``stats``

    Returns 202 immediately; poll /api/status for progress.
    """
    try:
        variant = _variant_arg(request.form.get("variant")) or SheetVariant.AUTO
    except ValueError:
        return jsonify({"error": f"Unknown variant: {request.form.get('variant')}"}), 400

    engine = _engine()
    try:
        engine.gateway
    except RuntimeError as e:
        return jsonify({"error": str(e)}), 503

    if variant == SheetVariant.PAIRED:
        buckets = {v: _uploads(v.value) for v in CONCRETE_VARIANTS}
        if not any(buckets.values()):
            return jsonify({"error": "No files provided"}), 400
        target = engine.run_paired
        args = tuple(buckets[v] for v in CONCRETE_VARIANTS)
        total_files = sum(len(files) for files in buckets.values())
    else:
        files = _uploads("files")
        if not files:
            return jsonify({"error": "No files provided"}), 400
        target = engine.run_scan
        args = (files, variant)
        total_files = len(files)

    scan_lock = current_app.extensions[SCAN_LOCK_KEY]
    if not scan_lock.acquire(blocking=False):
        return jsonify({"error": "A scan is already running"}), 409

    def _run():
        try:
            target(*args)
        except Exception as e:
            logger.error(f"Background scan failed: {e}", exc_info=True)
        finally:
            scan_lock.release()

    thread = threading.Thread(target=_run, daemon=True)
    thread.start()

    return jsonify({
        "status": "queued",
        "variant": variant.value,
        "files": total_files,
        "message": "Scan started",
    }), 202


@api.route("/status", methods=["GET"])
def scan_status():
    """Current scan state."""
    state = _engine().state
    progress = None
    if state.progress:
        completed, total = state.progress
        progress = {"completed": completed, "total": total}
    return jsonify({
        "status": state.status.value,
        "error": state.error_message,
        "progress": progress,
        "report": state.report.model_dump(mode="json") if state.report else None,
    })


# ─── Records ──────────────────────────────────────────────────────────────────


@api.route("/records", methods=["GET"])
def list_records():
    """List records, optionally filtered by variant."""
    try:
        variant = _variant_arg(request.args.get("variant"))
    except ValueError:
        return jsonify({"error": f"Unknown variant: {request.args.get('variant')}"}), 400

    store = _engine().store
    records = store.filter_by_variant(variant) if variant else store.all()
    return jsonify({
        "count": len(records),
        "records": [r.to_api() for r in records],
    })


@api.route("/records/<record_id>", methods=["PUT"])
def update_record(record_id: str):
    """Replace a record's fields. JSON body: the full fields object."""
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "No data provided"}), 400
    fields = data.get("fields", data)

    try:
        updated = _engine().store.update_fields(record_id, fields)
    except (ValidationError, ValueError) as e:
        return jsonify({"error": f"Invalid fields: {e}"}), 422

    if updated is None:
        return jsonify({"error": "Record not found"}), 404
    return jsonify(updated.to_api())


@api.route("/records/<record_id>/image", methods=["GET"])
def record_image(record_id: str):
    """The page image a record was recognized from, as a data URL."""
    record = _engine().store.get(record_id)
    if record is None:
        return jsonify({"error": "Record not found"}), 404

    image = record.source_image
    if image is None or not image.data:
        return jsonify({"error": "No source image for this record"}), 404

    return jsonify({
        "id": record.id,
        "fileName": image.file_name,
        "pageNumber": image.page_number,
        "mimeType": image.mime_type,
        "dataUrl": image.data_url(),
    })


@api.route("/records/<record_id>", methods=["DELETE"])
def delete_record(record_id: str):
    """Delete one record."""
    if not _engine().store.delete_by_id(record_id):
        return jsonify({"error": "Record not found"}), 404
    return jsonify({"success": True})


@api.route("/records", methods=["DELETE"])
def clear_records():
    """Clear every record of one concrete variant."""
    try:
        variant = _variant_arg(request.args.get("variant"))
    except ValueError:
        variant = None
    if variant is None or not variant.is_concrete:
        return jsonify({"error": "A concrete variant is required"}), 400

    removed = _engine().store.clear_variant(variant)
    return jsonify({"success": True, "removed": removed})


@api.route("/summary", methods=["GET"])
def summary():
    """Record counts per variant."""
    counts = _engine().store.counts()
    return jsonify({
        "total": sum(counts.values()),
        "variants": {
            v.value: {"label": v.label, "count": counts[v]} for v in CONCRETE_VARIANTS
        },
    })


@api.route("/export/<variant>", methods=["GET"])
def export_csv(variant: str):
    """Download the CSV export for one variant."""
    try:
        sheet_variant = SheetVariant(variant)
    except ValueError:
        return jsonify({"error": f"Unknown variant: {variant}"}), 400

    csv_text = generate_csv(_engine().store.all(), sheet_variant)
    if csv_text is None:
        return jsonify({"error": "Nothing to export"}), 404

    return Response(
        csv_text,
        mimetype="text/csv",
        headers={
            "Content-Disposition": f'attachment; filename="{export_filename(sheet_variant)}"'
        },
    )


# ─── App Factory ──────────────────────────────────────────────────────────────


def create_app(
    config: Optional[dict] = None,
    engine: Optional[ScanEngine] = None,
) -> Flask:
    """Create and configure the Flask app."""
    app = Flask(__name__)
    CORS(app)

    if config:
        app.config.update(config)
    app.config.setdefault("MAX_CONTENT_LENGTH", 200 * 1024 * 1024)  # 200MB

    app.extensions[ENGINE_KEY] = engine or ScanEngine(ScanConfig.from_env())
    app.extensions[SCAN_LOCK_KEY] = threading.Lock()
    app.register_blueprint(api)
    return app


def run_server(
    host: str = "0.0.0.0",
    port: int = 5000,
    debug: bool = False,
    engine: Optional[ScanEngine] = None,
):
    """Start the microservice server."""
    app = create_app(engine=engine)
    logger.info(f"Starting server on {host}:{port}")
    app.run(host=host, port=port, debug=debug)


if __name__ == "__main__":
    run_server(debug=True)
