from __future__ import annotations

import json

from flask import Blueprint, Response, current_app, jsonify, request

from utils.backup import FILE_PREFIX, get_export_history
from utils.errors import UnsupportedFormat
from utils.timezone_helpers import west_africa_now

database_bp = Blueprint("database", __name__, url_prefix="/database")

_MIMETYPES = {"json": "application/json", "sql": "application/sql"}


def _ctx():
    return current_app.extensions["fee_context"]


@database_bp.get("/export")
def export_database():
    fmt = (request.args.get("format") or "json").strip().lower()
    if fmt not in _MIMETYPES:
        raise UnsupportedFormat(f"unknown export format {fmt!r}")
    snapshot = _ctx().backup.export_database(fmt)
    body = json.dumps(snapshot, ensure_ascii=False, indent=2) if fmt == "json" else snapshot
    filename = f"{FILE_PREFIX}-{west_africa_now().date().isoformat()}.{fmt}"
    return Response(
        body,
        mimetype=_MIMETYPES[fmt],
        headers={"Content-Disposition": f"attachment; filename={filename}"},
    )


@database_bp.post("/import")
def import_database():
    backup = _ctx().backup
    upload = request.files.get("file")
    if upload is not None:
        name = (upload.filename or "").lower()
        if not name.endswith((".json", ".sql")):
            raise UnsupportedFormat("unsupported file type (use .json or .sql)")
        counts = backup.import_database(upload.read())
    else:
        counts = backup.import_database(request.get_data())
    current_app.logger.info("Database import completed: %s", counts)
    return jsonify({"ok": True, "imported": counts})


@database_bp.get("/history")
def export_history():
    directory = current_app.config.get("BACKUP_DIRECTORY", "instance/backups")
    return jsonify(get_export_history(directory, limit=request.args.get("limit", 6, type=int)))
