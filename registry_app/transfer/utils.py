"""
Transfer utilities for uploaded spreadsheets, generated exports and request
parameters.
"""

from __future__ import annotations

import json
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Iterator
from uuid import uuid4

from flask import current_app
from werkzeug.datastructures import FileStorage

DEFAULT_UPLOAD_SUBDIR = "transfer_uploads"
DEFAULT_ARTIFACT_SUBDIR = "transfer_artifacts"
XLSX_EXTENSIONS: tuple[str, ...] = ("xlsx",)


def _normalize_directory(
    configured_path: str | None,
    instance_path: str,
    *,
    default_subdir: str,
) -> Path:
    if not configured_path:
        return Path(instance_path) / default_subdir

    candidate = Path(configured_path)
    if candidate.is_absolute():
        return candidate

    return Path(instance_path) / candidate


def resolve_upload_directory(app) -> Path:
    """
    Determine and create (if necessary) the spreadsheet upload directory.
    """

    upload_dir = _normalize_directory(
        app.config.get("TRANSFER_UPLOAD_DIR"),
        app.instance_path,
        default_subdir=DEFAULT_UPLOAD_SUBDIR,
    )
    upload_dir.mkdir(parents=True, exist_ok=True)
    return upload_dir


def resolve_artifact_directory(app) -> Path:
    """
    Determine and create (if necessary) the directory holding generated exports.
    """

    artifact_dir = _normalize_directory(
        app.config.get("TRANSFER_ARTIFACT_DIR"),
        app.instance_path,
        default_subdir=DEFAULT_ARTIFACT_SUBDIR,
    )
    artifact_dir.mkdir(parents=True, exist_ok=True)
    return artifact_dir


def allowed_file(filename: str, allowed_extensions: Iterable[str] = XLSX_EXTENSIONS) -> bool:
    """
    Validate the uploaded filename extension against the allowed set.
    """

    if not filename or "." not in filename:
        return False
    extension = filename.rsplit(".", 1)[1].lower()
    return extension in {ext.lower() for ext in allowed_extensions}


def upload_size(file_storage: FileStorage) -> int:
    """Size in bytes of an uploaded stream, leaving the cursor at the start."""

    stream = file_storage.stream
    stream.seek(0, 2)
    size = stream.tell()
    stream.seek(0)
    return size


def persist_upload(file_storage: FileStorage, app) -> Path:
    """
    Persist the uploaded file under ``resolve_upload_directory(app)`` with a
    UUID-based name and return the path.
    """

    upload_dir = resolve_upload_directory(app)
    target_path = upload_dir / f"{uuid4().hex}.xlsx"
    file_storage.save(target_path)
    current_app.logger.debug("Transfer upload persisted to %s", target_path)
    return target_path


def copy_to_upload(source: Path, app) -> Path:
    """Copy a local spreadsheet into the upload directory (CLI imports)."""

    target_path = resolve_upload_directory(app) / f"{uuid4().hex}.xlsx"
    shutil.copyfile(source, target_path)
    return target_path


def export_artifact_path(app, job_id: str, file_name: str) -> Path:
    safe_name = Path(file_name).name or "export.xlsx"
    return resolve_artifact_directory(app) / f"export_{job_id}_{safe_name}"


def cleanup_upload(path: Path) -> None:
    """
    Remove a stored file, logging but ignoring filesystem errors.
    """

    try:
        Path(path).unlink(missing_ok=True)
    except OSError as exc:
        current_app.logger.warning("Failed to remove transfer file %s: %s", path, exc)


def iter_stale_files(directory: Path, cutoff: datetime) -> Iterator[Path]:
    """Files directly under ``directory`` last modified before ``cutoff``."""

    if not directory.exists():
        return
    for candidate in directory.iterdir():
        if not candidate.is_file():
            continue
        modified = datetime.fromtimestamp(candidate.stat().st_mtime, tz=timezone.utc)
        if modified < cutoff:
            yield candidate


def parse_selected_fields(raw: object) -> list[str]:
    """
    Accept a JSON list, a comma-separated string or a list of keys; anything
    else (including malformed JSON) yields an empty selection.
    """

    if raw is None:
        return []
    if isinstance(raw, (list, tuple)):
        return [str(item).strip() for item in raw if str(item).strip()]
    text = str(raw).strip().strip("\"'")
    if not text:
        return []
    if text.startswith("["):
        try:
            decoded = json.loads(text)
        except json.JSONDecodeError:
            return []
        return parse_selected_fields(decoded) if isinstance(decoded, list) else []
    return [part.strip() for part in text.split(",") if part.strip()]
