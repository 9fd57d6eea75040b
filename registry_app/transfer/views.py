"""
Admin JSON endpoints for spreadsheet imports and exports, plus worker health.
"""

from __future__ import annotations

from http import HTTPStatus
from pathlib import Path
from uuid import uuid4

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request, send_file

from registry_app.models import ExportJob, ImportJob, TransferJobStatus, db
from registry_app.utils.admin_token import admin_token_required

from .catalog import FIELD_CATALOG
from .celery_app import DEFAULT_QUEUE_NAME, HEALTHCHECK_TASK_NAME, get_celery_app
from .direction import normalize_direction
from .errors import PersistenceFailure, SchemaMismatch
from .exporter import ExportPipeline, export_file_name
from .importer import ImportPipeline
from .jobs import (
    MB,
    create_export_job,
    create_import_job,
    enqueue_export_job,
    enqueue_import_job,
    get_job,
    should_run_async,
)
from .progress import JobProgressTracker
from .utils import (
    allowed_file,
    cleanup_upload,
    export_artifact_path,
    parse_selected_fields,
    persist_upload,
    upload_size,
)

XLSX_MIMETYPE = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"

transfer_blueprint = Blueprint("transfer", __name__, url_prefix="/admin")


def _json_error(message: str, http_status: HTTPStatus, **extra):
    return jsonify({"success": False, "error": message, **extra}), http_status


@transfer_blueprint.get("/transfer/health")
def transfer_healthcheck():
    """
    Lightweight health endpoint proving the transfer blueprint mounted correctly.
    """
    state = current_app.extensions.get("transfer", {})
    return jsonify({"status": "ok", "worker_enabled": state.get("worker_enabled", False)}), 200


@transfer_blueprint.get("/transfer/worker_health")
@admin_token_required
def transfer_worker_health():
    """
    Validate worker availability via the heartbeat task.
    """
    state = current_app.extensions.get("transfer", {})
    timeout_seconds = float(request.args.get("timeout", 5))
    payload = {
        "worker_enabled": state.get("worker_enabled", False),
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not payload["worker_enabled"]:
        payload["status"] = "disabled"
        payload["message"] = "Worker flag disabled; start the worker or set TRANSFER_WORKER_ENABLED=true."
        return jsonify(payload), 200

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get(HEALTHCHECK_TASK_NAME) if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), 500

    result = task.apply_async()
    try:
        payload["status"] = "ok"
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
        return jsonify(payload), 200
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), 504


# --------------------------------------------------------------------- export


@transfer_blueprint.get("/export/fields")
@admin_token_required
def export_fields():
    fields = [
        {"key": definition.key, "label": definition.label, "order": definition.order}
        for definition in FIELD_CATALOG.ordered()
    ]
    return jsonify({"success": True, "fields": fields}), HTTPStatus.OK


def _export_params() -> dict:
    source = request.get_json(silent=True) if request.is_json else None
    source = source if isinstance(source, dict) else {}
    args = request.values
    raw_fields = source.get("fields") if "fields" in source else args.get("fields")
    return {
        "selected_fields": parse_selected_fields(raw_fields),
        "direction": normalize_direction(source.get("direction") or args.get("direction")),
        "search": source.get("search") or args.get("search"),
        "status": source.get("status") or args.get("status"),
    }


@transfer_blueprint.get("/export/excel")
@admin_token_required
def export_excel():
    """Synchronous export streamed back as the response body."""

    params = _export_params()
    file_name = export_file_name()
    destination = export_artifact_path(current_app, f"sync_{uuid4().hex}", file_name)
    try:
        ExportPipeline.from_config(current_app.config).run(
            destination,
            params["selected_fields"],
            direction=params["direction"],
            search=params["search"],
            status=params["status"],
        )
    except Exception as exc:
        db.session.rollback()
        cleanup_upload(destination)
        current_app.logger.exception("Synchronous export failed", extra={"transfer_error": str(exc)})
        return _json_error("حدث خطأ أثناء تصدير البيانات.", HTTPStatus.INTERNAL_SERVER_ERROR)

    return send_file(destination, mimetype=XLSX_MIMETYPE, as_attachment=True, download_name=file_name)


def _enqueue(job, enqueue, **kwargs):
    """
    Hand ``job`` to the worker. A job that ends up terminal during the call
    (eager execution) is reported as accepted; the status endpoint carries the
    outcome.
    """

    job_id = job.job_id
    model = type(job)
    try:
        enqueue(job, **kwargs)
    except Exception as exc:
        db.session.rollback()
        refreshed = get_job(model, job_id)
        if refreshed is not None and refreshed.status.is_terminal:
            return None
        if refreshed is not None:
            JobProgressTracker(refreshed).fail(exc)
        current_app.logger.exception("Failed to enqueue transfer job", extra={"transfer_job_id": job_id})
        return _json_error("تعذر جدولة المهمة. حاول مرة أخرى لاحقاً.", HTTPStatus.SERVICE_UNAVAILABLE, job_id=job_id)
    return None


def _accepted(job_id: str, message: str):
    return (
        jsonify({"success": True, "async": True, "job_id": job_id, "status": TransferJobStatus.PENDING.value, "message": message}),
        HTTPStatus.ACCEPTED,
    )


@transfer_blueprint.post("/export/excel/async")
@admin_token_required
def export_excel_async():
    params = _export_params()
    job = create_export_job(**params)
    job_id = job.job_id
    error_response = _enqueue(job, enqueue_export_job)
    if error_response:
        return error_response
    return _accepted(job_id, "تم بدء عملية التصدير.")


@transfer_blueprint.get("/export/status/<job_id>")
@admin_token_required
def export_status(job_id: str):
    job = get_job(ExportJob, job_id)
    if job is None:
        return _json_error("لم يتم العثور على مهمة التصدير.", HTTPStatus.NOT_FOUND)
    return jsonify({"success": True, **job.status_payload()}), HTTPStatus.OK


@transfer_blueprint.get("/export/download/<job_id>")
@admin_token_required
def export_download(job_id: str):
    job = get_job(ExportJob, job_id)
    if job is None:
        return _json_error("لم يتم العثور على مهمة التصدير.", HTTPStatus.NOT_FOUND)
    if job.status != TransferJobStatus.COMPLETED:
        return _json_error("الملف غير جاهز بعد.", HTTPStatus.BAD_REQUEST, status=job.status.value)
    path = Path(job.file_path or "")
    if not job.file_path or not path.is_file():
        return _json_error("الملف غير موجود.", HTTPStatus.NOT_FOUND)
    return send_file(path, mimetype=XLSX_MIMETYPE, as_attachment=True, download_name=job.file_name or path.name)


# --------------------------------------------------------------------- import


def _validated_upload():
    """Return ``(file_storage, size, None)`` or ``(None, 0, error_response)``."""

    file_storage = request.files.get("file")
    if file_storage is None or not file_storage.filename:
        return None, 0, _json_error("يرجى اختيار ملف للاستيراد.", HTTPStatus.BAD_REQUEST)
    if not allowed_file(file_storage.filename):
        return None, 0, _json_error("يجب أن يكون الملف بصيغة xlsx.", HTTPStatus.BAD_REQUEST)

    size = upload_size(file_storage)
    max_mb = current_app.config.get("TRANSFER_MAX_UPLOAD_MB", 50)
    if size == 0:
        return None, 0, _json_error("الملف فارغ.", HTTPStatus.BAD_REQUEST)
    if size > max_mb * MB:
        return None, 0, _json_error(f"حجم الملف يتجاوز الحد المسموح ({max_mb} ميجابايت).", HTTPStatus.BAD_REQUEST)
    return file_storage, size, None


def _queue_import(file_storage, path: Path, selected_fields: list[str], direction: str):
    job = create_import_job(
        path,
        file_name=Path(file_storage.filename).name,
        selected_fields=selected_fields,
        direction=direction,
    )
    job_id = job.job_id
    error_response = _enqueue(job, enqueue_import_job)
    if error_response:
        cleanup_upload(path)
        return error_response
    return _accepted(job_id, "تم رفع الملف وبدء عملية الاستيراد.")


@transfer_blueprint.post("/import/excel")
@admin_token_required
def import_excel():
    """
    Import inline, or hand large uploads to the worker (202) when they exceed
    both async thresholds.
    """

    file_storage, size, error_response = _validated_upload()
    if error_response:
        return error_response

    selected_fields = parse_selected_fields(request.form.get("fields"))
    direction = normalize_direction(request.form.get("direction"))
    path = persist_upload(file_storage, current_app)

    if should_run_async(current_app.config, size):
        current_app.logger.info(
            "Large upload routed to the transfer worker",
            extra={"transfer_upload_bytes": size},
        )
        return _queue_import(file_storage, path, selected_fields, direction)

    try:
        result = ImportPipeline.from_config(current_app.config).run(path, selected_fields)
    except SchemaMismatch as exc:
        return _json_error(
            str(exc),
            HTTPStatus.UNPROCESSABLE_ENTITY,
            missing=list(exc.missing),
            headers=list(exc.headers),
        )
    except PersistenceFailure as exc:
        current_app.logger.exception("Synchronous import failed", extra={"transfer_error": str(exc)})
        return _json_error("حدث خطأ أثناء حفظ البيانات.", HTTPStatus.INTERNAL_SERVER_ERROR)
    finally:
        cleanup_upload(path)

    payload = result.as_dict()
    payload["direction"] = direction
    return jsonify({"success": True, **payload}), HTTPStatus.OK


@transfer_blueprint.post("/import/excel/async")
@admin_token_required
def import_excel_async():
    file_storage, _size, error_response = _validated_upload()
    if error_response:
        return error_response

    selected_fields = parse_selected_fields(request.form.get("fields"))
    direction = normalize_direction(request.form.get("direction"))
    path = persist_upload(file_storage, current_app)
    return _queue_import(file_storage, path, selected_fields, direction)


@transfer_blueprint.get("/import/status/<job_id>")
@admin_token_required
def import_status(job_id: str):
    job = get_job(ImportJob, job_id)
    if job is None:
        return _json_error("لم يتم العثور على مهمة الاستيراد.", HTTPStatus.NOT_FOUND)
    return jsonify({"success": True, **job.status_payload()}), HTTPStatus.OK
