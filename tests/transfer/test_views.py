import io
import json
from pathlib import Path

from openpyxl import load_workbook

from registry_app.models import ExportJob, ImportJob, TransferJobStatus, db
from registry_app.transfer.direction import is_right_to_left
from registry_app.transfer.jobs import get_job
from registry_app.transfer.utils import resolve_upload_directory

HEADER = ["رقم الهوية", "الاسم الرباعي", "رقم الجوال"]


def _upload(path, name="المستفيدين.xlsx", **form):
    return {"file": (io.BytesIO(Path(path).read_bytes()), name), **form}


def _reload(model, job_id):
    db.session.expire_all()
    return get_job(model, job_id)


def test_health_endpoint_is_public(client):
    response = client.get("/admin/transfer/health")
    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "worker_enabled": False}


def test_admin_endpoints_require_token(client):
    response = client.get("/admin/export/fields")
    assert response.status_code == 401
    assert response.get_json()["success"] is False

    response = client.get("/admin/export/fields", headers={"Authorization": "Bearer wrong"})
    assert response.status_code == 401

    response = client.get("/admin/export/fields", headers={"X-Admin-Token": "test-admin-token"})
    assert response.status_code == 200


def test_unconfigured_token_is_service_unavailable(app, client, admin_headers):
    app.config["ADMIN_API_TOKEN"] = None
    response = client.get("/admin/export/fields", headers=admin_headers)
    assert response.status_code == 503


def test_export_fields(client, admin_headers):
    payload = client.get("/admin/export/fields", headers=admin_headers).get_json()

    assert payload["success"] is True
    assert payload["fields"][0] == {"key": "row_number", "label": "رقم", "order": 0}
    assert [field["key"] for field in payload["fields"]][:4] == ["row_number", "full_name", "national_id", "phone"]


def test_sync_export_streams_workbook(client, admin_headers, identity_factory):
    identity_factory("123456789", full_name="أحمد")

    response = client.get(
        "/admin/export/excel",
        query_string={"fields": "national_id,full_name", "direction": "ltr"},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.mimetype == "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
    assert "filename*=UTF-8''" in response.headers["Content-Disposition"]
    sheet = load_workbook(io.BytesIO(response.data)).active
    assert [[cell.value for cell in row] for row in sheet.iter_rows()] == [
        ["الاسم الرباعي", "رقم الهوية"],
        ["أحمد", "123456789"],
    ]
    response.close()


def test_async_export_then_download(client, admin_headers, identity_factory, tmp_path):
    identity_factory("123456789")

    response = client.post(
        "/admin/export/excel/async",
        json={"fields": ["national_id"], "direction": "rtl"},
        headers=admin_headers,
    )

    assert response.status_code == 202
    body = response.get_json()
    assert body["async"] is True
    assert body["status"] == "pending"
    job_id = body["job_id"]

    status = client.get(f"/admin/export/status/{job_id}", headers=admin_headers).get_json()
    assert status["status"] == "completed"
    assert status["download_ready"] is True
    assert status["result_counters"] == {"rows_written": 1}

    download = client.get(f"/admin/export/download/{job_id}", headers=admin_headers)
    assert download.status_code == 200
    target = tmp_path / "downloaded.xlsx"
    target.write_bytes(download.data)
    download.close()
    assert is_right_to_left(target)


def test_download_errors(client, admin_headers):
    assert client.get("/admin/export/download/unknown", headers=admin_headers).status_code == 404
    assert client.get("/admin/export/status/unknown", headers=admin_headers).status_code == 404

    job = ExportJob()
    db.session.add(job)
    db.session.commit()
    response = client.get(f"/admin/export/download/{job.job_id}", headers=admin_headers)
    assert response.status_code == 400
    assert response.get_json()["status"] == "pending"


def test_export_enqueue_failure_marks_job_failed(monkeypatch, client, admin_headers):
    def unavailable(job, **kwargs):
        raise RuntimeError("broker down")

    monkeypatch.setattr("registry_app.transfer.views.enqueue_export_job", unavailable)

    response = client.post("/admin/export/excel/async", json={}, headers=admin_headers)

    assert response.status_code == 503
    job = _reload(ExportJob, response.get_json()["job_id"])
    assert job.status is TransferJobStatus.FAILED
    assert job.error_message == "broker down"


def test_sync_import(client, admin_headers, make_workbook, fetch_identity, app):
    path = make_workbook([HEADER, ["123456789", "أحمد علي", "0591234567"]])

    response = client.post(
        "/admin/import/excel",
        data=_upload(path, fields=json.dumps(["phone"]), direction="ltr"),
        headers=admin_headers,
        content_type="multipart/form-data",
    )

    assert response.status_code == 200, response.get_json()
    body = response.get_json()
    assert body["success"] is True
    assert (body["created"], body["imported"], body["errors_count"]) == (1, 1, 0)
    assert body["direction"] == "ltr"
    assert fetch_identity("123456789").phone == "0591234567"
    assert list(resolve_upload_directory(app).iterdir()) == []


def test_import_schema_mismatch_is_unprocessable(client, admin_headers, make_workbook, app):
    path = make_workbook([["الاسم الرباعي", "رقم الجوال", "المنطقة"], ["أحمد", "", ""]])

    response = client.post(
        "/admin/import/excel", data=_upload(path), headers=admin_headers, content_type="multipart/form-data"
    )

    assert response.status_code == 422
    body = response.get_json()
    assert body["success"] is False
    assert body["missing"] == ["national_id"]
    assert body["headers"] == ["الاسم الرباعي", "رقم الجوال", "المنطقة"]
    assert list(resolve_upload_directory(app).iterdir()) == []


def test_import_rejects_bad_uploads(client, admin_headers):
    missing = client.post("/admin/import/excel", data={}, headers=admin_headers)
    assert missing.status_code == 400

    wrong_type = client.post(
        "/admin/import/excel",
        data={"file": (io.BytesIO(b"a,b"), "data.csv")},
        headers=admin_headers,
        content_type="multipart/form-data",
    )
    assert wrong_type.status_code == 400

    empty = client.post(
        "/admin/import/excel",
        data={"file": (io.BytesIO(b""), "empty.xlsx")},
        headers=admin_headers,
        content_type="multipart/form-data",
    )
    assert empty.status_code == 400
    assert empty.get_json()["error"] == "الملف فارغ."


def test_async_import_and_status(client, admin_headers, make_workbook):
    path = make_workbook([HEADER, ["123456789", "أحمد", ""], ["", "بلا هوية", ""]])

    response = client.post(
        "/admin/import/excel/async", data=_upload(path), headers=admin_headers, content_type="multipart/form-data"
    )

    assert response.status_code == 202
    job_id = response.get_json()["job_id"]
    status = client.get(f"/admin/import/status/{job_id}", headers=admin_headers).get_json()
    assert status["status"] == "completed"
    assert status["total_rows"] == 2
    assert status["progress_percentage"] == 100.0
    assert status["result_counters"] == {"imported": 1, "created": 1, "updated": 0, "errors_count": 1}
    assert status["errors"] == ["السطر 3: بيانات ناقصة (رقم الهوية)"]
    assert status["file_name"] == "المستفيدين.xlsx"


def test_failed_async_import_is_reported_on_the_job(client, admin_headers, make_workbook):
    path = make_workbook([["الاسم الرباعي", "رقم الجوال", "المنطقة"]])

    response = client.post(
        "/admin/import/excel/async", data=_upload(path), headers=admin_headers, content_type="multipart/form-data"
    )

    assert response.status_code == 202
    job = _reload(ImportJob, response.get_json()["job_id"])
    assert job.status is TransferJobStatus.FAILED
    assert "رقم الهوية" in job.error_message


def test_large_upload_is_routed_to_worker(app, client, admin_headers, make_workbook):
    app.config.update(TRANSFER_ASYNC_FILE_SIZE_MB=0, TRANSFER_ASYNC_ROW_THRESHOLD=0)
    path = make_workbook([HEADER, ["123456789", "أحمد", ""]])

    response = client.post(
        "/admin/import/excel", data=_upload(path), headers=admin_headers, content_type="multipart/form-data"
    )

    assert response.status_code == 202
    assert response.get_json()["async"] is True


def test_import_status_unknown_job(client, admin_headers):
    assert client.get("/admin/import/status/unknown", headers=admin_headers).status_code == 404


def test_worker_health(app, client, admin_headers):
    disabled = client.get("/admin/transfer/worker_health", headers=admin_headers).get_json()
    assert disabled["status"] == "disabled"

    app.extensions["transfer"]["worker_enabled"] = True
    response = client.get("/admin/transfer/worker_health", headers=admin_headers)
    assert response.status_code == 200
    assert response.get_json()["heartbeat"]["status"] == "ok"
