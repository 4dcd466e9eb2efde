from __future__ import annotations

import io

import pytest

from kbo_app.importer.pipeline import service
from package_helpers import denomination_row, enterprise_row


@pytest.fixture
def package_bytes(package_builder):
    def _bytes(extract_number=140, **kwargs):
        files = kwargs.pop(
            "files",
            {
                "enterprise_insert": [enterprise_row("0200.065.765")],
                "denomination_insert": [denomination_row("0200.065.765", "Acme")],
            },
        )
        return package_builder(extract_number, files, **kwargs).read_bytes()

    return _bytes


def _upload(client, payload: bytes, filename="KboOpenData_0140_Update.zip", query=""):
    return client.post(
        f"/importer/jobs/prepare{query}",
        data={"file": (io.BytesIO(payload), filename)},
        content_type="multipart/form-data",
    )


def test_importer_health(client):
    response = client.get("/importer/health")

    assert response.status_code == 200
    assert response.get_json() == {"status": "ok", "enabled": True, "worker_enabled": False}


def test_worker_health_reports_disabled_worker(client):
    response = client.get("/importer/worker_health")

    assert response.status_code == 200
    assert response.get_json()["status"] == "disabled"


def test_prepare_upload_creates_job(client, package_bytes, app, tmp_path):
    response = _upload(client, package_bytes(), query="?workerType=web_manual")

    assert response.status_code == 201
    payload = response.get_json()
    assert payload["extract_number"] == 140
    assert payload["total_batches"] == 2
    assert payload["batches_by_table"]["enterprises"] == {"delete": 0, "insert": 1}
    # The stored upload is removed once staging finished.
    assert list((tmp_path / "uploads").iterdir()) == []


def test_prepare_upload_validation(client, package_bytes):
    missing = client.post("/importer/jobs/prepare", data={}, content_type="multipart/form-data")
    assert missing.status_code == 400
    assert "No package uploaded" in missing.get_json()["error"]

    wrong_extension = _upload(client, b"Variable,Value\n", filename="meta.csv")
    assert wrong_extension.status_code == 400
    assert wrong_extension.get_json()["error"] == "Only .zip delta packages are accepted."

    full_package = _upload(client, package_bytes(extract_type="full"))
    assert full_package.status_code == 400
    assert "'update' package was expected" in full_package.get_json()["error"]


def test_prepare_upload_rejects_oversized_package(client, package_bytes, app, monkeypatch):
    monkeypatch.setitem(app.config, "IMPORTER_MAX_UPLOAD_MB", 0)

    response = _upload(client, package_bytes())

    assert response.status_code == 413
    assert "upload limit" in response.get_json()["error"]


def test_http_flow_processes_and_finalizes(client, package_bytes):
    job_id = _upload(client, package_bytes()).get_json()["job_id"]

    early = client.post(f"/importer/jobs/{job_id}/finalize")
    assert early.status_code == 409
    assert "outstanding" in early.get_json()["error"]

    first = client.post(f"/importer/jobs/{job_id}/process-batch")
    assert first.status_code == 200
    assert first.get_json()["table_name"] == "denominations"
    assert first.get_json()["next_batch"] == {"table_name": "enterprises", "batch_number": 1, "operation": "insert"}

    second = client.post(f"/importer/jobs/{job_id}/process-batch?table=enterprises&batch=1&operation=insert")
    assert second.status_code == 200
    assert second.get_json()["progress"]["percentage"] == 100

    drained = client.post(f"/importer/jobs/{job_id}/process-batch")
    assert drained.status_code == 409

    progress = client.get(f"/importer/jobs/{job_id}/progress")
    assert progress.status_code == 200
    assert progress.get_json()["overall_progress"]["completed_batches"] == 2

    finalized = client.post(f"/importer/jobs/{job_id}/finalize")
    assert finalized.status_code == 200
    assert finalized.get_json()["names_resolved"] == 1


def test_process_batch_rejects_bad_batch_number(client, package_bytes):
    job_id = _upload(client, package_bytes()).get_json()["job_id"]

    response = client.post(f"/importer/jobs/{job_id}/process-batch?table=enterprises&batch=first")

    assert response.status_code == 400


def test_unknown_job_returns_404(client):
    response = client.get("/importer/jobs/unknown/progress")

    assert response.status_code == 404
    assert response.get_json() == {"error": "Import job unknown not found."}


def test_jobs_listing_filters(client, package_builder):
    first = service.prepare_import(package_builder(140, {"enterprise_insert": [enterprise_row("0200.065.765")]}))
    service.abandon_job(first.job_id, "superseded")
    service.prepare_import(package_builder(141, {"enterprise_insert": [enterprise_row("0200.065.765")]}))

    response = client.get("/importer/jobs?status=pending&per_page=10")

    assert response.status_code == 200
    payload = response.get_json()
    assert [job["extract_number"] for job in payload["jobs"]] == [141]
    assert payload["filters"] == {"page": 1, "page_size": 10, "sort": "-extract_number", "statuses": ["pending"]}

    invalid = client.get("/importer/jobs?sort=colour")
    assert invalid.status_code == 400


def test_disabled_importer_hides_operations(client, app, monkeypatch):
    monkeypatch.setitem(app.config, "IMPORTER_ENABLED", False)

    response = client.get("/importer/jobs")

    assert response.status_code == 404
    assert response.get_json() == {"error": "Importer is disabled."}
