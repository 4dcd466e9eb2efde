"""
Importer blueprint: thin JSON endpoints over the importer operations.

Every endpoint performs one discrete operation so a browser or an external
scheduler can drive an import one batch per request.
"""

from __future__ import annotations

import time
from http import HTTPStatus

from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask import Blueprint, current_app, jsonify, request

from kbo_app.importer.errors import (
    BatchConflictError,
    BatchExecutionError,
    ImporterError,
    JobNotFoundError,
    PreconditionError,
    StagingError,
    ValidationError,
    format_user_error,
)
from kbo_app.importer.pipeline import service
from kbo_app.importer.pipeline.job_service import ImportJobService, JobFilters
from kbo_app.utils.importer import is_importer_enabled

from .celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from .utils import allowed_file, cleanup_upload, max_upload_bytes, persist_upload

importer_blueprint = Blueprint("importer", __name__, url_prefix="/importer")

_ERROR_STATUS: tuple[tuple[type[ImporterError], HTTPStatus], ...] = (
    (ValidationError, HTTPStatus.BAD_REQUEST),
    (StagingError, HTTPStatus.BAD_REQUEST),
    (JobNotFoundError, HTTPStatus.NOT_FOUND),
    (PreconditionError, HTTPStatus.CONFLICT),
    (BatchConflictError, HTTPStatus.CONFLICT),
    (BatchExecutionError, HTTPStatus.INTERNAL_SERVER_ERROR),
)


def _json_error(message: str, status: HTTPStatus):
    return jsonify({"error": message}), status


def _importer_error_response(exc: ImporterError):
    for error_type, status in _ERROR_STATUS:
        if isinstance(exc, error_type):
            return _json_error(format_user_error(exc), status)
    return _json_error(format_user_error(exc), HTTPStatus.INTERNAL_SERVER_ERROR)


def _ensure_importer_enabled_api():
    if not is_importer_enabled(current_app):
        return _json_error("Importer is disabled.", HTTPStatus.NOT_FOUND)
    return None


def _split_csv(value: str | None):
    if value in (None, ""):
        return ()
    return tuple(token.strip() for token in value.split(",") if token.strip())


@importer_blueprint.get("/health")
def importer_healthcheck():
    """
    Lightweight health endpoint proving the importer blueprint mounted correctly.
    """
    importer_state = current_app.extensions.get("importer", {})
    return (
        jsonify(
            {
                "status": "ok",
                "enabled": importer_state.get("enabled", False),
                "worker_enabled": importer_state.get("worker_enabled", False),
            }
        ),
        HTTPStatus.OK,
    )


@importer_blueprint.get("/worker_health")
def importer_worker_health():
    """
    Validate importer worker availability via the heartbeat task.
    """
    importer_state = current_app.extensions.get("importer", {})
    timeout_seconds = float(request.args.get("timeout", 5))
    payload = {
        "importer_enabled": importer_state.get("enabled", False),
        "worker_enabled": importer_state.get("worker_enabled", False),
        "queue": DEFAULT_QUEUE_NAME,
        "timeout_seconds": timeout_seconds,
    }

    if not payload["importer_enabled"] or not payload["worker_enabled"]:
        payload["status"] = "disabled"
        return jsonify(payload), HTTPStatus.OK

    celery_app = get_celery_app(current_app)
    task = celery_app.tasks.get("importer.healthcheck") if celery_app is not None else None
    if task is None:
        payload["status"] = "error"
        payload["error"] = "heartbeat_task_missing"
        return jsonify(payload), HTTPStatus.INTERNAL_SERVER_ERROR

    result = task.apply_async()
    try:
        payload["heartbeat"] = result.get(timeout=timeout_seconds)
    except CeleryTimeoutError:
        payload["status"] = "timeout"
        return jsonify(payload), HTTPStatus.GATEWAY_TIMEOUT
    payload["status"] = "ok"
    return jsonify(payload), HTTPStatus.OK


@importer_blueprint.post("/jobs/prepare")
def importer_prepare_job():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    upload = request.files.get("file")
    if upload is None or not upload.filename:
        return _json_error("No package uploaded; send a ZIP file in the 'file' field.", HTTPStatus.BAD_REQUEST)
    if not allowed_file(upload.filename):
        return _json_error("Only .zip delta packages are accepted.", HTTPStatus.BAD_REQUEST)

    stored_path = persist_upload(upload, current_app)
    try:
        limit = max_upload_bytes(current_app)
        if stored_path.stat().st_size > limit:
            return _json_error(
                f"Package exceeds the {limit // (1024 * 1024)} MB upload limit.",
                HTTPStatus.REQUEST_ENTITY_TOO_LARGE,
            )
        result = service.prepare_import(stored_path, request.args.get("workerType"))
    except ImporterError as exc:
        return _importer_error_response(exc)
    finally:
        cleanup_upload(stored_path)

    current_app.logger.info(
        "Import job %s prepared via HTTP",
        result.job_id,
        extra={"importer_job_id": result.job_id, "importer_remote_addr": request.remote_addr},
    )
    return jsonify(result.as_dict()), HTTPStatus.CREATED


@importer_blueprint.post("/jobs/<job_id>/process-batch")
def importer_process_batch(job_id: str):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    raw_batch = request.args.get("batch")
    batch_number: int | None = None
    if raw_batch not in (None, ""):
        if not raw_batch.isdigit():
            return _json_error("Query parameter 'batch' must be a positive integer.", HTTPStatus.BAD_REQUEST)
        batch_number = int(raw_batch)

    try:
        result = service.process_batch(
            job_id,
            table=request.args.get("table") or None,
            batch_number=batch_number,
            operation=request.args.get("operation") or None,
        )
    except ImporterError as exc:
        return _importer_error_response(exc)
    return jsonify(result.as_dict()), HTTPStatus.OK


@importer_blueprint.get("/jobs/<job_id>/progress")
def importer_job_progress(job_id: str):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        progress = service.get_import_progress(job_id)
    except ImporterError as exc:
        return _importer_error_response(exc)
    return jsonify(progress.as_dict()), HTTPStatus.OK


@importer_blueprint.post("/jobs/<job_id>/finalize")
def importer_finalize_job(job_id: str):
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    try:
        result = service.finalize_import(job_id)
    except ImporterError as exc:
        return _importer_error_response(exc)
    return jsonify(result.as_dict()), HTTPStatus.OK


@importer_blueprint.get("/jobs")
def importer_jobs_list():
    enabled_response = _ensure_importer_enabled_api()
    if enabled_response:
        return enabled_response

    raw = request.args
    try:
        filters = JobFilters.coerce(
            page=raw.get("page"),
            page_size=raw.get("per_page") or raw.get("page_size"),
            sort=raw.get("sort"),
            statuses=_split_csv(raw.get("status")),
        )
    except ValueError as exc:
        return _json_error(str(exc), HTTPStatus.BAD_REQUEST)

    start_time = time.perf_counter()
    result = ImportJobService().list_jobs(filters)
    duration = time.perf_counter() - start_time

    payload = result.as_dict()
    payload["filters"] = {
        "page": filters.page,
        "page_size": filters.page_size,
        "sort": filters.sort,
        "statuses": [status.value for status in filters.statuses],
    }
    current_app.logger.info(
        "Importer jobs list retrieved",
        extra={
            "importer_job_count": len(result.items),
            "importer_total_jobs": result.total,
            "importer_response_time_ms": round(duration * 1000, 2),
        },
    )
    return jsonify(payload), HTTPStatus.OK
