"""
Operator recovery actions for batches that did not complete.

Nothing in the importer retries on its own; these helpers put failed or
orphaned batches back in the queue, or give up on a job altogether.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete, func, select, update

from kbo_app.importer.errors import JobNotFoundError, PreconditionError
from kbo_app.importer.store import ImportStore
from kbo_app.models import STAGING_MODELS, BatchStatus, ImportJob, ImportJobBatch, ImportJobStatus

logger = logging.getLogger(__name__)


def _require_open_job(store: ImportStore, job_id: str) -> ImportJobStatus:
    status = store.scalar(select(ImportJob.status).where(ImportJob.id == job_id))
    if status is None:
        raise JobNotFoundError(job_id)
    status = ImportJobStatus(status)
    if status in (ImportJobStatus.COMPLETED, ImportJobStatus.FAILED):
        raise PreconditionError(f"Import job {job_id} is {status.value}; its batches can no longer change.")
    return status


def retry_failed_batches(store: ImportStore, job_id: str) -> int:
    """Reset ``failed`` batches of an open job to ``pending``; returns how many moved."""

    _require_open_job(store, job_id)
    result = store.execute(
        update(ImportJobBatch)
        .where(ImportJobBatch.job_id == job_id, ImportJobBatch.status == BatchStatus.FAILED)
        .values(status=BatchStatus.PENDING, started_at=None, completed_at=None)
        .execution_options(synchronize_session=False)
    )
    reset = result.rowcount
    if reset:
        store.execute(
            update(ImportJob)
            .where(ImportJob.id == job_id)
            .values(error_message=None)
            .execution_options(synchronize_session=False)
        )
    store.commit()
    logger.info(
        "Reset %s failed batches of job %s to pending",
        reset,
        job_id,
        extra={"importer_job_id": job_id, "importer_batches_reset": reset},
    )
    return reset


def recover_stale_batches(
    store: ImportStore,
    job_id: str,
    older_than: timedelta,
    *,
    now: datetime | None = None,
) -> int:
    """
    Revert ``processing`` batches claimed before ``now - older_than`` to ``pending``.

    Such batches belong to a caller that crashed after its claim committed;
    their registry work never committed, so running them again is safe.
    """

    _require_open_job(store, job_id)
    cutoff = (now or datetime.now(timezone.utc)) - older_than
    result = store.execute(
        update(ImportJobBatch)
        .where(
            ImportJobBatch.job_id == job_id,
            ImportJobBatch.status == BatchStatus.PROCESSING,
            ImportJobBatch.started_at < cutoff,
        )
        .values(status=BatchStatus.PENDING, started_at=None)
        .execution_options(synchronize_session=False)
    )
    recovered = result.rowcount
    store.commit()
    if recovered:
        logger.warning(
            "Recovered %s stale batches of job %s",
            recovered,
            job_id,
            extra={"importer_job_id": job_id, "importer_batches_recovered": recovered},
        )
    return recovered


def purge_staging(store: ImportStore, job_id: str) -> int:
    """Delete every staged row of ``job_id``; the caller commits."""

    removed = 0
    for model in STAGING_MODELS:
        result = store.execute(
            delete(model).where(model.job_id == job_id).execution_options(synchronize_session=False)
        )
        removed += result.rowcount
    return removed


def abandon_job(store: ImportStore, job_id: str, reason: str) -> int:
    """
    Mark an open job ``failed`` with ``reason`` and drop its staged rows.

    Only a job that has not touched the registry can be abandoned, so its
    extract can be prepared again from scratch.
    """

    _require_open_job(store, job_id)
    applied = store.scalar(
        select(func.count())
        .select_from(ImportJobBatch)
        .where(
            ImportJobBatch.job_id == job_id,
            ImportJobBatch.status.in_((BatchStatus.COMPLETED, BatchStatus.PROCESSING)),
        )
    )
    if applied:
        raise PreconditionError(
            f"Import job {job_id} has {applied} applied or in-flight batch(es); "
            "retry or recover its batches instead of abandoning it.",
            outstanding=applied,
        )
    message = (reason or "").strip() or "Abandoned by operator."
    store.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id)
        .values(status=ImportJobStatus.FAILED, error_message=message, completed_at=datetime.now(timezone.utc))
        .execution_options(synchronize_session=False)
    )
    removed = purge_staging(store, job_id)
    store.commit()
    logger.warning(
        "Abandoned import job %s: %s",
        job_id,
        message,
        extra={"importer_job_id": job_id, "importer_staged_rows_removed": removed},
    )
    return removed
