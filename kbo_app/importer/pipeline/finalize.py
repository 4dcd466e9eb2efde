"""
Finalize a fully processed import job.

Resolves enterprise display names from the freshly imported legal names,
rolls the batch counters up onto the job, marks it completed and purges the
staged rows. A job that is already completed only has its staging purged
again, so re-running after a crash between those last two steps is safe.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Sequence

from sqlalchemy import func, select, update

from kbo_app.importer.errors import JobNotFoundError, PreconditionError
from kbo_app.importer.metrics import record_job_finalized
from kbo_app.importer.store import ImportStore
from kbo_app.models import (
    BatchOperation,
    BatchStatus,
    Denomination,
    Enterprise,
    ImportJob,
    ImportJobBatch,
    ImportJobStatus,
)

from .progress import count_batches
from .recovery import purge_staging

logger = logging.getLogger(__name__)

LEGAL_NAME_TYPE = "001"
# NL, FR, unknown, DE, EN
LANGUAGE_PRIORITY: tuple[str, ...] = ("2", "1", "0", "3", "4")
_LANGUAGE_COLUMNS = {"2": "primary_name_nl", "1": "primary_name_fr", "3": "primary_name_de"}
NAME_CHUNK_SIZE = 500


@dataclass(frozen=True)
class FinalizeResult:
    job_id: str
    success: bool
    names_resolved: int
    staging_cleaned: bool
    staged_rows_removed: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "success": self.success,
            "names_resolved": self.names_resolved,
            "staging_cleaned": self.staging_cleaned,
            "staged_rows_removed": self.staged_rows_removed,
        }


def _language_rank(language: str | None) -> int:
    try:
        return LANGUAGE_PRIORITY.index(language or "")
    except ValueError:
        return len(LANGUAGE_PRIORITY)


def _pick_names(denominations: Sequence[tuple[str, str]]) -> dict[str, Any]:
    """Choose the primary name and per-language names from ``(language, text)`` pairs."""

    # Within one language the greatest text wins.
    ordered = sorted(denominations, key=lambda item: item[1], reverse=True)
    ordered.sort(key=lambda item: _language_rank(item[0]))
    language, text = ordered[0]
    values: dict[str, Any] = {
        "primary_name": text,
        "primary_name_language": language,
        "primary_name_nl": None,
        "primary_name_fr": None,
        "primary_name_de": None,
    }
    for candidate_language, candidate_text in ordered:
        column = _LANGUAGE_COLUMNS.get(candidate_language)
        if column and values[column] is None:
            values[column] = candidate_text
    return values


def resolve_primary_names(store: ImportStore, extract_number: int) -> int:
    """
    Replace placeholder names of enterprises written by ``extract_number``.

    Only current versions whose ``primary_name`` still equals the enterprise
    number are touched; enterprises without a current legal name keep it.
    """

    candidates = store.query(
        select(Enterprise.enterprise_number, Enterprise.snapshot_date, Enterprise.extract_number).where(
            Enterprise.extract_number == extract_number,
            Enterprise.is_current.is_(True),
            Enterprise.primary_name == Enterprise.enterprise_number,
        )
    )
    resolved = 0
    for start in range(0, len(candidates), NAME_CHUNK_SIZE):
        chunk = candidates[start : start + NAME_CHUNK_SIZE]
        numbers = [row["enterprise_number"] for row in chunk]
        rows = store.query(
            select(Denomination.entity_number, Denomination.language, Denomination.denomination).where(
                Denomination.entity_number.in_(numbers),
                Denomination.entity_type == "enterprise",
                Denomination.denomination_type == LEGAL_NAME_TYPE,
                Denomination.is_current.is_(True),
            )
        )
        by_number: dict[str, list[tuple[str, str]]] = {}
        for row in rows:
            by_number.setdefault(row["entity_number"], []).append((row["language"], row["denomination"]))

        payload = []
        for candidate in chunk:
            names = by_number.get(candidate["enterprise_number"])
            if not names:
                continue
            values = _pick_names(names)
            values.update(
                {
                    "enterprise_number": candidate["enterprise_number"],
                    "snapshot_date": candidate["snapshot_date"],
                    "extract_number": candidate["extract_number"],
                }
            )
            payload.append(values)
        if payload:
            store.execute(update(Enterprise), payload)
            resolved += len(payload)
    return resolved


def _aggregate_counts(store: ImportStore, job_id: str) -> dict[BatchOperation, int]:
    rows = store.query(
        select(ImportJobBatch.operation, func.coalesce(func.sum(ImportJobBatch.records_processed), 0).label("records"))
        .where(ImportJobBatch.job_id == job_id)
        .group_by(ImportJobBatch.operation)
    )
    totals = {operation: 0 for operation in BatchOperation}
    for row in rows:
        totals[BatchOperation(row["operation"])] = int(row["records"])
    return totals


def _purge(store: ImportStore, job_id: str) -> int:
    removed = purge_staging(store, job_id)
    store.commit()
    return removed


def finalize_job(store: ImportStore, job_id: str) -> FinalizeResult:
    """
    Complete ``job_id`` once every batch has completed.

    Raises:
        JobNotFoundError: unknown job.
        PreconditionError: batches are outstanding (nothing is changed) or the
            job was abandoned.
    """

    job = store.query_one(select(ImportJob.status, ImportJob.extract_number).where(ImportJob.id == job_id))
    if job is None:
        raise JobNotFoundError(job_id)
    status = ImportJobStatus(job["status"])

    if status is ImportJobStatus.FAILED:
        raise PreconditionError(f"Import job {job_id} failed and cannot be finalized.")

    if status is ImportJobStatus.COMPLETED:
        removed = _purge(store, job_id)
        logger.info(
            "Import job %s already completed; re-purged %s staged rows",
            job_id,
            removed,
            extra={"importer_job_id": job_id},
        )
        return FinalizeResult(job_id, True, 0, True, removed)

    counts = count_batches(store, job_id)
    outstanding = sum(counts.values()) - counts[BatchStatus.COMPLETED]
    if outstanding:
        record_job_finalized("failure")
        raise PreconditionError(
            f"Import job {job_id} still has {outstanding} outstanding batch(es); process them before finalizing.",
            outstanding=outstanding,
        )

    names_resolved = resolve_primary_names(store, job["extract_number"])
    totals = _aggregate_counts(store, job_id)
    store.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id)
        .values(
            status=ImportJobStatus.COMPLETED,
            completed_at=datetime.now(timezone.utc),
            records_inserted=totals[BatchOperation.INSERT],
            records_deleted=totals[BatchOperation.DELETE],
            records_processed=sum(totals.values()),
            error_message=None,
        )
        .execution_options(synchronize_session=False)
    )
    store.commit()

    removed = _purge(store, job_id)
    record_job_finalized("success", names_resolved=names_resolved)
    logger.info(
        "Finalized import job %s: %s names resolved, %s staged rows removed",
        job_id,
        names_resolved,
        removed,
        extra={
            "importer_job_id": job_id,
            "importer_names_resolved": names_resolved,
            "importer_records_inserted": totals[BatchOperation.INSERT],
            "importer_records_deleted": totals[BatchOperation.DELETE],
        },
    )
    return FinalizeResult(job_id, True, names_resolved, True, removed)
