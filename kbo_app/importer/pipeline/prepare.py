"""
Prepare step: validate a delta package and lay out its resumable work.

One call creates the import job, stages every declared table and persists
the batch plan inside a single transaction. Any failure rolls the whole
call back so a rejected package leaves no trace.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from typing import Any, Iterable
from uuid import uuid4

from sqlalchemy import func, select

from kbo_app.importer.adapters import KboPackage, PackageError
from kbo_app.importer.contracts import get_table_contracts
from kbo_app.importer.errors import ValidationError
from kbo_app.importer.store import ImportStore
from kbo_app.models import BatchOperation, ExtractType, ImportJob, ImportJobStatus
from kbo_app.utils.importer import DEFAULT_WORKER_TYPES

from .metadata import ExtractMetadata, parse_manifest, read_manifest_csv
from .planner import BatchSizingPolicy, create_batch_records
from .staging import TableStagingSummary, stage_table

logger = logging.getLogger(__name__)


@dataclass
class PrepareResult:
    job_id: str
    extract_number: int
    snapshot_date: date
    total_batches: int
    batches_by_table: dict[str, dict[str, int]] = field(default_factory=dict)
    skipped_tables: tuple[str, ...] = ()

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "extract_number": self.extract_number,
            "snapshot_date": self.snapshot_date.isoformat(),
            "total_batches": self.total_batches,
            "batches_by_table": {table: dict(counts) for table, counts in self.batches_by_table.items()},
            "skipped_tables": list(self.skipped_tables),
        }


def _read_metadata(package: KboPackage, expected_type: ExtractType | str | None) -> ExtractMetadata:
    try:
        text = package.read_manifest()
    except PackageError as exc:
        raise ValidationError(str(exc)) from exc
    return parse_manifest(read_manifest_csv(text), expected_type=expected_type)


def _check_worker_type(worker_type: str, allowed: Iterable[str]) -> str:
    normalized = (worker_type or "").strip().lower()
    allowed_types = tuple(allowed)
    if normalized not in allowed_types:
        raise ValidationError(
            f"Unsupported worker type '{worker_type}'; expected one of: {', '.join(allowed_types)}."
        )
    return normalized


def _check_extract_order(store: ImportStore, metadata: ExtractMetadata) -> None:
    existing = store.scalar(
        select(ImportJob.id).where(
            ImportJob.extract_number == metadata.extract_number,
            ImportJob.status != ImportJobStatus.FAILED,
        )
    )
    if existing is not None:
        raise ValidationError(
            f"Extract {metadata.extract_number} was already imported (job {existing})."
        )
    if metadata.extract_type is not ExtractType.UPDATE:
        return
    latest = store.scalar(
        select(func.max(ImportJob.extract_number)).where(ImportJob.status == ImportJobStatus.COMPLETED)
    )
    if latest is not None and metadata.extract_number <= latest:
        raise ValidationError(
            f"Extract {metadata.extract_number} is not newer than the latest completed extract {latest}."
        )


def prepare_job(
    store: ImportStore,
    package: KboPackage,
    *,
    worker_type: str,
    policy: BatchSizingPolicy,
    worker_types: Iterable[str] = DEFAULT_WORKER_TYPES,
    expected_type: ExtractType | str | None = ExtractType.UPDATE,
) -> PrepareResult:
    """
    Create the job, its staged rows and its pending batches for ``package``.

    Raises:
        ValidationError: for an invalid manifest, worker type or extract order.
        StagingError: when a declared table cannot be staged.
    """

    worker = _check_worker_type(worker_type, worker_types)
    metadata = _read_metadata(package, expected_type)
    _check_extract_order(store, metadata)

    job_id = str(uuid4())
    try:
        job = ImportJob(
            id=job_id,
            extract_number=metadata.extract_number,
            extract_type=metadata.extract_type,
            snapshot_date=metadata.snapshot_date,
            extract_timestamp=metadata.extract_timestamp,
            format_version=metadata.format_version,
            status=ImportJobStatus.PENDING,
            worker_type=worker,
        )
        store.add(job)
        store.flush()

        contracts = get_table_contracts()
        summaries: list[TableStagingSummary] = []
        skipped: list[str] = []
        for package_table in package.tables():
            contract = contracts.get(package_table)
            if contract is None:
                skipped.append(package_table)
                logger.warning(
                    "Skipping unknown package table %s",
                    package_table,
                    extra={"importer_job_id": job_id, "importer_table": package_table},
                )
                continue
            summaries.append(stage_table(store, job_id, contract, package, policy))

        plans = [plan for summary in summaries for plan in summary.plans]
        total_batches = create_batch_records(store, job_id, plans)

        batches_by_table: dict[str, dict[str, int]] = {}
        for summary in summaries:
            batches_by_table[summary.table_name] = {
                BatchOperation.DELETE.value: summary.delete.batches,
                BatchOperation.INSERT.value: summary.insert.batches,
            }

        job.counts_json = {
            "metadata": metadata.as_dict(),
            "package": package.name,
            "tables": {summary.table_name: summary.as_dict() for summary in summaries},
            "skipped_tables": skipped,
        }
        store.commit()
    except Exception:
        store.rollback()
        raise

    logger.info(
        "Prepared import job %s for extract %s with %s batches",
        job_id,
        metadata.extract_number,
        total_batches,
        extra={
            "importer_job_id": job_id,
            "importer_extract_number": metadata.extract_number,
            "importer_total_batches": total_batches,
            "importer_worker_type": worker,
        },
    )
    return PrepareResult(
        job_id=job_id,
        extract_number=metadata.extract_number,
        snapshot_date=metadata.snapshot_date,
        total_batches=total_batches,
        batches_by_table=batches_by_table,
        skipped_tables=tuple(skipped),
    )
