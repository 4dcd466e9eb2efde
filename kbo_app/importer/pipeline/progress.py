"""Read-only progress aggregation over a job's batch rows."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import func, select

from kbo_app.importer.errors import JobNotFoundError
from kbo_app.importer.store import ImportStore
from kbo_app.models import BatchOperation, BatchStatus, ImportJob, ImportJobBatch, ImportJobStatus

# Canonical processing order; deletes of a batch number run before its inserts.
CANONICAL_ORDER = (ImportJobBatch.table_name, ImportJobBatch.batch_number, ImportJobBatch.operation)


@dataclass(frozen=True)
class BatchRef:
    """Identity of one batch within a job."""

    table_name: str
    batch_number: int
    operation: BatchOperation

    def as_dict(self) -> dict[str, Any]:
        return {
            "table_name": self.table_name,
            "batch_number": self.batch_number,
            "operation": self.operation.value,
        }

    def __str__(self) -> str:
        return f"{self.table_name}#{self.batch_number} ({self.operation.value})"


@dataclass(frozen=True)
class TableProgress:
    completed: int
    total: int
    failed: int = 0

    @property
    def status(self) -> str:
        if self.total and self.completed == self.total:
            return "completed"
        if self.completed:
            return "processing"
        return "pending"

    def as_dict(self) -> dict[str, Any]:
        return {"completed": self.completed, "total": self.total, "failed": self.failed, "status": self.status}


@dataclass
class ImportProgress:
    job_id: str
    status: ImportJobStatus
    completed_batches: int
    total_batches: int
    failed_batches: int
    tables: dict[str, TableProgress] = field(default_factory=dict)
    current_batch: BatchRef | None = None
    next_batch: BatchRef | None = None

    @property
    def percentage(self) -> int:
        return compute_percentage(self.completed_batches, self.total_batches)

    @property
    def is_complete(self) -> bool:
        return self.total_batches == self.completed_batches

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "status": self.status.value,
            "overall_progress": {
                "completed_batches": self.completed_batches,
                "total_batches": self.total_batches,
                "failed_batches": self.failed_batches,
                "percentage": self.percentage,
            },
            "tables": {name: table.as_dict() for name, table in self.tables.items()},
            "current_batch": self.current_batch.as_dict() if self.current_batch else None,
            "next_batch": self.next_batch.as_dict() if self.next_batch else None,
        }


def compute_percentage(completed: int, total: int) -> int:
    """Whole-number percentage rounded half up; 0 when there is nothing to do."""

    if total <= 0:
        return 0
    return (200 * completed + total) // (2 * total)


def first_batch_with_status(store: ImportStore, job_id: str, status: BatchStatus) -> BatchRef | None:
    row = store.query_one(
        select(ImportJobBatch.table_name, ImportJobBatch.batch_number, ImportJobBatch.operation)
        .where(ImportJobBatch.job_id == job_id, ImportJobBatch.status == status)
        .order_by(*CANONICAL_ORDER)
        .limit(1)
    )
    if row is None:
        return None
    return BatchRef(row["table_name"], row["batch_number"], BatchOperation(row["operation"]))


def next_pending_batch(store: ImportStore, job_id: str) -> BatchRef | None:
    return first_batch_with_status(store, job_id, BatchStatus.PENDING)


def count_batches(store: ImportStore, job_id: str) -> dict[BatchStatus, int]:
    rows = store.query(
        select(ImportJobBatch.status, func.count().label("batches"))
        .where(ImportJobBatch.job_id == job_id)
        .group_by(ImportJobBatch.status)
    )
    counts = {status: 0 for status in BatchStatus}
    for row in rows:
        counts[BatchStatus(row["status"])] = int(row["batches"])
    return counts


def get_progress(store: ImportStore, job_id: str) -> ImportProgress:
    """Aggregate batch states of ``job_id`` per table and overall."""

    status = store.scalar(select(ImportJob.status).where(ImportJob.id == job_id))
    if status is None:
        raise JobNotFoundError(job_id)

    rows = store.query(
        select(ImportJobBatch.table_name, ImportJobBatch.status, func.count().label("batches"))
        .where(ImportJobBatch.job_id == job_id)
        .group_by(ImportJobBatch.table_name, ImportJobBatch.status)
        .order_by(ImportJobBatch.table_name)
    )
    per_table: dict[str, dict[BatchStatus, int]] = {}
    for row in rows:
        per_table.setdefault(row["table_name"], {})[BatchStatus(row["status"])] = int(row["batches"])

    tables = {
        name: TableProgress(
            completed=counts.get(BatchStatus.COMPLETED, 0),
            total=sum(counts.values()),
            failed=counts.get(BatchStatus.FAILED, 0),
        )
        for name, counts in per_table.items()
    }
    return ImportProgress(
        job_id=job_id,
        status=ImportJobStatus(status),
        completed_batches=sum(table.completed for table in tables.values()),
        total_batches=sum(table.total for table in tables.values()),
        failed_batches=sum(table.failed for table in tables.values()),
        tables=tables,
        current_batch=first_batch_with_status(store, job_id, BatchStatus.PROCESSING),
        next_batch=next_pending_batch(store, job_id),
    )
