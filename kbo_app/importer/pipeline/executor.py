"""
Batch executor: apply one staged micro-batch to the temporal registry.

A batch is claimed with a single conditional UPDATE, so two callers racing
for the same batch cannot both win. The claim is committed on its own; the
registry mutation, the ``processed`` flags and the completion mark then
commit together. A failure rolls that second transaction back and leaves
the batch ``failed`` with its error message, ready for an explicit retry.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterator, Mapping, Sequence

from sqlalchemy import insert, select, update
from sqlalchemy.engine import RowMapping

from kbo_app.importer.contracts import TableContract, get_contract_for_store_table
from kbo_app.importer.errors import (
    BatchConflictError,
    BatchExecutionError,
    JobNotFoundError,
    PreconditionError,
    ValidationError,
)
from kbo_app.importer.metrics import record_batch
from kbo_app.importer.store import ImportStore
from kbo_app.models import (
    BatchOperation,
    BatchStatus,
    Enterprise,
    ImportJob,
    ImportJobBatch,
    ImportJobStatus,
)

from .progress import CANONICAL_ORDER, BatchRef, compute_percentage, count_batches, next_pending_batch

logger = logging.getLogger(__name__)

KEY_CHUNK_SIZE = 500
TERMINAL_JOB_STATUSES = (ImportJobStatus.COMPLETED, ImportJobStatus.FAILED)
_NAME_COLUMNS = (
    "primary_name",
    "primary_name_language",
    "primary_name_nl",
    "primary_name_fr",
    "primary_name_de",
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _chunks(values: Sequence[Any], size: int = KEY_CHUNK_SIZE) -> Iterator[Sequence[Any]]:
    for start in range(0, len(values), size):
        yield values[start : start + size]


@dataclass
class ProcessBatchResult:
    job_id: str
    table_name: str
    batch_number: int
    operation: BatchOperation
    records_processed: int
    completed_batches: int
    total_batches: int
    next_batch: BatchRef | None
    already_completed: bool = False

    @property
    def percentage(self) -> int:
        return compute_percentage(self.completed_batches, self.total_batches)

    def as_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "batch_completed": True,
            "already_completed": self.already_completed,
            "table_name": self.table_name,
            "batch_number": self.batch_number,
            "operation": self.operation.value,
            "records_processed": self.records_processed,
            "progress": {
                "completed_batches": self.completed_batches,
                "total_batches": self.total_batches,
                "percentage": self.percentage,
            },
            "next_batch": self.next_batch.as_dict() if self.next_batch else None,
        }


def _batch_key(job_id: str, ref: BatchRef):
    return (
        ImportJobBatch.job_id == job_id,
        ImportJobBatch.table_name == ref.table_name,
        ImportJobBatch.batch_number == ref.batch_number,
        ImportJobBatch.operation == ref.operation,
    )


def _load_job(store: ImportStore, job_id: str) -> RowMapping:
    job = store.query_one(
        select(ImportJob.id, ImportJob.status, ImportJob.extract_number, ImportJob.snapshot_date).where(
            ImportJob.id == job_id
        )
    )
    if job is None:
        raise JobNotFoundError(job_id)
    return job


def _coerce_operation(operation: BatchOperation | str | None) -> BatchOperation | None:
    if operation is None or isinstance(operation, BatchOperation):
        return operation
    try:
        return BatchOperation(str(operation).strip().lower())
    except ValueError as exc:
        raise ValidationError(f"Unsupported operation '{operation}'; expected 'delete' or 'insert'.") from exc


def _select_batch(
    store: ImportStore,
    job_id: str,
    table: str | None,
    batch_number: int | None,
    operation: BatchOperation | None,
) -> RowMapping:
    statement = select(
        ImportJobBatch.table_name,
        ImportJobBatch.batch_number,
        ImportJobBatch.operation,
        ImportJobBatch.status,
    ).where(ImportJobBatch.job_id == job_id)

    if table is None and batch_number is None and operation is None:
        row = store.query_one(
            statement.where(ImportJobBatch.status == BatchStatus.PENDING).order_by(*CANONICAL_ORDER).limit(1)
        )
        if row is None:
            raise PreconditionError(f"No pending batch for import job {job_id}.")
        return row

    if table is None or batch_number is None:
        raise ValidationError("Explicit batch selection needs both a table and a batch number.")
    statement = statement.where(ImportJobBatch.table_name == table, ImportJobBatch.batch_number == batch_number)
    if operation is not None:
        statement = statement.where(ImportJobBatch.operation == operation)
    candidates = store.query(statement.order_by(*CANONICAL_ORDER))
    if not candidates:
        suffix = f" ({operation.value})" if operation is not None else ""
        raise ValidationError(f"Import job {job_id} has no batch {table}#{batch_number}{suffix}.")
    for candidate in candidates:
        if candidate["status"] != BatchStatus.COMPLETED:
            return candidate
    return candidates[0]


def _result(
    store: ImportStore,
    job_id: str,
    ref: BatchRef,
    *,
    records_processed: int,
    already_completed: bool = False,
) -> ProcessBatchResult:
    counts = count_batches(store, job_id)
    return ProcessBatchResult(
        job_id=job_id,
        table_name=ref.table_name,
        batch_number=ref.batch_number,
        operation=ref.operation,
        records_processed=records_processed,
        completed_batches=counts[BatchStatus.COMPLETED],
        total_batches=sum(counts.values()),
        next_batch=next_pending_batch(store, job_id),
        already_completed=already_completed,
    )


def _claim(store: ImportStore, job_id: str, ref: BatchRef, claimable: tuple[BatchStatus, ...]) -> bool:
    now = _utcnow()
    result = store.execute(
        update(ImportJobBatch)
        .where(*_batch_key(job_id, ref), ImportJobBatch.status.in_(claimable))
        .values(
            status=BatchStatus.PROCESSING,
            started_at=now,
            completed_at=None,
            error_message=None,
            attempts=ImportJobBatch.attempts + 1,
        )
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        store.rollback()
        return False
    store.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id, ImportJob.status == ImportJobStatus.PENDING)
        .values(status=ImportJobStatus.PROCESSING, started_at=now)
        .execution_options(synchronize_session=False)
    )
    store.commit()
    return True


def _load_staged(store: ImportStore, contract: TableContract, job_id: str, ref: BatchRef) -> list[RowMapping]:
    model = contract.staging_model
    return store.query(
        select(*model.__table__.columns)
        .where(
            model.job_id == job_id,
            model.batch_number == ref.batch_number,
            model.operation == ref.operation,
            model.processed.is_(False),
        )
        .order_by(model.sequence_number)
    )


def _historize(store: ImportStore, model, column, keys: Sequence[Any], extract_number: int) -> int:
    """Retire current versions of ``keys`` that belong to an earlier extract."""

    affected = 0
    for chunk in _chunks(keys):
        result = store.execute(
            update(model)
            .where(
                column.in_(chunk),
                model.is_current.is_(True),
                model.extract_number < extract_number,
            )
            .values(is_current=False, deleted_at_extract=extract_number)
            .execution_options(synchronize_session=False)
        )
        affected += result.rowcount
    return affected


def _apply_deletes(store: ImportStore, contract: TableContract, staged: Sequence[RowMapping], job: RowMapping) -> int:
    key_column = contract.delete_staging_column
    keys = sorted({row[key_column] for row in staged})
    model = contract.store_model
    return _historize(store, model, getattr(model, contract.delete_match_column), keys, job["extract_number"])


def _inherited_names(store: ImportStore, numbers: Sequence[str], extract_number: int) -> dict[str, dict[str, Any]]:
    """Name columns of the latest earlier version of each enterprise number."""

    names: dict[str, dict[str, Any]] = {}
    for chunk in _chunks(numbers):
        rows = store.query(
            select(Enterprise.enterprise_number, *(getattr(Enterprise, column) for column in _NAME_COLUMNS))
            .where(Enterprise.enterprise_number.in_(chunk), Enterprise.extract_number < extract_number)
            .order_by(Enterprise.enterprise_number, Enterprise.extract_number.desc())
        )
        for row in rows:
            names.setdefault(row["enterprise_number"], {column: row[column] for column in _NAME_COLUMNS})
    return names


def _apply_inserts(store: ImportStore, contract: TableContract, staged: Sequence[RowMapping], job: RowMapping) -> int:
    """Insert new current versions; returns how many earlier versions they superseded."""

    if not staged:
        return 0
    model = contract.store_model
    extract_number = job["extract_number"]
    rows = [contract.staged_to_store(row) for row in staged]
    keys = [row[contract.store_key_column] for row in rows]

    names: Mapping[str, Mapping[str, Any]] = {}
    if model is Enterprise:
        names = _inherited_names(store, keys, extract_number)

    superseded = _historize(store, model, getattr(model, contract.store_key_column), keys, extract_number)

    payload: list[dict[str, Any]] = []
    for row in rows:
        values = dict(row)
        values.update(
            {
                "snapshot_date": job["snapshot_date"],
                "extract_number": extract_number,
                "is_current": True,
                "deleted_at_extract": None,
            }
        )
        if model is Enterprise:
            number = values["enterprise_number"]
            inherited = names.get(number)
            if inherited and inherited.get("primary_name"):
                values.update(inherited)
            else:
                values.update({column: None for column in _NAME_COLUMNS})
                values["primary_name"] = number
        payload.append(values)

    for chunk in _chunks(payload):
        store.execute(insert(model), list(chunk))
    return superseded


def _mark_processed(store: ImportStore, contract: TableContract, staged: Sequence[RowMapping]) -> None:
    model = contract.staging_model
    ids = [row["id"] for row in staged]
    for chunk in _chunks(ids):
        store.execute(
            update(model)
            .where(model.id.in_(chunk))
            .values(processed=True)
            .execution_options(synchronize_session=False)
        )


def _mark_failed(store: ImportStore, job_id: str, ref: BatchRef, message: str) -> None:
    store.execute(
        update(ImportJobBatch)
        .where(*_batch_key(job_id, ref), ImportJobBatch.status == BatchStatus.PROCESSING)
        .values(status=BatchStatus.FAILED, error_message=message, completed_at=None)
        .execution_options(synchronize_session=False)
    )
    store.execute(
        update(ImportJob)
        .where(ImportJob.id == job_id)
        .values(error_message=f"Batch {ref} failed: {message}")
        .execution_options(synchronize_session=False)
    )
    store.commit()


def execute_batch(
    store: ImportStore,
    job_id: str,
    *,
    table: str | None = None,
    batch_number: int | None = None,
    operation: BatchOperation | str | None = None,
) -> ProcessBatchResult:
    """
    Process exactly one batch of ``job_id``.

    Without a selector the next ``pending`` batch in canonical order is taken.
    An explicit ``table``/``batch_number`` (optionally ``operation``) may also
    claim a ``failed`` batch, which is how failures are retried.

    Raises:
        JobNotFoundError: unknown job.
        PreconditionError: the job is terminal or nothing is pending.
        BatchConflictError: another caller holds the batch.
        BatchExecutionError: applying the batch failed; the batch is ``failed``.
    """

    job = _load_job(store, job_id)
    job_status = ImportJobStatus(job["status"])
    if job_status in TERMINAL_JOB_STATUSES:
        raise PreconditionError(f"Import job {job_id} is {job_status.value}; no batches can be processed.")

    operation = _coerce_operation(operation)
    explicit = table is not None or batch_number is not None or operation is not None
    selected = _select_batch(store, job_id, table, batch_number, operation)
    ref = BatchRef(selected["table_name"], selected["batch_number"], BatchOperation(selected["operation"]))

    if selected["status"] == BatchStatus.COMPLETED:
        return _result(store, job_id, ref, records_processed=0, already_completed=True)

    claimable = (BatchStatus.PENDING, BatchStatus.FAILED) if explicit else (BatchStatus.PENDING,)
    if not _claim(store, job_id, ref, claimable):
        current = store.scalar(select(ImportJobBatch.status).where(*_batch_key(job_id, ref)))
        if current == BatchStatus.COMPLETED:
            return _result(store, job_id, ref, records_processed=0, already_completed=True)
        raise BatchConflictError(job_id, ref.table_name, ref.batch_number, ref.operation.value)

    started = time.perf_counter()
    try:
        contract = get_contract_for_store_table(ref.table_name)
        staged = _load_staged(store, contract, job_id, ref)
        if ref.operation is BatchOperation.DELETE:
            affected = _apply_deletes(store, contract, staged, job)
        else:
            affected = _apply_inserts(store, contract, staged, job)
            if affected:
                store.execute(
                    update(ImportJob)
                    .where(ImportJob.id == job_id)
                    .values(records_updated=ImportJob.records_updated + affected)
                    .execution_options(synchronize_session=False)
                )
        _mark_processed(store, contract, staged)
        store.execute(
            update(ImportJobBatch)
            .where(*_batch_key(job_id, ref), ImportJobBatch.status == BatchStatus.PROCESSING)
            .values(
                status=BatchStatus.COMPLETED,
                records_processed=len(staged),
                completed_at=_utcnow(),
                error_message=None,
            )
            .execution_options(synchronize_session=False)
        )
        store.commit()
    except Exception as exc:
        store.rollback()
        message = str(exc).strip() or exc.__class__.__name__
        _mark_failed(store, job_id, ref, message)
        record_batch(
            table=ref.table_name,
            operation=ref.operation.value,
            outcome="failure",
            duration_seconds=time.perf_counter() - started,
            record_count=0,
        )
        logger.exception(
            "Import batch %s of job %s failed",
            ref,
            job_id,
            extra={
                "importer_job_id": job_id,
                "importer_table": ref.table_name,
                "importer_batch_number": ref.batch_number,
                "importer_operation": ref.operation.value,
            },
        )
        raise BatchExecutionError(job_id, ref.table_name, ref.batch_number, ref.operation.value, message) from exc

    duration = time.perf_counter() - started
    record_batch(
        table=ref.table_name,
        operation=ref.operation.value,
        outcome="success",
        duration_seconds=duration,
        record_count=len(staged),
    )
    logger.info(
        "Processed import batch %s of job %s: %s staged rows, %s registry rows affected",
        ref,
        job_id,
        len(staged),
        affected,
        extra={
            "importer_job_id": job_id,
            "importer_table": ref.table_name,
            "importer_batch_number": ref.batch_number,
            "importer_operation": ref.operation.value,
            "importer_records_processed": len(staged),
            "importer_duration_ms": round(duration * 1000, 2),
        },
    )
    return _result(store, job_id, ref, records_processed=len(staged))
