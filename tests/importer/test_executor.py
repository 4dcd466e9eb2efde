from __future__ import annotations

import pytest
from sqlalchemy import select

from kbo_app.importer.errors import (
    BatchConflictError,
    BatchExecutionError,
    JobNotFoundError,
    PreconditionError,
    ValidationError,
)
from kbo_app.importer.pipeline import executor, service
from kbo_app.models import (
    BatchOperation,
    BatchStatus,
    Enterprise,
    ImportJobBatch,
    ImportJobStatus,
    StagingEnterprise,
    db,
)
from package_helpers import denomination_row, enterprise_row, job_batches, reload_job


@pytest.fixture
def two_table_job(package_builder):
    path = package_builder(
        140,
        {
            "enterprise_delete": [{"EnterpriseNumber": "0300.000.001"}],
            "enterprise_insert": [enterprise_row("0200.065.765"), enterprise_row("0201.310.929")],
            "denomination_insert": [denomination_row("0200.065.765", "Acme")],
        },
    )
    return service.prepare_import(path).job_id


def _batch(job_id, table, number, operation):
    db.session.expire_all()
    return db.session.get(ImportJobBatch, (job_id, table, number, operation))


def test_batches_run_in_canonical_order(two_table_job):
    processed = []
    percentages = [service.get_import_progress(two_table_job).percentage]
    while True:
        try:
            result = service.process_batch(two_table_job)
        except PreconditionError:
            break
        processed.append((result.table_name, result.batch_number, result.operation))

        progress = service.get_import_progress(two_table_job)
        assert progress.percentage == result.percentage
        assert sum(table.completed for table in progress.tables.values()) == progress.completed_batches
        assert progress.completed_batches == len(processed)
        percentages.append(result.percentage)

    assert percentages == sorted(percentages)
    assert (percentages[0], percentages[-1]) == (0, 100)

    assert processed == [
        ("denominations", 1, BatchOperation.INSERT),
        ("enterprises", 1, BatchOperation.DELETE),
        ("enterprises", 1, BatchOperation.INSERT),
    ]
    assert all(batch.status == BatchStatus.COMPLETED for batch in job_batches(two_table_job))


def test_process_batch_writes_current_versions_and_reports_progress(two_table_job):
    service.process_batch(two_table_job)
    service.process_batch(two_table_job)
    result = service.process_batch(two_table_job)

    assert result.table_name == "enterprises"
    assert result.operation is BatchOperation.INSERT
    assert result.records_processed == 2
    assert result.completed_batches == 3
    assert result.total_batches == 3
    assert result.percentage == 100
    assert result.next_batch is None
    assert result.as_dict()["progress"] == {"completed_batches": 3, "total_batches": 3, "percentage": 100}

    rows = db.session.scalars(select(Enterprise).order_by(Enterprise.enterprise_number)).all()
    assert [row.enterprise_number for row in rows] == ["0200.065.765", "0201.310.929"]
    assert all(row.is_current and row.extract_number == 140 for row in rows)
    assert all(row.primary_name == row.enterprise_number for row in rows)

    staged = db.session.scalars(select(StagingEnterprise).where(StagingEnterprise.job_id == two_table_job)).all()
    assert all(row.processed for row in staged)

    job = reload_job(two_table_job)
    assert job.status == ImportJobStatus.PROCESSING
    assert job.started_at is not None


def test_completed_batch_is_not_applied_twice(two_table_job):
    service.process_batch(two_table_job)

    again = service.process_batch(two_table_job, "denominations", 1, "insert")

    assert again.already_completed is True
    assert again.records_processed == 0
    batch = _batch(two_table_job, "denominations", 1, BatchOperation.INSERT)
    assert batch.attempts == 1
    assert len(db.session.execute(select(ImportJobBatch.job_id)).all()) == 3


def test_failed_batch_is_marked_and_can_be_retried(two_table_job, monkeypatch):
    service.process_batch(two_table_job)
    service.process_batch(two_table_job)

    original = executor._apply_inserts

    def _boom(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(executor, "_apply_inserts", _boom)
    with pytest.raises(BatchExecutionError, match="disk full"):
        service.process_batch(two_table_job)

    batch = _batch(two_table_job, "enterprises", 1, BatchOperation.INSERT)
    assert batch.status == BatchStatus.FAILED
    assert batch.error_message == "disk full"
    assert batch.attempts == 1
    assert "disk full" in reload_job(two_table_job).error_message
    assert db.session.scalars(select(Enterprise)).all() == []

    # Failed batches are only picked up through an explicit selection.
    with pytest.raises(PreconditionError, match="No pending batch"):
        service.process_batch(two_table_job)

    monkeypatch.setattr(executor, "_apply_inserts", original)
    result = service.process_batch(two_table_job, "enterprises", 1, "insert")

    assert result.records_processed == 2
    batch = _batch(two_table_job, "enterprises", 1, BatchOperation.INSERT)
    assert batch.status == BatchStatus.COMPLETED
    assert batch.attempts == 2
    assert batch.error_message is None
    assert len(db.session.scalars(select(Enterprise)).all()) == 2


def test_batch_held_by_another_caller_conflicts(two_table_job):
    batch = _batch(two_table_job, "denominations", 1, BatchOperation.INSERT)
    batch.status = BatchStatus.PROCESSING
    db.session.commit()

    with pytest.raises(BatchConflictError, match="already being processed"):
        service.process_batch(two_table_job, "denominations", 1, "insert")


def test_explicit_selection_without_operation_prefers_unfinished_batch(two_table_job):
    first = service.process_batch(two_table_job, "enterprises", 1)

    assert first.operation is BatchOperation.DELETE
    second = service.process_batch(two_table_job, "enterprises", 1)
    assert second.operation is BatchOperation.INSERT


def test_explicit_selection_errors(two_table_job):
    with pytest.raises(ValidationError, match="has no batch enterprises#9"):
        service.process_batch(two_table_job, "enterprises", 9, "insert")
    with pytest.raises(ValidationError, match="needs both a table and a batch number"):
        service.process_batch(two_table_job, "enterprises")
    with pytest.raises(ValidationError, match="Unsupported operation"):
        service.process_batch(two_table_job, "enterprises", 1, "upsert")


def test_terminal_and_unknown_jobs_are_rejected(two_table_job):
    with pytest.raises(JobNotFoundError):
        service.process_batch("missing-job")

    service.abandon_job(two_table_job, "bad package")
    with pytest.raises(PreconditionError, match="is failed"):
        service.process_batch(two_table_job)


def test_delete_batch_retires_versions_from_earlier_extracts(two_table_job, package_builder):
    while reload_job(two_table_job).status != ImportJobStatus.COMPLETED:
        try:
            service.process_batch(two_table_job)
        except PreconditionError:
            service.finalize_import(two_table_job)

    path = package_builder(
        141,
        {"enterprise_delete": [{"EnterpriseNumber": "0201.310.929"}]},
        snapshot_date="07-01-2024",
    )
    job_id = service.prepare_import(path).job_id
    result = service.process_batch(job_id)

    assert result.operation is BatchOperation.DELETE
    assert result.records_processed == 1
    retired = db.session.scalars(select(Enterprise).where(Enterprise.enterprise_number == "0201.310.929")).one()
    assert retired.is_current is False
    assert retired.deleted_at_extract == 141
    kept = db.session.scalars(select(Enterprise).where(Enterprise.enterprise_number == "0200.065.765")).one()
    assert kept.is_current is True
