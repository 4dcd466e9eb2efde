from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from kbo_app.importer.errors import BatchExecutionError, JobNotFoundError, PreconditionError
from kbo_app.importer.pipeline import executor, service
from kbo_app.models import BatchOperation, BatchStatus, ImportJobBatch, ImportJobStatus, StagingEnterprise, db
from package_helpers import enterprise_row, reload_job


@pytest.fixture
def job_id(package_builder, small_batches):
    rows = [enterprise_row(f"0200.000.{index:03d}") for index in range(4)]
    return service.prepare_import(package_builder(140, {"enterprise_insert": rows})).job_id


def _batch(job_id: str, number: int) -> ImportJobBatch:
    db.session.expire_all()
    return db.session.get(ImportJobBatch, (job_id, "enterprises", number, BatchOperation.INSERT))


def test_retry_failed_batches_requeues_them(job_id, monkeypatch):
    monkeypatch.setattr(executor, "_apply_inserts", lambda *args, **kwargs: 1 / 0)
    with pytest.raises(BatchExecutionError):
        service.process_batch(job_id)
    monkeypatch.undo()

    assert service.retry_failed_batches(job_id) == 1

    batch = _batch(job_id, 1)
    assert batch.status == BatchStatus.PENDING
    assert batch.started_at is None
    assert reload_job(job_id).error_message is None

    result = service.process_batch(job_id)
    assert (result.batch_number, result.records_processed) == (1, 2)
    assert service.retry_failed_batches(job_id) == 0


def test_recover_stale_batches_only_touches_old_claims(job_id):
    now = datetime.now(timezone.utc)
    stale = _batch(job_id, 1)
    fresh = db.session.get(ImportJobBatch, (job_id, "enterprises", 2, BatchOperation.INSERT))
    stale.status = BatchStatus.PROCESSING
    stale.started_at = now - timedelta(hours=2)
    fresh.status = BatchStatus.PROCESSING
    fresh.started_at = now
    db.session.commit()

    recovered = service.recover_stale_batches(job_id, timedelta(minutes=15))

    assert recovered == 1
    assert _batch(job_id, 1).status == BatchStatus.PENDING
    assert _batch(job_id, 2).status == BatchStatus.PROCESSING


def test_recovered_batch_processes_normally(job_id):
    batch = _batch(job_id, 1)
    batch.status = BatchStatus.PROCESSING
    batch.started_at = datetime.now(timezone.utc) - timedelta(hours=1)
    db.session.commit()

    assert service.recover_stale_batches(job_id, timedelta(minutes=5)) == 1
    result = service.process_batch(job_id)

    assert (result.batch_number, result.records_processed) == (1, 2)


def test_abandon_job_marks_failed_and_drops_staging(job_id):
    removed = service.abandon_job(job_id, "  corrupt upstream package ")

    assert removed == 4
    job = reload_job(job_id)
    assert job.status == ImportJobStatus.FAILED
    assert job.error_message == "corrupt upstream package"
    assert db.session.scalar(select(func.count()).select_from(StagingEnterprise)) == 0

    with pytest.raises(PreconditionError, match="can no longer change"):
        service.retry_failed_batches(job_id)
    with pytest.raises(PreconditionError):
        service.abandon_job(job_id, "again")


def test_abandon_without_reason_uses_default_message(job_id):
    service.abandon_job(job_id, "")

    assert reload_job(job_id).error_message == "Abandoned by operator."


def test_recovery_on_unknown_job():
    with pytest.raises(JobNotFoundError):
        service.recover_stale_batches("nope", timedelta(seconds=1))


def test_abandoned_extract_can_be_prepared_again(job_id, package_builder):
    service.abandon_job(job_id, "truncated download")

    again = service.prepare_import(package_builder(140, {"enterprise_insert": [enterprise_row("0200.000.000")]}))

    assert again.job_id != job_id
    assert reload_job(again.job_id).status == ImportJobStatus.PENDING
    assert reload_job(job_id).status == ImportJobStatus.FAILED


def test_abandon_refuses_job_with_applied_batches(job_id):
    service.process_batch(job_id)

    with pytest.raises(PreconditionError, match="1 applied or in-flight batch") as excinfo:
        service.abandon_job(job_id, "changed my mind")

    assert excinfo.value.outstanding == 1
    job = reload_job(job_id)
    assert job.status != ImportJobStatus.FAILED
    assert job.error_message is None
    assert db.session.scalar(select(func.count()).select_from(StagingEnterprise)) == 4
