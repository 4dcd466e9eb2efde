from __future__ import annotations

from datetime import date, datetime, timedelta, timezone

import pytest

from kbo_app.importer.pipeline.job_service import MAX_PAGE_SIZE, ImportJobService, JobFilters
from kbo_app.models import (
    BatchOperation,
    BatchStatus,
    ExtractType,
    ImportJob,
    ImportJobBatch,
    ImportJobStatus,
    db,
)


def _seed_job(extract_number: int, status: ImportJobStatus, *, batches=(), **overrides) -> ImportJob:
    snapshot = date(2024, 1, 1) + timedelta(days=extract_number)
    job = ImportJob(
        extract_number=extract_number,
        extract_type=ExtractType.UPDATE,
        snapshot_date=snapshot,
        extract_timestamp=datetime.combine(snapshot, datetime.min.time()),
        status=status,
        worker_type="local",
        **overrides,
    )
    db.session.add(job)
    db.session.flush()
    for number, batch_status in enumerate(batches, start=1):
        db.session.add(
            ImportJobBatch(
                job_id=job.id,
                table_name="enterprises",
                batch_number=number,
                operation=BatchOperation.INSERT,
                status=batch_status,
                records_count=10,
            )
        )
    db.session.commit()
    return job


def test_filters_coerce_defaults_and_limits():
    filters = JobFilters.coerce(page="2", page_size="500", sort="snapshot_date", statuses=["Completed", ""])

    assert filters.page == 2
    assert filters.page_size == MAX_PAGE_SIZE
    assert filters.sort == "snapshot_date"
    assert filters.statuses == (ImportJobStatus.COMPLETED,)
    assert JobFilters.coerce() == JobFilters()


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"page": "abc"}, "positive integer"),
        ({"sort": "-colour"}, "Unsupported sort field"),
        ({"statuses": ["archived"]}, "Unsupported status filter"),
    ],
)
def test_filters_reject_bad_input(kwargs, message):
    with pytest.raises(ValueError, match=message):
        JobFilters.coerce(**kwargs)


def test_list_jobs_sorts_filters_and_paginates():
    _seed_job(140, ImportJobStatus.COMPLETED)
    _seed_job(141, ImportJobStatus.FAILED)
    _seed_job(142, ImportJobStatus.PROCESSING)

    service = ImportJobService()
    newest_first = service.list_jobs(JobFilters(page_size=2))
    assert [item.extract_number for item in newest_first.items] == [142, 141]
    assert (newest_first.total, newest_first.total_pages) == (3, 2)

    second_page = service.list_jobs(JobFilters(page=2, page_size=2))
    assert [item.extract_number for item in second_page.items] == [140]

    finished = service.list_jobs(
        JobFilters(sort="extract_number", statuses=(ImportJobStatus.COMPLETED, ImportJobStatus.FAILED))
    )
    assert [item.extract_number for item in finished.items] == [140, 141]


def test_list_jobs_empty_result():
    result = ImportJobService().list_jobs(JobFilters())

    assert result.as_dict() == {"jobs": [], "total": 0, "page": 1, "page_size": 25, "total_pages": 0}


def test_summary_includes_batch_counts_and_duration():
    started = datetime(2024, 1, 6, 8, 0, tzinfo=timezone.utc)
    job = _seed_job(
        140,
        ImportJobStatus.PROCESSING,
        batches=(BatchStatus.COMPLETED, BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.PENDING),
        started_at=started,
        completed_at=started + timedelta(minutes=2),
        error_message="Batch enterprises#3 (insert) failed: boom",
    )

    summary = ImportJobService().get_job_summary(job.id)
    payload = summary.as_dict()

    assert payload["batches"] == {"total": 4, "completed": 2, "failed": 1, "percentage": 50}
    assert payload["duration_seconds"] == 120.0
    assert payload["status"] == "processing"
    assert payload["extract_type"] == "update"
    assert payload["error_message"].endswith("boom")


def test_summary_for_unknown_job():
    assert ImportJobService().get_job_summary("missing") is None
