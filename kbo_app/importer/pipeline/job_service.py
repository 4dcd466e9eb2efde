"""
Service helpers for listing import jobs.

The CLI ``jobs`` command and the ``/importer/jobs`` endpoint share these
helpers so filtering, pagination and summaries stay consistent.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Iterable

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from kbo_app.models import BatchStatus, ImportJob, ImportJobBatch, ImportJobStatus, db

from .progress import compute_percentage

DEFAULT_PAGE = 1
DEFAULT_PAGE_SIZE = 25
MAX_PAGE_SIZE = 100
DEFAULT_SORT = "-extract_number"

VALID_SORT_FIELDS = {
    "extract_number": ImportJob.extract_number,
    "snapshot_date": ImportJob.snapshot_date,
    "status": ImportJob.status,
    "started_at": ImportJob.started_at,
    "completed_at": ImportJob.completed_at,
    "created_at": ImportJob.created_at,
}


@dataclass(frozen=True)
class JobFilters:
    """Canonical set of filter options applied to import job queries."""

    page: int = DEFAULT_PAGE
    page_size: int = DEFAULT_PAGE_SIZE
    sort: str = DEFAULT_SORT
    statuses: tuple[ImportJobStatus, ...] = field(default_factory=tuple)

    @classmethod
    def coerce(
        cls,
        *,
        page: int | str | None = None,
        page_size: int | str | None = None,
        sort: str | None = None,
        statuses: Iterable[str] | None = None,
    ) -> "JobFilters":
        """
        Coerce mixed user input into a validated ``JobFilters`` instance.
        """

        resolved_page = _coerce_positive_int(page, fallback=DEFAULT_PAGE)
        resolved_size = min(_coerce_positive_int(page_size, fallback=DEFAULT_PAGE_SIZE), MAX_PAGE_SIZE)

        resolved_sort = sort or DEFAULT_SORT
        if resolved_sort.lstrip("-") not in VALID_SORT_FIELDS:
            raise ValueError(f"Unsupported sort field '{resolved_sort.lstrip('-')}'.")

        resolved_statuses = tuple(_coerce_status(value) for value in (statuses or ()) if value not in (None, ""))
        return cls(page=resolved_page, page_size=resolved_size, sort=resolved_sort, statuses=resolved_statuses)


@dataclass(slots=True)
class JobSummary:
    """Summarized representation of an import job."""

    id: str
    extract_number: int
    extract_type: str
    snapshot_date: date
    status: str
    worker_type: str
    started_at: datetime | None
    completed_at: datetime | None
    duration_seconds: float | None
    records_processed: int
    records_inserted: int
    records_updated: int
    records_deleted: int
    batches_total: int
    batches_completed: int
    batches_failed: int
    error_message: str | None

    @property
    def percentage(self) -> int:
        return compute_percentage(self.batches_completed, self.batches_total)

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "extract_number": self.extract_number,
            "extract_type": self.extract_type,
            "snapshot_date": self.snapshot_date.isoformat(),
            "status": self.status,
            "worker_type": self.worker_type,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": self.duration_seconds,
            "records_processed": self.records_processed,
            "records_inserted": self.records_inserted,
            "records_updated": self.records_updated,
            "records_deleted": self.records_deleted,
            "batches": {
                "total": self.batches_total,
                "completed": self.batches_completed,
                "failed": self.batches_failed,
                "percentage": self.percentage,
            },
            "error_message": self.error_message,
        }


@dataclass(slots=True)
class JobListResult:
    """Paginated result set for import jobs."""

    items: list[JobSummary]
    total: int
    page: int
    page_size: int
    total_pages: int

    def as_dict(self) -> dict[str, Any]:
        return {
            "jobs": [item.as_dict() for item in self.items],
            "total": self.total,
            "page": self.page,
            "page_size": self.page_size,
            "total_pages": self.total_pages,
        }


class ImportJobService:
    """Facade for querying import jobs with consistent filtering semantics."""

    def __init__(self, session: Session | None = None) -> None:
        self.session: Session = session or db.session

    def list_jobs(self, filters: JobFilters) -> JobListResult:
        statement = select(ImportJob)
        if filters.statuses:
            statement = statement.where(ImportJob.status.in_(filters.statuses))

        total = self.session.scalar(select(func.count()).select_from(statement.subquery())) or 0
        if total == 0:
            return JobListResult(items=[], total=0, page=filters.page, page_size=filters.page_size, total_pages=0)

        jobs = self.session.scalars(
            statement.order_by(_resolve_sort_expression(filters.sort))
            .offset((filters.page - 1) * filters.page_size)
            .limit(filters.page_size)
        ).all()
        batch_counts = self._batch_counts([job.id for job in jobs])
        items = [self._summarize(job, batch_counts.get(job.id, (0, 0, 0))) for job in jobs]
        total_pages = (total + filters.page_size - 1) // filters.page_size
        return JobListResult(
            items=items, total=total, page=filters.page, page_size=filters.page_size, total_pages=total_pages
        )

    def get_job_summary(self, job_id: str) -> JobSummary | None:
        job = self.session.get(ImportJob, job_id)
        if job is None:
            return None
        return self._summarize(job, self._batch_counts([job_id]).get(job_id, (0, 0, 0)))

    def _batch_counts(self, job_ids: list[str]) -> dict[str, tuple[int, int, int]]:
        if not job_ids:
            return {}
        rows = self.session.execute(
            select(
                ImportJobBatch.job_id,
                func.count(),
                func.sum(case((ImportJobBatch.status == BatchStatus.COMPLETED, 1), else_=0)),
                func.sum(case((ImportJobBatch.status == BatchStatus.FAILED, 1), else_=0)),
            )
            .where(ImportJobBatch.job_id.in_(job_ids))
            .group_by(ImportJobBatch.job_id)
        ).all()
        return {job_id: (int(total), int(completed or 0), int(failed or 0)) for job_id, total, completed, failed in rows}

    @staticmethod
    def _summarize(job: ImportJob, batch_counts: tuple[int, int, int]) -> JobSummary:
        duration_seconds: float | None = None
        if job.started_at:
            started = _as_aware(job.started_at)
            finished = _as_aware(job.completed_at) if job.completed_at else datetime.now(timezone.utc)
            duration_seconds = (finished - started).total_seconds()
        total, completed, failed = batch_counts
        return JobSummary(
            id=job.id,
            extract_number=job.extract_number,
            extract_type=job.extract_type.value,
            snapshot_date=job.snapshot_date,
            status=job.status.value,
            worker_type=job.worker_type,
            started_at=job.started_at,
            completed_at=job.completed_at,
            duration_seconds=duration_seconds,
            records_processed=job.records_processed or 0,
            records_inserted=job.records_inserted or 0,
            records_updated=job.records_updated or 0,
            records_deleted=job.records_deleted or 0,
            batches_total=total,
            batches_completed=completed,
            batches_failed=failed,
            error_message=job.error_message,
        )


def _as_aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def _coerce_positive_int(candidate: int | str | None, *, fallback: int) -> int:
    if candidate in (None, ""):
        return fallback
    if isinstance(candidate, int):
        return max(1, candidate)
    if isinstance(candidate, str) and candidate.isdigit():
        return max(1, int(candidate))
    raise ValueError(f"Expected positive integer for pagination, received '{candidate}'.")


def _coerce_status(value: str | ImportJobStatus) -> ImportJobStatus:
    if isinstance(value, ImportJobStatus):
        return value
    normalized = str(value).strip().lower()
    try:
        return ImportJobStatus(normalized)
    except ValueError:
        raise ValueError(f"Unsupported status filter '{value}'.") from None


def _resolve_sort_expression(sort: str):
    column = VALID_SORT_FIELDS[sort.lstrip("-")]
    return column.desc() if sort.startswith("-") else column.asc()
