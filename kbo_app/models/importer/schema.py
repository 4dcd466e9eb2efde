"""
SQLAlchemy models for the batched KBO import schema.

An ``ImportJob`` is created per delta package. Its work is split into
``ImportJobBatch`` rows (one per table, operation and batch number) and the
package content is parked in one typed staging table per registry table until
the job is finalized.
"""

from __future__ import annotations

import enum
from datetime import date, datetime, timezone
from uuid import uuid4

from sqlalchemy import Enum, ForeignKey, Index, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db


class ExtractType(str, enum.Enum):
    """Kind of package published by the registry."""

    FULL = "full"
    UPDATE = "update"


class ImportJobStatus(str, enum.Enum):
    """Lifecycle states for an import job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchStatus(str, enum.Enum):
    """Lifecycle states for a single micro-batch."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class BatchOperation(str, enum.Enum):
    """Delta operation applied by a batch."""

    DELETE = "delete"
    INSERT = "insert"


def _new_job_id() -> str:
    return str(uuid4())


class ImportJob(BaseModel):
    """Metadata and counters describing one delta package import."""

    __tablename__ = "import_jobs"

    id: Mapped[str] = mapped_column(db.String(36), primary_key=True, default=_new_job_id)
    extract_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    extract_type: Mapped[ExtractType] = mapped_column(
        Enum(ExtractType, name="import_extract_type_enum"),
        nullable=False,
    )
    snapshot_date: Mapped[date] = mapped_column(db.Date, nullable=False)
    extract_timestamp: Mapped[datetime] = mapped_column(db.DateTime, nullable=False)
    format_version: Mapped[str] = mapped_column(db.String(50), nullable=False, default="unknown")
    status: Mapped[ImportJobStatus] = mapped_column(
        Enum(ImportJobStatus, name="import_job_status_enum"),
        nullable=False,
        default=ImportJobStatus.PENDING,
        index=True,
    )
    worker_type: Mapped[str] = mapped_column(db.String(50), nullable=False)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    records_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_inserted: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_updated: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_deleted: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    counts_json: Mapped[dict | None] = mapped_column(
        db.JSON,
        nullable=True,
        comment="Staging statistics per table (rows read, duplicates dropped, key conflicts collapsed).",
    )

    batches = relationship(
        "ImportJobBatch",
        back_populates="job",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    # An abandoned extract may be prepared again; only one live job per extract.
    __table_args__ = (
        Index(
            "uq_import_jobs_extract_number_live",
            "extract_number",
            unique=True,
            sqlite_where=text("status != 'FAILED'"),
            postgresql_where=text("status != 'FAILED'"),
        ),
    )

    def __repr__(self):
        return f"<ImportJob {self.id} extract={self.extract_number} status={self.status}>"


class ImportJobBatch(BaseModel):
    """Tracking row for one unit of resumable work."""

    __tablename__ = "import_job_batches"

    job_id: Mapped[str] = mapped_column(
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        primary_key=True,
    )
    table_name: Mapped[str] = mapped_column(db.String(50), primary_key=True)
    batch_number: Mapped[int] = mapped_column(db.Integer, primary_key=True)
    operation: Mapped[BatchOperation] = mapped_column(
        Enum(BatchOperation, name="import_batch_operation_enum"),
        primary_key=True,
    )
    status: Mapped[BatchStatus] = mapped_column(
        Enum(BatchStatus, name="import_batch_status_enum"),
        nullable=False,
        default=BatchStatus.PENDING,
    )
    records_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    records_processed: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    started_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    completed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    error_message: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    job = relationship("ImportJob", back_populates="batches")

    __table_args__ = (
        Index("idx_import_job_batches_status", "job_id", "status"),
        Index("idx_import_job_batches_table", "job_id", "table_name"),
    )


class StagingMixin:
    """Bookkeeping columns shared by every staging table."""

    id: Mapped[int] = mapped_column(db.Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        ForeignKey("import_jobs.id", ondelete="CASCADE"),
        nullable=False,
    )
    batch_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    operation: Mapped[BatchOperation] = mapped_column(
        Enum(BatchOperation, name="import_staging_operation_enum"),
        nullable=False,
    )
    processed: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    sequence_number: Mapped[int] = mapped_column(db.Integer, nullable=False)
    landed_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )


def _staging_batch_index(table_name: str) -> Index:
    return Index(f"idx_{table_name}_batch", "job_id", "operation", "batch_number", "processed")


class StagingEnterprise(StagingMixin, db.Model):
    __tablename__ = "import_staging_enterprises"
    __table_args__ = (_staging_batch_index("import_staging_enterprises"),)

    enterprise_number: Mapped[str] = mapped_column(db.String(20), nullable=False)
    status: Mapped[str | None] = mapped_column(db.String(10))
    juridical_situation: Mapped[str | None] = mapped_column(db.String(10))
    type_of_enterprise: Mapped[str | None] = mapped_column(db.String(10))
    juridical_form: Mapped[str | None] = mapped_column(db.String(10))
    juridical_form_cac: Mapped[str | None] = mapped_column(db.String(10))
    start_date: Mapped[date | None] = mapped_column(db.Date)


class StagingEstablishment(StagingMixin, db.Model):
    __tablename__ = "import_staging_establishments"
    __table_args__ = (_staging_batch_index("import_staging_establishments"),)

    establishment_number: Mapped[str] = mapped_column(db.String(20), nullable=False)
    enterprise_number: Mapped[str | None] = mapped_column(db.String(20))
    start_date: Mapped[date | None] = mapped_column(db.Date)


class StagingBranch(StagingMixin, db.Model):
    __tablename__ = "import_staging_branches"
    __table_args__ = (_staging_batch_index("import_staging_branches"),)

    # Source "Id" column; the staging row id is the surrogate key.
    branch_id: Mapped[str] = mapped_column(db.String(100), nullable=False)
    enterprise_number: Mapped[str | None] = mapped_column(db.String(20))
    start_date: Mapped[date | None] = mapped_column(db.Date)


class StagingDenomination(StagingMixin, db.Model):
    __tablename__ = "import_staging_denominations"
    __table_args__ = (_staging_batch_index("import_staging_denominations"),)

    entity_number: Mapped[str] = mapped_column(db.String(20), nullable=False)
    language: Mapped[str | None] = mapped_column(db.String(1))
    denomination_type: Mapped[str | None] = mapped_column(db.String(3))
    denomination: Mapped[str | None] = mapped_column(db.String(500))


class StagingAddress(StagingMixin, db.Model):
    __tablename__ = "import_staging_addresses"
    __table_args__ = (_staging_batch_index("import_staging_addresses"),)

    entity_number: Mapped[str] = mapped_column(db.String(20), nullable=False)
    type_of_address: Mapped[str | None] = mapped_column(db.String(4))
    country_nl: Mapped[str | None] = mapped_column(db.String(100))
    country_fr: Mapped[str | None] = mapped_column(db.String(100))
    zipcode: Mapped[str | None] = mapped_column(db.String(20))
    municipality_nl: Mapped[str | None] = mapped_column(db.String(200))
    municipality_fr: Mapped[str | None] = mapped_column(db.String(200))
    street_nl: Mapped[str | None] = mapped_column(db.String(200))
    street_fr: Mapped[str | None] = mapped_column(db.String(200))
    house_number: Mapped[str | None] = mapped_column(db.String(50))
    box: Mapped[str | None] = mapped_column(db.String(50))
    extra_address_info: Mapped[str | None] = mapped_column(db.String(500))
    date_striking_off: Mapped[date | None] = mapped_column(db.Date)


class StagingActivity(StagingMixin, db.Model):
    __tablename__ = "import_staging_activities"
    __table_args__ = (_staging_batch_index("import_staging_activities"),)

    entity_number: Mapped[str] = mapped_column(db.String(20), nullable=False)
    activity_group: Mapped[str | None] = mapped_column(db.String(3))
    nace_version: Mapped[str | None] = mapped_column(db.String(4))
    nace_code: Mapped[str | None] = mapped_column(db.String(10))
    classification: Mapped[str | None] = mapped_column(db.String(4))


class StagingContact(StagingMixin, db.Model):
    __tablename__ = "import_staging_contacts"
    __table_args__ = (_staging_batch_index("import_staging_contacts"),)

    entity_number: Mapped[str] = mapped_column(db.String(20), nullable=False)
    entity_contact: Mapped[str | None] = mapped_column(db.String(10))
    contact_type: Mapped[str | None] = mapped_column(db.String(10))
    contact_value: Mapped[str | None] = mapped_column(db.String(300))


STAGING_MODELS = (
    StagingActivity,
    StagingAddress,
    StagingBranch,
    StagingContact,
    StagingDenomination,
    StagingEnterprise,
    StagingEstablishment,
)
