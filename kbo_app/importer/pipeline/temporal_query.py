"""
Query builders over the temporally versioned registry tables.

``current_rows`` returns the live state; ``rows_as_of`` rebuilds the state
visible right after a given extract (or calendar date) was applied. All
helpers return SQLAlchemy ``Select`` objects so callers decide how to run
and paginate them.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import Select, func, or_, select
from sqlalchemy.orm import aliased

from kbo_app.importer.store import ImportStore
from kbo_app.models import (
    Activity,
    Address,
    Branch,
    Contact,
    Denomination,
    Enterprise,
    Establishment,
    ImportJob,
    ImportJobStatus,
)

_KEY_COLUMNS = {
    Enterprise: "enterprise_number",
    Establishment: "establishment_number",
    Branch: "id",
    Denomination: "id",
    Address: "id",
    Activity: "id",
    Contact: "id",
}


def key_column(model):
    try:
        return getattr(model, _KEY_COLUMNS[model])
    except KeyError:
        raise ValueError(f"{model.__name__} is not a versioned registry model.") from None


def current_rows(model) -> Select:
    """Live version of every key."""

    return select(model).where(model.is_current.is_(True))


def _completed_extract_on(snapshot_date: date):
    return (
        select(func.max(ImportJob.extract_number))
        .where(ImportJob.status == ImportJobStatus.COMPLETED, ImportJob.snapshot_date <= snapshot_date)
        .scalar_subquery()
    )


def rows_as_of(model, *, extract_number: int | None = None, snapshot_date: date | None = None) -> Select:
    """
    State of ``model`` right after ``extract_number`` (or the newest completed
    extract dated on or before ``snapshot_date``) was applied.

    A version is visible at extract N when it was written at or before N and
    not retired at or before N; the latest such version wins per key.
    """

    if (extract_number is None) == (snapshot_date is None):
        raise ValueError("Pass exactly one of extract_number or snapshot_date.")
    boundary = extract_number if extract_number is not None else _completed_extract_on(snapshot_date)

    key = key_column(model)
    ranked = (
        select(
            model,
            func.row_number()
            .over(partition_by=key, order_by=model.extract_number.desc())
            .label("version_rank"),
        )
        .where(
            model.extract_number <= boundary,
            or_(model.deleted_at_extract.is_(None), model.deleted_at_extract > boundary),
        )
        .subquery()
    )
    version = aliased(model, ranked)
    return select(version).where(ranked.c.version_rank == 1)


def versions_of(model, key_value: str) -> Select:
    """Every stored version of one key, oldest first."""

    return select(model).where(key_column(model) == key_value).order_by(model.extract_number)


def extract_number_for_date(store: ImportStore, on_date: date) -> int | None:
    """Newest completed extract whose snapshot date is on or before ``on_date``."""

    return store.scalar(
        select(func.max(ImportJob.extract_number)).where(
            ImportJob.status == ImportJobStatus.COMPLETED,
            ImportJob.snapshot_date <= on_date,
        )
    )
