from __future__ import annotations

from datetime import date, datetime

import pytest

from kbo_app.importer.pipeline.temporal_query import (
    current_rows,
    extract_number_for_date,
    key_column,
    rows_as_of,
    versions_of,
)
from kbo_app.importer.store import ImportStore
from kbo_app.models import Enterprise, ExtractType, ImportJob, ImportJobStatus, db


def _job(extract_number: int, snapshot: date, status=ImportJobStatus.COMPLETED) -> ImportJob:
    return ImportJob(
        extract_number=extract_number,
        extract_type=ExtractType.UPDATE,
        snapshot_date=snapshot,
        extract_timestamp=datetime.combine(snapshot, datetime.min.time()),
        status=status,
        worker_type="local",
    )


def _version(number: str, extract_number: int, snapshot: date, *, status="AC", current=True, deleted_at=None):
    return Enterprise(
        enterprise_number=number,
        extract_number=extract_number,
        snapshot_date=snapshot,
        status=status,
        primary_name=number,
        is_current=current,
        deleted_at_extract=deleted_at,
    )


@pytest.fixture
def history():
    monday, tuesday, wednesday = date(2024, 1, 8), date(2024, 1, 9), date(2024, 1, 10)
    db.session.add_all(
        [
            _job(10, monday),
            _job(11, tuesday),
            _job(12, wednesday, status=ImportJobStatus.PROCESSING),
            _version("0200.000.001", 10, monday, current=False, deleted_at=11),
            _version("0200.000.001", 11, tuesday, status="ST"),
            _version("0200.000.002", 10, monday, current=False, deleted_at=11),
            _version("0200.000.003", 11, tuesday),
        ]
    )
    db.session.commit()


def _statuses(statement) -> dict[str, str]:
    return {row.enterprise_number: row.status for row in db.session.scalars(statement)}


def test_current_rows_hides_retired_versions(history):
    assert _statuses(current_rows(Enterprise)) == {"0200.000.001": "ST", "0200.000.003": "AC"}


def test_rows_as_of_extract_rebuilds_past_state(history):
    assert _statuses(rows_as_of(Enterprise, extract_number=10)) == {"0200.000.001": "AC", "0200.000.002": "AC"}
    assert _statuses(rows_as_of(Enterprise, extract_number=11)) == {"0200.000.001": "ST", "0200.000.003": "AC"}


def test_rows_as_of_date_uses_latest_completed_extract(history):
    assert _statuses(rows_as_of(Enterprise, snapshot_date=date(2024, 1, 8))) == {
        "0200.000.001": "AC",
        "0200.000.002": "AC",
    }
    # Extract 12 is not completed, so the 10th still resolves to extract 11.
    assert _statuses(rows_as_of(Enterprise, snapshot_date=date(2024, 1, 10))) == {
        "0200.000.001": "ST",
        "0200.000.003": "AC",
    }
    assert _statuses(rows_as_of(Enterprise, snapshot_date=date(2023, 12, 31))) == {}


def test_rows_as_of_requires_exactly_one_boundary():
    with pytest.raises(ValueError, match="exactly one"):
        rows_as_of(Enterprise)
    with pytest.raises(ValueError, match="exactly one"):
        rows_as_of(Enterprise, extract_number=1, snapshot_date=date(2024, 1, 1))


def test_versions_of_lists_history_oldest_first(history):
    versions = db.session.scalars(versions_of(Enterprise, "0200.000.001")).all()

    assert [(row.extract_number, row.status) for row in versions] == [(10, "AC"), (11, "ST")]


def test_extract_number_for_date(history):
    store = ImportStore(db.session)

    assert extract_number_for_date(store, date(2024, 1, 9)) == 11
    assert extract_number_for_date(store, date(2024, 1, 12)) == 11
    assert extract_number_for_date(store, date(2024, 1, 1)) is None


def test_key_column_rejects_non_registry_models():
    assert key_column(Enterprise).key == "enterprise_number"
    with pytest.raises(ValueError, match="not a versioned registry model"):
        key_column(ImportJob)
