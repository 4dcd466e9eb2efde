"""Helpers for staging delta package rows into the typed staging tables."""

from __future__ import annotations

import csv
import hashlib
import json
import logging
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import insert

from kbo_app.importer.adapters import CSVAdapterError, CSVRowError, DeltaCSVAdapter, DeltaRow, KboPackage
from kbo_app.importer.contracts import TableContract
from kbo_app.importer.errors import StagingError
from kbo_app.importer.store import ImportStore
from kbo_app.models import BatchOperation

from .planner import BatchPlan, BatchSizingPolicy, plan_batches

logger = logging.getLogger(__name__)

INSERT_CHUNK_SIZE = 500


@dataclass
class OperationStagingSummary:
    """Outcome statistics for one delta file."""

    rows_read: int = 0
    rows_staged: int = 0
    rows_skipped_blank: int = 0
    duplicates_removed: int = 0
    key_conflicts_collapsed: int = 0
    batches: int = 0

    def as_dict(self) -> dict[str, int]:
        return {
            "rows_read": self.rows_read,
            "rows_staged": self.rows_staged,
            "rows_skipped_blank": self.rows_skipped_blank,
            "duplicates_removed": self.duplicates_removed,
            "key_conflicts_collapsed": self.key_conflicts_collapsed,
            "batches": self.batches,
        }


@dataclass
class TableStagingSummary:
    """Outcome statistics for one package table."""

    table_name: str
    delete: OperationStagingSummary = field(default_factory=OperationStagingSummary)
    insert: OperationStagingSummary = field(default_factory=OperationStagingSummary)
    plans: list[BatchPlan] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {"delete": self.delete.as_dict(), "insert": self.insert.as_dict()}


def compute_checksum(values: dict[str, Any]) -> str:
    serialized = json.dumps(values, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def _read_rows(package: KboPackage, contract: TableContract, operation: BatchOperation) -> tuple[list[DeltaRow], int]:
    filename = package.delta_filename(contract.package_table, operation.value)
    handle = package.open_delta(contract.package_table, operation.value)
    if handle is None:
        return [], 0
    adapter = DeltaCSVAdapter(handle, contract, operation.value)
    try:
        with handle:
            rows = list(adapter.iter_rows())
    except CSVRowError as exc:
        raise StagingError(filename, str(exc), line_number=exc.line_number) from exc
    except CSVAdapterError as exc:
        raise StagingError(filename, str(exc), line_number=1) from exc
    except UnicodeDecodeError as exc:
        raise StagingError(filename, f"File is not valid UTF-8 ({exc.reason}).") from exc
    except (csv.Error, zipfile.BadZipFile, zlib.error, OSError) as exc:
        raise StagingError(filename, str(exc)) from exc
    return rows, adapter.statistics.rows_skipped_blank


def _dedupe_deletes(contract: TableContract, rows: list[DeltaRow], summary: OperationStagingSummary) -> list[DeltaRow]:
    key_column = contract.delete_staging_column
    seen: set[Any] = set()
    kept: list[DeltaRow] = []
    for row in rows:
        key = row.values[key_column]
        if key in seen:
            summary.duplicates_removed += 1
            continue
        seen.add(key)
        kept.append(row)
    return kept


def _dedupe_inserts(
    contract: TableContract,
    rows: list[DeltaRow],
    summary: OperationStagingSummary,
    *,
    job_id: str,
) -> list[DeltaRow]:
    """
    Drop exact duplicates and collapse rows sharing a storage key.

    For conflicting rows the last occurrence in the file wins and keeps the
    position of the first one.
    """

    checksums: set[str] = set()
    by_key: dict[str, int] = {}
    kept: list[DeltaRow] = []
    for row in rows:
        checksum = compute_checksum(row.values)
        if checksum in checksums:
            summary.duplicates_removed += 1
            continue
        checksums.add(checksum)

        key = contract.storage_key(row.values)
        position = by_key.get(key)
        if position is None:
            by_key[key] = len(kept)
            kept.append(row)
            continue
        summary.key_conflicts_collapsed += 1
        logger.warning(
            "Collapsed conflicting %s rows sharing key %s (line %s replaces line %s)",
            contract.table_name,
            key,
            row.source_line,
            kept[position].source_line,
            extra={"importer_job_id": job_id, "importer_table": contract.table_name, "importer_key": key},
        )
        kept[position] = row
    return kept


def _write_rows(
    store: ImportStore,
    contract: TableContract,
    operation: BatchOperation,
    rows: list[DeltaRow],
    *,
    job_id: str,
    policy: BatchSizingPolicy,
) -> None:
    total = len(rows)
    pending: list[dict[str, Any]] = []
    for position, row in enumerate(rows):
        payload = dict(row.values)
        payload.update(
            {
                "job_id": job_id,
                "operation": operation,
                "batch_number": policy.batch_number_for(contract.table_name, total, position),
                "processed": False,
                "sequence_number": position + 1,
            }
        )
        pending.append(payload)
        if len(pending) >= INSERT_CHUNK_SIZE:
            store.execute(insert(contract.staging_model), pending)
            pending = []
    if pending:
        store.execute(insert(contract.staging_model), pending)


def stage_table(
    store: ImportStore,
    job_id: str,
    contract: TableContract,
    package: KboPackage,
    policy: BatchSizingPolicy,
) -> TableStagingSummary:
    """
    Stage the delete and insert files of one package table.

    Returns the statistics and batch plans; nothing is committed here so the
    caller can roll back the whole prepare call on any failure.
    """

    summary = TableStagingSummary(table_name=contract.table_name)
    for operation in (BatchOperation.DELETE, BatchOperation.INSERT):
        op_summary = summary.delete if operation is BatchOperation.DELETE else summary.insert
        rows, skipped = _read_rows(package, contract, operation)
        op_summary.rows_read = len(rows)
        op_summary.rows_skipped_blank = skipped
        if operation is BatchOperation.DELETE:
            rows = _dedupe_deletes(contract, rows, op_summary)
        else:
            rows = _dedupe_inserts(contract, rows, op_summary, job_id=job_id)

        _write_rows(store, contract, operation, rows, job_id=job_id, policy=policy)
        op_summary.rows_staged = len(rows)
        plans = plan_batches(policy, contract.table_name, operation, len(rows))
        op_summary.batches = len(plans)
        summary.plans.extend(plans)

    logger.info(
        "Staged %s: %s delete rows, %s insert rows",
        contract.table_name,
        summary.delete.rows_staged,
        summary.insert.rows_staged,
        extra={
            "importer_job_id": job_id,
            "importer_table": contract.table_name,
            "importer_duplicates_removed": summary.insert.duplicates_removed + summary.delete.duplicates_removed,
            "importer_key_conflicts": summary.insert.key_conflicts_collapsed,
        },
    )
    return summary
