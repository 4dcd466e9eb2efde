"""
Batch sizing and batch tracking rows.

The sizing policy is an immutable value built once from configuration and
passed explicitly to whoever needs it, so every prepare call within a
process sees the same decisions.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping

from sqlalchemy import insert

from kbo_app.importer.store import ImportStore
from kbo_app.models import BatchOperation, BatchStatus, ImportJobBatch

DEFAULT_BATCH_SIZES: Mapping[str, int] = MappingProxyType(
    {
        "activities": 500,
        "addresses": 1000,
        "branches": 1000,
        "contacts": 1000,
        "denominations": 1000,
        "enterprises": 2000,
        "establishments": 2000,
    }
)
DEFAULT_BATCH_SIZE = 1000
DEFAULT_SMALL_FILE_THRESHOLD = 5000


def _freeze(sizes: Mapping[str, int]) -> Mapping[str, int]:
    return MappingProxyType({str(table): int(size) for table, size in sizes.items()})


@dataclass(frozen=True)
class BatchSizingPolicy:
    """Per-table batch sizes plus the small-file collapse rule."""

    sizes: Mapping[str, int] = field(default_factory=lambda: DEFAULT_BATCH_SIZES)
    default_size: int = DEFAULT_BATCH_SIZE
    small_file_threshold: int = DEFAULT_SMALL_FILE_THRESHOLD

    def __post_init__(self) -> None:
        if not isinstance(self.sizes, MappingProxyType):
            object.__setattr__(self, "sizes", _freeze(self.sizes))
        invalid = sorted(table for table, size in self.sizes.items() if size < 1)
        if invalid or self.default_size < 1:
            raise ValueError(f"Batch sizes must be positive (invalid: {', '.join(invalid) or 'default'}).")
        if self.small_file_threshold < 0:
            raise ValueError("Small-file threshold cannot be negative.")

    @classmethod
    def from_config(cls, config: Mapping[str, Any]) -> "BatchSizingPolicy":
        sizes = dict(DEFAULT_BATCH_SIZES)
        sizes.update(config.get("IMPORTER_BATCH_SIZES") or {})
        return cls(
            sizes=sizes,
            default_size=int(config.get("IMPORTER_DEFAULT_BATCH_SIZE", DEFAULT_BATCH_SIZE)),
            small_file_threshold=int(config.get("IMPORTER_SMALL_FILE_THRESHOLD", DEFAULT_SMALL_FILE_THRESHOLD)),
        )

    def configured_size(self, table_name: str) -> int:
        return self.sizes.get(table_name, self.default_size)

    def effective_batch_size(self, table_name: str, record_count: int) -> int:
        """Records per batch for ``record_count`` rows of one (table, operation)."""

        if record_count < self.small_file_threshold:
            return max(record_count, 1)
        return self.configured_size(table_name)

    def batch_count(self, table_name: str, record_count: int) -> int:
        if record_count <= 0:
            return 0
        return math.ceil(record_count / self.effective_batch_size(table_name, record_count))

    def batch_number_for(self, table_name: str, record_count: int, position: int) -> int:
        """1-based batch number of the record at 0-based ``position``."""

        return position // self.effective_batch_size(table_name, record_count) + 1


@dataclass(frozen=True)
class BatchPlan:
    table_name: str
    operation: BatchOperation
    batch_number: int
    records_count: int


def plan_batches(
    policy: BatchSizingPolicy,
    table_name: str,
    operation: BatchOperation,
    record_count: int,
) -> list[BatchPlan]:
    """Split ``record_count`` rows into batches numbered 1..N; the last holds the remainder."""

    count = policy.batch_count(table_name, record_count)
    if count == 0:
        return []
    size = policy.effective_batch_size(table_name, record_count)
    plans: list[BatchPlan] = []
    for index in range(count):
        remaining = record_count - index * size
        plans.append(
            BatchPlan(
                table_name=table_name,
                operation=operation,
                batch_number=index + 1,
                records_count=min(size, remaining),
            )
        )
    return plans


def create_batch_records(store: ImportStore, job_id: str, plans: Iterable[BatchPlan]) -> int:
    """Persist one ``pending`` tracking row per planned batch."""

    rows = [
        {
            "job_id": job_id,
            "table_name": plan.table_name,
            "batch_number": plan.batch_number,
            "operation": plan.operation,
            "status": BatchStatus.PENDING,
            "records_count": plan.records_count,
            "records_processed": 0,
            "attempts": 0,
        }
        for plan in plans
    ]
    if rows:
        store.execute(insert(ImportJobBatch), rows)
    return len(rows)
