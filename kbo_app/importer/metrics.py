"""Prometheus metrics helpers for the importer."""

from __future__ import annotations

from typing import Literal

from prometheus_client import Counter, Histogram

_batches_counter = Counter(
    "importer_batches_total",
    "Number of import batches processed by table, operation and outcome.",
    ["table", "operation", "outcome"],
)
_batch_duration = Histogram(
    "importer_batch_duration_seconds",
    "Duration of import batch processing in seconds.",
    ["table", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30, 60),
)
_records_counter = Counter(
    "importer_records_applied_total",
    "Staged records applied to the registry by table and operation.",
    ["table", "operation"],
)
_jobs_prepared_counter = Counter(
    "importer_jobs_prepared_total",
    "Prepare calls by outcome.",
    ["outcome"],
)
_jobs_finalized_counter = Counter(
    "importer_jobs_finalized_total",
    "Finalize calls by outcome.",
    ["outcome"],
)
_names_resolved_counter = Counter(
    "importer_enterprise_names_resolved_total",
    "Enterprise primary names resolved from denominations at finalize.",
)


def record_batch(
    *,
    table: str,
    operation: str,
    outcome: Literal["success", "failure", "noop"],
    duration_seconds: float,
    record_count: int,
) -> None:
    """Capture metrics for one batch execution."""

    _batches_counter.labels(table=table, operation=operation, outcome=outcome).inc()
    _batch_duration.labels(table=table, operation=operation).observe(max(duration_seconds, 0.0))
    if outcome == "success" and record_count:
        _records_counter.labels(table=table, operation=operation).inc(record_count)


def record_job_prepared(outcome: Literal["success", "failure"]) -> None:
    _jobs_prepared_counter.labels(outcome=outcome).inc()


def record_job_finalized(outcome: Literal["success", "failure"], *, names_resolved: int = 0) -> None:
    _jobs_finalized_counter.labels(outcome=outcome).inc()
    if names_resolved:
        _names_resolved_counter.inc(names_resolved)
