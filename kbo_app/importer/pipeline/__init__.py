"""
Importer pipeline package: prepare, execute, report and finalize delta imports.
"""

from .executor import ProcessBatchResult, execute_batch
from .finalize import FinalizeResult, finalize_job, resolve_primary_names
from .job_service import ImportJobService, JobFilters, JobListResult, JobSummary
from .metadata import ExtractMetadata, parse_manifest, read_manifest_csv
from .planner import BatchPlan, BatchSizingPolicy, create_batch_records, plan_batches
from .prepare import PrepareResult, prepare_job
from .progress import BatchRef, ImportProgress, TableProgress, get_progress
from .recovery import purge_staging
from .service import (
    abandon_job,
    finalize_import,
    get_import_progress,
    get_sizing_policy,
    prepare_import,
    process_batch,
    recover_stale_batches,
    retry_failed_batches,
)
from .staging import OperationStagingSummary, TableStagingSummary, stage_table
from .temporal_query import current_rows, extract_number_for_date, rows_as_of, versions_of

__all__ = [
    "BatchPlan",
    "BatchRef",
    "BatchSizingPolicy",
    "ExtractMetadata",
    "FinalizeResult",
    "ImportJobService",
    "ImportProgress",
    "JobFilters",
    "JobListResult",
    "JobSummary",
    "OperationStagingSummary",
    "PrepareResult",
    "ProcessBatchResult",
    "TableProgress",
    "TableStagingSummary",
    "abandon_job",
    "create_batch_records",
    "current_rows",
    "execute_batch",
    "extract_number_for_date",
    "finalize_import",
    "finalize_job",
    "get_import_progress",
    "get_progress",
    "get_sizing_policy",
    "parse_manifest",
    "plan_batches",
    "prepare_import",
    "prepare_job",
    "process_batch",
    "purge_staging",
    "read_manifest_csv",
    "recover_stale_batches",
    "resolve_primary_names",
    "retry_failed_batches",
    "rows_as_of",
    "stage_table",
    "versions_of",
]
