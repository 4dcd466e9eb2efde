"""
Operation surface of the batched importer.

Each function is one short, discrete call: it acquires a store for the
duration of the call, runs exactly one pipeline step and releases the
store on every exit path. The CLI, the HTTP blueprint and the Celery
poller all go through these functions.
"""

from __future__ import annotations

import logging
from datetime import timedelta
from pathlib import Path
from typing import Any, Mapping

from flask import current_app
from sqlalchemy.orm import Session

from kbo_app.importer.adapters import KboPackage, PackageError
from kbo_app.importer.errors import ValidationError
from kbo_app.importer.metrics import record_job_prepared
from kbo_app.importer.store import open_store
from kbo_app.models import BatchOperation, ExtractType
from kbo_app.utils.importer import get_worker_types

from . import recovery
from .executor import ProcessBatchResult, execute_batch
from .finalize import FinalizeResult, finalize_job
from .planner import BatchSizingPolicy
from .prepare import PrepareResult, prepare_job
from .progress import ImportProgress, get_progress

logger = logging.getLogger(__name__)

DEFAULT_STALE_BATCH_SECONDS = 15 * 60
PackageSource = KboPackage | str | Path | bytes


def _config() -> Mapping[str, Any]:
    return current_app.config


def get_sizing_policy() -> BatchSizingPolicy:
    """Return the policy cached on the importer extension, building it from config if absent."""

    state = current_app.extensions.get("importer")
    policy = state.get("sizing_policy") if state else None
    if policy is None:
        policy = BatchSizingPolicy.from_config(_config())
        if state is not None:
            state["sizing_policy"] = policy
    return policy


def _open_package(source: PackageSource) -> tuple[KboPackage, bool]:
    if isinstance(source, KboPackage):
        return source, False
    try:
        if isinstance(source, bytes):
            return KboPackage.from_bytes(source), True
        return KboPackage.from_path(source), True
    except PackageError as exc:
        raise ValidationError(str(exc)) from exc


def prepare_import(
    package: PackageSource,
    worker_type: str | None = None,
    *,
    expected_type: ExtractType | str | None = ExtractType.UPDATE,
    session: Session | None = None,
) -> PrepareResult:
    """Validate ``package``, stage it and create its job and batch plan."""

    config = _config()
    resolved_worker = worker_type or config.get("IMPORTER_DEFAULT_WORKER_TYPE", "local")
    opened, owned = _open_package(package)
    try:
        with open_store(session) as store:
            result = prepare_job(
                store,
                opened,
                worker_type=resolved_worker,
                policy=get_sizing_policy(),
                worker_types=get_worker_types(current_app),
                expected_type=expected_type,
            )
    except Exception:
        record_job_prepared("failure")
        raise
    finally:
        if owned:
            opened.close()
    record_job_prepared("success")
    return result


def process_batch(
    job_id: str,
    table: str | None = None,
    batch_number: int | None = None,
    operation: BatchOperation | str | None = None,
    *,
    session: Session | None = None,
) -> ProcessBatchResult:
    """Process exactly one batch of ``job_id``."""

    with open_store(session) as store:
        return execute_batch(store, job_id, table=table, batch_number=batch_number, operation=operation)


def get_import_progress(job_id: str, *, session: Session | None = None) -> ImportProgress:
    with open_store(session) as store:
        return get_progress(store, job_id)


def finalize_import(job_id: str, *, session: Session | None = None) -> FinalizeResult:
    with open_store(session) as store:
        return finalize_job(store, job_id)


def retry_failed_batches(job_id: str, *, session: Session | None = None) -> int:
    with open_store(session) as store:
        return recovery.retry_failed_batches(store, job_id)


def recover_stale_batches(
    job_id: str,
    older_than: timedelta | None = None,
    *,
    session: Session | None = None,
) -> int:
    if older_than is None:
        seconds = int(_config().get("IMPORTER_STALE_BATCH_SECONDS", DEFAULT_STALE_BATCH_SECONDS))
        older_than = timedelta(seconds=seconds)
    with open_store(session) as store:
        return recovery.recover_stale_batches(store, job_id, older_than)


def abandon_job(job_id: str, reason: str, *, session: Session | None = None) -> int:
    with open_store(session) as store:
        return recovery.abandon_job(store, job_id, reason)
