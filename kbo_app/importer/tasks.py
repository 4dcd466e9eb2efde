"""
Importer Celery tasks.

``drive_import`` is the automated poller: one batch per task invocation,
then it re-enqueues itself until the job can be finalized. Every invocation
goes through the same operation surface as the CLI and HTTP layers.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from kbo_app.importer.errors import BatchConflictError, BatchExecutionError, PreconditionError
from kbo_app.importer.pipeline.service import finalize_import, get_import_progress, process_batch

DEFAULT_POLL_DELAY_SECONDS = 2


def _reschedule(task, job_id: str) -> int:
    delay = int(current_app.config.get("IMPORTER_POLL_DELAY_SECONDS", DEFAULT_POLL_DELAY_SECONDS))
    task.apply_async(args=(job_id,), countdown=delay)
    return delay


@shared_task(name="importer.healthcheck", bind=True)
def importer_healthcheck(self) -> dict[str, Any]:
    """
    Simple heartbeat task used by worker health checks.
    """
    now = datetime.now(timezone.utc)
    return {
        "status": "ok",
        "timestamp": now.isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": getattr(self.app, "user_options", {}).get("version"),
    }


@shared_task(name="importer.jobs.drive_import", bind=True)
def drive_import(self, job_id: str) -> dict[str, Any]:
    """
    Advance ``job_id`` by exactly one step.

    Processes the next pending batch and schedules the next invocation, or
    finalizes once every batch is completed. A failed batch stops the chain;
    operators decide whether to retry it.
    """

    progress = get_import_progress(job_id)
    if progress.failed_batches:
        current_app.logger.warning(
            "Import job %s has failed batches; automatic processing stopped",
            job_id,
            extra={"importer_job_id": job_id, "importer_failed_batches": progress.failed_batches},
        )
        return {"job_id": job_id, "action": "stopped", "reason": "failed_batches"}

    if progress.next_batch is None:
        if not progress.is_complete:
            # Another caller holds the last batch; check again once it is done.
            delay = _reschedule(self, job_id)
            return {"job_id": job_id, "action": "waiting", "progress": progress.percentage, "retry_in": delay}
        result = finalize_import(job_id)
        current_app.logger.info(
            "Import job %s finalized by worker",
            job_id,
            extra={"importer_job_id": job_id, "importer_names_resolved": result.names_resolved},
        )
        return {"job_id": job_id, "action": "finalized", "result": result.as_dict()}

    try:
        batch = process_batch(job_id)
    except BatchExecutionError as exc:
        current_app.logger.error(
            "Import job %s stopped on failed batch",
            job_id,
            extra={"importer_job_id": job_id, "importer_error": str(exc)},
        )
        return {"job_id": job_id, "action": "stopped", "reason": str(exc)}
    except BatchConflictError as exc:
        current_app.logger.info(
            "Import job %s lost a batch claim; retrying later",
            job_id,
            extra={"importer_job_id": job_id, "importer_error": str(exc)},
        )
        delay = _reschedule(self, job_id)
        return {"job_id": job_id, "action": "waiting", "reason": str(exc), "retry_in": delay}
    except PreconditionError as exc:
        return {"job_id": job_id, "action": "stopped", "reason": str(exc)}

    _reschedule(self, job_id)
    return {"job_id": job_id, "action": "processed", "result": batch.as_dict()}
