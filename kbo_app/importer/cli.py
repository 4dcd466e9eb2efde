"""
Operator CLI for the batched KBO importer (``flask importer ...``).

Each command performs one importer operation, except ``run`` which loops
over single-batch calls the same way the Celery poller does.
"""

from __future__ import annotations

import json
import time
from contextlib import contextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any, Iterator, Optional

import click
from celery import Celery
from celery.exceptions import TimeoutError as CeleryTimeoutError
from flask.cli import ScriptInfo

from kbo_app.importer.celery_app import DEFAULT_QUEUE_NAME, get_celery_app
from kbo_app.importer.errors import ImporterError, format_user_error
from kbo_app.importer.pipeline import service
from kbo_app.importer.pipeline.job_service import ImportJobService, JobFilters
from kbo_app.models import BatchOperation, ImportJobStatus
from kbo_app.utils.importer import get_worker_types, is_importer_enabled

DEFAULT_RUN_DELAY_SECONDS = 0.5


@click.group(name="importer", invoke_without_command=True)
@click.pass_context
def importer_cli(ctx):
    """
    KBO delta importer commands.

    Lists the accepted worker types when invoked without a subcommand.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    if not is_importer_enabled(app):
        raise click.ClickException(
            "Importer is disabled via IMPORTER_ENABLED=false. Enable it to run importer CLI commands."
        )
    if ctx.invoked_subcommand is None:
        click.echo("Accepted worker types:")
        for worker_type in get_worker_types(app):
            click.echo(f"  - {worker_type}")


def get_disabled_importer_group() -> click.Group:
    """
    Return a minimal command group that informs the operator the importer is disabled.
    """

    @click.group(name="importer", invoke_without_command=True)
    def disabled_group():
        raise click.ClickException("Importer commands are unavailable because IMPORTER_ENABLED=false.")

    return disabled_group


@contextmanager
def _importer_call(ctx: click.Context) -> Iterator[Any]:
    """Push an app context and surface importer failures as click errors."""
    app = ctx.ensure_object(ScriptInfo).load_app()
    with app.app_context():
        try:
            yield app
        except ImporterError as exc:
            raise click.ClickException(format_user_error(exc)) from exc


def _echo_payload(payload: dict[str, Any], as_json: bool, lines: list[str]) -> None:
    if as_json:
        click.echo(json.dumps(payload, indent=2, default=str))
        return
    for line in lines:
        click.echo(line)


def _resolve_celery(app) -> Optional[Celery]:
    celery_app = get_celery_app(app)
    if celery_app is None:
        raise click.ClickException(
            "Importer Celery app is unavailable. Ensure IMPORTER_ENABLED=true and the "
            "importer package initialises before running worker commands."
        )
    return celery_app


@importer_cli.command("prepare")
@click.argument("package_path", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--worker", "worker_type", help="Worker type that owns the job (defaults to IMPORTER_DEFAULT_WORKER_TYPE).")
@click.option("--json", "as_json", is_flag=True, help="Print a machine-readable payload.")
@click.pass_context
def importer_prepare(ctx, package_path: Path, worker_type: Optional[str], as_json: bool):
    """Validate and stage a delta package, creating its job and batches."""
    with _importer_call(ctx):
        result = service.prepare_import(package_path.resolve(), worker_type)
    lines = [
        f"Prepared job {result.job_id} for extract {result.extract_number} ({result.snapshot_date.isoformat()}).",
        f"  Total batches: {result.total_batches}",
    ]
    for table, counts in sorted(result.batches_by_table.items()):
        lines.append(
            f"  {table}: {counts.get(BatchOperation.DELETE.value, 0)} delete / "
            f"{counts.get(BatchOperation.INSERT.value, 0)} insert batches"
        )
    for skipped in result.skipped_tables:
        lines.append(f"  Skipped unknown table: {skipped}")
    _echo_payload(result.as_dict(), as_json, lines)


@importer_cli.command("process-batch")
@click.argument("job_id")
@click.option("--table", help="Store table of the batch to process.")
@click.option("--batch", "batch_number", type=click.IntRange(min=1), help="Batch number to process.")
@click.option(
    "--operation",
    type=click.Choice([operation.value for operation in BatchOperation]),
    help="Operation of the batch (delete runs before insert when omitted).",
)
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
def importer_process_batch(
    ctx, job_id: str, table: Optional[str], batch_number: Optional[int], operation: Optional[str], as_json: bool
):
    """Process one batch: the next pending one, or the batch named by the options."""
    with _importer_call(ctx):
        result = service.process_batch(job_id, table=table, batch_number=batch_number, operation=operation)
    verb = "Already completed" if result.already_completed else "Processed"
    lines = [
        f"{verb} {result.table_name}#{result.batch_number} ({result.operation.value}): "
        f"{result.records_processed} records.",
        f"  Progress: {result.completed_batches}/{result.total_batches} ({result.percentage}%)",
        f"  Next batch: {result.next_batch or 'none'}",
    ]
    _echo_payload(result.as_dict(), as_json, lines)


@importer_cli.command("progress")
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
def importer_progress(ctx, job_id: str, as_json: bool):
    """Show batch progress for a job."""
    with _importer_call(ctx):
        progress = service.get_import_progress(job_id)
    lines = [
        f"Job {progress.job_id}: {progress.status.value}",
        f"  Batches: {progress.completed_batches}/{progress.total_batches} ({progress.percentage}%), "
        f"{progress.failed_batches} failed",
    ]
    for table, table_progress in sorted(progress.tables.items()):
        lines.append(f"  {table}: {table_progress.completed}/{table_progress.total} ({table_progress.status})")
    if progress.current_batch:
        lines.append(f"  Current batch: {progress.current_batch}")
    lines.append(f"  Next batch: {progress.next_batch or 'none'}")
    _echo_payload(progress.as_dict(), as_json, lines)


@importer_cli.command("finalize")
@click.argument("job_id")
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
def importer_finalize(ctx, job_id: str, as_json: bool):
    """Resolve primary names, mark the job completed and purge its staging rows."""
    with _importer_call(ctx):
        result = service.finalize_import(job_id)
    lines = [
        f"Finalized job {result.job_id}.",
        f"  Primary names resolved: {result.names_resolved}",
        f"  Staging cleaned: {'yes' if result.staging_cleaned else 'no'} ({result.staged_rows_removed} rows)",
    ]
    _echo_payload(result.as_dict(), as_json, lines)


@importer_cli.command("run")
@click.argument("job_id")
@click.option(
    "--delay",
    type=click.FloatRange(min=0),
    default=DEFAULT_RUN_DELAY_SECONDS,
    show_default=True,
    help="Seconds to wait between batches.",
)
@click.option("--max-batches", type=click.IntRange(min=1), help="Stop after this many batches.")
@click.pass_context
def importer_run(ctx, job_id: str, delay: float, max_batches: Optional[int]):
    """
    Drive a prepared job to completion, one batch per call, then finalize.
    """
    processed = 0
    with _importer_call(ctx):
        while True:
            progress = service.get_import_progress(job_id)
            if progress.failed_batches:
                raise click.ClickException(
                    f"Job {job_id} has {progress.failed_batches} failed batch(es); "
                    "run 'flask importer retry-failed' before continuing."
                )
            if progress.next_batch is None:
                break
            if max_batches is not None and processed >= max_batches:
                click.echo(f"Stopped after {processed} batches ({progress.percentage}% complete).")
                return
            result = service.process_batch(job_id)
            processed += 1
            click.echo(
                f"[{result.percentage:3d}%] {result.table_name}#{result.batch_number} "
                f"({result.operation.value}): {result.records_processed} records"
            )
            if delay:
                time.sleep(delay)

        if not progress.is_complete:
            raise click.ClickException(
                f"Job {job_id} still has batches in progress; rerun once they complete."
            )
        result = service.finalize_import(job_id)
    click.echo(
        f"Job {job_id} completed after {processed} batches; {result.names_resolved} primary names resolved."
    )


@importer_cli.command("retry-failed")
@click.argument("job_id")
@click.pass_context
def importer_retry_failed(ctx, job_id: str):
    """Return failed batches to pending so they are processed again."""
    with _importer_call(ctx):
        count = service.retry_failed_batches(job_id)
    click.echo(f"Reset {count} failed batch(es) to pending for job {job_id}.")


@importer_cli.command("recover-stale")
@click.argument("job_id")
@click.option(
    "--older-than",
    "older_than_seconds",
    type=click.IntRange(min=0),
    help="Age in seconds after which a processing batch is considered orphaned.",
)
@click.pass_context
def importer_recover_stale(ctx, job_id: str, older_than_seconds: Optional[int]):
    """Return orphaned processing batches to pending."""
    older_than = timedelta(seconds=older_than_seconds) if older_than_seconds is not None else None
    with _importer_call(ctx):
        count = service.recover_stale_batches(job_id, older_than)
    click.echo(f"Recovered {count} stale batch(es) for job {job_id}.")


@importer_cli.command("abandon")
@click.argument("job_id")
@click.option("--reason", required=True, help="Why the job is being abandoned.")
@click.pass_context
def importer_abandon(ctx, job_id: str, reason: str):
    """Mark a job failed and purge its staging rows."""
    with _importer_call(ctx):
        removed = service.abandon_job(job_id, reason)
    click.echo(f"Abandoned job {job_id}; removed {removed} staged rows.")


@importer_cli.command("jobs")
@click.option(
    "--status",
    "statuses",
    multiple=True,
    type=click.Choice([status.value for status in ImportJobStatus]),
    help="Filter by job status (repeatable).",
)
@click.option("--page", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--page-size", type=click.IntRange(min=1), default=25, show_default=True)
@click.option("--json", "as_json", is_flag=True)
@click.pass_context
def importer_jobs(ctx, statuses: tuple[str, ...], page: int, page_size: int, as_json: bool):
    """List import jobs, newest extract first."""
    with _importer_call(ctx):
        filters = JobFilters.coerce(page=page, page_size=page_size, statuses=statuses)
        result = ImportJobService().list_jobs(filters)
    lines = [f"{result.total} job(s), page {result.page}/{max(result.total_pages, 1)}"]
    for item in result.items:
        lines.append(
            f"  {item.id}  extract {item.extract_number}  {item.status:<10}  "
            f"{item.batches_completed}/{item.batches_total} batches ({item.percentage}%)"
        )
    _echo_payload(result.as_dict(), as_json, lines)


@importer_cli.group(name="worker")
@click.pass_context
def worker_group(ctx):
    """Manage the importer background worker."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    state = app.extensions.get("importer", {})
    if not state.get("worker_enabled") and not app.config.get("IMPORTER_WORKER_ENABLED"):
        click.echo(
            "Warning: IMPORTER_WORKER_ENABLED is false. Commands will still run, "
            "but enable the flag to surface accurate health status.",
            err=True,
        )


@worker_group.command("run")
@click.option("--loglevel", default="info", show_default=True)
@click.option("--concurrency", type=int, help="Number of worker processes/threads.")
@click.option("--pool", type=str, help="Celery pool implementation (e.g., 'prefork', 'solo', 'threads').")
@click.option("--queues", default=DEFAULT_QUEUE_NAME, show_default=True, help="Comma-separated queue list to consume.")
@click.pass_context
def worker_run(ctx, loglevel: str, concurrency: Optional[int], pool: Optional[str], queues: str):
    """
    Start the Celery worker in the current process.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    app.extensions.setdefault("importer", {})["worker_enabled"] = True

    argv = ["worker", "--loglevel", loglevel, "-Q", queues]
    if concurrency:
        argv.extend(["--concurrency", str(concurrency)])
    if pool:
        argv.extend(["--pool", pool])

    pool_msg = f", pool: {pool}" if pool else ""
    click.echo(f"Starting importer worker (queues: {queues}, loglevel: {loglevel}{pool_msg})")
    try:
        celery_app.worker_main(argv=argv)
    except KeyboardInterrupt:
        click.echo("Worker shutdown requested. Exiting...")


@worker_group.command("ping")
@click.option("--timeout", default=10.0, show_default=True, help="Seconds to wait for a response.")
@click.pass_context
def worker_ping(ctx, timeout: float):
    """
    Validate worker connectivity by executing the heartbeat task.
    """
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.healthcheck")
    if task is None:
        raise click.ClickException("Heartbeat task 'importer.healthcheck' is not registered.")

    result = task.apply_async()
    try:
        payload = result.get(timeout=timeout)
    except CeleryTimeoutError as exc:
        raise click.ClickException(f"Worker did not respond within {timeout}s") from exc

    click.echo(json.dumps(payload, indent=2))


@worker_group.command("drive")
@click.argument("job_id")
@click.pass_context
def worker_drive(ctx, job_id: str):
    """Hand a prepared job to the worker's automated poller."""
    info = ctx.ensure_object(ScriptInfo)
    app = info.load_app()
    celery_app = _resolve_celery(app)
    task = celery_app.tasks.get("importer.jobs.drive_import")
    if task is None:
        raise click.ClickException("Task 'importer.jobs.drive_import' is not registered.")
    async_result = task.apply_async(args=(job_id,))
    click.echo(f"Queued job {job_id} for automated processing (task {async_result.id}).")
