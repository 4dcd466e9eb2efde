"""
Celery wiring for the delta-import poller.

Only ``importer.jobs.drive_import`` and the heartbeat run here. Every task
handles one micro-batch at most, so the time limits are sized for a single
worst-case batch, and a worker takes one message at a time so two batches of
the same job never sit prefetched on one process. Without a configured broker
the poller falls back to a SQLite file in the instance folder.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Mapping

from celery import Celery
from flask import Flask
from kombu import Queue

DEFAULT_QUEUE_NAME = "imports"
DEFAULT_SQLITE_FILENAME = "celery.sqlite"
TASK_MODULES = ("kbo_app.importer.tasks",)

# One batch per task; the soft limit leaves time to record a failed batch.
BATCH_TASK_TIME_LIMIT = 5 * 60
BATCH_TASK_SOFT_TIME_LIMIT = 4 * 60

NOISY_LOGGERS = ("celery.worker.strategy",)


def _sqlite_transport_path(app: Flask) -> Path:
    configured = app.config.get("CELERY_SQLITE_PATH")
    path = Path(configured) if configured else Path(DEFAULT_SQLITE_FILENAME)
    if not path.is_absolute():
        path = Path(app.instance_path) / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return path


def _transport_urls(app: Flask) -> tuple[str, str]:
    """Return ``(broker_url, result_backend)``, filling gaps with the SQLite transport."""

    broker_url = app.config.get("CELERY_BROKER_URL")
    result_backend = app.config.get("CELERY_RESULT_BACKEND")
    if broker_url and result_backend:
        return broker_url, result_backend

    # Celery wants forward slashes on every platform.
    location = _sqlite_transport_path(app).as_posix()
    return broker_url or f"sqla+sqlite:///{location}", result_backend or f"db+sqlite:///{location}"


def _load_extra_conf(app: Flask) -> Mapping[str, Any] | None:
    extra_conf: Mapping[str, Any] | str | None = app.config.get("CELERY_CONFIG")
    if isinstance(extra_conf, str):
        try:
            return json.loads(extra_conf)
        except json.JSONDecodeError:
            app.logger.warning("CELERY_CONFIG is not valid JSON; ignoring value.", exc_info=True)
            return None
    return extra_conf


def _poller_settings(app: Flask) -> dict[str, Any]:
    queue = Queue(DEFAULT_QUEUE_NAME)
    return {
        "task_default_queue": DEFAULT_QUEUE_NAME,
        "task_default_exchange": DEFAULT_QUEUE_NAME,
        "task_default_routing_key": DEFAULT_QUEUE_NAME,
        "task_queues": [queue],
        "task_routes": {"importer.*": {"queue": DEFAULT_QUEUE_NAME}},
        # A batch is only acknowledged once its transaction has committed.
        "task_acks_late": True,
        "worker_prefetch_multiplier": 1,
        "task_track_started": True,
        "result_extended": True,
        "broker_connection_retry_on_startup": True,
        "task_time_limit": app.config.get("IMPORTER_TASK_TIME_LIMIT", BATCH_TASK_TIME_LIMIT),
        "task_soft_time_limit": app.config.get("IMPORTER_TASK_SOFT_TIME_LIMIT", BATCH_TASK_SOFT_TIME_LIMIT),
        "task_always_eager": bool(app.config.get("CELERY_TASK_ALWAYS_EAGER", False)),
        "task_eager_propagates": True,
        "worker_log_format": "[%(asctime)s: %(levelname)s/%(processName)s] %(message)s",
        "worker_task_log_format": (
            "[%(asctime)s: %(levelname)s/%(processName)s][%(task_name)s(%(task_id)s)] %(message)s"
        ),
        "worker_hijack_root_logger": False,
    }


def _quiet_batch_loggers(app: Flask) -> None:
    # Each batch issues many small statements.
    if not app.config.get("SQLALCHEMY_ECHO", False):
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def create_celery_app(app: Flask) -> Celery:
    """
    Build the poller's Celery instance for ``app``.

    Tasks execute inside an application context so they go through the same
    importer operations (and ``db.session``) as the CLI and HTTP layers.
    """
    broker_url, result_backend = _transport_urls(app)
    celery_app = Celery(app.import_name, broker=broker_url, backend=result_backend, include=TASK_MODULES)
    celery_app.conf.update(_poller_settings(app))

    extra_conf = _load_extra_conf(app)
    if extra_conf:
        celery_app.conf.update(extra_conf)
    app.logger.info(
        "Import poller Celery app configured",
        extra={
            "importer_celery_extra_conf": extra_conf,
            "importer_celery_broker_url": broker_url,
            "importer_celery_result_backend": result_backend,
            "importer_worker_enabled": app.config.get("IMPORTER_WORKER_ENABLED"),
        },
    )
    _quiet_batch_loggers(app)

    class AppContextTask(celery_app.Task):  # type: ignore[misc]
        def __call__(self, *args, **kwargs):
            with app.app_context():
                return super().__call__(*args, **kwargs)

    celery_app.Task = AppContextTask  # type: ignore[assignment]
    celery_app.loader.import_default_modules()
    return celery_app


def ensure_celery_app(app: Flask, state: dict[str, Any]) -> Celery:
    """Create the poller app once and keep it on the importer extension state."""

    if state.get("celery_app") is None:
        state["celery_app"] = create_celery_app(app)
    return state["celery_app"]


def get_celery_app(app: Flask) -> Celery | None:
    """Return the poller app, or ``None`` when the importer is not installed on ``app``."""

    state: dict[str, Any] | None = app.extensions.get("importer")  # type: ignore[arg-type]
    if not state:
        return None
    if state.get("celery_app") is None and state.get("enabled"):
        return ensure_celery_app(app, state)
    return state.get("celery_app")
