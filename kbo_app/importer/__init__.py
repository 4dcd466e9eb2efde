"""
KBO delta importer feature package.

Provides conditional blueprint and CLI registration, and caches the batch
sizing policy and Celery app on ``app.extensions['importer']``.
"""

from __future__ import annotations

from flask import Flask

from kbo_app.utils.importer import get_worker_types, is_importer_enabled

from .celery_app import ensure_celery_app, get_celery_app
from .cli import get_disabled_importer_group, importer_cli
from .pipeline.job_service import ImportJobService, JobFilters
from .pipeline.planner import BatchSizingPolicy
from .views import importer_blueprint

IMPORTER_EXTENSION_KEY = "importer"

__all__ = [
    "init_importer",
    "IMPORTER_EXTENSION_KEY",
    "get_celery_app",
    "ImportJobService",
    "JobFilters",
]


def _ensure_extension_state(app: Flask) -> dict:
    return app.extensions.setdefault(
        IMPORTER_EXTENSION_KEY,
        {
            "enabled": False,
            "worker_enabled": False,
            "worker_types": (),
            "celery_app": None,
            "sizing_policy": None,
        },
    )


def _set_cli(app: Flask, enabled: bool) -> None:
    """Register the appropriate CLI group based on flag state."""
    # Avoid duplicate registrations when running tests
    command_name = importer_cli.name
    if command_name in app.cli.commands:
        app.cli.commands.pop(command_name)

    if enabled:
        app.cli.add_command(importer_cli)
    else:
        app.cli.add_command(get_disabled_importer_group())


def init_importer(app: Flask) -> None:
    """
    Conditionally mount the importer blueprint and CLI based on configuration.

    The sizing policy is built once here from ``IMPORTER_BATCH_SIZES`` and
    friends; a misconfigured size fails application start-up.
    """
    enabled = is_importer_enabled(app)
    state = _ensure_extension_state(app)
    state.update(
        {
            "enabled": enabled,
            "worker_enabled": bool(app.config.get("IMPORTER_WORKER_ENABLED", False)),
            "worker_types": get_worker_types(app),
        }
    )

    if not enabled:
        _set_cli(app, enabled=False)
        app.logger.info("Importer disabled via IMPORTER_ENABLED flag; skipping registration.")
        return

    state["sizing_policy"] = BatchSizingPolicy.from_config(app.config)
    ensure_celery_app(app, state)

    if importer_blueprint.name not in app.blueprints and not getattr(app, "_got_first_request", False):
        app.register_blueprint(importer_blueprint)
    elif importer_blueprint.name not in app.blueprints:
        app.logger.warning(
            "Importer blueprint registration skipped because the app has already handled its first request."
        )
    _set_cli(app, enabled=True)

    app.logger.info(
        "Importer enabled for worker types: %s",
        ", ".join(state["worker_types"]) or "none",
        extra={"importer_worker_types": list(state["worker_types"])},
    )
