"""
Utility helpers for importer feature flag checks.
"""

from __future__ import annotations

from typing import Iterable, Tuple

from flask import current_app

DEFAULT_WORKER_TYPES: Tuple[str, ...] = ("local", "vercel", "backfill", "web_manual")


def _get_config(app=None):
    if app is not None:
        return app.config
    return current_app.config


def is_importer_enabled(app=None) -> bool:
    """Return True when the importer feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("IMPORTER_ENABLED", False))


def get_worker_types(app=None) -> Tuple[str, ...]:
    """Return the worker types allowed to own an import job."""
    config = _get_config(app)
    worker_types: Iterable[str] = config.get("IMPORTER_WORKER_TYPES") or DEFAULT_WORKER_TYPES
    return tuple(worker_types)
