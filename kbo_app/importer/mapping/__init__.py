"""Utilities for loading and applying the KBO package mapping."""

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import date, datetime
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

import yaml
from flask import current_app, has_app_context

DEFAULT_MAPPING_PATH = Path(__file__).resolve().parents[3] / "config" / "mappings" / "kbo_delta_v1.yaml"

KBO_DATE_FORMAT = "%d-%m-%Y"
KBO_TIME_FORMAT = "%H:%M:%S"
_KBO_DATE_PATTERN = re.compile(r"^\d{2}-\d{2}-\d{4}$")
_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")

ESTABLISHMENT_PREFIX = "2."


class MappingLoadError(RuntimeError):
    """Raised when a mapping specification cannot be loaded or validated."""


@dataclass(frozen=True)
class MappingSpec:
    version: int
    adapter: str
    tables: Mapping[str, str]
    columns: Mapping[str, str]
    checksum: str
    path: Path

    def store_table(self, package_table: str) -> str:
        return self.tables.get(package_table, package_table)

    def store_column(self, header: str) -> str:
        override = self.columns.get(header)
        if override:
            return override
        return _CAMEL_BOUNDARY.sub("_", header).lower()


def load_mapping(path: str | Path) -> MappingSpec:
    """
    Load and validate a YAML mapping specification.
    """

    path = Path(path)
    if not path.exists():
        raise MappingLoadError(f"Mapping file not found at {path}")

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:  # pragma: no cover - YAML parser errors
        raise MappingLoadError(f"Failed to parse mapping YAML at {path}: {exc}") from exc

    try:
        version = int(raw["version"])
        adapter = str(raw.get("adapter", "kbo")).strip()
        tables_payload = raw["tables"]
    except KeyError as exc:
        raise MappingLoadError(f"Missing required mapping attribute: {exc}") from exc
    except (TypeError, ValueError) as exc:
        raise MappingLoadError(f"Invalid mapping attribute: {exc}") from exc

    if not isinstance(tables_payload, Mapping) or not tables_payload:
        raise MappingLoadError("Mapping 'tables' must be a non-empty mapping.")
    columns_payload = raw.get("columns") or {}
    if not isinstance(columns_payload, Mapping):
        raise MappingLoadError("Mapping 'columns' must be a mapping.")

    tables = {str(key).strip(): str(value).strip() for key, value in tables_payload.items()}
    columns = {str(key).strip(): str(value).strip() for key, value in columns_payload.items()}
    seen_targets: set[str] = set()
    for target in tables.values():
        if target in seen_targets:
            raise MappingLoadError(f"Duplicate target table '{target}' in mapping.")
        seen_targets.add(target)

    return MappingSpec(
        version=version,
        adapter=adapter,
        tables=tables,
        columns=columns,
        checksum=_compute_checksum(raw),
        path=path,
    )


@lru_cache(maxsize=4)
def _load_cached(path: str, mtime: float) -> MappingSpec:
    return load_mapping(path)


def get_active_mapping() -> MappingSpec:
    """
    Return the configured mapping spec.

    Uses ``IMPORTER_MAPPING_PATH`` inside an app context and the bundled
    mapping otherwise. Specs are cached until the file changes on disk.
    """

    configured = None
    if has_app_context():
        configured = current_app.config.get("IMPORTER_MAPPING_PATH")
    path = Path(configured) if configured else DEFAULT_MAPPING_PATH
    if not path.exists():
        raise MappingLoadError(f"Mapping file not found at {path}")
    return _load_cached(str(path), path.stat().st_mtime)


def _compute_checksum(payload: Mapping[str, Any]) -> str:
    serialized = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def csv_table_to_db_table(package_table: str, spec: MappingSpec | None = None) -> str:
    """Map a package file table name (``enterprise``) to its store table (``enterprises``)."""

    return (spec or get_active_mapping()).store_table(package_table)


def csv_column_to_db_column(header: str, spec: MappingSpec | None = None) -> str:
    """Map a source header (``TypeOfDenomination``) to its store column (``denomination_type``)."""

    return (spec or get_active_mapping()).store_column(header)


def compute_entity_type(entity_number: str) -> str:
    """Establishment numbers start with ``2.``; everything else is an enterprise."""

    return "establishment" if entity_number.startswith(ESTABLISHMENT_PREFIX) else "enterprise"


def is_kbo_date(value: str) -> bool:
    return bool(_KBO_DATE_PATTERN.match(value or ""))


def convert_kbo_date(value: str) -> date:
    """Parse a ``DD-MM-YYYY`` registry date, raising ``ValueError`` otherwise."""

    if not is_kbo_date(value):
        raise ValueError(f"Expected DD-MM-YYYY date, got {value!r}")
    return datetime.strptime(value, KBO_DATE_FORMAT).date()


def short_hash(text: str) -> str:
    """First eight hex characters of the MD5 digest of ``text``, as KBO consumers build denomination ids."""

    return hashlib.md5(text.encode("utf-8"), usedforsecurity=False).hexdigest()[:8]


__all__ = [
    "DEFAULT_MAPPING_PATH",
    "KBO_DATE_FORMAT",
    "KBO_TIME_FORMAT",
    "MappingLoadError",
    "MappingSpec",
    "compute_entity_type",
    "convert_kbo_date",
    "csv_column_to_db_column",
    "csv_table_to_db_table",
    "get_active_mapping",
    "is_kbo_date",
    "load_mapping",
    "short_hash",
]
