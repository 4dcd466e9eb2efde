"""Importer adapter interfaces and concrete implementations."""

from __future__ import annotations

from .kbo_package import (
    MANIFEST_NAME,
    OPERATIONS,
    CSVAdapterError,
    CSVHeaderError,
    CSVRowError,
    DeltaCSVAdapter,
    DeltaCSVStatistics,
    DeltaRow,
    KboPackage,
    PackageError,
)

__all__ = [
    "MANIFEST_NAME",
    "OPERATIONS",
    "CSVAdapterError",
    "CSVHeaderError",
    "CSVRowError",
    "DeltaCSVAdapter",
    "DeltaCSVStatistics",
    "DeltaRow",
    "KboPackage",
    "PackageError",
]
