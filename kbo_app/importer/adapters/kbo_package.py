"""Adapter for KBO delta packages.

A package is a ZIP archive holding ``meta.csv`` plus ``<table>_delete.csv``
and ``<table>_insert.csv`` files. The adapter lists the tables present,
exposes the manifest text, and streams rows validated against the table
contracts so the staging step only ever sees normalized values.
"""

from __future__ import annotations

import csv
import io
import re
import zipfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import IO, Iterator, Sequence

from kbo_app.importer.contracts import ContractValueError, FieldSpec, TableContract

MANIFEST_NAME = "meta.csv"
OPERATIONS: tuple[str, ...] = ("delete", "insert")
_DELTA_FILE_PATTERN = re.compile(r"^(?P<table>[a-z_]+)_(?P<operation>delete|insert)\.csv$")


class PackageError(Exception):
    """Raised when the archive itself cannot be opened or is missing required members."""


class CSVAdapterError(Exception):
    """Base exception for delta CSV failures."""


class CSVHeaderError(CSVAdapterError):
    """Raised when a delta file's header row does not meet the table contract."""

    def __init__(
        self,
        *,
        missing: Sequence[str] | None = None,
        unexpected: Sequence[str] | None = None,
        duplicates: Sequence[str] | None = None,
    ) -> None:
        details: list[str] = []
        if missing:
            details.append(f"Missing required columns: {', '.join(sorted(missing))}.")
        if unexpected:
            details.append(f"Unexpected columns present: {', '.join(sorted(unexpected))}.")
        if duplicates:
            details.append(f"Duplicate columns detected: {', '.join(sorted(duplicates))}.")
        message = "CSV header validation failed. " + " ".join(details) if details else "CSV header validation failed."
        super().__init__(message)
        self.missing = tuple(missing or ())
        self.unexpected = tuple(unexpected or ())
        self.duplicates = tuple(duplicates or ())


class CSVRowError(CSVAdapterError):
    """Raised when an individual row cannot be parsed."""

    def __init__(self, line_number: int, message: str) -> None:
        super().__init__(f"Line {line_number}: {message}")
        self.line_number = line_number


@dataclass(frozen=True)
class DeltaRow:
    """A validated delta row keyed by staging column."""

    sequence_number: int
    source_line: int
    values: dict[str, object | None]


@dataclass
class DeltaCSVStatistics:
    rows_processed: int = 0
    rows_skipped_blank: int = 0


def _sanitize_header(header: str | None) -> str:
    token = (header or "").strip()
    return token.lstrip("\ufeff")


def _row_is_blank(row: dict[str, object | None]) -> bool:
    return all((value is None or (isinstance(value, str) and value.strip() == "")) for value in row.values())


class DeltaCSVAdapter:
    """CSV reader enforcing a table contract for one delta operation."""

    def __init__(self, file_obj: IO[str], contract: TableContract, operation: str) -> None:
        if operation not in OPERATIONS:
            raise ValueError(f"Unsupported operation '{operation}'.")
        self._file_obj = file_obj
        self.contract = contract
        self.operation = operation
        self.header: tuple[str, ...] = ()
        self.statistics = DeltaCSVStatistics()

    def _validate_headers(self, raw_headers: Sequence[str]) -> tuple[str, ...]:
        headers = tuple(_sanitize_header(header) for header in raw_headers)
        known = set(self.contract.headers)
        seen: set[str] = set()
        duplicates: list[str] = []
        unexpected: list[str] = []
        for header in headers:
            if header not in known:
                unexpected.append(header)
            elif header in seen:
                duplicates.append(header)
            seen.add(header)
        missing = [header for header in self.contract.required_headers(self.operation) if header not in seen]
        if missing or unexpected or duplicates:
            raise CSVHeaderError(missing=missing, unexpected=unexpected, duplicates=duplicates)
        return headers

    def _normalize(self, spec: FieldSpec, value: object | None) -> object | None:
        if self.operation == "delete" and spec.header != self.contract.delete_header:
            # Delete files only promise the key; other columns are informational.
            spec = FieldSpec(spec.header, spec.description, required=False, is_date=spec.is_date)
        elif self.operation == "delete":
            spec = FieldSpec(spec.header, spec.description, required=True, is_date=spec.is_date)
        return spec.normalize(value)

    def iter_rows(self) -> Iterator[DeltaRow]:
        reader = csv.DictReader(self._file_obj)
        if reader.fieldnames is None:
            raise CSVHeaderError(missing=self.contract.required_headers(self.operation))
        self.header = self._validate_headers(reader.fieldnames)
        reader.fieldnames = list(self.header)

        sequence_number = 0
        for raw_row in reader:
            if None in raw_row:
                raise CSVRowError(reader.line_num, "Row has more values than the header declares.")
            if _row_is_blank(raw_row):
                self.statistics.rows_skipped_blank += 1
                continue

            values: dict[str, object | None] = {}
            for header in self.header:
                spec = self.contract.field(header)
                try:
                    values[self.contract.staging_column(spec)] = self._normalize(spec, raw_row.get(header))
                except ContractValueError as exc:
                    raise CSVRowError(reader.line_num, str(exc)) from exc
            sequence_number += 1
            self.statistics.rows_processed += 1
            yield DeltaRow(sequence_number=sequence_number, source_line=reader.line_num, values=values)


class KboPackage:
    """Read-only view over a KBO delta ZIP archive."""

    def __init__(self, archive: zipfile.ZipFile, *, name: str | None = None) -> None:
        self._archive = archive
        self.name = name or (archive.filename or "<memory>")
        self._members: dict[str, str] = {}
        for info in archive.infolist():
            if info.is_dir():
                continue
            basename = PurePosixPath(info.filename).name
            self._members.setdefault(basename, info.filename)

    @classmethod
    def from_path(cls, path: str | Path) -> "KboPackage":
        path = Path(path)
        try:
            archive = zipfile.ZipFile(path)
        except (zipfile.BadZipFile, OSError) as exc:
            raise PackageError(f"{path.name} is not a readable ZIP archive: {exc}") from exc
        return cls(archive, name=path.name)

    @classmethod
    def from_bytes(cls, payload: bytes, *, name: str = "upload.zip") -> "KboPackage":
        try:
            archive = zipfile.ZipFile(io.BytesIO(payload))
        except zipfile.BadZipFile as exc:
            raise PackageError(f"{name} is not a readable ZIP archive: {exc}") from exc
        return cls(archive, name=name)

    def __enter__(self) -> "KboPackage":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        self._archive.close()

    @property
    def filenames(self) -> tuple[str, ...]:
        return tuple(sorted(self._members))

    def has_member(self, filename: str) -> bool:
        return filename in self._members

    def read_text(self, filename: str) -> str:
        member = self._members.get(filename)
        if member is None:
            raise PackageError(f"{self.name} does not contain {filename}.")
        return self._archive.read(member).decode("utf-8-sig")

    def read_manifest(self) -> str:
        return self.read_text(MANIFEST_NAME)

    def tables(self) -> tuple[str, ...]:
        """Package table names with at least one delta file, sorted."""

        found = set()
        for filename in self._members:
            match = _DELTA_FILE_PATTERN.match(filename)
            if match:
                found.add(match.group("table"))
        return tuple(sorted(found))

    @staticmethod
    def delta_filename(table: str, operation: str) -> str:
        return f"{table}_{operation}.csv"

    def open_delta(self, table: str, operation: str) -> IO[str] | None:
        """Open ``<table>_<operation>.csv`` as text, or ``None`` when absent."""

        member = self._members.get(self.delta_filename(table, operation))
        if member is None:
            return None
        return io.TextIOWrapper(self._archive.open(member), encoding="utf-8-sig", newline="")


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
