"""Parse and validate the ``meta.csv`` manifest of a KBO package."""

from __future__ import annotations

import csv
import io
from dataclasses import dataclass
from datetime import date, datetime
from typing import Mapping

from kbo_app.importer.errors import ValidationError
from kbo_app.importer.mapping import KBO_TIME_FORMAT, convert_kbo_date
from kbo_app.models import ExtractType

REQUIRED_KEYS: tuple[str, ...] = ("SnapshotDate", "ExtractTimestamp", "ExtractType", "ExtractNumber")
DEFAULT_FORMAT_VERSION = "unknown"


@dataclass(frozen=True)
class ExtractMetadata:
    """Normalized manifest values."""

    snapshot_date: date
    extract_number: int
    extract_type: ExtractType
    format_version: str
    extract_timestamp: datetime

    def as_dict(self) -> dict[str, object]:
        return {
            "snapshot_date": self.snapshot_date.isoformat(),
            "extract_number": self.extract_number,
            "extract_type": self.extract_type.value,
            "format_version": self.format_version,
            "extract_timestamp": self.extract_timestamp.isoformat(sep=" "),
        }


def read_manifest_csv(text: str) -> dict[str, str]:
    """
    Turn a ``Variable,Value`` manifest into a key/value mapping.

    Rows without a variable name are ignored; values are stripped.
    """

    reader = csv.DictReader(io.StringIO(text.lstrip("\ufeff")))
    if reader.fieldnames is None or not {"Variable", "Value"} <= {name.strip() for name in reader.fieldnames}:
        raise ValidationError("Manifest meta.csv must have a 'Variable,Value' header.")
    reader.fieldnames = [name.strip() for name in reader.fieldnames]
    values: dict[str, str] = {}
    for row in reader:
        key = (row.get("Variable") or "").strip()
        if not key:
            continue
        values[key] = (row.get("Value") or "").strip()
    return values


def _parse_date(key: str, raw: str) -> date:
    try:
        return convert_kbo_date(raw)
    except ValueError as exc:
        raise ValidationError(f"Invalid {key} '{raw}'; expected DD-MM-YYYY.") from exc


def parse_manifest(
    values: Mapping[str, str],
    *,
    expected_type: ExtractType | str | None = None,
) -> ExtractMetadata:
    """
    Validate manifest values and return normalized metadata.

    Raises:
        ValidationError: for missing keys, an unknown or unexpected extract
            type, a non-integer extract number, or malformed dates.
    """

    missing = [key for key in REQUIRED_KEYS if not (values.get(key) or "").strip()]
    if missing:
        raise ValidationError("Manifest is missing required values.", details=[f"Missing: {', '.join(missing)}."])

    raw_type = values["ExtractType"].strip().lower()
    try:
        extract_type = ExtractType(raw_type)
    except ValueError as exc:
        raise ValidationError(f"Unsupported ExtractType '{values['ExtractType']}'; expected 'full' or 'update'.") from exc

    if expected_type is not None:
        expected = ExtractType(expected_type)
        if extract_type != expected:
            raise ValidationError(
                f"Package ExtractType is '{extract_type.value}' but a '{expected.value}' package was expected."
            )

    raw_number = values["ExtractNumber"].strip()
    try:
        extract_number = int(raw_number)
    except ValueError as exc:
        raise ValidationError(f"Invalid ExtractNumber '{raw_number}'; expected an integer.") from exc
    if extract_number < 0:
        raise ValidationError(f"Invalid ExtractNumber '{raw_number}'; expected a non-negative integer.")

    snapshot_date = _parse_date("SnapshotDate", values["SnapshotDate"].strip())

    raw_timestamp = values["ExtractTimestamp"].strip()
    parts = raw_timestamp.split()
    if len(parts) != 2:
        raise ValidationError(
            f"Invalid ExtractTimestamp '{raw_timestamp}'; expected 'DD-MM-YYYY HH:MM:SS'."
        )
    timestamp_date = _parse_date("ExtractTimestamp", parts[0])
    timestamp_time = None
    for time_format in (KBO_TIME_FORMAT, f"{KBO_TIME_FORMAT}.%f"):
        try:
            timestamp_time = datetime.strptime(parts[1], time_format).time()
            break
        except ValueError:
            continue
    if timestamp_time is None:
        raise ValidationError(f"Invalid ExtractTimestamp '{raw_timestamp}'; expected 'DD-MM-YYYY HH:MM:SS'.")

    format_version = (values.get("Version") or "").strip() or DEFAULT_FORMAT_VERSION
    return ExtractMetadata(
        snapshot_date=snapshot_date,
        extract_number=extract_number,
        extract_type=extract_type,
        format_version=format_version,
        extract_timestamp=datetime.combine(timestamp_date, timestamp_time),
    )
