from datetime import date, datetime

import pytest

from kbo_app.importer.errors import ValidationError
from kbo_app.importer.pipeline.metadata import parse_manifest, read_manifest_csv
from kbo_app.models import ExtractType

MANIFEST = (
    "Variable,Value\n"
    "SnapshotDate,06-01-2024\n"
    "ExtractTimestamp,06-01-2024 07:30:15\n"
    "ExtractType,update\n"
    "ExtractNumber,140\n"
    "Version,1.0.0\n"
)


def _values(**overrides):
    values = read_manifest_csv(MANIFEST)
    values.update(overrides)
    return values


def test_parse_manifest_normalizes_values():
    metadata = parse_manifest(read_manifest_csv("\ufeff" + MANIFEST), expected_type="update")

    assert metadata.snapshot_date == date(2024, 1, 6)
    assert metadata.extract_number == 140
    assert metadata.extract_type is ExtractType.UPDATE
    assert metadata.format_version == "1.0.0"
    assert metadata.extract_timestamp == datetime(2024, 1, 6, 7, 30, 15)
    assert metadata.as_dict()["extract_timestamp"] == "2024-01-06 07:30:15"


def test_missing_version_defaults_to_unknown():
    values = _values()
    values.pop("Version")

    assert parse_manifest(values).format_version == "unknown"


def test_fractional_seconds_are_accepted():
    metadata = parse_manifest(_values(ExtractTimestamp="06-01-2024 07:30:15.250"))

    assert metadata.extract_timestamp.microsecond == 250000


def test_manifest_needs_variable_value_header():
    with pytest.raises(ValidationError, match="'Variable,Value' header"):
        read_manifest_csv("Key,Setting\nSnapshotDate,06-01-2024\n")


@pytest.mark.parametrize(
    "overrides, message",
    [
        ({"ExtractNumber": ""}, "Missing: ExtractNumber"),
        ({"ExtractType": "weekly"}, "Unsupported ExtractType"),
        ({"ExtractNumber": "14x"}, "expected an integer"),
        ({"ExtractNumber": "-1"}, "non-negative"),
        ({"SnapshotDate": "2024-01-06"}, "Invalid SnapshotDate"),
        ({"ExtractTimestamp": "06-01-2024"}, "Invalid ExtractTimestamp"),
        ({"ExtractTimestamp": "06-01-2024 25:61:00"}, "Invalid ExtractTimestamp"),
    ],
)
def test_invalid_manifest_values(overrides, message):
    with pytest.raises(ValidationError, match=message):
        parse_manifest(_values(**overrides))


def test_expected_type_mismatch_is_rejected():
    with pytest.raises(ValidationError, match="'full' package was expected"):
        parse_manifest(_values(), expected_type=ExtractType.FULL)
