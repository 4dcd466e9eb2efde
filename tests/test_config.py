import json
import logging

import pytest

from config.base import _coerce_bool, _coerce_int, _parse_int_mapping, _parse_name_list
from config.validation import validate_environment
from kbo_app.utils.logging_config import JSONFormatter


@pytest.mark.parametrize(
    "value, expected",
    [("true", True), ("ON", True), ("0", False), ("no", False), ("maybe", False), (None, False)],
)
def test_coerce_bool(value, expected):
    assert _coerce_bool(value) is expected


def test_coerce_int_falls_back_on_bad_values():
    assert _coerce_int("25", 10) == 25
    assert _coerce_int("", 10) == 10
    assert _coerce_int("ten", 10) == 10
    assert _coerce_int("-1", 10, minimum=0) == 10


def test_parse_int_mapping_skips_malformed_pairs():
    parsed = _parse_int_mapping("Activities=500, addresses = 1000,broken,=3,contacts=lots")

    assert parsed == {"activities": 500, "addresses": 1000}
    assert _parse_int_mapping("") == {}


def test_parse_name_list_dedupes_and_lowercases():
    assert _parse_name_list("Local, vercel,local,,BACKFILL") == ("local", "vercel", "backfill")
    assert _parse_name_list("", default=("local",)) == ("local",)


def test_validation_is_skipped_outside_production(monkeypatch):
    monkeypatch.delenv("SECRET_KEY", raising=False)

    assert validate_environment("development") == (True, [])


def test_production_validation_reports_every_problem(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "your-secret-key")
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("IMPORTER_BATCH_SIZES", "enterprises=0,activities=abc,broken")
    monkeypatch.setenv("IMPORTER_DEFAULT_BATCH_SIZE", "999999")
    monkeypatch.setenv("IMPORTER_WORKER_ENABLED", "true")
    monkeypatch.delenv("CELERY_BROKER_URL", raising=False)

    is_valid, errors = validate_environment("production")

    assert is_valid is False
    joined = "\n".join(errors)
    assert "SECRET_KEY is required" in joined
    assert "DATABASE_URL is required" in joined
    assert "size for 'enterprises' must be between 1 and 50000" in joined
    assert "'activities=abc' has a non-integer size" in joined
    assert "'broken' must look like 'table=size'" in joined
    assert "IMPORTER_DEFAULT_BATCH_SIZE must be between" in joined
    assert "CELERY_BROKER_URL is required" in joined


def test_production_validation_passes_with_complete_environment(monkeypatch):
    monkeypatch.setenv("SECRET_KEY", "0f" * 32)
    monkeypatch.setenv("DATABASE_URL", "postgresql://kbo@db/kbo")
    monkeypatch.setenv("IMPORTER_BATCH_SIZES", "enterprises=2500")
    monkeypatch.delenv("IMPORTER_DEFAULT_BATCH_SIZE", raising=False)
    monkeypatch.setenv("IMPORTER_WORKER_ENABLED", "false")

    assert validate_environment("production") == (True, [])


def test_json_formatter_carries_importer_extras():
    record = logging.LogRecord("kbo_app.importer", logging.INFO, __file__, 12, "Processed %s", ("batch",), None)
    record.importer_job_id = "job-1"
    record.unrelated = "dropped"

    payload = json.loads(JSONFormatter().format(record))

    assert payload["message"] == "Processed batch"
    assert payload["level"] == "INFO"
    assert payload["importer_job_id"] == "job-1"
    assert "unrelated" not in payload


def test_app_health_endpoint(client):
    response = client.get("/health")

    assert response.status_code == 200
    assert response.get_json()["status"] == "ok"


def test_unknown_route_returns_json_404(client):
    response = client.get("/no-such-page")

    assert response.status_code == 404
    assert response.get_json() == {"error": "Not found."}
