from __future__ import annotations

import zipfile
from pathlib import Path
from typing import Mapping

import pytest

from kbo_app.importer.pipeline.planner import BatchSizingPolicy
from package_helpers import csv_text, manifest_text


@pytest.fixture
def package_builder(tmp_path):
    """
    Return a factory writing a delta ZIP into ``tmp_path``.

    ``files`` maps a member stem (``enterprise_insert``) to either a list of
    row dicts (headers taken from the first row) or a raw CSV string.
    """

    counter = {"value": 0}

    def _build(
        extract_number: int = 140,
        files: Mapping[str, object] | None = None,
        *,
        snapshot_date: str = "06-01-2024",
        extract_type: str = "update",
        manifest: str | None = None,
        include_manifest: bool = True,
    ) -> Path:
        counter["value"] += 1
        path = tmp_path / f"KboOpenData_{extract_number:04d}_{counter['value']}_Update.zip"
        with zipfile.ZipFile(path, "w") as archive:
            if include_manifest:
                archive.writestr(
                    "meta.csv",
                    manifest
                    if manifest is not None
                    else manifest_text(extract_number, snapshot_date=snapshot_date, extract_type=extract_type),
                )
            for stem, content in (files or {}).items():
                if isinstance(content, str):
                    text = content
                else:
                    rows = list(content)
                    headers = list(rows[0].keys()) if rows else ["EntityNumber"]
                    text = csv_text(headers, rows)
                archive.writestr(f"{stem}.csv", text)
        return path

    return _build


@pytest.fixture
def small_batches(app, monkeypatch):
    """Force small batches so a handful of rows spans several batches."""

    policy = BatchSizingPolicy(sizes={}, default_size=2, small_file_threshold=0)
    monkeypatch.setitem(app.extensions["importer"], "sizing_policy", policy)
    return policy
