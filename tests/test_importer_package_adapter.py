import io
import zipfile
from datetime import date

import pytest

from kbo_app.importer.adapters import CSVHeaderError, CSVRowError, DeltaCSVAdapter, KboPackage, PackageError
from kbo_app.importer.contracts import get_table_contracts


def _make_csv(contents: str) -> io.StringIO:
    stream = io.StringIO(contents)
    stream.seek(0)
    return stream


def _zip_bytes(members: dict) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        for name, text in members.items():
            archive.writestr(name, text)
    return buffer.getvalue()


@pytest.fixture
def contracts():
    return get_table_contracts()


def test_adapter_normalizes_insert_rows(contracts):
    csv_stream = _make_csv(
        "EnterpriseNumber,Status,StartDate\n" " 0200.065.765 ,AC,01-02-2003\n" "0201.310.929,ST,\n"
    )

    adapter = DeltaCSVAdapter(csv_stream, contracts["enterprise"], "insert")
    rows = list(adapter.iter_rows())

    assert adapter.header == ("EnterpriseNumber", "Status", "StartDate")
    assert [row.values for row in rows] == [
        {"enterprise_number": "0200.065.765", "status": "AC", "start_date": date(2003, 2, 1)},
        {"enterprise_number": "0201.310.929", "status": "ST", "start_date": None},
    ]
    assert [row.source_line for row in rows] == [2, 3]
    assert adapter.statistics.rows_processed == 2


def test_adapter_rejects_missing_required_headers(contracts):
    adapter = DeltaCSVAdapter(_make_csv("Language,Denomination\n2,Acme\n"), contracts["denomination"], "insert")

    with pytest.raises(CSVHeaderError) as excinfo:
        list(adapter.iter_rows())

    error = excinfo.value
    assert "Missing required columns" in str(error)
    assert "EntityNumber" in error.missing
    assert "TypeOfDenomination" in error.missing


def test_adapter_reports_unexpected_and_duplicate_headers(contracts):
    adapter = DeltaCSVAdapter(
        _make_csv("EnterpriseNumber,Status,Status,Colour\n"), contracts["enterprise"], "insert"
    )

    with pytest.raises(CSVHeaderError) as excinfo:
        list(adapter.iter_rows())

    assert excinfo.value.unexpected == ("Colour",)
    assert excinfo.value.duplicates == ("Status",)


def test_delete_files_only_need_the_key(contracts):
    adapter = DeltaCSVAdapter(_make_csv("EntityNumber\n0200.065.765\n\n \n"), contracts["address"], "delete")

    rows = list(adapter.iter_rows())

    assert [row.values for row in rows] == [{"entity_number": "0200.065.765"}]


def test_adapter_skips_blank_rows_and_reports_bad_values(contracts):
    adapter = DeltaCSVAdapter(
        _make_csv("EnterpriseNumber,StartDate\n0200.065.765,\n,\n0201.310.929,2003-02-01\n"),
        contracts["enterprise"],
        "insert",
    )

    with pytest.raises(CSVRowError) as excinfo:
        list(adapter.iter_rows())

    assert excinfo.value.line_number == 4
    assert "StartDate" in str(excinfo.value)
    assert adapter.statistics.rows_skipped_blank == 1


def test_adapter_rejects_rows_wider_than_header(contracts):
    adapter = DeltaCSVAdapter(_make_csv("EnterpriseNumber\n0200.065.765,extra\n"), contracts["enterprise"], "insert")

    with pytest.raises(CSVRowError, match="more values than the header"):
        list(adapter.iter_rows())


def test_adapter_rejects_unknown_operation(contracts):
    with pytest.raises(ValueError, match="Unsupported operation"):
        DeltaCSVAdapter(_make_csv(""), contracts["enterprise"], "upsert")


def test_package_lists_tables_and_opens_members():
    package = KboPackage.from_bytes(
        _zip_bytes(
            {
                "meta.csv": "Variable,Value\n",
                "KboOpenData_0140/enterprise_insert.csv": "EnterpriseNumber\n0200.065.765\n",
                "denomination_delete.csv": "EntityNumber\n",
                "readme.txt": "ignored",
            }
        )
    )

    with package:
        assert package.tables() == ("denomination", "enterprise")
        assert package.read_manifest().startswith("Variable,Value")
        assert package.open_delta("enterprise", "delete") is None
        with package.open_delta("enterprise", "insert") as handle:
            assert handle.read().splitlines() == ["EnterpriseNumber", "0200.065.765"]


def test_package_errors():
    with pytest.raises(PackageError, match="not a readable ZIP archive"):
        KboPackage.from_bytes(b"plain text")

    package = KboPackage.from_bytes(_zip_bytes({"enterprise_insert.csv": "EnterpriseNumber\n"}), name="delta.zip")
    with pytest.raises(PackageError, match="delta.zip does not contain meta.csv"):
        package.read_manifest()
