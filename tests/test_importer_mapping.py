from datetime import date

import pytest

from kbo_app.importer.contracts import get_contract_for_store_table, get_table_contracts
from kbo_app.importer.contracts.kbo import ContractValueError, FieldSpec
from kbo_app.importer.mapping import (
    DEFAULT_MAPPING_PATH,
    MappingLoadError,
    compute_entity_type,
    convert_kbo_date,
    csv_column_to_db_column,
    csv_table_to_db_table,
    load_mapping,
    short_hash,
)
from kbo_app.models import Denomination, Enterprise, StagingBranch


def test_bundled_mapping_loads():
    spec = load_mapping(DEFAULT_MAPPING_PATH)

    assert spec.version == 1
    assert spec.adapter == "kbo"
    assert spec.store_table("enterprise") == "enterprises"
    assert len(spec.checksum) == 64


def test_column_names_follow_snake_case_with_overrides():
    spec = load_mapping(DEFAULT_MAPPING_PATH)

    assert csv_column_to_db_column("JuridicalSituation", spec) == "juridical_situation"
    assert csv_column_to_db_column("TypeOfDenomination", spec) == "denomination_type"
    assert csv_column_to_db_column("StreetNL", spec) == "street_nl"
    assert csv_table_to_db_table("activity", spec) == "activities"


def test_mapping_rejects_duplicate_targets(tmp_path):
    path = tmp_path / "mapping.yaml"
    path.write_text("version: 1\ntables:\n  enterprise: entities\n  establishment: entities\n", encoding="utf-8")

    with pytest.raises(MappingLoadError, match="Duplicate target table 'entities'"):
        load_mapping(path)


def test_mapping_requires_tables(tmp_path):
    path = tmp_path / "mapping.yaml"
    path.write_text("version: 1\n", encoding="utf-8")

    with pytest.raises(MappingLoadError, match="Missing required mapping attribute"):
        load_mapping(path)
    with pytest.raises(MappingLoadError, match="not found"):
        load_mapping(tmp_path / "absent.yaml")


def test_kbo_helpers():
    assert convert_kbo_date("29-02-2024") == date(2024, 2, 29)
    with pytest.raises(ValueError):
        convert_kbo_date("2024-02-29")
    with pytest.raises(ValueError):
        convert_kbo_date("31-02-2024")
    assert compute_entity_type("2.000.000.101") == "establishment"
    assert compute_entity_type("0200.065.765") == "enterprise"
    assert short_hash("hello") == "5d41402a"
    assert len(short_hash("Acme")) == 8


def test_contracts_cover_every_registry_table():
    contracts = get_table_contracts()

    assert sorted(contracts) == [
        "activity",
        "address",
        "branch",
        "contact",
        "denomination",
        "enterprise",
        "establishment",
    ]
    enterprise = contracts["enterprise"]
    assert enterprise.store_model is Enterprise
    assert enterprise.store_key_column == "enterprise_number"
    assert enterprise.required_headers("delete") == ("EnterpriseNumber",)
    assert contracts["branch"].staging_model is StagingBranch
    assert contracts["branch"].delete_staging_column == "branch_id"


def test_link_table_rows_get_synthetic_ids_and_entity_type():
    contract = get_contract_for_store_table("denominations")

    staged = {
        "entity_number": "2.000.000.101",
        "language": "2",
        "denomination_type": "001",
        "denomination": "Vestiging Gent",
    }
    values = contract.staged_to_store(staged)

    assert contract.store_model is Denomination
    assert values["id"] == f"2.000.000.101_001_2_{short_hash('Vestiging Gent')}"
    assert values["entity_type"] == "establishment"
    assert contract.storage_key(staged) == values["id"]


def test_field_spec_normalization():
    required = FieldSpec("EntityNumber", "Entity.", required=True)
    dated = FieldSpec("StartDate", "Start.", is_date=True)

    assert required.normalize("  0200.065.765 ") == "0200.065.765"
    with pytest.raises(ContractValueError, match="EntityNumber is required"):
        required.normalize("   ")
    assert dated.normalize("") is None
    assert dated.normalize("01-02-2003") == date(2003, 2, 1)
    with pytest.raises(ContractValueError, match="StartDate"):
        dated.normalize("2003-02-01")


def test_unknown_store_table_raises():
    with pytest.raises(KeyError):
        get_contract_for_store_table("codes")
