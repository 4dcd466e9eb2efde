"""Typed record contracts for the KBO delta package tables.

Each contract names the source headers a table accepts, which of them are
dates, the business key used by delete files, the staging and registry
models the rows flow through, and how the registry storage key is derived.
Store column names are resolved through the active YAML mapping.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Tuple

from kbo_app.importer.mapping import (
    MappingSpec,
    compute_entity_type,
    convert_kbo_date,
    get_active_mapping,
    short_hash,
)
from kbo_app.models import (
    Activity,
    Address,
    Branch,
    Contact,
    Denomination,
    Enterprise,
    Establishment,
    StagingActivity,
    StagingAddress,
    StagingBranch,
    StagingContact,
    StagingDenomination,
    StagingEnterprise,
    StagingEstablishment,
)

KeyBuilder = Callable[[Mapping[str, Any]], str]


class ContractValueError(ValueError):
    """Raised when a source value violates its field contract."""


@dataclass(frozen=True)
class FieldSpec:
    """Metadata describing one source column of a package table."""

    header: str
    description: str
    required: bool = False
    is_date: bool = False
    staging_column: str | None = None

    def normalize(self, value: object | None) -> object | None:
        if isinstance(value, str):
            value = value.strip()
        if value is None or value == "":
            if self.required:
                raise ContractValueError(f"{self.header} is required.")
            return None
        if self.is_date:
            try:
                return convert_kbo_date(str(value))
            except ValueError as exc:
                raise ContractValueError(f"{self.header}: {exc}") from exc
        return value


@dataclass(frozen=True)
class TableContract:
    """Resolved contract for one package table."""

    package_table: str
    table_name: str
    fields: Tuple[FieldSpec, ...]
    delete_header: str
    store_key_column: str
    delete_match_column: str
    staging_model: type
    store_model: type
    key_builder: KeyBuilder
    synthetic_id: bool
    has_entity_type: bool
    columns: Mapping[str, str]

    def column(self, spec: FieldSpec) -> str:
        """Registry column for ``spec``."""

        return self.columns[spec.header]

    def staging_column(self, spec: FieldSpec) -> str:
        return spec.staging_column or self.column(spec)

    def field(self, header: str) -> FieldSpec:
        for spec in self.fields:
            if spec.header == header:
                return spec
        raise KeyError(header)

    @property
    def headers(self) -> Tuple[str, ...]:
        return tuple(spec.header for spec in self.fields)

    def required_headers(self, operation: str) -> Tuple[str, ...]:
        if operation == "delete":
            return (self.delete_header,)
        return tuple(spec.header for spec in self.fields if spec.required)

    @property
    def delete_staging_column(self) -> str:
        return self.staging_column(self.field(self.delete_header))

    def staged_to_store(self, staged: Mapping[str, Any]) -> dict[str, Any]:
        """Translate a staged row into registry column values (no temporal columns)."""

        values: dict[str, Any] = {}
        for spec in self.fields:
            values[self.column(spec)] = staged.get(self.staging_column(spec))
        if self.synthetic_id:
            values["id"] = self.key_builder(values)
        if self.has_entity_type:
            values["entity_type"] = compute_entity_type(values["entity_number"])
        return values

    def storage_key(self, staged: Mapping[str, Any]) -> str:
        """Registry storage key for a staged insert row."""

        values = {self.column(spec): staged.get(self.staging_column(spec)) for spec in self.fields}
        return self.key_builder(values)


def _denomination_key(row: Mapping[str, Any]) -> str:
    return (
        f"{row['entity_number']}_{row['denomination_type']}_{row['language']}_"
        f"{short_hash(str(row['denomination']))}"
    )


def _address_key(row: Mapping[str, Any]) -> str:
    return f"{row['entity_number']}_{row['type_of_address']}"


def _activity_key(row: Mapping[str, Any]) -> str:
    return (
        f"{row['entity_number']}_{row['activity_group']}_{row['nace_version']}_"
        f"{row['nace_code']}_{row['classification']}"
    )


def _contact_key(row: Mapping[str, Any]) -> str:
    return f"{row['entity_number']}_{row['entity_contact']}_{row['contact_type']}_{row['contact_value']}"


def _column_key(column: str) -> KeyBuilder:
    def _builder(row: Mapping[str, Any]) -> str:
        return str(row[column])

    return _builder


@dataclass(frozen=True)
class _TableDefinition:
    package_table: str
    fields: Tuple[FieldSpec, ...]
    delete_header: str
    staging_model: type
    store_model: type
    key_builder: KeyBuilder | None = None
    link_table: bool = False


_TABLE_DEFINITIONS: Tuple[_TableDefinition, ...] = (
    _TableDefinition(
        package_table="enterprise",
        fields=(
            FieldSpec("EnterpriseNumber", "Enterprise number (0123.456.789).", required=True),
            FieldSpec("Status", "AC (active) or ST (stopped)."),
            FieldSpec("JuridicalSituation", "Juridical situation code."),
            FieldSpec("TypeOfEnterprise", "1 = natural person, 2 = legal person."),
            FieldSpec("JuridicalForm", "Juridical form code."),
            FieldSpec("JuridicalFormCAC", "Juridical form per the companies code."),
            FieldSpec("StartDate", "Start date (DD-MM-YYYY).", is_date=True),
        ),
        delete_header="EnterpriseNumber",
        staging_model=StagingEnterprise,
        store_model=Enterprise,
    ),
    _TableDefinition(
        package_table="establishment",
        fields=(
            FieldSpec("EstablishmentNumber", "Establishment number (2.xxx.xxx.xxx).", required=True),
            FieldSpec("StartDate", "Start date (DD-MM-YYYY).", is_date=True),
            FieldSpec("EnterpriseNumber", "Owning enterprise number."),
        ),
        delete_header="EstablishmentNumber",
        staging_model=StagingEstablishment,
        store_model=Establishment,
    ),
    _TableDefinition(
        package_table="branch",
        fields=(
            FieldSpec("Id", "Registry branch identifier.", required=True, staging_column="branch_id"),
            FieldSpec("StartDate", "Start date (DD-MM-YYYY).", is_date=True),
            FieldSpec("EnterpriseNumber", "Owning foreign entity, when known."),
        ),
        delete_header="Id",
        staging_model=StagingBranch,
        store_model=Branch,
    ),
    _TableDefinition(
        package_table="denomination",
        fields=(
            FieldSpec("EntityNumber", "Enterprise or establishment number.", required=True),
            FieldSpec("Language", "0 unknown, 1 FR, 2 NL, 3 DE, 4 EN.", required=True),
            FieldSpec("TypeOfDenomination", "001 legal, 002 abbreviation, 003 commercial, 004 branch.", required=True),
            FieldSpec("Denomination", "Name text.", required=True),
        ),
        delete_header="EntityNumber",
        staging_model=StagingDenomination,
        store_model=Denomination,
        key_builder=_denomination_key,
        link_table=True,
    ),
    _TableDefinition(
        package_table="address",
        fields=(
            FieldSpec("EntityNumber", "Enterprise or establishment number.", required=True),
            FieldSpec("TypeOfAddress", "REGO, BAET, ABBR or OBAD.", required=True),
            FieldSpec("CountryNL", "Country (Dutch)."),
            FieldSpec("CountryFR", "Country (French)."),
            FieldSpec("Zipcode", "Postal code."),
            FieldSpec("MunicipalityNL", "Municipality (Dutch)."),
            FieldSpec("MunicipalityFR", "Municipality (French)."),
            FieldSpec("StreetNL", "Street (Dutch)."),
            FieldSpec("StreetFR", "Street (French)."),
            FieldSpec("HouseNumber", "House number."),
            FieldSpec("Box", "Box number."),
            FieldSpec("ExtraAddressInfo", "Free-form address complement."),
            FieldSpec("DateStrikingOff", "Date the address was struck off (DD-MM-YYYY).", is_date=True),
        ),
        delete_header="EntityNumber",
        staging_model=StagingAddress,
        store_model=Address,
        key_builder=_address_key,
        link_table=True,
    ),
    _TableDefinition(
        package_table="activity",
        fields=(
            FieldSpec("EntityNumber", "Enterprise or establishment number.", required=True),
            FieldSpec("ActivityGroup", "Activity group code (001-007).", required=True),
            FieldSpec("NaceVersion", "NACE nomenclature version.", required=True),
            FieldSpec("NaceCode", "NACE code.", required=True),
            FieldSpec("Classification", "MAIN, SECO or ANCI.", required=True),
        ),
        delete_header="EntityNumber",
        staging_model=StagingActivity,
        store_model=Activity,
        key_builder=_activity_key,
        link_table=True,
    ),
    _TableDefinition(
        package_table="contact",
        fields=(
            FieldSpec("EntityNumber", "Enterprise or establishment number.", required=True),
            FieldSpec("EntityContact", "ENT, ESTB or BRANCH.", required=True),
            FieldSpec("ContactType", "TEL, EMAIL, WEB, ...", required=True),
            FieldSpec("Value", "Phone number, email address or URL.", required=True),
        ),
        delete_header="EntityNumber",
        staging_model=StagingContact,
        store_model=Contact,
        key_builder=_contact_key,
        link_table=True,
    ),
)


def _resolve(definition: _TableDefinition, spec: MappingSpec) -> TableContract:
    columns = {field.header: spec.store_column(field.header) for field in definition.fields}
    delete_column = columns[definition.delete_header]
    if definition.link_table:
        store_key_column = "id"
        key_builder = definition.key_builder
    else:
        store_key_column = delete_column
        key_builder = definition.key_builder or _column_key(delete_column)
    return TableContract(
        package_table=definition.package_table,
        table_name=spec.store_table(definition.package_table),
        fields=definition.fields,
        delete_header=definition.delete_header,
        store_key_column=store_key_column,
        delete_match_column=delete_column,
        staging_model=definition.staging_model,
        store_model=definition.store_model,
        key_builder=key_builder,
        synthetic_id=definition.link_table,
        has_entity_type=definition.link_table,
        columns=columns,
    )


_CONTRACT_CACHE: dict[str, dict[str, TableContract]] = {}


def get_table_contracts(spec: MappingSpec | None = None) -> dict[str, TableContract]:
    """Return contracts keyed by package table name (``enterprise``, ``address``, ...)."""

    spec = spec or get_active_mapping()
    contracts = _CONTRACT_CACHE.get(spec.checksum)
    if contracts is None:
        contracts = {definition.package_table: _resolve(definition, spec) for definition in _TABLE_DEFINITIONS}
        _CONTRACT_CACHE[spec.checksum] = contracts
    return contracts


def get_contract_for_store_table(table_name: str, spec: MappingSpec | None = None) -> TableContract:
    for contract in get_table_contracts(spec).values():
        if contract.table_name == table_name:
            return contract
    raise KeyError(table_name)


__all__ = [
    "ContractValueError",
    "FieldSpec",
    "TableContract",
    "get_contract_for_store_table",
    "get_table_contracts",
]
