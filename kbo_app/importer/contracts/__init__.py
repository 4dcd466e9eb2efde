"""Typed record contracts for the KBO delta package tables."""

from __future__ import annotations

from .kbo import (
    ContractValueError,
    FieldSpec,
    TableContract,
    get_contract_for_store_table,
    get_table_contracts,
)

__all__ = [
    "ContractValueError",
    "FieldSpec",
    "TableContract",
    "get_contract_for_store_table",
    "get_table_contracts",
]
