"""
Temporally versioned KBO registry tables.

Every physical row is one version of a business key. Versions are keyed by
``(key, snapshot_date, extract_number)``; the live version carries
``is_current = true`` and superseded versions are stamped with the extract
that retired them in ``deleted_at_extract``. Rows are never physically
deleted by the importer.
"""

from __future__ import annotations

from datetime import date

from sqlalchemy import CheckConstraint, Index, text
from sqlalchemy.orm import Mapped, mapped_column

from .base import BaseModel, db

ENTITY_TYPES = ("enterprise", "establishment")


class TemporalMixin:
    """Columns shared by every versioned registry table."""

    snapshot_date: Mapped[date] = mapped_column(db.Date, primary_key=True)
    extract_number: Mapped[int] = mapped_column(db.Integer, primary_key=True)
    is_current: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=True)
    deleted_at_extract: Mapped[int | None] = mapped_column(db.Integer, nullable=True)


def _current_key_index(table_name: str, key_column: str) -> Index:
    """Partial unique index allowing a single live version per business key."""

    return Index(
        f"uq_{table_name}_current_{key_column}",
        key_column,
        unique=True,
        sqlite_where=text("is_current = 1"),
        postgresql_where=text("is_current"),
    )


def _entity_type_check(table_name: str) -> CheckConstraint:
    return CheckConstraint(
        "entity_type IN ('enterprise', 'establishment')",
        name=f"ck_{table_name}_entity_type",
    )


class Enterprise(TemporalMixin, BaseModel):
    """A registered enterprise together with its resolved display name."""

    __tablename__ = "enterprises"
    __table_args__ = (
        _current_key_index("enterprises", "enterprise_number"),
        Index("ix_enterprises_extract", "extract_number", "is_current"),
    )

    enterprise_number: Mapped[str] = mapped_column(db.String(20), primary_key=True)
    status: Mapped[str | None] = mapped_column(db.String(10))
    juridical_situation: Mapped[str | None] = mapped_column(db.String(10))
    type_of_enterprise: Mapped[str | None] = mapped_column(db.String(10))
    juridical_form: Mapped[str | None] = mapped_column(db.String(10))
    juridical_form_cac: Mapped[str | None] = mapped_column(db.String(10))
    start_date: Mapped[date | None] = mapped_column(db.Date)
    # Placeholder is the enterprise number until a legal name is resolved.
    primary_name: Mapped[str] = mapped_column(db.String(500), nullable=False)
    primary_name_language: Mapped[str | None] = mapped_column(db.String(1))
    primary_name_nl: Mapped[str | None] = mapped_column(db.String(500))
    primary_name_fr: Mapped[str | None] = mapped_column(db.String(500))
    primary_name_de: Mapped[str | None] = mapped_column(db.String(500))

    def __repr__(self):
        return f"<Enterprise {self.enterprise_number} extract={self.extract_number} current={self.is_current}>"


class Establishment(TemporalMixin, BaseModel):
    """Physical unit of activity belonging to an enterprise."""

    __tablename__ = "establishments"
    __table_args__ = (
        _current_key_index("establishments", "establishment_number"),
        Index("ix_establishments_enterprise", "enterprise_number"),
    )

    establishment_number: Mapped[str] = mapped_column(db.String(20), primary_key=True)
    enterprise_number: Mapped[str | None] = mapped_column(db.String(20))
    start_date: Mapped[date | None] = mapped_column(db.Date)

    def __repr__(self):
        return f"<Establishment {self.establishment_number} extract={self.extract_number}>"


class Branch(TemporalMixin, BaseModel):
    """Belgian branch of a foreign entity, keyed by the registry's own id."""

    __tablename__ = "branches"
    __table_args__ = (_current_key_index("branches", "id"),)

    id: Mapped[str] = mapped_column(db.String(100), primary_key=True)
    enterprise_number: Mapped[str | None] = mapped_column(db.String(20))
    start_date: Mapped[date | None] = mapped_column(db.Date)

    def __repr__(self):
        return f"<Branch {self.id} extract={self.extract_number}>"


class Denomination(TemporalMixin, BaseModel):
    """Legal, commercial or abbreviated name of an enterprise or establishment."""

    __tablename__ = "denominations"
    __table_args__ = (
        _current_key_index("denominations", "id"),
        _entity_type_check("denominations"),
        CheckConstraint("language IN ('0', '1', '2', '3', '4')", name="ck_denominations_language"),
        Index("ix_denominations_entity", "entity_number", "is_current"),
    )

    id: Mapped[str] = mapped_column(db.String(200), primary_key=True)
    entity_number: Mapped[str] = mapped_column(db.String(20), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(20), nullable=False)
    denomination_type: Mapped[str] = mapped_column(db.String(3), nullable=False)
    language: Mapped[str] = mapped_column(db.String(1), nullable=False)
    denomination: Mapped[str] = mapped_column(db.String(500), nullable=False)


class Address(TemporalMixin, BaseModel):
    __tablename__ = "addresses"
    __table_args__ = (
        _current_key_index("addresses", "id"),
        _entity_type_check("addresses"),
        Index("ix_addresses_entity", "entity_number", "is_current"),
    )

    id: Mapped[str] = mapped_column(db.String(100), primary_key=True)
    entity_number: Mapped[str] = mapped_column(db.String(20), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(20), nullable=False)
    type_of_address: Mapped[str] = mapped_column(db.String(4), nullable=False)
    country_nl: Mapped[str | None] = mapped_column(db.String(100))
    country_fr: Mapped[str | None] = mapped_column(db.String(100))
    zipcode: Mapped[str | None] = mapped_column(db.String(20))
    municipality_nl: Mapped[str | None] = mapped_column(db.String(200))
    municipality_fr: Mapped[str | None] = mapped_column(db.String(200))
    street_nl: Mapped[str | None] = mapped_column(db.String(200))
    street_fr: Mapped[str | None] = mapped_column(db.String(200))
    house_number: Mapped[str | None] = mapped_column(db.String(50))
    box: Mapped[str | None] = mapped_column(db.String(50))
    extra_address_info: Mapped[str | None] = mapped_column(db.String(500))
    date_striking_off: Mapped[date | None] = mapped_column(db.Date)


class Activity(TemporalMixin, BaseModel):
    __tablename__ = "activities"
    __table_args__ = (
        _current_key_index("activities", "id"),
        _entity_type_check("activities"),
        Index("ix_activities_entity", "entity_number", "is_current"),
    )

    id: Mapped[str] = mapped_column(db.String(200), primary_key=True)
    entity_number: Mapped[str] = mapped_column(db.String(20), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(20), nullable=False)
    activity_group: Mapped[str] = mapped_column(db.String(3), nullable=False)
    nace_version: Mapped[str] = mapped_column(db.String(4), nullable=False)
    nace_code: Mapped[str] = mapped_column(db.String(10), nullable=False)
    classification: Mapped[str] = mapped_column(db.String(4), nullable=False)


class Contact(TemporalMixin, BaseModel):
    __tablename__ = "contacts"
    __table_args__ = (
        _current_key_index("contacts", "id"),
        _entity_type_check("contacts"),
        Index("ix_contacts_entity", "entity_number", "is_current"),
    )

    id: Mapped[str] = mapped_column(db.String(500), primary_key=True)
    entity_number: Mapped[str] = mapped_column(db.String(20), nullable=False)
    entity_type: Mapped[str] = mapped_column(db.String(20), nullable=False)
    entity_contact: Mapped[str] = mapped_column(db.String(10), nullable=False)
    contact_type: Mapped[str] = mapped_column(db.String(10), nullable=False)
    contact_value: Mapped[str] = mapped_column(db.String(300), nullable=False)
