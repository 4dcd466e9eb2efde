"""
Narrow database capability handed to every importer component.

Components never reach for a global session; they receive an ``ImportStore``
and issue parameter-bound SQLAlchemy statements through it. ``open_store``
scopes one top-level operation: the handle is rolled back on error and the
session is released on every exit path.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Any, Iterator, Mapping, Sequence

from sqlalchemy.engine import Result, RowMapping
from sqlalchemy.orm import Session

from kbo_app.models.base import db


class ImportStore:
    """Thin wrapper around a SQLAlchemy session."""

    def __init__(self, session: Session) -> None:
        self._session = session

    @property
    def session(self) -> Session:
        return self._session

    def execute(self, statement, params: Mapping[str, Any] | Sequence[Mapping[str, Any]] | None = None) -> Result:
        if params is None:
            return self._session.execute(statement)
        return self._session.execute(statement, params)

    def query(self, statement, params: Mapping[str, Any] | None = None) -> list[RowMapping]:
        """Execute ``statement`` and return every row as a mapping."""

        return list(self.execute(statement, params).mappings().all())

    def query_one(self, statement, params: Mapping[str, Any] | None = None) -> RowMapping | None:
        return self.execute(statement, params).mappings().first()

    def scalar(self, statement, params: Mapping[str, Any] | None = None) -> Any:
        return self.execute(statement, params).scalar()

    def add(self, instance) -> None:
        self._session.add(instance)

    def flush(self) -> None:
        self._session.flush()

    def commit(self) -> None:
        self._session.commit()

    def rollback(self) -> None:
        self._session.rollback()


@contextmanager
def open_store(session: Session | None = None) -> Iterator[ImportStore]:
    """
    Acquire a store for one importer operation.

    Uncommitted work is rolled back when the block raises; the session is
    closed afterwards either way so no connection outlives the operation.
    """

    active_session = session if session is not None else db.session
    store = ImportStore(active_session)
    try:
        yield store
    except BaseException:
        active_session.rollback()
        raise
    finally:
        active_session.close()
