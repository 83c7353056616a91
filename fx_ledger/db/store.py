"""Relational store shared by the exchange rate and schedule engines.

The store exposes the small CRUD surface the engines need (``get``,
``insert``, ``update``, ``delete``, ``run_query``) on top of SQLAlchemy Core,
plus :meth:`Store.batch`, an explicit transactional scope. Every call made
inside a ``batch`` block on the same thread joins that block's transaction, so
a group of writes becomes visible all at once or not at all.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from typing import Any, Iterator, Mapping, cast

from sqlalchemy import Table, create_engine, select, text
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool
from sqlalchemy.sql import Executable

from fx_ledger.db.models import Base
from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

Row = dict[str, Any]


def _is_memory_url(url: str) -> bool:
    return url in {"sqlite://", "sqlite:///:memory:"}


class Store:
    """SQLAlchemy backed implementation of the budget store."""

    def __init__(self, url: str) -> None:
        self.url = url
        engine_kwargs: dict[str, Any] = {"future": True}
        if url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
            if _is_memory_url(url):
                # A single shared connection keeps one in-memory database alive.
                engine_kwargs["poolclass"] = StaticPool
        self.engine: Engine = create_engine(url, **engine_kwargs)
        Base.metadata.create_all(self.engine)
        self._local = threading.local()

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------
    @contextmanager
    def batch(self) -> Iterator[Connection]:
        """Run the enclosed store calls in one transaction.

        Commits when the block exits normally and rolls back when it raises.
        Nested ``batch`` blocks join the outermost one.
        """

        active: Connection | None = getattr(self._local, "connection", None)
        if active is not None:
            yield active
            return
        with self.engine.begin() as connection:
            self._local.connection = connection
            try:
                yield connection
            finally:
                self._local.connection = None

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def table(self, name: str) -> Table:
        try:
            return Base.metadata.tables[name]
        except KeyError:
            raise ValueError(f"Unknown table: {name}") from None

    def execute(self, statement: Executable) -> list[Row]:
        """Execute a Core statement and return mapped rows (empty for DML)."""

        with self.batch() as connection:
            result = connection.execute(statement)
            if not result.returns_rows:
                return []
            return [dict(row._mapping) for row in result]

    def run_query(
        self,
        sql: str,
        params: Mapping[str, Any] | None = None,
        fetch: bool = False,
    ) -> list[Row] | int:
        """Run raw SQL with named parameters.

        Returns the mapped rows when ``fetch`` is set, otherwise the number of
        affected rows.
        """

        with self.batch() as connection:
            result = connection.execute(text(sql), dict(params or {}))
            if fetch:
                return [dict(row._mapping) for row in result]
            return result.rowcount

    def all(self, sql: str, params: Mapping[str, Any] | None = None) -> list[Row]:
        return cast("list[Row]", self.run_query(sql, params, fetch=True))

    def first(self, sql: str, params: Mapping[str, Any] | None = None) -> Row | None:
        rows = self.all(sql, params)
        return rows[0] if rows else None

    def get(self, table_name: str, row_id: str) -> Row | None:
        table = self.table(table_name)
        rows = self.execute(select(table).where(table.c.id == row_id))
        return rows[0] if rows else None

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------
    def insert(self, table_name: str, row: Mapping[str, Any]) -> str:
        """Insert ``row`` and return its id, generating a UUID when absent."""

        table = self.table(table_name)
        values = self._known_columns(table, row)
        values.setdefault("id", str(uuid.uuid4()))
        self.execute(table.insert().values(**values))
        return str(values["id"])

    def update(self, table_name: str, row: Mapping[str, Any]) -> int:
        """Update the columns present in ``row`` for the row with ``row['id']``."""

        if row.get("id") is None:
            raise ValueError(f"update on {table_name} requires an id")
        table = self.table(table_name)
        values = self._known_columns(table, row)
        row_id = values.pop("id")
        if not values:
            return 0
        with self.batch() as connection:
            result = connection.execute(
                table.update().where(table.c.id == row_id).values(**values)
            )
            return result.rowcount

    def delete(self, table_name: str, row_id: str | None) -> int:
        """Tombstone the row when the table supports it, otherwise remove it."""

        if row_id is None:
            return 0
        table = self.table(table_name)
        with self.batch() as connection:
            if "tombstone" in table.c:
                statement = table.update().where(table.c.id == row_id).values(tombstone=1)
            else:
                statement = table.delete().where(table.c.id == row_id)
            return connection.execute(statement).rowcount

    @staticmethod
    def _known_columns(table: Table, row: Mapping[str, Any]) -> dict[str, Any]:
        unknown = [key for key in row if key not in table.c]
        if unknown:
            LOGGER.debug("Ignoring unknown %s columns: %s", table.name, ", ".join(unknown))
        return {key: value for key, value in row.items() if key in table.c}

    def close(self) -> None:  # pragma: no cover - trivial
        self.engine.dispose()

    def __enter__(self) -> "Store":  # pragma: no cover - trivial
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - trivial
        self.close()


__all__ = ["Row", "Store"]
