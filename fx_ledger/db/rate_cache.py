"""Persistence helpers for cached exchange rates."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

from sqlalchemy import select
from sqlalchemy.dialects import mysql, postgresql, sqlite

from fx_ledger.db.models import ExchangeRateRow
from fx_ledger.db.store import Row, Store
from fx_ledger.exchange_rate.models import ExchangeRateEntity
from fx_ledger.utils.logger import get_logger

LOGGER = get_logger(__name__)

_REPLACED_COLUMNS = ("rate", "timestamp", "source")


@dataclass(slots=True)
class PersistenceResult:
    """Represents how many rows were inserted or updated in a batch."""

    inserted: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        """Return the total number of affected rows."""

        return self.inserted + self.updated

    def merge(self, other: "PersistenceResult") -> "PersistenceResult":
        self.inserted += other.inserted
        self.updated += other.updated
        return self


class ExchangeRateStore:
    """Upsert and look up rows of the ``exchange_rates`` cache.

    Rows are keyed by ``from-to-date``; writing an existing key replaces its
    rate, timestamp and source (last write wins). Rows are never deleted.
    """

    def __init__(self, store: Store) -> None:
        self.store = store
        self._table = ExchangeRateRow.__table__

    def upsert_rates(self, rows: Sequence[ExchangeRateEntity]) -> PersistenceResult:
        """Write ``rows`` with one ``INSERT .. ON CONFLICT`` per key.

        Concurrent writers of the same key never collide: the database
        resolves the conflict and the last write wins.
        """

        result = PersistenceResult()
        if not rows:
            return result
        table = self._table
        with self.store.batch() as connection:
            existing = {
                found.id
                for found in connection.execute(
                    select(table.c.id).where(table.c.id.in_([row.id for row in rows]))
                )
            }
            dialect = connection.dialect.name
            for row in rows:
                connection.execute(self._upsert_statement(dialect, row))
                if row.id in existing:
                    result.updated += 1
                else:
                    result.inserted += 1
                    existing.add(row.id)
        LOGGER.debug(
            "Cached exchange rates: inserted %s, updated %s", result.inserted, result.updated
        )
        return result

    def _upsert_statement(self, dialect: str, row: ExchangeRateEntity):
        values = {
            "id": row.id,
            "from_currency": row.from_currency,
            "to_currency": row.to_currency,
            "rate": row.rate,
            "date": row.rate_date,
            "timestamp": row.timestamp,
            "source": row.source,
        }
        if dialect in {"mysql", "mariadb"}:
            statement = mysql.insert(self._table).values(**values)
            return statement.on_duplicate_key_update(
                {column: statement.inserted[column] for column in _REPLACED_COLUMNS}
            )
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
        statement = insert(self._table).values(**values)
        return statement.on_conflict_do_update(
            index_elements=[self._table.c.id],
            set_={column: statement.excluded[column] for column in _REPLACED_COLUMNS},
        )

    def latest(
        self, from_currency: str, to_currency: str, rate_date: str
    ) -> ExchangeRateEntity | None:
        """Most recently fetched row for ``(from, to, date)``."""

        table = self._table
        rows = self.store.execute(
            select(table)
            .where(
                table.c.from_currency == from_currency,
                table.c.to_currency == to_currency,
                table.c.date == rate_date,
            )
            .order_by(table.c.timestamp.desc())
            .limit(1)
        )
        return _to_entity(rows[0]) if rows else None


def _to_entity(row: Row) -> ExchangeRateEntity:
    return ExchangeRateEntity(
        from_currency=row["from_currency"],
        to_currency=row["to_currency"],
        rate=float(row["rate"]),
        rate_date=row["date"],
        timestamp=row["timestamp"],
        source=row["source"],
    )


__all__ = ["ExchangeRateStore", "PersistenceResult"]
