"""membership_etl.store

Relational Store interface and its PostgreSQL implementation.

The importer touches the store three ways: one bulk read of profile
emails to seed de-duplication, one upsert per imported profile, and one
audit-log insert per run.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Protocol

import psycopg
from psycopg import sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb

PROFILES_TABLE = "profiles"
AUDIT_LOGS_TABLE = "audit_logs"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class StoreError(Exception):
    """Raised when a store read or write fails."""


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------

class RelationalStore(Protocol):
    def bulk_read(
        self,
        table: str,
        columns: Sequence[str],
        filters: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        ...

    def upsert(
        self,
        table: str,
        record: Mapping[str, Any],
        conflict_key: str = "id",
    ) -> None:
        ...

    def insert(self, table: str, record: Mapping[str, Any]) -> None:
        ...


# ---------------------------------------------------------------------------
# PostgreSQL implementation
# ---------------------------------------------------------------------------

def _adapt(value: Any) -> Any:
    if isinstance(value, (dict, list)):
        return Jsonb(value)
    return value


class PostgresStore:
    """RelationalStore over a single psycopg connection.

    Every write runs in its own transaction so one failed row leaves the
    connection usable for the next.
    """

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    @classmethod
    def connect(cls, db_dsn: str) -> "PostgresStore":
        try:
            return cls(psycopg.connect(db_dsn, autocommit=True))
        except psycopg.Error as exc:
            raise StoreError(f"connect failed: {exc}") from exc

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "PostgresStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def bulk_read(
        self,
        table: str,
        columns: Sequence[str],
        filters: Mapping[str, Any] | None = None,
    ) -> list[dict[str, Any]]:
        query = sql.SQL("SELECT {cols} FROM {table}").format(
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            table=sql.Identifier(table),
        )
        params: list[Any] = []
        if filters:
            query += sql.SQL(" WHERE ") + sql.SQL(" AND ").join(
                sql.SQL("{} = %s").format(sql.Identifier(k)) for k in filters
            )
            params = list(filters.values())
        try:
            with self._conn.cursor(row_factory=dict_row) as cur:
                cur.execute(query, params)
                return list(cur.fetchall())
        except psycopg.Error as exc:
            raise StoreError(f"bulk_read {table} failed: {exc}") from exc

    def upsert(
        self,
        table: str,
        record: Mapping[str, Any],
        conflict_key: str = "id",
    ) -> None:
        columns = list(record)
        updates = [c for c in columns if c != conflict_key]
        if updates:
            action = sql.SQL("DO UPDATE SET {}").format(
                sql.SQL(", ").join(
                    sql.SQL("{0} = EXCLUDED.{0}").format(sql.Identifier(c)) for c in updates
                )
            )
        else:
            action = sql.SQL("DO NOTHING")
        query = sql.SQL(
            "INSERT INTO {table} ({cols}) VALUES ({vals}) ON CONFLICT ({key}) {action}"
        ).format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            key=sql.Identifier(conflict_key),
            action=action,
        )
        try:
            with self._conn.transaction():
                self._conn.execute(query, [_adapt(record[c]) for c in columns])
        except psycopg.Error as exc:
            raise StoreError(str(exc).strip()) from exc

    def insert(self, table: str, record: Mapping[str, Any]) -> None:
        columns = list(record)
        query = sql.SQL("INSERT INTO {table} ({cols}) VALUES ({vals})").format(
            table=sql.Identifier(table),
            cols=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            vals=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        )
        try:
            with self._conn.transaction():
                self._conn.execute(query, [_adapt(record[c]) for c in columns])
        except psycopg.Error as exc:
            raise StoreError(str(exc).strip()) from exc
