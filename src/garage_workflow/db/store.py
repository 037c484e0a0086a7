"""Generic record store over SQLite.

Records go in and come out as plain dicts. JSON columns are encoded on the way
in and decoded on the way out. Every record carries a ``version`` counter;
``update`` bumps it and can refuse to write when the caller's copy is stale.
"""

import enum
import json
import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime

from garage_workflow.core.clock import SystemClock
from garage_workflow.errors import IntegrityViolation, NotFoundError, StoreError, VersionConflict

logger = logging.getLogger(__name__)

JSON_COLUMNS = {
    "tasks": {"assigned_to", "metadata"},
    "appointments": {"metadata"},
}

_OPERATORS = {
    "eq": "=",
    "ne": "!=",
    "gt": ">",
    "gte": ">=",
    "lt": "<",
    "lte": "<=",
}


class Store:
    def __init__(self, conn: sqlite3.Connection, clock=None):
        self.conn = conn
        self.clock = clock or SystemClock()
        self._columns: dict[str, set[str]] = {}
        self._depth = 0

    # ── Transactions ────────────────────────────────────────────────────────

    @contextmanager
    def transaction(self):
        """Group writes so they commit or roll back together.

        Nested calls become savepoints, so an inner failure the caller catches
        does not throw away the outer work.
        """
        if self._depth:
            savepoint = f"sp_{self._depth}"
            self._execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self
                self._execute(f"RELEASE SAVEPOINT {savepoint}")
            except BaseException:
                self._execute(f"ROLLBACK TO SAVEPOINT {savepoint}")
                self._execute(f"RELEASE SAVEPOINT {savepoint}")
                raise
            finally:
                self._depth -= 1
            return

        self._execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
            self._execute("COMMIT")
        except BaseException:
            self._rollback()
            raise
        finally:
            self._depth = 0

    def _rollback(self):
        try:
            self.conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.warning("Rollback failed", exc_info=True)

    # ── Reads ───────────────────────────────────────────────────────────────

    def find(
        self,
        table: str,
        order_by: str | list[str] | None = None,
        limit: int | None = None,
        **filters,
    ) -> list[dict]:
        """Return records matching every filter.

        Filter keys are ``column`` or ``column__op`` where op is one of eq, ne,
        gt, gte, lt, lte, in, not_in, contains (JSON array membership) or
        isnull.
        """
        where, params = self._where(table, filters)
        query = f"SELECT * FROM {table}"
        if where:
            query += " WHERE " + " AND ".join(where)
        if order_by:
            query += " ORDER BY " + self._order_clause(table, order_by)
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        rows = self._execute(query, params).fetchall()
        return [self._decode(table, row) for row in rows]

    def find_one(self, table: str, order_by=None, **filters) -> dict | None:
        rows = self.find(table, order_by=order_by, limit=1, **filters)
        return rows[0] if rows else None

    def get(self, table: str, record_id: str) -> dict:
        record = self.find_one(table, id=record_id)
        if record is None:
            raise NotFoundError(table, record_id)
        return record

    # ── Writes ──────────────────────────────────────────────────────────────

    def insert(self, table: str, record: dict) -> dict:
        now = self.clock.now().isoformat()
        values = dict(record)
        values.setdefault("id", str(uuid.uuid4()))
        values.setdefault("created_at", now)
        values["updated_at"] = now
        values["version"] = 1
        self._check_columns(table, values)

        cols = list(values)
        placeholders = ", ".join("?" for _ in cols)
        self._execute(
            f"INSERT INTO {table} ({', '.join(cols)}) VALUES ({placeholders})",
            [self._encode(table, c, values[c]) for c in cols],
        )
        return self.get(table, values["id"])

    def update(
        self,
        table: str,
        record_id: str,
        patch: dict,
        expected_version: int | None = None,
    ) -> dict:
        """Apply ``patch`` in a single UPDATE statement.

        With ``expected_version`` the write only lands if nobody else has
        written the record since it was read.
        """
        values = {k: v for k, v in patch.items() if k not in ("id", "version", "created_at")}
        values["updated_at"] = self.clock.now().isoformat()
        self._check_columns(table, values)

        set_parts = [f"{c} = ?" for c in values]
        set_parts.append("version = version + 1")
        params = [self._encode(table, c, values[c]) for c in values]
        query = f"UPDATE {table} SET {', '.join(set_parts)} WHERE id = ?"
        params.append(record_id)
        if expected_version is not None:
            query += " AND version = ?"
            params.append(expected_version)

        cursor = self._execute(query, params)
        if cursor.rowcount == 0:
            current = self.find_one(table, id=record_id)
            if current is None:
                raise NotFoundError(table, record_id)
            raise VersionConflict(
                f"{table} {record_id} changed concurrently "
                f"(expected version {expected_version}, found {current['version']})"
            )
        return self.get(table, record_id)

    def delete(self, table: str, record_id: str):
        cursor = self._execute(f"DELETE FROM {table} WHERE id = ?", [record_id])
        if cursor.rowcount == 0:
            raise NotFoundError(table, record_id)

    def execute(self, query: str, params=()) -> sqlite3.Cursor:
        """Raw escape hatch for statements the generic API can't express."""
        return self._execute(query, params)

    # ── Helpers ─────────────────────────────────────────────────────────────

    def columns(self, table: str) -> set[str]:
        if table not in self._columns:
            rows = self._execute(f"PRAGMA table_info({table})").fetchall()
            if not rows:
                raise StoreError(f"Unknown table: {table}")
            self._columns[table] = {r["name"] for r in rows}
        return self._columns[table]

    def _check_columns(self, table: str, values: dict):
        unknown = set(values) - self.columns(table)
        if unknown:
            raise StoreError(f"Unknown columns for {table}: {', '.join(sorted(unknown))}")

    def _where(self, table: str, filters: dict) -> tuple[list[str], list]:
        known = self.columns(table)
        where: list[str] = []
        params: list = []
        for key, value in filters.items():
            column, _, op = key.partition("__")
            op = op or "eq"
            if column not in known:
                raise StoreError(f"Unknown column for {table}: {column}")

            if op == "contains":
                where.append(f"EXISTS (SELECT 1 FROM json_each({table}.{column}) WHERE value = ?)")
                params.append(_scalar(value))
            elif op in ("in", "not_in"):
                items = [_scalar(v) for v in value]
                if not items:
                    where.append("0" if op == "in" else "1")
                    continue
                negate = "NOT " if op == "not_in" else ""
                where.append(f"{column} {negate}IN ({', '.join('?' for _ in items)})")
                params.extend(items)
            elif op == "isnull":
                where.append(f"{column} IS {'' if value else 'NOT '}NULL")
            elif op in _OPERATORS:
                if value is None and op in ("eq", "ne"):
                    where.append(f"{column} IS {'NOT ' if op == 'ne' else ''}NULL")
                else:
                    where.append(f"{column} {_OPERATORS[op]} ?")
                    params.append(_scalar(value))
            else:
                raise StoreError(f"Unknown filter operator: {op}")
        return where, params

    def _order_clause(self, table: str, order_by: str | list[str]) -> str:
        if isinstance(order_by, str):
            order_by = [order_by]
        known = self.columns(table)
        parts = []
        for item in order_by:
            column = item.lstrip("-")
            if column not in known:
                raise StoreError(f"Unknown column for {table}: {column}")
            parts.append(f"{column} {'DESC' if item.startswith('-') else 'ASC'}")
        return ", ".join(parts)

    def _encode(self, table: str, column: str, value):
        if column in JSON_COLUMNS.get(table, ()):
            return json.dumps(value if value is not None else ({} if column == "metadata" else []))
        return _scalar(value)

    def _decode(self, table: str, row: sqlite3.Row) -> dict:
        record = dict(row)
        for column in JSON_COLUMNS.get(table, ()):
            if column in record and record[column] is not None:
                record[column] = json.loads(record[column])
        return record

    def _execute(self, query: str, params=()) -> sqlite3.Cursor:
        try:
            return self.conn.execute(query, params)
        except sqlite3.IntegrityError as e:
            raise IntegrityViolation(str(e)) from e
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e


def _scalar(value):
    """Unwrap enums and datetimes into values sqlite understands."""
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value
