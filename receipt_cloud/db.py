"""
Table gateway for the managed Postgres backend and an in-memory test implementation.
"""

from __future__ import annotations

import copy
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Iterable, Optional, Protocol, Sequence, Union

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    Integer,
    MetaData,
    String,
    Table,
    create_engine,
    or_,
)
from sqlalchemy import insert as sql_insert
from sqlalchemy import select as sql_select
from sqlalchemy import update as sql_update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

from receipt_cloud.errors import UNDEFINED_TABLE, UNIQUE_VIOLATION, GatewayError

UNKNOWN_COLUMN = "PGRST204"
NOT_NULL_VIOLATION = "23502"
INVALID_TEXT_REPRESENTATION = "22P02"

FILTER_OPS = ("eq", "like", "ilike", "gte", "lte")


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class Filter:
    column: str
    op: str
    value: Any

    def __post_init__(self):
        if self.op not in FILTER_OPS:
            raise ValueError(f"unsupported filter op: {self.op}")


@dataclass(frozen=True)
class AnyOf:
    """Logical OR over a group of filters."""

    filters: tuple[Filter, ...]


@dataclass(frozen=True)
class Order:
    column: str
    descending: bool = False


Condition = Union[Filter, AnyOf]


def eq(column: str, value: Any) -> Filter:
    return Filter(column, "eq", value)


def like(column: str, pattern: str) -> Filter:
    return Filter(column, "like", pattern)


def ilike(column: str, pattern: str) -> Filter:
    return Filter(column, "ilike", pattern)


def gte(column: str, value: Any) -> Filter:
    return Filter(column, "gte", value)


def lte(column: str, value: Any) -> Filter:
    return Filter(column, "lte", value)


def any_of(*filters: Filter) -> AnyOf:
    return AnyOf(tuple(filters))


class TableGateway(Protocol):
    """Interface for table access on the managed backend."""

    def select(
        self,
        table: str,
        filters: Sequence[Condition] = (),
        *,
        columns: Optional[Sequence[str]] = None,
        order: Sequence[Order] = (),
        limit: Optional[int] = None,
    ) -> list[dict]:
        ...

    def insert(self, table: str, row: dict) -> dict:
        ...

    def update(self, table: str, patch: dict, filters: Sequence[Condition]) -> int:
        ...

    def upsert(self, table: str, row: dict, conflict_key: str) -> None:
        ...


metadata = MetaData()

app_configs = Table(
    "app_configs",
    metadata,
    Column("id", String, primary_key=True),
    Column("app_title", String, nullable=False, default=""),
    Column("brand_name", String, nullable=False, default=""),
    Column("brand_sub", String, nullable=False, default=""),
    Column("logo_url", String, nullable=False, default=""),
    Column("seal_url", String, nullable=False, default=""),
    Column("seal_text", String, nullable=False, default=""),
    Column("title", String, nullable=False, default=""),
    Column("sub_title", String, nullable=False, default=""),
    Column("intro_text", String, nullable=False, default=""),
    Column("confirm_text", String, nullable=False, default=""),
    Column("footer_slogan", String, nullable=False, default=""),
    Column("membership_options", JSON, nullable=False, default=list),
    Column("handlers", JSON, nullable=False, default=list),
    Column("created_at", String, nullable=False, default=utc_now_iso),
    Column("updated_at", String, nullable=False, default=utc_now_iso),
)

serial_numbers = Table(
    "serial_numbers",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("serial_number", String, nullable=False, unique=True),
    Column("customer_name", String, nullable=False, default=""),
    Column("customer_phone", String, nullable=True, default=""),
    Column("membership_type", String, nullable=True, default=""),
    Column("membership_label", String, nullable=True, default=""),
    Column("amount", Float, nullable=False, default=0),
    Column("contract_date", String, nullable=True),
    Column("handler_name", String, nullable=True, default=""),
    Column("pdf_url", String, nullable=True, default=""),
    Column("pdf_path", String, nullable=True, default=""),
    Column("pdf_size", Integer, nullable=True, default=0),
    Column("pdf_generated_at", String, nullable=True),
    Column("status", String, nullable=False, default="active", index=True),
    Column("notes", String, nullable=True, default=""),
    Column("metadata", JSON, nullable=False, default=dict),
    Column("created_at", String, nullable=False, default=utc_now_iso, index=True),
    Column("updated_at", String, nullable=False, default=utc_now_iso),
)

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String, nullable=False, unique=True),
    Column("password_hash", String, nullable=False),
    Column("role", String, nullable=False, default="user"),
    Column("display_name", String, nullable=True),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("last_login_at", String, nullable=True),
    Column("created_at", String, nullable=False, default=utc_now_iso),
)

TABLES: dict[str, Table] = {t.name: t for t in (app_configs, serial_numbers, users)}


def _lookup_table(name: str) -> Table:
    table = TABLES.get(name)
    if table is None:
        raise GatewayError(
            f'relation "public.{name}" does not exist', code=UNDEFINED_TABLE
        )
    return table


def _check_columns(table: Table, names: Iterable[str]) -> None:
    for name in names:
        if name not in table.c:
            raise GatewayError(
                f"Could not find the '{name}' column of '{table.name}'",
                code=UNKNOWN_COLUMN,
                status_code=400,
            )


def _coerce_row(table: Table, row: dict) -> dict:
    """Cast numeric columns the way Postgres casts text input, rejecting junk.

    Both gateways call this before writing so a value one accepts the other
    accepts too.
    """
    coerced = dict(row)
    for name, value in row.items():
        if value is None or name not in table.c:
            continue
        column_type = table.c[name].type
        if isinstance(column_type, Float):
            cast, type_name = float, "double precision"
        elif isinstance(column_type, Integer):
            cast, type_name = int, "integer"
        else:
            continue
        try:
            if isinstance(value, bool):
                raise TypeError(f"{name} is not numeric")
            coerced[name] = cast(value)
        except (TypeError, ValueError) as exc:
            raise GatewayError(
                f'invalid input syntax for type {type_name}: "{value}"',
                code=INVALID_TEXT_REPRESENTATION,
                status_code=400,
            ) from exc
    return coerced


def _normalize_row(row: dict) -> dict:
    """Render temporal values as ISO strings, the way the REST layer returns them."""
    normalized = {}
    for key, value in row.items():
        if isinstance(value, (datetime, date)):
            value = value.isoformat()
        normalized[key] = value
    return normalized


def _like_regex(pattern: str, *, ignore_case: bool) -> re.Pattern:
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    flags = re.DOTALL | (re.IGNORECASE if ignore_case else 0)
    return re.compile("".join(parts), flags)


class InMemoryTableGateway:
    """Simple in-memory table store for development and tests.

    Enforces the same columns, unique keys, numeric casts and column
    defaults as the SQL tables so services see identical behavior on both.
    """

    def __init__(self):
        self.tables: dict[str, list[dict]] = {name: [] for name in TABLES}
        self._next_ids: dict[str, int] = {name: 1 for name in TABLES}

    def reset(self) -> None:
        """Clear all stored rows (useful in tests)."""
        for rows in self.tables.values():
            rows.clear()
        self._next_ids = {name: 1 for name in TABLES}

    def _matches(self, row: dict, condition: Condition) -> bool:
        if isinstance(condition, AnyOf):
            return any(self._matches(row, f) for f in condition.filters)
        value = row.get(condition.column)
        if condition.op == "eq":
            return value == condition.value
        if value is None:
            return False
        if condition.op in ("like", "ilike"):
            regex = _like_regex(
                str(condition.value), ignore_case=condition.op == "ilike"
            )
            return bool(regex.fullmatch(str(value)))
        if condition.op == "gte":
            return value >= condition.value
        return value <= condition.value

    def _apply_defaults(self, table: Table, row: dict) -> dict:
        filled = dict(row)
        for column in table.columns:
            if column.name in filled:
                continue
            if column.primary_key and isinstance(column.type, Integer):
                filled[column.name] = self._next_ids[table.name]
                self._next_ids[table.name] += 1
            elif column.default is not None:
                default = column.default
                filled[column.name] = (
                    default.arg(None) if default.is_callable else default.arg
                )
            else:
                filled[column.name] = None
        return filled

    def _check_unique(self, table: Table, row: dict, *, skip: Optional[dict] = None) -> None:
        for column in table.columns:
            if not (column.unique or column.primary_key):
                continue
            for existing in self.tables[table.name]:
                if existing is skip:
                    continue
                if existing.get(column.name) == row.get(column.name):
                    raise GatewayError(
                        f'duplicate key value violates unique constraint "{table.name}_{column.name}_key"',
                        code=UNIQUE_VIOLATION,
                        status_code=409,
                    )

    def select(
        self,
        table: str,
        filters: Sequence[Condition] = (),
        *,
        columns: Optional[Sequence[str]] = None,
        order: Sequence[Order] = (),
        limit: Optional[int] = None,
    ) -> list[dict]:
        table_def = _lookup_table(table)
        if columns:
            _check_columns(table_def, columns)
        indexed = [
            (index, row)
            for index, row in enumerate(self.tables[table])
            if all(self._matches(row, f) for f in filters)
        ]
        if order and order[-1].descending:
            indexed.reverse()
        # Stable sorts, last-to-first, so the first ordering dominates.
        for ordering in reversed(order):
            _check_columns(table_def, [ordering.column])
            indexed.sort(
                key=lambda item: (
                    item[1].get(ordering.column) is None,
                    item[1].get(ordering.column)
                    if item[1].get(ordering.column) is not None
                    else 0,
                ),
                reverse=ordering.descending,
            )
        rows = [row for _, row in indexed]
        if limit is not None:
            rows = rows[:limit]
        if columns:
            return [{c: copy.deepcopy(row.get(c)) for c in columns} for row in rows]
        return [copy.deepcopy(row) for row in rows]

    def insert(self, table: str, row: dict) -> dict:
        table_def = _lookup_table(table)
        _check_columns(table_def, row)
        row = _coerce_row(table_def, row)
        filled = self._apply_defaults(table_def, copy.deepcopy(row))
        self._check_unique(table_def, filled)
        self.tables[table].append(filled)
        return copy.deepcopy(filled)

    def update(self, table: str, patch: dict, filters: Sequence[Condition]) -> int:
        table_def = _lookup_table(table)
        _check_columns(table_def, patch)
        patch = _coerce_row(table_def, patch)
        if not filters:
            raise GatewayError("UPDATE requires a WHERE clause", code="21000")
        updated = 0
        for row in self.tables[table]:
            if all(self._matches(row, f) for f in filters):
                candidate = {**row, **copy.deepcopy(patch)}
                self._check_unique(table_def, candidate, skip=row)
                row.update(candidate)
                updated += 1
        return updated

    def upsert(self, table: str, row: dict, conflict_key: str) -> None:
        table_def = _lookup_table(table)
        _check_columns(table_def, row)
        row = _coerce_row(table_def, row)
        key_value = row.get(conflict_key)
        if key_value is None:
            raise GatewayError(
                f'null value in column "{conflict_key}" violates not-null constraint',
                code=NOT_NULL_VIOLATION,
            )
        for existing in self.tables[table]:
            if existing.get(conflict_key) == key_value:
                existing.update(copy.deepcopy(row))
                return
        self.insert(table, row)


def _to_gateway_error(exc: SQLAlchemyError) -> GatewayError:
    orig = getattr(exc, "orig", None)
    message = str(orig or exc)
    code = getattr(orig, "pgcode", None)
    if code is None:
        if isinstance(exc, IntegrityError) and "unique" in message.lower():
            code = UNIQUE_VIOLATION
        elif isinstance(exc, OperationalError) and "no such table" in message.lower():
            code = UNDEFINED_TABLE
    status_code = 409 if code == UNIQUE_VIOLATION else None
    return GatewayError(message, code=code, status_code=status_code)


class SqlTableGateway:
    """
    SQLAlchemy Core implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str, *, create_tables: bool = True):
        if not database_url:
            raise ValueError("DATABASE_URL is required for SqlTableGateway")
        self.engine = create_engine(
            database_url,
            future=True,
            pool_pre_ping=True,
            pool_recycle=1800,
        )
        if create_tables:
            metadata.create_all(self.engine)

    def _clause(self, table: Table, condition: Condition):
        if isinstance(condition, AnyOf):
            return or_(*(self._clause(table, f) for f in condition.filters))
        _check_columns(table, [condition.column])
        column = table.c[condition.column]
        if condition.op == "eq":
            return column == condition.value
        if condition.op == "like":
            return column.like(condition.value)
        if condition.op == "ilike":
            return column.ilike(condition.value)
        if condition.op == "gte":
            return column >= condition.value
        return column <= condition.value

    def select(
        self,
        table: str,
        filters: Sequence[Condition] = (),
        *,
        columns: Optional[Sequence[str]] = None,
        order: Sequence[Order] = (),
        limit: Optional[int] = None,
    ) -> list[dict]:
        table_def = _lookup_table(table)
        if columns:
            _check_columns(table_def, columns)
            stmt = sql_select(*(table_def.c[c] for c in columns))
        else:
            stmt = sql_select(table_def)
        for condition in filters:
            stmt = stmt.where(self._clause(table_def, condition))
        for ordering in order:
            _check_columns(table_def, [ordering.column])
            column = table_def.c[ordering.column]
            stmt = stmt.order_by(column.desc() if ordering.descending else column.asc())
        if order and "id" in table_def.c:
            stmt = stmt.order_by(
                table_def.c.id.desc() if order[-1].descending else table_def.c.id.asc()
            )
        if limit is not None:
            stmt = stmt.limit(limit)
        try:
            with self.engine.connect() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            raise _to_gateway_error(exc) from exc
        return [_normalize_row(dict(row)) for row in rows]

    def insert(self, table: str, row: dict) -> dict:
        table_def = _lookup_table(table)
        _check_columns(table_def, row)
        row = _coerce_row(table_def, row)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(sql_insert(table_def).values(**row))
                pk_filters = [
                    column == value
                    for column, value in zip(
                        table_def.primary_key.columns, result.inserted_primary_key
                    )
                ]
                stored = conn.execute(sql_select(table_def).where(*pk_filters)).mappings().one()
        except SQLAlchemyError as exc:
            raise _to_gateway_error(exc) from exc
        return _normalize_row(dict(stored))

    def update(self, table: str, patch: dict, filters: Sequence[Condition]) -> int:
        table_def = _lookup_table(table)
        _check_columns(table_def, patch)
        patch = _coerce_row(table_def, patch)
        if not filters:
            raise GatewayError("UPDATE requires a WHERE clause", code="21000")
        stmt = sql_update(table_def).values(**patch)
        for condition in filters:
            stmt = stmt.where(self._clause(table_def, condition))
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise _to_gateway_error(exc) from exc
        return result.rowcount or 0

    def upsert(self, table: str, row: dict, conflict_key: str) -> None:
        table_def = _lookup_table(table)
        _check_columns(table_def, [*row, conflict_key])
        row = _coerce_row(table_def, row)
        key_value = row.get(conflict_key)
        if key_value is None:
            raise GatewayError(
                f'null value in column "{conflict_key}" violates not-null constraint',
                code=NOT_NULL_VIOLATION,
            )
        key_column = table_def.c[conflict_key]
        try:
            with self.engine.begin() as conn:
                existing = conn.execute(
                    sql_select(key_column).where(key_column == key_value)
                ).first()
                if existing:
                    changes = {k: v for k, v in row.items() if k != conflict_key}
                    if changes:
                        conn.execute(
                            sql_update(table_def)
                            .where(key_column == key_value)
                            .values(**changes)
                        )
                else:
                    conn.execute(sql_insert(table_def).values(**row))
        except SQLAlchemyError as exc:
            raise _to_gateway_error(exc) from exc
