from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .db import Database
from .dialects import LinkIntegrityQueryBuilder
from .models import FIELD_COLUMNS, FIELD_TYPE_LINK


class MetadataNotFound(LookupError):
    """Raised when a table, field or base required by a repair is gone."""


@dataclass(frozen=True)
class BaseMeta:
    id: str
    name: str


@dataclass(frozen=True)
class TableMeta:
    id: str
    base_id: str
    name: str
    db_table_name: str


@dataclass(frozen=True)
class LinkFieldOptions:
    foreign_table_id: str
    fk_host_table_name: str
    self_key_name: str
    foreign_key_name: str
    lookup_field_id: str = ""
    symmetric_field_id: Optional[str] = None
    base_id: Optional[str] = None

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "LinkFieldOptions":
        return cls(
            foreign_table_id=str(options.get("foreignTableId") or ""),
            fk_host_table_name=str(options.get("fkHostTableName") or ""),
            self_key_name=str(options.get("selfKeyName") or ""),
            foreign_key_name=str(options.get("foreignKeyName") or ""),
            lookup_field_id=str(options.get("lookupFieldId") or ""),
            symmetric_field_id=options.get("symmetricFieldId") or None,
            base_id=options.get("baseId") or None,
        )


def _load_options(raw: Any, *, context: str) -> Dict[str, Any]:
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        loaded = json.loads(raw)
    except (TypeError, json.JSONDecodeError):
        logging.warning("Failed to decode options for %s", context, exc_info=True)
        return {}
    return loaded if isinstance(loaded, dict) else {}


@dataclass(frozen=True)
class FieldMeta:
    id: str
    table_id: str
    name: str
    type: str
    db_field_name: str
    options: Dict[str, Any] = field(default_factory=dict, hash=False, compare=False)
    is_multiple_cell_value: bool = False
    is_lookup: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "FieldMeta":
        return cls(
            id=str(row["id"]),
            table_id=str(row["table_id"]),
            name=str(row["name"]),
            type=str(row["type"]),
            db_field_name=str(row["db_field_name"]),
            options=_load_options(row.get("options"), context=f"field {row['id']}"),
            is_multiple_cell_value=bool(row.get("is_multiple_cell_value")),
            is_lookup=bool(row.get("is_lookup")),
        )

    @property
    def link_options(self) -> LinkFieldOptions:
        return LinkFieldOptions.from_options(self.options)


_FIELD_SELECT = ", ".join(FIELD_COLUMNS)
_LIVE_LINK_FIELD = "type = {type} AND COALESCE(is_lookup, FALSE) = FALSE AND deleted_time IS NULL"


class MetadataStore:
    """Reads table/field metadata and introspects the physical catalog."""

    def __init__(self, db: Database, query: LinkIntegrityQueryBuilder) -> None:
        self._db = db
        self._query = query

    async def _first(self, text: str, binder) -> Optional[Dict[str, Any]]:
        rows = await self._db.query_raw(binder.query(text))
        return rows[0] if rows else None

    async def find_base(self, base_id: str) -> Optional[BaseMeta]:
        b = self._query.binder()
        row = await self._first(
            f"SELECT id, name FROM base WHERE id = {b.bind(base_id)} AND deleted_time IS NULL",
            b,
        )
        return BaseMeta(id=str(row["id"]), name=str(row["name"])) if row else None

    async def find_table(self, table_id: str) -> Optional[TableMeta]:
        b = self._query.binder()
        row = await self._first(
            f"""
            SELECT id, base_id, name, db_table_name FROM table_meta
            WHERE id = {b.bind(table_id)} AND deleted_time IS NULL
            """,
            b,
        )
        return _table_from_row(row) if row else None

    async def get_table(self, table_id: str) -> TableMeta:
        table = await self.find_table(table_id)
        if table is None:
            raise MetadataNotFound(f"Table not found: {table_id}")
        return table

    async def find_table_in_live_base(self, table_id: str) -> Optional[TableMeta]:
        b = self._query.binder()
        row = await self._first(
            f"""
            SELECT t.id, t.base_id, t.name, t.db_table_name
            FROM table_meta AS t
            JOIN base AS b ON b.id = t.base_id
            WHERE t.id = {b.bind(table_id)} AND t.deleted_time IS NULL AND b.deleted_time IS NULL
            """,
            b,
        )
        return _table_from_row(row) if row else None

    async def find_field(self, field_id: str) -> Optional[FieldMeta]:
        b = self._query.binder()
        row = await self._first(
            f"SELECT {_FIELD_SELECT} FROM field WHERE id = {b.bind(field_id)} AND deleted_time IS NULL",
            b,
        )
        return FieldMeta.from_row(row) if row else None

    async def get_link_field(self, field_id: str) -> FieldMeta:
        b = self._query.binder()
        live = _LIVE_LINK_FIELD.format(type=b.bind(FIELD_TYPE_LINK))
        row = await self._first(
            f"SELECT {_FIELD_SELECT} FROM field WHERE {live} AND id = {b.bind(field_id)}",
            b,
        )
        if row is None:
            raise MetadataNotFound(f"Link field not found: {field_id}")
        return FieldMeta.from_row(row)

    async def list_tables_with_link_fields(self, base_id: str) -> List[Tuple[TableMeta, List[FieldMeta]]]:
        b = self._query.binder()
        table_rows = await self._db.query_raw(
            b.query(
                f"""
                SELECT id, base_id, name, db_table_name FROM table_meta
                WHERE base_id = {b.bind(base_id)} AND deleted_time IS NULL
                ORDER BY created_time, id
                """
            )
        )
        tables = [_table_from_row(row) for row in table_rows]
        if not tables:
            return []

        b = self._query.binder()
        live = _LIVE_LINK_FIELD.format(type=b.bind(FIELD_TYPE_LINK))
        field_rows = await self._db.query_raw(
            b.query(
                f"""
                SELECT {_FIELD_SELECT} FROM field
                WHERE {live} AND table_id IN ({b.bind_each([t.id for t in tables])})
                ORDER BY created_time, id
                """
            )
        )
        by_table: Dict[str, List[FieldMeta]] = {t.id: [] for t in tables}
        for row in field_rows:
            meta = FieldMeta.from_row(row)
            by_table[meta.table_id].append(meta)
        return [(t, by_table[t.id]) for t in tables]

    async def find_cross_base_link_fields(self, base_id: str) -> List[FieldMeta]:
        """Link fields of other bases whose foreign table lives in ``base_id``."""
        rows = await self._db.query_raw(self._query.link_fields_by_option("baseId", base_id))
        return [FieldMeta.from_row(row) for row in rows]

    async def check_table_exist(self, db_table_name: str) -> bool:
        rows = await self._db.query_raw(self._query.table_exists(db_table_name))
        return bool(rows and rows[0].get("exists"))

    async def check_column_exist(self, db_table_name: str, column_name: str) -> bool:
        rows = await self._db.query_raw(self._query.column_exists(db_table_name, column_name))
        return bool(rows and rows[0].get("exists"))


def _table_from_row(row: Mapping[str, Any]) -> TableMeta:
    return TableMeta(
        id=str(row["id"]),
        base_id=str(row["base_id"]),
        name=str(row["name"]),
        db_table_name=str(row["db_table_name"]),
    )
