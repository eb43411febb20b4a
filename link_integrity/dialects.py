"""Dialect-specific SQL for link integrity checks and repairs.

Each builder turns a :class:`LinkFieldDescriptor` into SQL text plus bound
parameters. Nothing here touches a connection: the checkers hand the
resulting :class:`SQLQuery` to a database executor.

Table and column names are interpolated after validation by
:class:`Identifier`; every value (record ids, JSON payloads, option keys)
is bound through :class:`ParamBinder`.
"""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, Optional, Sequence, Type

from .models import FIELD_COLUMNS, FIELD_TYPE_LINK
from .sql import Identifier, LinkFieldDescriptor, ParamBinder, SQLQuery

RECORD_ID = '"__id"'


def _require_ids(record_ids: Sequence[Any]) -> None:
    if not record_ids:
        raise ValueError("record_ids cannot be empty.")


class LinkIntegrityQueryBuilder(ABC):
    name: ClassVar[str]
    placeholder_style: ClassVar[str]

    def binder(self) -> ParamBinder:
        return ParamBinder(self.placeholder_style)

    @abstractmethod
    def in_ids(self, column_sql: str, record_ids: Sequence[Any], binder: ParamBinder) -> str:
        """Render ``column IN record_ids`` for this dialect."""

    @abstractmethod
    def check_links(self, descriptor: LinkFieldDescriptor) -> SQLQuery:
        """Select the ``id`` of every owning row whose link JSON has drifted."""

    @abstractmethod
    def fix_links(self, descriptor: LinkFieldDescriptor, record_ids: Sequence[Any]) -> SQLQuery:
        """Rewrite the link JSON of ``record_ids`` from the foreign keys."""

    @abstractmethod
    def update_json_field(
        self,
        *,
        record_ids: Sequence[Any],
        db_table_name: str,
        field: str,
        value: str | int | float | bool | None,
        array_index: Optional[int] = None,
    ) -> SQLQuery:
        """Patch the ``id`` of a JSON link value (or of one array element)."""

    @abstractmethod
    def table_exists(self, db_table_name: str) -> SQLQuery: ...

    @abstractmethod
    def column_exists(self, db_table_name: str, column_name: str) -> SQLQuery: ...

    @abstractmethod
    def option_equals(self, options_sql: str, key: str, value: Any, binder: ParamBinder) -> str: ...

    def link_fields_by_option(self, key: str, value: Any) -> SQLQuery:
        """Live, non-lookup link fields whose JSON options hold ``key == value``."""
        b = self.binder()
        field_type = b.bind(FIELD_TYPE_LINK)
        predicate = self.option_equals("options", key, value, b)
        return b.query(
            f"""
            SELECT {", ".join(FIELD_COLUMNS)}
            FROM "field"
            WHERE type = {field_type}
              AND COALESCE(is_lookup, FALSE) = FALSE
              AND deleted_time IS NULL
              AND {predicate}
            ORDER BY created_time, id
            """
        )

    def count_missing_references(self, fk_host_table_name: str, target_table_name: str, key_name: str) -> SQLQuery:
        host = Identifier(fk_host_table_name)
        target = Identifier(target_table_name)
        key = Identifier(key_name)
        return SQLQuery(
            f"""
            SELECT COUNT(h.{key}) AS count
            FROM {host} AS h
            LEFT JOIN {target} AS t ON t.{RECORD_ID} = h.{key}
            WHERE h.{key} IS NOT NULL AND t.{RECORD_ID} IS NULL
            """,
            (),
        )

    def delete_missing_references(self, fk_host_table_name: str, target_table_name: str, key_name: str) -> SQLQuery:
        host = Identifier(fk_host_table_name)
        target = Identifier(target_table_name)
        key = Identifier(key_name)
        return SQLQuery(
            f"""
            DELETE FROM {host}
            WHERE {host}.{key} IS NOT NULL
              AND NOT EXISTS (
                  SELECT 1 FROM {target} AS t WHERE t.{RECORD_ID} = {host}.{key}
              )
            """,
            (),
        )

    def clear_missing_references(self, fk_host_table_name: str, target_table_name: str, key_name: str) -> SQLQuery:
        host = Identifier(fk_host_table_name)
        target = Identifier(target_table_name)
        key = Identifier(key_name)
        return SQLQuery(
            f"""
            UPDATE {host}
            SET {key} = NULL
            WHERE {host}.{key} IS NOT NULL
              AND NOT EXISTS (
                  SELECT 1 FROM {target} AS t WHERE t.{RECORD_ID} = {host}.{key}
              )
            """,
            (),
        )


class PostgresIntegrityQuery(LinkIntegrityQueryBuilder):
    name = "postgres"
    placeholder_style = "numeric"

    def in_ids(self, column_sql: str, record_ids: Sequence[Any], binder: ParamBinder) -> str:
        _require_ids(record_ids)
        return f"{column_sql} = ANY({binder.bind(list(record_ids))})"

    def check_links(self, descriptor: LinkFieldDescriptor) -> SQLQuery:
        owner = Identifier(descriptor.db_table_name)
        host = Identifier(descriptor.fk_host_table_name)
        self_key = Identifier(descriptor.self_key_name)
        fk = Identifier(descriptor.foreign_key_name)
        link = Identifier(descriptor.link_db_field_name)

        if descriptor.is_multi_value:
            return SQLQuery(
                f"""
                SELECT t1.{RECORD_ID} AS id
                FROM {owner} AS t1
                LEFT JOIN (
                    SELECT {self_key} AS self_id,
                           string_agg({fk}::text, ',' ORDER BY {fk}::text) AS fk_ids
                    FROM {host}
                    WHERE {self_key} IS NOT NULL AND {fk} IS NOT NULL
                    GROUP BY {self_key}
                ) AS fk_grouped ON fk_grouped.self_id = t1.{RECORD_ID}
                WHERE (fk_grouped.self_id IS NULL AND t1.{link} IS NOT NULL)
                   OR (fk_grouped.self_id IS NOT NULL AND t1.{link} IS NULL)
                   OR (t1.{link} IS NOT NULL AND jsonb_typeof(t1.{link}::jsonb) <> 'array')
                   OR (
                       fk_grouped.self_id IS NOT NULL
                       AND t1.{link} IS NOT NULL
                       AND fk_grouped.fk_ids IS DISTINCT FROM (
                           SELECT string_agg(t.link_id, ',' ORDER BY t.link_id)
                           FROM (
                               SELECT elem ->> 'id' AS link_id
                               FROM jsonb_array_elements(
                                   CASE WHEN jsonb_typeof(t1.{link}::jsonb) = 'array'
                                        THEN t1.{link}::jsonb ELSE '[]'::jsonb END
                               ) AS elem
                           ) AS t
                       )
                   )
                """,
                (),
            )

        if descriptor.is_self_hosted:
            return SQLQuery(
                f"""
                SELECT t1.{RECORD_ID} AS id
                FROM {owner} AS t1
                WHERE (t1.{fk} IS NULL AND t1.{link} IS NOT NULL)
                   OR (t1.{fk} IS NOT NULL AND (t1.{link}::jsonb ->> 'id') IS DISTINCT FROM t1.{fk}::text)
                """,
                (),
            )

        return SQLQuery(
            f"""
            SELECT DISTINCT t1.{RECORD_ID} AS id
            FROM {owner} AS t1
            LEFT JOIN {host} AS t2 ON t2.{self_key} = t1.{RECORD_ID}
            WHERE (t2.{fk} IS NULL AND t1.{link} IS NOT NULL)
               OR (t2.{fk} IS NOT NULL AND (t1.{link}::jsonb ->> 'id') IS DISTINCT FROM t2.{fk}::text)
            """,
            (),
        )

    def fix_links(self, descriptor: LinkFieldDescriptor, record_ids: Sequence[Any]) -> SQLQuery:
        owner = Identifier(descriptor.db_table_name)
        host = Identifier(descriptor.fk_host_table_name)
        foreign = Identifier(descriptor.foreign_db_table_name)
        lookup = Identifier(descriptor.lookup_db_field_name)
        self_key = Identifier(descriptor.self_key_name)
        fk = Identifier(descriptor.foreign_key_name)
        link = Identifier(descriptor.link_db_field_name)
        b = self.binder()

        if descriptor.is_multi_value:
            value_sql = f"""(
                SELECT jsonb_agg(
                    jsonb_build_object('id', fk.{fk}, 'title', ft.{lookup})
                    ORDER BY fk.{fk}
                )
                FROM {host} AS fk
                LEFT JOIN {foreign} AS ft ON ft.{RECORD_ID} = fk.{fk}
                WHERE fk.{self_key} = t1.{RECORD_ID} AND fk.{fk} IS NOT NULL
            )"""
        elif descriptor.is_self_hosted:
            value_sql = f"""CASE
                WHEN t1.{fk} IS NULL THEN NULL
                ELSE jsonb_build_object(
                    'id', t1.{fk},
                    'title', (SELECT ft.{lookup} FROM {foreign} AS ft WHERE ft.{RECORD_ID} = t1.{fk})
                )
            END"""
        else:
            value_sql = f"""(
                SELECT CASE
                    WHEN t2.{fk} IS NULL THEN NULL
                    ELSE jsonb_build_object('id', t2.{fk}, 'title', ft.{lookup})
                END
                FROM {host} AS t2
                LEFT JOIN {foreign} AS ft ON ft.{RECORD_ID} = t2.{fk}
                WHERE t2.{self_key} = t1.{RECORD_ID}
                ORDER BY t2.{fk}
                LIMIT 1
            )"""

        where = self.in_ids(f"t1.{RECORD_ID}", record_ids, b)
        return b.query(f"UPDATE {owner} AS t1 SET {link} = {value_sql} WHERE {where}")

    def update_json_field(
        self,
        *,
        record_ids: Sequence[Any],
        db_table_name: str,
        field: str,
        value: str | int | float | bool | None,
        array_index: Optional[int] = None,
    ) -> SQLQuery:
        table = Identifier(db_table_name)
        column = Identifier(field)
        path = "{%d,id}" % int(array_index) if array_index is not None else "{id}"
        b = self.binder()
        payload = b.bind(json.dumps(value))
        where = self.in_ids(RECORD_ID, record_ids, b)
        return b.query(
            f"UPDATE {table} SET {column} = jsonb_set({column}::jsonb, '{path}', {payload}::jsonb) WHERE {where}"
        )

    def table_exists(self, db_table_name: str) -> SQLQuery:
        table = Identifier(db_table_name)
        b = self.binder()
        schema_sql = f"{b.bind(table.schema)}::text" if table.schema else "current_schema()"
        name_sql = f"{b.bind(table.name)}::text"
        return b.query(
            f"""
            SELECT EXISTS (
                SELECT 1 FROM information_schema.tables
                WHERE table_schema = {schema_sql} AND table_name = {name_sql}
            ) AS "exists"
            """
        )

    def column_exists(self, db_table_name: str, column_name: str) -> SQLQuery:
        table = Identifier(db_table_name)
        column = Identifier(column_name)
        b = self.binder()
        schema_sql = f"{b.bind(table.schema)}::text" if table.schema else "current_schema()"
        name_sql = f"{b.bind(table.name)}::text"
        column_sql = f"{b.bind(column.value)}::text"
        return b.query(
            f"""
            SELECT EXISTS (
                SELECT 1 FROM information_schema.columns
                WHERE table_schema = {schema_sql}
                  AND table_name = {name_sql}
                  AND column_name = {column_sql}
            ) AS "exists"
            """
        )

    def option_equals(self, options_sql: str, key: str, value: Any, binder: ParamBinder) -> str:
        return f"({options_sql}::jsonb ->> {binder.bind(key)}::text) = {binder.bind(value)}::text"


class SqliteIntegrityQuery(LinkIntegrityQueryBuilder):
    name = "sqlite"
    placeholder_style = "qmark"

    def in_ids(self, column_sql: str, record_ids: Sequence[Any], binder: ParamBinder) -> str:
        _require_ids(record_ids)
        return f"{column_sql} IN ({binder.bind_each(record_ids)})"

    def check_links(self, descriptor: LinkFieldDescriptor) -> SQLQuery:
        owner = Identifier(descriptor.db_table_name)
        host = Identifier(descriptor.fk_host_table_name)
        self_key = Identifier(descriptor.self_key_name)
        fk = Identifier(descriptor.foreign_key_name)
        link = Identifier(descriptor.link_db_field_name)

        # Every column is alias-qualified: SQLite reads an unknown bare
        # "name" as a string literal instead of failing.
        if descriptor.is_multi_value:
            # GROUP_CONCAT keeps the order of an ORDER BY subquery; both sides
            # are sorted the same way so the comparison ignores link order.
            # json_each only ever sees an array, and only objects yield ids.
            return SQLQuery(
                f"""
                SELECT t1.{RECORD_ID} AS id
                FROM {owner} AS t1
                LEFT JOIN (
                    SELECT self_id, GROUP_CONCAT(fk_id, ',') AS fk_ids
                    FROM (
                        SELECT h.{self_key} AS self_id, CAST(h.{fk} AS TEXT) AS fk_id
                        FROM {host} AS h
                        WHERE h.{self_key} IS NOT NULL AND h.{fk} IS NOT NULL
                        ORDER BY self_id, fk_id
                    )
                    GROUP BY self_id
                ) AS fk_grouped ON fk_grouped.self_id = t1.{RECORD_ID}
                WHERE (fk_grouped.self_id IS NULL AND t1.{link} IS NOT NULL)
                   OR (fk_grouped.self_id IS NOT NULL AND t1.{link} IS NULL)
                   OR (t1.{link} IS NOT NULL AND json_type(t1.{link}) IS NOT 'array')
                   OR (
                       fk_grouped.self_id IS NOT NULL
                       AND t1.{link} IS NOT NULL
                       AND fk_grouped.fk_ids IS NOT (
                           SELECT GROUP_CONCAT(link_id, ',')
                           FROM (
                               SELECT CASE WHEN elem.type = 'object'
                                           THEN CAST(json_extract(elem.value, '$.id') AS TEXT)
                                      END AS link_id
                               FROM json_each(
                                   CASE WHEN json_type(t1.{link}) = 'array' THEN t1.{link} ELSE '[]' END
                               ) AS elem
                               ORDER BY link_id
                           )
                       )
                   )
                """,
                (),
            )

        if descriptor.is_self_hosted:
            return SQLQuery(
                f"""
                SELECT t1.{RECORD_ID} AS id
                FROM {owner} AS t1
                WHERE (t1.{fk} IS NULL AND t1.{link} IS NOT NULL)
                   OR (t1.{fk} IS NOT NULL
                       AND CAST(json_extract(t1.{link}, '$.id') AS TEXT) IS NOT CAST(t1.{fk} AS TEXT))
                """,
                (),
            )

        return SQLQuery(
            f"""
            SELECT DISTINCT t1.{RECORD_ID} AS id
            FROM {owner} AS t1
            LEFT JOIN {host} AS t2 ON t2.{self_key} = t1.{RECORD_ID}
            WHERE (t2.{fk} IS NULL AND t1.{link} IS NOT NULL)
               OR (t2.{fk} IS NOT NULL
                   AND CAST(json_extract(t1.{link}, '$.id') AS TEXT) IS NOT CAST(t2.{fk} AS TEXT))
            """,
            (),
        )

    def fix_links(self, descriptor: LinkFieldDescriptor, record_ids: Sequence[Any]) -> SQLQuery:
        # SQLite cannot alias the UPDATE target, so correlated subqueries
        # refer to the owning table by name.
        owner = Identifier(descriptor.db_table_name)
        host = Identifier(descriptor.fk_host_table_name)
        foreign = Identifier(descriptor.foreign_db_table_name)
        lookup = Identifier(descriptor.lookup_db_field_name)
        self_key = Identifier(descriptor.self_key_name)
        fk = Identifier(descriptor.foreign_key_name)
        link = Identifier(descriptor.link_db_field_name)
        b = self.binder()

        if descriptor.is_multi_value:
            value_sql = f"""(
                SELECT CASE WHEN COUNT(*) = 0 THEN NULL ELSE json_group_array(json(item)) END
                FROM (
                    SELECT json_object('id', fk.{fk}, 'title', ft.{lookup}) AS item
                    FROM {host} AS fk
                    LEFT JOIN {foreign} AS ft ON ft.{RECORD_ID} = fk.{fk}
                    WHERE fk.{self_key} = {owner}.{RECORD_ID} AND fk.{fk} IS NOT NULL
                    ORDER BY fk.{fk}
                )
            )"""
        elif descriptor.is_self_hosted:
            value_sql = f"""CASE
                WHEN {owner}.{fk} IS NULL THEN NULL
                ELSE json_object(
                    'id', {owner}.{fk},
                    'title', (SELECT ft.{lookup} FROM {foreign} AS ft WHERE ft.{RECORD_ID} = {owner}.{fk})
                )
            END"""
        else:
            value_sql = f"""(
                SELECT CASE
                    WHEN t2.{fk} IS NULL THEN NULL
                    ELSE json_object('id', t2.{fk}, 'title', ft.{lookup})
                END
                FROM {host} AS t2
                LEFT JOIN {foreign} AS ft ON ft.{RECORD_ID} = t2.{fk}
                WHERE t2.{self_key} = {owner}.{RECORD_ID}
                ORDER BY t2.{fk} IS NULL, t2.{fk}
                LIMIT 1
            )"""

        where = self.in_ids(f"{owner}.{RECORD_ID}", record_ids, b)
        return b.query(f"UPDATE {owner} SET {link} = {value_sql} WHERE {where}")

    def update_json_field(
        self,
        *,
        record_ids: Sequence[Any],
        db_table_name: str,
        field: str,
        value: str | int | float | bool | None,
        array_index: Optional[int] = None,
    ) -> SQLQuery:
        table = Identifier(db_table_name)
        column = Identifier(field)
        b = self.binder()
        if array_index is not None:
            path_sql = f"'$[' || {b.bind(int(array_index))} || '].id'"
        else:
            path_sql = "'$.id'"
        payload = b.bind(json.dumps(value))
        where = self.in_ids(f"{table}.{RECORD_ID}", record_ids, b)
        return b.query(
            f"UPDATE {table} SET {column} = json_replace({table}.{column}, {path_sql}, json({payload})) WHERE {where}"
        )

    def _master(self, table: Identifier) -> str:
        if table.schema:
            return f'"{table.schema}".sqlite_master'
        return "sqlite_master"

    def table_exists(self, db_table_name: str) -> SQLQuery:
        table = Identifier(db_table_name)
        b = self.binder()
        name_sql = b.bind(table.name)
        return b.query(
            f"""
            SELECT EXISTS (
                SELECT 1 FROM {self._master(table)} WHERE type = 'table' AND name = {name_sql}
            ) AS "exists"
            """
        )

    def column_exists(self, db_table_name: str, column_name: str) -> SQLQuery:
        table = Identifier(db_table_name)
        column = Identifier(column_name)
        b = self.binder()
        if table.schema:
            source = f"pragma_table_info({b.bind(table.name)}, {b.bind(table.schema)})"
        else:
            source = f"pragma_table_info({b.bind(table.name)})"
        column_sql = b.bind(column.value)
        return b.query(
            f"""
            SELECT EXISTS (
                SELECT 1 FROM {source} WHERE name = {column_sql}
            ) AS "exists"
            """
        )

    def option_equals(self, options_sql: str, key: str, value: Any, binder: ParamBinder) -> str:
        return f"json_extract({options_sql}, '$.' || {binder.bind(key)}) = {binder.bind(value)}"


QUERY_BUILDERS: Dict[str, Type[LinkIntegrityQueryBuilder]] = {
    PostgresIntegrityQuery.name: PostgresIntegrityQuery,
    SqliteIntegrityQuery.name: SqliteIntegrityQuery,
}


def get_query_builder(dialect: str) -> LinkIntegrityQueryBuilder:
    try:
        return QUERY_BUILDERS[str(dialect).lower()]()
    except KeyError:
        raise ValueError(
            f"Unsupported dialect: {dialect}. Expected one of: {', '.join(sorted(QUERY_BUILDERS))}"
        ) from None
