from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional

from .db import Database
from .dialects import LinkIntegrityQueryBuilder
from .metadata import FieldMeta, MetadataStore, TableMeta
from .models import IntegrityIssue, IntegrityIssueType


@dataclass(frozen=True)
class ReferenceSide:
    """One key column of the host table and the table it must resolve into."""

    target: TableMeta
    key_name: str
    is_self: bool


def reference_sides(
    table: TableMeta, foreign_table: TableMeta, fk_host_table_name: str, self_key_name: str, foreign_key_name: str
) -> List[ReferenceSide]:
    # A key that lives on its own target table is that table's primary key.
    sides: List[ReferenceSide] = []
    if table.db_table_name != fk_host_table_name:
        sides.append(ReferenceSide(target=table, key_name=self_key_name, is_self=True))
    if foreign_table.db_table_name != fk_host_table_name:
        sides.append(ReferenceSide(target=foreign_table, key_name=foreign_key_name, is_self=False))
    return sides


def is_junction_table(table: TableMeta, foreign_table: TableMeta, fk_host_table_name: str) -> bool:
    return fk_host_table_name not in (table.db_table_name, foreign_table.db_table_name)


class ForeignKeyIntegrity:
    """Finds and removes keys that point at rows which no longer exist."""

    def __init__(self, db: Database, query: LinkIntegrityQueryBuilder, metadata: MetadataStore) -> None:
        self._db = db
        self._query = query
        self._metadata = metadata

    async def count_missing_references(self, fk_host_table_name: str, target_table_name: str, key_name: str) -> int:
        """Count non-null keys of the host table that have no target row.

        A missing table or column counts as zero: that condition is reported
        separately as a structural issue.
        """
        query = self._query.count_missing_references(fk_host_table_name, target_table_name, key_name)
        try:
            rows = await self._db.query_raw(query)
        except Exception as exc:
            if not self._db.is_missing_relation_error(exc):
                raise
            logging.warning(
                "Skipping reference check %s.%s -> %s on missing relation: %s",
                fk_host_table_name,
                key_name,
                target_table_name,
                exc,
            )
            return 0
        return int(rows[0].get("count") or 0) if rows else 0

    async def delete_missing_references(self, fk_host_table_name: str, target_table_name: str, key_name: str) -> int:
        query = self._query.delete_missing_references(fk_host_table_name, target_table_name, key_name)
        return await self._db.execute_raw(query)

    async def clear_missing_references(self, fk_host_table_name: str, target_table_name: str, key_name: str) -> int:
        query = self._query.clear_missing_references(fk_host_table_name, target_table_name, key_name)
        return await self._db.execute_raw(query)

    async def get_issues(self, table: TableMeta, field: FieldMeta, foreign_table: TableMeta) -> List[IntegrityIssue]:
        options = field.link_options
        issues: List[IntegrityIssue] = []
        sides = reference_sides(
            table, foreign_table, options.fk_host_table_name, options.self_key_name, options.foreign_key_name
        )
        for side in sides:
            count = await self.count_missing_references(
                options.fk_host_table_name, side.target.db_table_name, side.key_name
            )
            if count <= 0:
                continue
            if side.is_self:
                message = f"Found {count} invalid self references in table {side.target.name}"
            else:
                message = f"Found {count} invalid foreign references to table {side.target.name}"
            issues.append(
                IntegrityIssue(
                    type=IntegrityIssueType.MISSING_RECORD_REFERENCE,
                    message=f"{message} (Field Name: {field.name}, Field ID: {field.id})",
                )
            )
        return issues

    async def fix(self, table_id: str, field_id: str) -> Optional[IntegrityIssue]:
        """Drop dangling junction rows, or null out dangling keys on record tables."""
        table = await self._metadata.get_table(table_id)
        field = await self._metadata.get_link_field(field_id)
        options = field.link_options
        foreign_table = await self._metadata.get_table(options.foreign_table_id)

        junction = is_junction_table(table, foreign_table, options.fk_host_table_name)
        sides = reference_sides(
            table, foreign_table, options.fk_host_table_name, options.self_key_name, options.foreign_key_name
        )
        total = 0
        for side in sides:
            if junction:
                fixed = await self.delete_missing_references(
                    options.fk_host_table_name, side.target.db_table_name, side.key_name
                )
            else:
                fixed = await self.clear_missing_references(
                    options.fk_host_table_name, side.target.db_table_name, side.key_name
                )
            total += fixed
            logging.debug(
                "%s %d dangling %s keys in %s for field %s",
                "Deleted" if junction else "Cleared",
                fixed,
                "self" if side.is_self else "foreign",
                options.fk_host_table_name,
                field.id,
            )

        if total > 0:
            return IntegrityIssue(
                type=IntegrityIssueType.MISSING_RECORD_REFERENCE,
                message=f"Fixed {total} invalid references for link field (Field Name: {field.name}, Field ID: {field.id})",
            )
        return None
