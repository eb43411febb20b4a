from __future__ import annotations

import logging
from typing import Any, List, Optional, Sequence

from .db import Database
from .dialects import LinkIntegrityQueryBuilder
from .metadata import FieldMeta, MetadataNotFound, MetadataStore, TableMeta
from .models import IntegrityIssue, IntegrityIssueType
from .sql import LinkFieldDescriptor


def build_descriptor(
    table: TableMeta,
    field: FieldMeta,
    *,
    foreign_table: Optional[TableMeta] = None,
    lookup_field: Optional[FieldMeta] = None,
) -> LinkFieldDescriptor:
    options = field.link_options
    return LinkFieldDescriptor(
        db_table_name=table.db_table_name,
        fk_host_table_name=options.fk_host_table_name,
        self_key_name=options.self_key_name,
        foreign_key_name=options.foreign_key_name,
        link_db_field_name=field.db_field_name,
        is_multi_value=bool(field.is_multiple_cell_value),
        foreign_db_table_name=foreign_table.db_table_name if foreign_table else "",
        lookup_db_field_name=lookup_field.db_field_name if lookup_field else "",
    )


class LinkFieldIntegrity:
    """Keeps the cached link JSON of a field in step with its foreign keys."""

    def __init__(
        self,
        db: Database,
        query: LinkIntegrityQueryBuilder,
        metadata: MetadataStore,
        *,
        batch_size: int = 500,
    ) -> None:
        self._db = db
        self._query = query
        self._metadata = metadata
        self._batch_size = max(1, int(batch_size))

    async def inconsistent_record_ids(self, descriptor: LinkFieldDescriptor) -> List[Any]:
        rows = await self._db.query_raw(self._query.check_links(descriptor))
        return [row["id"] for row in rows]

    async def get_issues(self, table: TableMeta, field: FieldMeta) -> List[IntegrityIssue]:
        descriptor = build_descriptor(table, field)
        record_ids = await self.inconsistent_record_ids(descriptor)
        if not record_ids:
            return []
        return [
            IntegrityIssue(
                type=IntegrityIssueType.INVALID_LINK_REFERENCE,
                message=(
                    f"Found {len(record_ids)} inconsistent links in table {table.name} "
                    f"(Field Name: {field.name}, Field ID: {field.id})"
                ),
            )
        ]

    async def fix_links(self, descriptor: LinkFieldDescriptor, record_ids: Sequence[Any]) -> int:
        updated = 0
        for start in range(0, len(record_ids), self._batch_size):
            batch = record_ids[start : start + self._batch_size]
            updated += await self._db.execute_raw(self._query.fix_links(descriptor, batch))
        return updated

    async def check_and_fix(self, descriptor: LinkFieldDescriptor) -> int:
        # Re-derive the drifted rows right before writing; the rewrite
        # recomputes from the keys, so a repeated run is a no-op.
        record_ids = await self.inconsistent_record_ids(descriptor)
        if not record_ids:
            return 0
        try:
            updated = await self.fix_links(descriptor, record_ids)
        except Exception:
            logging.error("Error updating inconsistent links in %s", descriptor.db_table_name, exc_info=True)
            raise
        logging.debug("Updated %s records in %s", updated, descriptor.db_table_name)
        return updated

    async def fix(self, table_id: str, field_id: str) -> Optional[IntegrityIssue]:
        table = await self._metadata.get_table(table_id)
        field = await self._metadata.get_link_field(field_id)
        if not await self._metadata.check_column_exist(table.db_table_name, field.db_field_name):
            logging.warning(
                "Skipping link rebuild for field %s: column %s.%s is missing",
                field.id,
                table.db_table_name,
                field.db_field_name,
            )
            return None
        options = field.link_options
        foreign_table = await self._metadata.get_table(options.foreign_table_id)
        lookup_field = await self._metadata.find_field(options.lookup_field_id)
        if lookup_field is None:
            raise MetadataNotFound(
                f"Lookup field {options.lookup_field_id} not found for link field {field.id}"
            )

        descriptor = build_descriptor(table, field, foreign_table=foreign_table, lookup_field=lookup_field)
        fixed = await self.check_and_fix(descriptor)
        if fixed > 0:
            return IntegrityIssue(
                type=IntegrityIssueType.INVALID_LINK_REFERENCE,
                message=f"Fixed {fixed} inconsistent links for link field (Field Name: {field.name}, Field ID: {field.id})",
            )
        return None

    async def update_json_field(
        self,
        *,
        record_ids: Sequence[Any],
        db_table_name: str,
        field: str,
        value: str | int | float | bool | None,
        array_index: Optional[int] = None,
    ) -> int:
        """Rewrite the referenced ``id`` inside a link cell without rebuilding it."""
        if not record_ids:
            return 0
        updated = 0
        for start in range(0, len(record_ids), self._batch_size):
            query = self._query.update_json_field(
                record_ids=list(record_ids[start : start + self._batch_size]),
                db_table_name=db_table_name,
                field=field,
                value=value,
                array_index=array_index,
            )
            updated += await self._db.execute_raw(query)
        return updated
