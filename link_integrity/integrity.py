"""Base-wide link integrity check and repair.

A check walks every live link field of a base, plus the link fields of other
bases that point into it, and reports typed issues grouped per field. A fix
re-runs the check and applies the corrective action for each repairable issue
type; schema-level issues (missing tables, key columns or symmetric fields)
are reported but never repaired here.
"""

from __future__ import annotations

import logging
import time
from typing import Dict, List, Optional, Tuple

from .db import Database
from .dialects import LinkIntegrityQueryBuilder
from .foreign_key import ForeignKeyIntegrity
from .link_field import LinkFieldIntegrity
from .locks import hold_base_lock
from .metadata import BaseMeta, FieldMeta, MetadataNotFound, MetadataStore, TableMeta
from .models import (
    IntegrityCheckResult,
    IntegrityIssue,
    IntegrityIssueType,
    LinkFieldCheckItem,
)


class LinkIntegrityService:
    def __init__(self, db: Database, query: LinkIntegrityQueryBuilder, *, fix_batch_size: int = 500) -> None:
        if db.dialect != query.name:
            raise ValueError(f"Query builder {query.name} does not match database dialect {db.dialect}")
        self.metadata = MetadataStore(db, query)
        self.foreign_keys = ForeignKeyIntegrity(db, query, self.metadata)
        self.link_fields = LinkFieldIntegrity(db, query, self.metadata, batch_size=fix_batch_size)

    async def link_integrity_check(self, base_id: str) -> IntegrityCheckResult:
        start = time.time()
        tables = await self.metadata.list_tables_with_link_fields(base_id)
        own_table_ids = {table.id for table, _fields in tables}
        cross_base_fields = [
            field
            for field in await self.metadata.find_cross_base_link_fields(base_id)
            if field.table_id not in own_table_ids
        ]

        items: List[LinkFieldCheckItem] = []
        checked = 0
        for table, fields in tables:
            for field in fields:
                checked += 1
                issues = await self.check_link_field(table, field)
                if issues:
                    items.append(_check_item(table, field, issues))

        for field in cross_base_fields:
            table = await self.metadata.find_table_in_live_base(field.table_id)
            if table is None:
                continue
            checked += 1
            issues = await self.check_link_field(table, field)
            if not issues:
                continue
            base = await self.metadata.find_base(table.base_id)
            if base is None:
                raise MetadataNotFound(f"Base not found: {table.base_id}")
            items.append(_check_item(table, field, issues, base=base))

        logging.info(
            "Checked %d link fields for base %s: %d with issues (%.2fs)",
            checked,
            base_id,
            len(items),
            time.time() - start,
        )
        return IntegrityCheckResult(has_issues=len(items) > 0, link_field_issues=items)

    async def check_link_field(self, table: TableMeta, field: FieldMeta) -> List[IntegrityIssue]:
        """Structural checks first, then row-level checks when the layout allows them."""
        options = field.link_options
        where = f"(Field Name: {field.name}, Field ID: {field.id}) in table {table.name}"
        issues: List[IntegrityIssue] = []

        foreign_table = await self.metadata.find_table(options.foreign_table_id)
        if foreign_table is None:
            issues.append(
                IntegrityIssue(
                    type=IntegrityIssueType.FOREIGN_TABLE_NOT_FOUND,
                    message=f"Foreign table with ID {options.foreign_table_id} not found for link field {where}",
                )
            )

        keys_exist = False
        if not await self.metadata.check_table_exist(options.fk_host_table_name):
            issues.append(
                IntegrityIssue(
                    type=IntegrityIssueType.FOREIGN_KEY_HOST_TABLE_NOT_FOUND,
                    message=f"Foreign key host table {options.fk_host_table_name} not found for link field {where}",
                )
            )
        else:
            self_key_exists = await self.metadata.check_column_exist(
                options.fk_host_table_name, options.self_key_name
            )
            foreign_key_exists = await self.metadata.check_column_exist(
                options.fk_host_table_name, options.foreign_key_name
            )
            if not self_key_exists:
                issues.append(
                    IntegrityIssue(
                        type=IntegrityIssueType.FOREIGN_KEY_NOT_FOUND,
                        message=f'Self key name "{options.self_key_name}" is missing for link field {where}',
                    )
                )
            if not foreign_key_exists:
                issues.append(
                    IntegrityIssue(
                        type=IntegrityIssueType.FOREIGN_KEY_NOT_FOUND,
                        message=f'Foreign key name "{options.foreign_key_name}" is missing for link field {where}',
                    )
                )
            keys_exist = self_key_exists and foreign_key_exists

        if options.symmetric_field_id:
            symmetric_field = await self.metadata.find_field(options.symmetric_field_id)
            if symmetric_field is None:
                issues.append(
                    IntegrityIssue(
                        type=IntegrityIssueType.SYMMETRIC_FIELD_NOT_FOUND,
                        message=f"Symmetric field ID {options.symmetric_field_id} not found for link field {where}",
                    )
                )

        link_column_exists = await self.metadata.check_column_exist(table.db_table_name, field.db_field_name)
        if not link_column_exists:
            issues.append(
                IntegrityIssue(
                    type=IntegrityIssueType.FOREIGN_KEY_NOT_FOUND,
                    message=f'Link column "{field.db_field_name}" is missing for link field {where}',
                )
            )

        if foreign_table is not None and keys_exist:
            issues.extend(await self.foreign_keys.get_issues(table, field, foreign_table))
            if link_column_exists:
                issues.extend(await self.link_fields.get_issues(table, field))

        return issues

    async def link_integrity_fix(self, base_id: str) -> List[IntegrityIssue]:
        """Repair every auto-fixable issue found by a fresh check.

        Dangling keys are repaired for all fields before any projection is
        rebuilt, so the rebuilt JSON never mirrors a key that is about to go.
        """
        async with hold_base_lock(base_id):
            start = time.time()
            check_result = await self.link_integrity_check(base_id)

            reference_fixes: List[Tuple[str, str]] = []
            projection_fixes: Dict[Tuple[str, str], None] = {}
            for item in check_result.link_field_issues:
                key = (item.table_id, item.field_id)
                for issue in item.issues:
                    if not issue.type.auto_fixable:
                        continue
                    if issue.type is IntegrityIssueType.MISSING_RECORD_REFERENCE and key not in reference_fixes:
                        reference_fixes.append(key)
                    projection_fixes[key] = None

            results: List[IntegrityIssue] = []
            for table_id, field_id in reference_fixes:
                _append(results, await self.foreign_keys.fix(table_id, field_id))
            for table_id, field_id in projection_fixes:
                _append(results, await self.link_fields.fix(table_id, field_id))

            logging.info(
                "Applied %d link integrity fixes for base %s (%.2fs)",
                len(results),
                base_id,
                time.time() - start,
            )
            return results


def _append(results: List[IntegrityIssue], result: Optional[IntegrityIssue]) -> None:
    if result is not None:
        results.append(result)


def _check_item(
    table: TableMeta, field: FieldMeta, issues: List[IntegrityIssue], *, base: Optional[BaseMeta] = None
) -> LinkFieldCheckItem:
    return LinkFieldCheckItem(
        base_id=base.id if base else None,
        base_name=base.name if base else None,
        table_id=table.id,
        table_name=table.name,
        field_id=field.id,
        field_name=field.name,
        issues=issues,
    )
