from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


FIELD_TYPE_LINK = "Link"

FIELD_COLUMNS = (
    "id",
    "table_id",
    "name",
    "type",
    "db_field_name",
    "options",
    "is_multiple_cell_value",
    "is_lookup",
)


class IntegrityIssueType(str, Enum):
    FOREIGN_TABLE_NOT_FOUND = "ForeignTableNotFound"
    FOREIGN_KEY_HOST_TABLE_NOT_FOUND = "ForeignKeyHostTableNotFound"
    FOREIGN_KEY_NOT_FOUND = "ForeignKeyNotFound"
    SYMMETRIC_FIELD_NOT_FOUND = "SymmetricFieldNotFound"
    MISSING_RECORD_REFERENCE = "MissingRecordReference"
    INVALID_LINK_REFERENCE = "InvalidLinkReference"

    @property
    def auto_fixable(self) -> bool:
        return self in (
            IntegrityIssueType.MISSING_RECORD_REFERENCE,
            IntegrityIssueType.INVALID_LINK_REFERENCE,
        )


class _ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class IntegrityIssue(_ApiModel):
    type: IntegrityIssueType
    message: str


class LinkFieldCheckItem(_ApiModel):
    base_id: Optional[str] = None
    base_name: Optional[str] = None
    table_id: str
    table_name: str
    field_id: str
    field_name: str
    issues: List[IntegrityIssue]


class IntegrityCheckResult(_ApiModel):
    has_issues: bool
    link_field_issues: List[LinkFieldCheckItem]
