from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, List, Sequence, Tuple


class IdentifierNotAllowed(ValueError):
    """Raised when a table/column name is not a system-generated identifier."""


IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
# Postgres truncates identifiers longer than NAMEDATALEN - 1.
MAX_IDENTIFIER_LENGTH = 63


@dataclass(frozen=True)
class SQLQuery:
    text: str
    params: Tuple[Any, ...]


@dataclass(frozen=True)
class Identifier:
    """A table or column name that is safe to interpolate into SQL text.

    Only the ``schema.table`` form is accepted as a qualified name. Values
    never travel through this type; they go through :class:`ParamBinder`.
    """

    value: str

    def __post_init__(self) -> None:
        if not isinstance(self.value, str) or not self.value:
            raise IdentifierNotAllowed("SQL identifier cannot be empty.")
        parts = self.value.split(".")
        if len(parts) > 2:
            raise IdentifierNotAllowed(
                f"Invalid SQL identifier: {self.value!r}. At most one schema qualifier is allowed."
            )
        for part in parts:
            if len(part) > MAX_IDENTIFIER_LENGTH or not IDENTIFIER_PATTERN.match(part):
                raise IdentifierNotAllowed(
                    f"Invalid SQL identifier: {self.value!r}. "
                    "Only letters, digits and underscores are allowed."
                )

    @property
    def schema(self) -> str | None:
        parts = self.value.split(".")
        return parts[0] if len(parts) == 2 else None

    @property
    def name(self) -> str:
        return self.value.split(".")[-1]

    @property
    def sql(self) -> str:
        return ".".join(f'"{part}"' for part in self.value.split("."))

    def __str__(self) -> str:
        return self.sql


class ParamBinder:
    """Collects bound values and renders placeholders for one statement."""

    def __init__(self, style: str) -> None:
        if style not in ("qmark", "numeric"):
            raise ValueError(f"Unknown placeholder style: {style}")
        self.style = style
        self._params: List[Any] = []

    def bind(self, value: Any) -> str:
        self._params.append(value)
        if self.style == "qmark":
            return "?"
        return f"${len(self._params)}"

    def bind_each(self, values: Sequence[Any]) -> str:
        return ", ".join(self.bind(v) for v in values)

    @property
    def params(self) -> Tuple[Any, ...]:
        return tuple(self._params)

    def query(self, text: str) -> SQLQuery:
        return SQLQuery(text, self.params)


@dataclass(frozen=True)
class LinkFieldDescriptor:
    """Physical layout of one link relationship, as the query builders see it.

    ``foreign_db_table_name`` and ``lookup_db_field_name`` are only needed to
    rebuild the projection, so checks may leave them empty.
    """

    db_table_name: str
    fk_host_table_name: str
    self_key_name: str
    foreign_key_name: str
    link_db_field_name: str
    is_multi_value: bool
    foreign_db_table_name: str = ""
    lookup_db_field_name: str = ""

    def __post_init__(self) -> None:
        names = [
            self.db_table_name,
            self.fk_host_table_name,
            self.self_key_name,
            self.foreign_key_name,
            self.link_db_field_name,
        ]
        names.extend(n for n in (self.foreign_db_table_name, self.lookup_db_field_name) if n)
        for name in names:
            Identifier(name)

    @property
    def is_self_hosted(self) -> bool:
        return self.fk_host_table_name == self.db_table_name
