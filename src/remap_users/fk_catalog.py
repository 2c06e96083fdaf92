"""remap_users.fk_catalog

Foreign-key catalog builder: every (table, column) in the target schema that
provably holds an identity value.

A column qualifies when an FK from it points at the identity table's primary
key (direct), or at another column that already qualifies (transitive, e.g.
``Order.CreatedBy → Employee.UserId → User.Id``). The traversal is
breadth-first from the identity table, so each column is recorded once with
its shortest proof.

Path segments list the intermediate ``schema.table.column`` hops between the
column and the identity table, nearest first; direct references have none.
"""

from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Iterable

from remap_users.schema_graph import SchemaForeignKey, SchemaTable

log = logging.getLogger(__name__)

PATH_HINT_SEPARATOR = " > "


@dataclass(frozen=True, eq=False)
class UserForeignKeyCatalogEntry:
    table_schema: str
    table_name: str
    column_name: str
    path_segments: tuple[str, ...] = ()

    @property
    def key(self) -> tuple[str, str, str]:
        return (
            self.table_schema.casefold(),
            self.table_name.casefold(),
            self.column_name.casefold(),
        )

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, UserForeignKeyCatalogEntry):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    @property
    def table(self) -> SchemaTable:
        return SchemaTable(self.table_schema, self.table_name)

    @property
    def qualified_table(self) -> str:
        return f"{self.table_schema}.{self.table_name}"

    @property
    def qualified_column(self) -> str:
        return f"{self.table_schema}.{self.table_name}.{self.column_name}"

    @property
    def path_hint(self) -> str | None:
        """Human-readable hop chain for ctl.UserFkCatalog, or None when direct."""
        if not self.path_segments:
            return None
        return PATH_HINT_SEPARATOR.join(self.path_segments)


def _column_key(table: SchemaTable, column: str) -> tuple[str, str, str]:
    return (*table.sort_key, column.casefold())


def build_user_fk_catalog(
    foreign_keys: Iterable[SchemaForeignKey],
    user_table: SchemaTable,
    user_id_column: str,
) -> list[UserForeignKeyCatalogEntry]:
    """Return every identity-holding column, ordered by (schema, table, column).

    Args:
        foreign_keys: All FK column pairs of the target schema.
        user_table: The identity table.
        user_id_column: The identity table's primary key column.

    Returns:
        Catalog entries sorted case-insensitively; identical inputs always
        produce an identical list.
    """
    referencing: dict[tuple[str, str, str], list[SchemaForeignKey]] = defaultdict(list)
    for fk in foreign_keys:
        referencing[_column_key(fk.target_table, fk.target_column)].append(fk)
    for fks in referencing.values():
        fks.sort(key=lambda fk: (*_column_key(fk.source_table, fk.source_column), fk.name))

    root = _column_key(user_table, user_id_column)
    visited: set[tuple[str, str, str]] = {root}
    queue: deque[tuple[SchemaTable, str, tuple[str, ...]]] = deque()
    entries: list[UserForeignKeyCatalogEntry] = []

    for fk in referencing.get(root, []):
        key = _column_key(fk.source_table, fk.source_column)
        if key in visited:
            continue
        visited.add(key)
        entries.append(UserForeignKeyCatalogEntry(
            fk.source_table.schema, fk.source_table.name, fk.source_column, (),
        ))
        queue.append((fk.source_table, fk.source_column, ()))

    while queue:
        table, column, path = queue.popleft()
        hop = f"{table.schema}.{table.name}.{column}"
        for fk in referencing.get(_column_key(table, column), []):
            key = _column_key(fk.source_table, fk.source_column)
            if key in visited:
                continue
            visited.add(key)
            next_path = (hop, *path)
            entries.append(UserForeignKeyCatalogEntry(
                fk.source_table.schema, fk.source_table.name, fk.source_column, next_path,
            ))
            queue.append((fk.source_table, fk.source_column, next_path))

    entries.sort(key=lambda e: e.key)
    log.debug("Catalogued %d identity column(s) referencing %s.%s",
              len(entries), user_table.qualified_name, user_id_column)
    return entries
