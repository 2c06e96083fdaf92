"""remap_users.schema_graph

Table and foreign-key discovery for the target database, plus the
deterministic topological load order.

Load order (Kahn's algorithm):
  - Every FK makes the referencing table wait for the referenced one, so
    parents always load before children. Self references are ignored;
    duplicate and multi-column edges between the same pair collapse to one.
  - Ready tables are emitted smallest-first by (schema, name), compared
    case-insensitively, so unchanged schemas always yield the same order.
  - Tables left over because of a cycle are appended alphabetically.
"""

from __future__ import annotations

import heapq
import logging
from dataclasses import dataclass
from typing import Iterable

import psycopg

from remap_users.shared import EXCLUDED_SCHEMAS, DiscoveryError

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass(frozen=True, eq=False)
class SchemaTable:
    """A table, identified by its case-insensitive (schema, name) pair."""

    schema: str
    name: str

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.schema.casefold(), self.name.casefold())

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, SchemaTable):
            return NotImplemented
        return self.sort_key == other.sort_key

    def __hash__(self) -> int:
        return hash(self.sort_key)

    @property
    def qualified_name(self) -> str:
        return f"{self.schema}.{self.name}"

    def __str__(self) -> str:
        return self.qualified_name


@dataclass(frozen=True)
class SchemaForeignKey:
    """One column pair of a physical FK constraint."""

    name: str
    source_table: SchemaTable
    source_column: str
    target_table: SchemaTable
    target_column: str


# ---------------------------------------------------------------------------
# Topological sort
# ---------------------------------------------------------------------------

def topologically_sort(
    tables: Iterable[SchemaTable],
    foreign_keys: Iterable[SchemaForeignKey],
) -> list[SchemaTable]:
    """Return ``tables`` ordered so that referenced tables precede referencing ones.

    Within the ready set ties break on (schema, name) case-insensitively; any
    cyclic remainder is appended in plain alphabetical order.
    """
    lookup: dict[SchemaTable, SchemaTable] = {}
    for table in tables:
        lookup.setdefault(table, table)

    # A referencing table depends on its referenced table, so the referenced
    # one must be emitted first: edge target → source.
    dependents: dict[SchemaTable, set[SchemaTable]] = {t: set() for t in lookup}
    in_degree: dict[SchemaTable, int] = {t: 0 for t in lookup}

    for fk in foreign_keys:
        source = lookup.get(fk.source_table)
        target = lookup.get(fk.target_table)
        if source is None or target is None or source == target:
            continue
        if source not in dependents[target]:
            dependents[target].add(source)
            in_degree[source] += 1

    ready = [(t.sort_key, t) for t, degree in in_degree.items() if degree == 0]
    heapq.heapify(ready)

    result: list[SchemaTable] = []
    while ready:
        _, current = heapq.heappop(ready)
        result.append(current)
        for dependent in dependents[current]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, (dependent.sort_key, dependent))

    if len(result) < len(lookup):
        emitted = set(result)
        remaining = sorted((t for t in lookup if t not in emitted), key=lambda t: t.sort_key)
        log.warning(
            "FK cycle detected; appending %d table(s) alphabetically: %s",
            len(remaining),
            ", ".join(t.qualified_name for t in remaining),
        )
        result.extend(remaining)

    return result


# ---------------------------------------------------------------------------
# PostgreSQL-backed schema graph
# ---------------------------------------------------------------------------

_TABLES_SQL = """
SELECT n.nspname, c.relname
FROM pg_class c
JOIN pg_namespace n ON n.oid = c.relnamespace
WHERE c.relkind IN ('r', 'p')
  AND NOT c.relispartition
  AND n.nspname <> ALL(%s)
  AND n.nspname NOT LIKE 'pg\\_%%'
ORDER BY n.nspname, c.relname
"""

_FOREIGN_KEYS_SQL = """
SELECT
    con.conname,
    sn.nspname, sc.relname, sa.attname,
    tn.nspname, tc.relname, ta.attname
FROM pg_constraint con
CROSS JOIN LATERAL unnest(con.conkey, con.confkey)
    WITH ORDINALITY AS cols(src_attnum, tgt_attnum, position)
JOIN pg_class sc ON sc.oid = con.conrelid
JOIN pg_namespace sn ON sn.oid = sc.relnamespace
JOIN pg_attribute sa ON sa.attrelid = sc.oid AND sa.attnum = cols.src_attnum
JOIN pg_class tc ON tc.oid = con.confrelid
JOIN pg_namespace tn ON tn.oid = tc.relnamespace
JOIN pg_attribute ta ON ta.attrelid = tc.oid AND ta.attnum = cols.tgt_attnum
WHERE con.contype = 'f'
  AND sn.nspname <> ALL(%s)
  AND tn.nspname <> ALL(%s)
ORDER BY sn.nspname, sc.relname, con.conname, cols.position
"""


_COLUMNS_SQL = """
SELECT c.column_name, c.data_type, c.is_nullable = 'YES', c.is_generated = 'ALWAYS',
       format_type(a.atttypid, a.atttypmod),
       pg_get_serial_sequence(format('%%I.%%I', c.table_schema, c.table_name), c.column_name)
FROM information_schema.columns c
JOIN pg_namespace n ON n.nspname = c.table_schema
JOIN pg_class r ON r.relnamespace = n.oid AND r.relname = c.table_name
JOIN pg_attribute a ON a.attrelid = r.oid AND a.attname = c.column_name
WHERE c.table_schema = %s AND c.table_name = %s
ORDER BY c.ordinal_position
"""

_PRIMARY_KEY_SQL = """
SELECT a.attname
FROM pg_constraint con
JOIN pg_class c ON c.oid = con.conrelid
JOIN pg_namespace n ON n.oid = c.relnamespace
CROSS JOIN LATERAL unnest(con.conkey) WITH ORDINALITY AS k(attnum, position)
JOIN pg_attribute a ON a.attrelid = c.oid AND a.attnum = k.attnum
WHERE con.contype = 'p' AND n.nspname = %s AND c.relname = %s
ORDER BY k.position
"""


@dataclass(frozen=True)
class ColumnInfo:
    name: str
    data_type: str
    nullable: bool
    generated: bool = False
    # format_type() spelling, typmod included, e.g. 'numeric(10,2)'
    type_name: str = ""
    # Owned sequence of an identity/serial column, e.g. 'public."Comment_Id_seq"'
    sequence: str | None = None


def get_columns(conn: psycopg.Connection, table: SchemaTable) -> list[ColumnInfo]:
    """Return the columns of ``table`` in ordinal order (empty if it does not exist)."""
    rows = conn.execute(_COLUMNS_SQL, (table.schema, table.name)).fetchall()
    return [ColumnInfo(name, data_type, bool(nullable), bool(generated), type_name, sequence)
            for name, data_type, nullable, generated, type_name, sequence in rows]


def get_primary_key(conn: psycopg.Connection, table: SchemaTable) -> list[str]:
    rows = conn.execute(_PRIMARY_KEY_SQL, (table.schema, table.name)).fetchall()
    return [r[0] for r in rows]


class SqlSchemaGraph:
    """Schema graph read from ``pg_catalog`` over an open connection."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    def get_tables(self) -> list[SchemaTable]:
        try:
            rows = self._conn.execute(_TABLES_SQL, (sorted(EXCLUDED_SCHEMAS),)).fetchall()
        except psycopg.Error as exc:
            raise DiscoveryError(f"table discovery failed: {exc}") from exc
        return [SchemaTable(schema, name) for schema, name in rows]

    def get_foreign_keys(self) -> list[SchemaForeignKey]:
        excluded = sorted(EXCLUDED_SCHEMAS)
        try:
            rows = self._conn.execute(_FOREIGN_KEYS_SQL, (excluded, excluded)).fetchall()
        except psycopg.Error as exc:
            raise DiscoveryError(f"foreign-key discovery failed: {exc}") from exc
        return [
            SchemaForeignKey(
                name=name,
                source_table=SchemaTable(s_schema, s_table),
                source_column=s_col,
                target_table=SchemaTable(t_schema, t_table),
                target_column=t_col,
            )
            for name, s_schema, s_table, s_col, t_schema, t_table, t_col in rows
        ]

    def get_topologically_sorted_tables(self) -> list[SchemaTable]:
        return topologically_sort(self.get_tables(), self.get_foreign_keys())


class StaticSchemaGraph:
    """In-memory schema graph, for tests and pre-captured schemas."""

    def __init__(
        self,
        tables: Iterable[SchemaTable],
        foreign_keys: Iterable[SchemaForeignKey] = (),
    ) -> None:
        self._tables = list(tables)
        self._foreign_keys = list(foreign_keys)

    def get_tables(self) -> list[SchemaTable]:
        return list(self._tables)

    def get_foreign_keys(self) -> list[SchemaForeignKey]:
        return list(self._foreign_keys)

    def get_topologically_sorted_tables(self) -> list[SchemaTable]:
        return topologically_sort(self._tables, self._foreign_keys)
