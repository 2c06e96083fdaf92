"""remap_users.staging_schema

Idempotent provisioning of the control (``ctl``) and staging (``stg``)
schemas.

  - ``ctl.UserMap``        identity map, PK (SourceEnv, SourceUserId)
  - ``ctl.UserFkCatalog``  identity-holding columns of the current run
  - ``ctl.UserKeyChanges`` append-only audit of staged key rewrites
  - ``stg."<Table>"``      one column-for-column mirror per live table

Re-running never fails: schemas and control tables are created only when
absent, and an existing staging mirror is truncated. A mirror whose column
list no longer matches its live table is dropped and cloned again.

Staging mirrors are named by table name only, so two live tables with the
same name in different schemas cannot both be staged (StagingError).
"""

from __future__ import annotations

import logging
from typing import Iterable

import psycopg
from psycopg import sql

from remap_users.fk_catalog import UserForeignKeyCatalogEntry
from remap_users.schema_graph import SchemaTable, get_columns
from remap_users.shared import (
    CONTROL_SCHEMA,
    STAGING_SCHEMA,
    CancellationToken,
    StagingError,
    qualified,
    staging_identifier,
)

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

_CONTROL_TABLES_DDL = (
    """
    CREATE TABLE IF NOT EXISTS ctl.UserMap (
        SourceEnv       text        NOT NULL,
        SourceUserId    bigint      NOT NULL,
        SourceEmail     text        NULL,
        SourceUserName  text        NULL,
        SourceEmpNo     text        NULL,
        TargetUserId    bigint      NOT NULL,
        MatchReason     text        NOT NULL,
        CreatedAtUtc    timestamptz NOT NULL DEFAULT now(),
        CONSTRAINT pk_usermap PRIMARY KEY (SourceEnv, SourceUserId)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ctl.UserFkCatalog (
        TableSchema text NOT NULL,
        TableName   text NOT NULL,
        ColumnName  text NOT NULL,
        PathHint    text NULL,
        CONSTRAINT pk_userfkcatalog PRIMARY KEY (TableSchema, TableName, ColumnName)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS ctl.UserKeyChanges (
        TableName  text        NOT NULL,
        ColumnName text        NOT NULL,
        OldId      bigint      NULL,
        NewId      bigint      NULL,
        ChangedAt  timestamptz NOT NULL DEFAULT now()
    )
    """,
)


def ensure_schemas(conn: psycopg.Connection) -> None:
    for schema in (CONTROL_SCHEMA, STAGING_SCHEMA):
        conn.execute(sql.SQL("CREATE SCHEMA IF NOT EXISTS {}").format(sql.Identifier(schema)))


def ensure_control_tables(conn: psycopg.Connection) -> None:
    for ddl in _CONTROL_TABLES_DDL:
        conn.execute(ddl)


# ---------------------------------------------------------------------------
# Staging mirrors
# ---------------------------------------------------------------------------

def _check_name_collisions(tables: list[SchemaTable]) -> None:
    seen: dict[str, SchemaTable] = {}
    for table in tables:
        prior = seen.setdefault(table.name, table)
        if prior != table:
            raise StagingError(
                f"tables {prior.qualified_name} and {table.qualified_name} "
                f"would share staging mirror {STAGING_SCHEMA}.{table.name}"
            )


def ensure_staging_table(conn: psycopg.Connection, table: SchemaTable) -> str:
    """Create or truncate ``stg."<name>"``; return 'created', 'truncated' or 'recreated'."""
    live_cols = [(c.name, c.type_name) for c in get_columns(conn, table)]
    if not live_cols:
        raise StagingError(f"live table {table.qualified_name} has no columns or does not exist")
    staged_cols = [(c.name, c.type_name)
                   for c in get_columns(conn, SchemaTable(STAGING_SCHEMA, table.name))]

    target = staging_identifier(table.name)
    if staged_cols == live_cols:
        conn.execute(sql.SQL("TRUNCATE TABLE {}").format(target))
        return "truncated"

    action = "created"
    if staged_cols:
        log.warning("Staging mirror for %s is out of date; recreating", table.qualified_name)
        conn.execute(sql.SQL("DROP TABLE {}").format(target))
        action = "recreated"
    conn.execute(
        sql.SQL("CREATE TABLE {} AS SELECT * FROM {} WITH NO DATA").format(
            target, qualified(table.schema, table.name)
        )
    )
    return action


# ---------------------------------------------------------------------------
# Catalog seed
# ---------------------------------------------------------------------------

def seed_fk_catalog(
    conn: psycopg.Connection,
    catalog: Iterable[UserForeignKeyCatalogEntry],
) -> int:
    """Replace ``ctl.UserFkCatalog`` with ``catalog``; return rows inserted."""
    conn.execute("DELETE FROM ctl.UserFkCatalog")
    rows = [
        (e.table_schema, e.table_name, e.column_name, e.path_hint)
        for e in catalog
    ]
    if rows:
        with conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO ctl.UserFkCatalog (TableSchema, TableName, ColumnName, PathHint)
                VALUES (%s, %s, %s, %s)
                """,
                rows,
            )
    return len(rows)


# ---------------------------------------------------------------------------
# Top-level
# ---------------------------------------------------------------------------

def provision_control_and_staging(
    conn: psycopg.Connection,
    tables: list[SchemaTable],
    catalog: list[UserForeignKeyCatalogEntry],
    cancel: CancellationToken | None = None,
) -> dict[str, int]:
    """Provision ``ctl``/``stg`` for ``tables`` and seed the FK catalog.

    Args:
        conn: Open connection; caller manages the transaction.
        tables: Tables in load order; each gets one staging mirror.
        catalog: The run's identity-column catalog.

    Returns:
        Counts of staging mirrors by action, plus ``catalog_rows``.
    """
    _check_name_collisions(tables)
    ensure_schemas(conn)
    ensure_control_tables(conn)

    counts = {"created": 0, "truncated": 0, "recreated": 0}
    for table in tables:
        if cancel is not None:
            cancel.raise_if_cancelled()
        action = ensure_staging_table(conn, table)
        counts[action] += 1
        log.debug("Staging mirror %s.%s %s", STAGING_SCHEMA, table.name, action)

    counts["catalog_rows"] = seed_fk_catalog(conn, catalog)
    return counts
