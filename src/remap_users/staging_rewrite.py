"""remap_users.staging_rewrite

Rewrite every catalogued identity column in staging through ``ctl.UserMap``.

Per catalog entry (non-null references only):
  - Counted up front: ``mapped`` rows (source id present in the map) and
    ``unmapped`` rows.
  - ``reassign``: one UPDATE sets each reference to its mapped target, or
    to the fallback identity when unmapped.
  - ``prune``: unmapped references are nulled when the live column is
    nullable, otherwise the staged row is deleted; mapped references are
    then rewritten.
  - Every changed value is appended to ``ctl.UserKeyChanges`` before the
    update runs (NewId is NULL for pruned references).

Conservation: remapped + reassigned + pruned + unmapped equals the non-null
references counted before rewriting; ``unmapped`` stays > 0 only when the
policy could not account for every row.

Entries of one table run sequentially on one connection and commit
together; different tables run in parallel.

Rows deleted by ``prune`` may still be referenced by other staged rows.
After the parallel pass those dependents are followed through the foreign
keys, on one connection and in load order: nulled when every referencing
column is nullable on the live table, otherwise deleted and followed in
turn. They are counted as ``cascaded`` on the entry that started the chain.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Sequence

import psycopg
from psycopg import sql

from remap_users.context import RemapUsersContext, RemapUsersPolicy
from remap_users.fk_catalog import UserForeignKeyCatalogEntry
from remap_users.schema_graph import SchemaForeignKey, SchemaTable, get_columns
from remap_users.shared import (
    CancellationToken,
    RewriteError,
    open_connection,
    run_parallel,
    staging_identifier,
)
from remap_users.state import ColumnRewriteSummary

log = logging.getLogger(__name__)

_INTEGER_TYPES = frozenset({"smallint", "integer", "bigint"})

StagedRow = dict[str, Any]


def _fetch_rows(cur: psycopg.Cursor) -> list[StagedRow]:
    names = [d.name for d in cur.description]
    return [dict(zip(names, row)) for row in cur.fetchall()]


def _count_references(
    conn: psycopg.Connection,
    entry: UserForeignKeyCatalogEntry,
    source_env: str,
) -> tuple[int, int]:
    """Return (mapped, unmapped) non-null references for ``entry``."""
    row = conn.execute(
        sql.SQL(
            "SELECT count(m.SourceUserId), count(*) - count(m.SourceUserId) "
            "FROM {tbl} t "
            "LEFT JOIN ctl.UserMap m ON m.SourceEnv = %s AND m.SourceUserId = t.{col} "
            "WHERE t.{col} IS NOT NULL"
        ).format(tbl=staging_identifier(entry.table_name), col=sql.Identifier(entry.column_name)),
        (source_env,),
    ).fetchone()
    return int(row[0]), int(row[1])


def _live_column_nullable(conn: psycopg.Connection, entry: UserForeignKeyCatalogEntry) -> bool:
    for column in get_columns(conn, entry.table):
        if column.name == entry.column_name:
            return column.nullable
    raise RewriteError(f"column {entry.qualified_column} not found on live table")


def _audit(
    conn: psycopg.Connection,
    entry: UserForeignKeyCatalogEntry,
    new_value: sql.Composable,
    where: sql.Composable,
    params: dict,
) -> int:
    query = sql.SQL(
        "INSERT INTO ctl.UserKeyChanges (TableName, ColumnName, OldId, NewId) "
        "SELECT %(qtable)s, %(column)s, t.{col}::bigint, {new} "
        "FROM {tbl} t "
        "LEFT JOIN ctl.UserMap m ON m.SourceEnv = %(env)s AND m.SourceUserId = t.{col} "
        "WHERE t.{col} IS NOT NULL AND {where} "
        "AND t.{col}::bigint IS DISTINCT FROM {new}"
    ).format(
        col=sql.Identifier(entry.column_name),
        tbl=staging_identifier(entry.table_name),
        new=new_value,
        where=where,
    )
    return conn.execute(query, params).rowcount


def rewrite_entry(
    conn: psycopg.Connection,
    entry: UserForeignKeyCatalogEntry,
    source_env: str,
    policy: RemapUsersPolicy,
    fallback_user_id: int | None,
) -> tuple[ColumnRewriteSummary, list[StagedRow]]:
    """Rewrite one catalogued column in staging; caller commits.

    Returns:
        The column summary and the staged rows ``prune`` deleted (full rows,
        so their dependents can be followed).
    """
    mapped, unmapped = _count_references(conn, entry, source_env)
    summary = ColumnRewriteSummary(policy=policy)
    deleted: list[StagedRow] = []
    tbl = staging_identifier(entry.table_name)
    col = sql.Identifier(entry.column_name)
    params = {
        "qtable": entry.qualified_table,
        "column": entry.column_name,
        "env": source_env,
        "fallback": fallback_user_id,
    }
    lookup = sql.SQL(
        "(SELECT m.TargetUserId FROM ctl.UserMap m "
        "WHERE m.SourceEnv = %(env)s AND m.SourceUserId = t.{col})"
    ).format(col=col)

    if policy is RemapUsersPolicy.REASSIGN:
        if fallback_user_id is None:
            raise RewriteError("policy 'reassign' requires a fallback user id")
        _audit(conn, entry,
               sql.SQL("COALESCE(m.TargetUserId, %(fallback)s::bigint)"),
               sql.SQL("TRUE"), params)
        updated = conn.execute(
            sql.SQL(
                "UPDATE {tbl} AS t SET {col} = COALESCE({lookup}, %(fallback)s::bigint) "
                "WHERE t.{col} IS NOT NULL"
            ).format(tbl=tbl, col=col, lookup=lookup),
            params,
        ).rowcount
        summary.remapped = mapped
        summary.reassigned = updated - mapped
    else:
        pruned = 0
        if unmapped:
            _audit(conn, entry, sql.SQL("NULL::bigint"),
                   sql.SQL("m.SourceUserId IS NULL"), params)
            orphan = sql.SQL(
                "t.{col} IS NOT NULL AND NOT EXISTS ("
                "SELECT 1 FROM ctl.UserMap m "
                "WHERE m.SourceEnv = %(env)s AND m.SourceUserId = t.{col})"
            ).format(col=col)
            if _live_column_nullable(conn, entry):
                pruned = conn.execute(
                    sql.SQL("UPDATE {tbl} AS t SET {col} = NULL WHERE {orphan}").format(
                        tbl=tbl, col=col, orphan=orphan),
                    params,
                ).rowcount
            else:
                deleted = _fetch_rows(conn.execute(
                    sql.SQL("DELETE FROM {tbl} AS t WHERE {orphan} RETURNING t.*").format(
                        tbl=tbl, orphan=orphan),
                    params,
                ))
                pruned = len(deleted)
        _audit(conn, entry, sql.SQL("m.TargetUserId"),
               sql.SQL("m.SourceUserId IS NOT NULL"), params)
        summary.remapped = conn.execute(
            sql.SQL(
                "UPDATE {tbl} AS t SET {col} = m.TargetUserId FROM ctl.UserMap m "
                "WHERE m.SourceEnv = %(env)s AND m.SourceUserId = t.{col}"
            ).format(tbl=tbl, col=col),
            params,
        ).rowcount
        summary.pruned = pruned

    summary.unmapped = unmapped - summary.reassigned - summary.pruned
    if summary.unmapped:
        log.warning("%s: %d reference(s) left unmapped after %s",
                    entry.qualified_column, summary.unmapped, policy.value)
    return summary, deleted


# ---------------------------------------------------------------------------
# Dependent rows of pruned rows
# ---------------------------------------------------------------------------

def _constraints_by_parent(
    foreign_keys: Sequence[SchemaForeignKey],
) -> dict[SchemaTable, list[list[SchemaForeignKey]]]:
    """Group column pairs into constraints, keyed by referenced table."""
    grouped: dict[tuple[SchemaTable, str], list[SchemaForeignKey]] = defaultdict(list)
    for fk in foreign_keys:
        grouped[(fk.source_table, fk.name)].append(fk)
    by_parent: dict[SchemaTable, list[list[SchemaForeignKey]]] = defaultdict(list)
    for key in sorted(grouped, key=lambda k: (k[0].sort_key, k[1])):
        pairs = grouped[key]
        by_parent[pairs[0].target_table].append(pairs)
    return by_parent


def _audit_dependents(
    conn: psycopg.Connection,
    child: SchemaTable,
    column: str,
    match: sql.Composable,
    key: tuple,
) -> None:
    conn.execute(
        sql.SQL(
            "INSERT INTO ctl.UserKeyChanges (TableName, ColumnName, OldId, NewId) "
            "SELECT %s, %s, c.{col}::bigint, NULL FROM {tbl} c WHERE {match}"
        ).format(col=sql.Identifier(column), tbl=staging_identifier(child.name), match=match),
        (child.qualified_name, column, *key),
    )


def cascade_pruned_rows(
    conn: psycopg.Connection,
    table: SchemaTable,
    rows: list[StagedRow],
    foreign_keys: Sequence[SchemaForeignKey],
    load_order: Sequence[SchemaTable],
    catalog: Sequence[UserForeignKeyCatalogEntry] = (),
) -> int:
    """Null or delete staged rows that reference ``rows`` deleted from ``table``.

    Returns:
        Number of dependent staged rows nulled or deleted.
    """
    by_parent = _constraints_by_parent(foreign_keys)
    position = {t: i for i, t in enumerate(load_order)}
    catalogued = {(e.table, e.column_name) for e in catalog}
    pending: dict[SchemaTable, list[StagedRow]] = {table: list(rows)}
    changed = 0

    while pending:
        parent = min(pending, key=lambda t: (position.get(t, len(position)), t.sort_key))
        parent_rows = pending.pop(parent)
        for pairs in by_parent.get(parent, []):
            child = pairs[0].source_table
            if child not in position:
                continue
            # Identity columns are pruned by their own catalog entry.
            if all((child, fk.source_column) in catalogued for fk in pairs):
                continue
            keys = {tuple(row.get(fk.target_column) for fk in pairs) for row in parent_rows}
            keys = sorted((k for k in keys if None not in k), key=str)
            if not keys:
                continue

            columns = {c.name: c for c in get_columns(conn, child)}
            nullable = all(columns[fk.source_column].nullable for fk in pairs)
            audit_column = None
            if len(pairs) == 1 and columns[pairs[0].source_column].data_type in _INTEGER_TYPES:
                audit_column = pairs[0].source_column
            tbl = staging_identifier(child.name)
            match = sql.SQL(" AND ").join(
                sql.SQL("c.{} = %s").format(sql.Identifier(fk.source_column)) for fk in pairs)
            clear = sql.SQL(", ").join(
                sql.SQL("{} = NULL").format(sql.Identifier(fk.source_column)) for fk in pairs)

            for key in keys:
                if audit_column is not None:
                    _audit_dependents(conn, child, audit_column, match, key)
                if nullable:
                    changed += conn.execute(
                        sql.SQL("UPDATE {} AS c SET {} WHERE {}").format(tbl, clear, match), key,
                    ).rowcount
                    continue
                removed = _fetch_rows(conn.execute(
                    sql.SQL("DELETE FROM {} AS c WHERE {} RETURNING c.*").format(tbl, match), key,
                ))
                changed += len(removed)
                if removed:
                    pending.setdefault(child, []).extend(removed)
            log.debug("Followed %s from %s into %s",
                      pairs[0].name, parent.qualified_name, child.qualified_name)
    return changed


# ---------------------------------------------------------------------------
# Top-level
# ---------------------------------------------------------------------------

def rewrite_staging(
    ctx: RemapUsersContext,
    catalog: list[UserForeignKeyCatalogEntry],
    cancel: CancellationToken | None = None,
    foreign_keys: Sequence[SchemaForeignKey] = (),
    load_order: Sequence[SchemaTable] = (),
) -> dict[UserForeignKeyCatalogEntry, ColumnRewriteSummary]:
    """Rewrite every catalog entry; tables in parallel up to ``ctx.parallelism``.

    ``foreign_keys`` and ``load_order`` drive the follow-up over rows that
    reference pruned rows; without them no dependents are touched.

    Returns:
        One summary per entry, in catalog order.
    """
    by_table: dict[SchemaTable, list[UserForeignKeyCatalogEntry]] = defaultdict(list)
    for entry in catalog:
        by_table[entry.table].append(entry)

    def _task(entries: list[UserForeignKeyCatalogEntry]):
        def run():
            results = []
            with open_connection(ctx.connection_string, ctx.command_timeout_seconds) as conn:
                for entry in entries:
                    if cancel is not None:
                        cancel.raise_if_cancelled()
                    summary, deleted = rewrite_entry(
                        conn, entry, ctx.source_environment, ctx.policy, ctx.fallback_user_id,
                    )
                    log.info(
                        "Rewrote %s: remapped=%d reassigned=%d pruned=%d unmapped=%d",
                        entry.qualified_column, summary.remapped, summary.reassigned,
                        summary.pruned, summary.unmapped,
                    )
                    results.append((entry, summary, deleted))
            return results
        return run

    per_table = run_parallel(
        {table: _task(entries) for table, entries in by_table.items()},
        ctx.parallelism,
    )
    summaries = {}
    pruned_rows = {}
    for results in per_table.values():
        for entry, summary, deleted in results:
            summaries[entry] = summary
            if deleted:
                pruned_rows[entry] = deleted

    if pruned_rows and foreign_keys:
        with open_connection(ctx.connection_string, ctx.command_timeout_seconds) as conn:
            for entry in catalog:
                if entry not in pruned_rows:
                    continue
                if cancel is not None:
                    cancel.raise_if_cancelled()
                cascaded = cascade_pruned_rows(
                    conn, entry.table, pruned_rows[entry], foreign_keys, load_order, catalog,
                )
                summaries[entry].cascaded = cascaded
                if cascaded:
                    log.info("%s: %d dependent staged row(s) nulled or deleted",
                             entry.qualified_column, cascaded)

    return {entry: summaries[entry] for entry in catalog}
