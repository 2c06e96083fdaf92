"""remap_users.transactional_load

Move rewritten staging rows into the live tables inside one transaction.

Sequence (any failure rolls everything back, DDL included):
  1. Open the transaction at REPEATABLE READ (fallback READ COMMITTED).
  2. Suspend every foreign key declared on a loaded table or referencing a
     loaded table or the identity table: capture ``pg_get_constraintdef``
     and drop it.
  3. Load tables in topological order, skipping the identity table:
       - with a primary key: ``INSERT … ON CONFLICT (pk) DO UPDATE`` (merge)
       - without one: ``DELETE`` then ``INSERT`` (replace)
     Generated columns are never written. Identity and serial sequences are
     then moved past the largest loaded value (forward only; setval is not
     undone by a rollback, so a failed load can leave a gap but never a
     collision).
  4. Restore each suspended constraint ``NOT VALID`` and ``VALIDATE`` it,
     which re-checks every row.
  5. COMMIT.
"""

from __future__ import annotations

import logging
from typing import Callable

import psycopg
from psycopg import sql

from remap_users.context import RemapUsersContext
from remap_users.schema_graph import SchemaTable, get_columns, get_primary_key
from remap_users.shared import (
    EXCLUDED_SCHEMAS,
    CancellationToken,
    OperationCancelled,
    TransactionalLoadError,
    apply_statement_timeout,
    begin_isolated_transaction,
    qualified,
    staging_identifier,
)
from remap_users.state import LoadMode, SuspendedConstraint, TableLoadResult

log = logging.getLogger(__name__)

_FOREIGN_KEY_DEFS_SQL = """
SELECT con.conname,
       sn.nspname, sc.relname,
       tn.nspname, tc.relname,
       pg_get_constraintdef(con.oid)
FROM pg_constraint con
JOIN pg_class sc ON sc.oid = con.conrelid
JOIN pg_namespace sn ON sn.oid = sc.relnamespace
JOIN pg_class tc ON tc.oid = con.confrelid
JOIN pg_namespace tn ON tn.oid = tc.relnamespace
WHERE con.contype = 'f'
  AND sn.nspname <> ALL(%s)
ORDER BY sn.nspname, sc.relname, con.conname
"""

# is_called stays false only when the sequence was never used and every
# loaded value sits below its minimum, so nextval() still returns seqmin.
_ADVANCE_SEQUENCE_SQL = """
SELECT setval(
    s.seqrelid,
    GREATEST(%(top)s::bigint, s.seqmin, COALESCE(pg_sequence_last_value(s.seqrelid), s.seqmin)),
    %(top)s::bigint >= s.seqmin OR pg_sequence_last_value(s.seqrelid) IS NOT NULL
)
FROM pg_sequence s
WHERE s.seqrelid = %(seq)s::regclass
"""


# ---------------------------------------------------------------------------
# Constraint suspension
# ---------------------------------------------------------------------------

def find_constraints_to_suspend(
    conn: psycopg.Connection,
    loaded: set[SchemaTable],
    identity_table: SchemaTable,
) -> list[SuspendedConstraint]:
    affected = loaded | {identity_table}
    found = []
    for name, s_schema, s_table, t_schema, t_table, definition in conn.execute(
        _FOREIGN_KEY_DEFS_SQL, (sorted(EXCLUDED_SCHEMAS),)
    ).fetchall():
        source = SchemaTable(s_schema, s_table)
        target = SchemaTable(t_schema, t_table)
        if source in loaded or target in affected:
            found.append(SuspendedConstraint(source, name, definition))
    return found


def suspend_constraints(conn: psycopg.Connection, constraints: list[SuspendedConstraint]) -> None:
    for c in constraints:
        conn.execute(sql.SQL("ALTER TABLE {} DROP CONSTRAINT {}").format(
            qualified(c.table.schema, c.table.name), sql.Identifier(c.name)))
        log.debug("Suspended %s on %s", c.name, c.table.qualified_name)


def restore_constraints(conn: psycopg.Connection, constraints: list[SuspendedConstraint]) -> None:
    """Re-add each constraint NOT VALID, then VALIDATE it (re-trust)."""
    for c in constraints:
        target = qualified(c.table.schema, c.table.name)
        definition = c.definition.replace(" NOT VALID", "")
        conn.execute(sql.SQL("ALTER TABLE {} ADD CONSTRAINT {} {} NOT VALID").format(
            target, sql.Identifier(c.name), sql.SQL(definition)))
    for c in constraints:
        conn.execute(sql.SQL("ALTER TABLE {} VALIDATE CONSTRAINT {}").format(
            qualified(c.table.schema, c.table.name), sql.Identifier(c.name)))


# ---------------------------------------------------------------------------
# Table load
# ---------------------------------------------------------------------------

def advance_sequence(conn: psycopg.Connection, table: SchemaTable, column: str,
                     sequence: str) -> int | None:
    """Move ``sequence`` past the largest value now in ``table.column``.

    Never moves a sequence backwards. Returns the value set, or None for an
    empty column.
    """
    top = conn.execute(sql.SQL("SELECT max({}) FROM {}").format(
        sql.Identifier(column), qualified(table.schema, table.name))).fetchone()[0]
    if top is None:
        return None
    return conn.execute(_ADVANCE_SEQUENCE_SQL, {"seq": sequence, "top": top}).fetchone()[0]


def load_table(conn: psycopg.Connection, table: SchemaTable) -> TableLoadResult:
    info = [c for c in get_columns(conn, table) if not c.generated]
    columns = [c.name for c in info]
    result = _merge_or_replace(conn, table, columns)
    for column in info:
        if column.sequence is not None:
            value = advance_sequence(conn, table, column.name, column.sequence)
            log.debug("Sequence %s for %s.%s now at %s",
                      column.sequence, table.qualified_name, column.name, value)
    return result


def _merge_or_replace(conn: psycopg.Connection, table: SchemaTable,
                      columns: list[str]) -> TableLoadResult:
    pk = get_primary_key(conn, table)
    live = qualified(table.schema, table.name)
    col_list = sql.SQL(", ").join(sql.Identifier(c) for c in columns)
    select = sql.SQL("SELECT {} FROM {}").format(col_list, staging_identifier(table.name))

    if pk:
        updates = [c for c in columns if c not in pk]
        if updates:
            conflict = sql.SQL("DO UPDATE SET {}").format(sql.SQL(", ").join(
                sql.SQL("{c} = EXCLUDED.{c}").format(c=sql.Identifier(c)) for c in updates))
        else:
            conflict = sql.SQL("DO NOTHING")
        query = sql.SQL(
            "INSERT INTO {live} ({cols}) OVERRIDING SYSTEM VALUE {select} "
            "ON CONFLICT ({pk}) {conflict}"
        ).format(
            live=live, cols=col_list, select=select,
            pk=sql.SQL(", ").join(sql.Identifier(c) for c in pk),
            conflict=conflict,
        )
        written = conn.execute(query).rowcount
        return TableLoadResult(table, LoadMode.MERGE, written)

    conn.execute(sql.SQL("DELETE FROM {}").format(live))
    written = conn.execute(
        sql.SQL("INSERT INTO {} ({}) OVERRIDING SYSTEM VALUE {}").format(live, col_list, select)
    ).rowcount
    return TableLoadResult(table, LoadMode.REPLACE, written)


# ---------------------------------------------------------------------------
# Top-level
# ---------------------------------------------------------------------------

def run_transactional_load(
    ctx: RemapUsersContext,
    load_order: list[SchemaTable],
    cancel: CancellationToken | None = None,
    before_restore: Callable[[psycopg.Connection], None] | None = None,
) -> tuple[str, list[SuspendedConstraint], list[TableLoadResult]]:
    """Load staging into the live schema atomically.

    Args:
        ctx: Run configuration (DSN, timeout, identity table).
        load_order: Tables in topological order.
        before_restore: Called after the data move, before constraints are
            restored; an exception from it rolls the load back.

    Returns:
        (isolation level, constraints suspended and restored, per-table results).

    Raises:
        TransactionalLoadError: Any database failure; the transaction was
            rolled back and the live schema is unchanged.
        OperationCancelled: Cancelled mid-load; also rolled back.
    """
    identity = ctx.user_table_ref
    tables = [t for t in load_order if t != identity]

    conn = psycopg.connect(ctx.connection_string, autocommit=True)
    try:
        apply_statement_timeout(conn, ctx.command_timeout_seconds)
        isolation = begin_isolated_transaction(conn)
        log.info("Transactional load started at %s isolation", isolation)
        try:
            constraints = find_constraints_to_suspend(conn, set(tables), identity)
            suspend_constraints(conn, constraints)
            results = []
            for table in tables:
                if cancel is not None:
                    cancel.raise_if_cancelled()
                result = load_table(conn, table)
                log.info("Loaded %s (%s): %d row(s)",
                         table.qualified_name, result.mode.value, result.rows_written)
                results.append(result)
            if before_restore is not None:
                before_restore(conn)
            if cancel is not None:
                cancel.raise_if_cancelled()
            restore_constraints(conn, constraints)
            conn.execute("COMMIT")
        except OperationCancelled:
            conn.execute("ROLLBACK")
            log.warning("Transactional load cancelled; rolled back")
            raise
        except Exception as exc:
            if not conn.closed and not conn.broken:
                conn.execute("ROLLBACK")
            log.error("Transactional load failed; rolled back: %s", exc)
            raise TransactionalLoadError(f"transactional load rolled back: {exc}") from exc
    finally:
        conn.close()

    return isolation, constraints, results
