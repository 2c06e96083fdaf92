"""remap_users.post_load_validation

Post-hoc integrity proof after a committed load. Nothing is rolled back
here; a failing report is surfaced to the operator as IntegrityViolationError
by the pipeline.

Checks:
  - disabled FKs: constraints suspended by the loader that no longer exist
  - untrusted FKs: any foreign key with ``convalidated = false``
  - row counts: live vs staging per loaded table (exact for replaced
    tables, live >= staging for merged ones)
  - referential probes: per catalog entry, references with / without a
    matching identity row, plus up to 5 orphaned ids
"""

from __future__ import annotations

import logging
from typing import Callable

import psycopg
from psycopg import sql

from remap_users.context import RemapUsersContext
from remap_users.fk_catalog import UserForeignKeyCatalogEntry
from remap_users.shared import (
    EXCLUDED_SCHEMAS,
    CancellationToken,
    qualified,
    staging_identifier,
)
from remap_users.state import (
    PostLoadValidationReport,
    ReferentialProbeResult,
    RowCountCheck,
    SuspendedConstraint,
    TableLoadResult,
)

log = logging.getLogger(__name__)

PROBE_SAMPLE_SIZE = 5


def count_disabled(conn: psycopg.Connection, suspended: list[SuspendedConstraint]) -> int:
    missing = 0
    for c in suspended:
        row = conn.execute(
            """
            SELECT 1 FROM pg_constraint con
            JOIN pg_class c ON c.oid = con.conrelid
            JOIN pg_namespace n ON n.oid = c.relnamespace
            WHERE n.nspname = %s AND c.relname = %s AND con.conname = %s
            """,
            (c.table.schema, c.table.name, c.name),
        ).fetchone()
        if row is None:
            missing += 1
    return missing


def count_untrusted(conn: psycopg.Connection) -> int:
    return conn.execute(
        """
        SELECT count(*) FROM pg_constraint con
        JOIN pg_class c ON c.oid = con.conrelid
        JOIN pg_namespace n ON n.oid = c.relnamespace
        WHERE con.contype = 'f' AND NOT con.convalidated
          AND n.nspname <> ALL(%s)
        """,
        (sorted(EXCLUDED_SCHEMAS),),
    ).fetchone()[0]


def check_row_counts(conn: psycopg.Connection, results: list[TableLoadResult]) -> list[RowCountCheck]:
    checks = []
    for result in results:
        t = result.table
        target = conn.execute(
            sql.SQL("SELECT count(*) FROM {}").format(qualified(t.schema, t.name))
        ).fetchone()[0]
        staging = conn.execute(
            sql.SQL("SELECT count(*) FROM {}").format(staging_identifier(t.name))
        ).fetchone()[0]
        checks.append(RowCountCheck(t, result.mode, staging, target))
    return checks


def probe_entry(
    conn: psycopg.Connection,
    ctx: RemapUsersContext,
    entry: UserForeignKeyCatalogEntry,
    redact: Callable[[str | None], str],
) -> ReferentialProbeResult:
    joins = sql.SQL(
        "FROM {base} b LEFT JOIN {users} u ON u.{pk} = b.{col}"
    ).format(
        base=qualified(entry.table_schema, entry.table_name),
        users=qualified(ctx.user_table_schema, ctx.user_table_name),
        pk=sql.Identifier(ctx.user_id_column),
        col=sql.Identifier(entry.column_name),
    )
    valid, invalid = conn.execute(
        sql.SQL(
            "SELECT count(u.{pk}), count(b.{col}) - count(u.{pk}) "
        ).format(pk=sql.Identifier(ctx.user_id_column), col=sql.Identifier(entry.column_name))
        + joins
    ).fetchone()
    sample: tuple[str, ...] = ()
    if invalid:
        rows = conn.execute(
            sql.SQL("SELECT DISTINCT b.{col} ").format(col=sql.Identifier(entry.column_name))
            + joins
            + sql.SQL(" WHERE b.{col} IS NOT NULL AND u.{pk} IS NULL ORDER BY 1 LIMIT {n}").format(
                col=sql.Identifier(entry.column_name),
                pk=sql.Identifier(ctx.user_id_column),
                n=sql.Literal(PROBE_SAMPLE_SIZE),
            )
        ).fetchall()
        sample = tuple(redact(str(r[0])) for r in rows)
    return ReferentialProbeResult(
        entry.table_schema, entry.table_name, entry.column_name,
        int(valid), int(invalid), sample,
    )


def validate_post_load(
    conn: psycopg.Connection,
    ctx: RemapUsersContext,
    catalog: list[UserForeignKeyCatalogEntry],
    suspended: list[SuspendedConstraint],
    load_results: list[TableLoadResult],
    cancel: CancellationToken | None = None,
) -> PostLoadValidationReport:
    """Run every post-load check and return the report (never raises on findings)."""
    report = PostLoadValidationReport()
    report.disabled_foreign_keys = count_disabled(conn, suspended)
    report.untrusted_foreign_keys = count_untrusted(conn)
    if report.disabled_foreign_keys:
        report.validation_errors.append(
            f"{report.disabled_foreign_keys} foreign key(s) left disabled after load")
    if report.untrusted_foreign_keys:
        report.validation_errors.append(
            f"{report.untrusted_foreign_keys} foreign key(s) not validated")

    report.row_counts = check_row_counts(conn, load_results)
    for rc in report.row_counts:
        if not rc.ok:
            report.validation_errors.append(
                f"Row count mismatch for {rc.table.qualified_name} ({rc.mode.value}): "
                f"target={rc.target_rows}, staging={rc.staging_rows}"
            )

    for entry in catalog:
        if cancel is not None:
            cancel.raise_if_cancelled()
        probe = probe_entry(conn, ctx, entry, ctx.redact)
        report.probes.append(probe)
        if probe.invalid_count:
            report.validation_errors.append(
                f"{probe.invalid_count} orphaned reference(s) in "
                f"{entry.qualified_column}: {', '.join(probe.sample_invalid)}"
            )

    report.referential_integrity_verified = not report.validation_errors
    log.info("Post-load validation: disabled=%d untrusted=%d errors=%d",
             report.disabled_foreign_keys, report.untrusted_foreign_keys,
             len(report.validation_errors))
    return report
