"""remap_users.user_map

Identity mapper: resolve every source identity to a target identity and
persist the result in ``ctl.UserMap``.

Source identities are the staged identity rows plus every non-null value
held by a catalogued column in staging. Resolution order:
  1. operator-supplied manual map (``user_map_path``), reason ``manual``
  2. the configured matching rules, in order; the first rule producing a
     target wins and its value (``email_exact``, ``email_norm``,
     ``username``, ``employee_no``, ``fallback``) is the match reason

A rule matches on one attribute column (Email, UserName, EmployeeNo) that
must exist on both the staged and the target identity table; otherwise the
rule is skipped with a warning. When one source attribute matches several
target identities, the smallest target id wins.

Without ``rebuild_map`` existing mappings for the environment are kept and
only unmapped identities are matched.
"""

from __future__ import annotations

import csv
import logging
from pathlib import Path
from typing import Callable

import psycopg
from psycopg import sql

from remap_users.context import RemapUsersContext, RemapUsersMatchRule
from remap_users.fk_catalog import UserForeignKeyCatalogEntry
from remap_users.normalize import parse_identity, trim
from remap_users.schema_graph import SchemaTable, get_columns
from remap_users.shared import (
    STAGING_SCHEMA,
    CancellationToken,
    UserMapError,
    qualified,
    staging_identifier,
)
from remap_users.state import UserMapCoverageRow, UserMappingEntry, UserMapReport

log = logging.getLogger(__name__)

MANUAL_MATCH_REASON = "manual"
UNRESOLVED_SAMPLE_SIZE = 25

# Attribute column each rule joins on.
RULE_COLUMNS = {
    RemapUsersMatchRule.EMAIL: "Email",
    RemapUsersMatchRule.NORMALIZE_EMAIL: "Email",
    RemapUsersMatchRule.USER_NAME: "UserName",
    RemapUsersMatchRule.EMPLOYEE_NUMBER: "EmployeeNo",
}


# ---------------------------------------------------------------------------
# Manual map
# ---------------------------------------------------------------------------

def load_manual_user_map(path: Path) -> dict[int, int]:
    """Read a ``SourceUserId,TargetUserId`` CSV (header required, any case).

    Raises:
        UserMapError: Missing file/headers, non-integer ids, or one source
            mapped to two different targets.
    """
    if not path.is_file():
        raise UserMapError(f"user map file {path} does not exist")
    mapping: dict[int, int] = {}
    with open(path, newline="", encoding="utf-8-sig") as fh:
        reader = csv.DictReader(fh)
        headers = {(h or "").strip().lower(): h for h in (reader.fieldnames or [])}
        src_key = headers.get("sourceuserid")
        tgt_key = headers.get("targetuserid")
        if src_key is None or tgt_key is None:
            raise UserMapError(f"{path}: expected headers SourceUserId,TargetUserId")
        for line_no, row in enumerate(reader, start=2):
            try:
                source = parse_identity(row.get(src_key))
                target = parse_identity(row.get(tgt_key))
            except ValueError as exc:
                raise UserMapError(f"{path} line {line_no}: {exc}") from exc
            if source is None and target is None:
                continue
            if source is None or target is None:
                raise UserMapError(f"{path} line {line_no}: both ids are required")
            prior = mapping.setdefault(source, target)
            if prior != target:
                raise UserMapError(
                    f"{path} line {line_no}: source {source} mapped to both {prior} and {target}"
                )
    return mapping


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _column_lookup(conn: psycopg.Connection, table: SchemaTable) -> dict[str, str]:
    return {c.name.casefold(): c.name for c in get_columns(conn, table)}


def _attr(columns: dict[str, str], name: str, alias: str) -> sql.Composable:
    actual = columns.get(name.casefold())
    if actual is None:
        return sql.SQL("NULL::text")
    return sql.SQL("{}.{}::text").format(sql.Identifier(alias), sql.Identifier(actual))


def _collect_source_identities(
    conn: psycopg.Connection,
    ctx: RemapUsersContext,
    catalog: list[UserForeignKeyCatalogEntry],
    cancel: CancellationToken | None,
) -> int:
    conn.execute(
        "CREATE TEMP TABLE remap_source_ids (SourceUserId bigint PRIMARY KEY) ON COMMIT DROP"
    )
    sources = [(ctx.user_table_name, ctx.user_id_column)]
    sources += [(e.table_name, e.column_name) for e in catalog]
    for table_name, column in sources:
        if cancel is not None:
            cancel.raise_if_cancelled()
        conn.execute(
            sql.SQL(
                "INSERT INTO remap_source_ids (SourceUserId) "
                "SELECT DISTINCT {col}::bigint FROM {tbl} WHERE {col} IS NOT NULL "
                "ON CONFLICT DO NOTHING"
            ).format(col=sql.Identifier(column), tbl=staging_identifier(table_name))
        )
    return conn.execute("SELECT count(*) FROM remap_source_ids").fetchone()[0]


def _check_targets_exist(
    conn: psycopg.Connection,
    ctx: RemapUsersContext,
    target_ids: list[int],
    what: str,
) -> None:
    if not target_ids:
        return
    rows = conn.execute(
        sql.SQL(
            "SELECT t.id FROM unnest(%s::bigint[]) AS t(id) "
            "WHERE NOT EXISTS (SELECT 1 FROM {tbl} u WHERE u.{pk} = t.id) ORDER BY t.id"
        ).format(
            tbl=qualified(ctx.user_table_schema, ctx.user_table_name),
            pk=sql.Identifier(ctx.user_id_column),
        ),
        (target_ids,),
    ).fetchall()
    if rows:
        missing = ", ".join(str(r[0]) for r in rows[:5])
        raise UserMapError(
            f"{what} target identities missing from {ctx.user_table}: {missing}"
            + (f" (+{len(rows) - 5} more)" if len(rows) > 5 else "")
        )


def _source_from(ctx: RemapUsersContext) -> sql.Composable:
    return sql.SQL(
        "FROM remap_source_ids src "
        "LEFT JOIN {stg} s ON s.{pk} = src.SourceUserId "
        "LEFT JOIN ctl.UserMap existing "
        "  ON existing.SourceEnv = %(env)s AND existing.SourceUserId = src.SourceUserId "
    ).format(
        stg=staging_identifier(ctx.user_table_name),
        pk=sql.Identifier(ctx.user_id_column),
    )


def _apply_manual_map(
    conn: psycopg.Connection,
    ctx: RemapUsersContext,
    staged: dict[str, str],
    mapping: dict[int, int],
) -> int:
    if not mapping:
        return 0
    _check_targets_exist(conn, ctx, sorted(set(mapping.values())), "manual map")
    query = sql.SQL(
        "INSERT INTO ctl.UserMap "
        "(SourceEnv, SourceUserId, SourceEmail, SourceUserName, SourceEmpNo, TargetUserId, MatchReason) "
        "SELECT %(env)s, m.src, {email}, {uname}, {empno}, m.tgt, %(reason)s "
        "FROM unnest(%(srcs)s::bigint[], %(tgts)s::bigint[]) AS m(src, tgt) "
        "LEFT JOIN {stg} s ON s.{pk} = m.src "
        "WHERE TRUE "
        "ON CONFLICT (SourceEnv, SourceUserId) DO UPDATE SET "
        "  TargetUserId = EXCLUDED.TargetUserId, MatchReason = EXCLUDED.MatchReason"
    ).format(
        email=_attr(staged, "Email", "s"),
        uname=_attr(staged, "UserName", "s"),
        empno=_attr(staged, "EmployeeNo", "s"),
        stg=staging_identifier(ctx.user_table_name),
        pk=sql.Identifier(ctx.user_id_column),
    )
    sources = sorted(mapping)
    cur = conn.execute(query, {
        "env": ctx.source_environment,
        "reason": MANUAL_MATCH_REASON,
        "srcs": sources,
        "tgts": [mapping[s] for s in sources],
    })
    return cur.rowcount


def _apply_rule(
    conn: psycopg.Connection,
    ctx: RemapUsersContext,
    rule: RemapUsersMatchRule,
    staged: dict[str, str],
    target: dict[str, str],
) -> int | None:
    """Insert mappings for ``rule``; return rows inserted, or None when skipped."""
    attrs = sql.SQL("{}, {}, {}").format(
        _attr(staged, "Email", "s"),
        _attr(staged, "UserName", "s"),
        _attr(staged, "EmployeeNo", "s"),
    )
    params = {"env": ctx.source_environment, "reason": rule.value}

    if rule is RemapUsersMatchRule.FALLBACK:
        query = sql.SQL(
            "INSERT INTO ctl.UserMap "
            "(SourceEnv, SourceUserId, SourceEmail, SourceUserName, SourceEmpNo, TargetUserId, MatchReason) "
            "SELECT %(env)s, src.SourceUserId, {attrs}, %(fallback)s, %(reason)s "
            "{src_from} WHERE existing.SourceUserId IS NULL"
        ).format(attrs=attrs, src_from=_source_from(ctx))
        params["fallback"] = ctx.fallback_user_id
        return conn.execute(query, params).rowcount

    column = RULE_COLUMNS[rule]
    s_col = staged.get(column.casefold())
    u_col = target.get(column.casefold())
    if s_col is None or u_col is None:
        side = "staged" if s_col is None else "target"
        log.warning("Skipping rule %s: column %s missing on %s identity table",
                    rule.value, column, side)
        return None

    s_ref = sql.SQL("s.{}").format(sql.Identifier(s_col))
    u_ref = sql.SQL("u.{}").format(sql.Identifier(u_col))
    if rule is RemapUsersMatchRule.NORMALIZE_EMAIL:
        predicate = sql.SQL("lower(btrim({u}::text)) = lower(btrim({s}::text))").format(u=u_ref, s=s_ref)
    else:
        predicate = sql.SQL("{u} = {s}").format(u=u_ref, s=s_ref)

    query = sql.SQL(
        "INSERT INTO ctl.UserMap "
        "(SourceEnv, SourceUserId, SourceEmail, SourceUserName, SourceEmpNo, TargetUserId, MatchReason) "
        "SELECT DISTINCT ON (src.SourceUserId) "
        "  %(env)s, src.SourceUserId, {attrs}, u.{upk}, %(reason)s "
        "{src_from} JOIN {live} u ON {predicate} "
        "WHERE existing.SourceUserId IS NULL "
        "ORDER BY src.SourceUserId, u.{upk}"
    ).format(
        attrs=attrs,
        upk=sql.Identifier(ctx.user_id_column),
        src_from=_source_from(ctx),
        live=qualified(ctx.user_table_schema, ctx.user_table_name),
        predicate=predicate,
    )
    return conn.execute(query, params).rowcount


# ---------------------------------------------------------------------------
# Top-level
# ---------------------------------------------------------------------------

def build_user_map(
    conn: psycopg.Connection,
    ctx: RemapUsersContext,
    catalog: list[UserForeignKeyCatalogEntry],
    cancel: CancellationToken | None = None,
    redact: Callable[[str | None], str] | None = None,
) -> UserMapReport:
    """Populate ``ctl.UserMap`` for ``ctx.source_environment``.

    Args:
        conn: Open, non-autocommit connection; the caller commits.
        ctx: Run configuration (rules, fallback, manual map, rebuild flag).
        catalog: Identity-holding columns whose staged values are sources.
        redact: Applied to each unresolved sample identifier.

    Returns:
        Coverage grouped by match reason plus the unresolved count and a
        sample of at most 25 identifiers.
    """
    redact = redact or ctx.redact
    env = ctx.source_environment

    if ctx.rebuild_map:
        deleted = conn.execute("DELETE FROM ctl.UserMap WHERE SourceEnv = %s", (env,)).rowcount
        log.info("Rebuild requested; cleared %d existing mapping(s) for %s", deleted, env)

    staged = _column_lookup(conn, SchemaTable(STAGING_SCHEMA, ctx.user_table_name))
    target = _column_lookup(conn, ctx.user_table_ref)
    if not staged:
        raise UserMapError(f"staged identity table {STAGING_SCHEMA}.{ctx.user_table_name} not found")

    report = UserMapReport()
    report.source_identity_count = _collect_source_identities(conn, ctx, catalog, cancel)

    if ctx.fallback_user_id is not None:
        _check_targets_exist(conn, ctx, [ctx.fallback_user_id], "fallback")

    if ctx.user_map_path is not None:
        manual = load_manual_user_map(ctx.user_map_path)
        inserted = _apply_manual_map(conn, ctx, staged, manual)
        log.info("Applied %d manual mapping(s) from %s", inserted, ctx.user_map_path)

    for rule in ctx.matching_rules:
        if cancel is not None:
            cancel.raise_if_cancelled()
        inserted = _apply_rule(conn, ctx, rule, staged, target)
        if inserted is None:
            report.skipped_rules.append(rule.value)
        else:
            log.info("Rule %s mapped %d identity(ies)", rule.value, inserted)

    rows = conn.execute(
        "SELECT MatchReason, count(*) FROM ctl.UserMap WHERE SourceEnv = %s "
        "GROUP BY MatchReason ORDER BY MatchReason",
        (env,),
    ).fetchall()
    report.coverage = [UserMapCoverageRow(reason, count) for reason, count in rows]

    unresolved = sql.SQL(
        "FROM remap_source_ids src "
        "LEFT JOIN {stg} s ON s.{pk} = src.SourceUserId "
        "LEFT JOIN ctl.UserMap m ON m.SourceEnv = %(env)s AND m.SourceUserId = src.SourceUserId "
        "WHERE m.SourceUserId IS NULL"
    ).format(stg=staging_identifier(ctx.user_table_name), pk=sql.Identifier(ctx.user_id_column))
    report.unresolved_count = conn.execute(
        sql.SQL("SELECT count(*) ") + unresolved, {"env": env}
    ).fetchone()[0]
    sample = conn.execute(
        sql.SQL("SELECT src.SourceUserId, {email}, {uname} ").format(
            email=_attr(staged, "Email", "s"), uname=_attr(staged, "UserName", "s"),
        )
        + unresolved
        + sql.SQL(" ORDER BY src.SourceUserId LIMIT {}").format(sql.Literal(UNRESOLVED_SAMPLE_SIZE)),
        {"env": env},
    ).fetchall()
    for source_id, email, user_name in sample:
        identifier = trim(email) or trim(user_name)
        report.unresolved_sample.append(redact(identifier) if identifier else f"user#{source_id}")

    return report


def fetch_user_map(conn: psycopg.Connection, source_env: str) -> list[UserMappingEntry]:
    rows = conn.execute(
        "SELECT SourceUserId, TargetUserId, MatchReason FROM ctl.UserMap "
        "WHERE SourceEnv = %s ORDER BY SourceUserId",
        (source_env,),
    ).fetchall()
    return [UserMappingEntry(int(s), int(t), reason) for s, t, reason in rows]
