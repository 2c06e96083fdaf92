"""remap_users.reporting

Dry-run reporter: fold the per-column rewrite summaries into ``ColumnDelta``
rows and a ``DryRunSummary``, and render the operator-facing text reports.
Runs for dry runs and commits alike; reads state only.
"""

from __future__ import annotations

from remap_users.context import RemapUsersContext
from remap_users.state import (
    ColumnDelta,
    DryRunSummary,
    PostLoadValidationReport,
    RemapUsersState,
    UserMapReport,
)


def build_dry_run_summary(ctx: RemapUsersContext, state: RemapUsersState) -> DryRunSummary:
    """Aggregate ``state.rewrite_summaries`` in catalog order."""
    changes = []
    for entry in state.catalog:
        summary = state.rewrite_summaries.get(entry)
        if summary is None:
            continue
        changes.append(ColumnDelta(
            table_schema=entry.table_schema,
            table_name=entry.table_name,
            column_name=entry.column_name,
            remapped=summary.remapped,
            reassigned=summary.reassigned,
            pruned=summary.pruned,
            unmapped=summary.unmapped,
            policy=summary.policy,
            path_hint=entry.path_hint,
            cascaded=summary.cascaded,
        ))
    return DryRunSummary(
        column_changes=changes,
        policy=ctx.policy,
        parameters_hash=ctx.parameters_hash,
        dry_run=ctx.dry_run,
    )


def build_dry_run_report(
    summary: DryRunSummary,
    user_map: UserMapReport | None = None,
) -> str:
    lines = [
        "=" * 60,
        "Remap Users Dry-Run Summary",
        f"  dry_run: {summary.dry_run}",
        f"  policy:  {summary.policy.value}",
        f"  parameters hash: {summary.parameters_hash}",
        "=" * 60,
    ]
    if user_map is not None:
        lines.append("Identity map coverage:")
        for row in user_map.coverage:
            lines.append(f"  {row.match_reason:<24} {row.matched_count}")
        lines.append(f"  {'unresolved':<24} {user_map.unresolved_count}")
        if user_map.skipped_rules:
            lines.append(f"  skipped rules: {', '.join(user_map.skipped_rules)}")
        if user_map.unresolved_sample:
            lines.append(f"\nUnresolved sample ({len(user_map.unresolved_sample)}):")
            for ident in user_map.unresolved_sample[:10]:
                lines.append(f"  {ident}")
            if len(user_map.unresolved_sample) > 10:
                lines.append(f"  ... and {len(user_map.unresolved_sample) - 10} more")
        lines.append("-" * 60)

    lines.append(f"Columns rewritten: {len(summary.column_changes)}")
    for change in summary.column_changes:
        line = (
            f"  {change.table_schema}.{change.table_name}.{change.column_name}: "
            f"remapped={change.remapped} reassigned={change.reassigned} "
            f"pruned={change.pruned} unmapped={change.unmapped}"
        )
        if change.cascaded:
            line += f" (+{change.cascaded} dependent row(s))"
        lines.append(line)
    lines += [
        "-" * 60,
        f"  total remapped:    {summary.total_remapped}",
        f"  total reassigned:  {summary.total_reassigned}",
        f"  total pruned:      {summary.total_pruned}",
        f"  total unmapped:    {summary.total_unmapped}",
    ]
    if summary.total_cascaded:
        lines.append(f"  dependent rows:    {summary.total_cascaded}")
    lines.append("=" * 60)
    return "\n".join(lines)


def build_validation_report(report: PostLoadValidationReport) -> str:
    lines = [
        "=" * 60,
        "Remap Users Post-Load Validation",
        "=" * 60,
        f"  disabled foreign keys:   {report.disabled_foreign_keys}",
        f"  untrusted foreign keys:  {report.untrusted_foreign_keys}",
        f"  referential integrity:   {'verified' if report.referential_integrity_verified else 'FAILED'}",
    ]
    bad_counts = [rc for rc in report.row_counts if not rc.ok]
    if bad_counts:
        lines.append(f"  row-count mismatches:    {len(bad_counts)}")
    if report.validation_errors:
        lines.append(f"\nErrors ({len(report.validation_errors)}):")
        for err in report.validation_errors[:20]:
            lines.append(f"  {err}")
        if len(report.validation_errors) > 20:
            lines.append(f"  ... and {len(report.validation_errors) - 20} more")
    lines.append("=" * 60)
    return "\n".join(lines)
