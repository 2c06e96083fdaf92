"""remap_users.state

Result records and the mutable per-run ``RemapUsersState``.

The pipeline owns exactly one state object per run and hands it to each
step in turn. Steps read what earlier steps recorded and add their own
contribution; nothing here touches the database.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

from remap_users.context import RemapUsersPolicy
from remap_users.fk_catalog import UserForeignKeyCatalogEntry
from remap_users.schema_graph import SchemaForeignKey, SchemaTable


# ---------------------------------------------------------------------------
# Rewrite
# ---------------------------------------------------------------------------

@dataclass
class ColumnRewriteSummary:
    remapped: int = 0
    reassigned: int = 0
    pruned: int = 0
    unmapped: int = 0
    policy: RemapUsersPolicy = RemapUsersPolicy.PRUNE
    # Dependent staged rows nulled or deleted because this column's prune
    # deleted the rows they reference. Not part of ``total``.
    cascaded: int = 0

    @property
    def total(self) -> int:
        return self.remapped + self.reassigned + self.pruned + self.unmapped

    def to_dict(self) -> dict[str, Any]:
        return {
            "remapped": self.remapped,
            "reassigned": self.reassigned,
            "pruned": self.pruned,
            "unmapped": self.unmapped,
            "cascaded": self.cascaded,
            "policy": self.policy.value,
        }


# ---------------------------------------------------------------------------
# Identity map
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UserMappingEntry:
    source_user_id: int
    target_user_id: int
    match_reason: str


@dataclass(frozen=True)
class UserMapCoverageRow:
    match_reason: str
    matched_count: int


@dataclass
class UserMapReport:
    coverage: list[UserMapCoverageRow] = field(default_factory=list)
    unresolved_count: int = 0
    unresolved_sample: list[str] = field(default_factory=list)
    source_identity_count: int = 0
    skipped_rules: list[str] = field(default_factory=list)

    @property
    def mapped_count(self) -> int:
        return sum(row.matched_count for row in self.coverage)

    def to_dict(self) -> dict[str, Any]:
        return {
            "coverage": [
                {"reason": row.match_reason, "count": row.matched_count}
                for row in self.coverage
            ],
            "mapped": self.mapped_count,
            "unresolved": self.unresolved_count,
            "sample_unresolved": self.unresolved_sample,
            "source_identities": self.source_identity_count,
            "skipped_rules": self.skipped_rules,
        }


# ---------------------------------------------------------------------------
# Dry-run summary
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ColumnDelta:
    table_schema: str
    table_name: str
    column_name: str
    remapped: int
    reassigned: int
    pruned: int
    unmapped: int
    policy: RemapUsersPolicy
    path_hint: str | None = None
    cascaded: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "table_schema": self.table_schema,
            "table_name": self.table_name,
            "column_name": self.column_name,
            "remapped": self.remapped,
            "reassigned": self.reassigned,
            "pruned": self.pruned,
            "unmapped": self.unmapped,
            "cascaded": self.cascaded,
            "policy": self.policy.value,
            "path_hint": self.path_hint,
        }


@dataclass
class DryRunSummary:
    column_changes: list[ColumnDelta]
    policy: RemapUsersPolicy
    parameters_hash: str
    dry_run: bool

    @property
    def total_remapped(self) -> int:
        return sum(c.remapped for c in self.column_changes)

    @property
    def total_reassigned(self) -> int:
        return sum(c.reassigned for c in self.column_changes)

    @property
    def total_pruned(self) -> int:
        return sum(c.pruned for c in self.column_changes)

    @property
    def total_unmapped(self) -> int:
        return sum(c.unmapped for c in self.column_changes)

    @property
    def total_cascaded(self) -> int:
        return sum(c.cascaded for c in self.column_changes)

    @property
    def total_rows(self) -> int:
        return (self.total_remapped + self.total_reassigned
                + self.total_pruned + self.total_unmapped)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totals": {
                "remapped": self.total_remapped,
                "reassigned": self.total_reassigned,
                "pruned": self.total_pruned,
                "unmapped": self.total_unmapped,
                "cascaded": self.total_cascaded,
                "rows": self.total_rows,
            },
            "policy": self.policy.value,
            "parameters_hash": self.parameters_hash,
            "dry_run": self.dry_run,
            "columns": [c.to_dict() for c in self.column_changes],
        }


# ---------------------------------------------------------------------------
# Transactional load
# ---------------------------------------------------------------------------

class LoadMode(str, enum.Enum):
    MERGE = "merge"      # INSERT … ON CONFLICT (pk) DO UPDATE
    REPLACE = "replace"  # DELETE then INSERT (no primary key)


@dataclass(frozen=True)
class TableLoadResult:
    table: SchemaTable
    mode: LoadMode
    rows_written: int


@dataclass(frozen=True)
class SuspendedConstraint:
    """A foreign key dropped for the load, with the DDL to restore it."""

    table: SchemaTable
    name: str
    definition: str


# ---------------------------------------------------------------------------
# Post-load validation
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReferentialProbeResult:
    table_schema: str
    table_name: str
    column_name: str
    valid_count: int
    invalid_count: int
    sample_invalid: tuple[str, ...] = ()


@dataclass(frozen=True)
class RowCountCheck:
    table: SchemaTable
    mode: LoadMode
    staging_rows: int
    target_rows: int

    @property
    def ok(self) -> bool:
        if self.mode is LoadMode.REPLACE:
            return self.target_rows == self.staging_rows
        return self.target_rows >= self.staging_rows


@dataclass
class PostLoadValidationReport:
    disabled_foreign_keys: int = 0
    untrusted_foreign_keys: int = 0
    referential_integrity_verified: bool = False
    validation_errors: list[str] = field(default_factory=list)
    probes: list[ReferentialProbeResult] = field(default_factory=list)
    row_counts: list[RowCountCheck] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return (
            self.disabled_foreign_keys == 0
            and self.untrusted_foreign_keys == 0
            and self.referential_integrity_verified
            and not self.validation_errors
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "disabled_foreign_keys": self.disabled_foreign_keys,
            "untrusted_foreign_keys": self.untrusted_foreign_keys,
            "referential_integrity_verified": self.referential_integrity_verified,
            "errors": self.validation_errors,
            "row_counts": [
                {
                    "table": rc.table.qualified_name,
                    "mode": rc.mode.value,
                    "staging_rows": rc.staging_rows,
                    "target_rows": rc.target_rows,
                    "ok": rc.ok,
                }
                for rc in self.row_counts
            ],
        }


# ---------------------------------------------------------------------------
# Run state
# ---------------------------------------------------------------------------

@dataclass
class RemapUsersState:
    load_order: list[SchemaTable] = field(default_factory=list)
    foreign_keys: list[SchemaForeignKey] = field(default_factory=list)
    catalog: list[UserForeignKeyCatalogEntry] = field(default_factory=list)
    staged_row_counts: dict[SchemaTable, int] = field(default_factory=dict)
    user_map_report: UserMapReport | None = None
    user_map_entries: list[UserMappingEntry] = field(default_factory=list)
    rewrite_summaries: dict[UserForeignKeyCatalogEntry, ColumnRewriteSummary] = field(
        default_factory=dict
    )
    dry_run_summary: DryRunSummary | None = None
    isolation_level: str | None = None
    load_results: list[TableLoadResult] = field(default_factory=list)
    suspended_constraints: list[SuspendedConstraint] = field(default_factory=list)
    post_load_validation: PostLoadValidationReport | None = None
    warnings: list[str] = field(default_factory=list)

    def record_rewrite(
        self, entry: UserForeignKeyCatalogEntry, summary: ColumnRewriteSummary
    ) -> None:
        if entry in self.rewrite_summaries:
            raise ValueError(f"rewrite already recorded for {entry.qualified_column}")
        self.rewrite_summaries[entry] = summary
