"""remap_users.artifacts

Artifact emitter. Every run, dry or committed, successful or not, writes
whatever state it reached under the artifact directory:

  user-fk-catalog.json / .txt      identity-holding columns + path hints
  user-map.json / .csv             ctl.UserMap rows for the environment
  user-map.coverage.json / .csv    matches per reason, unresolved sample
  fk-rewrites.delta.csv            per-column rewrite counts
  unmapped.impact.csv              columns with unmapped references (if any)
  dry-run.summary.json / .txt      totals and the parameter hash
  postload.validation.json         post-load report (commit runs)
  referential-probes.csv           per-column probe results (commit runs)
  load.order.txt                   topological load order
  dry-run.manifest.json / .hash    approval manifest (successful dry runs)
  session.log                      run parameters + telemetry entries
  run-report.json                  status, step results, timings
"""

from __future__ import annotations

import csv
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Sequence

from remap_users.context import RemapUsersContext
from remap_users.manifest import RemapUsersRunManifest, write_manifest
from remap_users.reporting import build_dry_run_report
from remap_users.state import RemapUsersState
from remap_users.telemetry import RemapUsersTelemetry

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# ArtifactWriter
# ---------------------------------------------------------------------------

class ArtifactWriter:
    """Writes JSON, CSV and text files under one root directory."""

    def __init__(self, root: Path) -> None:
        self._root = root
        self.written: list[Path] = []

    @property
    def root(self) -> Path:
        return self._root

    def _path(self, relative: str) -> Path:
        path = self._root / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        self.written.append(path)
        return path

    def write_json(self, relative: str, data: Any) -> Path:
        path = self._path(relative)
        path.write_text(json.dumps(data, indent=2, default=str), encoding="utf-8")
        return path

    def write_csv(self, relative: str, header: Sequence[str], rows: Iterable[Sequence[Any]]) -> Path:
        path = self._path(relative)
        with open(path, "w", newline="", encoding="utf-8") as fh:
            writer = csv.writer(fh)
            writer.writerow(header)
            for row in rows:
                writer.writerow(["" if v is None else v for v in row])
        return path

    def write_text(self, relative: str, text: str) -> Path:
        path = self._path(relative)
        path.write_text(text if text.endswith("\n") else text + "\n", encoding="utf-8")
        return path


# ---------------------------------------------------------------------------
# Individual artifacts
# ---------------------------------------------------------------------------

def _write_catalog(writer: ArtifactWriter, state: RemapUsersState) -> None:
    writer.write_json("user-fk-catalog.json", [
        {
            "table_schema": e.table_schema,
            "table_name": e.table_name,
            "column_name": e.column_name,
            "path": list(e.path_segments),
            "path_hint": e.path_hint,
        }
        for e in state.catalog
    ])
    lines = [
        e.qualified_column + (f"  via {e.path_hint}" if e.path_hint else "")
        for e in state.catalog
    ]
    writer.write_text("user-fk-catalog.txt", "\n".join(lines))


def _write_user_map(writer: ArtifactWriter, ctx: RemapUsersContext, state: RemapUsersState) -> None:
    report = state.user_map_report
    if report is None:
        return
    writer.write_json("user-map.json", {
        "source_env": ctx.source_environment,
        "entries": [
            {"source": e.source_user_id, "target": e.target_user_id, "reason": e.match_reason}
            for e in state.user_map_entries
        ],
    })
    writer.write_csv(
        "user-map.csv",
        ["SourceUserId", "TargetUserId", "MatchReason"],
        [(e.source_user_id, e.target_user_id, e.match_reason) for e in state.user_map_entries],
    )
    writer.write_json("user-map.coverage.json", {"source_env": ctx.source_environment, **report.to_dict()})
    writer.write_csv(
        "user-map.coverage.csv",
        ["MatchReason", "MatchedCount"],
        [(row.match_reason, row.matched_count) for row in report.coverage],
    )


def _write_dry_run(writer: ArtifactWriter, state: RemapUsersState) -> None:
    summary = state.dry_run_summary
    if summary is None:
        return
    header = ["TableSchema", "TableName", "ColumnName", "Remapped", "Reassigned",
              "Pruned", "Unmapped", "Cascaded", "Policy"]
    writer.write_csv("fk-rewrites.delta.csv", header, [
        (c.table_schema, c.table_name, c.column_name, c.remapped, c.reassigned,
         c.pruned, c.unmapped, c.cascaded, c.policy.value)
        for c in summary.column_changes
    ])
    unmapped = [c for c in summary.column_changes if c.unmapped > 0]
    if unmapped:
        writer.write_csv(
            "unmapped.impact.csv",
            ["TableSchema", "TableName", "ColumnName", "Unmapped", "Policy"],
            [(c.table_schema, c.table_name, c.column_name, c.unmapped, c.policy.value)
             for c in unmapped],
        )
    writer.write_json("dry-run.summary.json", summary.to_dict())
    writer.write_text("dry-run.summary.txt", build_dry_run_report(summary, state.user_map_report))


def _write_validation(writer: ArtifactWriter, state: RemapUsersState) -> None:
    validation = state.post_load_validation
    if validation is None:
        return
    writer.write_json("postload.validation.json", validation.to_dict())
    if validation.probes:
        writer.write_csv(
            "referential-probes.csv",
            ["TableSchema", "TableName", "ColumnName", "ValidCount", "InvalidCount", "SampleInvalid"],
            [(p.table_schema, p.table_name, p.column_name, p.valid_count, p.invalid_count,
              ";".join(p.sample_invalid)) for p in validation.probes],
        )


def _write_session_log(
    writer: ArtifactWriter,
    ctx: RemapUsersContext,
    telemetry: RemapUsersTelemetry,
) -> None:
    params = {
        "sourceEnv": ctx.source_environment,
        "snapshotPath": ctx.snapshot_path,
        "userTable": ctx.user_table,
        "policy": ctx.policy.value,
        "policyExplicit": ctx.policy_was_explicit,
        "dryRun": ctx.dry_run,
        "includePii": ctx.include_pii,
        "rebuildMap": ctx.rebuild_map,
        "matchingRules": ",".join(r.value for r in ctx.matching_rules),
        "fallbackUserId": "" if ctx.fallback_user_id is None else ctx.fallback_user_id,
        "batchSize": ctx.batch_size,
        "commandTimeoutSeconds": ctx.command_timeout_seconds,
        "parallelism": ctx.parallelism,
        "artifactDirectory": ctx.artifact_directory,
        "parametersHash": ctx.parameters_hash,
    }
    lines = ["parameters:"]
    lines += [f"  {k}={v}" for k, v in params.items()]
    lines.append("steps:")
    lines += [f"  {e.format_line()}" for e in sorted(telemetry.entries, key=lambda e: e.timestamp)]
    writer.write_text("session.log", "\n".join(lines))


def write_run_report(
    writer: ArtifactWriter,
    run_id: str,
    started_at: str,
    ctx: RemapUsersContext,
    status: str,
    step_results: list[dict[str, Any]],
) -> Path:
    return writer.write_json("run-report.json", {
        "run_id": run_id,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": ctx.dry_run,
        "status": status,
        "source_env": ctx.source_environment,
        "parameters_hash": ctx.parameters_hash,
        "steps": step_results,
    })


# ---------------------------------------------------------------------------
# Top-level
# ---------------------------------------------------------------------------

def emit_artifacts(
    writer: ArtifactWriter,
    ctx: RemapUsersContext,
    state: RemapUsersState,
    telemetry: RemapUsersTelemetry,
    succeeded: bool,
    executed_at: datetime | None = None,
) -> list[Path]:
    """Write every artifact ``state`` has data for.

    The approval manifest is only written for dry runs that succeeded, so a
    failed dry run can never authorize a commit.
    """
    _write_catalog(writer, state)
    _write_user_map(writer, ctx, state)
    _write_dry_run(writer, state)
    _write_validation(writer, state)
    if state.load_order:
        writer.write_text("load.order.txt",
                          "\n".join(t.qualified_name for t in state.load_order))
    if ctx.dry_run and succeeded:
        manifest = RemapUsersRunManifest(
            parameters=ctx.run_parameters,
            executed_at_utc=executed_at or datetime.now(timezone.utc),
            dry_run=True,
        )
        path = write_manifest(manifest, writer.root)
        writer.written.extend([path, writer.root / "dry-run.hash"])
    _write_session_log(writer, ctx, telemetry)
    log.info("Wrote %d artifact(s) to %s", len(writer.written), writer.root)
    return list(writer.written)
