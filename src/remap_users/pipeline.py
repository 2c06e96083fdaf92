"""remap_users.pipeline

Sequential runner for the remap-users steps.

Step order (each step runs only if its predicate holds and every earlier
step succeeded):

  approve     commit runs with approval required: a matching dry-run manifest
  discover    load order + identity-column catalog
  provision   ctl/stg schemas, staging mirrors, ctl.UserFkCatalog
  stage       snapshot files -> stg mirrors
  map         ctl.UserMap + coverage report
  rewrite     identity references in staging
  report      dry-run summary (always)
  load        transactional load into the live schema (commit only)
  validate    post-load integrity proof (commit only)

Artifacts are emitted after the last step whether the run succeeded or not.
Domain failures (RemapUsersError, psycopg.Error) become a failed StepResult;
anything else propagates after the artifacts have been written.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Sequence

import psycopg

from remap_users.artifacts import ArtifactWriter, emit_artifacts, write_run_report
from remap_users.context import RemapUsersContext
from remap_users.fk_catalog import build_user_fk_catalog
from remap_users.manifest import MANIFEST_FILE_NAME, load_manifest
from remap_users.post_load_validation import validate_post_load
from remap_users.reporting import build_dry_run_summary
from remap_users.schema_graph import SqlSchemaGraph
from remap_users.shared import (
    CancellationToken,
    DiscoveryError,
    DryRunApprovalError,
    IntegrityViolationError,
    RemapUsersError,
    open_connection,
)
from remap_users.snapshot_loader import stage_snapshot
from remap_users.staging_rewrite import rewrite_staging
from remap_users.staging_schema import provision_control_and_staging
from remap_users.state import RemapUsersState
from remap_users.telemetry import RemapUsersTelemetry
from remap_users.transactional_load import run_transactional_load
from remap_users.user_map import build_user_map, fetch_user_map

log = logging.getLogger(__name__)

DEFAULT_MAX_DRY_RUN_AGE = timedelta(hours=24)


# ---------------------------------------------------------------------------
# Run plumbing
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PipelineOptions:
    """Run switches that are not part of the parameter hash."""

    require_dry_run_approval: bool = True
    manifest_path: Path | None = None
    max_dry_run_age: timedelta = DEFAULT_MAX_DRY_RUN_AGE
    # Called inside the load transaction before constraints are restored.
    before_restore: Callable[[psycopg.Connection], None] | None = None


@dataclass
class PipelineRun:
    ctx: RemapUsersContext
    state: RemapUsersState
    telemetry: RemapUsersTelemetry
    cancel: CancellationToken
    options: PipelineOptions


@dataclass(frozen=True)
class PipelineStep:
    name: str
    execute: Callable[[PipelineRun], None]
    predicate: Callable[[PipelineRun], bool] = lambda run: True
    skip_reason: str = ""


@dataclass(frozen=True)
class StepResult:
    step: str
    succeeded: bool
    skipped: bool = False
    error_type: str | None = None
    error: str | None = None
    duration: timedelta | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "error_type": self.error_type,
            "error": self.error,
            "duration_seconds": (
                round(self.duration.total_seconds(), 3) if self.duration is not None else None
            ),
        }


@dataclass
class PipelineResult:
    run_id: str
    state: RemapUsersState
    steps: list[StepResult] = field(default_factory=list)
    artifacts: list[Path] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(s.succeeded for s in self.steps)

    @property
    def failed_step(self) -> StepResult | None:
        return next((s for s in self.steps if not s.succeeded), None)


# ---------------------------------------------------------------------------
# Steps
# ---------------------------------------------------------------------------

def approve_commit(run: PipelineRun) -> None:
    ctx, options = run.ctx, run.options
    path = options.manifest_path or ctx.artifact_directory / MANIFEST_FILE_NAME
    manifest = load_manifest(path)
    if manifest is None:
        raise DryRunApprovalError(
            f"no dry-run manifest at {path}; run with --dry-run first")
    now = datetime.now(timezone.utc)
    if manifest.matches_for_commit(
        ctx.run_parameters, is_dry_run=ctx.dry_run, as_of_utc=now,
        max_age=options.max_dry_run_age,
    ):
        run.telemetry.info("approve", "Dry-run manifest accepted",
                           {"hash": manifest.parameters_hash,
                            "executed_at": manifest.executed_at_utc.isoformat()})
        return
    reasons = []
    if not manifest.dry_run:
        reasons.append("manifest was not produced by a dry run")
    mismatched = manifest.mismatched_fields(ctx.run_parameters)
    if mismatched:
        reasons.append("parameters differ: " + ", ".join(mismatched))
    age = now - manifest.executed_at_utc
    if age > options.max_dry_run_age:
        reasons.append(f"dry run is {age} old (max {options.max_dry_run_age})")
    raise DryRunApprovalError(
        "dry-run manifest does not authorize this commit: "
        + ("; ".join(reasons) or "rejected"))


def discover(run: PipelineRun) -> None:
    ctx, state = run.ctx, run.state
    with open_connection(ctx.connection_string, ctx.command_timeout_seconds) as conn:
        graph = SqlSchemaGraph(conn)
        tables = graph.get_topologically_sorted_tables()
        foreign_keys = graph.get_foreign_keys()
    if ctx.user_table_ref not in tables:
        raise DiscoveryError(f"identity table {ctx.user_table} not found in target database")
    state.load_order = tables
    state.foreign_keys = foreign_keys
    state.catalog = build_user_fk_catalog(foreign_keys, ctx.user_table_ref, ctx.user_id_column)
    run.telemetry.info("discover", "Schema discovered",
                       {"tables": len(tables), "catalog_entries": len(state.catalog)})


def provision(run: PipelineRun) -> None:
    ctx = run.ctx
    with open_connection(ctx.connection_string, ctx.command_timeout_seconds) as conn:
        counts = provision_control_and_staging(conn, run.state.load_order, run.state.catalog,
                                               run.cancel)
    run.telemetry.info("provision", "Control and staging schemas ready", counts)


def stage(run: PipelineRun) -> None:
    ctx = run.ctx
    run.state.staged_row_counts = stage_snapshot(
        ctx.connection_string, ctx.command_timeout_seconds, ctx.snapshot_path,
        run.state.load_order, ctx.batch_size, ctx.parallelism, run.cancel,
    )
    run.telemetry.info("stage", "Snapshot staged", {
        "tables": len(run.state.staged_row_counts),
        "rows": sum(run.state.staged_row_counts.values()),
    })


def map_users(run: PipelineRun) -> None:
    ctx, state = run.ctx, run.state
    with open_connection(ctx.connection_string, ctx.command_timeout_seconds) as conn:
        report = build_user_map(conn, ctx, state.catalog, run.cancel)
        state.user_map_report = report
        state.user_map_entries = fetch_user_map(conn, ctx.source_environment)
    run.telemetry.info("map", "Identity map built",
                       {"mapped": report.mapped_count, "unresolved": report.unresolved_count})
    for rule in report.skipped_rules:
        state.warnings.append(f"matching rule {rule} skipped")
    if report.unresolved_count:
        run.telemetry.warning("map", "Unresolved source identities",
                              {"count": report.unresolved_count, "policy": ctx.policy.value})


def rewrite(run: PipelineRun) -> None:
    state = run.state
    summaries = rewrite_staging(run.ctx, state.catalog, run.cancel,
                                state.foreign_keys, state.load_order)
    for entry, summary in summaries.items():
        state.record_rewrite(entry, summary)
        if summary.unmapped:
            state.warnings.append(
                f"{entry.qualified_column}: {summary.unmapped} reference(s) left unmapped")
    run.telemetry.info("rewrite", "Staging rewritten", {"columns": len(state.rewrite_summaries)})


def report(run: PipelineRun) -> None:
    summary = build_dry_run_summary(run.ctx, run.state)
    run.state.dry_run_summary = summary
    run.telemetry.info("report", "Dry-run summary built", {
        "remapped": summary.total_remapped,
        "reassigned": summary.total_reassigned,
        "pruned": summary.total_pruned,
        "unmapped": summary.total_unmapped,
        "cascaded": summary.total_cascaded,
    })


def load(run: PipelineRun) -> None:
    isolation, constraints, results = run_transactional_load(
        run.ctx, run.state.load_order, run.cancel, run.options.before_restore,
    )
    run.state.isolation_level = isolation
    run.state.suspended_constraints = constraints
    run.state.load_results = results
    run.telemetry.info("load", "Transactional load committed", {
        "isolation": isolation,
        "tables": len(results),
        "constraints": len(constraints),
    })


def validate(run: PipelineRun) -> None:
    ctx, state = run.ctx, run.state
    with open_connection(ctx.connection_string, ctx.command_timeout_seconds) as conn:
        result = validate_post_load(conn, ctx, state.catalog, state.suspended_constraints,
                                    state.load_results, run.cancel)
    state.post_load_validation = result
    if not result.passed:
        raise IntegrityViolationError(
            "post-load validation failed: " + "; ".join(result.validation_errors))


def _committing(run: PipelineRun) -> bool:
    return not run.ctx.dry_run


DEFAULT_STEPS: tuple[PipelineStep, ...] = (
    PipelineStep(
        "approve", approve_commit,
        lambda run: not run.ctx.dry_run and run.options.require_dry_run_approval,
        "dry run or approval not required",
    ),
    PipelineStep("discover", discover),
    PipelineStep("provision", provision),
    PipelineStep("stage", stage),
    PipelineStep("map", map_users),
    PipelineStep("rewrite", rewrite),
    PipelineStep("report", report),
    PipelineStep("load", load, _committing, "dry run"),
    PipelineStep("validate", validate, _committing, "dry run"),
)


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------

def _execute(run: PipelineRun, step: PipelineStep) -> StepResult:
    telemetry = run.telemetry
    telemetry.step_started(step.name)
    try:
        run.cancel.raise_if_cancelled()
        step.execute(run)
    except (RemapUsersError, psycopg.Error) as exc:
        telemetry.error(step.name, "Step failed", exc)
        duration = telemetry.step_completed(step.name)
        return StepResult(step.name, False, error_type=type(exc).__name__,
                          error=str(exc), duration=duration)
    duration = telemetry.step_completed(step.name)
    return StepResult(step.name, True, duration=duration)


def run_pipeline(
    ctx: RemapUsersContext,
    *,
    options: PipelineOptions | None = None,
    state: RemapUsersState | None = None,
    telemetry: RemapUsersTelemetry | None = None,
    cancel: CancellationToken | None = None,
    steps: Sequence[PipelineStep] | None = None,
    run_id: str | None = None,
    writer: ArtifactWriter | None = None,
) -> PipelineResult:
    """Run ``steps`` (default: the full remap) in order and emit artifacts.

    Stops at the first failed step. Artifacts, including ``run-report.json``,
    are written even when a step fails or an unexpected exception escapes.
    """
    run = PipelineRun(
        ctx=ctx,
        state=state if state is not None else RemapUsersState(),
        telemetry=telemetry if telemetry is not None else RemapUsersTelemetry(),
        cancel=cancel if cancel is not None else CancellationToken(),
        options=options if options is not None else PipelineOptions(),
    )
    result = PipelineResult(run_id=run_id or str(uuid.uuid4()), state=run.state)
    writer = writer if writer is not None else ArtifactWriter(ctx.artifact_directory)
    started_at = datetime.now(timezone.utc).isoformat()
    log.info("remap-users run %s started (dry_run=%s, policy=%s, hash=%s)",
             result.run_id, ctx.dry_run, ctx.policy.value, ctx.parameters_hash)

    try:
        for step in steps if steps is not None else DEFAULT_STEPS:
            if not step.predicate(run):
                run.telemetry.step_skipped(step.name, step.skip_reason or "predicate not met")
                result.steps.append(StepResult(step.name, True, skipped=True))
                continue
            step_result = _execute(run, step)
            result.steps.append(step_result)
            if not step_result.succeeded:
                log.error("remap-users run %s halted at %s: %s",
                          result.run_id, step.name, step_result.error)
                break
    except Exception as exc:
        run.telemetry.error("pipeline", "Unexpected failure", exc)
        _finish(run, result, writer, started_at, succeeded=False)
        raise

    _finish(run, result, writer, started_at, succeeded=result.succeeded)
    return result


def _finish(
    run: PipelineRun,
    result: PipelineResult,
    writer: ArtifactWriter,
    started_at: str,
    succeeded: bool,
) -> None:
    result.artifacts = emit_artifacts(writer, run.ctx, run.state, run.telemetry, succeeded)
    status = "succeeded" if succeeded else "failed"
    write_run_report(writer, result.run_id, started_at, run.ctx, status,
                     [s.to_dict() for s in result.steps])
    result.artifacts = list(writer.written)
    log.info("remap-users run %s %s", result.run_id, status)
