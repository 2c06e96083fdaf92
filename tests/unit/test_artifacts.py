"""Unit tests for remap_users.artifacts."""

from __future__ import annotations

import csv
import json
from datetime import datetime, timezone
from pathlib import Path

from remap_users.artifacts import ArtifactWriter, emit_artifacts, write_run_report
from remap_users.context import RemapUsersPolicy
from remap_users.fk_catalog import UserForeignKeyCatalogEntry
from remap_users.manifest import HASH_FILE_NAME, MANIFEST_FILE_NAME, load_manifest
from remap_users.reporting import build_dry_run_summary
from remap_users.schema_graph import SchemaTable
from remap_users.state import (
    ColumnRewriteSummary,
    PostLoadValidationReport,
    ReferentialProbeResult,
    RemapUsersState,
    UserMapCoverageRow,
    UserMappingEntry,
    UserMapReport,
)
from remap_users.telemetry import RemapUsersTelemetry

USER = SchemaTable("public", "User")
ORDER = SchemaTable("public", "Order")
CREATED_BY = UserForeignKeyCatalogEntry("public", "Order", "CreatedBy")
NOTE_AUTHOR = UserForeignKeyCatalogEntry("public", "Note", "AuthorId", ("public.Order.CreatedBy",))


def _read_csv(path: Path) -> list[dict[str, str]]:
    with open(path, newline="", encoding="utf-8") as fh:
        return list(csv.DictReader(fh))


def _full_state(ctx) -> RemapUsersState:
    state = RemapUsersState(load_order=[USER, ORDER], catalog=[NOTE_AUTHOR, CREATED_BY])
    state.user_map_report = UserMapReport(
        coverage=[UserMapCoverageRow("manual", 1), UserMapCoverageRow("fallback", 1)],
        source_identity_count=2,
    )
    state.user_map_entries = [UserMappingEntry(1, 101, "manual"), UserMappingEntry(2, 999, "fallback")]
    state.record_rewrite(CREATED_BY, ColumnRewriteSummary(1, 0, 0, 0, RemapUsersPolicy.REASSIGN))
    state.record_rewrite(NOTE_AUTHOR, ColumnRewriteSummary(0, 0, 0, 2, RemapUsersPolicy.REASSIGN))
    state.dry_run_summary = build_dry_run_summary(ctx, state)
    return state


class TestArtifactWriter:
    def test_creates_nested_directories(self, tmp_path):
        writer = ArtifactWriter(tmp_path / "a")
        path = writer.write_text("x/y.txt", "hello")
        assert path.read_text() == "hello\n"
        assert writer.written == [path]

    def test_csv_nulls_blank(self, tmp_path):
        writer = ArtifactWriter(tmp_path)
        path = writer.write_csv("t.csv", ["A", "B"], [(1, None)])
        assert _read_csv(path) == [{"A": "1", "B": ""}]

    def test_json(self, tmp_path):
        writer = ArtifactWriter(tmp_path)
        path = writer.write_json("t.json", {"p": Path("/x")})
        assert json.loads(path.read_text()) == {"p": "/x"}


class TestEmitArtifacts:
    def test_dry_run_artifacts(self, make_ctx, tmp_path):
        ctx = make_ctx()
        writer = ArtifactWriter(tmp_path / "out")
        emit_artifacts(writer, ctx, _full_state(ctx), RemapUsersTelemetry(), succeeded=True)
        names = {p.name for p in (tmp_path / "out").iterdir()}
        assert {
            "user-fk-catalog.json", "user-fk-catalog.txt",
            "user-map.json", "user-map.csv",
            "user-map.coverage.json", "user-map.coverage.csv",
            "fk-rewrites.delta.csv", "unmapped.impact.csv",
            "dry-run.summary.json", "dry-run.summary.txt",
            "load.order.txt", "session.log",
            MANIFEST_FILE_NAME, HASH_FILE_NAME,
        } <= names
        assert "postload.validation.json" not in names

    def test_user_map_csv(self, make_ctx, tmp_path):
        ctx = make_ctx()
        emit_artifacts(ArtifactWriter(tmp_path), ctx, _full_state(ctx), RemapUsersTelemetry(), True)
        rows = _read_csv(tmp_path / "user-map.csv")
        assert rows[0] == {"SourceUserId": "1", "TargetUserId": "101", "MatchReason": "manual"}

    def test_unmapped_impact_lists_only_unmapped(self, make_ctx, tmp_path):
        ctx = make_ctx()
        emit_artifacts(ArtifactWriter(tmp_path), ctx, _full_state(ctx), RemapUsersTelemetry(), True)
        rows = _read_csv(tmp_path / "unmapped.impact.csv")
        assert [(r["TableName"], r["ColumnName"], r["Unmapped"]) for r in rows] == [("Note", "AuthorId", "2")]

    def test_catalog_text_has_path_hint(self, make_ctx, tmp_path):
        ctx = make_ctx()
        emit_artifacts(ArtifactWriter(tmp_path), ctx, _full_state(ctx), RemapUsersTelemetry(), True)
        text = (tmp_path / "user-fk-catalog.txt").read_text()
        assert "public.Note.AuthorId  via public.Order.CreatedBy" in text

    def test_manifest_matches_context(self, make_ctx, tmp_path):
        ctx = make_ctx()
        executed = datetime(2024, 5, 1, tzinfo=timezone.utc)
        emit_artifacts(ArtifactWriter(tmp_path), ctx, _full_state(ctx), RemapUsersTelemetry(),
                       True, executed_at=executed)
        manifest = load_manifest(tmp_path / MANIFEST_FILE_NAME)
        assert manifest.parameters == ctx.run_parameters
        assert manifest.executed_at_utc == executed
        assert (tmp_path / HASH_FILE_NAME).read_text() == ctx.parameters_hash

    def test_failed_dry_run_writes_no_manifest(self, make_ctx, tmp_path):
        ctx = make_ctx()
        emit_artifacts(ArtifactWriter(tmp_path), ctx, RemapUsersState(), RemapUsersTelemetry(), False)
        assert not (tmp_path / MANIFEST_FILE_NAME).exists()
        assert (tmp_path / "session.log").exists()

    def test_commit_run_writes_validation_not_manifest(self, make_ctx, tmp_path):
        ctx = make_ctx(dry_run=False)
        state = _full_state(ctx)
        state.post_load_validation = PostLoadValidationReport(
            referential_integrity_verified=True,
            probes=[ReferentialProbeResult("public", "Order", "CreatedBy", 1, 0)],
        )
        emit_artifacts(ArtifactWriter(tmp_path), ctx, state, RemapUsersTelemetry(), True)
        assert not (tmp_path / MANIFEST_FILE_NAME).exists()
        validation = json.loads((tmp_path / "postload.validation.json").read_text())
        assert validation["referential_integrity_verified"] is True
        probes = _read_csv(tmp_path / "referential-probes.csv")
        assert probes[0]["ValidCount"] == "1"

    def test_session_log_has_parameters_and_steps(self, make_ctx, tmp_path):
        ctx = make_ctx()
        telemetry = RemapUsersTelemetry()
        telemetry.step_started("discover")
        telemetry.step_completed("discover")
        emit_artifacts(ArtifactWriter(tmp_path), ctx, RemapUsersState(), telemetry, True)
        log_text = (tmp_path / "session.log").read_text()
        assert "sourceEnv=PROD" in log_text
        assert f"parametersHash={ctx.parameters_hash}" in log_text
        assert "discover completed" in log_text
        assert "host=localhost" not in log_text


class TestRunReport:
    def test_fields(self, make_ctx, tmp_path):
        ctx = make_ctx()
        path = write_run_report(ArtifactWriter(tmp_path), "run-1", "2024-05-01T00:00:00",
                                ctx, "failed", [{"step": "stage", "succeeded": False}])
        data = json.loads(path.read_text())
        assert data["run_id"] == "run-1"
        assert data["status"] == "failed"
        assert data["parameters_hash"] == ctx.parameters_hash
        assert data["steps"][0]["step"] == "stage"
